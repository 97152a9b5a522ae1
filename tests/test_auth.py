"""Tests for server/auth.py -- wallet challenges and bearer tokens."""

import sys
import os
import base64
import json
import threading

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import pytest

from crypto import hmac_sign
from server.auth import Challenge, ChallengeAuth, ChallengeStore
from conftest import AUTH_SECRET, BUYER, SELLER, Clock, fake_signature, make_auth, wallet, wallet_sign


class TestChallenge:
    def test_message_format(self):
        clock = Clock(1_700_000_000.5)
        auth = make_auth(clock)
        parts = auth.issue_challenge(BUYER).split(":")
        assert parts[0] == "sealcash"
        assert parts[1] == "1700000000500"
        assert len(parts[2]) == 32
        int(parts[2], 16)

    def test_nonces_are_fresh(self):
        auth = make_auth()
        assert auth.issue_challenge(BUYER) != auth.issue_challenge(BUYER)

    def test_correct_signature_verifies(self):
        auth = make_auth()
        msg = auth.issue_challenge(BUYER)
        assert auth.verify(BUYER, fake_signature(BUYER, msg)) is True

    def test_single_use(self):
        auth = make_auth()
        msg = auth.issue_challenge(BUYER)
        sig = fake_signature(BUYER, msg)
        assert auth.verify(BUYER, sig) is True
        assert auth.verify(BUYER, sig) is False

    def test_failed_attempt_consumes_challenge(self):
        auth = make_auth()
        msg = auth.issue_challenge(BUYER)
        assert auth.verify(BUYER, "garbage") is False
        assert auth.verify(BUYER, fake_signature(BUYER, msg)) is False

    def test_no_challenge(self):
        auth = make_auth()
        assert auth.verify(BUYER, "anything") is False

    def test_signature_for_other_address_rejected(self):
        auth = make_auth()
        msg = auth.issue_challenge(BUYER)
        assert auth.verify(BUYER, fake_signature(SELLER, msg)) is False

    def test_new_challenge_replaces_pending(self):
        auth = make_auth()
        first = auth.issue_challenge(BUYER)
        auth.issue_challenge(BUYER)
        assert auth.verify(BUYER, fake_signature(BUYER, first)) is False

    def test_expires_after_five_minutes(self):
        clock = Clock()
        auth = make_auth(clock)
        msg = auth.issue_challenge(BUYER)
        clock.advance(5 * 60 + 1)
        assert auth.verify(BUYER, fake_signature(BUYER, msg)) is False

    def test_valid_just_before_expiry(self):
        clock = Clock()
        auth = make_auth(clock)
        msg = auth.issue_challenge(BUYER)
        clock.advance(5 * 60 - 1)
        assert auth.verify(BUYER, fake_signature(BUYER, msg)) is True

    def test_raising_verifier_counts_as_failure(self):
        def boom(address, message, signature):
            raise RuntimeError("backend unavailable")
        auth = ChallengeAuth(AUTH_SECRET, signature_verifier=boom)
        auth.issue_challenge(BUYER)
        assert auth.verify(BUYER, "sig") is False

    def test_default_verifier_accepts_real_testnet_signature(self):
        key, addresses = wallet()
        address = addresses["testnet_p2wpkh"]
        auth = ChallengeAuth(AUTH_SECRET)
        msg = auth.issue_challenge(address)
        assert auth.verify(address, wallet_sign(key, msg)) is True
        assert auth.verify_token(auth.issue_token(address)) == address

    def test_default_verifier_rejects_garbage(self):
        auth = ChallengeAuth(AUTH_SECRET)
        auth.issue_challenge(BUYER)
        assert auth.verify(BUYER, "not-a-signature") is False

    def test_secret_required(self):
        with pytest.raises(ValueError):
            ChallengeAuth("")


class TestChallengeStore:
    def test_prune_drops_expired_only(self):
        store = ChallengeStore()
        store.put(BUYER, Challenge("a", expires_at=100.0))
        store.put(SELLER, Challenge("b", expires_at=300.0))
        assert store.prune(200.0) == 1
        assert len(store) == 1
        assert store.pop(SELLER).message == "b"

    def test_injected_store_is_used(self):
        store = ChallengeStore()
        auth = ChallengeAuth(AUTH_SECRET, challenges=store)
        auth.issue_challenge(BUYER)
        assert len(store) == 1

    def test_len_waits_for_writers(self):
        store = ChallengeStore()
        store._lock.acquire()
        sizes = []
        reader = threading.Thread(target=lambda: sizes.append(len(store)))
        reader.start()
        reader.join(0.05)
        assert sizes == []
        store._challenges[BUYER] = Challenge("a", expires_at=100.0)
        store._lock.release()
        reader.join()
        assert sizes == [1]


class TestToken:
    def test_roundtrip(self):
        auth = make_auth()
        assert auth.verify_token(auth.issue_token(BUYER)) == BUYER

    def test_payload_shape(self):
        clock = Clock(1_700_000_000.0)
        auth = make_auth(clock)
        decoded = base64.b64decode(auth.issue_token(BUYER)).decode()
        data, _, mac = decoded.rpartition(".")
        assert json.loads(data) == {"btcAddress": BUYER, "ts": 1_700_000_000_000}
        assert mac == hmac_sign(AUTH_SECRET.encode(), data.encode())

    def test_every_byte_mutation_rejected(self):
        auth = make_auth()
        decoded = base64.b64decode(auth.issue_token(BUYER))
        for i in range(len(decoded)):
            mutated = bytearray(decoded)
            mutated[i] ^= 0x01
            token = base64.b64encode(bytes(mutated)).decode()
            assert auth.verify_token(token) is None, f"mutation at byte {i} accepted"

    def test_forged_payload_rejected(self):
        auth = make_auth()
        decoded = base64.b64decode(auth.issue_token(BUYER)).decode()
        data, _, mac = decoded.rpartition(".")
        forged = data.replace(BUYER, SELLER)
        token = base64.b64encode(f"{forged}.{mac}".encode()).decode()
        assert auth.verify_token(token) is None

    def test_other_secret_rejected(self):
        token = ChallengeAuth("other-secret").issue_token(BUYER)
        assert make_auth().verify_token(token) is None

    def test_expired_after_24h(self):
        clock = Clock()
        auth = make_auth(clock)
        token = auth.issue_token(BUYER)
        clock.advance(24 * 60 * 60 + 1)
        assert auth.verify_token(token) is None

    def test_valid_within_24h(self):
        clock = Clock()
        auth = make_auth(clock)
        token = auth.issue_token(BUYER)
        clock.advance(23 * 60 * 60)
        assert auth.verify_token(token) == BUYER

    @pytest.mark.parametrize("token", ["", "not base64!!", base64.b64encode(b"no-dot").decode(),
                                       base64.b64encode(b"\xff\xfe.abc").decode()])
    def test_malformed_tokens(self, token):
        assert make_auth().verify_token(token) is None
