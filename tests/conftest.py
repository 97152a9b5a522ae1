"""Shared fixtures and helpers for sealcash tests.

No network access: upstream HTTP services are httpx.MockTransport handlers,
chain clients are fakes, and wallet signatures use a deterministic fake
verifier instead of real Bitcoin keys.
"""

import sys
import os
import base64
import json
from unittest.mock import AsyncMock

# Ensure the repo root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import httpx

from crypto import bitcoin_txid, generate_ed25519_keypair
from server.auth import ChallengeAuth
from server.covenant import CovenantBuilder
from server.escrow import EscrowEngine
from server.store import EscrowStore, UserStore
from server.verifier import TransferRecord


BUYER = "tb1qbuyer9x7l5c3m2n8k0q4w6e2r5t7y9u1i3o5p7"
SELLER = "tb1qseller4h6j8k0l2z4x6c8v0b2n4m6q8w0e2r4t"
OUTSIDER = "tb1qoutsider2d4f6g8h0j2k4l6z8x0c2v4b6n8m0"

AUTH_SECRET = "test-auth-secret"
APP_VK = "8e" * 32
PROVER_URL = "https://prover.test/spells/prove"

EVM_SENDER = "0x" + "a2" * 20
EVM_RECEIVER = "0x" + "b3" * 20
TOKEN_CONTRACT = "0x" + "c1" * 20

# version 2, one input spending a null outpoint, one 1000-sat OP_TRUE output
RAW_TX = ("02000000" + "01" + "00" * 32 + "00000000" + "00" + "ffffffff"
          + "01" + "e803000000000000" + "01" + "51" + "00000000")

FUNDING = {
    "funding_utxo": "ab" * 32 + ":1",
    "funding_value": 50_000,
    "prev_tx_hex": RAW_TX,
    "change_address": BUYER,
}

ESCROW_TERMS = {
    "seller_btc_address": SELLER,
    "btc_amount": "0.01",
    "asset_type": "token",
    "chain": "ethereum",
    "amount": "100",
    "contract_address": TOKEN_CONTRACT,
    "sender_address": EVM_SENDER,
    "receiver_address": EVM_RECEIVER,
}

T0 = 1_700_000_000.0


class Clock:
    """Settable clock for time-dependent rules."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def fake_signature(address: str, message: str) -> str:
    return f"sig:{address}:{message}"


def fake_verifier(address: str, message: str, signature: str) -> bool:
    return signature == fake_signature(address, message)


def wallet(secret: bytes = b"\x11" * 32):
    """Real secp256k1 key plus its addresses in every supported encoding."""
    from bitcoin import segwit_addr
    from bitcoin.base58 import CBase58Data
    from bitcoin.core import Hash160
    from bitcoin.wallet import CKey

    key = CKey(secret)
    h160 = Hash160(key.pub)
    nested = Hash160(b"\x00\x14" + h160)
    return key, {
        "mainnet_p2pkh": str(CBase58Data.from_bytes(h160, 0)),
        "testnet_p2pkh": str(CBase58Data.from_bytes(h160, 111)),
        "testnet_p2sh_p2wpkh": str(CBase58Data.from_bytes(nested, 196)),
        "mainnet_p2wpkh": segwit_addr.encode("bc", 0, h160),
        "testnet_p2wpkh": segwit_addr.encode("tb", 0, h160),
    }


def wallet_sign(key, message: str, p2wpkh_header: bool = False) -> str:
    """Bitcoin signed-message signature, optionally with the BIP-137 P2WPKH header."""
    from bitcoin.signmessage import BitcoinMessage, SignMessage

    sig = base64.b64decode(SignMessage(key, BitcoinMessage(message)))
    if p2wpkh_header:
        sig = bytes([sig[0] + 8]) + sig[1:]  # 31-34 -> 39-42
    return base64.b64encode(sig).decode()


def make_auth(clock=None) -> ChallengeAuth:
    return ChallengeAuth(AUTH_SECRET, signature_verifier=fake_verifier, clock=clock or Clock())


def prover_transport(calls: list | None = None, response=None, status: int = 200) -> httpx.MockTransport:
    """Fake prover: records request bodies, answers with a tx pair."""
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(json.loads(request.content))
        body = response if response is not None else [RAW_TX, {"bitcoin": RAW_TX}]
        return httpx.Response(status, json=body)
    return httpx.MockTransport(handler)


def make_covenant(calls: list | None = None, **transport_kw) -> CovenantBuilder:
    privkey, _ = generate_ed25519_keypair()
    return CovenantBuilder(APP_VK, privkey, app_binary=b"\x00asm", prover_api=PROVER_URL,
                           transport=prover_transport(calls, **transport_kw))


def transfer_record(tx_hash: str = "0x" + "cd" * 32, **overrides) -> TransferRecord:
    fields = dict(chain="ethereum", tx_hash=tx_hash, from_address=EVM_SENDER,
                  to_address=EVM_RECEIVER, block_number=19_000_000, timestamp=int(T0),
                  amount="100", contract_address=TOKEN_CONTRACT)
    fields.update(overrides)
    return TransferRecord(**fields)


def make_engine(clock=None, covenant=None, prover_calls: list | None = None) -> EscrowEngine:
    """Engine over in-memory stores with fake verifier/broadcaster."""
    verifier = AsyncMock()
    verifier.verify.return_value = None
    broadcaster = AsyncMock()
    broadcaster.broadcast.return_value = {"commitTxId": bitcoin_txid(RAW_TX), "spellTxId": "d2" * 32}
    return EscrowEngine(
        UserStore(), EscrowStore(), verifier,
        covenant or make_covenant(prover_calls), broadcaster,
        public_url="https://seal.test", clock=clock or Clock(),
    )


def register(engine: EscrowEngine, *addresses: str):
    for address in addresses:
        engine.users.get_or_create(address)


def create_escrow(engine: EscrowEngine, timeout_in: float = 3600, **overrides) -> dict:
    data = {**ESCROW_TERMS, "timeout": engine._clock() + timeout_in, **overrides}
    return engine.create_escrow(BUYER, data)["escrow"]


async def locked_escrow(engine: EscrowEngine, timeout_in: float = 3600, **overrides) -> dict:
    """Registered parties, accepted and locked escrow."""
    register(engine, BUYER, SELLER)
    escrow = create_escrow(engine, timeout_in, **overrides)
    engine.accept(escrow["id"], SELLER)
    result = await engine.lock_btc(escrow["id"], BUYER, output_address=BUYER, **FUNDING)
    return result["escrow"]
