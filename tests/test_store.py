"""Tests for server/store.py -- user and escrow records."""

import sys
import os
import threading
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import unittest

from server.store import EscrowStore, UserStore
from conftest import BUYER, SELLER, OUTSIDER


def _record(**overrides):
    record = {
        "buyer_id": BUYER, "seller_id": SELLER, "btc_amount": "0.01",
        "asset_type": "token", "chain": "ethereum", "amount": "100",
        "sender_address": "0xaa", "receiver_address": "0xbb", "refund_address": BUYER,
        "timeout": time.time() + 3600, "status": "pending",
    }
    record.update(overrides)
    return record


class TestUserStore(unittest.TestCase):
    def setUp(self):
        self.users = UserStore()

    def test_get_or_create(self):
        user, created = self.users.get_or_create(BUYER)
        self.assertTrue(created)
        self.assertEqual(user["btc_address"], BUYER)
        self.assertEqual(user["addresses"], {"bitcoin": BUYER})

    def test_get_or_create_idempotent(self):
        self.users.get_or_create(BUYER)
        user, created = self.users.get_or_create(BUYER)
        self.assertFalse(created)
        self.assertEqual(user["btc_address"], BUYER)

    def test_get_missing(self):
        self.assertIsNone(self.users.get(OUTSIDER))

    def test_update_addresses_merges(self):
        self.users.get_or_create(BUYER)
        self.users.update_addresses(BUYER, {"ethereum": "0xaa"})
        user = self.users.update_addresses(BUYER, {"solana": "So1ana"})
        self.assertEqual(user["addresses"], {"bitcoin": BUYER, "ethereum": "0xaa", "solana": "So1ana"})

    def test_bitcoin_entry_cannot_be_replaced(self):
        self.users.get_or_create(BUYER)
        user = self.users.update_addresses(BUYER, {"bitcoin": OUTSIDER})
        self.assertEqual(user["addresses"]["bitcoin"], BUYER)

    def test_update_addresses_unknown_user(self):
        self.assertIsNone(self.users.update_addresses(OUTSIDER, {"ethereum": "0xaa"}))


class TestEscrowStore(unittest.TestCase):
    def setUp(self):
        self.store = EscrowStore()

    def test_create_assigns_id_and_timestamps(self):
        escrow = self.store.create(_record())
        self.assertEqual(len(escrow["id"]), 16)
        self.assertEqual(escrow["status"], "pending")
        self.assertIsNotNone(escrow["created_at"])
        self.assertEqual(escrow["created_at"], escrow["updated_at"])
        self.assertIsNone(escrow["utxo_id"])

    def test_get_missing(self):
        self.assertIsNone(self.store.get("nope"))

    def test_conditional_status_update(self):
        escrow = self.store.create(_record())
        self.assertTrue(self.store.update_status(escrow["id"], "pending", "accepted"))
        # stale expected status loses
        self.assertFalse(self.store.update_status(escrow["id"], "pending", "rejected"))
        self.assertEqual(self.store.get(escrow["id"])["status"], "accepted")

    def test_invalid_transition_raises(self):
        escrow = self.store.create(_record())
        with self.assertRaises(ValueError):
            self.store.update_status(escrow["id"], "pending", "completed")

    def test_utxo_id_written_once(self):
        escrow = self.store.create(_record(status="accepted"))
        self.assertTrue(self.store.update_status(escrow["id"], "accepted", "locked", {"utxo_id": "aa:0"}))
        with self.assertRaises(ValueError):
            self.store.update_fields(escrow["id"], {"locked"}, {"utxo_id": "bb:0"})
        self.assertEqual(self.store.get(escrow["id"])["utxo_id"], "aa:0")

    def test_unknown_field_rejected(self):
        escrow = self.store.create(_record())
        with self.assertRaises(ValueError):
            self.store.update_fields(escrow["id"], {"pending"}, {"buyer_id": OUTSIDER})

    def test_update_fields_respects_status(self):
        escrow = self.store.create(_record(status="pending"))
        ok = self.store.update_fields(escrow["id"], {"accepted", "locked"}, {"submitted_tx_hash": "0x1"})
        self.assertFalse(ok)
        self.assertIsNone(self.store.get(escrow["id"])["submitted_tx_hash"])

    def test_json_fields_roundtrip(self):
        escrow = self.store.create(_record(status="locked"))
        vt = {"tx_hash": "0x1", "block_number": 5, "timestamp": 10, "verified": True}
        self.store.update_fields(escrow["id"], {"locked"}, {"verified_transfer": vt})
        self.assertEqual(self.store.get(escrow["id"])["verified_transfer"], vt)

    def test_unverified_only_blocks_after_verification(self):
        escrow = self.store.create(_record(status="locked"))
        self.store.update_fields(escrow["id"], {"locked"}, {
            "verified_transfer": {"tx_hash": "0x1", "block_number": 5, "timestamp": 10, "verified": True},
        })
        self.assertFalse(self.store.update_status(escrow["id"], "locked", "refunded", unverified_only=True))
        self.assertEqual(self.store.get(escrow["id"])["status"], "locked")

    def test_unverified_only_allows_failed_verification(self):
        escrow = self.store.create(_record(status="locked"))
        self.store.update_fields(escrow["id"], {"locked"}, {
            "verified_transfer": {"tx_hash": "0x1", "block_number": 0, "timestamp": 10, "verified": False},
        })
        self.assertTrue(self.store.update_status(escrow["id"], "locked", "refunded", unverified_only=True))

    def test_unverified_only_field_write_keeps_verified_record(self):
        escrow = self.store.create(_record(status="locked"))
        good = {"tx_hash": "0x1", "block_number": 5, "timestamp": 10, "verified": True}
        miss = {"tx_hash": "0x2", "block_number": 0, "timestamp": 11, "verified": False}
        self.assertTrue(self.store.update_fields(escrow["id"], {"locked"}, {"verified_transfer": miss},
                                                 unverified_only=True))
        self.store.update_fields(escrow["id"], {"locked"}, {"verified_transfer": good})
        self.assertFalse(self.store.update_fields(escrow["id"], {"locked"}, {"verified_transfer": miss},
                                                  unverified_only=True))
        self.assertEqual(self.store.get(escrow["id"])["verified_transfer"], good)

    def test_rollback_status_undoes_claim(self):
        escrow = self.store.create(_record(status="locked"))
        att = {"escrow_id": escrow["id"], "tx_hash": "0x1", "signature": "ab"}
        self.store.update_status(escrow["id"], "locked", "completed", {"attestation": att})
        self.assertTrue(self.store.rollback_status(escrow["id"], "completed", "locked", {"attestation": att}))
        after = self.store.get(escrow["id"])
        self.assertEqual(after["status"], "locked")
        self.assertIsNone(after["attestation"])

    def test_rollback_status_needs_matching_claim(self):
        escrow = self.store.create(_record(status="accepted"))
        self.store.update_status(escrow["id"], "accepted", "locked", {"utxo_id": "aa:0"})
        self.assertFalse(self.store.rollback_status(escrow["id"], "locked", "accepted", {"utxo_id": "bb:0"}))
        self.assertFalse(self.store.rollback_status(escrow["id"], "completed", "accepted"))
        self.assertEqual(self.store.get(escrow["id"])["utxo_id"], "aa:0")
        self.assertTrue(self.store.rollback_status(escrow["id"], "locked", "accepted", {"utxo_id": "aa:0"}))
        self.assertIsNone(self.store.get(escrow["id"])["utxo_id"])

    def test_create_from_many_threads(self):
        threads = [threading.Thread(target=self.store.create, args=(_record(),)) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(self.store.find_for_party(BUYER)), 8)

    def test_find_for_party_roles_and_order(self):
        first = self.store.create(_record())
        second = self.store.create(_record(buyer_id=SELLER, seller_id=BUYER))
        self.store.create(_record(buyer_id=OUTSIDER, seller_id=SELLER))

        both = self.store.find_for_party(BUYER)
        self.assertEqual([e["id"] for e in both], [second["id"], first["id"]])
        self.assertEqual([e["id"] for e in self.store.find_for_party(BUYER, "buyer")], [first["id"]])
        self.assertEqual([e["id"] for e in self.store.find_for_party(BUYER, "seller")], [second["id"]])

    def test_find_for_party_status_filter(self):
        a = self.store.create(_record())
        self.store.create(_record(status="pendingInvite"))
        result = self.store.find_for_party(BUYER, status="pending")
        self.assertEqual([e["id"] for e in result], [a["id"]])

    def test_bulk_transition(self):
        self.store.create(_record(status="pendingInvite"))
        self.store.create(_record(status="pendingInvite"))
        self.store.create(_record(status="pendingInvite", seller_id=OUTSIDER))
        self.assertEqual(self.store.bulk_transition(SELLER, "pendingInvite", "pending"), 2)
        self.assertEqual(self.store.bulk_transition(SELLER, "pendingInvite", "pending"), 0)

    def test_find_overdue(self):
        now = time.time()
        late = self.store.create(_record(timeout=now - 10))
        self.store.create(_record(timeout=now + 3600))
        self.store.create(_record(timeout=now - 10, status="accepted"))
        overdue = self.store.find_overdue({"pending"}, now)
        self.assertEqual([e["id"] for e in overdue], [late["id"]])


if __name__ == "__main__":
    unittest.main()
