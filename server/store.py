"""Record storage for sealcash.

Two SQLite-backed keyed collections: users (unique on Bitcoin address) and
escrows. Status writes are conditional on the expected prior status so a
read-validate-write sequence cannot clobber a concurrent transition.
"""

import sqlite3
import json
import threading
import time
import uuid

from protocol import can_transition


ESCROW_COLUMNS = (
    "id", "buyer_id", "seller_id", "btc_amount", "asset_type", "chain",
    "contract_address", "amount", "collection_address", "token_id",
    "sender_address", "receiver_address", "refund_address", "timeout",
    "status", "taproot_address", "utxo_id", "charm_id", "submitted_tx_hash",
    "verified_transfer", "attestation", "created_at", "updated_at",
)

MUTABLE_FIELDS = {"taproot_address", "utxo_id", "charm_id", "submitted_tx_hash",
                  "verified_transfer", "attestation"}

_JSON_FIELDS = {"verified_transfer", "attestation"}

_UNVERIFIED = (" AND (verified_transfer IS NULL"
               " OR json_extract(verified_transfer, '$.verified') IS NOT 1)")


class UserStore:
    """SQLite-backed user records keyed by Bitcoin address."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                btc_address TEXT PRIMARY KEY,
                addresses TEXT NOT NULL DEFAULT '{}',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.commit()

    def get(self, btc_address: str) -> dict | None:
        row = self.db.execute("SELECT * FROM users WHERE btc_address = ?", (btc_address,)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def get_or_create(self, btc_address: str) -> tuple[dict, bool]:
        """Return (user, created). Creation is idempotent under concurrency."""
        with self._lock:
            now = time.time()
            cursor = self.db.execute(
                "INSERT OR IGNORE INTO users (btc_address, addresses, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (btc_address, json.dumps({"bitcoin": btc_address}), now, now),
            )
            self.db.commit()
            created = cursor.rowcount > 0
        return self.get(btc_address), created

    def update_addresses(self, btc_address: str, addresses: dict[str, str]) -> dict | None:
        """Merge chain addresses into the user's mapping. The bitcoin entry
        always stays the user's key address."""
        with self._lock:
            row = self.db.execute("SELECT addresses FROM users WHERE btc_address = ?", (btc_address,)).fetchone()
            if not row:
                return None
            merged = {**json.loads(row["addresses"]), **addresses, "bitcoin": btc_address}
            self.db.execute(
                "UPDATE users SET addresses = ?, updated_at = ? WHERE btc_address = ?",
                (json.dumps(merged), time.time(), btc_address),
            )
            self.db.commit()
        return self.get(btc_address)

    def _row_to_dict(self, row) -> dict:
        return {
            "btc_address": row["btc_address"],
            "addresses": json.loads(row["addresses"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def close(self):
        self.db.close()


class EscrowStore:
    """SQLite-backed escrow records with state machine enforcement."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS escrows (
                id TEXT PRIMARY KEY,
                buyer_id TEXT NOT NULL,
                seller_id TEXT NOT NULL,
                btc_amount TEXT NOT NULL,
                asset_type TEXT NOT NULL,
                chain TEXT NOT NULL,
                contract_address TEXT,
                amount TEXT,
                collection_address TEXT,
                token_id TEXT,
                sender_address TEXT NOT NULL,
                receiver_address TEXT NOT NULL,
                refund_address TEXT,
                timeout REAL NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                taproot_address TEXT,
                utxo_id TEXT,
                charm_id TEXT,
                submitted_tx_hash TEXT,
                verified_transfer TEXT,
                attestation TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_escrow_buyer ON escrows(buyer_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_escrow_seller ON escrows(seller_id, status)")
        self.db.commit()

    def create(self, record: dict) -> dict:
        """Store a new escrow. Returns the stored record including its ID."""
        escrow_id = uuid.uuid4().hex[:16]
        now = time.time()
        values = {col: record.get(col) for col in ESCROW_COLUMNS}
        values.update({"id": escrow_id, "created_at": now, "updated_at": now})
        for col in _JSON_FIELDS:
            if values[col] is not None:
                values[col] = json.dumps(values[col])
        placeholders = ", ".join("?" for _ in ESCROW_COLUMNS)
        with self._lock:
            self.db.execute(
                f"INSERT INTO escrows ({', '.join(ESCROW_COLUMNS)}) VALUES ({placeholders})",
                tuple(values[col] for col in ESCROW_COLUMNS),
            )
            self.db.commit()
        return self.get(escrow_id)

    def get(self, escrow_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM escrows WHERE id = ?", (escrow_id,)).fetchone()
        if not row:
            return None
        return self._row_to_dict(row)

    def find_for_party(self, btc_address: str, role: str | None = None,
                       status: str | None = None) -> list[dict]:
        """Escrows involving *btc_address*, newest first.

        role narrows to buyer-only or seller-only; status narrows further.
        """
        if role == "buyer":
            clause, params = "buyer_id = ?", [btc_address]
        elif role == "seller":
            clause, params = "seller_id = ?", [btc_address]
        else:
            clause, params = "(buyer_id = ? OR seller_id = ?)", [btc_address, btc_address]
        if status:
            clause += " AND status = ?"
            params.append(status)
        rows = self.db.execute(
            f"SELECT * FROM escrows WHERE {clause} ORDER BY created_at DESC, rowid DESC",
            params,
        ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def find_overdue(self, statuses: set[str], now: float) -> list[dict]:
        """Escrows in one of *statuses* whose timeout has passed."""
        marks = ", ".join("?" for _ in statuses)
        rows = self.db.execute(
            f"SELECT * FROM escrows WHERE status IN ({marks}) AND timeout <= ? ORDER BY timeout",
            (*sorted(statuses), now),
        ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def update_status(self, escrow_id: str, from_status: str, to_status: str,
                      fields: dict | None = None, unverified_only: bool = False) -> bool:
        """Atomically move an escrow from *from_status* to *to_status*.

        Only succeeds if the stored status still equals *from_status*.
        utxo_id can only be written while it is unset. With *unverified_only*
        the move also fails once a verified transfer has been recorded.
        """
        if not can_transition(from_status, to_status):
            raise ValueError(f"Invalid state transition: {from_status} -> {to_status}")
        fields = dict(fields or {})
        sets, params = self._set_clause(fields)
        sets = ["status = ?"] + sets
        params = [to_status] + params
        where = "id = ? AND status = ?"
        if "utxo_id" in fields:
            where += " AND utxo_id IS NULL"
        if unverified_only:
            where += _UNVERIFIED
        with self._lock:
            cursor = self.db.execute(
                f"UPDATE escrows SET {', '.join(sets)} WHERE {where}",
                (*params, escrow_id, from_status),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def update_fields(self, escrow_id: str, allowed_statuses: set[str], fields: dict,
                      unverified_only: bool = False) -> bool:
        """Write non-status fields while the escrow is in one of *allowed_statuses*.

        With *unverified_only* the write fails once a verified transfer has
        been recorded.
        """
        if "utxo_id" in fields:
            raise ValueError("utxo_id is only written by a locking transition")
        sets, params = self._set_clause(fields)
        marks = ", ".join("?" for _ in allowed_statuses)
        where = f"id = ? AND status IN ({marks})"
        if unverified_only:
            where += _UNVERIFIED
        with self._lock:
            cursor = self.db.execute(
                f"UPDATE escrows SET {', '.join(sets)} WHERE {where}",
                (*params, escrow_id, *sorted(allowed_statuses)),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def rollback_status(self, escrow_id: str, claimed_status: str, prior_status: str,
                        claimed_fields: dict | None = None) -> bool:
        """Undo a transition whose follow-up broadcast failed.

        Moves the escrow from *claimed_status* back to *prior_status* and
        clears *claimed_fields*, but only while the row still holds exactly
        what the claim wrote. This is the one write allowed to go against
        the state graph.
        """
        claimed_fields = dict(claimed_fields or {})
        sets, params = self._set_clause({k: None for k in claimed_fields})
        where, match = ["id = ?", "status = ?"], [escrow_id, claimed_status]
        for key, value in claimed_fields.items():
            where.append(f"{key} = ?")
            match.append(json.dumps(value) if key in _JSON_FIELDS else value)
        with self._lock:
            cursor = self.db.execute(
                f"UPDATE escrows SET status = ?, {', '.join(sets)} WHERE {' AND '.join(where)}",
                (prior_status, *params, *match),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def bulk_transition(self, seller_id: str, from_status: str, to_status: str) -> int:
        """Move every escrow for *seller_id* in *from_status* to *to_status*.
        Returns the number of rows modified."""
        if not can_transition(from_status, to_status):
            raise ValueError(f"Invalid state transition: {from_status} -> {to_status}")
        with self._lock:
            cursor = self.db.execute(
                "UPDATE escrows SET status = ?, updated_at = ? WHERE seller_id = ? AND status = ?",
                (to_status, time.time(), seller_id, from_status),
            )
            self.db.commit()
            return cursor.rowcount

    def _set_clause(self, fields: dict) -> tuple[list[str], list]:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable: {', '.join(sorted(unknown))}")
        sets, params = [], []
        for key, value in fields.items():
            sets.append(f"{key} = ?")
            params.append(json.dumps(value) if key in _JSON_FIELDS and value is not None else value)
        sets.append("updated_at = ?")
        params.append(time.time())
        return sets, params

    def _row_to_dict(self, row) -> dict:
        record = {col: row[col] for col in ESCROW_COLUMNS}
        for col in _JSON_FIELDS:
            if record[col] is not None:
                record[col] = json.loads(record[col])
        return record

    def close(self):
        self.db.close()
