"""Escrow settlement engine for sealcash.

Owns the escrow state machine: creation, seller acceptance, BTC lock into a
covenant output, proof of the asset-leg transfer, then release to the seller
or refund to the buyer. TransferVerifier, CovenantBuilder and ChainBroadcaster
do the outside-world work; this module decides when they may be called.

Ownership and state are always validated before any external call. Status
writes are conditional on the prior status and are committed before any
broadcast, so an external failure or a lost race leaves the escrow where it
was and the operation can be retried.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from crypto import bitcoin_txid
from protocol import (
    AssetType, Chain, EscrowStatus, EXPIRABLE_STATES, PROOF_STATES,
)
from server.covenant import btc_to_sats, build_charm
from server.errors import AuthorizationError, BroadcastError, NotFoundError, ProverError, ValidationError

logger = logging.getLogger(__name__)

ROLES = ("buyer", "seller")


def parse_timeout(value) -> float:
    """Epoch seconds from an ISO-8601 string or a number of epoch seconds."""
    if isinstance(value, bool):
        raise ValidationError("Invalid timeout")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("timeout required")
    text = value.strip()
    try:
        return float(text)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"Invalid timeout: {value}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _positive_decimal(value, name: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number")
    if not d.is_finite() or d <= 0:
        raise ValidationError(f"{name} must be positive")
    return d


def _require(data: dict, key: str) -> str:
    val = data.get(key)
    if not isinstance(val, str) or not val.strip():
        raise ValidationError(f"{key} required")
    return val.strip()


def _validate_funding(funding_utxo: str, funding_value: int, prev_tx_hex: str, **addresses):
    txid, sep, vout = (funding_utxo or "").partition(":")
    if not sep or len(txid) != 64 or not vout.isdigit():
        raise ValidationError("funding_utxo must be txid:vout")
    try:
        bytes.fromhex(txid)
    except ValueError:
        raise ValidationError("funding_utxo must be txid:vout")
    if isinstance(funding_value, bool) or not isinstance(funding_value, int) or funding_value <= 0:
        raise ValidationError("funding_value must be a positive integer (sats)")
    if not prev_tx_hex:
        raise ValidationError("prev_tx_hex required")
    try:
        bytes.fromhex(prev_tx_hex)
    except ValueError:
        raise ValidationError("prev_tx_hex must be hex")
    for name, addr in addresses.items():
        if not addr:
            raise ValidationError(f"{name} required")


class EscrowEngine:
    """Drives escrows through the settlement state machine."""

    def __init__(self, users, escrows, verifier, covenant, broadcaster,
                 public_url: str = "", clock=time.time):
        self.users = users
        self.escrows = escrows
        self.verifier = verifier
        self.covenant = covenant
        self.broadcaster = broadcaster
        self.public_url = public_url.rstrip("/")
        self._clock = clock

    # --- Users ---

    def authenticate_user(self, btc_address: str) -> dict:
        """Get-or-create the user for a freshly authenticated address and
        activate any invites waiting for it."""
        user, created = self.users.get_or_create(btc_address)
        activated = self.activate_pending_invites(btc_address)
        if created:
            logger.info("New user %s (%d invites activated)", btc_address, activated)
        return {"user": user, "is_new_user": created, "activated_invites": activated}

    def get_user(self, btc_address: str) -> dict:
        user = self.users.get(btc_address)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def update_addresses(self, btc_address: str, addresses: dict) -> dict:
        if not isinstance(addresses, dict) or not addresses:
            raise ValidationError("addresses required")
        known = {c.value for c in Chain} | {"bitcoin"}
        clean = {}
        for chain, addr in addresses.items():
            if chain not in known:
                raise ValidationError(f"Unsupported chain: {chain}")
            if not isinstance(addr, str) or not addr.strip():
                raise ValidationError(f"Address for {chain} must be a non-empty string")
            if chain != "bitcoin":
                clean[chain] = addr.strip()
        user = self.users.update_addresses(btc_address, clean)
        if user is None:
            raise NotFoundError("User not found")
        return user

    # --- Lookup ---

    def _load(self, escrow_id: str) -> dict:
        escrow = self.escrows.get(escrow_id)
        if escrow is None:
            raise NotFoundError("Escrow not found")
        return escrow

    def _load_for(self, escrow_id: str, caller: str, role: str) -> dict:
        escrow = self._load(escrow_id)
        if escrow[f"{role}_id"] != caller:
            raise AuthorizationError(f"Only the {role} can perform this action")
        return escrow

    def get_escrow(self, escrow_id: str) -> dict:
        return self._load(escrow_id)

    def list_escrows(self, btc_address: str, role: str | None = None,
                     status: str | None = None) -> list[dict]:
        if role and role not in ROLES:
            raise ValidationError("role must be buyer or seller")
        if status:
            try:
                EscrowStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown status: {status}")
        return self.escrows.find_for_party(btc_address, role or None, status or None)

    def pending_invites(self, btc_address: str) -> list[dict]:
        """Escrows awaiting this seller's accept/reject decision."""
        return self.escrows.find_for_party(btc_address, "seller", EscrowStatus.PENDING.value)

    # --- Transitions ---

    def _transition(self, escrow: dict, to_status: EscrowStatus, fields: dict | None = None,
                    unverified_only: bool = False) -> dict:
        ok = self.escrows.update_status(escrow["id"], escrow["status"], to_status.value,
                                        fields, unverified_only=unverified_only)
        if not ok:
            raise ValidationError("Escrow state changed concurrently, retry")
        logger.info("Escrow %s: %s -> %s", escrow["id"], escrow["status"], to_status.value)
        return self.escrows.get(escrow["id"])

    def _expect_status(self, escrow: dict, status: EscrowStatus, message: str):
        if escrow["status"] != status.value:
            raise ValidationError(message)

    def _expired(self, escrow: dict) -> bool:
        return self._clock() >= escrow["timeout"]

    def create_escrow(self, buyer_id: str, data: dict) -> dict:
        """Validate and store a new escrow.

        Returns {escrow, seller_registered, invite_link}. The invite link is
        only set when the seller has not registered yet.
        """
        seller_id = _require(data, "seller_btc_address")
        if seller_id == buyer_id:
            raise ValidationError("Buyer and seller cannot be the same")
        if self.users.get(buyer_id) is None:
            raise ValidationError("Buyer not registered")

        btc_amount = _positive_decimal(data.get("btc_amount"), "btc_amount")
        if btc_to_sats(btc_amount) < 1:
            raise ValidationError("btc_amount is below one satoshi")
        try:
            asset_type = AssetType(data.get("asset_type"))
        except ValueError:
            raise ValidationError("asset_type must be token or nft")
        try:
            chain = Chain(data.get("chain"))
        except ValueError:
            raise ValidationError(f"Unsupported chain: {data.get('chain')}")

        record = {
            "buyer_id": buyer_id,
            "seller_id": seller_id,
            "btc_amount": str(btc_amount),
            "asset_type": asset_type.value,
            "chain": chain.value,
            "sender_address": _require(data, "sender_address"),
            "receiver_address": _require(data, "receiver_address"),
            "refund_address": (data.get("refund_address") or "").strip() or buyer_id,
        }
        if asset_type is AssetType.TOKEN:
            record["amount"] = _require(data, "amount")
            _positive_decimal(record["amount"], "amount")
            record["contract_address"] = (data.get("contract_address") or "").strip() or None
        else:
            record["token_id"] = _require(data, "token_id")
            record["collection_address"] = _require(data, "collection_address")

        timeout = parse_timeout(data.get("timeout"))
        if timeout <= self._clock():
            raise ValidationError("timeout must be in the future")
        record["timeout"] = timeout

        seller_registered = self.users.get(seller_id) is not None
        record["status"] = (EscrowStatus.PENDING if seller_registered
                            else EscrowStatus.PENDING_INVITE).value
        escrow = self.escrows.create(record)
        logger.info("Escrow %s created by %s (%s)", escrow["id"], buyer_id, escrow["status"])
        return {
            "escrow": escrow,
            "seller_registered": seller_registered,
            "invite_link": None if seller_registered else f"{self.public_url}/invite/{escrow['id']}",
        }

    def activate_pending_invites(self, seller_id: str) -> int:
        """Move every pendingInvite escrow naming *seller_id* to pending."""
        count = self.escrows.bulk_transition(
            seller_id, EscrowStatus.PENDING_INVITE.value, EscrowStatus.PENDING.value)
        if count:
            logger.info("Activated %d pending invites for %s", count, seller_id)
        return count

    def accept(self, escrow_id: str, seller_id: str) -> dict:
        escrow = self._load_for(escrow_id, seller_id, "seller")
        self._expect_status(escrow, EscrowStatus.PENDING, "Escrow not pending")
        if self._expired(escrow):
            raise ValidationError("Escrow expired")
        return self._transition(escrow, EscrowStatus.ACCEPTED)

    def reject(self, escrow_id: str, seller_id: str) -> dict:
        escrow = self._load_for(escrow_id, seller_id, "seller")
        self._expect_status(escrow, EscrowStatus.PENDING, "Escrow not pending")
        return self._transition(escrow, EscrowStatus.REJECTED)

    async def _settle(self, escrow: dict, to_status: EscrowStatus, fields: dict | None,
                      commit_tx: str, spell_tx: str, broadcast: bool,
                      unverified_only: bool = False) -> dict:
        """Commit the transition, then (optionally) broadcast the tx pair.

        The conditional write comes first, so nothing reaches the chain for an
        escrow that expired or settled while the spell was being proven. A
        failed broadcast rolls the claim back and the operation can be retried.
        """
        updated = self._transition(escrow, to_status, fields, unverified_only=unverified_only)
        txids = None
        if broadcast:
            try:
                txids = await self.broadcaster.broadcast(commit_tx, spell_tx)
            except BroadcastError:
                if self.escrows.rollback_status(escrow["id"], to_status.value, escrow["status"], fields):
                    logger.warning("Escrow %s: broadcast failed, back to %s", escrow["id"], escrow["status"])
                else:
                    logger.error("Escrow %s: broadcast failed and the %s claim could not be undone",
                                 escrow["id"], to_status.value)
                raise
        return {"escrow": updated, "commit_tx": commit_tx, "spell_tx": spell_tx, "broadcast": txids}

    async def lock_btc(self, escrow_id: str, buyer_id: str, funding_utxo: str, funding_value: int,
                       prev_tx_hex: str, output_address: str, change_address: str,
                       broadcast: bool = False) -> dict:
        """Build (and optionally broadcast) the covenant output holding the BTC."""
        escrow = self._load_for(escrow_id, buyer_id, "buyer")
        self._expect_status(escrow, EscrowStatus.ACCEPTED, "Escrow not accepted by seller")
        if self._expired(escrow):
            raise ValidationError("Escrow expired")
        _validate_funding(funding_utxo, funding_value, prev_tx_hex,
                          output_address=output_address, change_address=change_address)

        charm = build_charm(escrow)
        commit_tx, spell_tx = await self.covenant.build_lock(
            escrow_id, charm, funding_utxo, funding_value, prev_tx_hex, output_address, change_address)
        try:
            commit_txid = bitcoin_txid(commit_tx)
        except ValueError as e:
            raise ProverError(f"Prover returned an undecodable commit transaction: {e}") from e

        # covenant output is output 0 of the commit transaction
        result = await self._settle(escrow, EscrowStatus.LOCKED, {
            "utxo_id": f"{commit_txid}:0",
            "taproot_address": output_address,
            "charm_id": self.covenant.app_string(escrow_id),
        }, commit_tx, spell_tx, broadcast)
        if result["broadcast"] and result["broadcast"].get("commitTxId") != commit_txid:
            logger.warning("Escrow %s: broadcaster reported commit %s, expected %s",
                           escrow_id, result["broadcast"].get("commitTxId"), commit_txid)
        return result

    async def submit_proof(self, escrow_id: str, seller_id: str, tx_hash: str) -> dict:
        """Verify the asset-leg transfer and record the outcome.

        A miss is recorded as verified=False; it is not an error, and it never
        replaces a verified transfer already on record.
        """
        escrow = self._load_for(escrow_id, seller_id, "seller")
        if escrow["status"] not in {s.value for s in PROOF_STATES}:
            raise ValidationError("Escrow is not awaiting transfer proof")
        tx_hash = (tx_hash or "").strip()
        if not tx_hash:
            raise ValidationError("tx_hash required")

        if escrow["asset_type"] == AssetType.NFT.value:
            expected, contract = escrow["token_id"], escrow["collection_address"]
        else:
            expected, contract = escrow["amount"], escrow["contract_address"]
        record = await self.verifier.verify(
            escrow["chain"], tx_hash, escrow["sender_address"], escrow["receiver_address"],
            expected, contract, escrow["asset_type"])

        verified = record is not None
        if not verified:
            logger.warning("Escrow %s: transfer %s on %s not verified", escrow_id, tx_hash, escrow["chain"])
        verified_transfer = {
            "tx_hash": tx_hash,
            "block_number": record.block_number if verified else 0,
            "timestamp": record.timestamp if verified else int(self._clock()),
            "verified": verified,
        }
        proof_states = {s.value for s in PROOF_STATES}
        ok = self.escrows.update_fields(escrow_id, proof_states, {
            "submitted_tx_hash": tx_hash,
            "verified_transfer": verified_transfer,
        }, unverified_only=not verified)
        if not ok:
            current = self._load(escrow_id)
            if current["status"] in proof_states and (current["verified_transfer"] or {}).get("verified"):
                logger.info("Escrow %s: keeping verified transfer %s", escrow_id, current["submitted_tx_hash"])
                return {"escrow": current, "verified": False}
            raise ValidationError("Escrow state changed concurrently, retry")
        return {"escrow": self.escrows.get(escrow_id), "verified": verified}

    def _party_btc_address(self, btc_address: str, role: str) -> str:
        user = self.users.get(btc_address)
        address = ((user or {}).get("addresses") or {}).get("bitcoin")
        if not address:
            raise ValidationError(f"{role.capitalize()} has no BTC address")
        return address

    async def release_btc(self, escrow_id: str, seller_id: str, funding_utxo: str,
                          funding_value: int, prev_tx_hex: str, change_address: str,
                          broadcast: bool = False) -> dict:
        """Spend the locked output to the seller under a signed attestation."""
        escrow = self._load_for(escrow_id, seller_id, "seller")
        self._expect_status(escrow, EscrowStatus.LOCKED, "BTC not locked")
        if not (escrow["verified_transfer"] or {}).get("verified"):
            raise ValidationError("Transfer not verified")
        seller_btc = self._party_btc_address(seller_id, "seller")
        _validate_funding(funding_utxo, funding_value, prev_tx_hex, change_address=change_address)

        attestation = self.covenant.sign_attestation(escrow_id, escrow["submitted_tx_hash"])
        commit_tx, spell_tx = await self.covenant.build_release(
            escrow_id, escrow["utxo_id"], build_charm(escrow), attestation, prev_tx_hex,
            seller_btc, funding_utxo, funding_value, change_address)
        return await self._settle(escrow, EscrowStatus.COMPLETED, {"attestation": attestation},
                                  commit_tx, spell_tx, broadcast)

    async def refund_btc(self, escrow_id: str, buyer_id: str, funding_utxo: str,
                         funding_value: int, prev_tx_hex: str, change_address: str,
                         current_block: int, broadcast: bool = False) -> dict:
        """Return the locked output to the buyer once the timeout has passed.

        A verified transfer takes priority: refund is refused once one is on
        record, and the final write re-checks that atomically.
        """
        escrow = self._load_for(escrow_id, buyer_id, "buyer")
        self._expect_status(escrow, EscrowStatus.LOCKED, "BTC not locked")
        if not self._expired(escrow):
            raise ValidationError("Not expired yet")
        if (escrow["verified_transfer"] or {}).get("verified"):
            raise ValidationError("Transfer already verified; seller may release")
        buyer_btc = self._party_btc_address(buyer_id, "buyer")
        if isinstance(current_block, bool) or not isinstance(current_block, int) or current_block < 0:
            raise ValidationError("current_block must be a non-negative integer")
        _validate_funding(funding_utxo, funding_value, prev_tx_hex, change_address=change_address)

        commit_tx, spell_tx = await self.covenant.build_refund(
            escrow_id, escrow["utxo_id"], build_charm(escrow), current_block, prev_tx_hex,
            escrow["refund_address"] or buyer_btc, funding_utxo, funding_value, change_address)
        return await self._settle(escrow, EscrowStatus.REFUNDED, None, commit_tx, spell_tx,
                                  broadcast, unverified_only=True)

    def expire_overdue(self) -> int:
        """Close out never-locked escrows whose timeout has passed.

        Locked escrows are left alone; their exit is release or refund.
        """
        now = self._clock()
        expired = 0
        for escrow in self.escrows.find_overdue({s.value for s in EXPIRABLE_STATES}, now):
            if self.escrows.update_status(escrow["id"], escrow["status"], EscrowStatus.EXPIRED.value):
                logger.info("Escrow %s: %s -> expired", escrow["id"], escrow["status"])
                expired += 1
        return expired
