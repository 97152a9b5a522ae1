"""Covenant transaction construction via the external charms prover.

The escrow's Bitcoin leg is a single covenant-carrying output. Each step
(lock, release, refund) is described as a spell, sent to the prover, and
comes back as a (commit_tx, spell_tx) pair of raw hex transactions that must
be broadcast together.

Release is authorized by an attestation: the engine's Ed25519 attestor key
signs "{escrow_id}:{tx_hash}" once the asset transfer has been verified.
"""

import base64
import logging
import math
from decimal import Decimal

import httpx

from crypto import ed25519_privkey_to_pubkey, ed25519_sign, ed25519_verify, sha256_hash
from protocol import (
    COVENANT_OUTPUT_SATS, CharmState, DEFAULT_FEE_RATE, DEFAULT_PROVER_API,
    DOMAIN_TAG, PROVER_TIMEOUT_SECONDS, SATS_PER_BTC, SPELL_VERSION,
)
from server.errors import ProverError

logger = logging.getLogger(__name__)


def btc_to_sats(btc_amount: str | Decimal) -> int:
    """floor(btc * 1e8)."""
    return math.floor(Decimal(str(btc_amount)) * SATS_PER_BTC)


def build_charm(escrow: dict, state: CharmState = CharmState.LOCKED) -> dict:
    """The charm payload for an escrow record."""
    return {
        "state": state.value,
        "amount": btc_to_sats(escrow["btc_amount"]),
        "buyer": escrow["buyer_id"],
        "seller": escrow["seller_id"],
        "timeout": int(escrow["timeout"]),
        "asset_request": {
            "chain": escrow["chain"],
            "contract": escrow.get("contract_address") or escrow.get("collection_address") or "",
            "amount": escrow.get("amount") or escrow.get("token_id") or "",
            "receiver": escrow["receiver_address"],
        },
    }


def _attestation_message(escrow_id: str, tx_hash: str) -> bytes:
    return f"{escrow_id}:{tx_hash}".encode("utf-8")


def _extract_tx(item) -> str | None:
    """A prover result element is raw hex, or {"bitcoin": hex}."""
    if isinstance(item, dict):
        item = item.get("bitcoin")
    if not isinstance(item, str) or not item:
        return None
    try:
        bytes.fromhex(item)
    except ValueError:
        return None
    return item


class CovenantBuilder:
    """Turns escrow terms into proven covenant transaction pairs."""

    def __init__(self, app_vk: str, attestor_privkey: bytes, app_binary: bytes = b"",
                 prover_api: str = DEFAULT_PROVER_API,
                 timeout: float = PROVER_TIMEOUT_SECONDS,
                 transport: httpx.AsyncBaseTransport | None = None):
        if not app_vk:
            raise ValueError("Covenant app verification key required")
        self.app_vk = app_vk
        self.prover_api = prover_api
        self.timeout = timeout
        self._transport = transport
        self._attestor_privkey = attestor_privkey
        self.attestor_pubkey = ed25519_privkey_to_pubkey(attestor_privkey).hex()
        self._binaries = {app_vk: base64.b64encode(app_binary).decode("ascii")} if app_binary else {}

    def app_string(self, escrow_id: str) -> str:
        app_id = sha256_hash(f"{DOMAIN_TAG}-{escrow_id}".encode("utf-8"))
        return f"e/{app_id}/{self.app_vk}"

    # --- Attestation ---

    def sign_attestation(self, escrow_id: str, tx_hash: str) -> dict:
        return {
            "escrow_id": escrow_id,
            "tx_hash": tx_hash,
            "signer": self.attestor_pubkey,
            "signature": ed25519_sign(self._attestor_privkey, _attestation_message(escrow_id, tx_hash)),
        }

    def verify_attestation(self, attestation: dict) -> bool:
        """True if *attestation* was signed by this builder's attestor key."""
        try:
            if attestation["signer"] != self.attestor_pubkey:
                return False
            return ed25519_verify(
                bytes.fromhex(attestation["signer"]),
                _attestation_message(attestation["escrow_id"], attestation["tx_hash"]),
                attestation["signature"],
            )
        except (KeyError, TypeError, ValueError):
            return False

    # --- Spells ---

    def _spell(self, escrow_id: str, ins: list, charm: dict, address: str, private_input: dict) -> dict:
        return {
            "version": SPELL_VERSION,
            "apps": {"$00": self.app_string(escrow_id)},
            "ins": ins,
            "outs": [{"address": address, "charms": {"$00": charm}, "sats": COVENANT_OUTPUT_SATS}],
            "private_inputs": {"$00": private_input},
        }

    def _request(self, spell: dict, prev_tx_hex: str, funding_utxo: str,
                 funding_value: int, change_address: str) -> dict:
        return {
            "spell": spell,
            "binaries": dict(self._binaries),
            "prev_txs": [prev_tx_hex],
            "funding_utxo": funding_utxo,
            "funding_utxo_value": funding_value,
            "change_address": change_address,
            "fee_rate": DEFAULT_FEE_RATE,
        }

    async def build_lock(self, escrow_id: str, charm: dict, funding_utxo: str, funding_value: int,
                         prev_tx_hex: str, output_address: str, change_address: str) -> tuple[str, str]:
        """Create the covenant output carrying *charm* in the Locked state."""
        locked = {**charm, "state": CharmState.LOCKED.value}
        spell = self._spell(escrow_id, [], locked, output_address, {"Create": None})
        return await self._prove(self._request(spell, prev_tx_hex, funding_utxo, funding_value, change_address))

    async def build_release(self, escrow_id: str, utxo_id: str, charm: dict, attestation: dict,
                            prev_tx_hex: str, seller_address: str, funding_utxo: str,
                            funding_value: int, change_address: str) -> tuple[str, str]:
        """Spend the locked output to the seller, authorized by *attestation*."""
        locked = {**charm, "state": CharmState.LOCKED.value}
        released = {**charm, "state": CharmState.RELEASED.value}
        spell = self._spell(escrow_id, [{"utxo_id": utxo_id, "charms": {"$00": locked}}],
                            released, seller_address, {"Release": {"attestation": attestation}})
        return await self._prove(self._request(spell, prev_tx_hex, funding_utxo, funding_value, change_address))

    async def build_refund(self, escrow_id: str, utxo_id: str, charm: dict, current_block: int,
                           prev_tx_hex: str, buyer_address: str, funding_utxo: str,
                           funding_value: int, change_address: str) -> tuple[str, str]:
        """Spend the locked output back to the buyer after the timeout."""
        locked = {**charm, "state": CharmState.LOCKED.value}
        refunded = {**charm, "state": CharmState.REFUNDED.value}
        spell = self._spell(escrow_id, [{"utxo_id": utxo_id, "charms": {"$00": locked}}],
                            refunded, buyer_address, {"Refund": {"current_block": current_block}})
        return await self._prove(self._request(spell, prev_tx_hex, funding_utxo, funding_value, change_address))

    async def _prove(self, body: dict) -> tuple[str, str]:
        """POST to the prover. Returns (commit_tx_hex, spell_tx_hex)."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(self.prover_api, json=body)
        except httpx.HTTPError as e:
            raise ProverError(f"Prover unreachable: {e}") from e

        if resp.status_code // 100 != 2:
            logger.warning("Prover rejected spell: HTTP %d", resp.status_code)
            raise ProverError(f"Prover returned HTTP {resp.status_code}: {resp.text}",
                              status_code=resp.status_code, body=resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProverError("Prover returned non-JSON response",
                              status_code=resp.status_code, body=resp.text) from e

        if not isinstance(data, list) or len(data) != 2:
            raise ProverError("Prover response is not a transaction pair",
                              status_code=resp.status_code, body=resp.text)
        commit_tx, spell_tx = _extract_tx(data[0]), _extract_tx(data[1])
        if commit_tx is None or spell_tx is None:
            raise ProverError("Prover response contains malformed transactions",
                              status_code=resp.status_code, body=resp.text)
        return commit_tx, spell_tx
