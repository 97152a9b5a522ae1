"""Shared crypto utilities for sealcash.

Provides:
- SHA-256 digests and canonical JSON for deterministic signing
- HMAC-SHA256 signing (bearer tokens)
- Ed25519 attestor identity (keypair generation, signing, verification)
- Bitcoin signed-message verification (wallet login)
- Bitcoin txid computation for raw transactions

Dependencies: hashlib, hmac, json, os, cryptography, python-bitcoinlib
"""

import base64
import hashlib
import hmac as hmac_mod
import json
import os

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------

def sha256_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def canonical_json(obj: dict) -> bytes:
    """Canonical JSON: sorted keys, no extra whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


# ---------------------------------------------------------------------------
# HMAC-SHA256 signing -- bearer tokens
# ---------------------------------------------------------------------------

def hmac_sign(key: bytes, data: bytes) -> str:
    """HMAC-SHA256 of *data* under *key*, returned as hex."""
    return hmac_mod.new(key, data, hashlib.sha256).hexdigest()


def hmac_verify(key: bytes, data: bytes, signature: str) -> bool:
    """Constant-time comparison of HMAC-SHA256 signature."""
    expected = hmac_sign(key, data)
    return hmac_mod.compare_digest(expected, signature)


# ---------------------------------------------------------------------------
# Ed25519 attestor identity
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def load_ed25519_key(path: str) -> bytes:
    """Load a 32-byte raw Ed25519 private key from file."""
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != 32:
        raise ValueError(f"Expected 32-byte Ed25519 key, got {len(data)} bytes")
    return data


def save_ed25519_key(path: str, key: bytes) -> None:
    """Save a 32-byte raw Ed25519 private key to file (mode 0600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key)
    finally:
        os.close(fd)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Sign data with Ed25519 private key. Returns 128-char hex signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    sig = privkey.sign(data)
    return sig.hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    from cryptography.exceptions import InvalidSignature
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(bytes.fromhex(sig_hex), data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Bitcoin -- wallet message signatures and txids
# ---------------------------------------------------------------------------

BECH32_HRPS = {"bc", "tb", "bcrt"}
P2PKH_VERSIONS = {0, 111}  # mainnet, testnet
P2SH_VERSIONS = {5, 196}


def _address_matches(address: str, pubkey: bytes) -> bool:
    """True if *address* is P2PKH, P2SH-P2WPKH or P2WPKH for *pubkey*, on
    any network."""
    from bitcoin import segwit_addr
    from bitcoin.base58 import CBase58Data
    from bitcoin.core import Hash160

    h160 = Hash160(pubkey)
    hrp = address.rpartition("1")[0].lower()
    if hrp in BECH32_HRPS:
        witver, program = segwit_addr.decode(hrp, address)
        return witver == 0 and program is not None and bytes(program) == h160
    data = CBase58Data(address)
    if data.nVersion in P2PKH_VERSIONS:
        return bytes(data) == h160
    if data.nVersion in P2SH_VERSIONS:
        return bytes(data) == Hash160(b"\x00\x14" + h160)
    return False


def verify_bitcoin_message(address: str, message: str, signature: str) -> bool:
    """Verify a base64 compact signature over *message* (Bitcoin signed-message
    format) against *address*.

    The signer's public key is recovered from the signature and its hash160
    compared with the address payload, so legacy, nested-segwit and native
    segwit addresses verify on mainnet and testnets alike. Header bytes
    27-34 (legacy) and the BIP-137 segwit headers 35-42 are accepted.

    Returns False on any malformed input instead of raising.
    """
    # bitcoinlib loads its native backend on import; defer until first login
    from bitcoin.core.key import CPubKey
    from bitcoin.signmessage import BitcoinMessage
    try:
        sig = base64.b64decode(signature, validate=True)
        if len(sig) != 65 or not 27 <= sig[0] <= 42:
            return False
        header = sig[0]
        if header >= 35:
            # segwit headers always mean a compressed key
            header = 31 + ((header - 27) & 3)
        pubkey = CPubKey.recover_compact(BitcoinMessage(message).GetHash(), bytes([header]) + sig[1:])
        if pubkey is None:
            return False
        return _address_matches(address, bytes(pubkey))
    except Exception:
        return False


def bitcoin_txid(raw_tx_hex: str) -> str:
    """Compute the txid (big-endian hex) of a raw serialized transaction.

    Witness data is excluded, so this is stable for segwit transactions too.
    Raises ValueError if *raw_tx_hex* is not a valid transaction.
    """
    from bitcoin.core import CTransaction, b2lx, x
    try:
        tx = CTransaction.deserialize(x(raw_tx_hex))
    except Exception as e:
        raise ValueError(f"Invalid raw transaction: {e}") from e
    return b2lx(tx.GetTxid())
