"""Shared constants and interfaces for the sealcash escrow protocol.

All modules import from here to avoid circular dependencies.
"""

from decimal import Decimal
from enum import Enum

# --- Protocol Constants ---

# Domain tag: prefixes auth challenges and seeds covenant app ids
DOMAIN_TAG = "sealcash"

SATS_PER_BTC = 10**8
LAMPORTS_PER_SOL = Decimal(10**9)
MIST_PER_SUI = Decimal(10**9)

# Ledger-model chains convert base units to decimals; absorb rounding
AMOUNT_TOLERANCE = Decimal("0.000001")

# Auth
CHALLENGE_TTL_SECONDS = 5 * 60
TOKEN_MAX_AGE_SECONDS = 24 * 60 * 60

# Covenant / prover
SPELL_VERSION = 2
COVENANT_OUTPUT_SATS = 1000
DEFAULT_FEE_RATE = 2  # sat/vB
PROVER_TIMEOUT_SECONDS = 600  # proof generation takes minutes
DEFAULT_PROVER_API = "https://v8.charms.dev/spells/prove"

# Broadcast
SEQUENTIAL_BROADCAST_DELAY = 0.1  # seconds between commit and spell legs
RELAY_BROADCAST_DELAY = 0.5
RELAY_URLS = {
    "mainnet": "https://blockstream.info/api",
    "testnet": "https://blockstream.info/testnet/api",
    "testnet4": "https://mempool.space/testnet4/api",
}
DEFAULT_BITCOIN_NETWORK = "testnet4"

# EVM event signatures (topic0)
ERC20_721_TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
ERC1155_TRANSFER_SINGLE_TOPIC = "0xc3d58168c5ae7397731d063d5bbf3d657854427343f4c083240f7aacaa2d0f62"


# --- Asset leg ---

class Chain(Enum):
    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    BNB = "bnb"
    SOLANA = "solana"
    SUI = "sui"


EVM_CHAINS = {Chain.ETHEREUM, Chain.POLYGON, Chain.BNB}


class AssetType(Enum):
    TOKEN = "token"
    NFT = "nft"


# --- Charm state tags (carried in the covenant output) ---

class CharmState(Enum):
    LOCKED = "Locked"
    RELEASED = "Released"
    REFUNDED = "Refunded"


# --- State Machine ---

class EscrowStatus(Enum):
    PENDING_INVITE = "pendingInvite"  # seller has not registered yet
    PENDING = "pending"
    ACCEPTED = "accepted"
    LOCKED = "locked"
    COMPLETED = "completed"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    EXPIRED = "expired"


# Valid state transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    EscrowStatus.PENDING_INVITE: {EscrowStatus.PENDING, EscrowStatus.EXPIRED},
    EscrowStatus.PENDING: {EscrowStatus.ACCEPTED, EscrowStatus.REJECTED, EscrowStatus.EXPIRED},
    EscrowStatus.ACCEPTED: {EscrowStatus.LOCKED, EscrowStatus.EXPIRED},
    EscrowStatus.LOCKED: {EscrowStatus.COMPLETED, EscrowStatus.REFUNDED},
    EscrowStatus.COMPLETED: set(),
    EscrowStatus.REJECTED: set(),
    EscrowStatus.REFUNDED: set(),
    EscrowStatus.EXPIRED: set(),
}

# States the seller may submit transfer proof from
PROOF_STATES = {EscrowStatus.ACCEPTED, EscrowStatus.LOCKED}

# Never-locked states the expiry sweep may close out
EXPIRABLE_STATES = {EscrowStatus.PENDING_INVITE, EscrowStatus.PENDING, EscrowStatus.ACCEPTED}


def can_transition(current: str, new: str) -> bool:
    """True if *current* -> *new* is an edge of the escrow state graph."""
    try:
        return EscrowStatus(new) in STATE_TRANSITIONS[EscrowStatus(current)]
    except ValueError:
        return False
