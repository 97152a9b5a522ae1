"""Off-chain transfer verification for the asset leg of an escrow.

Given a chain, a transaction reference and the expected parties/value, confirm
that the asset actually moved. Three strategy families cover the five chains:

  - EVM (ethereum, polygon, bnb): receipt + transaction via web3. With a
    contract reference, find a matching Transfer / TransferSingle log;
    without one, compare the native value transfer.
  - Solana: diff pre/post balances from getTransaction.
  - Sui: balance changes / object changes from sui_getTransactionBlock.

Strategies are plain async functions selected from a closed table keyed by
Chain. Every failure mode (missing tx, failed execution, mismatch, RPC fault)
yields None: an unverified transfer is a normal outcome, not an error.
"""

import logging
import time
from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation

import httpx
from web3 import AsyncWeb3, AsyncHTTPProvider

from protocol import (
    AMOUNT_TOLERANCE, AssetType, Chain, EVM_CHAINS, LAMPORTS_PER_SOL, MIST_PER_SUI,
    ERC20_721_TRANSFER_TOPIC, ERC1155_TRANSFER_SINGLE_TOPIC,
)

logger = logging.getLogger(__name__)


@dataclass
class TransferQuery:
    chain: Chain
    tx_hash: str
    expected_from: str
    expected_to: str
    expected: str  # amount for tokens, token id / mint / object id for NFTs
    contract: str | None
    asset_type: AssetType


@dataclass
class TransferRecord:
    """A transfer confirmed on chain."""
    chain: str
    tx_hash: str
    from_address: str
    to_address: str
    block_number: int
    timestamp: int
    amount: str | None = None
    token_id: str | None = None
    contract_address: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client for the non-EVM chains."""

    def __init__(self, url: str, timeout: float = 30, transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def call(self, method: str, params: list):
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, json={
                "jsonrpc": "2.0", "id": 1, "method": method, "params": params,
            })
            resp.raise_for_status()
            data = resp.json()
        if data.get("error"):
            raise RuntimeError(f"RPC error: {data['error']}")
        return data.get("result")


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def _hex(value) -> str:
    """Normalize HexBytes / bytes / str to lowercase 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def _hex_int(value) -> int:
    h = _hex(value)
    return int(h, 16) if len(h) > 2 else 0


def _topic_address(topic) -> str:
    """Indexed address topics are left-padded to 32 bytes."""
    return "0x" + _hex(topic)[-40:]


def _same_address(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _parse_int(value) -> int | None:
    text = str(value).strip()
    try:
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    except ValueError:
        return None


def _parse_decimal(value) -> Decimal | None:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        return None


def _close_enough(actual: Decimal, expected: Decimal) -> bool:
    return abs(actual - expected) <= AMOUNT_TOLERANCE


# ---------------------------------------------------------------------------
# EVM family
# ---------------------------------------------------------------------------

def _decode_nft_log(log) -> tuple[str, str, int] | None:
    """(from, to, token_id) for ERC-721 Transfer or ERC-1155 TransferSingle."""
    topics = log.get("topics") or []
    if len(topics) != 4:
        return None
    topic0 = _hex(topics[0])
    if topic0 == ERC20_721_TRANSFER_TOPIC:
        return _topic_address(topics[1]), _topic_address(topics[2]), _hex_int(topics[3])
    if topic0 == ERC1155_TRANSFER_SINGLE_TOPIC:
        # topics[1] is the operator; data = id (word 0) || value (word 1)
        data = _hex(log.get("data") or b"")[2:]
        if len(data) < 64:
            return None
        return _topic_address(topics[2]), _topic_address(topics[3]), int(data[:64], 16)
    return None


def _decode_fungible_log(log) -> tuple[str, str, int] | None:
    """(from, to, amount) for an ERC-20 Transfer log."""
    topics = log.get("topics") or []
    if len(topics) != 3 or _hex(topics[0]) != ERC20_721_TRANSFER_TOPIC:
        return None
    return _topic_address(topics[1]), _topic_address(topics[2]), _hex_int(log.get("data") or b"")


async def _verify_evm(w3, q: TransferQuery) -> TransferRecord | None:
    expected = _parse_int(q.expected)
    if expected is None:
        return None

    receipt = await w3.eth.get_transaction_receipt(q.tx_hash)
    if not receipt or receipt.get("status") != 1:
        return None
    tx = await w3.eth.get_transaction(q.tx_hash)
    if not tx:
        return None
    block_number = int(receipt["blockNumber"])
    block = await w3.eth.get_block(block_number)
    timestamp = int(block["timestamp"])

    base = dict(chain=q.chain.value, tx_hash=q.tx_hash, block_number=block_number, timestamp=timestamp)

    if q.contract:
        decode = _decode_nft_log if q.asset_type is AssetType.NFT else _decode_fungible_log
        for log in receipt.get("logs") or []:
            if not _same_address(_hex(log.get("address", "")), q.contract):
                continue
            decoded = decode(log)
            if decoded is None:
                continue
            sender, receiver, value = decoded
            if (_same_address(sender, q.expected_from) and _same_address(receiver, q.expected_to)
                    and value == expected):
                if q.asset_type is AssetType.NFT:
                    return TransferRecord(from_address=sender, to_address=receiver, token_id=str(value),
                                          contract_address=q.contract, **base)
                return TransferRecord(from_address=sender, to_address=receiver, amount=str(value),
                                      contract_address=q.contract, **base)
        return None

    # Native value transfer (no contract): only meaningful for fungible legs
    if q.asset_type is AssetType.NFT:
        return None
    sender, receiver = tx.get("from"), tx.get("to")
    if not (_same_address(sender, q.expected_from) and _same_address(receiver, q.expected_to)):
        return None
    if int(tx.get("value", 0)) != expected:
        return None
    return TransferRecord(from_address=sender, to_address=receiver, amount=str(expected), **base)


# ---------------------------------------------------------------------------
# Solana
# ---------------------------------------------------------------------------

def _token_balance(balances: list, owner: str, mint: str) -> Decimal:
    total = Decimal(0)
    for b in balances:
        if b.get("owner") == owner and b.get("mint") == mint:
            ui = b.get("uiTokenAmount") or {}
            amount = _parse_decimal(ui.get("uiAmountString") or ui.get("uiAmount") or "0")
            total += amount or Decimal(0)
    return total


async def _verify_solana(client, q: TransferQuery) -> TransferRecord | None:
    tx = await client.call("getTransaction", [q.tx_hash, {
        "encoding": "json", "commitment": "confirmed", "maxSupportedTransactionVersion": 0,
    }])
    if not tx or not tx.get("meta") or tx["meta"].get("err") is not None:
        return None
    meta = tx["meta"]
    pre_tokens = meta.get("preTokenBalances") or []
    post_tokens = meta.get("postTokenBalances") or []
    base = dict(chain=q.chain.value, tx_hash=q.tx_hash, from_address=q.expected_from,
                to_address=q.expected_to, block_number=int(tx.get("slot") or 0),
                timestamp=int(tx.get("blockTime") or time.time()))

    if q.asset_type is AssetType.NFT:
        # NFT mint address is the token id; ownership record must show exactly one
        if _token_balance(post_tokens, q.expected_to, q.expected) != 1:
            return None
        return TransferRecord(token_id=q.expected, contract_address=q.expected, **base)

    expected = _parse_decimal(q.expected)
    if expected is None:
        return None

    if q.contract:
        received = (_token_balance(post_tokens, q.expected_to, q.contract)
                    - _token_balance(pre_tokens, q.expected_to, q.contract))
        sent = (_token_balance(pre_tokens, q.expected_from, q.contract)
                - _token_balance(post_tokens, q.expected_from, q.contract))
        if not _close_enough(received, expected) or sent < expected - AMOUNT_TOLERANCE:
            return None
        return TransferRecord(amount=str(received), contract_address=q.contract, **base)

    message = (tx.get("transaction") or {}).get("message") or {}
    loaded = meta.get("loadedAddresses") or {}
    keys = list(message.get("accountKeys") or []) + list(loaded.get("writable") or []) + list(loaded.get("readonly") or [])
    if q.expected_from not in keys or q.expected_to not in keys:
        return None
    from_idx, to_idx = keys.index(q.expected_from), keys.index(q.expected_to)
    pre, post = meta.get("preBalances") or [], meta.get("postBalances") or []
    if max(from_idx, to_idx) >= min(len(pre), len(post)):
        return None
    received = Decimal(post[to_idx] - pre[to_idx]) / LAMPORTS_PER_SOL
    sent = Decimal(pre[from_idx] - post[from_idx]) / LAMPORTS_PER_SOL  # includes fee if payer
    if not _close_enough(received, expected) or sent < expected - AMOUNT_TOLERANCE:
        return None
    return TransferRecord(amount=str(received), **base)


# ---------------------------------------------------------------------------
# Sui
# ---------------------------------------------------------------------------

def _owner_address(owner) -> str | None:
    if isinstance(owner, dict):
        return owner.get("AddressOwner")
    return None


async def _verify_sui(client, q: TransferQuery) -> TransferRecord | None:
    tx = await client.call("sui_getTransactionBlock", [q.tx_hash, {
        "showInput": True, "showEffects": True,
        "showBalanceChanges": True, "showObjectChanges": True,
    }])
    if not tx:
        return None
    status = ((tx.get("effects") or {}).get("status") or {}).get("status")
    if status != "success":
        return None
    sender = (((tx.get("transaction") or {}).get("data")) or {}).get("sender")
    if sender is not None and not _same_address(sender, q.expected_from):
        return None

    base = dict(chain=q.chain.value, tx_hash=q.tx_hash, from_address=q.expected_from,
                to_address=q.expected_to, block_number=int(tx.get("checkpoint") or 0),
                timestamp=int(tx.get("timestampMs") or 0) // 1000)

    if q.asset_type is AssetType.NFT:
        for change in tx.get("objectChanges") or []:
            if change.get("objectId") != q.expected:
                continue
            kind = change.get("type")
            if kind == "transferred":
                new_owner = _owner_address(change.get("recipient"))
            elif kind == "mutated":
                new_owner = _owner_address(change.get("owner"))
            else:
                continue
            if _same_address(new_owner, q.expected_to):
                return TransferRecord(token_id=q.expected, contract_address=change.get("objectType"), **base)
        return None

    expected = _parse_decimal(q.expected)
    if expected is None:
        return None
    for change in tx.get("balanceChanges") or []:
        if not _same_address(_owner_address(change.get("owner")), q.expected_to):
            continue
        if q.contract and change.get("coinType") != q.contract:
            continue
        raw = _parse_int(change.get("amount", "0"))
        if raw is None or raw <= 0:
            continue
        amount = Decimal(raw) / MIST_PER_SUI
        if _close_enough(amount, expected):
            return TransferRecord(amount=str(amount), contract_address=change.get("coinType"), **base)
    return None


_STRATEGIES = {
    Chain.ETHEREUM: _verify_evm,
    Chain.POLYGON: _verify_evm,
    Chain.BNB: _verify_evm,
    Chain.SOLANA: _verify_solana,
    Chain.SUI: _verify_sui,
}


class TransferVerifier:
    """Dispatches verification to the strategy for each chain.

    clients maps Chain -> chain client: an AsyncWeb3 instance for EVM chains,
    a JsonRpcClient (anything with ``async call(method, params)``) otherwise.
    """

    def __init__(self, clients: dict[Chain, object] | None = None):
        self.clients = dict(clients or {})

    @classmethod
    def from_rpc_urls(cls, urls: dict[str, str]) -> "TransferVerifier":
        clients = {}
        for name, url in urls.items():
            chain = Chain(name)
            if chain in EVM_CHAINS:
                clients[chain] = AsyncWeb3(AsyncHTTPProvider(url))
            else:
                clients[chain] = JsonRpcClient(url)
        return cls(clients)

    async def verify(self, chain: str | Chain, tx_hash: str, expected_from: str,
                     expected_to: str, expected: str, contract: str | None = None,
                     asset_type: str | AssetType = AssetType.TOKEN) -> TransferRecord | None:
        """Confirm the transfer, or return None. Never raises."""
        try:
            chain = Chain(chain)
            asset_type = AssetType(asset_type)
        except ValueError:
            return None
        client = self.clients.get(chain)
        if client is None:
            logger.warning("No client configured for chain %s", chain.value)
            return None
        if not tx_hash or not expected_from or not expected_to or not expected:
            return None

        query = TransferQuery(chain=chain, tx_hash=tx_hash, expected_from=expected_from,
                              expected_to=expected_to, expected=str(expected),
                              contract=contract or None, asset_type=asset_type)
        try:
            return await _STRATEGIES[chain](client, query)
        except Exception:
            logger.debug("Verification fault on %s for %s", chain.value, tx_hash, exc_info=True)
            return None
