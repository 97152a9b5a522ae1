"""Bitcoin broadcast for covenant transaction pairs.

The commit transaction funds the spell transaction, so the two must reach the
mempool together. Paths, in order:

  1. submitpackage on the configured node (both legs atomically)
  2. sendrawtransaction commit, short pause, sendrawtransaction spell
  3. no node configured: POST each leg to a public esplora relay

No bitcoind library dependency -- uses raw JSON-RPC.
"""

import asyncio
import logging

import httpx
import requests

from protocol import (
    DEFAULT_BITCOIN_NETWORK, RELAY_BROADCAST_DELAY, RELAY_URLS, SEQUENTIAL_BROADCAST_DELAY,
)
from server.errors import BitcoinRPCError, BroadcastError

logger = logging.getLogger(__name__)


class ChainBroadcaster:
    def __init__(self, rpc_url: str = "", rpc_user: str = "", rpc_password: str = "",
                 network: str = DEFAULT_BITCOIN_NETWORK, relay_url: str | None = None,
                 transport: httpx.AsyncBaseTransport | None = None, sleep=asyncio.sleep):
        if network not in RELAY_URLS:
            raise ValueError(f"Unknown Bitcoin network: {network}")
        self.rpc_url = rpc_url
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.network = network
        self.relay_url = (relay_url or RELAY_URLS[network]).rstrip("/")
        self._transport = transport
        self._sleep = sleep

    @property
    def has_node(self) -> bool:
        return bool(self.rpc_url)

    # --- Node RPC ---

    def _rpc(self, method: str, params: list | None = None):
        """Make a Bitcoin Core JSON-RPC call."""
        auth = (self.rpc_user, self.rpc_password) if self.rpc_user else None
        try:
            resp = requests.post(
                self.rpc_url,
                json={"jsonrpc": "1.0", "id": "sealcash", "method": method, "params": params or []},
                auth=auth, timeout=30,
            )
        except requests.RequestException as e:
            raise BitcoinRPCError(f"Bitcoin RPC unreachable: {e}") from e
        # bitcoind answers RPC-level errors with HTTP 500 and a JSON body
        try:
            result = resp.json()
        except ValueError as e:
            raise BitcoinRPCError(f"Bitcoin RPC HTTP {resp.status_code}: {resp.text}") from e
        if not isinstance(result, dict):
            raise BitcoinRPCError(f"Bitcoin RPC malformed response: {resp.text}")
        if result.get("error"):
            error = result["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise BitcoinRPCError(f"Bitcoin RPC error: {message}")
        if resp.status_code >= 400:
            raise BitcoinRPCError(f"Bitcoin RPC HTTP {resp.status_code}: {resp.text}")
        return result.get("result")

    async def rpc(self, method: str, params: list | None = None):
        return await asyncio.to_thread(self._rpc, method, params)

    # --- Relay ---

    async def _relay_post(self, tx_hex: str) -> str:
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
            resp = await client.post(f"{self.relay_url}/tx", content=tx_hex,
                                     headers={"Content-Type": "text/plain"})
            resp.raise_for_status()
            return resp.text.strip()

    async def _relay_get(self, path: str) -> str:
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
            resp = await client.get(f"{self.relay_url}{path}")
            resp.raise_for_status()
            return resp.text.strip()

    # --- Broadcast paths ---

    async def _submit_package(self, commit_tx: str, spell_tx: str) -> dict:
        result = await self.rpc("submitpackage", [[commit_tx, spell_tx]])
        if not isinstance(result, dict):
            raise BitcoinRPCError(f"submitpackage malformed result: {result!r}")
        msg = result.get("package_msg", "success")
        if msg != "success":
            raise BitcoinRPCError(f"submitpackage rejected: {msg}")
        # keys are wtxids; txids live in the values, in submission order
        results = list((result.get("tx-results") or {}).values())
        if len(results) != 2 or not all(isinstance(r, dict) and r.get("txid") for r in results):
            raise BitcoinRPCError(f"submitpackage incomplete result: {result!r}")
        return {"commitTxId": results[0]["txid"], "spellTxId": results[1]["txid"]}

    async def _send_sequential(self, commit_tx: str, spell_tx: str) -> dict:
        commit_txid = await self.rpc("sendrawtransaction", [commit_tx])
        await self._sleep(SEQUENTIAL_BROADCAST_DELAY)
        spell_txid = await self.rpc("sendrawtransaction", [spell_tx])
        return {"commitTxId": commit_txid, "spellTxId": spell_txid}

    async def _send_relay(self, commit_tx: str, spell_tx: str) -> dict:
        commit_txid = await self._relay_post(commit_tx)
        await self._sleep(RELAY_BROADCAST_DELAY)
        spell_txid = await self._relay_post(spell_tx)
        return {"commitTxId": commit_txid, "spellTxId": spell_txid}

    async def broadcast(self, commit_tx: str, spell_tx: str) -> dict:
        """Broadcast a commit/spell pair. Returns {"commitTxId", "spellTxId"}.

        Raises BroadcastError only once every available path has failed.
        """
        if not self.has_node:
            try:
                txids = await self._send_relay(commit_tx, spell_tx)
            except httpx.HTTPError as e:
                raise BroadcastError(f"Relay broadcast failed: {e}") from e
            logger.info("Relayed pair via %s: %s", self.relay_url, txids["commitTxId"])
            return txids

        try:
            txids = await self._submit_package(commit_tx, spell_tx)
            logger.info("Package accepted: %s", txids["commitTxId"])
            return txids
        except BitcoinRPCError as e:
            logger.warning("submitpackage failed, broadcasting sequentially: %s", e)

        try:
            txids = await self._send_sequential(commit_tx, spell_tx)
        except BitcoinRPCError as e:
            raise BroadcastError(f"Broadcast failed: {e}") from e
        logger.info("Sequential broadcast accepted: %s", txids["commitTxId"])
        return txids

    # --- Chain queries ---

    async def get_raw_transaction(self, txid: str) -> str:
        if self.has_node:
            return await self.rpc("getrawtransaction", [txid, False])
        try:
            return await self._relay_get(f"/tx/{txid}/hex")
        except httpx.HTTPError as e:
            raise BitcoinRPCError(f"Relay lookup failed: {e}") from e

    async def get_block_count(self) -> int:
        if self.has_node:
            return int(await self.rpc("getblockcount"))
        try:
            return int(await self._relay_get("/blocks/tip/height"))
        except (httpx.HTTPError, ValueError) as e:
            raise BitcoinRPCError(f"Relay lookup failed: {e}") from e
