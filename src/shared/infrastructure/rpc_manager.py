"""
RPC Failover Client
===================
Ordered pool of Solana RPC endpoints with per-call failover.

Every call starts at the current primary endpoint. Transient failures
(timeouts, HTTP 429 / 5xx, dropped connections) move the call to the next
endpoint; each endpoint is tried at most once per call. A failure where
the node evaluated a transaction and refused it (preflight or simulation
rejection) is returned immediately without touching other endpoints. JSON-RPC
errors on reads are treated as transient.

Nothing here raises for network conditions: every call returns an
RpcOutcome carrying either the value or an ErrorCode.

Usage:
    client = EndpointFailoverClient(Settings.RPC_ENDPOINTS)
    outcome = await client.get_latest_blockhash()
    if outcome.ok:
        blockhash = outcome.value
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from config.settings import Settings
from src.shared.execution.execution_result import ErrorCode
from src.shared.system.logging import Logger


class TransientRpcError(Exception):
    """Endpoint answered with something other than a usable result."""


# Errors that say nothing about the request itself, only the endpoint
TRANSIENT_ERRORS = (
    SolanaRpcException,
    httpx.HTTPError,
    asyncio.TimeoutError,
    ConnectionError,
    TransientRpcError,
)

# Failures that prove the transaction never reached a node
UNDELIVERED_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, ConnectionError)


@dataclass
class RpcOutcome:
    """Value or error from one failover call."""

    ok: bool
    value: Any = None
    error_code: Optional[ErrorCode] = None
    error_message: Optional[str] = None
    endpoint: Optional[str] = None
    attempts: int = 0
    # A send failed in a way that does not rule out the node accepting it
    maybe_delivered: bool = False


@dataclass(frozen=True)
class AccountSnapshot:
    """Raw account state as read from the chain."""

    address: str
    data: bytes
    lamports: int
    owner: str

    @property
    def fingerprint(self) -> str:
        """Digest of the account bytes; changes whenever the account is written."""
        return hashlib.sha256(self.data + self.lamports.to_bytes(8, "little")).hexdigest()


def _default_client_factory(url: str) -> AsyncClient:
    return AsyncClient(url, commitment=Confirmed, timeout=Settings.RPC_TIMEOUT_SEC)


def _may_have_delivered(error: Exception) -> bool:
    cause = error.__cause__ if isinstance(error, SolanaRpcException) and error.__cause__ is not None else error
    if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 429:
        return False
    return not isinstance(cause, UNDELIVERED_ERRORS)


def _unwrap(resp: Any) -> Any:
    if not hasattr(resp, "value"):
        raise TransientRpcError(f"Unexpected response: {resp!r}")
    return resp.value


class EndpointFailoverClient:
    """
    Manages the endpoint list, health stats and per-call failover.

    The endpoint that last served a call successfully becomes the primary
    for the next one.
    """

    def __init__(
        self,
        rpc_urls: List[str] = None,
        client_factory: Callable[[str], Any] = None,
        timeout: float = None,
    ):
        urls = rpc_urls if rpc_urls is not None else Settings.RPC_ENDPOINTS

        # Deduplicate and filter empty
        self.rpc_urls = list(dict.fromkeys([u for u in urls if u]))
        if not self.rpc_urls:
            raise ValueError("At least one RPC endpoint is required")

        self._client_factory = client_factory or _default_client_factory
        self._clients: Dict[str, Any] = {}
        self.timeout = timeout if timeout is not None else Settings.RPC_TIMEOUT_SEC

        self.current_index = 0
        self.stats: Dict[str, Dict] = {
            url: {
                "success": 0,
                "errors": 0,
                "avg_latency": 0.0,
                "last_error": None,
                "last_error_time": 0,
            }
            for url in self.rpc_urls
        }

        Logger.info(f"[RPC] Failover client initialized with {len(self.rpc_urls)} endpoints")

    def get_active_url(self) -> str:
        return self.rpc_urls[self.current_index]

    def _client(self, url: str) -> Any:
        client = self._clients.get(url)
        if client is None:
            client = self._client_factory(url)
            self._clients[url] = client
        return client

    # =========================================================================
    # FAILOVER CORE
    # =========================================================================

    async def _call(
        self,
        op: str,
        fn: Callable[[Any], Awaitable[Any]],
        max_attempts: int = None,
        rejectable: bool = False,
    ) -> RpcOutcome:
        """
        Run ``fn`` against endpoints in order until one answers.

        ``RPCException`` is a verdict on the transaction only for sends and
        simulations (``rejectable``); on reads it means the node could not
        serve the call (e.g. -32005 node is behind) and fails over.
        """
        n = len(self.rpc_urls)
        limit = n if max_attempts is None else max(1, min(max_attempts, n))
        start = self.current_index
        last_error = "no endpoint attempted"
        maybe_delivered = False

        for offset in range(limit):
            idx = (start + offset) % n
            url = self.rpc_urls[idx]
            t0 = time.time()
            try:
                value = await asyncio.wait_for(fn(self._client(url)), timeout=self.timeout)
            except RPCException as e:
                if not rejectable:
                    last_error = f"{type(e).__name__}: {e}"
                    self._record_error(url, last_error)
                    Logger.warning(f"[RPC] {op} failed on {url} ({last_error})")
                    continue
                self._record_error(url, str(e))
                Logger.warning(f"[RPC] {op} rejected by {url}: {e}")
                return RpcOutcome(
                    ok=False,
                    error_code=ErrorCode.REJECTED_ON_CHAIN,
                    error_message=str(e),
                    endpoint=url,
                    attempts=offset + 1,
                )
            except TRANSIENT_ERRORS as e:
                last_error = f"{type(e).__name__}: {e}"
                maybe_delivered = maybe_delivered or (rejectable and _may_have_delivered(e))
                self._record_error(url, last_error)
                Logger.warning(f"[RPC] {op} failed on {url} ({last_error})")
                continue

            self._record_success(url, (time.time() - t0) * 1000)
            if idx != self.current_index:
                self.switch_provider(idx, reason=f"{op} served by fallback")
            return RpcOutcome(ok=True, value=value, endpoint=url, attempts=offset + 1)

        Logger.error(f"[RPC] {op} exhausted {limit} endpoint(s): {last_error}")
        return RpcOutcome(
            ok=False,
            error_code=ErrorCode.ENDPOINT_EXHAUSTED,
            error_message=f"All endpoints failed ({last_error})",
            attempts=limit,
            maybe_delivered=maybe_delivered,
        )

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def get_latest_blockhash(self, max_attempts: int = None) -> RpcOutcome:
        """Fresh chain-head reference (blockhash) with a bounded number of attempts."""
        attempts = max_attempts if max_attempts is not None else Settings.BLOCKHASH_MAX_ATTEMPTS

        async def fetch(client):
            return _unwrap(await client.get_latest_blockhash()).blockhash

        return await self._call("getLatestBlockhash", fetch, max_attempts=attempts)

    async def read_account(self, address: Pubkey) -> RpcOutcome:
        """Read an account; value is an AccountSnapshot or None if it does not exist."""

        async def fetch(client):
            info = _unwrap(await client.get_account_info(address))
            if info is None:
                return None
            return AccountSnapshot(
                address=str(address),
                data=bytes(info.data),
                lamports=info.lamports,
                owner=str(info.owner),
            )

        return await self._call("getAccountInfo", fetch)

    async def check_account_exists(self, address: Pubkey) -> RpcOutcome:
        outcome = await self.read_account(address)
        if outcome.ok:
            outcome.value = outcome.value is not None
        return outcome

    async def submit(self, message: MessageV0, signer: Keypair) -> RpcOutcome:
        """Sign and send a transaction; value is the signature string."""
        tx = VersionedTransaction(message, [signer])
        raw = bytes(tx)
        opts = TxOpts(skip_preflight=Settings.SKIP_PREFLIGHT, preflight_commitment=Confirmed)

        async def send(client):
            return str(_unwrap(await client.send_raw_transaction(raw, opts=opts)))

        outcome = await self._call("sendTransaction", send, rejectable=True)
        if outcome.ok:
            Logger.info(f"[RPC] Sent {outcome.value[:16]}... via {outcome.endpoint}")
        return outcome

    async def simulate(self, message: MessageV0, signer: Keypair) -> RpcOutcome:
        """
        Simulate a transaction. Sanity check only: a clean simulation does
        not gate submission and a failed one is reported as REJECTED_ON_CHAIN.
        """
        tx = VersionedTransaction(message, [signer])

        async def run(client):
            return _unwrap(await client.simulate_transaction(tx))

        outcome = await self._call("simulateTransaction", run, rejectable=True)
        if outcome.ok and outcome.value.err is not None:
            logs = list(outcome.value.logs or [])
            return RpcOutcome(
                ok=False,
                value=outcome.value,
                error_code=ErrorCode.REJECTED_ON_CHAIN,
                error_message=f"Simulation failed: {outcome.value.err} {logs[-3:]}",
                endpoint=outcome.endpoint,
                attempts=outcome.attempts,
            )
        return outcome

    async def close(self) -> None:
        for client in self._clients.values():
            closer = getattr(client, "close", None)
            if closer is not None:
                await closer()
        self._clients.clear()

    # =========================================================================
    # HEALTH
    # =========================================================================

    def _record_success(self, url: str, latency: float):
        s = self.stats[url]
        s["success"] += 1
        # Exponential moving average for latency
        if s["avg_latency"] == 0:
            s["avg_latency"] = latency
        else:
            s["avg_latency"] = 0.9 * s["avg_latency"] + 0.1 * latency

    def _record_error(self, url: str, error_msg: str):
        s = self.stats[url]
        s["errors"] += 1
        s["last_error"] = error_msg
        s["last_error_time"] = time.time()

    def switch_provider(self, index: int = None, reason: str = "Unknown"):
        """Make ``index`` (or the next endpoint) the primary."""
        old_url = self.get_active_url()
        if index is None:
            index = (self.current_index + 1) % len(self.rpc_urls)
        self.current_index = index
        new_url = self.get_active_url()

        Logger.warning(f"[RPC] Switching provider: {old_url} -> {new_url} (Reason: {reason})")

    def get_stats(self):
        return {"active_provider": self.get_active_url(), "providers": self.stats}
