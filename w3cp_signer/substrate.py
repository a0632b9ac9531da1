"""
Substrate ledger client built on ``substrate-interface``.

``substrate-interface`` is a blocking websocket client, so every call
runs in a worker thread. The shared connection (metadata, nonces,
signing, block lookups, liveness probes) is guarded by one lock. Each
submission watch opens its own short-lived connection, so a remark that
takes a few blocks to land does not stall other requests.

The library has no lifecycle events of its own. This client emits
``connected``/``ready`` after a successful handshake or reconnect and
``error``/``disconnected`` when a periodic liveness probe fails.
"""

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from substrateinterface import SubstrateInterface

from .config import DEFAULT_HEARTBEAT_SECONDS, DEFAULT_SS58_FORMAT
from .keys import SigningIdentity
from .ledger import TxStatus, TxStatusKind
from .util import to_hex

logger = logging.getLogger(__name__)

# Terminal failure states reported by author_submitAndWatchExtrinsic.
_FAILURE_KEYS = ("usurped", "dropped", "invalid", "finalityTimeout")

# Seconds close() waits for a watch thread to finish unsubscribing.
_CLOSE_GRACE_SECONDS = 2.0


def parse_watch_result(result: Any) -> TxStatus:
    """
    Map one ``author_extrinsicUpdate`` result to a TxStatus.

    String results are bare states ("ready", "future", "dropped", ...);
    object results carry a payload ({"inBlock": "0x.."}, {"usurped": ..}).
    Unrecognized states are reported as non-terminal.
    """
    if isinstance(result, str):
        if result in ("dropped", "invalid"):
            return TxStatus(TxStatusKind.FAILED, detail=result)
        if result == "broadcast":
            return TxStatus(TxStatusKind.BROADCAST)
        return TxStatus(TxStatusKind.READY, detail=result)

    if isinstance(result, dict):
        if "inBlock" in result:
            return TxStatus(TxStatusKind.IN_BLOCK, block_hash=to_hex(result["inBlock"]))
        if "finalized" in result:
            return TxStatus(TxStatusKind.FINALIZED, block_hash=to_hex(result["finalized"]))
        if "broadcast" in result:
            return TxStatus(TxStatusKind.BROADCAST)
        for key in _FAILURE_KEYS:
            if key in result:
                value = result[key]
                return TxStatus(TxStatusKind.FAILED, detail=key if value is None else f"{key}: {value}")

    return TxStatus(TxStatusKind.READY, detail=str(result))


class WatchSubscription:
    """
    Status stream for one extrinsic, fed from a watch thread.

    The thread submits with ``author_submitAndWatchExtrinsic`` on a
    dedicated connection, pushes each update onto an asyncio queue, and
    calls ``author_unwatchExtrinsic`` once a terminal state arrives.
    Closing it without an in-block status reports a failure, so the
    client re-reads the account nonce before its next submission.
    """

    def __init__(
        self,
        tx_hash: str,
        loop: asyncio.AbstractEventLoop,
        on_failure: Optional[Callable[[], None]] = None
    ):
        self._tx_hash = tx_hash
        self._loop = loop
        self._on_failure = on_failure
        self._queue: "asyncio.Queue[Optional[TxStatus]]" = asyncio.Queue()
        self._stop = threading.Event()
        self._conn = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._included = False

    @property
    def tx_hash(self) -> str:
        return self._tx_hash

    def start(self, connect: Callable[[], Any], extrinsic_hex: str) -> None:
        self._task = asyncio.ensure_future(asyncio.to_thread(self._watch, connect, extrinsic_hex))
        self._task.add_done_callback(self._finished)

    def __aiter__(self):
        return self

    async def __anext__(self) -> TxStatus:
        status = await self._queue.get()
        if status is None:
            raise StopAsyncIteration
        return status

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        try:
            if self._task is not None and not self._task.done():
                await self._interrupt()
        finally:
            if not self._included:
                # the extrinsic may never land, so its nonce cannot be trusted
                self._fail_once()

    async def _interrupt(self) -> None:
        done, _ = await asyncio.wait({self._task}, timeout=_CLOSE_GRACE_SECONDS)
        if done:
            return
        conn = self._conn
        if conn is None:
            # still connecting; _watch sees the stop flag and skips submission
            return
        # interrupt the blocking recv in the watch thread
        await asyncio.to_thread(conn.close)
        await asyncio.gather(self._task, return_exceptions=True)

    # -- watch thread ------------------------------------------------------

    def _watch(self, connect: Callable[[], Any], extrinsic_hex: str) -> None:
        conn = self._conn = connect()
        try:
            if self._stop.is_set():
                return
            conn.rpc_request(
                "author_submitAndWatchExtrinsic",
                [extrinsic_hex],
                result_handler=self._on_message,
            )
        finally:
            conn.close()

    def _on_message(self, message: Dict[str, Any], update_nr: int, subscription_id: str):
        if self._stop.is_set():
            self._unwatch(subscription_id)
            return {"closed": True}

        status = parse_watch_result(message.get("params", {}).get("result"))
        self._loop.call_soon_threadsafe(self._deliver, status)

        if status.is_included or status.is_error:
            self._unwatch(subscription_id)
            return {"terminal": status.kind.value}
        return None

    def _unwatch(self, subscription_id: str) -> None:
        try:
            self._conn.rpc_request("author_unwatchExtrinsic", [subscription_id])
        except Exception as e:
            logger.warning("Could not unwatch %s: %s", self._tx_hash, e)

    # -- event loop --------------------------------------------------------

    def _deliver(self, status: Optional[TxStatus]) -> None:
        if status is not None:
            if status.is_included:
                self._included = True
            elif status.is_error:
                self._fail_once()
        self._queue.put_nowait(status)

    def _fail_once(self) -> None:
        callback, self._on_failure = self._on_failure, None
        if callback is not None:
            callback()

    def _finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            self._queue.put_nowait(None)
            return
        exc = task.exception()
        if exc is not None and not self._stop.is_set():
            self._deliver(TxStatus(TxStatusKind.FAILED, detail=str(exc) or type(exc).__name__))
        self._queue.put_nowait(None)


class SubstrateLedgerClient:
    """
    LedgerClient for a Substrate node (Westend by default).

    Args:
        url: Websocket endpoint of the node
        ss58_format: Address format for the network
        heartbeat_seconds: Interval between liveness probes; 0 disables
        connection_factory: Callable returning a new connection (tests)
    """

    def __init__(
        self,
        url: str,
        *,
        ss58_format: int = DEFAULT_SS58_FORMAT,
        heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS,
        connection_factory: Optional[Callable[[], Any]] = None
    ):
        self._url = url
        self._ss58_format = ss58_format
        self._heartbeat = heartbeat_seconds
        self._factory = connection_factory or self._open_connection
        self._substrate = None
        self._io_lock = threading.Lock()
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._connected = False
        self._monitor: Optional[asyncio.Task] = None

    def _open_connection(self):
        return SubstrateInterface(url=self._url, ss58_format=self._ss58_format)

    # -- lifecycle ---------------------------------------------------------

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self._handlers[event].append(handler)

    def _emit(self, event: str, *args) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("Handler for ledger event %s failed", event)

    async def connect(self) -> None:
        logger.info("Connecting to chain endpoint %s", self._url)
        self._substrate = await asyncio.to_thread(self._factory)
        self._connected = True
        self._emit("connected")
        self._emit("ready")
        if self._heartbeat:
            self._monitor = asyncio.ensure_future(self._watch_connection())

    async def close(self) -> None:
        if self._monitor is not None:
            self._monitor.cancel()
            await asyncio.gather(self._monitor, return_exceptions=True)
            self._monitor = None
        if self._substrate is not None:
            await self._run(self._substrate.close)
            self._substrate = None
        self._connected = False

    async def _watch_connection(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat)
            try:
                await self._run(self._probe)
            except Exception as e:
                if self._connected:
                    self._connected = False
                    self._emit("error", e)
                    self._emit("disconnected")
                continue
            if not self._connected:
                self._connected = True
                self._next_nonce = None
                self._emit("connected")
                self._emit("ready")

    def _probe(self) -> None:
        if not self._connected:
            self._substrate.connect_websocket()
        self._substrate.get_chain_head()

    # -- calls -------------------------------------------------------------

    def _locked(self, fn: Callable[..., Any], *args, **kwargs):
        with self._io_lock:
            return fn(*args, **kwargs)

    async def _run(self, fn: Callable[..., Any], *args, **kwargs):
        return await asyncio.to_thread(self._locked, fn, *args, **kwargs)

    async def build_remark(self, data: bytes):
        return await self._run(
            self._substrate.compose_call,
            call_module="System",
            call_function="remark",
            call_params={"remark": "0x" + data.hex()},
        )

    async def sign_and_submit(self, call: Any, identity: SigningIdentity) -> WatchSubscription:
        async with self._nonce_lock:
            if self._next_nonce is None:
                self._next_nonce = await self._run(self._substrate.get_account_nonce, identity.address)
            nonce = self._next_nonce
            extrinsic = await self._run(
                self._substrate.create_signed_extrinsic,
                call=call,
                keypair=identity.keypair,
                nonce=nonce,
            )
            self._next_nonce = nonce + 1

        subscription = WatchSubscription(
            to_hex(extrinsic.extrinsic_hash),
            asyncio.get_running_loop(),
            on_failure=self._reset_nonce,
        )
        subscription.start(self._factory, str(extrinsic.data))
        return subscription

    def _reset_nonce(self) -> None:
        # re-read from chain; a failed extrinsic may not have consumed its nonce
        self._next_nonce = None

    async def fetch_block_number(self, block_hash: str) -> int:
        number = await self._run(self._substrate.get_block_number, block_hash)
        if number is None:
            raise LookupError(f"block {block_hash} not found")
        return int(number)
