"""
rippled WebSocket ledger source.

Owns the live session to a full-history rippled node and exposes:
- request/response RPC over the socket (server_info, subscribe, ledger)
- a ledger feed: one expanded LedgerResponse per ledgerClosed notification,
  delivered in close order
- an error feed for transport problems that must not stop the process
- fetch_ledger() point lookups for backfill

Usage:
    source = LedgerSource("ws://localhost:6006")
    await source.connect()
    info = await source.get_server_info()
    await source.subscribe()
    ledger = await source.ledgers.get()
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import aiohttp

from ....core.exceptions import FetchError, RPCError, SourceConnectionError
from ...models import ConnectionEventType
from .models import LedgerClosed, LedgerResponse, ServerInfo

logger = logging.getLogger(__name__)


AUDIT_SERVICE = "rippled-ws"

DEFAULT_BUFFER_SIZE = 100
BACKFILL_BUFFER_SIZE = 10000

# Callable(service, event, attempt, error, duration_ms, metadata)
AuditCallback = Callable[..., None]


class LedgerSource:
    """
    WebSocket client for the rippled ledger stream.

    connect() does not retry; startup failures are the caller's decision.
    Once connected, a live source (auto_reconnect=True) re-opens a dropped
    session with exponential backoff and re-subscribes, reporting each
    drop on the error feed.
    """

    def __init__(
        self,
        url: str,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        request_timeout: float = 30.0,
        connect_timeout: float = 10.0,
        auto_reconnect: bool = False,
        reconnect_initial_delay: float = 1.0,
        reconnect_max_delay: float = 60.0,
        audit: Optional[AuditCallback] = None,
        name: str = "live",
    ):
        """
        Initialize the ledger source.

        Args:
            url: rippled WebSocket URL
            buffer_size: Capacity of the ledger feed
            request_timeout: Seconds to wait for an RPC response
            connect_timeout: Seconds to wait for the WebSocket handshake
            auto_reconnect: Re-open dropped sessions (live path only)
            reconnect_initial_delay: First reconnect delay in seconds
            reconnect_max_delay: Reconnect delay cap in seconds
            audit: Connection audit callback (best effort side channel)
            name: Label used in logs ("live", "backfill")
        """
        self.url = url
        self.buffer_size = buffer_size
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.auto_reconnect = auto_reconnect
        self.reconnect_initial_delay = reconnect_initial_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.name = name
        self._audit = audit

        self._ledgers: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._errors: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._closed_ledgers: asyncio.Queue = asyncio.Queue()

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._fetch_task: Optional[asyncio.Task] = None

        self._pending: Dict[int, asyncio.Future] = {}
        self._next_id = 0
        self._attempt = 0
        self._subscribed = False
        self._closing = False

        # Stats
        self.ledgers_received = 0
        self.reconnect_count = 0

    @classmethod
    def with_buffer(cls, url: str, buffer_size: int = BACKFILL_BUFFER_SIZE, **kwargs) -> "LedgerSource":
        """Source with a larger ledger feed, used by the backfill client."""
        return cls(url, buffer_size=buffer_size, **kwargs)

    @property
    def ledgers(self) -> asyncio.Queue:
        """Feed of LedgerResponse objects in close order."""
        return self._ledgers

    @property
    def errors(self) -> asyncio.Queue:
        """Feed of out-of-band transport errors."""
        return self._errors

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    # ------------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the WebSocket session.

        Raises:
            SourceConnectionError: If the handshake fails or times out
        """
        self._closing = False
        await self._open()

    async def _open(self) -> None:
        self._attempt += 1
        attempt = self._attempt
        self._emit_audit(ConnectionEventType.ATTEMPT, attempt)

        logger.info(f"Connecting {self.name} source to {self.url}...")
        started = time.monotonic()

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

        try:
            ws = await asyncio.wait_for(
                self._session.ws_connect(self.url, heartbeat=30.0, max_msg_size=0),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._emit_audit(ConnectionEventType.FAILURE, attempt, "handshake timeout", duration_ms)
            raise SourceConnectionError(
                f"connection to {self.url} timed out after {self.connect_timeout}s"
            ) from e
        except (aiohttp.ClientError, OSError) as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._emit_audit(ConnectionEventType.FAILURE, attempt, str(e), duration_ms)
            raise SourceConnectionError(f"failed to connect to {self.url}: {e}") from e

        duration_ms = int((time.monotonic() - started) * 1000)
        self._emit_audit(ConnectionEventType.SUCCESS, attempt, duration_ms=duration_ms)

        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        if self._fetch_task is None or self._fetch_task.done():
            self._fetch_task = asyncio.create_task(self._fetch_loop())

        logger.info(f"✓ {self.name.capitalize()} source connected ({duration_ms}ms)")

    async def close(self) -> None:
        """Close the session and stop background tasks."""
        self._closing = True

        current = asyncio.current_task()
        for task in (self._reader_task, self._fetch_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._fail_pending(SourceConnectionError("source closed"))

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()

        self._ws = None
        self._session = None
        logger.info(f"{self.name.capitalize()} source closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------------
    # RPC
    # ------------------------------------------------------------------------

    async def request(self, command: str, **params: Any) -> Dict[str, Any]:
        """
        Send a command and wait for its response.

        Args:
            command: rippled command name
            **params: Command parameters

        Returns:
            The response's "result" object

        Raises:
            SourceConnectionError: If the session is down
            RPCError: On timeout, error status or malformed response
        """
        if not self.connected:
            raise SourceConnectionError(f"{self.name} source not connected")

        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._ws.send_json({"id": request_id, "command": command, **params})
            response = await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise RPCError(f"{command} timed out after {self.request_timeout}s") from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise SourceConnectionError(f"{command} send failed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

        if response.get("status") != "success":
            reason = response.get("error_message") or response.get("error") or "unknown error"
            raise RPCError(f"{command} failed: {reason}")

        result = response.get("result")
        if not isinstance(result, dict):
            raise RPCError(f"{command} response missing result")
        return result

    async def get_server_info(self) -> ServerInfo:
        """
        Fetch the node's current validated ledger.

        Raises:
            RPCError: If the response is malformed or has no validated ledger
        """
        result = await self.request("server_info")
        info = ServerInfo.from_result(result)
        logger.info(
            f"Server state: {info.server_state} | "
            f"validated ledger: {info.validated_ledger} | "
            f"complete: {info.complete_ledgers or 'n/a'}"
        )
        return info

    async def subscribe(self) -> None:
        """
        Subscribe to ledger close notifications.

        Raises:
            SourceConnectionError, RPCError: If the subscription fails
        """
        await self.request("subscribe", streams=["ledger"])
        self._subscribed = True
        logger.info(f"✓ {self.name.capitalize()} source subscribed to ledger stream")

    async def fetch_ledger(self, ledger_index: int) -> LedgerResponse:
        """
        Point-fetch one ledger with expanded transactions.

        Args:
            ledger_index: Ledger to fetch

        Returns:
            LedgerResponse

        Raises:
            FetchError: If the ledger cannot be fetched or decoded
        """
        try:
            result = await self.request(
                "ledger",
                ledger_index=ledger_index,
                transactions=True,
                expand=True,
            )
            return LedgerResponse.from_result(result)
        except (RPCError, SourceConnectionError) as e:
            raise FetchError(ledger_index, str(e)) from e
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise FetchError(ledger_index, f"undecodable ledger: {e!r}") from e

    # ------------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------------

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Dispatch inbound frames until the socket closes."""
        failure: Optional[BaseException] = None
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    failure = ws.exception()
                    break
        except (aiohttp.ClientError, ConnectionResetError) as e:
            failure = e

        if self._closing:
            return

        error = SourceConnectionError(
            f"{self.name} session to {self.url} dropped: {failure or 'closed by peer'}"
        )
        self._fail_pending(error)
        await self._report_error(error)

        if self.auto_reconnect:
            await self._reconnect()

    async def _reconnect(self) -> None:
        """Re-open the session with exponential backoff (1s -> 2s -> ... -> max)."""
        delay = self.reconnect_initial_delay

        while not self._closing:
            self.reconnect_count += 1
            self._emit_audit(
                ConnectionEventType.RETRY, self._attempt + 1,
                metadata={"retry_delay_seconds": delay},
            )
            logger.info(
                f"🔄 {self.name.capitalize()} source will reconnect in {delay}s "
                f"(attempt #{self.reconnect_count})"
            )
            await asyncio.sleep(delay)

            try:
                await self._open()
                if self._subscribed:
                    await self.subscribe()
                logger.info(f"🔄 {self.name.capitalize()} source reconnected")
                return
            except (SourceConnectionError, RPCError) as e:
                await self._report_error(e)
                await self._discard_session()
                delay = min(delay * 2, self.reconnect_max_delay)

    async def _discard_session(self) -> None:
        """Tear down a session opened by a reconnect that failed to re-subscribe."""
        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._fail_pending(SourceConnectionError(f"{self.name} session discarded"))

    async def _fetch_loop(self) -> None:
        """Fetch ledger detail for each close notification, one at a time."""
        while True:
            closed: LedgerClosed = await self._closed_ledgers.get()
            try:
                ledger = await self.fetch_ledger(closed.ledger_index)
            except FetchError as e:
                await self._report_error(e)
                continue
            except Exception as e:
                await self._report_error(
                    FetchError(closed.ledger_index, f"unexpected failure: {e!r}")
                )
                continue

            self.ledgers_received += 1
            await self._ledgers.put(ledger)

    def _dispatch(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError as e:
            self._report_error_nowait(RPCError(f"undecodable frame: {e}"))
            return

        if not isinstance(message, dict):
            self._report_error_nowait(RPCError(f"unexpected frame: {data[:100]}"))
            return

        request_id = message.get("id")
        if request_id is not None and request_id in self._pending:
            future = self._pending[request_id]
            if not future.done():
                future.set_result(message)
            return

        if message.get("type") == "ledgerClosed":
            try:
                closed = LedgerClosed.from_message(message)
            except RPCError as e:
                self._report_error_nowait(e)
                return
            logger.debug(f"Ledger {closed.ledger_index} closed ({closed.txn_count} txns)")
            self._closed_ledgers.put_nowait(closed)
            return

        logger.debug(f"Ignoring {message.get('type', 'untyped')} frame")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _report_error(self, error: Exception) -> None:
        logger.warning(f"⚠️  {self.name.capitalize()} source error: {error}")
        self._report_error_nowait(error)

    def _report_error_nowait(self, error: Exception) -> None:
        try:
            self._errors.put_nowait(error)
        except asyncio.QueueFull:
            logger.error(f"Error feed full, dropping: {error}")

    def _emit_audit(
        self,
        event: ConnectionEventType,
        attempt: int,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._audit is None:
            return
        details = {"url": self.url, "source": self.name}
        details.update(metadata or {})
        self._audit(AUDIT_SERVICE, event.value, attempt, error, duration_ms, details)
