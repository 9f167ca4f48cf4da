"""
Parley transport: duplex channel to the remote turn-processing endpoint.

Transport holds the lifecycle shared by every implementation: one FIFO send
queue drained by a single writer task (wire order == enqueue order), retry
with exponential backoff while ``degraded``, and a best-effort ``session_stop``
on close. WebSocketTransport speaks JSON frames over ``websockets``.
"""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from . import protocol
from .config import TransportSettings
from .error_handler import (
    ConnectError,
    ErrorSeverity,
    MalformedServerMessage,
    TransportError,
    handle_error,
)
from .logging_utils import setup_logger

logger = setup_logger("parley.transport", "logs/transport.log")


class TransportState(Enum):
    CONNECTING = "connecting"
    READY = "ready"
    STREAMING = "streaming"
    DEGRADED = "degraded"
    CLOSING = "closing"
    CLOSED = "closed"


EventHandler = Callable[[protocol.ServerEvent], None]
CloseHandler = Callable[[TransportError], None]
StateHandler = Callable[[TransportState], None]


class Transport:
    """Base transport. Subclasses implement _connect, _deliver and _disconnect."""

    def __init__(self, settings: TransportSettings):
        self.settings = settings
        self.state = TransportState.CLOSED
        self.session_id: Optional[str] = None
        self._event_handlers: List[EventHandler] = []
        self._close_handlers: List[CloseHandler] = []
        self._state_handlers: List[StateHandler] = []
        self._queue: Optional[asyncio.Queue] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._tasks: List[asyncio.Task] = []
        self._ready: Optional[asyncio.Future] = None
        self.sent_count = 0
        self.retry_count = 0

    # ---- Public API ----
    def on_event(self, handler: EventHandler) -> None:
        self._event_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """Called when the transport closes on its own (not via close())."""
        self._close_handlers.append(handler)

    def on_state(self, handler: StateHandler) -> None:
        self._state_handlers.append(handler)

    @property
    def is_open(self) -> bool:
        return self.state in (TransportState.READY, TransportState.STREAMING, TransportState.DEGRADED)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def open(self, session_id: str, start_message: Dict[str, Any]) -> None:
        """Connect, announce the session and wait for the endpoint to be ready."""
        if self.state not in (TransportState.CLOSED,):
            raise ConnectError(f"transport already {self.state.value}", operation="open")
        loop = asyncio.get_running_loop()
        self.session_id = session_id
        self._queue = asyncio.Queue()
        self._ready = loop.create_future()
        self._set_state(TransportState.CONNECTING)
        try:
            await self._connect(start_message)
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.settings.connect_timeout)
        except (TimeoutError, asyncio.TimeoutError) as e:
            await self._teardown()
            raise ConnectError(f"endpoint not ready after {self.settings.connect_timeout:.1f}s",
                               operation="open") from e
        except ConnectError:
            await self._teardown()
            raise
        except TransportError as e:
            await self._teardown()
            raise ConnectError(str(e), transient=e.transient, operation="open") from e

        if not self.is_open:
            # Dropped between session_ready and here; the close handlers already know
            raise ConnectError("connection lost while opening", operation="open")
        self._writer_task = loop.create_task(self._writer(self._queue))
        logger.info(f"Transport ready for session {session_id}")

    def send(self, message: Dict[str, Any]) -> bool:
        """Queue a message for delivery. Returns False if the transport is not open."""
        if not self.is_open or self._queue is None:
            logger.warning(f"Transport {self.state.value}; dropping {message.get('type')} message")
            return False
        self._queue.put_nowait(message)
        return True

    async def close(self, send_stop: bool = True) -> None:
        """Close locally. session_stop is attempted once; failure is only logged."""
        if self.state in (TransportState.CLOSING, TransportState.CLOSED):
            return
        was_open = self.is_open
        self._set_state(TransportState.CLOSING)
        self._cancel_writer()
        if send_stop and was_open:
            try:
                await asyncio.wait_for(self._deliver(protocol.session_stop()), timeout=self.settings.stop_timeout)
            except (TransportError, TimeoutError, asyncio.TimeoutError) as e:
                logger.warning(f"session_stop not delivered: {e or 'timeout'}")
        await self._teardown()

    # ---- Subclass hooks ----
    async def _connect(self, start_message: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _deliver(self, message: Dict[str, Any]) -> None:
        """Deliver one message; raise TransportError on failure."""
        raise NotImplementedError

    async def _disconnect(self) -> None:
        raise NotImplementedError

    # ---- Internals ----
    def _set_state(self, state: TransportState) -> None:
        if state == self.state:
            return
        logger.info(f"Transport state: {self.state.value} -> {state.value}")
        self.state = state
        for handler in list(self._state_handlers):
            try:
                handler(state)
            except Exception as e:
                logger.error(f"Transport state handler error: {e}")

    def _mark_ready(self) -> None:
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(True)
        if self.state == TransportState.CONNECTING:
            self._set_state(TransportState.READY)

    def _dispatch_raw(self, raw: Any) -> None:
        try:
            event = protocol.parse_server_message(raw)
        except MalformedServerMessage as e:
            handle_error(e, "transport", "receive", ErrorSeverity.LOW, session_id=self.session_id)
            return
        if event is None:
            logger.debug(f"Ignoring unhandled message: {str(raw)[:80]}")
            return
        self._dispatch(event)

    def _dispatch(self, event: protocol.ServerEvent) -> None:
        if event.type == protocol.EventType.SESSION_READY:
            if event.session_id:
                self.session_id = event.session_id
            self._mark_ready()
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler error for {event.type.value}: {e}")

    async def _writer(self, queue: asyncio.Queue) -> None:
        while True:
            message = await queue.get()
            if not await self._deliver_with_retry(message):
                return
            self.sent_count += 1
            if message.get("type") == "audio" and self.state == TransportState.READY:
                self._set_state(TransportState.STREAMING)

    async def _deliver_with_retry(self, message: Dict[str, Any]) -> bool:
        delay = self.settings.backoff_initial
        attempts = 0
        while True:
            try:
                await self._deliver(message)
            except TransportError as e:
                if self.state in (TransportState.CLOSING, TransportState.CLOSED):
                    return False
                attempts += 1
                self.retry_count += 1
                if not e.transient or attempts > self.settings.max_retries:
                    logger.error(f"Send failed after {attempts} attempt(s): {e}")
                    self._fail(TransportError(f"send retry budget exhausted: {e}", transient=False,
                                              operation="send"))
                    return False
                self._set_state(TransportState.DEGRADED)
                logger.warning(f"Send failed ({e}); retry {attempts}/{self.settings.max_retries} in {delay:.2f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.settings.backoff_max)
                continue
            if self.state == TransportState.DEGRADED:
                self._set_state(TransportState.STREAMING)
            return True

    def _fail(self, error: TransportError) -> None:
        """The transport died on its own: tear down and tell the owner."""
        if self.state in (TransportState.CLOSING, TransportState.CLOSED):
            return
        self._set_state(TransportState.CLOSING)
        self._cancel_writer()
        loop = asyncio.get_running_loop()
        loop.create_task(self._finish_failure(error))

    async def _finish_failure(self, error: TransportError) -> None:
        await self._teardown()
        for handler in list(self._close_handlers):
            try:
                handler(error)
            except Exception as e:
                logger.error(f"Close handler error: {e}")

    def _cancel_writer(self) -> None:
        task = self._writer_task
        self._writer_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _teardown(self) -> None:
        self._cancel_writer()
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(ConnectError("transport closed while connecting", transient=False,
                                                   operation="open"))
            # open() may already have given up waiting
            self._ready.exception()
        try:
            await self._disconnect()
        except Exception as e:
            logger.debug(f"Disconnect error: {e}")
        self._queue = None
        self._set_state(TransportState.CLOSED)


class WebSocketTransport(Transport):
    """JSON-over-WebSocket transport."""

    def __init__(self, settings: TransportSettings):
        super().__init__(settings)
        self._ws = None

    async def _connect(self, start_message: Dict[str, Any]) -> None:
        url = self.settings.url
        logger.info(f"Connecting to {url}")
        try:
            self._ws = await ws_connect(url, open_timeout=self.settings.connect_timeout, max_size=None)
        except (OSError, InvalidHandshake, InvalidURI, TimeoutError, asyncio.TimeoutError) as e:
            raise ConnectError(f"could not connect to {url}: {e}", operation="connect") from e
        self._tasks.append(asyncio.get_running_loop().create_task(self._reader()))
        await self._deliver(start_message)

    async def _deliver(self, message: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError("socket is not connected", operation="send")
        try:
            await ws.send(protocol.encode(message))
        except ConnectionClosed as e:
            raise TransportError(f"connection closed: {e}", operation="send") from e
        except OSError as e:
            raise TransportError(f"socket error: {e}", operation="send") from e

    async def _disconnect(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            await ws.close()

    async def _reader(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                self._dispatch_raw(raw)
        except ConnectionClosed as e:
            logger.warning(f"Connection lost: {e}")
        if self.state not in (TransportState.CLOSING, TransportState.CLOSED):
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(ConnectError("connection closed before session_ready",
                                                       operation="connect"))
                return
            self._fail(TransportError("connection closed by remote", transient=True, operation="receive"))


__all__ = [
    "TransportState",
    "Transport",
    "WebSocketTransport",
    "EventHandler",
    "CloseHandler",
    "StateHandler",
]
