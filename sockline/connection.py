"""Manage the WebSocket connection and IO to the data service."""

from __future__ import annotations

import asyncio
import logging
from asyncio import timeout as asyncio_timeout
from collections import deque
from typing import Any, Callable, Optional, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

LOG = logging.getLogger(__name__)
OPEN_TIMEOUT = 30.0


class Transport(Protocol):
    """
    What the Session needs from a connection.

    Hooks are assigned by the Session before open() is called. send() must
    not block: it returns False when the connection is not open and True once
    the text has been accepted for delivery.
    """

    on_open: Optional[Callable[[], None]]
    on_message: Optional[Callable[[str], None]]
    on_error: Optional[Callable[[Any], None]]
    on_close: Optional[Callable[[Any], None]]

    def open(self) -> None: ...

    def send(self, text: str) -> bool: ...

    def close(self) -> None: ...


TransportFactory = Callable[[str], Transport]


class WebSocketConnection:
    """One WebSocket connection attempt; no automatic reconnect."""

    def __init__(self, url: str, *, open_timeout: float = OPEN_TIMEOUT):
        self._url = url
        self._open_timeout = open_timeout

        self.on_open: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[str], None]] = None
        self.on_error: Optional[Callable[[Any], None]] = None
        self.on_close: Optional[Callable[[Any], None]] = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._ws: Any = None
        self._closing = False
        self._write_queue: deque[str] = deque()
        self._check_write_queue = asyncio.Event()
        self._tasks: set[asyncio.Task[Any]] = set()

    def open(self) -> None:
        """Start connecting. Must be called from a running event loop."""
        self._loop = asyncio.get_running_loop()
        self._closing = False
        self._track(asyncio.create_task(self._run()))

    async def _run(self) -> None:
        LOG.info("Connecting to %s", self._url)
        try:
            async with asyncio_timeout(self._open_timeout):
                ws = await websockets.connect(self._url)
        except (TimeoutError, OSError, InvalidURI, InvalidHandshake) as err:
            LOG.warning("Error connecting to %s (%s)", self._url, err)
            self._fire(self.on_error, err)
            self._fire(self.on_close, f"connect failed: {err}")
            return

        if self._closing:
            await ws.close()
            self._fire(self.on_close, "closed before open")
            return

        self._ws = ws
        self._track(asyncio.create_task(self._write_stream()))
        self._fire(self.on_open)
        await self._read_stream(ws)

    async def _read_stream(self, ws: Any) -> None:
        reason = "closed"
        try:
            async for data in ws:
                if isinstance(data, bytes):
                    try:
                        data = data.decode("utf-8")
                    except UnicodeDecodeError as exc:
                        LOG.error("Dropping undecodable binary frame (%d bytes)", len(data), exc_info=exc)
                        continue
                LOG.debug("got_data '%s'", data)
                self._fire(self.on_message, data)
        except ConnectionClosed as err:
            reason = str(err)
            self._fire(self.on_error, err)
        finally:
            self._ws = None
            self._write_queue.clear()
            self._check_write_queue.set()
            self._fire(self.on_close, reason)

    async def _write_stream(self) -> None:
        while True:
            if not self._write_queue:
                await self._check_write_queue.wait()
            ws = self._ws
            if ws is None:
                break
            self._check_write_queue.clear()
            while self._write_queue:
                msg = self._write_queue.popleft()
                LOG.debug("write_data '%s'", msg)
                try:
                    await ws.send(msg)
                except ConnectionClosed as err:
                    LOG.warning("Write to %s failed: %s", self._url, err)
                    return

    def send(self, text: str) -> bool:
        """Queue text for the writer task. Safe to call from any thread."""
        if self._ws is None or self._loop is None:
            return False
        self._write_queue.append(text)
        self._loop.call_soon_threadsafe(self._check_write_queue.set)
        return True

    def is_connected(self) -> bool:
        """Is the connection open?"""
        return self._ws is not None

    def close(self) -> None:
        """Close the connection and cancel its tasks. on_close fires once the reader stops."""
        LOG.info("Closing connection to %s", self._url)
        self._closing = True
        ws = self._ws
        if ws is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(lambda: self._track(asyncio.ensure_future(ws.close())))
            return
        for task in self._tasks:
            if asyncio.current_task() != task:
                task.cancel()
        self._tasks = set()

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _fire(hook: Optional[Callable[..., None]], *args: Any) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception:
            LOG.exception("Connection hook %s raised", getattr(hook, "__name__", hook))
