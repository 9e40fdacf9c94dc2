"""In-process registry of live WebSocket connections.

Holds at most one connection per user plus each user's channel subscriptions
(``conversation:{id}``). Both maps sit behind one ``asyncio.Lock``. Connection
handlers do not touch the maps directly when they arrive or leave: they post
to the register/unregister mailboxes, which a single dispatcher task drains.

Outbound frames go through a bounded per-connection outbox drained by that
connection's writer task, so a slow or stalled peer never blocks the sender.
When the outbox is full the frame is dropped and logged.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()

CLOSE_GOING_AWAY = 1001
CLOSE_REPLACED = 4000
DEFAULT_SEND_QUEUE_SIZE = 64


def conversation_channel(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


@dataclass(eq=False)
class HubConnection:
    """One live socket. A single writer task drains ``outbox``, so per-connection order is preserved."""

    user_id: str
    websocket: WebSocket
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0
    outbox: asyncio.Queue[dict[str, Any]] = field(
        default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_SEND_QUEUE_SIZE)
    )
    writer: asyncio.Task[None] | None = None
    closed: bool = False

    async def flush(self) -> None:
        """Wait until every queued frame has been written (or the writer has stopped)."""
        if self.writer is None or self.writer.done():
            return
        await self.outbox.join()


@dataclass
class _Command:
    connection: HubConnection
    done: asyncio.Future[None] | None = None

    def reject(self, error: BaseException) -> None:
        if self.done is not None and not self.done.done():
            self.done.set_exception(error)


def _hub_not_running() -> RuntimeError:
    return RuntimeError("Hub is not running")


class Hub:
    """Connection registry with mailbox-driven register/unregister."""

    def __init__(self, mailbox_size: int = 256, send_queue_size: int = DEFAULT_SEND_QUEUE_SIZE) -> None:
        self._lock = asyncio.Lock()
        self._connections: dict[str, HubConnection] = {}
        self._subscriptions: dict[str, set[str]] = {}
        self._register: asyncio.Queue[_Command] = asyncio.Queue(maxsize=mailbox_size)
        self._unregister: asyncio.Queue[_Command] = asyncio.Queue(maxsize=mailbox_size)
        self._send_queue_size = send_queue_size
        self._task: asyncio.Task[None] | None = None

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="hub-dispatcher")

    async def stop(self) -> None:
        """Cancel the dispatcher; it closes every connection on the way out."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        """Dispatcher loop draining both mailboxes until cancelled."""
        logger.info("hub_started")
        try:
            while True:
                register = asyncio.ensure_future(self._register.get())
                unregister = asyncio.ensure_future(self._unregister.get())
                try:
                    done, pending = await asyncio.wait(
                        {register, unregister}, return_when=asyncio.FIRST_COMPLETED
                    )
                except asyncio.CancelledError:
                    register.cancel()
                    unregister.cancel()
                    if register.done() and not register.cancelled():
                        register.result().reject(_hub_not_running())
                    raise
                for task in pending:
                    task.cancel()
                if register in done:
                    await self._handle_register(register.result())
                if unregister in done:
                    command = unregister.result()
                    await self.disconnect(command.connection.user_id, command.connection, close=False)
        finally:
            await self._shutdown()
            logger.info("hub_stopped")

    async def _handle_register(self, command: _Command) -> None:
        try:
            await self.connect(command.connection)
        except asyncio.CancelledError:
            command.reject(_hub_not_running())
            raise
        except Exception as e:
            command.reject(e)
            logger.exception("hub_register_failed", user_id=command.connection.user_id)
            return
        if command.done is not None and not command.done.done():
            command.done.set_result(None)

    async def _shutdown(self) -> None:
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._subscriptions.clear()
        for conn in connections:
            await self._close(conn, CLOSE_GOING_AWAY, "Server shutting down")
        self._reject_pending()

    def _reject_pending(self) -> None:
        """Fail registrations still sitting in the mailbox so their callers do not wait forever."""
        while True:
            try:
                command = self._register.get_nowait()
            except asyncio.QueueEmpty:
                return
            command.reject(_hub_not_running())

    # -----------------------------------------------------------------------
    # Mailbox API (used by connection handlers)
    # -----------------------------------------------------------------------

    async def register(self, user_id: str, websocket: WebSocket) -> HubConnection:
        """
        Queue a connection for registration and wait until it is live.

        Raises:
            RuntimeError: The hub is not running, or stopped before the
                registration was processed.
        """
        if not self.running:
            raise _hub_not_running()
        conn = HubConnection(
            user_id=user_id, websocket=websocket, outbox=asyncio.Queue(maxsize=self._send_queue_size)
        )
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        await self._register.put(_Command(conn, done))
        if not self.running:
            self._reject_pending()
        await done
        return conn

    async def unregister(self, conn: HubConnection) -> None:
        """Queue removal of ``conn``. A newer connection for the same user is left alone."""
        if not self.running:
            await self.disconnect(conn.user_id, conn, close=False)
            return
        await self._unregister.put(_Command(conn))

    # -----------------------------------------------------------------------
    # Map edits
    # -----------------------------------------------------------------------

    async def connect(self, conn: HubConnection) -> None:
        """Make ``conn`` the user's live connection, closing any previous one first."""
        async with self._lock:
            previous = self._connections.get(conn.user_id)
            if previous is not None and previous is not conn:
                await self._close(previous, CLOSE_REPLACED, "Replaced by a new connection")
                logger.info("ws_connection_displaced", user_id=conn.user_id)
            self._connections[conn.user_id] = conn
            self._subscriptions[conn.user_id] = set()
            if conn.writer is None:
                conn.writer = asyncio.create_task(self._write_loop(conn), name=f"ws-writer-{conn.user_id}")
        logger.info("ws_connected", user_id=conn.user_id)

    async def disconnect(self, user_id: str, conn: HubConnection | None = None, *, close: bool = True) -> bool:
        """
        Drop the user's connection and subscriptions.

        With ``conn`` given, only that exact handle is removed, so a handler
        whose connection was already displaced cannot evict its replacement.
        """
        async with self._lock:
            current = self._connections.get(user_id)
            if current is None or (conn is not None and current is not conn):
                return False
            del self._connections[user_id]
            self._subscriptions.pop(user_id, None)
        if close:
            await self._close(current, CLOSE_GOING_AWAY, "Disconnected")
        else:
            await self._stop_writer(current)
        logger.info("ws_disconnected", user_id=user_id)
        return True

    async def subscribe(self, user_id: str, channel: str) -> bool:
        """Add ``channel`` for a connected user. Returns False when the user is offline."""
        async with self._lock:
            if user_id not in self._connections:
                return False
            self._subscriptions.setdefault(user_id, set()).add(channel)
        logger.debug("ws_subscribed", user_id=user_id, channel=channel)
        return True

    async def unsubscribe(self, user_id: str, channel: str) -> None:
        async with self._lock:
            channels = self._subscriptions.get(user_id)
            if channels is None:
                return
            channels.discard(channel)
            if not channels:
                del self._subscriptions[user_id]

    # -----------------------------------------------------------------------
    # Delivery
    # -----------------------------------------------------------------------

    async def send_message(self, user_id: str, payload: dict[str, Any]) -> bool:
        """
        Queue ``payload`` for the user's socket.

        Returns False when the user is offline, the outbox is full, or an
        earlier write already failed. A failed write does not disconnect; the
        connection's reader notices and unregisters.
        """
        async with self._lock:
            conn = self._connections.get(user_id)
        if conn is None:
            return False
        return await self.send(conn, payload)

    async def send(self, conn: HubConnection, payload: dict[str, Any]) -> bool:
        """Queue a frame for one specific connection without waiting on the socket."""
        if conn.closed:
            return False
        try:
            conn.outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(
                "ws_send_dropped", user_id=conn.user_id, event=payload.get("type"), queued=conn.outbox.qsize()
            )
            return False
        return True

    async def _write_loop(self, conn: HubConnection) -> None:
        """Drain ``conn.outbox`` into the socket until cancelled or a write fails."""
        try:
            while True:
                payload = await conn.outbox.get()
                try:
                    await conn.websocket.send_json(payload)
                except Exception:
                    logger.warning("ws_send_failed", user_id=conn.user_id, event=payload.get("type"))
                    return
                else:
                    conn.messages_sent += 1
                finally:
                    conn.outbox.task_done()
        finally:
            conn.closed = True
            while not conn.outbox.empty():
                conn.outbox.get_nowait()
                conn.outbox.task_done()

    async def _stop_writer(self, conn: HubConnection) -> None:
        conn.closed = True
        writer, conn.writer = conn.writer, None
        if writer is None or writer.done():
            return
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer

    async def broadcast_to_channel(self, channel: str, payload: dict[str, Any]) -> int:
        """Send to every connected subscriber of ``channel``. Returns the delivery count."""
        sent = 0
        for user_id in await self.get_channel_subscribers(channel):
            if await self.send_message(user_id, payload):
                sent += 1
        return sent

    # -----------------------------------------------------------------------
    # Snapshots
    # -----------------------------------------------------------------------

    async def is_connected(self, user_id: str) -> bool:
        async with self._lock:
            return user_id in self._connections

    async def is_subscribed(self, user_id: str, channel: str) -> bool:
        async with self._lock:
            return user_id in self._connections and channel in self._subscriptions.get(user_id, ())

    async def get_active_connections(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def get_connected_users(self) -> list[str]:
        async with self._lock:
            return list(self._connections)

    async def get_channel_subscribers(self, channel: str) -> list[str]:
        async with self._lock:
            return [
                user_id
                for user_id, channels in self._subscriptions.items()
                if channel in channels and user_id in self._connections
            ]

    async def get_user_subscriptions(self, user_id: str) -> set[str]:
        async with self._lock:
            return set(self._subscriptions.get(user_id, ()))

    async def get_stats(self) -> dict[str, Any]:
        async with self._lock:
            channels: dict[str, int] = {}
            for subscribed in self._subscriptions.values():
                for channel in subscribed:
                    channels[channel] = channels.get(channel, 0) + 1
            return {
                "active_connections": len(self._connections),
                "connected_users": len(self._connections),
                "channels": channels,
            }

    async def _close(self, conn: HubConnection, code: int, reason: str) -> None:
        await self._stop_writer(conn)
        try:
            await conn.websocket.close(code=code, reason=reason)
        except Exception:
            logger.debug("ws_close_failed", user_id=conn.user_id)
