from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional, Protocol

from errors import NotificationDeliveryError
from models import Notification, NotificationKind
from store import LedgerStore

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def send(self, message: str) -> None:
        """Hand ``message`` to the transport without waiting for delivery."""


class WebSocketConnection:
    """Adapts a FastAPI WebSocket, owned by an event loop, to ``Connection``.

    ``send`` may be called from any thread; the write is scheduled on the
    socket's loop and its outcome is only logged.
    """

    def __init__(self, websocket, loop: asyncio.AbstractEventLoop) -> None:
        self.websocket = websocket
        self.loop = loop

    def send(self, message: str) -> None:
        if self.loop.is_closed():
            raise NotificationDeliveryError("Connection event loop is closed")
        future = asyncio.run_coroutine_threadsafe(
            self.websocket.send_json({"type": "notification", "message": message}),
            self.loop,
        )
        future.add_done_callback(self._log_failure)

    @staticmethod
    def _log_failure(future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning(f"push_failed: transport error={exc!r}")


class ConnectionRegistry:
    """Node-local map of user id to live connections."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, set[Connection]] = {}

    def add(self, user_id: str, connection: Connection) -> None:
        with self._lock:
            self._connections.setdefault(user_id, set()).add(connection)

    def remove(self, user_id: str, connection: Connection) -> None:
        with self._lock:
            live = self._connections.get(user_id)
            if not live:
                return
            live.discard(connection)
            if not live:
                del self._connections[user_id]

    def connections(self, user_id: str) -> list[Connection]:
        with self._lock:
            return list(self._connections.get(user_id, ()))

    def push(self, user_id: str, message: str) -> bool:
        """Best-effort send to every live connection of ``user_id``.

        Returns True if at least one connection accepted the message. Failures
        are logged and never raised.
        """
        connections = self.connections(user_id)
        if not connections:
            logger.info(f"push_skipped: user={user_id} reason=no_connection")
            return False
        delivered = False
        for connection in connections:
            try:
                connection.send(message)
                delivered = True
            except Exception as exc:
                error = (
                    exc
                    if isinstance(exc, NotificationDeliveryError)
                    else NotificationDeliveryError(str(exc))
                )
                logger.warning(f"push_failed: user={user_id} error={error}")
        return delivered


class NotificationDispatcher:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        registry: Optional[ConnectionRegistry] = None,
    ) -> None:
        self.store = store or LedgerStore()
        self.registry = registry if registry is not None else ConnectionRegistry()

    def enqueue(
        self,
        user_id: str,
        message: str,
        kind: NotificationKind = NotificationKind.general,
    ) -> Notification:
        # raises PersistenceError before anything is pushed
        notification = self.store.add_notification(user_id, message, kind)
        delivered = self.registry.push(user_id, message)
        logger.info(
            f"notification_enqueued: user={user_id} id={notification.id} "
            f"kind={kind.value} delivered={delivered}"
        )
        return notification

    def list_for_user(
        self, user_id: str, *, unread_only: bool = False
    ) -> list[Notification]:
        return self.store.list_notifications(user_id, unread_only=unread_only)

    def mark_read(self, user_id: str, notification_id: int) -> None:
        self.store.mark_notification_read(user_id, notification_id)
