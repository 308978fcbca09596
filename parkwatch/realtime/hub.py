"""
Server side of the channel transport.

Each WebSocket connection joins named channel rooms and owns a FIFO outbox
drained by a single sender task, so events published from one origin reach a
connection in the order they were published. Publishing never blocks the
caller and never raises into the lifecycle engine: a connection that cannot
keep up or whose socket failed is dropped and its socket closed, so the
client goes degraded and polls until it reconnects.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, Optional, Set

from parkwatch.core.constants import Channel, UserRole
from parkwatch.core.errors import PermissionDeniedError
from parkwatch.realtime.events import ChannelEvent

logger = logging.getLogger(__name__)

STAFF_ONLY_CHANNELS = frozenset({Channel.APPEALS, Channel.DASHBOARD, Channel.ACCESS_LOGS})
OUTBOX_LIMIT = 1000
# "try again later"; the client reconnects with backoff and polls meanwhile
OVERLOAD_CLOSE_CODE = 1013


class HubConnection:
    def __init__(self, websocket: Any, user_id: int, role: UserRole):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.role = role
        self.channels: Set[Channel] = set()
        self.outbox: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=OUTBOX_LIMIT)
        self.closed = False
        self._sender: Optional[asyncio.Task] = None
        self._closer: Optional[asyncio.Task] = None

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SECURITY)

    def start(self) -> None:
        self._sender = asyncio.create_task(self._drain(), name=f"hub-sender-{self.id}")

    def enqueue(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Outbox full for connection %s (user %s); dropping it", self.id, self.user_id)
            self.drop()
            return False
        return True

    async def _drain(self) -> None:
        while True:
            message = await self.outbox.get()
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                # the socket is gone; the client reconciles by polling
                logger.warning("Send failed on connection %s: %s", self.id, e)
                self._sender = None
                self.drop()
                return

    def drop(self) -> None:
        """Stop sending and close the socket so the client sees the connection end."""
        if self.closed:
            return
        self.closed = True
        if self._sender is not None:
            self._sender.cancel()
            self._sender = None
        self._closer = asyncio.create_task(self._close_socket(), name=f"hub-close-{self.id}")

    async def _close_socket(self) -> None:
        try:
            await self.websocket.close(code=OVERLOAD_CLOSE_CODE)
        except Exception as e:
            logger.debug("Closing connection %s failed: %s", self.id, e)

    async def stop(self) -> None:
        self.closed = True
        if self._sender is not None:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
            self._sender = None
        if self._closer is not None:
            await self._closer
            self._closer = None


class ChannelHub:
    def __init__(self):
        self._connections: Dict[str, HubConnection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def register(self, websocket: Any, user_id: int, role: UserRole) -> HubConnection:
        conn = HubConnection(websocket, user_id, role)
        self._connections[conn.id] = conn
        conn.start()
        logger.info("Connection %s registered for user %s", conn.id, user_id)
        return conn

    async def unregister(self, conn: HubConnection) -> None:
        self._connections.pop(conn.id, None)
        await conn.stop()
        logger.info("Connection %s unregistered", conn.id)

    def join(self, conn: HubConnection, channel: Channel) -> None:
        if channel in STAFF_ONLY_CHANNELS and not conn.is_staff:
            raise PermissionDeniedError(f"Channel '{channel.value}' is restricted to staff")
        conn.channels.add(channel)
        logger.debug("Connection %s joined %s", conn.id, channel.value)

    def leave(self, conn: HubConnection, channel: Channel) -> None:
        conn.channels.discard(channel)
        logger.debug("Connection %s left %s", conn.id, channel.value)

    def _visible_to(self, conn: HubConnection, event: ChannelEvent) -> bool:
        if event.channel not in conn.channels:
            return False
        if event.recipient_id is not None:
            return conn.user_id == event.recipient_id
        if conn.is_staff:
            return True
        # owners only see broadcasts about their own records
        owner_id = event.payload.get("owner_id")
        return owner_id is not None and owner_id == conn.user_id

    def publish(self, event: ChannelEvent) -> int:
        """Queue ``event`` on every connection allowed to see it. Returns the fan-out count."""
        message = event.to_wire()
        delivered = 0
        for conn in list(self._connections.values()):
            if conn.closed or not self._visible_to(conn, event):
                continue
            if conn.enqueue(message):
                delivered += 1
        logger.debug("Published %s to %d connection(s)", event.name, delivered)
        return delivered

    def publish_many(self, events: Iterable[ChannelEvent]) -> int:
        return sum(self.publish(event) for event in events)

    async def close(self) -> None:
        for conn in list(self._connections.values()):
            await self.unregister(conn)


hub = ChannelHub()
