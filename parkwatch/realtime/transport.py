"""
Client side of the channel transport.

Views subscribe through ``ChannelTransport`` and never learn which
implementation is active: ``WebSocketTransport`` pushes events live and
re-joins every subscribed channel after a reconnect, ``PollingOnlyTransport``
is permanently degraded and leaves freshness to the polling reconciler.
"""
import abc
import asyncio
import enum
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from parkwatch.core.config import settings
from parkwatch.core.constants import Channel, ConnectionState
from parkwatch.core.errors import ValidationError
from parkwatch.realtime.clock import Clock
from parkwatch.realtime.events import ChannelEvent, resolve_event_kind

logger = logging.getLogger(__name__)

Handler = Callable[[ChannelEvent], Optional[Awaitable[None]]]
StateListener = Callable[[ConnectionState], None]


def backoff_delay(attempt: int, base_ms: int, max_ms: int) -> float:
    """Reconnect delay in seconds: ``min(base * 2**attempt, max)``."""
    return min(base_ms * (2 ** attempt), max_ms) / 1000.0


async def call_handler(handler: Callable, *args) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


@dataclass(eq=False)
class SubscriptionHandle:
    channel: Channel
    handlers: Dict[enum.Enum, Handler] = field(default_factory=dict)
    active: bool = True


class ChannelTransport(abc.ABC):

    def __init__(self):
        self._state = ConnectionState.DEGRADED
        self._state_listeners: List[StateListener] = []
        self._subscriptions: Dict[Channel, List[SubscriptionHandle]] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channels(self) -> List[Channel]:
        return [channel for channel, handles in self._subscriptions.items() if handles]

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.log(
            logging.WARNING if state == ConnectionState.DEGRADED else logging.INFO,
            "Channel transport %s -> %s", previous.value, state.value,
        )
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    async def subscribe(
        self, channel: Union[Channel, str], handlers: Mapping[Union[enum.Enum, str], Handler]
    ) -> SubscriptionHandle:
        channel = Channel(channel)
        if not handlers:
            raise ValidationError(f"Subscription to '{channel.value}' needs at least one handler")
        handle = SubscriptionHandle(
            channel=channel,
            handlers={resolve_event_kind(channel, kind): fn for kind, fn in handlers.items()},
        )
        handles = self._subscriptions.setdefault(channel, [])
        first = not handles
        handles.append(handle)
        if first:
            await self._join(channel)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Detach ``handle``. Safe to call more than once."""
        if not handle.active:
            return
        handle.active = False
        handles = self._subscriptions.get(handle.channel, [])
        if handle in handles:
            handles.remove(handle)
        if not handles:
            self._subscriptions.pop(handle.channel, None)
            await self._leave(handle.channel)

    async def dispatch(self, event: ChannelEvent) -> int:
        """Run every live handler bound to ``event``'s kind; one failing handler never affects another."""
        called = 0
        for handle in list(self._subscriptions.get(event.channel, [])):
            handler = handle.handlers.get(event.kind)
            if not handle.active or handler is None:
                continue
            called += 1
            try:
                await call_handler(handler, event)
            except Exception:
                logger.exception("Handler for %s failed", event.name)
        return called

    @abc.abstractmethod
    async def connect(self) -> ConnectionState:
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        ...

    async def _join(self, channel: Channel) -> None:
        pass

    async def _leave(self, channel: Channel) -> None:
        pass


class PollingOnlyTransport(ChannelTransport):
    """Permanently degraded transport; subscribers rely on snapshot polling."""

    async def connect(self) -> ConnectionState:
        logger.info("Push channel unavailable, using polling only")
        return self.state

    async def close(self) -> None:
        self._subscriptions.clear()


class WebSocketTransport(ChannelTransport):

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        clock: Optional[Clock] = None,
        reconnect_base_ms: Optional[int] = None,
        reconnect_max_ms: Optional[int] = None,
        connector: Optional[Callable[[str], Any]] = None,
    ):
        super().__init__()
        self.url = url or settings.websocket_url
        self.token = token
        self.clock = clock or Clock()
        self.reconnect_base_ms = reconnect_base_ms or settings.RECONNECT_BASE_MS
        self.reconnect_max_ms = reconnect_max_ms or settings.RECONNECT_MAX_MS
        self._connector = connector or websockets.connect
        self._ws = None
        self._runner: Optional[asyncio.Task] = None
        self._first_attempt: Optional[asyncio.Event] = None
        self._closing = False
        self.attempts = 0

    @property
    def endpoint(self) -> str:
        if not self.token:
            return self.url
        return f"{self.url}?{urlencode({'token': self.token})}"

    async def connect(self) -> ConnectionState:
        """Start the connection supervisor and wait for its first attempt to settle."""
        if self._runner is None or self._runner.done():
            self._closing = False
            self._first_attempt = asyncio.Event()
            self._runner = asyncio.create_task(self._run(), name="ws-transport")
        await self._first_attempt.wait()
        return self.state

    async def close(self) -> None:
        self._closing = True
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        self._ws = None
        self._subscriptions.clear()
        self._set_state(ConnectionState.DEGRADED)

    async def _run(self) -> None:
        while not self._closing:
            try:
                async with self._connector(self.endpoint) as ws:
                    self._ws = ws
                    self.attempts = 0
                    await self._resubscribe()
                    self._set_state(ConnectionState.CONNECTED)
                    self._first_attempt.set()
                    async for raw in ws:
                        await self._receive(raw)
                logger.warning("Push channel closed by server")
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning("Push channel unavailable: %s", e)
            finally:
                self._ws = None
            if self._closing:
                break
            self._set_state(ConnectionState.DEGRADED)
            self._first_attempt.set()
            delay = backoff_delay(self.attempts, self.reconnect_base_ms, self.reconnect_max_ms)
            self.attempts += 1
            logger.info("Reconnecting in %.1fs (attempt %d)", delay, self.attempts)
            await self.clock.sleep(delay)

    async def _resubscribe(self) -> None:
        for channel in self.channels:
            await self._send({"op": "subscribe", "channel": channel.value})

    async def _send(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps(message))
        except (OSError, WebSocketException) as e:
            # the supervisor notices the dead socket and reconnects
            logger.warning("Send of %s failed: %s", message.get("op"), e)

    async def _join(self, channel: Channel) -> None:
        await self._send({"op": "subscribe", "channel": channel.value})

    async def _leave(self, channel: Channel) -> None:
        await self._send({"op": "unsubscribe", "channel": channel.value})

    async def _receive(self, raw) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Dropping malformed frame")
            return
        kind = message.get("type")
        if kind == "event":
            try:
                event = ChannelEvent.from_wire(message)
            except ValidationError as e:
                logger.warning("Dropping event outside the channel's set: %s", e.detail)
                return
            except (KeyError, ValueError) as e:
                logger.warning("Dropping malformed event frame: %s", e)
                return
            await self.dispatch(event)
        elif kind == "error":
            logger.warning("Server rejected request: %s", message.get("detail"))
        else:
            logger.debug("Received %s frame", kind)


async def probe_websocket(url: str, timeout: float = 3.0, connector: Optional[Callable[[str], Any]] = None) -> bool:
    connector = connector or websockets.connect

    async def _open() -> bool:
        async with connector(url):
            return True

    try:
        return await asyncio.wait_for(_open(), timeout)
    except (OSError, WebSocketException, asyncio.TimeoutError) as e:
        logger.info("WebSocket probe of %s failed: %s", url, e)
        return False


async def select_transport(
    url: Optional[str] = None,
    token: Optional[str] = None,
    clock: Optional[Clock] = None,
    probe: Optional[Callable[[str], Awaitable[bool]]] = None,
) -> ChannelTransport:
    """Pick live push when the endpoint answers, polling otherwise."""
    transport = WebSocketTransport(url=url, token=token, clock=clock)
    available = await (probe or probe_websocket)(transport.endpoint)
    if available:
        return transport
    return PollingOnlyTransport()
