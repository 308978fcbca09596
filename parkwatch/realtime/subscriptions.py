"""
Per-view subscriptions over the shared channel transport.

A view (notification bell, appeals queue, admin dashboard) owns one
``SubscriptionManager``. Subscriptions are keyed by channel and handler set,
so two views on the same channel never fire each other's handlers, and each
one is torn down exactly once however many times ``close`` is called.
"""
import enum
import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple, Union

from parkwatch.core.constants import CHANNEL_EVENTS, Channel
from parkwatch.realtime.clock import Clock
from parkwatch.realtime.events import ChannelEvent, resolve_event_kind
from parkwatch.realtime.reconciler import PollingReconciler, SnapshotFetch, SnapshotSink
from parkwatch.realtime.store import AggregateStore
from parkwatch.realtime.transport import ChannelTransport, Handler, SubscriptionHandle

logger = logging.getLogger(__name__)

SubscriptionKey = Tuple[Channel, Tuple[Tuple[str, int, int], ...]]


def handler_identity(fn: Handler) -> Tuple[int, int]:
    # bound methods are rebuilt on every attribute access; compare owner and function
    owner = getattr(fn, "__self__", None)
    func = getattr(fn, "__func__", None)
    if func is None and owner is not None:
        # builtin methods such as list.append
        func = getattr(type(owner), getattr(fn, "__name__", ""), None)
    return id(owner), id(func if func is not None else fn)


def subscription_key(channel: Channel, handlers: Mapping[Union[enum.Enum, str], Handler]) -> SubscriptionKey:
    bound = sorted(
        (resolve_event_kind(channel, kind).value, *handler_identity(fn)) for kind, fn in handlers.items()
    )
    return channel, tuple(bound)


class Subscription:

    def __init__(
        self,
        manager: "SubscriptionManager",
        key: SubscriptionKey,
        handle: SubscriptionHandle,
        reconciler: Optional[PollingReconciler] = None,
    ):
        self.manager = manager
        self.key = key
        self.handle = handle
        self.reconciler = reconciler
        self.closed = False

    @property
    def channel(self) -> Channel:
        return self.handle.channel

    @property
    def stale(self) -> bool:
        return bool(self.reconciler and self.reconciler.stale)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.manager.transport.unsubscribe(self.handle)
        if self.reconciler is not None:
            await self.reconciler.stop()
        self.manager._forget(self)
        logger.debug("Subscription to %s closed", self.channel.value)


class SubscriptionManager:

    def __init__(self, transport: ChannelTransport, clock: Optional[Clock] = None, **reconciler_options: Any):
        self.transport = transport
        self.clock = clock
        self.reconciler_options = reconciler_options
        self._subscriptions: Dict[SubscriptionKey, Subscription] = {}
        self.closed = False

    def __len__(self) -> int:
        return len(self._subscriptions)

    async def subscribe(
        self,
        channel: Union[Channel, str],
        handlers: Mapping[Union[enum.Enum, str], Handler],
        fetch_snapshot: Optional[SnapshotFetch] = None,
        on_snapshot: Optional[SnapshotSink] = None,
    ) -> Subscription:
        """
        Bind ``handlers`` to ``channel``.

        With ``fetch_snapshot`` the subscription also polls while the
        transport is degraded and hands each snapshot to ``on_snapshot``.
        Subscribing the same handler set twice returns the live subscription.
        """
        if self.closed:
            raise RuntimeError("SubscriptionManager is closed")
        channel = Channel(channel)
        key = subscription_key(channel, handlers)
        existing = self._subscriptions.get(key)
        if existing is not None and not existing.closed:
            return existing

        handle = await self.transport.subscribe(channel, handlers)
        reconciler = None
        if fetch_snapshot is not None:
            reconciler = PollingReconciler(
                self.transport,
                fetch_snapshot,
                on_snapshot or (lambda snapshot: None),
                clock=self.clock,
                name=channel.value,
                **self.reconciler_options,
            )
            reconciler.start()
        subscription = Subscription(self, key, handle, reconciler)
        self._subscriptions[key] = subscription
        return subscription

    def _forget(self, subscription: Subscription) -> None:
        if self._subscriptions.get(subscription.key) is subscription:
            del self._subscriptions[subscription.key]

    async def close(self) -> None:
        self.closed = True
        for subscription in list(self._subscriptions.values()):
            await subscription.close()

    async def __aenter__(self) -> "SubscriptionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class LiveCollection:
    """
    A channel's aggregate kept fresh by push deltas and, while degraded,
    by polled snapshots that replace it wholesale.
    """

    def __init__(
        self,
        manager: SubscriptionManager,
        channel: Union[Channel, str],
        fetch_snapshot: SnapshotFetch,
        extract: Optional[Callable[[Any], Iterable[Dict[str, Any]]]] = None,
        key_field: str = "id",
        events: Optional[Iterable[Union[enum.Enum, str]]] = None,
    ):
        self.manager = manager
        self.channel = Channel(channel)
        self.fetch_snapshot = fetch_snapshot
        self.extract = extract or (lambda snapshot: snapshot)
        self.store = AggregateStore(key_field=key_field)
        self.events = list(events) if events is not None else list(CHANNEL_EVENTS[self.channel])
        self.subscription: Optional[Subscription] = None

    def _on_event(self, event: ChannelEvent) -> None:
        self.store.apply(event)

    def _on_snapshot(self, snapshot: Any) -> None:
        self.store.replace_all(self.extract(snapshot))

    async def refresh(self) -> None:
        self._on_snapshot(await self.fetch_snapshot())

    async def start(self, initial_load: bool = True) -> "LiveCollection":
        if initial_load:
            await self.refresh()
        self.subscription = await self.manager.subscribe(
            self.channel,
            {kind: self._on_event for kind in self.events},
            fetch_snapshot=self.fetch_snapshot,
            on_snapshot=self._on_snapshot,
        )
        return self

    async def close(self) -> None:
        if self.subscription is not None:
            await self.subscription.close()

    @property
    def stale(self) -> bool:
        return bool(self.subscription and self.subscription.stale)

    async def __aenter__(self) -> "LiveCollection":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
