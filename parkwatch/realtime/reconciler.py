"""
Polling fallback for degraded channels.

While the transport is degraded the reconciler fetches an authoritative
snapshot every ``interval + U(0, jitter)`` milliseconds. It owns exactly one
poll task and at most one in-flight fetch; both are cancelled the moment the
transport reports ``connected`` and when the owning subscription is torn
down, and a fetch that completes after teardown is discarded.
"""
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from parkwatch.core.config import settings
from parkwatch.core.constants import ConnectionState
from parkwatch.realtime.clock import Clock
from parkwatch.realtime.transport import ChannelTransport, call_handler

logger = logging.getLogger(__name__)

SnapshotFetch = Callable[[], Awaitable[Any]]
SnapshotSink = Callable[[Any], Any]


class PollingReconciler:

    def __init__(
        self,
        transport: ChannelTransport,
        fetch: SnapshotFetch,
        on_snapshot: SnapshotSink,
        interval_ms: Optional[int] = None,
        jitter_ms: Optional[int] = None,
        stale_after_failures: Optional[int] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        on_stale: Optional[Callable[[bool], Any]] = None,
        name: str = "snapshot",
    ):
        self.transport = transport
        self.fetch = fetch
        self.on_snapshot = on_snapshot
        self.interval_ms = settings.POLL_INTERVAL_MS if interval_ms is None else interval_ms
        self.jitter_ms = settings.POLL_JITTER_MS if jitter_ms is None else jitter_ms
        self.stale_after_failures = stale_after_failures or settings.STALE_AFTER_FAILURES
        self.clock = clock or Clock()
        self.rng = rng or random.Random()
        self.on_stale = on_stale
        self.name = name

        self.polls = 0
        self.failures = 0
        self.stale = False
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._remove_listener: Optional[Callable[[], None]] = None
        self._running = False
        self._closed = False

    @property
    def polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        """Seconds until the next poll."""
        return (self.interval_ms + self.rng.uniform(0, self.jitter_ms)) / 1000.0

    def start(self) -> None:
        if self._running or self._closed:
            return
        self._running = True
        self._remove_listener = self.transport.add_state_listener(self._on_state)
        self._on_state(self.transport.state)

    async def stop(self) -> None:
        """Release the poll task and any in-flight fetch. Idempotent."""
        self._running = False
        self._closed = True
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        task = self._task
        self._cancel()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Poll task for %s ended with an error", self.name)

    def _on_state(self, state: ConnectionState) -> None:
        if not self._running:
            return
        if state == ConnectionState.CONNECTED:
            if self.polling:
                logger.info("Push restored, stopping %s polling", self.name)
            self._cancel()
        elif not self.polling:
            logger.info("Push degraded, polling %s every %dms", self.name, self.interval_ms)
            self._task = asyncio.create_task(self._poll_loop(), name=f"poll-{self.name}")

    def _cancel(self) -> None:
        if self._inflight is not None:
            self._inflight.cancel()
            self._inflight = None
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _poll_loop(self) -> None:
        while self._running:
            await self.clock.sleep(self.next_delay())
            if not self._running or self.transport.state == ConnectionState.CONNECTED:
                return
            await self.poll_once()

    async def poll_once(self) -> bool:
        """Fetch one snapshot and hand it over. Returns whether it was applied."""
        self._inflight = asyncio.ensure_future(self.fetch())
        try:
            snapshot = await self._inflight
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.warning("Snapshot fetch for %s failed (%d in a row): %s", self.name, self.failures, e)
            if self.failures >= self.stale_after_failures:
                await self._mark_stale(True)
            return False
        finally:
            self._inflight = None

        if self._closed:
            # consumer went away while the request was in flight
            return False
        self.polls += 1
        self.failures = 0
        await self._mark_stale(False)
        try:
            await call_handler(self.on_snapshot, snapshot)
        except Exception:
            logger.exception("Snapshot handler for %s failed", self.name)
            return False
        return True

    async def _mark_stale(self, stale: bool) -> None:
        if stale == self.stale:
            return
        self.stale = stale
        if stale:
            logger.warning("Data for %s may be stale", self.name)
        if self.on_stale is not None:
            try:
                await call_handler(self.on_stale, stale)
            except Exception:
                logger.exception("Stale listener for %s failed", self.name)
