import asyncio
import time
from typing import List, Tuple


class Clock:
    """Time source for the client realtime layer."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    ``advance`` wakes every sleeper whose deadline falls inside the step, in
    deadline order, and lets the woken tasks run before moving on, so timer
    driven code can be stepped deterministically.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._sleepers: List[Tuple[float, asyncio.Future]] = []

    def now(self) -> float:
        return self._now

    @property
    def sleepers(self) -> int:
        return sum(1 for _, fut in self._sleepers if not fut.done())

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        entry = (self._now + max(seconds, 0.0), fut)
        self._sleepers.append(entry)
        try:
            await fut
        finally:
            if entry in self._sleepers:
                self._sleepers.remove(entry)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        await settle()
        while True:
            due = [s for s in self._sleepers if s[0] <= target and not s[1].done()]
            if not due:
                break
            entry = min(due, key=lambda s: s[0])
            self._sleepers.remove(entry)
            self._now = max(self._now, entry[0])
            entry[1].set_result(None)
            await settle()
        self._now = target
        await settle()


async def settle(rounds: int = 20) -> None:
    """Yield to the loop until ready callbacks have had a chance to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
