"""
Reducer-style aggregate keyed by entity id.

Snapshots replace the whole aggregate; push events apply per-entity deltas
and are deduplicated by ``event_id``, so a replayed event is a no-op.
Optimistic edits keep the pre-edit value until the server confirms or
rejects them.
"""
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional

from parkwatch.realtime.events import ChannelEvent

logger = logging.getLogger(__name__)

_ABSENT = object()
SEEN_EVENTS_LIMIT = 1000


class AggregateStore:

    def __init__(self, key_field: str = "id"):
        self.key_field = key_field
        self.items: Dict[Any, Dict[str, Any]] = {}
        # latest value of aggregate counters such as pending approvals, by event name
        self.counters: Dict[str, int] = {}
        self.revision = 0
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._staged: Dict[Any, Any] = {}
        self._listeners: List[Callable[["AggregateStore"], None]] = []

    def __len__(self) -> int:
        return len(self.items)

    def get(self, key: Any) -> Optional[Dict[str, Any]]:
        return self.items.get(key)

    def values(self) -> List[Dict[str, Any]]:
        return list(self.items.values())

    def add_listener(self, listener: Callable[["AggregateStore"], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        self.revision += 1
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Store listener failed")

    def replace_all(self, items: Iterable[Dict[str, Any]], counters: Optional[Dict[str, int]] = None) -> None:
        """Overwrite the aggregate with an authoritative snapshot."""
        self.items = {item[self.key_field]: dict(item) for item in items}
        if counters is not None:
            self.counters = dict(counters)
        # the snapshot already reflects or supersedes any optimistic edit
        self._staged.clear()
        self._changed()

    def apply(self, event: ChannelEvent) -> bool:
        """Apply one push event. Returns False for an event already applied."""
        if event.event_id in self._seen:
            return False
        self._remember(event.event_id)

        payload = dict(event.payload)
        if "count" in payload and "entity_id" not in payload:
            self.counters[event.name] = payload["count"]
        else:
            keys = payload.pop("entity_ids", None)
            if keys is None:
                keys = [payload.pop("entity_id", None)]
            else:
                payload.pop("entity_id", None)
            for key in keys:
                if key is None:
                    continue
                merged = dict(self.items.get(key, {}))
                merged.update(payload)
                merged[self.key_field] = key
                self.items[key] = merged
        self._changed()
        return True

    def _remember(self, event_id: str) -> None:
        self._seen[event_id] = None
        while len(self._seen) > SEEN_EVENTS_LIMIT:
            self._seen.popitem(last=False)

    # Optimistic edits

    def stage(self, key: Any, **changes: Any) -> None:
        """Apply ``changes`` locally before the server confirms them."""
        current = self.items.get(key, _ABSENT)
        self._staged.setdefault(key, dict(current) if current is not _ABSENT else _ABSENT)
        merged = dict(current) if current is not _ABSENT else {self.key_field: key}
        merged.update(changes)
        self.items[key] = merged
        self._changed()

    def revert(self, key: Any) -> None:
        """Undo the staged edit after the server rejected it."""
        previous = self._staged.pop(key, None)
        if previous is None:
            return
        if previous is _ABSENT:
            self.items.pop(key, None)
        else:
            self.items[key] = previous
        self._changed()

    def confirm(self, key: Any) -> None:
        self._staged.pop(key, None)

    @property
    def pending(self) -> List[Any]:
        return list(self._staged)
