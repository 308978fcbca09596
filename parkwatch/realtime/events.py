"""
Channel event envelope shared by the server hub and the client transports.

Every event is tagged with a channel and one kind from that channel's closed
set (``CHANNEL_EVENTS``). Payloads carry the identifying fields a handler
needs to apply an incremental update without refetching: ``entity_id``,
``owner_id`` and ``status`` where they apply.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, model_validator

from parkwatch.core.constants import CHANNEL_EVENTS, Channel
from parkwatch.core.errors import ValidationError


def resolve_event_kind(channel: Union[Channel, str], event: Union[enum.Enum, str]) -> enum.Enum:
    """Map a raw event name onto the channel's enum, rejecting names outside its set."""
    try:
        channel = Channel(channel)
    except ValueError:
        raise ValidationError(f"Unknown channel '{channel}'")
    kinds = CHANNEL_EVENTS[channel]
    if isinstance(event, kinds):
        return event
    raw = event.value if isinstance(event, enum.Enum) else event
    try:
        return kinds(raw)
    except ValueError:
        allowed = ", ".join(k.value for k in kinds)
        raise ValidationError(
            f"Event '{raw}' is not defined on channel '{channel.value}' (allowed: {allowed})"
        )


class ChannelEvent(BaseModel):
    channel: Channel
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    # Delivered only to this user's connections when set
    recipient_id: Optional[int] = None
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="before")
    @classmethod
    def check_event_kind(cls, data):
        if isinstance(data, dict) and "channel" in data and "event" in data:
            data = dict(data)
            data["event"] = resolve_event_kind(data["channel"], data["event"]).value
        return data

    @property
    def kind(self) -> enum.Enum:
        return CHANNEL_EVENTS[self.channel](self.event)

    @property
    def name(self) -> str:
        """Namespaced wire name, e.g. ``appeals:reviewed``."""
        return f"{self.channel.value}:{self.event}"

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": "event",
            "channel": self.channel.value,
            "event": self.event,
            "event_id": self.event_id,
            "emitted_at": self.emitted_at.isoformat(),
            "payload": self.payload,
        }

    @classmethod
    def from_wire(cls, message: Dict[str, Any]) -> "ChannelEvent":
        return cls(
            channel=message["channel"],
            event=message["event"],
            payload=message.get("payload") or {},
            event_id=message.get("event_id") or uuid.uuid4().hex,
            emitted_at=message.get("emitted_at") or datetime.now(timezone.utc),
        )
