"""Tracing and observability data models."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TraceEvent:
    """A single observability event."""

    id: str
    event_type: str  # e.g. "message_sent", "presence_changed"
    actor: str  # component that created this event
    data: dict
    timestamp: datetime
