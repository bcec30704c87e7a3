"""Identity data models."""

from dataclasses import dataclass, replace
from datetime import datetime


@dataclass
class Identity:
    """An authenticated principal's profile record."""

    key: str
    name: str
    email: str | None = None
    is_online: bool = False
    last_seen: datetime | None = None
    created_at: datetime | None = None

    def with_presence(
        self, is_online: bool, last_seen: datetime | None
    ) -> "Identity":
        """Copy with presence fields replaced."""
        return replace(self, is_online=is_online, last_seen=last_seen)
