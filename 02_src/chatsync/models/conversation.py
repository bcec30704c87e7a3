"""Conversation data models."""

from dataclasses import dataclass, field

from .identity import Identity
from .messages import Message


@dataclass
class Conversation:
    """A chat thread, direct or group."""

    key: str
    participants: list[Identity]
    is_group: bool = False
    group_name: str | None = None
    group_icon_url: str | None = None
    unread_count: int = 0  # scoped to the identity viewing the list
    messages: list[Message] = field(default_factory=list)

    @property
    def last_message(self) -> Message | None:
        """Most recent message, derived from ``messages``."""
        if not self.messages:
            return None
        return max(self.messages, key=lambda m: m.timestamp)

    @property
    def participant_keys(self) -> list[str]:
        return [p.key for p in self.participants]

    def other_participants(self, identity_key: str) -> list[Identity]:
        """Participants other than ``identity_key``."""
        return [p for p in self.participants if p.key != identity_key]

    def replace_participant(self, identity: Identity) -> bool:
        """Swap in a fresher record for a participant. Returns True if found."""
        for i, existing in enumerate(self.participants):
            if existing.key == identity.key:
                self.participants[i] = identity
                return True
        return False
