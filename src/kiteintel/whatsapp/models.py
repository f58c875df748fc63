"""WhatsApp gateway models, normalized at the boundary.

Raw gateway JSON comes in several envelope shapes; everything downstream of
evolution_adapter only sees these types.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

Direction = Literal["from_me", "from_contact"]

# Storage labels for content kinds (kept in Portuguese, as shown in the inbox)
MediaKind = Literal[
    "texto",
    "imagem",
    "audio",
    "video",
    "documento",
    "sticker",
    "contato",
    "localizacao",
]


@dataclass(frozen=True)
class MappedMessage:
    """Canonical message produced from one raw gateway payload.

    ATENÇÃO PII: `remote_jid`, `content` and `push_name` must never be logged.
    """

    message_id: str
    remote_jid: str
    direction: Direction
    content: str
    media_kind: MediaKind
    sent_at: datetime
    delivery_status: str | None = None
    push_name: str | None = None
    media_url: str | None = None
    media_mimetype: str | None = None

    @property
    def is_inbound(self) -> bool:
        return self.direction == "from_contact"


@dataclass(frozen=True)
class Skip:
    """Payload with nothing to store. `reason` is safe to log."""

    reason: str
    message_id: str | None = None


@dataclass(frozen=True)
class ChatSummary:
    """One entry of the gateway's recent-chats list."""

    raw_id: str
    name: str | None = None
    avatar_url: str | None = None
    last_message_epoch: int | None = None


@dataclass(frozen=True)
class ContactProfile:
    """Profile metadata from the gateway (all fields optional)."""

    name: str | None = None
    is_business: bool | None = None
    business_name: str | None = None


@dataclass(frozen=True)
class MessagePage:
    """Messages from one findMessages call plus paging info when present."""

    items: list[dict[str, Any]] = field(default_factory=list)
    pages: int = 1
    current_page: int = 1
    total: int | None = None

    @property
    def has_more(self) -> bool:
        return self.current_page < self.pages


@dataclass(frozen=True)
class ProfileHints:
    """Profile data available when resolving a contact."""

    name: str | None = None
    avatar_url: str | None = None
    is_business: bool | None = None
    origin: str = "whatsapp"
