"""Evolution API adapter - map raw gateway JSON into canonical models.

Gateway responses are untyped and come in several envelopes depending on the
Evolution version and endpoint:

- bare array:                        [ {...}, ... ]
- data envelope:                     {"data": [ ... ]}
- chats envelope:                    {"chats": [ ... ]}
- messages envelope:                 {"messages": [ ... ]}
- paginated messages (v2):           {"messages": {"records": [...], "pages": n,
                                                   "currentPage": n, "total": n}}

They are normalized here, before any business logic runs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from kiteintel.infra.time import from_epoch

from .models import ChatSummary, ContactProfile, MappedMessage, MessagePage, Skip

# Events that carry a message item
_MESSAGE_EVENTS = {"messages.upsert", "send.message"}

_ASCII_DIGITS = re.compile(r"[0-9]+")


class InvalidPayloadError(Exception):
    """Raised when a gateway response has an unusable shape."""

    pass


@dataclass(frozen=True)
class WebhookEvent:
    """Normalized webhook delivery: event name and message items (maybe empty)."""

    event: str
    items: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_message(self) -> bool:
        return self.event in _MESSAGE_EVENTS


# ── Scalars ──────────────────────────────────────────────────────────────────


def _clean_str(value: Any) -> str | None:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return None


def parse_epoch(value: Any) -> int | None:
    """Read a gateway timestamp (int, float, numeric string or {"low": n})."""
    if isinstance(value, dict):
        # protobuf Long serialized by Baileys
        value = value.get("low")
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    return _as_positive_int(value)


def _as_positive_int(value: Any) -> int | None:
    """Read a positive count from an int or an ASCII-digit string."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and _ASCII_DIGITS.fullmatch(value.strip()):
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


# ── Messages ─────────────────────────────────────────────────────────────────


def _extract_content(message: dict[str, Any]) -> tuple[str, str, str | None, str | None] | None:
    """Resolve (content, media_kind, media_url, media_mimetype) in priority order."""
    conversation = _clean_str(message.get("conversation"))
    if conversation:
        return conversation, "texto", None, None

    extended = message.get("extendedTextMessage") or {}
    extended_text = _clean_str(extended.get("text")) if isinstance(extended, dict) else None
    if extended_text:
        return extended_text, "texto", None, None

    image = message.get("imageMessage")
    if isinstance(image, dict):
        return (
            _clean_str(image.get("caption")) or "[Imagem]",
            "imagem",
            _clean_str(image.get("url")),
            _clean_str(image.get("mimetype")),
        )

    audio = message.get("audioMessage")
    if isinstance(audio, dict):
        return "[Áudio]", "audio", _clean_str(audio.get("url")), _clean_str(audio.get("mimetype"))

    video = message.get("videoMessage")
    if isinstance(video, dict):
        return (
            _clean_str(video.get("caption")) or "[Vídeo]",
            "video",
            _clean_str(video.get("url")),
            _clean_str(video.get("mimetype")),
        )

    document = message.get("documentMessage")
    if isinstance(document, dict):
        return (
            _clean_str(document.get("fileName")) or "[Documento]",
            "documento",
            _clean_str(document.get("url")),
            _clean_str(document.get("mimetype")),
        )

    if isinstance(message.get("stickerMessage"), dict):
        return "[Sticker]", "sticker", None, None

    contact = message.get("contactMessage")
    if isinstance(contact, dict):
        display_name = _clean_str(contact.get("displayName")) or "Desconhecido"
        return f"[Contato: {display_name}]", "contato", None, None

    if isinstance(message.get("locationMessage"), dict):
        return "[Localização]", "localizacao", None, None

    return None


def map_message(raw: Any) -> MappedMessage | Skip:
    """Convert one raw gateway message into a MappedMessage.

    Accepts bare items (findMessages) and webhook-style {"data": {...}}.
    Never uses receipt time: a payload without a usable messageTimestamp is
    skipped rather than stored with a fabricated time.

    Args:
        raw: Raw message JSON.

    Returns:
        MappedMessage, or Skip with a loggable reason.
    """
    if not isinstance(raw, dict):
        return Skip("not_an_object")

    item = raw.get("data") if isinstance(raw.get("data"), dict) and "key" not in raw else raw

    key = item.get("key")
    if not isinstance(key, dict):
        return Skip("missing_key")

    message_id = _clean_str(key.get("id")) or _clean_str(item.get("id"))
    if not message_id:
        return Skip("missing_message_id")

    remote_jid = _clean_str(key.get("remoteJid"))
    if not remote_jid:
        return Skip("missing_remote_jid", message_id)

    message = item.get("message")
    if not isinstance(message, dict):
        return Skip("no_content", message_id)

    extracted = _extract_content(message)
    if extracted is None:
        return Skip("unsupported_kind", message_id)
    content, media_kind, media_url, media_mimetype = extracted

    epoch = parse_epoch(item.get("messageTimestamp"))
    if epoch is None:
        return Skip("missing_timestamp", message_id)
    try:
        sent_at = from_epoch(epoch)
    except ValueError:
        return Skip("invalid_timestamp", message_id)

    status = item.get("status")
    delivery_status = str(status) if status not in (None, "") else None

    return MappedMessage(
        message_id=message_id,
        remote_jid=remote_jid,
        direction="from_me" if key.get("fromMe") is True else "from_contact",
        content=content,
        media_kind=media_kind,  # type: ignore[arg-type]
        sent_at=sent_at,
        delivery_status=delivery_status,
        push_name=_clean_str(item.get("pushName")),
        media_url=media_url,
        media_mimetype=media_mimetype,
    )


# ── Envelopes ────────────────────────────────────────────────────────────────


def _unwrap_list(response: Any, keys: tuple[str, ...]) -> list[Any]:
    if isinstance(response, list):
        return response
    if isinstance(response, dict):
        for key in keys:
            value = response.get(key)
            if isinstance(value, list):
                return value
        return []
    if response is None:
        return []
    raise InvalidPayloadError(f"unexpected response type: {type(response).__name__}")


def parse_chat_list(response: Any) -> list[ChatSummary]:
    """Normalize a findChats response into ChatSummary items.

    Entries without any identifier are dropped; address validation is left to
    the caller so invalid chats can be counted as skipped.

    Raises:
        InvalidPayloadError: If the response is neither list nor object.
    """
    chats: list[ChatSummary] = []
    for entry in _unwrap_list(response, ("data", "chats")):
        if not isinstance(entry, dict):
            continue
        raw_id = _clean_str(entry.get("remoteJid")) or _clean_str(entry.get("id"))
        if not raw_id:
            continue
        chats.append(
            ChatSummary(
                raw_id=raw_id,
                name=_clean_str(entry.get("pushName")) or _clean_str(entry.get("name")),
                avatar_url=_clean_str(entry.get("profilePictureUrl"))
                or _clean_str(entry.get("profilePicUrl")),
                last_message_epoch=parse_epoch(
                    entry.get("lastMessageTimestamp") or entry.get("conversationTimestamp")
                ),
            )
        )
    return chats


def parse_message_list(response: Any) -> MessagePage:
    """Normalize a findMessages response into a MessagePage.

    Raises:
        InvalidPayloadError: If the response is neither list nor object.
    """
    if isinstance(response, dict):
        messages = response.get("messages")
        if isinstance(messages, dict):
            records = messages.get("records")
            items = [r for r in records if isinstance(r, dict)] if isinstance(records, list) else []
            pages = _as_positive_int(messages.get("pages")) or 1
            current = _as_positive_int(messages.get("currentPage")) or 1
            total = _as_positive_int(messages.get("total"))
            return MessagePage(items=items, pages=pages, current_page=current, total=total)

    items = [r for r in _unwrap_list(response, ("messages", "data")) if isinstance(r, dict)]
    return MessagePage(items=items)


def parse_profile(response: Any) -> ContactProfile:
    """Normalize a fetchProfile response; absent fields stay None."""
    if isinstance(response, list):
        response = response[0] if response else None
    if not isinstance(response, dict):
        return ContactProfile()

    is_business = response.get("isBusiness")
    return ContactProfile(
        name=_clean_str(response.get("name"))
        or _clean_str(response.get("pushname"))
        or _clean_str(response.get("pushName")),
        is_business=is_business if isinstance(is_business, bool) else None,
        business_name=_clean_str(response.get("businessName")),
    )


def parse_picture_url(response: Any) -> str | None:
    """Extract a profile picture URL from a fetchProfilePictureUrl response."""
    if not isinstance(response, dict):
        return None
    for key in ("profilePictureUrl", "imgUrl", "picture"):
        url = _clean_str(response.get(key))
        if url:
            return url
    return None


def parse_webhook_event(payload: Any) -> WebhookEvent:
    """Normalize an Evolution webhook delivery.

    Event names arrive as "messages.upsert" or "MESSAGES_UPSERT" depending on
    the gateway version; both are normalized to the dotted lowercase form.

    Raises:
        InvalidPayloadError: If the payload is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("webhook payload must be an object")

    data = payload.get("data")
    event_raw = payload.get("event") or (data.get("event") if isinstance(data, dict) else None)
    event = str(event_raw or "unknown").strip().lower().replace("_", ".")

    if event not in _MESSAGE_EVENTS:
        return WebhookEvent(event=event)

    if isinstance(data, list):
        items = [d for d in data if isinstance(d, dict)]
    elif isinstance(data, dict):
        items = [data]
    elif "key" in payload:
        items = [payload]
    else:
        items = []
    return WebhookEvent(event=event, items=items)
