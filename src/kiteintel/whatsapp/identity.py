"""Identity normalization for WhatsApp addresses (JIDs) and phone numbers.

Pure functions. They never raise on bad input: callers get a tagged result
and skip the record when it is Invalid.

Accepted individual forms:
- <digits>@s.whatsapp.net  (regular account)
- <digits>@c.us            (legacy form, canonicalised to s.whatsapp.net)
- <digits>@lid             (linked-device / business lead id)
- bare phone strings       (canonicalised to s.whatsapp.net)

Everything else (groups, broadcast lists, status, newsletters, call
accounts) is rejected.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

INDIVIDUAL_SUFFIX = "s.whatsapp.net"
LID_SUFFIX = "lid"

# Suffixes that are individual chats but spelled differently
_CANONICAL_SUFFIXES = {
    "s.whatsapp.net": INDIVIDUAL_SUFFIX,
    "c.us": INDIVIDUAL_SUFFIX,
    "lid": LID_SUFFIX,
}

_REJECTED_SUFFIXES = {
    "g.us": "group",
    "broadcast": "broadcast",
    "newsletter": "newsletter",
    "call": "call",
}

MIN_PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"\D", re.ASCII)
_DIGITS = re.compile(r"[0-9]+")
_BARE_PHONE = re.compile(r"^\+?[\d\s\-().]+$", re.ASCII)


@dataclass(frozen=True)
class Address:
    """Validated individual WhatsApp address (canonical JID)."""

    jid: str

    @property
    def user(self) -> str:
        return self.jid.split("@", 1)[0]

    @property
    def is_lid(self) -> bool:
        return self.jid.endswith("@" + LID_SUFFIX)


@dataclass(frozen=True)
class Phone:
    """Canonical phone number: digits only, at least MIN_PHONE_DIGITS long."""

    digits: str


@dataclass(frozen=True)
class Invalid:
    """Rejected identifier. `reason` is safe to log (never contains the input)."""

    reason: str


def normalize_address(raw: object) -> Address | Invalid:
    """Normalize a raw chat/contact identifier into an individual Address.

    Args:
        raw: Identifier as received from the gateway (remoteJid, chat id,
             or a phone string).

    Returns:
        Address for individual chats, Invalid otherwise.
    """
    if not isinstance(raw, str):
        return Invalid("not_a_string")

    value = raw.strip().lower()
    if not value:
        return Invalid("empty")

    if "@" not in value:
        if not _BARE_PHONE.match(value):
            return Invalid("malformed")
        digits = _NON_DIGITS.sub("", value)
        if not digits:
            return Invalid("malformed")
        return Address(f"{digits}@{INDIVIDUAL_SUFFIX}")

    user, _, suffix = value.rpartition("@")

    if suffix in _REJECTED_SUFFIXES:
        return Invalid(_REJECTED_SUFFIXES[suffix])

    canonical_suffix = _CANONICAL_SUFFIXES.get(suffix)
    if canonical_suffix is None:
        return Invalid("unsupported_suffix")

    # Multi-device ids look like "5511999999999:12@s.whatsapp.net"
    user = user.split(":", 1)[0]
    if not _DIGITS.fullmatch(user):
        return Invalid("malformed")

    return Address(f"{user}@{canonical_suffix}")


def extract_phone(address: Address | str) -> Phone | Invalid:
    """Extract the canonical phone number from an address.

    Args:
        address: Address, or a raw identifier which is normalized first.

    Returns:
        Phone when the user part has at least MIN_PHONE_DIGITS digits.
    """
    if not isinstance(address, Address):
        normalized = normalize_address(address)
        if isinstance(normalized, Invalid):
            return normalized
        address = normalized

    digits = _NON_DIGITS.sub("", address.user)
    if len(digits) < MIN_PHONE_DIGITS:
        return Invalid("too_short")
    return Phone(digits)


def normalize_phone(raw: object) -> Phone | Invalid:
    """Normalize a user-supplied phone string (e.g. "+55 (11) 99999-0000")."""
    if not isinstance(raw, str):
        return Invalid("not_a_string")
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) < MIN_PHONE_DIGITS:
        return Invalid("too_short")
    return Phone(digits)


def address_for_phone(phone: Phone) -> Address:
    """Build the default individual address for a phone number."""
    return Address(f"{phone.digits}@{INDIVIDUAL_SUFFIX}")


def resolve_identity(raw: object) -> tuple[Address, Phone] | Invalid:
    """Normalize an identifier and extract its phone in one step."""
    address = normalize_address(raw)
    if isinstance(address, Invalid):
        return address
    phone = extract_phone(address)
    if isinstance(phone, Invalid):
        return phone
    return address, phone
