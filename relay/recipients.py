"""Recipient and body validation per provider."""

from __future__ import annotations

import re

from relay.errors import RecipientValidationError
from relay.models import MAX_BODY_LENGTH, ServiceType

_PHONE_SEPARATORS = re.compile(r"[\s\-()\[\].]")
_E164_DIGITS = re.compile(r"^[1-9]\d{9,14}$")
_TELEGRAM_CHAT_ID = re.compile(r"^-?\d+$")
_TELEGRAM_USERNAME = re.compile(r"^@[A-Za-z0-9_]{5,32}$")
_MATTERMOST_CHANNEL_ID = re.compile(r"^[A-Za-z0-9]{26}$")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def sanitize_phone_number(raw: str) -> str:
    """Strip formatting characters, keeping digits and a leading plus."""

    stripped = _PHONE_SEPARATORS.sub("", raw.strip())
    return re.sub(r"[^\d+]", "", stripped)


def normalize_whatsapp_phone(recipient: str) -> str:
    """Return the bare E.164 digits of a WhatsApp recipient.

    Raises:
        RecipientValidationError: if the number is not 10-15 digits with a
            non-zero country code.
    """
    digits = sanitize_phone_number(recipient).lstrip("+")
    if not digits:
        raise RecipientValidationError("Phone number is required")
    if len(digits) < 10:
        raise RecipientValidationError("Phone number must be at least 10 digits long")
    if len(digits) > 15:
        raise RecipientValidationError("Phone number must be no more than 15 digits long")
    if not _E164_DIGITS.match(digits):
        raise RecipientValidationError("Phone number must start with a valid country code (1-9)")
    return digits


def whatsapp_jid(recipient: str) -> str:
    return f"{normalize_whatsapp_phone(recipient)}@s.whatsapp.net"


def normalize_telegram_recipient(recipient: str) -> tuple[str, str]:
    """Classify a Telegram recipient.

    Returns:
        ``("phone", "+<digits>")``, ``("username", "@name")`` or
        ``("chat_id", "<digits>")``.
    """
    value = recipient.strip()
    if value.startswith("@"):
        if not _TELEGRAM_USERNAME.match(value):
            raise RecipientValidationError("Telegram username must be @ followed by at least 5 characters")
        return "username", value
    if value.startswith("+"):
        return "phone", "+" + normalize_whatsapp_phone(value)
    if _TELEGRAM_CHAT_ID.match(value):
        return "chat_id", value
    raise RecipientValidationError(
        "Telegram recipient must be a +phone number, an @username or a numeric chat id"
    )


def is_email(recipient: str) -> bool:
    return bool(_EMAIL.match(recipient.strip()))


def normalize_mattermost_channel_id(recipient: str) -> str:
    channel_id = recipient.strip()
    if not channel_id:
        raise RecipientValidationError("Channel ID is required")
    if not _MATTERMOST_CHANNEL_ID.match(channel_id):
        raise RecipientValidationError("Invalid channel ID format. Must be 26 alphanumeric characters.")
    return channel_id


def normalize_email(recipient: str) -> str:
    email = recipient.strip()
    if not is_email(email):
        raise RecipientValidationError(f"Invalid email address: {recipient!r}")
    return email.lower()


def validate_body(service: ServiceType, body: str) -> str:
    if not body or not body.strip():
        raise RecipientValidationError("Message content is required")
    limit = MAX_BODY_LENGTH[service]
    if len(body) > limit:
        raise RecipientValidationError(f"Message exceeds the {service.value} limit of {limit} characters")
    return body
