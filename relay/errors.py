"""Exception types raised across the relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for relay errors."""


class ConfigurationError(RelayError):
    """Required credentials are missing or malformed."""


class RecipientValidationError(RelayError, ValueError):
    """A send request was rejected before anything was recorded."""


class MessageNotFoundError(RelayError, LookupError):
    """No message exists with the requested id."""


class InvalidTransitionError(RelayError):
    """A message already reached a terminal status."""

    def __init__(self, message_id: str, current_status: str) -> None:
        super().__init__(f"Message {message_id} is already {current_status}")
        self.message_id = message_id
        self.current_status = current_status
