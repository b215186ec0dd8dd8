from __future__ import annotations


class MessagingError(Exception):
    """Base class for domain errors surfaced to API callers."""

    code = "MESSAGING_ERROR"
    status_code = 400

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason


class ValidationError(MessagingError):
    """Raised when a request is malformed (empty text, no recipient, ...)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidParticipantsError(MessagingError):
    """Raised when a thread would not have exactly two role-valid participants."""

    code = "INVALID_PARTICIPANTS"
    status_code = 400


class RoutingBlockedError(MessagingError):
    code = "ROUTING_BLOCKED"
    status_code = 403


class ForbiddenError(MessagingError):
    code = "FORBIDDEN"
    status_code = 403


class ThreadNotFoundError(MessagingError, KeyError):
    """Raised when a thread id is unknown or the thread was soft-deleted."""

    code = "THREAD_NOT_FOUND"
    status_code = 404

    def __str__(self) -> str:
        return self.message


class MessageNotFoundError(MessagingError, KeyError):
    code = "NOT_FOUND"
    status_code = 404

    def __str__(self) -> str:
        return self.message


class UserNotFoundError(MessagingError, KeyError):
    code = "NOT_FOUND"
    status_code = 404

    def __str__(self) -> str:
        return self.message


class PropertyNotFoundError(MessagingError, KeyError):
    code = "NOT_FOUND"
    status_code = 404

    def __str__(self) -> str:
        return self.message


class RateLimitedError(MessagingError):
    code = "RATE_LIMITED"
    status_code = 429


class ConcurrencyConflictError(Exception):
    """Raised by thread stores when another writer created the same active thread first."""

    def __init__(self, active_key: str) -> None:
        super().__init__(f"active thread already exists for {active_key}")
        self.active_key = active_key
