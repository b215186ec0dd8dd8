"""Adapters for the loosely-shaped payloads older marketplace clients send.

Clients written against earlier versions of the messaging API name the same
field several ways. The first key carrying a non-blank value wins, in the order
listed below. Everything past this module works with ``SendMessageRequest``.
"""

from __future__ import annotations

from typing import Any, Mapping

from .errors import ValidationError
from .models import SendMessageRequest

RECIPIENT_KEYS = ("recipientId", "receiverId", "receiver_id", "toUserId")
TEXT_KEYS = ("text", "message_text", "message", "content")
PROPERTY_KEYS = ("propertyId", "property_id")
THREAD_KEYS = ("threadId", "conversationId", "conversation_id")
OTHER_USER_KEYS = ("otherUserId", "with", "userId")


def _first_present(payload: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is None or isinstance(value, bool):
            continue
        if not isinstance(value, (str, int, float)):
            raise ValidationError(f"Field '{key}' must be a string")
        text = str(value)
        if text.strip():
            return text
    return None


def send_request_from_legacy(payload: Mapping[str, Any]) -> SendMessageRequest:
    return SendMessageRequest(
        thread_id=_first_present(payload, THREAD_KEYS),
        recipient_id=_first_present(payload, RECIPIENT_KEYS),
        property_id=_first_present(payload, PROPERTY_KEYS),
        text=_first_present(payload, TEXT_KEYS) or "",
    )


def ensure_thread_target_from_legacy(params: Mapping[str, Any]) -> tuple[str, str | None]:
    """Return ``(other_user_id, property_id)`` from ensure-thread query parameters."""
    other_user_id = _first_present(params, OTHER_USER_KEYS)
    if other_user_id is None:
        raise ValidationError("otherUserId is required")
    property_id = _first_present(params, PROPERTY_KEYS)
    return other_user_id.strip(), property_id.strip() if property_id else None
