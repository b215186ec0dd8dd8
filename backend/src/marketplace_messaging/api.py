from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query, Request, status

from .config import Settings
from .conversations import ConversationService
from .errors import RateLimitedError
from .legacy_payloads import ensure_thread_target_from_legacy, send_request_from_legacy
from .models import (
    MarkReadResponse,
    MessageDeleteResponse,
    MessageItem,
    SendMessageRequest,
    ThreadItem,
    ThreadListResponse,
)
from .rate_limit import SlidingWindowRateLimiter
from .session_tokens import SessionTokenError, SessionTokenSigner

router = APIRouter(prefix="/messages", tags=["messages"])


def _service(request: Request) -> ConversationService:
    return request.app.state.conversations


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _require_user(request: Request) -> str:
    token = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
    if not token:
        raise HTTPException(401, "session required")
    try:
        claims = SessionTokenSigner(_settings(request).session_token_secret).verify(token)
    except SessionTokenError as exc:
        raise HTTPException(401, str(exc)) from exc
    return claims.user_id


def _enforce_send_rate_limit(request: Request, user_id: str) -> None:
    limiter: SlidingWindowRateLimiter = request.app.state.send_limiter
    if not limiter.check_and_record(user_id):
        raise RateLimitedError("Too many messages sent, please slow down")


@router.get("", response_model=ThreadListResponse)
def list_threads(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
) -> ThreadListResponse:
    user_id = _require_user(request)
    return _service(request).list_threads(user_id, page=page, limit=limit)


@router.get("/ensure-thread", response_model=ThreadItem)
def ensure_thread(request: Request) -> ThreadItem:
    user_id = _require_user(request)
    other_user_id, property_id = ensure_thread_target_from_legacy(request.query_params)
    return _service(request).ensure_thread(user_id, other_user_id, property_id)


@router.post("", response_model=MessageItem, status_code=status.HTTP_201_CREATED)
def send_message(request: Request, payload: SendMessageRequest) -> MessageItem:
    user_id = _require_user(request)
    _enforce_send_rate_limit(request, user_id)
    return _service(request).send_message(user_id, payload)


@router.post("/send", response_model=MessageItem, status_code=status.HTTP_201_CREATED)
def send_message_legacy(request: Request, payload: dict[str, Any] = Body(...)) -> MessageItem:
    user_id = _require_user(request)
    _enforce_send_rate_limit(request, user_id)
    return _service(request).send_message(user_id, send_request_from_legacy(payload))


@router.get("/{thread_id}", response_model=list[MessageItem])
def get_conversation(request: Request, thread_id: str) -> list[MessageItem]:
    user_id = _require_user(request)
    return _service(request).get_conversation(thread_id, user_id)


@router.put("/{thread_id}/read", response_model=MarkReadResponse)
def mark_thread_read(request: Request, thread_id: str) -> MarkReadResponse:
    user_id = _require_user(request)
    return _service(request).mark_thread_read(thread_id, user_id)


@router.delete("/items/{message_id}", response_model=MessageDeleteResponse)
def delete_message(request: Request, message_id: str) -> MessageDeleteResponse:
    user_id = _require_user(request)
    return _service(request).delete_message(message_id, user_id)
