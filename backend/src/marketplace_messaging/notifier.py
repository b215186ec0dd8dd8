from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Literal, Protocol, Sequence

from .config import Settings

logger = logging.getLogger(__name__)

NotifierResultStatus = Literal["delivered", "failed", "skipped"]


@dataclass(frozen=True)
class NotifierResult:
    status: NotifierResultStatus
    attempted_at: datetime
    channel: str
    event_name: str
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class EmittedEvent:
    channel: str
    event_name: str
    payload: dict[str, Any]


class RealtimeNotifier(Protocol):
    def emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> NotifierResult: ...


class StubRealtimeNotifier:
    """Records emitted events in memory; channels in ``fail_channels`` report a failed delivery."""

    def __init__(self, *, fail_channels: set[str] | None = None, raise_on_emit: bool = False) -> None:
        self._lock = Lock()
        self._events: list[EmittedEvent] = []
        self._fail_channels = set(fail_channels or ())
        self._raise_on_emit = raise_on_emit

    @property
    def events(self) -> list[EmittedEvent]:
        with self._lock:
            return list(self._events)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()

    def emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> NotifierResult:
        attempted_at = datetime.now(timezone.utc)
        if self._raise_on_emit:
            raise ConnectionError("stub notifier forced exception")
        if channel in self._fail_channels:
            return NotifierResult(
                status="failed",
                attempted_at=attempted_at,
                channel=channel,
                event_name=event_name,
                error_code="stub_delivery_failed",
                error_message="Stub notifier forced failure for channel",
            )
        with self._lock:
            self._events.append(EmittedEvent(channel=channel, event_name=event_name, payload=payload))
        return NotifierResult(status="delivered", attempted_at=attempted_at, channel=channel, event_name=event_name)


class DisabledRealtimeNotifier:
    def emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> NotifierResult:
        return NotifierResult(
            status="skipped",
            attempted_at=datetime.now(timezone.utc),
            channel=channel,
            event_name=event_name,
            error_code="realtime_disabled",
            error_message="Real-time delivery is disabled",
        )


class _GatewayEmitError(Exception):
    """Internal error raised when a gateway HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpRealtimeNotifier:
    """Delivers events through the socket gateway's HTTP emit endpoint."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float = 2.0) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> NotifierResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            self._post({"channel": channel, "event": event_name, "payload": payload})
        except _GatewayEmitError as exc:
            return NotifierResult(
                status="failed",
                attempted_at=attempted_at,
                channel=channel,
                event_name=event_name,
                error_code=exc.error_code,
                error_message=exc.message,
            )
        return NotifierResult(status="delivered", attempted_at=attempted_at, channel=channel, event_name=event_name)

    def _post(self, body: dict[str, Any]) -> None:
        url = f"{self._base_url}/v1/events/emit"
        request = urllib.request.Request(
            url,
            data=json.dumps(body, default=str).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            raise _GatewayEmitError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _GatewayEmitError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _GatewayEmitError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


class RealtimeDispatcher:
    """Fans events out to participant channels on a bounded worker pool.

    ``dispatch`` never blocks on delivery and never raises; delivery problems
    are logged and dropped, as are events arriving while ``max_pending`` are queued.
    """

    def __init__(
        self,
        notifier: RealtimeNotifier,
        *,
        event_names: Sequence[str] = ("receive_message", "receive-message"),
        max_workers: int = 4,
        max_pending: int = 1000,
    ) -> None:
        self._notifier = notifier
        self._max_pending = max_pending
        self._event_names = tuple(event_names)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="realtime-notifier")
        self._lock = Lock()
        self._pending: set[Future[NotifierResult | None]] = set()

    @property
    def notifier(self) -> RealtimeNotifier:
        return self._notifier

    def dispatch(self, channels: Sequence[str], payload: dict[str, Any]) -> None:
        for channel in dict.fromkeys(channels):
            for event_name in self._event_names:
                with self._lock:
                    if len(self._pending) >= self._max_pending:
                        logger.warning(
                            "realtime dispatch of %s to %s dropped: %d events already pending",
                            event_name,
                            channel,
                            len(self._pending),
                        )
                        continue
                    try:
                        future = self._executor.submit(self._emit, channel, event_name, payload)
                    except RuntimeError as exc:
                        logger.warning("realtime dispatch to %s dropped: %s", channel, exc)
                        continue
                    self._pending.add(future)
                future.add_done_callback(self._forget)

    def drain(self, timeout: float = 5.0) -> None:
        """Wait for events already dispatched to finish (used by tests and shutdown)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, *, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)

    def _forget(self, future: Future[NotifierResult | None]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _emit(self, channel: str, event_name: str, payload: dict[str, Any]) -> NotifierResult | None:
        try:
            result = self._notifier.emit(channel, event_name, payload)
        except Exception as exc:  # noqa: BLE001
            logger.warning("realtime emit %s to %s raised %s: %s", event_name, channel, type(exc).__name__, exc)
            return None
        if result.status == "failed":
            logger.warning(
                "realtime emit %s to %s failed (%s): %s",
                event_name,
                channel,
                result.error_code,
                result.error_message,
            )
        return result


def create_realtime_notifier(settings: Settings) -> RealtimeNotifier:
    notifier_type = settings.realtime_notifier_type
    if notifier_type == "http":
        return HttpRealtimeNotifier(
            base_url=settings.realtime_gateway_url,
            api_key=settings.realtime_gateway_api_key,
            timeout_seconds=settings.realtime_timeout_seconds,
        )
    if notifier_type == "disabled":
        return DisabledRealtimeNotifier()
    return StubRealtimeNotifier()
