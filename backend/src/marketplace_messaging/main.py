from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .config import Settings, get_settings, runtime_secret_issues
from .conversations import ConversationService
from .directory import InMemoryDirectory, SqlAlchemyDirectory, create_directory
from .errors import MessagingError
from .messages import create_message_repository
from .models import ErrorResponse
from .notifier import RealtimeDispatcher, RealtimeNotifier, create_realtime_notifier
from .rate_limit import SlidingWindowRateLimiter
from .threads import create_thread_repository

logger = logging.getLogger(__name__)


def _check_runtime_secrets(settings: Settings) -> None:
    secret_issues = runtime_secret_issues(settings)
    if not secret_issues:
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(secret_issues)
            + ". Remediation: set SESSION_TOKEN_SECRET and the settings of the selected backends, "
            + "or switch REALTIME_NOTIFIER_TYPE to stub/disabled."
        )
    if settings.runtime_secret_guard_mode == "warn":
        for issue in secret_issues:
            logger.warning("runtime secret guard warning: %s", issue)


def create_app(
    settings: Settings | None = None,
    *,
    directory: InMemoryDirectory | SqlAlchemyDirectory | None = None,
    notifier: RealtimeNotifier | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.getLogger("marketplace_messaging").setLevel(settings.log_level)
    _check_runtime_secrets(settings)

    directory = directory or create_directory(
        backend=settings.directory_backend,
        database_url=settings.database_url,
    )
    dispatcher = RealtimeDispatcher(
        notifier or create_realtime_notifier(settings),
        event_names=settings.realtime_event_names,
        max_workers=settings.realtime_max_workers,
        max_pending=settings.realtime_max_pending,
    )
    conversations = ConversationService(
        thread_repository=create_thread_repository(
            backend=settings.messaging_store_backend,
            database_url=settings.database_url,
        ),
        message_repository=create_message_repository(
            backend=settings.messaging_store_backend,
            database_url=settings.database_url,
            max_length=settings.message_max_length,
        ),
        directory=directory,
        properties=directory,
        dispatcher=dispatcher,
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        dispatcher.shutdown()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.directory = directory
    app.state.dispatcher = dispatcher
    app.state.conversations = conversations
    app.state.send_limiter = SlidingWindowRateLimiter(
        max_events=settings.message_rate_limit_max,
        window_seconds=settings.message_rate_limit_window_seconds,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MessagingError)
    async def _messaging_error_handler(_: Request, exc: MessagingError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(detail=exc.message, code=exc.code, reason=exc.reason).model_dump(),
        )

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
