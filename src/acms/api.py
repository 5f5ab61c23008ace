from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from . import views
from .config import Settings, get_settings
from .dependencies import get_app_settings, get_history, require_verified_session
from .engine import assess_change, load_rule_table
from .errors import AppError
from .history import HistoryClient
from .identity import SessionEvent, SessionEvents
from .models import AssessmentInput, AssessmentResult, AuthSession

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


def _log_session_change(event: SessionEvent, session: Optional[AuthSession]) -> None:
    logger.info(
        "session change | event=%s user=%s",
        event.value,
        session.user_id if session else "-",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    app.state.http = httpx.AsyncClient(
        transport=app.state.transport,
        timeout=settings.request_timeout_seconds,
    )
    subscription = app.state.session_events.subscribe(_log_session_change)
    logger.info("startup | supabase=%s", settings.supabase_url)
    try:
        yield
    finally:
        subscription.unsubscribe()
        await app.state.http.aclose()
        logger.info("shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    `transport` replaces the network for the Supabase client (tests).
    """
    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.transport = transport
    app.state.session_events = SessionEvents()
    app.state.templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.secret_key,
        session_cookie=settings.session_cookie_name,
        same_site="lax",
        https_only=settings.https_only_cookies,
    )

    @app.middleware("http")
    async def request_timing(request: Request, call_next) -> Response:
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "request | method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
        )
        return response

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=getattr(exc, "status_code", 500), content=exc.to_dict())

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/assess", response_model=AssessmentResult)
    def assess(
        change: AssessmentInput,
        background_tasks: BackgroundTasks,
        session: AuthSession = Depends(require_verified_session),
        history: HistoryClient = Depends(get_history),
        app_settings: Settings = Depends(get_app_settings),
    ) -> AssessmentResult:
        logger.info("Assessing change | user=%s type=%s", session.user_id, change.change_type.value)

        result = assess_change(change, rules=load_rule_table(app_settings.risk_rules_path))

        logger.info(
            "Assessment complete | user=%s score=%s level=%s",
            session.user_id,
            result.risk_score,
            result.risk_level.value,
        )

        background_tasks.add_task(history.record_assessment, session, change, result)
        return result

    app.include_router(views.router)
    return app


app = create_app()
