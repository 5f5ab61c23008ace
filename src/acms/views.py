from __future__ import annotations

import logging
from typing import Optional

import segno
from fastapi import APIRouter, BackgroundTasks, Depends, Form, Request
from fastapi.responses import RedirectResponse
from pydantic import ValidationError

from .config import Settings
from .dependencies import get_app_settings, get_history, get_identity
from .engine import assess_change, load_rule_table, risk_color
from .errors import AppError, DatastoreError
from .history import HistoryClient
from .identity import IdentityClient
from .mfa import MfaFlow, MfaState
from .models import AssessmentInput, AssessmentResult, AuthSession, ChangeType, RollbackComplexity, Urgency

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ui"])

SIGNUP_MESSAGE = "Successfully signed up! You can now sign in."


def _render(request: Request, name: str, context: dict, status_code: int = 200):
    return request.app.state.templates.TemplateResponse(
        request,
        name,
        {"app_name": request.app.state.settings.app_name, **context},
        status_code=status_code,
    )


def _redirect(url: str, status_code: int = 302) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status_code)


async def _gate(request: Request, identity: IdentityClient) -> tuple[Optional[AuthSession], Optional[RedirectResponse]]:
    session = await identity.get_current_session()
    if session is None:
        MfaFlow.clear(request.session)
        return None, _redirect("/login")

    flow = MfaFlow.load(request.session)
    if flow is None or not flow.granted:
        return None, _redirect("/mfa")
    return session, None


def _form_page(
    request: Request,
    change: AssessmentInput,
    result: Optional[AssessmentResult] = None,
    error: Optional[str] = None,
    status_code: int = 200,
):
    return _render(
        request,
        "index.html",
        {
            "change": change,
            "result": result,
            "risk_color": risk_color(result.risk_level) if result else None,
            "error": error,
            "change_types": list(ChangeType),
            "urgencies": list(Urgency),
            "rollbacks": list(RollbackComplexity),
        },
        status_code=status_code,
    )


# --- main view ---


@router.get("/")
async def index(request: Request, identity: IdentityClient = Depends(get_identity)):
    _, redirect = await _gate(request, identity)
    if redirect:
        return redirect
    return _form_page(request, AssessmentInput())


@router.post("/")
async def predict(
    request: Request,
    background_tasks: BackgroundTasks,
    change_type: str = Form("software-update"),
    affected_systems: str = Form("1"),
    urgency: str = Form("low"),
    rollback_complexity: str = Form("easy"),
    identity: IdentityClient = Depends(get_identity),
    history: HistoryClient = Depends(get_history),
    settings: Settings = Depends(get_app_settings),
):
    session, redirect = await _gate(request, identity)
    if redirect:
        return _redirect(redirect.headers["location"], status_code=303)

    try:
        change = AssessmentInput(
            change_type=change_type,
            affected_systems=affected_systems,
            urgency=urgency,
            rollback_complexity=rollback_complexity,
        )
    except ValidationError as e:
        message = "; ".join(err["msg"] for err in e.errors())
        # Unvalidated, so the form keeps what was typed.
        submitted = AssessmentInput.model_construct(
            change_type=change_type,
            affected_systems=affected_systems,
            urgency=urgency,
            rollback_complexity=rollback_complexity,
        )
        return _form_page(request, submitted, error=message, status_code=400)

    result = assess_change(change, rules=load_rule_table(settings.risk_rules_path))
    logger.info(
        "Assessment complete | user=%s score=%s level=%s",
        session.user_id,
        result.risk_score,
        result.risk_level.value,
    )

    # Runs after the page is sent; outcome is only logged.
    background_tasks.add_task(history.record_assessment, session, change, result)

    return _form_page(request, change, result=result)


@router.get("/history")
async def history_page(
    request: Request,
    identity: IdentityClient = Depends(get_identity),
    history: HistoryClient = Depends(get_history),
):
    session, redirect = await _gate(request, identity)
    if redirect:
        return redirect

    try:
        records = await history.list_history(session)
    except DatastoreError as e:
        return _render(request, "history.html", {"records": [], "error": e.message}, status_code=502)

    return _render(
        request,
        "history.html",
        {"records": records, "error": None, "risk_color": risk_color},
    )


# --- password auth ---


@router.get("/login")
async def login_page(request: Request, identity: IdentityClient = Depends(get_identity)):
    if await identity.get_current_session() is not None:
        flow = MfaFlow.load(request.session)
        return _redirect("/" if flow is not None and flow.granted else "/mfa")
    return _render(request, "login.html", {"error": None, "message": None, "email": ""})


@router.post("/login")
async def login_submit(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    identity: IdentityClient = Depends(get_identity),
):
    try:
        await identity.sign_in(email.strip(), password)
    except AppError as e:
        return _render(
            request,
            "login.html",
            {"error": e.message, "message": None, "email": email},
            status_code=400,
        )

    flow = MfaFlow()
    await flow.start(identity)
    flow.save(request.session)

    return _mfa_page(request, flow)


@router.post("/signup")
async def signup_submit(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    identity: IdentityClient = Depends(get_identity),
):
    try:
        await identity.sign_up(email.strip(), password)
    except AppError as e:
        return _render(
            request,
            "login.html",
            {"error": e.message, "message": None, "email": email},
            status_code=400,
        )
    return _render(request, "login.html", {"error": None, "message": SIGNUP_MESSAGE, "email": ""})


@router.post("/logout")
async def logout(request: Request, identity: IdentityClient = Depends(get_identity)):
    await identity.sign_out()
    MfaFlow.clear(request.session)
    return _redirect("/login", status_code=303)


# --- second factor ---


def _qr_image(flow: MfaFlow) -> Optional[str]:
    """
    QR for a factor still awaiting its first code. The provider payload only
    survives the enrolling response, so later pages rebuild it from the URI.
    """
    if flow.qr_code:
        return flow.qr_code
    if flow.enrolling and flow.uri:
        return segno.make_qr(flow.uri, error="m").svg_data_uri(scale=4)
    return None


def _render_mfa(request: Request, flow: MfaFlow, status_code: int = 200):
    return _render(request, "mfa.html", {"flow": flow, "qr_image": _qr_image(flow)}, status_code=status_code)


def _mfa_page(request: Request, flow: MfaFlow, status_code: int = 200):
    if flow.granted:
        return _redirect("/", status_code=303)
    if flow.state == MfaState.failed and status_code == 200:
        status_code = 400
    return _render_mfa(request, flow, status_code=status_code)


@router.get("/mfa")
async def mfa_page(request: Request, identity: IdentityClient = Depends(get_identity)):
    if await identity.get_current_session() is None:
        MfaFlow.clear(request.session)
        return _redirect("/login")

    flow = MfaFlow.load(request.session)
    if flow is None:
        flow = MfaFlow()
        await flow.start(identity)
        flow.save(request.session)
        return _mfa_page(request, flow)
    if flow.granted:
        return _redirect("/")
    return _render_mfa(request, flow)


@router.post("/mfa")
async def mfa_submit(
    request: Request,
    code: str = Form(...),
    identity: IdentityClient = Depends(get_identity),
):
    if await identity.get_current_session() is None:
        MfaFlow.clear(request.session)
        return _redirect("/login", status_code=303)

    flow = MfaFlow.load(request.session)
    if flow is None:
        return _redirect("/mfa", status_code=303)

    try:
        await flow.submit_code(identity, code)
    except AppError as e:
        # No factor known yet; the listing has to be retried first.
        flow.error = e.message
        return _render_mfa(request, flow, status_code=409)

    flow.save(request.session)
    return _mfa_page(request, flow)


@router.post("/mfa/restart")
async def mfa_restart(request: Request, identity: IdentityClient = Depends(get_identity)):
    if await identity.get_current_session() is None:
        MfaFlow.clear(request.session)
        return _redirect("/login", status_code=303)

    flow = MfaFlow.load(request.session) or MfaFlow()
    if flow.granted:
        return _redirect("/", status_code=303)

    if flow.state not in (MfaState.authenticated_no_mfa_check, MfaState.failed):
        flow = MfaFlow()
    await flow.start(identity)
    flow.save(request.session)
    return _mfa_page(request, flow)
