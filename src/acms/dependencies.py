from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from .config import Settings
from .history import HistoryClient
from .identity import IdentityClient
from .mfa import MfaFlow
from .models import AuthSession


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_identity(request: Request) -> IdentityClient:
    return IdentityClient(
        request.app.state.http,
        request.app.state.settings,
        request.session,
        request.app.state.session_events,
    )


def get_history(request: Request) -> HistoryClient:
    return HistoryClient(request.app.state.http, request.app.state.settings)


async def require_verified_session(
    request: Request,
    identity: IdentityClient = Depends(get_identity),
) -> AuthSession:
    session = await identity.get_current_session()
    flow = MfaFlow.load(request.session)
    if session is None or flow is None or not flow.granted:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "not_authenticated",
                "message": "Sign in and complete the second factor check first.",
            },
        )
    return session
