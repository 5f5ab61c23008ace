"""
Thin client over the Supabase auth service (GoTrue REST API).

Session state for one browser lives in a mutable mapping (the cookie
session). Session transitions are broadcast through a process-wide
SessionEvents hub that the application subscribes to once at startup.
"""

from __future__ import annotations

import logging
import secrets
import time
from enum import Enum
from typing import Any, Callable, List, MutableMapping, Optional

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import AuthProviderError
from .models import AuthSession, Enrollment, FactorListing, FactorStatus, MfaFactor

logger = logging.getLogger(__name__)

SESSION_KEY = "auth"


class SessionEvent(str, Enum):
    signed_in = "SIGNED_IN"
    signed_out = "SIGNED_OUT"
    token_refreshed = "TOKEN_REFRESHED"
    mfa_challenge_verified = "MFA_CHALLENGE_VERIFIED"


SessionListener = Callable[[SessionEvent, Optional[AuthSession]], None]


class Subscription:
    def __init__(self, events: "SessionEvents", callback: SessionListener):
        self._events = events
        self.callback = callback

    def unsubscribe(self) -> None:
        self._events.remove(self.callback)


class SessionEvents:
    """Listener registry for session transitions."""

    def __init__(self) -> None:
        self._listeners: List[SessionListener] = []

    def subscribe(self, callback: SessionListener) -> Subscription:
        self._listeners.append(callback)
        return Subscription(self, callback)

    def remove(self, callback: SessionListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def __len__(self) -> int:
        return len(self._listeners)

    def emit(self, event: SessionEvent, session: Optional[AuthSession]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception:
                # A broken listener must not break sign-in/sign-out.
                logger.exception("session listener failed | event=%s", event.value)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text or f"Auth request failed with status {response.status_code}"


class IdentityClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: Settings,
        store: MutableMapping[str, Any],
        events: Optional[SessionEvents] = None,
    ):
        self.http = http
        self.settings = settings
        self.store = store
        self.events = events or SessionEvents()

    def on_session_change(self, callback: SessionListener) -> Subscription:
        return self.events.subscribe(callback)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        headers = {"apikey": self.settings.supabase_anon_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        try:
            response = await self.http.request(
                method,
                f"{self.settings.auth_url}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=self.settings.request_timeout_seconds,
            )
        except httpx.TimeoutException:
            raise AuthProviderError("Auth service timed out", status_code=504)
        except httpx.HTTPError as e:
            raise AuthProviderError(f"Auth service unavailable: {e}", status_code=502)

        if response.status_code >= 400:
            raise AuthProviderError(_error_message(response), status_code=response.status_code)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise AuthProviderError("Auth service returned a non-JSON response", status_code=502)

    # --- session storage ---

    def _stored_session(self) -> Optional[AuthSession]:
        raw = self.store.get(SESSION_KEY)
        if not raw:
            return None
        try:
            return AuthSession.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed stored session")
            self.store.pop(SESSION_KEY, None)
            return None

    def _save_session(self, session: AuthSession) -> None:
        self.store[SESSION_KEY] = session.model_dump()

    def _clear_session(self) -> None:
        self.store.pop(SESSION_KEY, None)

    @staticmethod
    def _session_from_tokens(body: dict, aal: str = "aal1") -> AuthSession:
        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthProviderError("Auth response did not include a session")
        user = body.get("user") or {}
        expires_at = body.get("expires_at")
        if not expires_at:
            expires_at = int(time.time()) + int(body.get("expires_in", 3600))
        return AuthSession(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token", ""),
            expires_at=int(expires_at),
            user_id=str(user.get("id", "")),
            email=user.get("email"),
            aal=aal,
        )

    async def _require_session(self) -> AuthSession:
        session = await self.get_current_session()
        if session is None:
            raise AuthProviderError("Auth session missing!", status_code=401)
        return session

    # --- password auth ---

    async def get_current_session(self) -> Optional[AuthSession]:
        session = self._stored_session()
        if session is None or not session.is_expired():
            return session

        if not session.refresh_token:
            self._clear_session()
            self.events.emit(SessionEvent.signed_out, None)
            return None

        try:
            body = await self._request(
                "POST",
                "/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": session.refresh_token},
            )
        except AuthProviderError as e:
            logger.info("session refresh failed | user=%s reason=%s", session.user_id, e.message)
            self._clear_session()
            self.events.emit(SessionEvent.signed_out, None)
            return None

        # Refreshing keeps the assurance level already reached.
        refreshed = self._session_from_tokens(body, aal=session.aal)
        self._save_session(refreshed)
        self.events.emit(SessionEvent.token_refreshed, refreshed)
        return refreshed

    async def sign_up(self, email: str, password: str) -> str:
        """
        Create an account. Never signs the caller in.
        """
        body = await self._request("POST", "/signup", json={"email": email, "password": password})
        if not isinstance(body, dict):
            raise AuthProviderError("Unexpected response while signing up")
        user = body.get("user") if isinstance(body.get("user"), dict) else body
        user_id = str(user.get("id", ""))
        logger.info("account created | user=%s", user_id)
        return user_id

    async def sign_in(self, email: str, password: str) -> AuthSession:
        body = await self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = self._session_from_tokens(body)
        self._save_session(session)
        self.events.emit(SessionEvent.signed_in, session)
        return session

    async def sign_out(self) -> None:
        session = self._stored_session()
        if session is not None:
            try:
                await self._request("POST", "/logout", access_token=session.access_token)
            except AuthProviderError as e:
                # The local session is dropped either way.
                logger.info("remote sign-out failed | user=%s reason=%s", session.user_id, e.message)
        self._clear_session()
        self.events.emit(SessionEvent.signed_out, None)

    # --- second factor ---

    async def list_factors(self) -> FactorListing:
        """
        Verified TOTP factors of the signed-in user. Provider failures are
        returned as an error listing, never as an empty one.
        """
        try:
            session = await self._require_session()
            user = await self._request("GET", "/user", access_token=session.access_token)
        except AuthProviderError as e:
            return FactorListing.failed(e.message)

        if not isinstance(user, dict):
            return FactorListing.failed("Unexpected response while listing factors")

        raw_factors = user.get("factors")
        if raw_factors is None:
            raw_factors = []
        if not isinstance(raw_factors, list):
            return FactorListing.failed("Unexpected response while listing factors")

        factors: List[MfaFactor] = []
        for raw in raw_factors:
            try:
                factor = MfaFactor.model_validate(raw)
            except ValidationError:
                return FactorListing.failed("Unexpected factor in provider response")
            if factor.factor_type == "totp" and factor.status == FactorStatus.verified:
                factors.append(factor)

        return FactorListing.from_factors(factors)

    async def enroll_totp(self) -> Enrollment:
        session = await self._require_session()
        body = await self._request(
            "POST",
            "/factors",
            json={
                "factor_type": "totp",
                "friendly_name": f"{self.settings.mfa_friendly_name}-{secrets.token_hex(3)}",
            },
            access_token=session.access_token,
        )
        totp = body.get("totp") if isinstance(body, dict) else None
        if not totp or "id" not in body or not totp.get("qr_code"):
            raise AuthProviderError("Unexpected response while enrolling factor")
        logger.info("factor enrolled | user=%s factor=%s", session.user_id, body["id"])
        return Enrollment(
            factor_id=body["id"],
            qr_code=totp["qr_code"],
            secret=totp.get("secret"),
            uri=totp.get("uri"),
        )

    async def challenge(self, factor_id: str) -> str:
        session = await self._require_session()
        body = await self._request(
            "POST",
            f"/factors/{factor_id}/challenge",
            access_token=session.access_token,
        )
        if not isinstance(body, dict) or "id" not in body:
            raise AuthProviderError("Unexpected response while creating challenge")
        return body["id"]

    async def verify(self, factor_id: str, challenge_id: str, code: str) -> AuthSession:
        session = await self._require_session()
        body = await self._request(
            "POST",
            f"/factors/{factor_id}/verify",
            json={"challenge_id": challenge_id, "code": code},
            access_token=session.access_token,
        )
        upgraded = self._session_from_tokens(body, aal="aal2")
        if not upgraded.user_id:
            upgraded = upgraded.model_copy(update={"user_id": session.user_id, "email": session.email})
        self._save_session(upgraded)
        self.events.emit(SessionEvent.mfa_challenge_verified, upgraded)
        return upgraded
