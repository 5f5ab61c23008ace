"""
Shared fixtures: an in-process stand-in for the Supabase auth and REST
endpoints, served through httpx.MockTransport.
"""

from __future__ import annotations

import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import pytest

from acms.config import Settings
from acms.history import HistoryClient
from acms.identity import IdentityClient, SessionEvents

VALID_CODE = "123456"
QR_CODE = "data:image/svg+xml;utf-8,<svg xmlns='http://www.w3.org/2000/svg'></svg>"


class FakeSupabase:
    def __init__(self):
        self.users: dict[str, dict] = {}
        self.access_tokens: dict[str, str] = {}
        self.refresh_tokens: dict[str, str] = {}
        self.challenges: dict[str, str] = {}
        self.rows: list[dict] = []
        self.fail_user_lookup = False
        self.fail_enroll = False
        self.fail_insert = False
        self.requests: list[httpx.Request] = []

    # --- helpers for tests ---

    def add_user(self, email: str, password: str, verified_factor: bool = False) -> dict:
        user = {"id": str(uuid.uuid4()), "email": email, "password": password, "factors": []}
        if verified_factor:
            user["factors"].append(
                {"id": str(uuid.uuid4()), "factor_type": "totp", "status": "verified", "friendly_name": "phone"}
            )
        self.users[email] = user
        return user

    def issue_tokens(self, user: dict) -> dict:
        access = f"access-{uuid.uuid4().hex}"
        refresh = f"refresh-{uuid.uuid4().hex}"
        self.access_tokens[access] = user["email"]
        self.refresh_tokens[refresh] = user["email"]
        return {
            "access_token": access,
            "token_type": "bearer",
            "expires_in": 3600,
            "expires_at": int(time.time()) + 3600,
            "refresh_token": refresh,
            "user": self._public_user(user),
        }

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport())

    # --- request handling ---

    @staticmethod
    def _public_user(user: dict) -> dict:
        body = {"id": user["id"], "email": user["email"]}
        # GoTrue omits the key when a user has no factors.
        if user["factors"]:
            body["factors"] = [dict(f) for f in user["factors"]]
        return body

    def _caller(self, request: httpx.Request) -> Optional[dict]:
        header = request.headers.get("authorization", "")
        token = header.removeprefix("Bearer ").strip()
        email = self.access_tokens.get(token)
        return self.users.get(email) if email else None

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        body = json.loads(request.content) if request.content else None

        if request.headers.get("apikey") != "anon-key":
            return httpx.Response(401, json={"message": "Invalid API key"})

        if path.startswith("/auth/v1"):
            return self._auth(request, path.removeprefix("/auth/v1"), body)
        if path == "/rest/v1/risk_analysis_history":
            return self._rest(request, body)
        return httpx.Response(404, json={"message": "not found"})

    def _auth(self, request: httpx.Request, path: str, body) -> httpx.Response:
        if path == "/signup":
            if body["email"] in self.users:
                return httpx.Response(422, json={"code": 422, "error_code": "user_already_exists", "msg": "User already registered"})
            user = self.add_user(body["email"], body["password"])
            return httpx.Response(200, json=self._public_user(user))

        if path == "/token":
            grant = request.url.params.get("grant_type")
            if grant == "password":
                user = self.users.get(body["email"])
                if user is None or user["password"] != body["password"]:
                    return httpx.Response(
                        400, json={"error": "invalid_grant", "error_description": "Invalid login credentials"}
                    )
                return httpx.Response(200, json=self.issue_tokens(user))
            if grant == "refresh_token":
                email = self.refresh_tokens.pop(body["refresh_token"], None)
                if email is None:
                    return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid Refresh Token"})
                return httpx.Response(200, json=self.issue_tokens(self.users[email]))

        caller = self._caller(request)
        if caller is None:
            return httpx.Response(401, json={"code": 401, "msg": "invalid JWT"})

        if path == "/logout":
            return httpx.Response(204)

        if path == "/user":
            if self.fail_user_lookup:
                return httpx.Response(500, json={"code": 500, "msg": "Database error finding user"})
            return httpx.Response(200, json=self._public_user(caller))

        if path == "/factors":
            if self.fail_enroll:
                return httpx.Response(422, json={"code": 422, "msg": "Enrolled factors exceed allowed limit"})
            factor = {"id": str(uuid.uuid4()), "factor_type": "totp", "status": "unverified", "friendly_name": body["friendly_name"]}
            caller["factors"].append(factor)
            return httpx.Response(
                200,
                json={
                    "id": factor["id"],
                    "type": "totp",
                    "totp": {"qr_code": QR_CODE, "secret": "JBSWY3DPEHPK3PXP", "uri": "otpauth://totp/acms:user"},
                },
            )

        parts = path.strip("/").split("/")
        if len(parts) == 3 and parts[0] == "factors":
            factor_id, action = parts[1], parts[2]
            factor = next((f for f in caller["factors"] if f["id"] == factor_id), None)
            if factor is None:
                return httpx.Response(404, json={"code": 404, "msg": "Factor not found"})
            if action == "challenge":
                challenge_id = str(uuid.uuid4())
                self.challenges[challenge_id] = factor_id
                return httpx.Response(200, json={"id": challenge_id, "expires_at": int(time.time()) + 300})
            if action == "verify":
                if self.challenges.pop(body["challenge_id"], None) != factor_id:
                    return httpx.Response(404, json={"code": 404, "msg": "Challenge not found"})
                if body["code"] != VALID_CODE:
                    return httpx.Response(422, json={"code": 422, "msg": "Invalid TOTP code entered"})
                factor["status"] = "verified"
                return httpx.Response(200, json=self.issue_tokens(caller))

        return httpx.Response(404, json={"msg": "not found"})

    def _rest(self, request: httpx.Request, body) -> httpx.Response:
        caller = self._caller(request)
        if caller is None:
            return httpx.Response(401, json={"message": "JWT expired"})

        if request.method == "POST":
            if self.fail_insert:
                return httpx.Response(503, json={"message": "Database unavailable"})
            for row in body:
                row.setdefault("user_id", caller["id"])
                # Insert policy: auth.uid() = user_id
                if row["user_id"] != caller["id"]:
                    return httpx.Response(
                        403,
                        json={"message": 'new row violates row-level security policy for table "risk_analysis_history"'},
                    )
            created = datetime.now(timezone.utc)
            for offset, row in enumerate(body):
                stamp = created + timedelta(microseconds=len(self.rows) + offset)
                self.rows.append({"id": str(uuid.uuid4()), "created_at": stamp.isoformat(), **row})
            return httpx.Response(201)

        # Select policy: only the caller's rows are visible.
        visible = [r for r in self.rows if r["user_id"] == caller["id"]]
        visible.sort(key=lambda r: r["created_at"], reverse=True)
        limit = int(request.url.params.get("limit", len(visible)))
        return httpx.Response(200, json=visible[:limit])


@pytest.fixture
def fake():
    return FakeSupabase()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        supabase_url="http://supabase.test",
        supabase_anon_key="anon-key",
        secret_key="test-secret",
    )


@pytest.fixture
def make_identity(fake, settings):
    def _make(store=None, events=None) -> IdentityClient:
        return IdentityClient(
            fake.client(),
            settings,
            store if store is not None else {},
            events or SessionEvents(),
        )

    return _make


@pytest.fixture
def history_client(fake, settings):
    return HistoryClient(fake.client(), settings)


@pytest.fixture
def app_client(fake, settings):
    from fastapi.testclient import TestClient

    from acms.api import create_app

    with TestClient(create_app(settings, transport=fake.transport())) as client:
        yield client


@pytest.fixture
def signed_in_client(fake, app_client):
    """A browser that has passed the password and second factor checks."""
    fake.add_user("ada@example.com", "secret123")
    response = app_client.post("/login", data={"email": "ada@example.com", "password": "secret123"})
    assert response.status_code == 200
    response = app_client.post("/mfa", data={"code": VALID_CODE}, follow_redirects=False)
    assert response.status_code == 303
    return app_client
