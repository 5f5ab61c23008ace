"""
Second-factor state machine, independent of rendering.

    AUTHENTICATED_NO_MFA_CHECK --(no factors, enrolled)--> ENROLLING
    AUTHENTICATED_NO_MFA_CHECK --(factors exist)---------> CHALLENGING
    ENROLLING | CHALLENGING | FAILED --(code ok)---------> VERIFIED
    any non-terminal state --(provider error)-----------> FAILED

Only VERIFIED grants access. The flow is a plain dict when stored so it can
sit in the cookie session next to the auth session.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, MutableMapping, Optional

from pydantic import BaseModel, ValidationError

from .errors import AppError, MfaFlowError
from .identity import IdentityClient
from .models import FactorListingKind

logger = logging.getLogger(__name__)

FLOW_KEY = "mfa"


class MfaState(str, Enum):
    authenticated_no_mfa_check = "AUTHENTICATED_NO_MFA_CHECK"
    enrolling = "ENROLLING"
    challenging = "CHALLENGING"
    verified = "VERIFIED"
    failed = "FAILED"


TRANSITIONS: dict[MfaState, frozenset[MfaState]] = {
    MfaState.authenticated_no_mfa_check: frozenset(
        {MfaState.enrolling, MfaState.challenging, MfaState.failed}
    ),
    MfaState.enrolling: frozenset({MfaState.verified, MfaState.failed}),
    MfaState.challenging: frozenset({MfaState.verified, MfaState.failed}),
    MfaState.failed: frozenset(
        {MfaState.verified, MfaState.failed, MfaState.enrolling, MfaState.challenging}
    ),
    MfaState.verified: frozenset(),
}


class MfaFlow(BaseModel):
    state: MfaState = MfaState.authenticated_no_mfa_check
    factor_id: Optional[str] = None
    qr_code: Optional[str] = None
    secret: Optional[str] = None
    uri: Optional[str] = None
    error: Optional[str] = None

    @property
    def granted(self) -> bool:
        return self.state == MfaState.verified

    @property
    def enrolling(self) -> bool:
        """True while a freshly enrolled factor awaits its first code."""
        return (self.secret is not None or self.uri is not None) and not self.granted

    def _move(self, target: MfaState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise MfaFlowError(
                f"Cannot move from {self.state.value} to {target.value}",
                details={"state": self.state.value, "target": target.value},
            )
        self.state = target

    def _fail(self, message: str) -> None:
        self._move(MfaState.failed)
        self.error = message

    async def start(self, identity: IdentityClient) -> MfaState:
        """
        Decide between enrolling a new factor and challenging an existing one.
        """
        if self.state not in (MfaState.authenticated_no_mfa_check, MfaState.failed):
            raise MfaFlowError(
                f"Cannot start second factor check from {self.state.value}",
                details={"state": self.state.value},
            )
        self.error = None

        listing = await identity.list_factors()

        if listing.kind == FactorListingKind.error:
            self._fail(listing.error or "Could not list authentication factors")
            return self.state

        if listing.kind == FactorListingKind.enrolled:
            self.factor_id = listing.factors[0].id
            self.qr_code = None
            self.secret = None
            self.uri = None
            self._move(MfaState.challenging)
            return self.state

        try:
            enrollment = await identity.enroll_totp()
        except AppError as e:
            self._fail(e.message)
            return self.state

        self.factor_id = enrollment.factor_id
        self.qr_code = enrollment.qr_code
        self.secret = enrollment.secret
        self.uri = enrollment.uri
        self._move(MfaState.enrolling)
        return self.state

    async def submit_code(self, identity: IdentityClient, code: str) -> MfaState:
        if self.state not in (MfaState.enrolling, MfaState.challenging, MfaState.failed):
            raise MfaFlowError(
                f"No code expected in state {self.state.value}",
                details={"state": self.state.value},
            )
        if not self.factor_id:
            raise MfaFlowError("No factor to verify; restart the second factor check")

        self.error = None
        try:
            challenge_id = await identity.challenge(self.factor_id)
            await identity.verify(self.factor_id, challenge_id, code.strip())
        except AppError as e:
            logger.info("second factor rejected | factor=%s reason=%s", self.factor_id, e.message)
            self._fail(e.message)
            return self.state

        self._move(MfaState.verified)
        self.qr_code = None
        self.secret = None
        self.uri = None
        return self.state

    # --- storage ---

    @classmethod
    def load(cls, store: MutableMapping[str, Any]) -> Optional["MfaFlow"]:
        raw = store.get(FLOW_KEY)
        if not raw:
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed second factor state")
            store.pop(FLOW_KEY, None)
            return None

    def save(self, store: MutableMapping[str, Any]) -> None:
        # The provider QR payload is an SVG data URI, too large for a cookie.
        # Pages after the enrolling one rebuild the QR from `uri`.
        store[FLOW_KEY] = self.model_dump(mode="json", exclude={"qr_code"})

    @staticmethod
    def clear(store: MutableMapping[str, Any]) -> None:
        store.pop(FLOW_KEY, None)
