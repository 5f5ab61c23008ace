from __future__ import annotations

import logging
from typing import List

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import DatastoreError
from .models import AssessmentInput, AssessmentResult, AuthSession, HistoryRecord, HistoryWriteResult

logger = logging.getLogger(__name__)


def _row_from(change: AssessmentInput, result: AssessmentResult) -> dict:
    # user_id is left out: the column defaults to the caller's identity and
    # the insert policy rejects any other value.
    return {
        "change_type": change.change_type.value,
        "affected_systems": change.affected_systems,
        "urgency": change.urgency.value,
        "rollback_complexity": change.rollback_complexity.value,
        "risk_level": result.risk_level.value,
        "confidence": result.confidence,
    }


class HistoryClient:
    """
    Writes and reads risk_analysis_history through PostgREST. Row ownership
    is enforced by the datastore's row-level security, not here.
    """

    def __init__(self, http: httpx.AsyncClient, settings: Settings):
        self.http = http
        self.settings = settings

    @property
    def table_url(self) -> str:
        return f"{self.settings.rest_url}/{self.settings.history_table}"

    def _headers(self, session: AuthSession) -> dict[str, str]:
        return {
            "apikey": self.settings.supabase_anon_key,
            "Authorization": f"Bearer {session.access_token}",
        }

    async def record_assessment(
        self,
        session: AuthSession,
        change: AssessmentInput,
        result: AssessmentResult,
    ) -> HistoryWriteResult:
        """
        Best-effort insert of one assessment. Failures are logged and
        reported in the return value, never raised.
        """
        headers = self._headers(session)
        headers["Prefer"] = "return=minimal"

        try:
            response = await self.http.post(
                self.table_url,
                json=[_row_from(change, result)],
                headers=headers,
                timeout=self.settings.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("history insert failed | user=%s reason=%s", session.user_id, e)
            return HistoryWriteResult(saved=False, error=f"Datastore unavailable: {e}")

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "history insert rejected | user=%s status=%s reason=%s",
                session.user_id,
                response.status_code,
                message,
            )
            return HistoryWriteResult(saved=False, error=message)

        logger.info(
            "history saved | user=%s level=%s",
            session.user_id,
            result.risk_level.value,
        )
        return HistoryWriteResult(saved=True)

    async def list_history(self, session: AuthSession, limit: int = 20) -> List[HistoryRecord]:
        try:
            response = await self.http.get(
                self.table_url,
                params={"select": "*", "order": "created_at.desc", "limit": str(limit)},
                headers=self._headers(session),
                timeout=self.settings.request_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise DatastoreError(f"Datastore unavailable: {e}")

        if response.status_code >= 400:
            raise DatastoreError(_error_message(response), status_code=response.status_code)

        try:
            rows = response.json()
        except ValueError:
            raise DatastoreError("Datastore returned a non-JSON response")
        if not isinstance(rows, list):
            raise DatastoreError("Unexpected response while reading history")
        try:
            return [HistoryRecord.model_validate(row) for row in rows]
        except ValidationError as e:
            raise DatastoreError("Unexpected history row from datastore", details={"error_count": e.error_count()})


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("message"), str):
        return body["message"]
    return response.text or f"Datastore request failed with status {response.status_code}"
