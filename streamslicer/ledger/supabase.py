"""Supabase ledger using PostgREST and GoTrue over HTTP.

Credit changes and the trial claim go through the Postgres functions
defined in ``sql/supabase.sql``; each runs as a single transaction on the
database side.
"""
import logging
from typing import Any, Optional

import httpx

from streamslicer.auth.jwt import verify_token
from streamslicer.errors import LedgerBackendError
from streamslicer.models import Account, BillingIssue, TokenUsage, UsageRecord
from .base import LedgerBackend, malformed_response


logger = logging.getLogger(__name__)


class SupabaseLedgerBackend(LedgerBackend):
    """Ledger stored in Supabase Postgres tables ``profiles`` and ``usage_logs``."""

    def __init__(
        self,
        url: str,
        service_key: str,
        anon_key: str = "",
        secret_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(secret_key)
        self.url = url.rstrip("/")
        self.service_key = service_key
        self.anon_key = anon_key or service_key
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, **extra: str) -> dict:
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(
                method, f"{self.url}/rest/v1/{path}", **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LedgerBackendError(f"Supabase request failed: {e}") from e

        if not response.content:
            return None
        with malformed_response("Supabase"):
            return response.json()

    async def _rpc(self, function: str, params: dict) -> Any:
        return await self._request(
            "POST", f"rpc/{function}", headers=self._headers(), json=params
        )

    async def get_account(self, user_id: str) -> Optional[Account]:
        rows = await self._request(
            "GET",
            "profiles",
            headers=self._headers(),
            params={"id": f"eq.{user_id}", "select": "id,credits,is_trial_used"},
        )
        if not rows:
            return None

        with malformed_response("Supabase"):
            row = rows[0]
            return Account(
                user_id=row["id"],
                credits=row.get("credits") or 0,
                has_used_free_trial=bool(row.get("is_trial_used")),
            )

    async def add_credits(
        self, user_id: str, amount: int, reference: Optional[str] = None
    ) -> bool:
        applied = await self._rpc(
            "add_credits", {"row_id": user_id, "amount": amount, "reference": reference}
        )
        return bool(applied)

    async def deduct_credits(self, user_id: str, amount: int) -> bool:
        committed = await self._rpc(
            "deduct_credits", {"row_id": user_id, "amount": amount}
        )
        return bool(committed)

    async def mark_trial_used(self, user_id: str) -> None:
        await self._request(
            "POST",
            "profiles",
            headers=self._headers(Prefer="resolution=merge-duplicates,return=minimal"),
            params={"on_conflict": "id"},
            json={"id": user_id, "is_trial_used": True},
        )

    async def claim_trial(self, user_id: str) -> bool:
        claimed = await self._rpc("claim_trial", {"row_id": user_id})
        return bool(claimed)

    async def append_usage(self, record: UsageRecord) -> None:
        await self._request(
            "POST",
            "usage_logs",
            headers=self._headers(Prefer="return=minimal"),
            json={
                "user_id": record.user_id,
                "cost": record.cost_in_credits,
                "details": {
                    "file_name": record.file_name,
                    "prompt_tokens": record.token_usage.prompt_tokens,
                    "completion_tokens": record.token_usage.completion_tokens,
                    "trial": record.trial,
                },
                "created_at": record.timestamp.isoformat(),
            },
        )

    async def list_usage(self, user_id: str, limit: int = 50) -> list[UsageRecord]:
        rows = await self._request(
            "GET",
            "usage_logs",
            headers=self._headers(),
            params={
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        records = []
        with malformed_response("Supabase"):
            for row in rows or []:
                details = row.get("details") or {}
                records.append(UsageRecord(
                    user_id=row["user_id"],
                    cost_in_credits=row["cost"],
                    file_name=details.get("file_name", ""),
                    token_usage=TokenUsage(
                        prompt_tokens=details.get("prompt_tokens", 0),
                        completion_tokens=details.get("completion_tokens", 0),
                    ),
                    trial=bool(details.get("trial", False)),
                    timestamp=row["created_at"],
                ))
        return records

    async def record_billing_issue(self, issue: BillingIssue) -> None:
        await self._request(
            "POST",
            "billing_issues",
            headers=self._headers(Prefer="return=minimal"),
            json={
                "user_id": issue.user_id,
                "session_id": issue.session_id,
                "amount": issue.amount,
                "reason": issue.reason,
                "resolved": issue.resolved,
                "created_at": issue.timestamp.isoformat(),
            },
        )

    async def outstanding_charges(self, user_id: str) -> int:
        rows = await self._request(
            "GET",
            "billing_issues",
            headers=self._headers(),
            params={
                "user_id": f"eq.{user_id}",
                "resolved": "is.false",
                "amount": "gt.0",
                "select": "amount",
            },
        )
        with malformed_response("Supabase"):
            return sum(int(row["amount"]) for row in rows or [])

    async def settle_outstanding(self, user_id: str) -> bool:
        settled = await self._rpc("settle_outstanding", {"row_id": user_id})
        return bool(settled)

    async def authenticate(self, token: str) -> Optional[str]:
        """Accept our own JWTs, then fall back to Supabase Auth sessions."""
        user_id = verify_token(token, self.secret_key)
        if user_id:
            return user_id

        try:
            response = await self._client.get(
                f"{self.url}/auth/v1/user",
                headers={"apikey": self.anon_key, "Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            raise LedgerBackendError(f"Supabase auth unavailable: {e}") from e

        if response.status_code != 200:
            logger.debug("Supabase rejected token (%s)", response.status_code)
            return None
        with malformed_response("Supabase Auth"):
            return response.json().get("id")
