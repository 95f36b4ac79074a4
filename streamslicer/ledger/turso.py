"""Turso (LibSQL) ledger using the HTTP pipeline API."""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from streamslicer.errors import LedgerBackendError
from streamslicer.models import Account, BillingIssue, TokenUsage, UsageRecord
from .base import LedgerBackend, malformed_response


logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        user_id TEXT PRIMARY KEY,
        credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
        has_used_free_trial INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        cost_in_credits INTEGER NOT NULL,
        file_name TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL,
        completion_tokens INTEGER NOT NULL,
        trial INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_grants (
        reference TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS billing_issues (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        amount INTEGER NOT NULL,
        reason TEXT NOT NULL,
        resolved INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_user_id ON usage_records(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_issues_user_id ON billing_issues(user_id, resolved)",
]

OWED_SQL = """
    SELECT COALESCE(SUM(amount), 0) FROM billing_issues
    WHERE user_id = ? AND resolved = 0 AND amount > 0
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode_arg(value: Any) -> dict:
    """Encode a Python value as a Hrana typed value."""
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "integer", "value": str(int(value))}
    if isinstance(value, int):
        return {"type": "integer", "value": str(value)}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    return {"type": "text", "value": str(value)}


def _stmt(sql: str, args: Optional[list] = None) -> dict:
    return {"sql": sql, "args": [_encode_arg(a) for a in (args or [])]}


def _statement(sql: str, args: Optional[list] = None) -> dict:
    return {"type": "execute", "stmt": _stmt(sql, args)}


def _affected(result: dict) -> int:
    with malformed_response("Turso"):
        return int(result.get("affected_row_count", 0))


class TursoLedgerBackend(LedgerBackend):
    """Ledger stored in a Turso database.

    Single credit changes are one SQL statement, so SQLite's statement
    atomicity gives the conditional decrement without a read-then-write.
    Changes spanning two tables run as one transactional batch.
    """

    def __init__(
        self,
        db_url: str,
        auth_token: str,
        secret_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(secret_key)
        self.base_url = db_url.replace("libsql://", "https://").rstrip("/")
        self.auth_token = auth_token
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def init(self) -> None:
        await self._pipeline([_statement(sql) for sql in SCHEMA])
        logger.info("Turso schema ready at %s", self.base_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def _pipeline(self, requests: list[dict]) -> list[dict]:
        """Run requests in one pipeline and return their results."""
        payload = {"requests": requests + [{"type": "close"}]}

        try:
            response = await self._client.post(
                f"{self.base_url}/v2/pipeline",
                headers={
                    "Authorization": f"Bearer {self.auth_token}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LedgerBackendError(f"Turso request failed: {e}") from e

        results = []
        with malformed_response("Turso"):
            for res in response.json()["results"][:len(requests)]:
                if res.get("type") != "ok":
                    message = (res.get("error") or {}).get("message", "unknown error")
                    raise LedgerBackendError(f"Turso statement failed: {message}")
                results.append(res["response"]["result"])

        if len(results) != len(requests):
            raise LedgerBackendError("Turso returned fewer results than requests")
        return results

    async def _execute(self, sql: str, args: Optional[list] = None) -> dict:
        results = await self._pipeline([_statement(sql, args)])
        return results[0]

    async def _transaction(self, statements: list[tuple[str, list]]) -> list[dict]:
        """Run statements in one batch: all commit, or none do.

        Each step only runs if the previous one succeeded; any failure
        rolls the transaction back. Returns the statement results.
        """
        steps = [{"stmt": _stmt("BEGIN")}]
        for sql, args in statements:
            steps.append({
                "stmt": _stmt(sql, args),
                "condition": {"type": "ok", "step": len(steps) - 1},
            })
        commit = len(steps)
        steps.append({"stmt": _stmt("COMMIT"), "condition": {"type": "ok", "step": commit - 1}})
        steps.append({
            "stmt": _stmt("ROLLBACK"),
            "condition": {"type": "not", "cond": {"type": "ok", "step": commit}},
        })

        result = (await self._pipeline([{"type": "batch", "batch": {"steps": steps}}]))[0]

        with malformed_response("Turso"):
            errors = result.get("step_errors") or []
            for error in errors[:commit + 1]:
                if error:
                    raise LedgerBackendError(
                        f"Turso transaction rolled back: {error.get('message', 'unknown error')}"
                    )
            step_results = result["step_results"]
            if step_results[commit] is None:
                raise LedgerBackendError("Turso transaction did not commit")
            return step_results[1:commit]

    @staticmethod
    def _rows(result: dict) -> list[dict]:
        """Extract rows from a Turso execute result."""
        with malformed_response("Turso"):
            cols = [c["name"] for c in result.get("cols", [])]
            rows = []
            for row in result.get("rows", []):
                row_dict = {}
                for i, val in enumerate(row):
                    if isinstance(val, dict):
                        row_dict[cols[i]] = val.get("value")
                    else:
                        row_dict[cols[i]] = val
                rows.append(row_dict)
            return rows

    async def get_account(self, user_id: str) -> Optional[Account]:
        result = await self._execute(
            "SELECT user_id, credits, has_used_free_trial FROM accounts WHERE user_id = ?",
            [user_id]
        )
        rows = self._rows(result)
        if not rows:
            return None

        row = rows[0]
        with malformed_response("Turso"):
            return Account(
                user_id=row["user_id"],
                credits=int(row.get("credits") or 0),
                has_used_free_trial=bool(int(row.get("has_used_free_trial") or 0)),
            )

    async def add_credits(
        self, user_id: str, amount: int, reference: Optional[str] = None
    ) -> bool:
        now = _now()
        upsert = """
            INSERT INTO accounts (user_id, credits, has_used_free_trial, created_at, updated_at)
            VALUES (?, ?, 0, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                credits = credits + excluded.credits,
                updated_at = excluded.updated_at
        """

        if reference is None:
            await self._execute(upsert, [user_id, amount, now, now])
            return True

        # changes() is 0 when the grant row already existed
        grant, _ = await self._transaction([
            (
                """
                INSERT INTO credit_grants (reference, user_id, amount, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(reference) DO NOTHING
                """,
                [reference, user_id, amount, now],
            ),
            (
                """
                INSERT INTO accounts (user_id, credits, has_used_free_trial, created_at, updated_at)
                SELECT ?, ?, 0, ?, ? WHERE changes() = 1
                ON CONFLICT(user_id) DO UPDATE SET
                    credits = credits + excluded.credits,
                    updated_at = excluded.updated_at
                """,
                [user_id, amount, now, now],
            ),
        ])
        return _affected(grant) == 1

    async def deduct_credits(self, user_id: str, amount: int) -> bool:
        result = await self._execute(
            """
            UPDATE accounts SET credits = credits - ?, updated_at = ?
            WHERE user_id = ? AND credits >= ?
            """,
            [amount, _now(), user_id, amount]
        )
        return _affected(result) == 1

    async def mark_trial_used(self, user_id: str) -> None:
        await self.claim_trial(user_id)

    async def claim_trial(self, user_id: str) -> bool:
        now = _now()
        result = await self._execute(
            """
            INSERT INTO accounts (user_id, credits, has_used_free_trial, created_at, updated_at)
            VALUES (?, 0, 1, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                has_used_free_trial = 1,
                updated_at = excluded.updated_at
            WHERE accounts.has_used_free_trial = 0
            """,
            [user_id, now, now]
        )
        return _affected(result) == 1

    async def append_usage(self, record: UsageRecord) -> None:
        await self._execute(
            """
            INSERT INTO usage_records
                (user_id, cost_in_credits, file_name, prompt_tokens, completion_tokens, trial, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                record.user_id, record.cost_in_credits, record.file_name,
                record.token_usage.prompt_tokens, record.token_usage.completion_tokens,
                record.trial, record.timestamp.isoformat(),
            ]
        )

    async def list_usage(self, user_id: str, limit: int = 50) -> list[UsageRecord]:
        result = await self._execute(
            """
            SELECT * FROM usage_records WHERE user_id = ?
            ORDER BY created_at DESC LIMIT ?
            """,
            [user_id, limit]
        )
        with malformed_response("Turso"):
            return [
                UsageRecord(
                    user_id=row["user_id"],
                    cost_in_credits=int(row["cost_in_credits"]),
                    file_name=row["file_name"],
                    token_usage=TokenUsage(
                        prompt_tokens=int(row["prompt_tokens"]),
                        completion_tokens=int(row["completion_tokens"]),
                    ),
                    trial=bool(int(row.get("trial") or 0)),
                    timestamp=row["created_at"],
                )
                for row in self._rows(result)
            ]

    async def record_billing_issue(self, issue: BillingIssue) -> None:
        await self._execute(
            """
            INSERT INTO billing_issues (user_id, session_id, amount, reason, resolved, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [issue.user_id, issue.session_id, issue.amount, issue.reason,
             issue.resolved, issue.timestamp.isoformat()]
        )

    async def outstanding_charges(self, user_id: str) -> int:
        result = await self._execute(OWED_SQL, [user_id])
        with malformed_response("Turso"):
            return int(result["rows"][0][0]["value"])

    async def settle_outstanding(self, user_id: str) -> bool:
        if await self.outstanding_charges(user_id) == 0:
            return True

        # The resolve step only applies if the deduct changed the account row
        deduct, _ = await self._transaction([
            (
                f"""
                UPDATE accounts SET credits = credits - ({OWED_SQL}), updated_at = ?
                WHERE user_id = ? AND credits >= ({OWED_SQL})
                """,
                [user_id, _now(), user_id, user_id],
            ),
            (
                """
                UPDATE billing_issues SET resolved = 1
                WHERE user_id = ? AND resolved = 0 AND amount > 0 AND changes() = 1
                """,
                [user_id],
            ),
        ])
        return _affected(deduct) == 1
