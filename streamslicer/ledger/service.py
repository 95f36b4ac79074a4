"""Balance ledger and usage log over a pluggable backend."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from streamslicer.errors import LedgerBackendError, LedgerWriteError
from streamslicer.models import BillingIssue, TokenUsage, UsageRecord
from .base import LedgerBackend


logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer, got {amount!r}")


class BalanceLedger:
    """Credit balances and trial eligibility, keyed by user id.

    Reads degrade to the restrictive answer when the backend is down:
    a zero balance, no trial, no deduction. Grants and trial updates
    raise ``LedgerWriteError`` instead, so a purchase is never lost
    silently.
    """

    def __init__(self, backend: LedgerBackend):
        self.backend = backend

    async def get_balance(self, user_id: str) -> int:
        try:
            account = await self.backend.get_account(user_id)
        except LedgerBackendError as e:
            logger.warning("Balance read failed for %s: %s", user_id, e)
            return 0
        return account.credits if account else 0

    async def add_credits(
        self, user_id: str, amount: int, reference: Optional[str] = None
    ) -> bool:
        """Grant credits. Returns False if ``reference`` was already applied."""
        _check_amount(amount)
        try:
            applied = await self.backend.add_credits(user_id, amount, reference)
        except LedgerBackendError as e:
            raise LedgerWriteError(
                f"Could not add {amount} credits for {user_id}: {e.message}"
            ) from e

        if applied:
            logger.info("Granted %d credits to %s", amount, user_id)
        else:
            logger.info("Credit grant %s already applied", reference)
        return applied

    async def deduct_credits(self, user_id: str, amount: int) -> bool:
        """Deduct if the balance covers it. All or nothing."""
        _check_amount(amount)
        try:
            return await self.backend.deduct_credits(user_id, amount)
        except LedgerBackendError as e:
            logger.warning("Deduct of %d failed for %s: %s", amount, user_id, e)
            return False

    async def check_trial_eligibility(self, user_id: str) -> bool:
        try:
            account = await self.backend.get_account(user_id)
        except LedgerBackendError as e:
            logger.warning("Trial check failed for %s: %s", user_id, e)
            return False
        return account is None or not account.has_used_free_trial

    async def mark_trial_used(self, user_id: str) -> None:
        try:
            await self.backend.mark_trial_used(user_id)
        except LedgerBackendError as e:
            raise LedgerWriteError(
                f"Could not mark trial used for {user_id}: {e.message}"
            ) from e

    async def claim_trial(self, user_id: str) -> bool:
        """Use up the trial. True only for the one caller that flipped the flag."""
        try:
            claimed = await self.backend.claim_trial(user_id)
        except LedgerBackendError as e:
            logger.warning("Trial claim failed for %s: %s", user_id, e)
            return False

        if claimed:
            logger.info("Free trial claimed by %s", user_id)
        return claimed

    async def outstanding_charges(self, user_id: str) -> int:
        """Credits owed from earlier analyses whose charge did not go through."""
        try:
            return await self.backend.outstanding_charges(user_id)
        except LedgerBackendError as e:
            logger.warning("Outstanding charge read failed for %s: %s", user_id, e)
            return 0

    async def settle_outstanding(self, user_id: str) -> bool:
        """Collect every outstanding charge from the balance, or none of them."""
        try:
            settled = await self.backend.settle_outstanding(user_id)
        except LedgerBackendError as e:
            logger.warning("Settling outstanding charges failed for %s: %s", user_id, e)
            return False

        if settled:
            logger.info("Outstanding charges settled for %s", user_id)
        return settled

    async def record_billing_issue(
        self, user_id: str, session_id: str, amount: int, reason: str
    ) -> None:
        """Store a reconciliation record. Always logged, never raised."""
        issue = BillingIssue(
            user_id=user_id,
            session_id=session_id,
            amount=amount,
            reason=reason,
            timestamp=datetime.now(timezone.utc),
        )
        logger.error(
            "Billing issue: user=%s session=%s amount=%d reason=%s",
            user_id, session_id, amount, reason
        )
        try:
            await self.backend.record_billing_issue(issue)
        except LedgerBackendError as e:
            logger.error("Could not store billing issue for %s: %s", session_id, e)
        except Exception:
            logger.exception("Could not store billing issue for %s", session_id)

    async def authenticate(self, token: str) -> Optional[str]:
        try:
            return await self.backend.authenticate(token)
        except LedgerBackendError as e:
            logger.warning("Token check failed: %s", e)
            return None


class UsageLog:
    """Append-only audit log of completed analyses.

    ``append`` schedules the write and returns immediately; write
    failures are logged and never reach the caller.
    """

    def __init__(self, backend: LedgerBackend):
        self.backend = backend
        self._pending: set[asyncio.Task] = set()

    def append(
        self,
        user_id: str,
        cost: int,
        file_name: str,
        token_usage: TokenUsage,
        trial: bool = False,
    ) -> UsageRecord:
        record = UsageRecord(
            user_id=user_id,
            cost_in_credits=cost,
            file_name=file_name,
            token_usage=token_usage,
            trial=trial,
            timestamp=datetime.now(timezone.utc),
        )
        task = asyncio.create_task(self._write(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return record

    async def _write(self, record: UsageRecord) -> None:
        try:
            await self.backend.append_usage(record)
        except LedgerBackendError as e:
            logger.error("Usage log write failed for %s: %s", record.user_id, e)
        except Exception:
            logger.exception("Usage log write failed for %s", record.user_id)

    async def recent(self, user_id: str, limit: int = 50) -> list[UsageRecord]:
        return await self.backend.list_usage(user_id, limit)

    async def drain(self) -> None:
        """Wait for scheduled writes to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
