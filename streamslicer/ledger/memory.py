"""In-process ledger for development and tests."""
import asyncio
from typing import Optional

from streamslicer.models import Account, BillingIssue, UsageRecord
from .base import LedgerBackend


class MemoryLedgerBackend(LedgerBackend):
    """Ledger kept in a dict. State is lost on restart.

    A single lock serializes every mutation, so deducts are linearizable
    within the process.
    """

    def __init__(self, secret_key: str = ""):
        super().__init__(secret_key)
        self._accounts: dict[str, Account] = {}
        self._usage: list[UsageRecord] = []
        self._billing_issues: list[BillingIssue] = []
        self._references: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def billing_issues(self) -> list[BillingIssue]:
        return list(self._billing_issues)

    def _account(self, user_id: str) -> Account:
        account = self._accounts.get(user_id)
        if account is None:
            account = Account(user_id=user_id)
            self._accounts[user_id] = account
        return account

    def _open_issues(self, user_id: str) -> list[BillingIssue]:
        return [
            i for i in self._billing_issues
            if i.user_id == user_id and not i.resolved and i.amount > 0
        ]

    async def get_account(self, user_id: str) -> Optional[Account]:
        account = self._accounts.get(user_id)
        return account.model_copy() if account else None

    async def add_credits(
        self, user_id: str, amount: int, reference: Optional[str] = None
    ) -> bool:
        async with self._lock:
            if reference is not None:
                if reference in self._references:
                    return False
                self._references.add(reference)
            account = self._account(user_id)
            account.credits += amount
            return True

    async def deduct_credits(self, user_id: str, amount: int) -> bool:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None or account.credits < amount:
                return False
            account.credits -= amount
            return True

    async def mark_trial_used(self, user_id: str) -> None:
        async with self._lock:
            self._account(user_id).has_used_free_trial = True

    async def claim_trial(self, user_id: str) -> bool:
        async with self._lock:
            account = self._account(user_id)
            if account.has_used_free_trial:
                return False
            account.has_used_free_trial = True
            return True

    async def append_usage(self, record: UsageRecord) -> None:
        self._usage.append(record)

    async def list_usage(self, user_id: str, limit: int = 50) -> list[UsageRecord]:
        records = [r for r in self._usage if r.user_id == user_id]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit]

    async def record_billing_issue(self, issue: BillingIssue) -> None:
        async with self._lock:
            self._billing_issues.append(issue.model_copy())

    async def outstanding_charges(self, user_id: str) -> int:
        return sum(i.amount for i in self._open_issues(user_id))

    async def settle_outstanding(self, user_id: str) -> bool:
        async with self._lock:
            issues = self._open_issues(user_id)
            owed = sum(i.amount for i in issues)
            if owed == 0:
                return True

            account = self._accounts.get(user_id)
            if account is None or account.credits < owed:
                return False
            account.credits -= owed
            for issue in issues:
                issue.resolved = True
            return True
