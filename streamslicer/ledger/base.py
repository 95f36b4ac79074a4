"""Ledger backend interface."""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Optional

from streamslicer.auth.jwt import verify_token
from streamslicer.errors import LedgerBackendError
from streamslicer.models import Account, BillingIssue, UsageRecord


@contextmanager
def malformed_response(source: str):
    """Report undecodable backend payloads as ``LedgerBackendError``."""
    try:
        yield
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise LedgerBackendError(f"Malformed response from {source}: {e!r}") from e


class LedgerBackend(ABC):
    """Storage for accounts, usage records and billing issues.

    Implementations raise ``LedgerBackendError`` when the store cannot be
    reached. Credit changes must be atomic on the store side: a deduct
    either commits in full or leaves the balance untouched.
    """

    def __init__(self, secret_key: str = ""):
        self.secret_key = secret_key

    async def init(self) -> None:
        """Prepare the store (create tables, open clients)."""

    async def close(self) -> None:
        """Release clients held by the backend."""

    @abstractmethod
    async def get_account(self, user_id: str) -> Optional[Account]:
        """Return the account, or None if it was never written."""

    @abstractmethod
    async def add_credits(
        self, user_id: str, amount: int, reference: Optional[str] = None
    ) -> bool:
        """Atomically increment credits.

        Returns False when ``reference`` was already applied.
        """

    @abstractmethod
    async def deduct_credits(self, user_id: str, amount: int) -> bool:
        """Atomically decrement credits if the balance covers ``amount``."""

    @abstractmethod
    async def mark_trial_used(self, user_id: str) -> None:
        """Set the trial flag. Idempotent."""

    @abstractmethod
    async def claim_trial(self, user_id: str) -> bool:
        """Set the trial flag if it is unset. True only for the caller that set it."""

    @abstractmethod
    async def append_usage(self, record: UsageRecord) -> None:
        """Insert a usage record."""

    @abstractmethod
    async def list_usage(self, user_id: str, limit: int = 50) -> list[UsageRecord]:
        """Usage records for a user, newest first."""

    @abstractmethod
    async def record_billing_issue(self, issue: BillingIssue) -> None:
        """Insert a billing reconciliation record."""

    @abstractmethod
    async def outstanding_charges(self, user_id: str) -> int:
        """Sum of open billing issues with a positive amount."""

    @abstractmethod
    async def settle_outstanding(self, user_id: str) -> bool:
        """Deduct all outstanding charges and resolve their issues, atomically.

        Returns False, changing nothing, when the balance does not cover them.
        """

    async def authenticate(self, token: str) -> Optional[str]:
        """Resolve a bearer token to a user id."""
        return verify_token(token, self.secret_key)
