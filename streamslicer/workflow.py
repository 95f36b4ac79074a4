"""Analysis workflow: admission, the analysis task and billing.

Credits are only taken after a result exists. A failed or cancelled
analysis never touches the balance, and a delivered result is never
withheld because billing failed. A charge that could not be collected
stays owed and must be paid before the next analysis starts.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from streamslicer.errors import (
    AnalysisCancelledError,
    AnalysisError,
    InsufficientBalanceError,
    ProcessingError,
)
from streamslicer.ledger import BalanceLedger, UsageLog
from streamslicer.models import AnalysisOutcome
from streamslicer.pricing import PriceTable, calculate_cost
from streamslicer.session import AnalysisSession, Phase, PhaseCallback
from streamslicer.uploads import VideoUpload


logger = logging.getLogger(__name__)


class Analyzer(Protocol):
    async def analyze(self, upload: VideoUpload, on_phase: PhaseCallback) -> AnalysisOutcome:
        ...


@dataclass(frozen=True)
class Admission:
    """Outcome of the pre-flight check for one user."""
    trial: bool
    max_upload_bytes: int
    balance: int


class AnalysisWorkflow:
    """Runs analyses for sessions and settles their cost."""

    def __init__(
        self,
        ledger: BalanceLedger,
        usage_log: UsageLog,
        analyzer_factory: Callable[[], Analyzer],
        prices: PriceTable,
        max_upload_bytes: int,
        trial_max_upload_bytes: int,
    ):
        self.ledger = ledger
        self.usage_log = usage_log
        self.analyzer_factory = analyzer_factory
        self.prices = prices
        self.max_upload_bytes = max_upload_bytes
        self.trial_max_upload_bytes = trial_max_upload_bytes
        self._settling: set[asyncio.Task] = set()

    async def admit(self, user_id: str) -> Admission:
        """Decide whether the user may start, and with which file limit.

        Charges left unpaid by earlier analyses are collected first; until
        they are, nothing is admitted. Paid runs then need at least the
        minimum charge. Otherwise the one-time trial applies with its
        reduced size limit.
        """
        owed = await self.ledger.outstanding_charges(user_id)
        if owed and not await self.ledger.settle_outstanding(user_id):
            balance = await self.ledger.get_balance(user_id)
            raise InsufficientBalanceError(
                f"{owed} credits from an earlier analysis are unpaid, "
                f"you have {balance}",
                credits_needed=owed + self.prices.minimum_charge,
                credits_available=balance,
            )

        balance = await self.ledger.get_balance(user_id)
        if balance >= self.prices.minimum_charge:
            return Admission(trial=False, max_upload_bytes=self.max_upload_bytes, balance=balance)

        if await self.ledger.check_trial_eligibility(user_id):
            return Admission(
                trial=True, max_upload_bytes=self.trial_max_upload_bytes, balance=balance
            )

        raise self._insufficient(balance)

    async def reserve(self, user_id: str, admission: Admission) -> None:
        """Use up the trial for a trial admission, once the upload is accepted.

        Only one concurrent caller wins the trial; the others are refused.
        """
        if admission.trial and not await self.ledger.claim_trial(user_id):
            raise self._insufficient(admission.balance)

    def _insufficient(self, balance: int) -> InsufficientBalanceError:
        return InsufficientBalanceError(
            f"Insufficient credits: an analysis needs at least "
            f"{self.prices.minimum_charge}, you have {balance}",
            credits_needed=self.prices.minimum_charge,
            credits_available=balance,
        )

    def start(
        self, session: AnalysisSession, upload: VideoUpload, admission: Admission
    ) -> asyncio.Task:
        """Begin the analysis as a background task owned by the session."""
        session.advance(Phase.UPLOADING)
        session.task = asyncio.create_task(self.run(session, upload, admission))
        return session.task

    async def wait_settled(self) -> None:
        """Wait for billing of finished analyses to complete."""
        if self._settling:
            await asyncio.gather(*self._settling, return_exceptions=True)

    def cancel(self, session: AnalysisSession) -> bool:
        if session.task is None or session.task.done() or not session.in_flight:
            return False
        session.task.cancel()
        return True

    async def run(
        self, session: AnalysisSession, upload: VideoUpload, admission: Admission
    ) -> None:
        try:
            analyzer = self.analyzer_factory()
            outcome = await analyzer.analyze(upload, session.advance)
        except asyncio.CancelledError:
            logger.info("Session %s cancelled", session.id)
            session.fail(AnalysisCancelledError("Analysis cancelled"))
            raise
        except AnalysisError as e:
            logger.warning("Session %s failed (%s): %s", session.id, e.kind.value, e)
            session.fail(e)
            return
        except Exception as e:
            logger.exception("Session %s failed unexpectedly", session.id)
            session.fail(ProcessingError(f"Analysis failed: {e}"))
            return
        finally:
            upload.release()

        # Billing runs to completion even if the task is cancelled now.
        settle = asyncio.create_task(self.settle(session, upload, admission, outcome))
        self._settling.add(settle)
        settle.add_done_callback(self._settling.discard)
        await asyncio.shield(settle)

    async def settle(
        self,
        session: AnalysisSession,
        upload: VideoUpload,
        admission: Admission,
        outcome: AnalysisOutcome,
    ) -> None:
        """Charge for a finished analysis and publish its result.

        The result is published whatever happens to the charge.
        """
        usage = outcome.token_usage
        charged = 0
        warning: Optional[str] = None

        try:
            if admission.trial:
                self.usage_log.append(session.user_id, 0, upload.file_name, usage, trial=True)
            else:
                cost = calculate_cost(usage.prompt_tokens, usage.completion_tokens, self.prices)
                if await self.ledger.deduct_credits(session.user_id, cost):
                    charged = cost
                    self.usage_log.append(session.user_id, cost, upload.file_name, usage)
                else:
                    warning = self._uncollected(cost)
                    await self.ledger.record_billing_issue(
                        session.user_id, session.id, cost, "deduct rejected or ledger unavailable"
                    )
        except Exception as e:
            logger.exception("Billing failed for session %s", session.id)
            if not admission.trial and not charged:
                cost = calculate_cost(usage.prompt_tokens, usage.completion_tokens, self.prices)
                warning = self._uncollected(cost)
                await self.ledger.record_billing_issue(
                    session.user_id, session.id, cost, f"billing error: {e!r}"
                )
        finally:
            session.complete(outcome.result, usage, charged, billing_warning=warning)

    @staticmethod
    def _uncollected(cost: int) -> str:
        return (
            f"Result delivered, but {cost} credits could not be charged. "
            "They will be collected before your next analysis."
        )
