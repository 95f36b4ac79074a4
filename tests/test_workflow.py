"""Tests for admission, the analysis task and settlement."""
import asyncio
from pathlib import Path

import pytest

from conftest import FakeAnalyzer, make_upload, run
from streamslicer.context import build_context
from streamslicer.errors import (
    ErrorKind,
    InsufficientBalanceError,
    LedgerBackendError,
    ProcessingError,
)
from streamslicer.ledger import BalanceLedger, MemoryLedgerBackend, UsageLog
from streamslicer.pricing import DEFAULT_PRICES, PriceTable
from streamslicer.session import AnalysisSession, Phase
from streamslicer.workflow import AnalysisWorkflow


class BlockingAnalyzer:
    """Stays in the analyzing phase until cancelled."""

    def __init__(self):
        self.started = asyncio.Event()

    async def analyze(self, upload, on_phase):
        on_phase(Phase.UPLOADING)
        on_phase(Phase.PROCESSING_FILE)
        on_phase(Phase.ANALYZING)
        self.started.set()
        await asyncio.Event().wait()


class CrashingAnalyzer:
    async def analyze(self, upload, on_phase):
        raise RuntimeError("socket closed")


def make_workflow(analyzer, prices=DEFAULT_PRICES):
    backend = MemoryLedgerBackend()
    ledger = BalanceLedger(backend)
    usage_log = UsageLog(backend)
    workflow = AnalysisWorkflow(
        ledger, usage_log, lambda: analyzer, prices,
        max_upload_bytes=10_000, trial_max_upload_bytes=1_000,
    )
    return workflow, backend


async def _analyze(workflow, user_id, upload):
    admission = await workflow.admit(user_id)
    await workflow.reserve(user_id, admission)
    session = AnalysisSession(user_id)
    session.select_file(upload.file_name, upload.size_bytes, trial=admission.trial)
    await workflow.start(session, upload, admission)
    await workflow.usage_log.drain()
    return session, admission


def test_paid_analysis_charges_actual_usage(tmp_path):
    # 12,000 prompt tokens -> 12 credits
    workflow, backend = make_workflow(FakeAnalyzer())
    upload = make_upload(tmp_path)

    async def scenario():
        await workflow.ledger.add_credits("u1", 100)
        session, admission = await _analyze(workflow, "u1", upload)
        return session, admission, await workflow.ledger.get_balance("u1")

    session, admission, balance = run(scenario())

    assert admission.trial is False
    assert admission.max_upload_bytes == 10_000
    assert session.phase == Phase.COMPLETE
    assert session.credits_charged == 12
    assert session.billing_warning is None
    assert balance == 88

    records = run(backend.list_usage("u1"))
    assert len(records) == 1
    assert records[0].cost_in_credits == 12
    assert records[0].trial is False
    assert not upload.path.exists()


def test_failed_analysis_leaves_ledger_untouched(tmp_path):
    workflow, backend = make_workflow(FakeAnalyzer(error=ProcessingError("Google rejected the file")))
    upload = make_upload(tmp_path)

    async def scenario():
        await workflow.ledger.add_credits("u1", 100)
        session, _ = await _analyze(workflow, "u1", upload)
        return session, await workflow.ledger.get_balance("u1")

    session, balance = run(scenario())

    assert session.phase == Phase.ERROR
    assert session.error.kind == ErrorKind.PROCESSING
    assert session.result is None
    assert balance == 100
    assert run(backend.list_usage("u1")) == []
    assert not upload.path.exists()


def test_unexpected_failure_becomes_processing_error(tmp_path):
    workflow, backend = make_workflow(CrashingAnalyzer())

    async def scenario():
        await workflow.ledger.add_credits("u1", 100)
        session, _ = await _analyze(workflow, "u1", make_upload(tmp_path))
        return session

    session = run(scenario())

    assert session.phase == Phase.ERROR
    assert session.error.kind == ErrorKind.PROCESSING
    assert "socket closed" in session.error.message


def test_trial_analysis_marks_trial_used(tmp_path):
    workflow, backend = make_workflow(FakeAnalyzer())

    async def scenario():
        session, admission = await _analyze(workflow, "new-user", make_upload(tmp_path))
        eligible = await workflow.ledger.check_trial_eligibility("new-user")
        return session, admission, eligible

    session, admission, eligible = run(scenario())

    assert admission.trial is True
    assert admission.max_upload_bytes == 1_000
    assert session.phase == Phase.COMPLETE
    assert session.credits_charged == 0
    assert eligible is False

    records = run(backend.list_usage("new-user"))
    assert len(records) == 1
    assert records[0].trial is True
    assert records[0].cost_in_credits == 0


def test_failed_trial_still_uses_up_trial(tmp_path):
    workflow, backend = make_workflow(FakeAnalyzer(error=ProcessingError("boom")))

    async def scenario():
        session, _ = await _analyze(workflow, "new-user", make_upload(tmp_path))
        return session, await workflow.ledger.check_trial_eligibility("new-user")

    session, eligible = run(scenario())

    assert session.phase == Phase.ERROR
    assert eligible is False
    assert run(backend.list_usage("new-user")) == []


def test_concurrent_trial_admissions_grant_one_trial(tmp_path):
    workflow, _ = make_workflow(FakeAnalyzer())

    async def scenario():
        first = await workflow.admit("new-user")
        second = await workflow.admit("new-user")
        assert first.trial and second.trial
        return await asyncio.gather(
            workflow.reserve("new-user", first),
            workflow.reserve("new-user", second),
            return_exceptions=True,
        )

    outcomes = run(scenario())

    assert outcomes.count(None) == 1
    refused = [o for o in outcomes if o is not None]
    assert len(refused) == 1
    assert isinstance(refused[0], InsufficientBalanceError)


def test_trial_not_granted_when_claim_cannot_be_stored():
    backend = MemoryLedgerBackend()

    async def unreachable(user_id):
        raise LedgerBackendError("connection refused")

    backend.claim_trial = unreachable
    workflow = AnalysisWorkflow(
        BalanceLedger(backend), UsageLog(backend), FakeAnalyzer, DEFAULT_PRICES,
        max_upload_bytes=10_000, trial_max_upload_bytes=1_000,
    )

    async def scenario():
        admission = await workflow.admit("new-user")
        assert admission.trial is True
        with pytest.raises(InsufficientBalanceError):
            await workflow.reserve("new-user", admission)

    run(scenario())


def test_rejected_deduct_still_delivers_result(tmp_path):
    workflow, backend = make_workflow(FakeAnalyzer())
    upload = make_upload(tmp_path)

    async def scenario():
        await workflow.ledger.add_credits("u1", 100)
        admission = await workflow.admit("u1")
        # Balance drops below the cost after admission
        await workflow.ledger.deduct_credits("u1", 95)

        session = AnalysisSession("u1")
        session.select_file(upload.file_name, upload.size_bytes)
        await workflow.start(session, upload, admission)
        await workflow.usage_log.drain()
        return session, await workflow.ledger.get_balance("u1")

    session, balance = run(scenario())

    assert session.phase == Phase.COMPLETE
    assert session.result is not None
    assert session.credits_charged == 0
    assert "could not be charged" in session.billing_warning
    assert balance == 5

    issues = backend.billing_issues
    assert len(issues) == 1
    assert issues[0].amount == 12
    assert issues[0].session_id == session.id
    assert run(backend.list_usage("u1")) == []


def test_cancelled_analysis_is_not_charged(tmp_path):
    analyzer = BlockingAnalyzer()
    workflow, backend = make_workflow(analyzer)
    upload = make_upload(tmp_path)

    async def scenario():
        await workflow.ledger.add_credits("u1", 100)
        admission = await workflow.admit("u1")
        session = AnalysisSession("u1")
        session.select_file(upload.file_name, upload.size_bytes)
        task = workflow.start(session, upload, admission)

        await analyzer.started.wait()
        assert workflow.cancel(session) is True
        with pytest.raises(asyncio.CancelledError):
            await task
        assert workflow.cancel(session) is False
        return session, await workflow.ledger.get_balance("u1")

    session, balance = run(scenario())

    assert session.phase == Phase.ERROR
    assert session.error.kind == ErrorKind.CANCELLED
    assert balance == 100
    assert not upload.path.exists()


def test_admission_rejects_low_balance_without_trial():
    workflow, _ = make_workflow(FakeAnalyzer(), prices=PriceTable(minimum_charge=10))

    async def scenario():
        await workflow.ledger.add_credits("u1", 8)
        await workflow.ledger.mark_trial_used("u1")
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await workflow.admit("u1")
        return exc_info.value, await workflow.ledger.get_balance("u1")

    error, balance = run(scenario())

    assert error.credits_needed == 10
    assert error.credits_available == 8
    assert balance == 8


def test_balance_below_minimum_falls_back_to_trial():
    workflow, _ = make_workflow(FakeAnalyzer(), prices=PriceTable(minimum_charge=10))

    async def scenario():
        await workflow.ledger.add_credits("u1", 8)
        return await workflow.admit("u1")

    admission = run(scenario())

    assert admission.trial is True
    assert admission.balance == 8


class ExplodingDeductBackend(MemoryLedgerBackend):
    """Deduct fails with an error the ledger does not translate."""

    async def deduct_credits(self, user_id, amount):
        raise RuntimeError("driver bug")


def test_billing_crash_still_completes_session(tmp_path):
    backend = ExplodingDeductBackend()
    workflow = AnalysisWorkflow(
        BalanceLedger(backend), UsageLog(backend), FakeAnalyzer, DEFAULT_PRICES,
        max_upload_bytes=10_000, trial_max_upload_bytes=1_000,
    )

    async def scenario():
        await workflow.ledger.add_credits("u1", 100)
        session, _ = await _analyze(workflow, "u1", make_upload(tmp_path))
        return session, await workflow.ledger.get_balance("u1")

    session, balance = run(scenario())

    assert session.phase == Phase.COMPLETE
    assert session.in_flight is False
    assert session.result is not None
    assert session.credits_charged == 0
    assert "could not be charged" in session.billing_warning
    assert balance == 100

    issues = backend.billing_issues
    assert len(issues) == 1
    assert issues[0].amount == 12
    assert "driver bug" in issues[0].reason


def test_unpaid_charge_is_collected_before_next_analysis(tmp_path):
    workflow, backend = make_workflow(FakeAnalyzer())

    async def scenario():
        await workflow.ledger.add_credits("u1", 100)
        admission = await workflow.admit("u1")
        await workflow.ledger.deduct_credits("u1", 95)

        upload = make_upload(tmp_path)
        session = AnalysisSession("u1")
        session.select_file(upload.file_name, upload.size_bytes)
        await workflow.start(session, upload, admission)
        assert "could not be charged" in session.billing_warning
        assert await workflow.ledger.get_balance("u1") == 5

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await workflow.admit("u1")
        refused = exc_info.value

        await workflow.ledger.add_credits("u1", 100)
        admitted = await workflow.admit("u1")
        return refused, admitted, await workflow.ledger.get_balance("u1")

    refused, admitted, balance = run(scenario())

    # 12 owed plus the minimum charge of the next run
    assert refused.credits_needed == 17
    assert refused.credits_available == 5
    assert admitted.trial is False
    assert balance == 93
    assert [i.resolved for i in backend.billing_issues] == [True]
    assert run(backend.outstanding_charges("u1")) == 0


def test_unpaid_charge_blocks_trial_fallback(tmp_path):
    workflow, backend = make_workflow(FakeAnalyzer())

    async def scenario():
        await workflow.ledger.record_billing_issue("u1", "s1", 12, "deduct rejected")
        with pytest.raises(InsufficientBalanceError):
            await workflow.admit("u1")
        return await workflow.ledger.check_trial_eligibility("u1")

    assert run(scenario()) is True


def test_context_close_cancels_running_analyses(settings):
    analyzer = BlockingAnalyzer()
    ctx = build_context(settings, backend=MemoryLedgerBackend(), analyzer_factory=lambda: analyzer)

    async def scenario(tmp_dir):
        await ctx.ledger.add_credits("u1", 100)
        admission = await ctx.workflow.admit("u1")
        upload = make_upload(tmp_dir)
        session = ctx.sessions.create("u1")
        session.select_file(upload.file_name, upload.size_bytes)
        task = ctx.workflow.start(session, upload, admission)

        await analyzer.started.wait()
        await ctx.close()
        return session, task, upload, await ctx.ledger.get_balance("u1")

    session, task, upload, balance = run(scenario(Path(settings.upload_dir)))

    assert task.cancelled()
    assert session.phase == Phase.ERROR
    assert session.error.kind == ErrorKind.CANCELLED
    assert balance == 100
    assert not upload.path.exists()
