"""Application context shared by request handlers."""
import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from streamslicer.analysis import GeminiAnalyzerFactory
from streamslicer.config import Settings
from streamslicer.ledger import BalanceLedger, LedgerBackend, UsageLog, create_ledger_backend
from streamslicer.pricing import PriceTable
from streamslicer.session import SessionRegistry
from streamslicer.workflow import Analyzer, AnalysisWorkflow


@dataclass
class AppContext:
    """Long-lived services, created at startup and closed at shutdown."""
    settings: Settings
    backend: LedgerBackend
    ledger: BalanceLedger
    usage_log: UsageLog
    prices: PriceTable
    sessions: SessionRegistry
    workflow: AnalysisWorkflow

    async def close(self) -> None:
        running = [s.task for s in self.sessions.in_flight() if s.task is not None]
        for session in self.sessions.in_flight():
            self.workflow.cancel(session)
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        await self.workflow.wait_settled()
        await self.usage_log.drain()
        await self.backend.close()


def build_context(
    settings: Settings,
    backend: Optional[LedgerBackend] = None,
    analyzer_factory: Optional[Callable[[], Analyzer]] = None,
) -> AppContext:
    backend = backend or create_ledger_backend(settings)
    ledger = BalanceLedger(backend)
    usage_log = UsageLog(backend)
    prices = PriceTable.from_settings(settings)

    workflow = AnalysisWorkflow(
        ledger,
        usage_log,
        analyzer_factory or GeminiAnalyzerFactory(settings),
        prices,
        max_upload_bytes=settings.max_upload_bytes,
        trial_max_upload_bytes=settings.trial_max_upload_bytes,
    )

    return AppContext(
        settings=settings,
        backend=backend,
        ledger=ledger,
        usage_log=usage_log,
        prices=prices,
        sessions=SessionRegistry(ttl_seconds=settings.session_ttl_seconds),
        workflow=workflow,
    )
