"""Per-session analysis state.

A session moves strictly forward through the analysis phases::

    idle -> uploading -> processing_file -> analyzing -> complete

Any in-flight phase may drop to ``error``. ``complete`` and ``error``
return to ``idle`` when a new file is selected. Only one analysis may be
in flight per session.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from streamslicer.errors import (
    InvalidTransitionError,
    SessionConflictError,
    SessionNotFoundError,
    StreamSlicerError,
)
from streamslicer.models import AnalysisResult, TokenUsage


logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING_FILE = "processing_file"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    ERROR = "error"


PhaseCallback = Callable[[Phase], None]


IN_FLIGHT = {Phase.UPLOADING, Phase.PROCESSING_FILE, Phase.ANALYZING}
STARTABLE = {Phase.IDLE, Phase.COMPLETE, Phase.ERROR}

TRANSITIONS = {
    Phase.IDLE: {Phase.UPLOADING},
    Phase.UPLOADING: {Phase.PROCESSING_FILE, Phase.ERROR},
    Phase.PROCESSING_FILE: {Phase.ANALYZING, Phase.ERROR},
    Phase.ANALYZING: {Phase.COMPLETE, Phase.ERROR},
    Phase.COMPLETE: {Phase.IDLE},
    Phase.ERROR: {Phase.IDLE},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisSession:
    """State of one user's analysis session."""

    def __init__(self, user_id: str, session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.user_id = user_id
        self.phase = Phase.IDLE
        self.updated_at = _utcnow()
        self.task: Optional[asyncio.Task] = None
        self._clear()

    def _clear(self) -> None:
        self.file_name: Optional[str] = None
        self.size_bytes: Optional[int] = None
        self.trial = False
        self.result: Optional[AnalysisResult] = None
        self.token_usage: Optional[TokenUsage] = None
        self.credits_charged: Optional[int] = None
        self.billing_warning: Optional[str] = None
        self.error: Optional[StreamSlicerError] = None

    @property
    def in_flight(self) -> bool:
        return self.phase in IN_FLIGHT

    @property
    def can_start(self) -> bool:
        return self.phase in STARTABLE

    def _move(self, phase: Phase) -> None:
        if phase not in TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Cannot move session from {self.phase.value} to {phase.value}"
            )
        logger.info("Session %s: %s -> %s", self.id, self.phase.value, phase.value)
        self.phase = phase
        self.updated_at = _utcnow()

    def select_file(self, file_name: str, size_bytes: int, trial: bool = False) -> None:
        """Attach a new file, resetting a finished session to idle."""
        if not self.can_start:
            raise SessionConflictError("An analysis is already running in this session")
        if self.phase != Phase.IDLE:
            self._move(Phase.IDLE)
        self._clear()
        self.file_name = file_name
        self.size_bytes = size_bytes
        self.trial = trial

    def advance(self, phase: Phase) -> None:
        """Phase callback for the analyzer. Repeating the current phase is a no-op."""
        if phase == self.phase:
            return
        self._move(phase)

    def complete(
        self,
        result: AnalysisResult,
        token_usage: TokenUsage,
        credits_charged: int,
        billing_warning: Optional[str] = None,
    ) -> None:
        self._move(Phase.COMPLETE)
        self.result = result
        self.token_usage = token_usage
        self.credits_charged = credits_charged
        self.billing_warning = billing_warning

    def fail(self, error: StreamSlicerError) -> None:
        self._move(Phase.ERROR)
        self.error = error


class SessionRegistry:
    """Sessions kept in process memory, each owned by one user."""

    def __init__(self, ttl_seconds: int = 3600):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._sessions: dict[str, AnalysisSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, user_id: str) -> AnalysisSession:
        self.prune()
        session = AnalysisSession(user_id)
        self._sessions[session.id] = session
        return session

    def get(self, session_id: str, user_id: str) -> AnalysisSession:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFoundError("Session not found")
        return session

    def in_flight(self) -> list[AnalysisSession]:
        return [s for s in self._sessions.values() if s.in_flight]

    def prune(self) -> None:
        """Drop finished sessions idle for longer than the TTL."""
        cutoff = _utcnow() - self.ttl
        expired = [
            sid for sid, s in self._sessions.items()
            if not s.in_flight and s.updated_at < cutoff
        ]
        for sid in expired:
            del self._sessions[sid]
