"""Tests for the session state machine and registry."""
from datetime import timedelta

import pytest

from conftest import SAMPLE_RESULT
from streamslicer.errors import (
    InvalidTransitionError,
    ProcessingError,
    SessionConflictError,
    SessionNotFoundError,
)
from streamslicer.models import AnalysisResult, TokenUsage
from streamslicer.session import AnalysisSession, Phase, SessionRegistry


def _run_to_analyzing(session: AnalysisSession) -> None:
    session.select_file("stream.mp4", 1024)
    for phase in (Phase.UPLOADING, Phase.PROCESSING_FILE, Phase.ANALYZING):
        session.advance(phase)


def test_happy_path():
    session = AnalysisSession("u1")
    assert session.phase == Phase.IDLE
    assert session.can_start

    _run_to_analyzing(session)
    assert session.in_flight
    assert not session.can_start

    result = AnalysisResult.model_validate(SAMPLE_RESULT)
    session.complete(result, TokenUsage(prompt_tokens=100), credits_charged=5)

    assert session.phase == Phase.COMPLETE
    assert session.result == result
    assert session.credits_charged == 5
    assert session.billing_warning is None


def test_phases_cannot_be_skipped_or_reversed():
    session = AnalysisSession("u1")
    session.select_file("stream.mp4", 1024)

    with pytest.raises(InvalidTransitionError):
        session.advance(Phase.ANALYZING)

    session.advance(Phase.UPLOADING)
    session.advance(Phase.PROCESSING_FILE)
    with pytest.raises(InvalidTransitionError):
        session.advance(Phase.UPLOADING)
    with pytest.raises(InvalidTransitionError):
        session.complete(
            AnalysisResult.model_validate(SAMPLE_RESULT), TokenUsage(), credits_charged=0
        )


def test_repeated_phase_is_ignored():
    session = AnalysisSession("u1")
    session.select_file("stream.mp4", 1024)
    session.advance(Phase.UPLOADING)
    session.advance(Phase.UPLOADING)
    assert session.phase == Phase.UPLOADING


def test_error_from_any_in_flight_phase():
    for stop in (Phase.UPLOADING, Phase.PROCESSING_FILE, Phase.ANALYZING):
        session = AnalysisSession("u1")
        session.select_file("stream.mp4", 1024)
        for phase in (Phase.UPLOADING, Phase.PROCESSING_FILE, Phase.ANALYZING):
            session.advance(phase)
            if phase == stop:
                break

        error = ProcessingError("file processing failed")
        session.fail(error)
        assert session.phase == Phase.ERROR
        assert session.error is error


def test_idle_session_cannot_fail():
    with pytest.raises(InvalidTransitionError):
        AnalysisSession("u1").fail(ProcessingError("nope"))


def test_new_file_rejected_while_in_flight():
    session = AnalysisSession("u1")
    _run_to_analyzing(session)

    with pytest.raises(SessionConflictError):
        session.select_file("other.mp4", 10)
    assert session.file_name == "stream.mp4"
    assert session.phase == Phase.ANALYZING


def test_new_file_resets_finished_session():
    session = AnalysisSession("u1")
    _run_to_analyzing(session)
    session.fail(ProcessingError("boom"))

    session.select_file("second.mp4", 2048, trial=True)

    assert session.phase == Phase.IDLE
    assert session.error is None
    assert session.result is None
    assert session.file_name == "second.mp4"
    assert session.trial is True


def test_registry_scopes_sessions_to_owner():
    registry = SessionRegistry()
    session = registry.create("u1")

    assert registry.get(session.id, "u1") is session
    with pytest.raises(SessionNotFoundError):
        registry.get(session.id, "u2")
    with pytest.raises(SessionNotFoundError):
        registry.get("missing", "u1")


def test_registry_prunes_stale_finished_sessions():
    registry = SessionRegistry(ttl_seconds=60)
    stale = registry.create("u1")
    busy = registry.create("u1")
    fresh = registry.create("u1")

    _run_to_analyzing(busy)
    for session in (stale, busy):
        session.updated_at -= timedelta(seconds=120)

    registry.prune()

    assert len(registry) == 2
    assert registry.get(busy.id, "u1") is busy
    assert registry.get(fresh.id, "u1") is fresh
    assert registry.in_flight() == [busy]
