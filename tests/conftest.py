"""Shared fixtures for the StreamSlicer test suite.

Run with: python -m pytest
"""
import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from streamslicer.auth.jwt import create_access_token
from streamslicer.config import Settings
from streamslicer.ledger import MemoryLedgerBackend
from streamslicer.main import create_app
from streamslicer.models import AnalysisOutcome, AnalysisResult, TokenUsage
from streamslicer.session import Phase
from streamslicer.uploads import VideoUpload


SECRET = "test-secret"

SAMPLE_RESULT = {
    "stream_meta": {"duration": "01:02:03", "streamer_vibe": "chaotic"},
    "clips": [
        {
            "start_timestamp": "00:12:01",
            "end_timestamp": "00:12:40",
            "virality_score": 9,
            "title": "He did NOT see that coming",
            "reason": "Jump scare followed by a scream",
        },
        {
            "start_timestamp": "45:10",
            "end_timestamp": "45:55",
            "virality_score": 5,
            "title": "Clutch 1v3",
            "reason": "Game win with chat going wild",
        },
    ],
    "summary": "A horror playthrough with several big reactions.",
}


class FakeAnalyzer:
    """Walks through the phases and returns a canned outcome, or raises."""

    def __init__(self, usage=None, error=None, result=None):
        self.usage = usage or TokenUsage(prompt_tokens=12000, completion_tokens=0)
        self.error = error
        self.result = result or AnalysisResult.model_validate(SAMPLE_RESULT)
        self.calls = []

    async def analyze(self, upload, on_phase):
        self.calls.append(upload)
        on_phase(Phase.UPLOADING)
        on_phase(Phase.PROCESSING_FILE)
        if self.error is not None:
            raise self.error
        on_phase(Phase.ANALYZING)
        return AnalysisOutcome(result=self.result, token_usage=self.usage)


def run(coro):
    return asyncio.run(coro)


def make_upload(directory: Path, name: str = "stream.mp4", size: int = 64) -> VideoUpload:
    path = directory / name
    path.write_bytes(b"\0" * size)
    return VideoUpload(path=path, file_name=name, mime_type="video/mp4", size_bytes=size)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, SECRET)}"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        secret_key=SECRET,
        ledger_backend="memory",
        gemini_api_key="",
        poll_initial_delay=0,
        poll_interval=0,
        upload_dir=str(tmp_path),
        max_upload_bytes=10_000,
        trial_max_upload_bytes=1_000,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret="whsec_dummy",
    )


@pytest.fixture
def backend():
    return MemoryLedgerBackend(secret_key=SECRET)


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def factory_calls():
    return SimpleNamespace(count=0)


@pytest.fixture
def client(settings, backend, analyzer, factory_calls):
    def analyzer_factory():
        factory_calls.count += 1
        return analyzer

    app = create_app(settings, backend=backend, analyzer_factory=analyzer_factory)
    with TestClient(app) as client:
        yield client
