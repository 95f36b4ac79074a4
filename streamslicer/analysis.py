"""Viral clip analysis with Google Gemini.

The analyzer uploads the video through the Files API, waits for Google to
finish processing it, then asks the model for clips in a fixed JSON shape.
"""
import asyncio
import json
import logging
from contextlib import contextmanager
from typing import Any, Optional

import httpx
from google import genai
from google.genai import errors, types
from pydantic import ValidationError

from streamslicer.config import Settings
from streamslicer.errors import (
    AnalysisTimeoutError,
    AuthorizationError,
    ConfigurationError,
    ParseError,
    ProcessingError,
)
from streamslicer.models import AnalysisOutcome, AnalysisResult, TokenUsage
from streamslicer.session import Phase, PhaseCallback
from streamslicer.uploads import VideoUpload


logger = logging.getLogger(__name__)


SYSTEM_INSTRUCTION = """
Role: Expert Video Editor for TikTok, YouTube Shorts, and Instagram Reels.
Objective: Analyze this long-form stream footage to identify the 3-5 most 'viral' moments suitable for short-form content.

Criteria for Viral Clips:
1. AUDIO SPIKES: Look for sudden laughter, shouting, high-energy speech, or funny noises.
2. VISUAL SURPRISE: Look for rapid movement, jump scares, or drastic changes in the streamer's facial expression.
3. CONTEXT: Identify 'wins' in games, funny 'fails', or glitch moments.

Scoring:
- Assign a 'virality_score' from 1-10 based on how likely it is to retain attention on TikTok.
- 10 = Screaming/Huge Laugh/Insane Play.
- 5 = Interesting/Good Context.
- 1 = Boring.

Output Rules:
- Generate a 'Clickbait Style' title for each clip.
- Provide exact timestamps in HH:MM:SS or MM:SS format.
"""

USER_PROMPT = "Find the viral clips in this stream."

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "stream_meta": {
            "type": "OBJECT",
            "properties": {
                "duration": {"type": "STRING"},
                "streamer_vibe": {"type": "STRING"},
            },
            "required": ["duration", "streamer_vibe"],
        },
        "clips": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "start_timestamp": {"type": "STRING"},
                    "end_timestamp": {"type": "STRING"},
                    "virality_score": {"type": "INTEGER"},
                    "title": {"type": "STRING"},
                    "reason": {"type": "STRING"},
                },
                "required": [
                    "start_timestamp", "end_timestamp", "virality_score", "title", "reason"
                ],
            },
        },
        "summary": {"type": "STRING"},
    },
    "required": ["stream_meta", "clips", "summary"],
}


@contextmanager
def _remote_call(step: str):
    """Translate Gemini client failures into analysis errors."""
    try:
        yield
    except errors.APIError as e:
        if e.code in (401, 403):
            raise AuthorizationError(
                f"Gemini rejected the API key during {step}"
            ) from e
        raise ProcessingError(f"Gemini {step} failed: {e.message or e.status}") from e
    except httpx.TransportError as e:
        raise AuthorizationError(f"Could not reach Gemini during {step}: {e}") from e


def _state_name(file: Any) -> str:
    state = getattr(file, "state", None)
    if state is None:
        return "STATE_UNSPECIFIED"
    return getattr(state, "name", str(state))


def parse_analysis(text: Optional[str]) -> AnalysisResult:
    """Parse the model's JSON body into an AnalysisResult."""
    if not text:
        raise ParseError("No response from model")
    try:
        return AnalysisResult.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ParseError(f"Model response does not match the clip schema: {e}") from e


def extract_token_usage(response: Any) -> TokenUsage:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=getattr(usage, "prompt_token_count", None) or 0,
        completion_tokens=getattr(usage, "candidates_token_count", None) or 0,
    )


class GeminiAnalyzer:
    """Runs one video through upload, processing and generation."""

    def __init__(
        self,
        client: Any,
        model: str = "gemini-2.5-flash",
        temperature: float = 0.4,
        poll_initial_delay: float = 5.0,
        poll_interval: float = 5.0,
        poll_timeout: float = 600.0,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.poll_initial_delay = poll_initial_delay
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout

    async def analyze(self, upload: VideoUpload, on_phase: PhaseCallback) -> AnalysisOutcome:
        on_phase(Phase.UPLOADING)
        logger.info("Uploading %s (%d bytes)", upload.file_name, upload.size_bytes)
        with _remote_call("upload"):
            remote = await self.client.aio.files.upload(
                file=str(upload.path),
                config=types.UploadFileConfig(
                    display_name=upload.file_name,
                    mime_type=upload.mime_type,
                ),
            )
        logger.info("Upload complete: %s", remote.uri)

        on_phase(Phase.PROCESSING_FILE)
        remote = await self._wait_for_active(remote.name)

        on_phase(Phase.ANALYZING)
        with _remote_call("analysis"):
            response = await self.client.aio.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_uri(
                        file_uri=remote.uri,
                        mime_type=remote.mime_type or upload.mime_type,
                    ),
                    USER_PROMPT,
                ],
                config=types.GenerateContentConfig(
                    system_instruction=SYSTEM_INSTRUCTION,
                    response_mime_type="application/json",
                    response_schema=RESPONSE_SCHEMA,
                    temperature=self.temperature,
                ),
            )

        result = parse_analysis(response.text)
        usage = extract_token_usage(response)
        logger.info(
            "Analysis of %s found %d clips (%d prompt / %d completion tokens)",
            upload.file_name, len(result.clips),
            usage.prompt_tokens, usage.completion_tokens
        )
        return AnalysisOutcome(result=result, token_usage=usage, remote_file=remote.name)

    async def _wait_for_active(self, name: str) -> Any:
        """Poll the uploaded file until Google reports it ACTIVE."""
        loop = asyncio.get_running_loop()
        await asyncio.sleep(self.poll_initial_delay)
        deadline = loop.time() + self.poll_timeout

        with _remote_call("file status check"):
            file = await self.client.aio.files.get(name=name)

        while _state_name(file) == "PROCESSING":
            if loop.time() >= deadline:
                raise AnalysisTimeoutError(
                    f"File {name} still processing after {self.poll_timeout:.0f}s"
                )
            logger.debug("File %s is processing on Google servers", name)
            await asyncio.sleep(self.poll_interval)
            with _remote_call("file status check"):
                file = await self.client.aio.files.get(name=name)

        state = _state_name(file)
        if state != "ACTIVE":
            raise ProcessingError(f"File processing failed with state: {state}")

        logger.info("File %s is active", name)
        return file


class GeminiAnalyzerFactory:
    """Creates analyzers that share one Gemini client.

    The client is built on first use, so a missing API key fails the
    analysis rather than application startup.
    """

    def __init__(self, settings: Settings, client: Optional[Any] = None):
        self.settings = settings
        self.client = client

    def __call__(self) -> GeminiAnalyzer:
        if self.client is None:
            if not self.settings.gemini_api_key:
                raise ConfigurationError("GEMINI_API_KEY is not configured")
            self.client = genai.Client(api_key=self.settings.gemini_api_key)
        return create_analyzer(self.settings, self.client)


def create_analyzer(settings: Settings, client: Optional[Any] = None) -> GeminiAnalyzer:
    """Factory function to create an analyzer from settings."""
    if client is None:
        if not settings.gemini_api_key:
            raise ConfigurationError("GEMINI_API_KEY is not configured")
        client = genai.Client(api_key=settings.gemini_api_key)

    return GeminiAnalyzer(
        client,
        model=settings.gemini_model,
        temperature=settings.analysis_temperature,
        poll_initial_delay=settings.poll_initial_delay,
        poll_interval=settings.poll_interval,
        poll_timeout=settings.poll_timeout,
    )
