"""Data models (Pydantic schemas)."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


TIMESTAMP_PATTERN = r"^\d+:\d{2}(:\d{2})?$"


class Account(BaseModel):
    """Per-user credit balance and trial flag."""
    user_id: str
    credits: int = Field(default=0, ge=0)
    has_used_free_trial: bool = False


class TokenUsage(BaseModel):
    """Token counters reported by the model."""
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)


class UsageRecord(BaseModel):
    """Audit record for one completed analysis."""
    user_id: str
    cost_in_credits: int = Field(ge=0)
    file_name: str
    token_usage: TokenUsage
    trial: bool = False
    timestamp: datetime


class BillingIssue(BaseModel):
    """A delivered result whose billing did not go through.

    Open issues with a positive amount are credits the user still owes.
    They are collected before the next analysis is admitted.
    """
    user_id: str
    session_id: str
    amount: int
    reason: str
    timestamp: datetime
    resolved: bool = False


# ============= Analysis result =============
# Field names match the JSON schema sent to Gemini.

class StreamMeta(BaseModel):
    duration: str
    streamer_vibe: str


class Clip(BaseModel):
    """A scored, titled segment of the source video."""
    start_timestamp: str = Field(pattern=TIMESTAMP_PATTERN)
    end_timestamp: str = Field(pattern=TIMESTAMP_PATTERN)
    virality_score: int = Field(ge=1, le=10)
    title: str
    reason: str


class AnalysisResult(BaseModel):
    """Viral clip analysis of a stream."""
    stream_meta: StreamMeta
    clips: list[Clip]
    summary: str


class AnalysisOutcome(BaseModel):
    """Parsed result plus the token usage it cost."""
    result: AnalysisResult
    token_usage: TokenUsage
    remote_file: Optional[str] = None
