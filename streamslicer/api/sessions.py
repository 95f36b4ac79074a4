"""Analysis sessions API - upload a stream and follow its analysis."""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from pydantic import BaseModel

from streamslicer.api.deps import get_context, get_current_user_id
from streamslicer.context import AppContext
from streamslicer.errors import SessionConflictError
from streamslicer.models import AnalysisResult, TokenUsage
from streamslicer.pricing import estimate_video_cost
from streamslicer.session import AnalysisSession, Phase
from streamslicer.uploads import spool_upload, validate_video


router = APIRouter(prefix="/api", tags=["analysis"])


class SessionError(BaseModel):
    code: str
    message: str


class SessionView(BaseModel):
    """Session state as shown to the client."""
    id: str
    phase: Phase
    can_start: bool
    file_name: Optional[str] = None
    size_bytes: Optional[int] = None
    trial: bool = False
    result: Optional[AnalysisResult] = None
    token_usage: Optional[TokenUsage] = None
    credits_charged: Optional[int] = None
    billing_warning: Optional[str] = None
    error: Optional[SessionError] = None

    @classmethod
    def of(cls, session: AnalysisSession) -> "SessionView":
        error = None
        if session.error is not None:
            error = SessionError(code=session.error.kind.value, message=session.error.message)

        return cls(
            id=session.id,
            phase=session.phase,
            can_start=session.can_start,
            file_name=session.file_name,
            size_bytes=session.size_bytes,
            trial=session.trial,
            result=session.result,
            token_usage=session.token_usage,
            credits_charged=session.credits_charged,
            billing_warning=session.billing_warning,
            error=error,
        )


class CostEstimate(BaseModel):
    duration_seconds: float
    estimated_credits: int
    credits_available: int
    can_afford: bool


@router.post("/sessions", response_model=SessionView, status_code=status.HTTP_201_CREATED)
async def create_session(
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Open a new analysis session."""
    return SessionView.of(ctx.sessions.create(user_id))


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Current phase, and the result or error once finished."""
    return SessionView.of(ctx.sessions.get(session_id, user_id))


@router.post(
    "/sessions/{session_id}/analyze",
    response_model=SessionView,
    status_code=status.HTTP_202_ACCEPTED,
)
async def analyze_video(
    session_id: str,
    video: UploadFile = File(..., description="Video file to analyze"),
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Start analyzing a video.

    Requires a balance of at least the minimum charge, or an unused free
    trial (with a smaller file limit). The actual cost is charged from the
    token usage once the analysis succeeds.
    """
    session = ctx.sessions.get(session_id, user_id)
    if not session.can_start:
        raise SessionConflictError("An analysis is already running in this session")

    validate_video(video.content_type, None, ctx.settings.max_upload_bytes)
    admission = await ctx.workflow.admit(user_id)

    upload = await spool_upload(video, admission.max_upload_bytes, ctx.settings.upload_dir)
    try:
        await ctx.workflow.reserve(user_id, admission)
        session.select_file(upload.file_name, upload.size_bytes, trial=admission.trial)
        ctx.workflow.start(session, upload, admission)
    except BaseException:
        upload.release()
        raise

    return SessionView.of(session)


@router.delete("/sessions/{session_id}/analysis", response_model=SessionView)
async def cancel_analysis(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Abort a running analysis. Nothing is charged."""
    session = ctx.sessions.get(session_id, user_id)
    if not ctx.workflow.cancel(session):
        raise SessionConflictError("No analysis is running in this session")
    await asyncio.wait([session.task], timeout=5.0)
    return SessionView.of(session)


@router.get("/analyses/estimate", response_model=CostEstimate)
async def estimate_cost(
    duration_seconds: float = Query(..., ge=0),
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Estimate credits for a video of the given duration (advisory)."""
    estimated = estimate_video_cost(duration_seconds, ctx.prices)
    available = await ctx.ledger.get_balance(user_id)

    return CostEstimate(
        duration_seconds=duration_seconds,
        estimated_credits=estimated,
        credits_available=available,
        can_afford=available >= estimated,
    )
