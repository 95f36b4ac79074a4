"""Users API - account and usage info."""
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from streamslicer.api.deps import get_context, get_current_user_id
from streamslicer.context import AppContext
from streamslicer.models import UsageRecord


router = APIRouter(prefix="/api/users", tags=["users"])


class UserAccount(BaseModel):
    """Account response."""
    user_id: str
    credits: int
    trial_available: bool


class UsageHistory(BaseModel):
    """Recent usage with totals over the returned records."""
    total_analyses: int
    total_credits_used: int
    records: list[UsageRecord]


@router.get("/me", response_model=UserAccount)
async def get_my_account(
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Get current user's balance and trial status."""
    return UserAccount(
        user_id=user_id,
        credits=await ctx.ledger.get_balance(user_id),
        trial_available=await ctx.ledger.check_trial_eligibility(user_id),
    )


@router.get("/me/usage", response_model=UsageHistory)
async def get_my_usage(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    ctx: AppContext = Depends(get_context),
):
    """Get current user's recent analyses, newest first."""
    records = await ctx.usage_log.recent(user_id, limit)

    return UsageHistory(
        total_analyses=len(records),
        total_credits_used=sum(r.cost_in_credits for r in records),
        records=records,
    )
