"""
Admin API routes for render auditing
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Query
from schemas.render import AdminOverviewResponse, RenderAttemptResponse, RenderAttemptUser
from services.usage_ledger_service import UsageLedgerService
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import require_admin
from core.database import get_db
from database.models import RenderAttempt, UserAccount
from routers.usage import get_usage_ledger

logger = logging.getLogger(__name__)
router = APIRouter()


def _attempt_to_response(attempt: RenderAttempt) -> RenderAttemptResponse:
    """Convert a RenderAttempt ORM object, handling enum conversion."""
    return RenderAttemptResponse(
        id=attempt.id,
        user_id=attempt.user_id,
        mode=attempt.mode.value if attempt.mode else "normal",
        status=attempt.status.value if attempt.status else "processing",
        error=attempt.error,
        created_at=attempt.created_at,
        updated_at=attempt.updated_at,
        user=RenderAttemptUser.model_validate(attempt.user) if attempt.user else None,
    )


@router.get("/renders", response_model=List[RenderAttemptResponse])
async def list_renders(
    limit: int = Query(50),
    admin: UserAccount = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    ledger: UsageLedgerService = Depends(get_usage_ledger),
):
    """Most recent render attempts; limit is clamped to 1..200."""
    attempts = await ledger.list_render_attempts(db, limit=limit)
    return [_attempt_to_response(attempt) for attempt in attempts]


@router.get("/overview", response_model=AdminOverviewResponse)
async def get_overview(
    admin: UserAccount = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    ledger: UsageLedgerService = Depends(get_usage_ledger),
):
    overview = await ledger.overview(db)
    return AdminOverviewResponse(users=overview.users, renders=overview.renders, total_credits=overview.total_credits)
