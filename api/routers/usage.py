"""
Usage API routes: remaining render credit and manual consumption
"""
import logging
import math

from fastapi import APIRouter, Depends, Request
from schemas.usage import ConsumeRequest, UsageSnapshotResponse
from services.usage_ledger_service import UsageLedgerService, UsageSnapshot
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import get_current_user
from core.database import get_db
from core.errors import LimitReachedError
from database.models import UserAccount

logger = logging.getLogger(__name__)
router = APIRouter()


def get_usage_ledger(request: Request) -> UsageLedgerService:
    return request.app.state.render_service.ledger


def _to_response(snapshot: UsageSnapshot) -> UsageSnapshotResponse:
    return UsageSnapshotResponse(**snapshot.to_dict())


@router.get("", response_model=UsageSnapshotResponse)
async def get_usage(
    current_user: UserAccount = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: UsageLedgerService = Depends(get_usage_ledger),
):
    """Current usage for the authenticated account."""
    snapshot = await ledger.usage_snapshot(db, current_user.id)
    return _to_response(snapshot)


@router.post("/consume", response_model=UsageSnapshotResponse)
async def consume_usage(
    body: ConsumeRequest,
    current_user: UserAccount = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: UsageLedgerService = Depends(get_usage_ledger),
):
    """
    Take credit without rendering (client-side flows that bill separately).
    Returns 429 LIMIT_REACHED when the balance is insufficient.
    """
    amount = max(1, math.floor(body.amount))
    result = await ledger.consume(db, current_user.id, amount=amount, reason=body.type or "render")
    if not result.allowed:
        raise LimitReachedError()

    snapshot = await ledger.usage_snapshot(db, current_user.id)
    return _to_response(snapshot)
