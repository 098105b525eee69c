"""
Usage Ledger Service

Gates and records render credit consumption.

The only concurrency guard is the conditional UPDATE in consume():

    UPDATE users SET credit = credit - :amount WHERE id = :user_id AND credit >= :amount

The database decides which of several concurrent callers wins; the affected row
count tells this code whether it was one of them. Credit is never read, compared
and written back in Python.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from core.errors import LIMIT_REACHED_CODE, truncate_error
from database.models import LedgerEntry, RenderAttempt, RenderMode, RenderStatus, UserAccount

logger = logging.getLogger(__name__)

RENDER_REASON = "render"


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    new_balance: Optional[int]


@dataclass(frozen=True)
class UsageSnapshot:
    limit: int
    used: int
    remaining: int
    reset_at: datetime

    def to_dict(self) -> dict:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat() + "Z",
        }


@dataclass(frozen=True)
class LedgerOverview:
    users: int
    renders: int
    total_credits: int


def utc_day_start(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class UsageLedgerService:
    """Credit gate, ledger writer and render-attempt audit trail."""

    def __init__(self, daily_limit_hint: int = 10, error_max_length: int = 300):
        self.daily_limit_hint = daily_limit_hint
        self.error_max_length = error_max_length

    async def create_render_attempt(self, db: AsyncSession, user_id: str, mode: str) -> RenderAttempt:
        """Create the audit row for a render call in the processing state."""
        attempt = RenderAttempt(
            id=str(uuid.uuid4()), user_id=user_id, mode=RenderMode(mode), status=RenderStatus.PROCESSING
        )
        db.add(attempt)
        await db.commit()
        logger.info(f"[Ledger] Render attempt {attempt.id} created for user {user_id} ({mode})")
        return attempt

    async def _finish_attempt(self, db: AsyncSession, attempt_id: str, status: RenderStatus, error: Optional[str] = None):
        # Only a processing attempt can move; a terminal status is never overwritten
        result = await db.execute(
            update(RenderAttempt)
            .where(RenderAttempt.id == attempt_id, RenderAttempt.status == RenderStatus.PROCESSING)
            .values(status=status, error=error, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_attempt_failed(self, db: AsyncSession, attempt_id: str, error: Optional[str]) -> bool:
        """Move a processing attempt to failed. Returns False if it was already terminal."""
        changed = await self._finish_attempt(
            db, attempt_id, RenderStatus.FAILED, truncate_error(error, self.error_max_length)
        )
        await db.commit()
        if changed:
            logger.info(f"[Ledger] Render attempt {attempt_id} failed: {truncate_error(error, 100)}")
        return changed

    async def _current_credit(self, db: AsyncSession, user_id: str) -> Optional[int]:
        result = await db.execute(select(UserAccount.credit).where(UserAccount.id == user_id))
        return result.scalar_one_or_none()

    async def consume(
        self,
        db: AsyncSession,
        user_id: str,
        amount: int = 1,
        reason: str = RENDER_REASON,
        attempt_id: Optional[str] = None,
    ) -> ConsumeResult:
        """
        Atomically take `amount` credits from the user.

        On success the ledger entry, the decrement and the attempt's success
        status are committed together. On insufficient credit the attempt (if
        any) is marked failed with LIMIT_REACHED and nothing is written to the
        ledger.
        """
        amount = max(1, int(amount))
        try:
            result = await db.execute(
                update(UserAccount)
                .where(UserAccount.id == user_id, UserAccount.credit >= amount)
                .values(credit=UserAccount.credit - amount)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 0:
                if attempt_id:
                    await self._finish_attempt(db, attempt_id, RenderStatus.FAILED, LIMIT_REACHED_CODE)
                balance = await self._current_credit(db, user_id)
                await db.commit()
                logger.info(f"[Ledger] Limit reached for user {user_id} (requested {amount}, balance {balance})")
                return ConsumeResult(allowed=False, new_balance=balance)

            db.add(LedgerEntry(user_id=user_id, delta=-amount, reason=reason, created_at=datetime.utcnow()))
            if attempt_id:
                await self._finish_attempt(db, attempt_id, RenderStatus.SUCCESS)
            balance = await self._current_credit(db, user_id)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"[Ledger] Consumed {amount} for user {user_id} ({reason}), balance {balance}")
        return ConsumeResult(allowed=True, new_balance=balance)

    async def usage_snapshot(
        self, db: AsyncSession, user_id: str, daily_limit_hint: Optional[int] = None, now: Optional[datetime] = None
    ) -> UsageSnapshot:
        """
        Current usage for the user.

        used is the render credit spent since 00:00 UTC, remaining is the live
        balance and limit is derived as remaining + used. Accounts with no row
        report the default daily allowance.
        """
        day_start = utc_day_start(now)
        reset_at = day_start + timedelta(days=1)

        credit = await self._current_credit(db, user_id)
        if credit is None:
            hint = self.daily_limit_hint if daily_limit_hint is None else daily_limit_hint
            return UsageSnapshot(limit=hint, used=0, remaining=hint, reset_at=reset_at)

        result = await db.execute(
            select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.reason == RENDER_REASON,
                LedgerEntry.created_at >= day_start,
            )
        )
        used = max(0, -int(result.scalar_one()))
        remaining = max(0, int(credit))

        return UsageSnapshot(limit=remaining + used, used=used, remaining=remaining, reset_at=reset_at)

    async def list_render_attempts(self, db: AsyncSession, limit: int = 50) -> List[RenderAttempt]:
        """Most recent render attempts, newest first."""
        limit = min(max(int(limit), 1), 200)
        result = await db.execute(
            select(RenderAttempt)
            .options(selectinload(RenderAttempt.user))
            .order_by(RenderAttempt.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def overview(self, db: AsyncSession) -> LedgerOverview:
        """Account count, render attempt count and outstanding credit across all accounts."""
        users = (await db.execute(select(func.count()).select_from(UserAccount))).scalar_one()
        renders = (await db.execute(select(func.count()).select_from(RenderAttempt))).scalar_one()
        total_credits = (await db.execute(select(func.coalesce(func.sum(UserAccount.credit), 0)))).scalar_one()
        return LedgerOverview(users=int(users), renders=int(renders), total_credits=int(total_credits))
