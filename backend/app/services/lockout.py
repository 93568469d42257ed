# backend/app/services/lockout.py
"""
Account lockout bookkeeping on the user record.

Unlocked --(failure, count < threshold)--> Unlocked
Unlocked --(failure, count >= threshold)--> Locked
Locked --(verified login)--> Unlocked

The increment and the lock decision happen in one UPDATE, evaluated against
the same row value: the lock engages on the failure that brings the stored
count to the threshold (the 4th with the default of 4).
"""
import logging
from typing import NamedTuple, Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.db.session import session_settings, storage_operation
from backend.app.models.user import User

logger = logging.getLogger(__name__)


class LockoutState(NamedTuple):
    attempts: int
    locked: bool


@storage_operation
async def record_failure(db: AsyncSession, user_id: str, *, threshold: Optional[int] = None) -> LockoutState:
    threshold = threshold or session_settings(db).LOCKOUT_THRESHOLD
    # Column references on the right-hand side see the pre-update value,
    # so "+ 1" here is the count being written
    new_count = User.failed_login_attempts + 1
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            failed_login_attempts=new_count,
            last_failed_login=utcnow(),
            account_locked=case((new_count >= threshold, True), else_=User.account_locked),
        )
        .returning(User.failed_login_attempts, User.account_locked)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        return LockoutState(attempts=0, locked=False)

    state = LockoutState(attempts=row[0], locked=bool(row[1]))
    if state.locked:
        logger.warning("Account %s locked after %d failed attempts", user_id, state.attempts)
    return state


@storage_operation
async def record_success(db: AsyncSession, user_id: str) -> None:
    """Reset the counter, clear the lock and stamp last_login."""
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            failed_login_attempts=0,
            account_locked=False,
            last_failed_login=None,
            last_login=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )


@storage_operation
async def is_locked(db: AsyncSession, user_id: str) -> bool:
    result = await db.execute(select(User.account_locked).where(User.id == user_id))
    return bool(result.scalar())
