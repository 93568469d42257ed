# backend/app/services/srp_sessions.py
"""
Storage for in-flight SRP handshakes.

Per user: NoSession -> Pending (create) -> Consumed (consume) | Expired.

- create() deletes any prior session of the user and inserts the new one in
  the caller's transaction, so at most one row per user ever commits (the
  unique user_id column backs this up against concurrent writers).
- find() treats an expired row exactly like a missing one.
- Storage failures propagate; a half-created session would break the
  single-session rule.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.db.session import session_settings, storage_operation
from backend.app.models.srp_session import SrpSession

logger = logging.getLogger(__name__)


def session_ttl(db: AsyncSession) -> timedelta:
    return timedelta(minutes=session_settings(db).SRP_SESSION_TTL_MINUTES)


@storage_operation
async def create(
    db: AsyncSession,
    user_id: str,
    srp_b: str,
    *,
    now: Optional[datetime] = None,
    ttl: Optional[timedelta] = None,
) -> SrpSession:
    now = now or utcnow()
    superseded = await db.execute(delete(SrpSession).where(SrpSession.user_id == user_id))
    if superseded.rowcount:
        logger.info("Superseded %d SRP session(s) for user %s", superseded.rowcount, user_id)

    session = SrpSession(
        user_id=user_id,
        srp_b=srp_b,
        created_at=now,
        expires_at=now + (ttl or session_ttl(db)),
    )
    db.add(session)
    await db.flush()
    logger.debug("SRP session created: %s", session.id)
    return session


@storage_operation
async def find(db: AsyncSession, session_id: str, *, now: Optional[datetime] = None) -> Optional[SrpSession]:
    """Return the session only while expires_at is in the future."""
    now = now or utcnow()
    result = await db.execute(
        select(SrpSession).where(SrpSession.id == session_id, SrpSession.expires_at > now)
    )
    return result.scalars().first()


@storage_operation
async def find_by_user_id(
    db: AsyncSession, user_id: str, *, now: Optional[datetime] = None
) -> Optional[SrpSession]:
    now = now or utcnow()
    result = await db.execute(
        select(SrpSession).where(SrpSession.user_id == user_id, SrpSession.expires_at > now)
    )
    return result.scalars().first()


@storage_operation
async def consume(db: AsyncSession, session_id: str) -> bool:
    """Delete a session. Returns False when it was already gone."""
    result = await db.execute(delete(SrpSession).where(SrpSession.id == session_id))
    return result.rowcount > 0


@storage_operation
async def delete_by_user_id(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(delete(SrpSession).where(SrpSession.user_id == user_id))
    return result.rowcount


@storage_operation
async def sweep_expired(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(delete(SrpSession).where(SrpSession.expires_at <= now))
    return result.rowcount


@storage_operation
async def active_count(db: AsyncSession, *, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(select(func.count(SrpSession.id)).where(SrpSession.expires_at > now))
    return result.scalar() or 0
