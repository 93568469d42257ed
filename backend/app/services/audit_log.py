# backend/app/services/audit_log.py
"""
Security audit log: append-only writes and read-side aggregation.

Entries are immutable; the only deletion path is prune(), which keeps the
protected actions forever.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import delete, func, not_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.db.session import storage_operation
from backend.app.models.security_log import (
    PROTECTED_ACTIONS,
    SUSPICIOUS_ACTIONS,
    SecurityAction,
    SecurityLog,
)

logger = logging.getLogger(__name__)

ActionLike = Union[SecurityAction, str]


def _action_value(action: ActionLike) -> str:
    return action.value if isinstance(action, SecurityAction) else str(action)


@storage_operation
async def record(
    db: AsyncSession,
    *,
    user_id: Optional[str],
    action: ActionLike,
    success: bool,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> SecurityLog:
    entry = SecurityLog(
        user_id=user_id,
        action=_action_value(action),
        success=success,
        ip_address=ip_address,
        user_agent=user_agent,
        details=details or {},
        timestamp=utcnow(),
    )
    db.add(entry)
    await db.flush()
    return entry


@storage_operation
async def count_failed_attempts(
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    window_minutes: int = 15,
) -> int:
    """Failed login events in the rolling window, by user and/or IP."""
    since = utcnow() - timedelta(minutes=window_minutes)
    query = (
        select(func.count(SecurityLog.id))
        .where(SecurityLog.action == SecurityAction.LOGIN_FAILED.value)
        .where(SecurityLog.timestamp >= since)
    )
    if user_id is not None:
        query = query.where(SecurityLog.user_id == user_id)
    if ip_address is not None:
        query = query.where(SecurityLog.ip_address == ip_address)

    result = await db.execute(query)
    return result.scalar() or 0


@storage_operation
async def recent_activity(
    db: AsyncSession, user_id: str, *, days: int = 30, limit: int = 20
) -> Dict[str, Any]:
    """
    Per-user summary over the last `days`.

    Returns:
        {"total", "failed", "by_action": {action: count}, "entries": [newest first]}
    """
    since = utcnow() - timedelta(days=days)
    window = (SecurityLog.user_id == user_id, SecurityLog.timestamp >= since)

    counts = await db.execute(
        select(SecurityLog.action, func.count(SecurityLog.id))
        .where(*window)
        .group_by(SecurityLog.action)
    )
    by_action = {action: n for action, n in counts.all()}

    failed = await db.execute(
        select(func.count(SecurityLog.id)).where(*window, SecurityLog.success.is_(False))
    )

    entries = await db.execute(
        select(SecurityLog)
        .where(*window)
        .order_by(SecurityLog.timestamp.desc(), SecurityLog.id.desc())
        .limit(limit)
    )

    return {
        "total": sum(by_action.values()),
        "failed": failed.scalar() or 0,
        "by_action": by_action,
        "entries": list(entries.scalars().all()),
    }


@storage_operation
async def suspicious_activity(db: AsyncSession, *, hours: int = 24, limit: int = 100) -> List[SecurityLog]:
    """Cross-user operator feed: flagged actions plus every failed event."""
    since = utcnow() - timedelta(hours=hours)
    result = await db.execute(
        select(SecurityLog)
        .where(SecurityLog.timestamp >= since)
        .where(
            or_(
                SecurityLog.action.in_([a.value for a in SUSPICIOUS_ACTIONS]),
                SecurityLog.success.is_(False),
            )
        )
        .order_by(SecurityLog.timestamp.desc(), SecurityLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


@storage_operation
async def prune(db: AsyncSession, retention_days: int) -> int:
    """Delete entries older than the window, except protected actions."""
    cutoff = utcnow() - timedelta(days=retention_days)
    result = await db.execute(
        delete(SecurityLog)
        .where(SecurityLog.timestamp < cutoff)
        .where(not_(SecurityLog.action.in_([a.value for a in PROTECTED_ACTIONS])))
    )
    logger.info("Pruned %d security log entries older than %d days", result.rowcount, retention_days)
    return result.rowcount
