# backend/app/services/users.py
"""
User record storage.

Plain async functions over an injected AsyncSession. The caller owns the
transaction; nothing here commits.
"""
import logging
from typing import List, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.exceptions import ConflictError
from backend.app.db.session import storage_operation
from backend.app.models.user import User

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _conflict_from_integrity_error(exc: IntegrityError) -> ConflictError:
    # SQLite: "UNIQUE constraint failed: users.email"
    # PostgreSQL: "Key (email)=(...) already exists"
    detail = str(exc.orig).lower()
    if "email" in detail:
        return ConflictError("Email already exists", details={"field": "email"})
    if "username" in detail:
        return ConflictError("Username already exists", details={"field": "username"})
    return ConflictError("Account already exists")


@storage_operation
async def create(
    db: AsyncSession,
    *,
    email: str,
    username: str,
    srp_salt: str,
    srp_verifier: str,
    vault_key_encrypted: str,
    public_key: str,
    private_key_encrypted: str,
) -> User:
    """
    Insert a user. Uniqueness is decided by the database constraints, so two
    concurrent registrations for the same email cannot both succeed.
    """
    user = User(
        email=normalize_email(email),
        username=username,
        srp_salt=srp_salt.lower(),
        srp_verifier=srp_verifier.lower(),
        vault_key_encrypted=vault_key_encrypted,
        public_key=public_key,
        private_key_encrypted=private_key_encrypted,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise _conflict_from_integrity_error(exc) from exc
    await db.refresh(user)
    logger.info("User created: %s", user.id)
    return user


@storage_operation
async def get_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalars().first()


@storage_operation
async def get_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalars().first()


@storage_operation
async def get_by_username(db: AsyncSession, username: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.username == username))
    return result.scalars().first()


async def get_by_identifier(db: AsyncSession, identifier: str) -> Optional[User]:
    """An identifier containing '@' is an email, anything else a username."""
    if "@" in identifier:
        return await get_by_email(db, identifier)
    return await get_by_username(db, identifier)


@storage_operation
async def email_exists(db: AsyncSession, email: str) -> bool:
    result = await db.execute(
        select(User.id).where(User.email == normalize_email(email)).limit(1)
    )
    return result.first() is not None


@storage_operation
async def username_exists(db: AsyncSession, username: str) -> bool:
    result = await db.execute(select(User.id).where(User.username == username).limit(1))
    return result.first() is not None


@storage_operation
async def update_last_login(db: AsyncSession, user_id: str) -> None:
    await db.execute(update(User).where(User.id == user_id).values(last_login=utcnow()))


@storage_operation
async def update_vault_key(db: AsyncSession, user_id: str, vault_key_encrypted: str) -> None:
    await db.execute(
        update(User).where(User.id == user_id).values(vault_key_encrypted=vault_key_encrypted)
    )


@storage_operation
async def update_keys(
    db: AsyncSession, user_id: str, *, public_key: str, private_key_encrypted: str
) -> None:
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(public_key=public_key, private_key_encrypted=private_key_encrypted)
    )


@storage_operation
async def update_srp_verifier(db: AsyncSession, user_id: str, *, srp_salt: str, srp_verifier: str) -> bool:
    """Salt and verifier always change together."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(srp_salt=srp_salt.lower(), srp_verifier=srp_verifier.lower())
    )
    return result.rowcount > 0


@storage_operation
async def delete_user(db: AsyncSession, user_id: str) -> Optional[User]:
    """Delete a user and return the removed row, or None if absent."""
    user = await db.get(User, user_id)
    if user is None:
        return None
    await db.execute(delete(User).where(User.id == user_id))
    return user


@storage_operation
async def search(db: AsyncSession, term: str, limit: int = 10) -> List[User]:
    pattern = f"%{term.lower()}%"
    result = await db.execute(
        select(User)
        .where(or_(func.lower(User.email).like(pattern), func.lower(User.username).like(pattern)))
        .order_by(User.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


@storage_operation
async def count(db: AsyncSession) -> int:
    result = await db.execute(select(func.count(User.id)))
    return result.scalar() or 0
