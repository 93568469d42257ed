# backend/app/services/auth.py
"""
Authentication orchestration.

Composes the stores and the SRP protocol into the public operations:
check availability, register (init/complete), login (init/verify), plus
password change, account deletion and the two maintenance sweeps.

Rules that hold for every operation:
- The server never receives a password; registration takes a client-derived
  salt and verifier.
- Wrong identifier, wrong proof and missing/expired session all raise the
  same UnauthorizedError.
- Every outcome writes its audit entry before the error reaches the caller.
  Audit writes are soft: a failed write is logged and never masks the
  primary result.
- An SRP session is single-use: login_verify deletes it whatever the outcome.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.app.core.config import Settings, get_settings
from backend.app.core.exceptions import (
    AccountLockedError,
    ConflictError,
    TransientError,
    UnauthorizedError,
    ValidationFailure,
)
from backend.app.core.logging import SECURITY_LOGGER_NAME, log_security_event
from backend.app.db.session import Database
from backend.app.models.security_log import SecurityAction
from backend.app.models.user import User
from backend.app.security import crypto, srp
from backend.app.services import audit_log, lockout, srp_sessions, users

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

AUTH_KEY_CONTEXT = "zerolock-auth"


@dataclass(frozen=True)
class ClientContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class LoginChallenge:
    session_id: str
    server_public_key: str
    salt: str


@dataclass(frozen=True)
class LoginResult:
    user: User
    server_proof: str
    # SRP session key K; in-process use only
    shared_key: bytes = field(repr=False)
    key_iterations: int = field(repr=False, default=crypto.DEFAULT_KDF_ITERATIONS)

    async def derive_auth_key(self) -> str:
        """
        Auth sub-key for in-process token issuance, derived from K on demand.

        PBKDF2 runs in a worker thread so the event loop keeps serving.
        """
        key = await asyncio.to_thread(
            crypto.derive_key, self.shared_key, AUTH_KEY_CONTEXT, iterations=self.key_iterations
        )
        return key.hex()


_NO_CLIENT = ClientContext()


class AuthService:
    def __init__(self, database: Database, settings: Optional[Settings] = None):
        self.database = database
        self.settings = settings or get_settings()

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.SRP_SESSION_TTL_MINUTES)

    # ─────────────────────────────────────────────────────────────────────
    # Availability
    # ─────────────────────────────────────────────────────────────────────

    async def check_availability(
        self, email: Optional[str] = None, username: Optional[str] = None
    ) -> Dict[str, Optional[Dict[str, Any]]]:
        """Read-only existence lookups. Not audited."""
        result: Dict[str, Optional[Dict[str, Any]]] = {"email": None, "username": None}
        async with self.database.session() as db:
            if email:
                result["email"] = {
                    "available": not await users.email_exists(db, email),
                    "value": email,
                }
            if username:
                result["username"] = {
                    "available": not await users.username_exists(db, username),
                    "value": username,
                }
        return result

    # ─────────────────────────────────────────────────────────────────────
    # Registration
    # ─────────────────────────────────────────────────────────────────────

    async def register_init(self, email: str, username: str, client: ClientContext = _NO_CLIENT) -> str:
        """
        Reject taken identifiers and hand out an opaque registration token.

        The token is advisory and stateless: register_complete does not
        require it and re-checks both identifiers inside its own transaction.
        """
        email = users.normalize_email(email)
        async with self.database.session() as db:
            email_taken = await users.email_exists(db, email)
            username_taken = not email_taken and await users.username_exists(db, username)

        if email_taken or username_taken:
            field = "email" if email_taken else "username"
            await self._audit(
                None, SecurityAction.USER_REGISTRATION_INIT, False, client,
                {"reason": "conflict", "field": field},
            )
            raise ConflictError(f"{field.capitalize()} already exists", details={"field": field})

        token = crypto.generate_secure_token()
        await self._audit(
            None, SecurityAction.USER_REGISTRATION_INIT, True, client,
            {"email": email, "username": username},
        )
        return token

    async def register_complete(
        self,
        *,
        email: str,
        username: str,
        srp_salt: str,
        srp_verifier: str,
        vault_key_encrypted: str,
        public_key: str,
        private_key_encrypted: str,
        client: ClientContext = _NO_CLIENT,
    ) -> User:
        email = users.normalize_email(email)

        if not srp.validate_params(srp_salt, srp_verifier):
            await self._audit(
                None, SecurityAction.USER_CREATED, False, client,
                {"reason": "invalid_srp_parameters", "email": email},
            )
            raise ValidationFailure("Invalid SRP parameters")

        try:
            async with self.database.transaction() as db:
                if await users.email_exists(db, email):
                    raise ConflictError("Email already exists", details={"field": "email"})
                if await users.username_exists(db, username):
                    raise ConflictError("Username already exists", details={"field": "username"})
                # A racing registration still trips the unique constraints here
                user = await users.create(
                    db,
                    email=email,
                    username=username,
                    srp_salt=srp_salt,
                    srp_verifier=srp_verifier,
                    vault_key_encrypted=vault_key_encrypted,
                    public_key=public_key,
                    private_key_encrypted=private_key_encrypted,
                )
        except ConflictError as exc:
            await self._audit(
                None, SecurityAction.USER_CREATED, False, client,
                {"reason": "conflict", "field": exc.details.get("field")},
            )
            raise

        await self._audit(
            user.id, SecurityAction.USER_CREATED, True, client,
            {"email": user.email, "username": user.username},
        )
        log_security_event(security_logger, "User created", user_id=user.id)
        return user

    # ─────────────────────────────────────────────────────────────────────
    # Login
    # ─────────────────────────────────────────────────────────────────────

    async def login_init(self, identifier: str, client: ClientContext = _NO_CLIENT) -> LoginChallenge:
        """
        First round trip: resolve the identifier, refuse locked accounts,
        and open a fresh SRP session (superseding any previous one).
        """
        srp_session = None
        ephemeral = None
        async with self.database.transaction() as db:
            user = await users.get_by_identifier(db, identifier.strip())
            if user is not None and not user.account_locked:
                ephemeral = srp.begin_authentication(user.email, user.srp_salt, user.srp_verifier)
                srp_session = await srp_sessions.create(
                    db, user.id, ephemeral.secret, ttl=self.session_ttl
                )

        if user is None:
            await self._audit(
                None, SecurityAction.LOGIN_FAILED, False, client,
                {"stage": "init", "reason": "unknown_identifier"},
            )
            raise UnauthorizedError(details={"reason": "unknown_identifier"})

        if user.account_locked:
            await self._audit(
                user.id, SecurityAction.LOGIN_FAILED, False, client,
                {"stage": "init", "reason": "account_locked"},
            )
            raise AccountLockedError()

        await self._audit(user.id, SecurityAction.LOGIN_ATTEMPT, True, client, {"stage": "init"})
        return LoginChallenge(
            session_id=srp_session.id,
            server_public_key=ephemeral.public,
            salt=user.srp_salt,
        )

    async def login_verify(
        self,
        session_id: str,
        client_public_key: str,
        client_proof: str,
        client: ClientContext = _NO_CLIENT,
    ) -> LoginResult:
        """
        Second round trip: check the client proof against the stored session.

        The session is consumed before the outcome is known. A failed proof
        increments the lockout counter; a verified one resets it.
        """
        user = None
        session_user_id = None
        server_secret = None
        verification = srp.FAILED_VERIFICATION
        lock_state = None

        async with self.database.transaction() as db:
            srp_session = await srp_sessions.find(db, session_id)
            if srp_session is not None:
                session_user_id, server_secret = srp_session.user_id, srp_session.srp_b
                # Only the caller whose delete removed the row may go on to verify
                if await srp_sessions.consume(db, srp_session.id):
                    user = await users.get_by_id(db, session_user_id)

            if user is not None and not user.account_locked:
                verification = srp.verify_client_proof(
                    client_public_key,
                    client_proof,
                    server_secret,
                    user.srp_verifier,
                    user.srp_salt,
                    user.email,
                )
                if verification.verified:
                    await lockout.record_success(db, user.id)
                    await db.refresh(user)
                else:
                    lock_state = await lockout.record_failure(
                        db, user.id, threshold=self.settings.LOCKOUT_THRESHOLD
                    )

        if user is None:
            await self._audit(
                session_user_id,
                SecurityAction.LOGIN_FAILED, False, client,
                {"stage": "verify", "reason": "invalid_session"},
            )
            raise UnauthorizedError(details={"reason": "invalid_session"})

        if user.account_locked and lock_state is None:
            await self._audit(
                user.id, SecurityAction.LOGIN_FAILED, False, client,
                {"stage": "verify", "reason": "account_locked"},
            )
            raise AccountLockedError()

        if not verification.verified:
            await self._audit(
                user.id, SecurityAction.LOGIN_FAILED, False, client,
                {
                    "stage": "verify",
                    "reason": "invalid_proof",
                    "attempts": lock_state.attempts,
                    "locked": lock_state.locked,
                },
            )
            if lock_state.locked:
                await self._audit(
                    user.id, SecurityAction.ACCOUNT_LOCKED, True, client,
                    {"reason": "too_many_failed_logins", "attempts": lock_state.attempts},
                )
                log_security_event(
                    security_logger, "Account locked",
                    user_id=user.id, attempts=lock_state.attempts, ip=client.ip_address,
                )
            raise UnauthorizedError(details={"reason": "invalid_proof"})

        await self._audit(user.id, SecurityAction.LOGIN_SUCCESS, True, client)
        return LoginResult(
            user=user,
            server_proof=verification.server_proof,
            shared_key=verification.shared_key,
            key_iterations=self.settings.KEY_DERIVATION_ITERATIONS,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Account maintenance (caller already authenticated the principal)
    # ─────────────────────────────────────────────────────────────────────

    async def change_password(
        self, user_id: str, srp_salt: str, srp_verifier: str, client: ClientContext = _NO_CLIENT
    ) -> None:
        """Replace salt and verifier together and drop any in-flight handshake."""
        if not srp.validate_params(srp_salt, srp_verifier):
            await self._audit(
                user_id, SecurityAction.PASSWORD_CHANGED, False, client,
                {"reason": "invalid_srp_parameters"},
            )
            raise ValidationFailure("Invalid SRP parameters")

        async with self.database.transaction() as db:
            updated = await users.update_srp_verifier(
                db, user_id, srp_salt=srp_salt, srp_verifier=srp_verifier
            )
            if updated:
                await srp_sessions.delete_by_user_id(db, user_id)

        if not updated:
            await self._audit(
                user_id, SecurityAction.PASSWORD_CHANGED, False, client, {"reason": "unknown_user"}
            )
            raise UnauthorizedError(details={"reason": "unknown_user"})

        await self._audit(user_id, SecurityAction.PASSWORD_CHANGED, True, client)
        log_security_event(security_logger, "SRP verifier updated", user_id=user_id)

    async def delete_account(self, user_id: str, client: ClientContext = _NO_CLIENT) -> None:
        async with self.database.transaction() as db:
            await srp_sessions.delete_by_user_id(db, user_id)
            removed = await users.delete_user(db, user_id)

        if removed is None:
            await self._audit(
                user_id, SecurityAction.ACCOUNT_DELETED, False, client, {"reason": "unknown_user"}
            )
            raise UnauthorizedError(details={"reason": "unknown_user"})

        await self._audit(
            user_id, SecurityAction.ACCOUNT_DELETED, True, client,
            {"email": removed.email, "username": removed.username},
        )
        log_security_event(security_logger, "Account deleted", user_id=user_id)

    # ─────────────────────────────────────────────────────────────────────
    # Background maintenance
    # ─────────────────────────────────────────────────────────────────────

    async def sweep_expired_sessions(self) -> int:
        async with self.database.transaction() as db:
            removed = await srp_sessions.sweep_expired(db)
        if removed:
            logger.info("Swept %d expired SRP session(s)", removed)
        return removed

    async def prune_audit_log(self, retention_days: Optional[int] = None) -> int:
        async with self.database.transaction() as db:
            return await audit_log.prune(db, retention_days or self.settings.AUDIT_RETENTION_DAYS)

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    async def _audit(
        self,
        user_id: Optional[str],
        action: SecurityAction,
        success: bool,
        client: ClientContext,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            async with self.database.transaction() as db:
                await audit_log.record(
                    db,
                    user_id=user_id,
                    action=action,
                    success=success,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                    details=details,
                )
        except (TransientError, SQLAlchemyError) as exc:
            logger.error(
                "Failed to write security log entry %s: %s", action.value, exc.__class__.__name__
            )
