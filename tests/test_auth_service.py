import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update

from backend.app.core.clock import ensure_aware, utcnow
from backend.app.core.exceptions import (
    AccountLockedError,
    ConflictError,
    TransientError,
    UnauthorizedError,
    ValidationFailure,
)
from backend.app.models.security_log import SecurityLog
from backend.app.models.srp_session import SrpSession
from backend.app.models.user import User
from backend.app.security import crypto, srp
from backend.app.services import audit_log, srp_sessions, users
from backend.app.services.auth import AUTH_KEY_CONTEXT, ClientContext, LoginResult
from conftest import ALICE_EMAIL, ALICE_PASSWORD, ALICE_USERNAME, client_handshake

CLIENT = ClientContext(ip_address="203.0.113.7", user_agent="pytest")


async def _actions(database):
    async with database.session() as db:
        result = await db.execute(select(SecurityLog).order_by(SecurityLog.id))
        return [(entry.action, entry.success) for entry in result.scalars().all()]


async def _fetch_user(database, user_id):
    async with database.session() as db:
        return await users.get_by_id(db, user_id)


async def _lock(database, user_id):
    async with database.transaction() as db:
        await db.execute(
            update(User).where(User.id == user_id).values(account_locked=True, failed_login_attempts=4)
        )


async def _failed_login(auth_service, identifier, salt):
    challenge = await auth_service.login_init(identifier, CLIENT)
    handshake = client_handshake(ALICE_EMAIL, "wrong password", salt, challenge.server_public_key)
    with pytest.raises((UnauthorizedError, AccountLockedError)) as exc_info:
        await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT)
    return exc_info.value


# --- Availability ---

async def test_check_availability(auth_service, registered_alice):
    result = await auth_service.check_availability(email="ALICE@example.com", username="bob")
    assert result["email"] == {"available": False, "value": "ALICE@example.com"}
    assert result["username"] == {"available": True, "value": "bob"}


async def test_check_availability_single_field(auth_service):
    result = await auth_service.check_availability(username="alice")
    assert result == {"email": None, "username": {"available": True, "value": "alice"}}


# --- Registration ---

async def test_register_init_returns_token_and_audits(auth_service, database):
    token = await auth_service.register_init(ALICE_EMAIL, ALICE_USERNAME, CLIENT)
    assert len(token) >= 43
    assert await _actions(database) == [("user_registration_init", True)]


async def test_register_init_conflict(auth_service, database, registered_alice):
    with pytest.raises(ConflictError) as exc_info:
        await auth_service.register_init("Alice@Example.com", "someone", CLIENT)
    assert exc_info.value.message == "Email already exists"

    with pytest.raises(ConflictError) as exc_info:
        await auth_service.register_init("other@example.com", ALICE_USERNAME, CLIENT)
    assert exc_info.value.message == "Username already exists"

    assert (await _actions(database))[-2:] == [
        ("user_registration_init", False),
        ("user_registration_init", False),
    ]


async def test_register_complete_persists_user(database, registered_alice, alice_credentials):
    user = await _fetch_user(database, registered_alice.id)
    assert user.email == ALICE_EMAIL
    assert user.srp_salt == alice_credentials.salt
    assert user.srp_verifier == alice_credentials.verifier
    assert user.failed_login_attempts == 0
    assert user.account_locked is False
    assert user.created_at is not None
    assert await _actions(database) == [("user_created", True)]


async def test_register_complete_rejects_malformed_params(auth_service, database, alice_credentials):
    with pytest.raises(ValidationFailure):
        await auth_service.register_complete(
            email=ALICE_EMAIL,
            username=ALICE_USERNAME,
            srp_salt="xyz",
            srp_verifier=alice_credentials.verifier,
            vault_key_encrypted="v",
            public_key="p",
            private_key_encrypted="k",
            client=CLIENT,
        )

    async with database.session() as db:
        assert await users.count(db) == 0
    assert await _actions(database) == [("user_created", False)]


async def test_register_complete_duplicate_email(auth_service, database, registered_alice, alice_credentials):
    with pytest.raises(ConflictError):
        await auth_service.register_complete(
            email="ALICE@example.com",
            username="alice2",
            srp_salt=alice_credentials.salt,
            srp_verifier=alice_credentials.verifier,
            vault_key_encrypted="v",
            public_key="p",
            private_key_encrypted="k",
            client=CLIENT,
        )
    async with database.session() as db:
        assert await users.count(db) == 1
    assert (await _actions(database))[-1] == ("user_created", False)


async def test_register_complete_twice_with_same_material(auth_service, database):
    material = {
        "email": "carol@example.com",
        "username": "carol",
        "srp_salt": "a" * 64,
        "srp_verifier": "b" * 512,
        "vault_key_encrypted": "v",
        "public_key": "p",
        "private_key_encrypted": "k",
    }
    user = await auth_service.register_complete(**material, client=CLIENT)
    assert user.email == "carol@example.com"

    with pytest.raises(ConflictError) as exc_info:
        await auth_service.register_complete(**material, client=CLIENT)
    assert exc_info.value.message == "Email already exists"

    async with database.session() as db:
        assert await users.count(db) == 1
    assert await _actions(database) == [("user_created", True), ("user_created", False)]


async def test_unique_constraint_backs_up_conflict_check(database, registered_alice, alice_credentials):
    # Skips the pre-check, as a concurrent registration would
    with pytest.raises(ConflictError) as exc_info:
        async with database.transaction() as db:
            await users.create(
                db,
                email=ALICE_EMAIL,
                username="alice3",
                srp_salt=alice_credentials.salt,
                srp_verifier=alice_credentials.verifier,
                vault_key_encrypted="v",
                public_key="p",
                private_key_encrypted="k",
            )
    assert exc_info.value.details == {"field": "email"}


# --- Login ---

async def test_login_round_trip(auth_service, database, registered_alice, alice_credentials):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    assert challenge.salt == alice_credentials.salt

    async with database.session() as db:
        session = await srp_sessions.find(db, challenge.session_id)
    expected_expiry = utcnow() + timedelta(minutes=5)
    assert abs(ensure_aware(session.expires_at) - expected_expiry) < timedelta(seconds=5)

    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)
    result = await auth_service.login_verify(
        challenge.session_id, handshake.public_key, handshake.proof, CLIENT
    )

    assert result.user.id == registered_alice.id
    assert result.user.last_login is not None
    handshake.client.verify_session(bytes.fromhex(result.server_proof))
    assert handshake.client.authenticated()

    assert result.shared_key == handshake.client.get_session_key()
    assert "shared_key" not in repr(result)
    expected_key = crypto.derive_key(result.shared_key, AUTH_KEY_CONTEXT, iterations=1000).hex()
    assert await result.derive_auth_key() == expected_key

    async with database.session() as db:
        assert await srp_sessions.find(db, challenge.session_id) is None
    assert await _actions(database) == [
        ("user_created", True),
        ("login_attempt", True),
        ("login_success", True),
    ]


async def test_login_by_email_any_case(auth_service, registered_alice):
    challenge = await auth_service.login_init("Alice@Example.COM", CLIENT)
    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)
    result = await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof)
    assert result.user.username == ALICE_USERNAME


async def test_login_init_unknown_identifier(auth_service, database):
    with pytest.raises(UnauthorizedError) as exc_info:
        await auth_service.login_init("nobody", CLIENT)
    assert exc_info.value.message == "Invalid credentials"
    assert await _actions(database) == [("login_failed", False)]

    async with database.session() as db:
        entry = (await db.execute(select(SecurityLog))).scalars().one()
    assert entry.user_id is None
    assert entry.ip_address == "203.0.113.7"
    assert entry.user_agent == "pytest"


async def test_login_init_locked_account_creates_no_session(auth_service, database, registered_alice):
    await _lock(database, registered_alice.id)

    with pytest.raises(AccountLockedError):
        await auth_service.login_init(ALICE_USERNAME, CLIENT)

    async with database.session() as db:
        assert await srp_sessions.find_by_user_id(db, registered_alice.id) is None
    assert (await _actions(database))[-1] == ("login_failed", False)


async def test_wrong_proof_counts_failure_and_consumes_session(auth_service, database, registered_alice, alice_credentials):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    handshake = client_handshake(ALICE_EMAIL, "wrong password", challenge.salt, challenge.server_public_key)

    with pytest.raises(UnauthorizedError) as exc_info:
        await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT)
    assert exc_info.value.message == "Invalid credentials"

    user = await _fetch_user(database, registered_alice.id)
    assert user.failed_login_attempts == 1
    assert user.account_locked is False

    # Single use: the correct proof for the same session is now rejected
    good = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)
    with pytest.raises(UnauthorizedError):
        await auth_service.login_verify(challenge.session_id, good.public_key, good.proof, CLIENT)

    assert (await _actions(database))[-2:] == [("login_failed", False), ("login_failed", False)]


async def test_unauthorized_reasons_are_indistinguishable(auth_service, registered_alice, alice_credentials):
    with pytest.raises(UnauthorizedError) as unknown:
        await auth_service.login_init("nobody@example.com")
    with pytest.raises(UnauthorizedError) as missing_session:
        await auth_service.login_verify("00000000-0000-4000-8000-000000000000", "ab", "cd")
    bad_proof = await _failed_login(auth_service, ALICE_USERNAME, alice_credentials.salt)

    messages = {unknown.value.message, missing_session.value.message, bad_proof.message}
    assert messages == {"Invalid credentials"}
    assert {unknown.value.status_code, missing_session.value.status_code, bad_proof.status_code} == {401}


async def test_fourth_failure_locks_account(auth_service, database, registered_alice, alice_credentials):
    for _ in range(3):
        error = await _failed_login(auth_service, ALICE_USERNAME, alice_credentials.salt)
        assert isinstance(error, UnauthorizedError)

    error = await _failed_login(auth_service, ALICE_USERNAME, alice_credentials.salt)
    assert isinstance(error, UnauthorizedError)

    user = await _fetch_user(database, registered_alice.id)
    assert user.failed_login_attempts == 4
    assert user.account_locked is True

    actions = await _actions(database)
    assert actions[-2:] == [("login_failed", False), ("account_locked", True)]

    with pytest.raises(AccountLockedError):
        await auth_service.login_init(ALICE_USERNAME, CLIENT)


async def test_success_resets_failure_counter(auth_service, database, registered_alice, alice_credentials):
    for _ in range(2):
        await _failed_login(auth_service, ALICE_USERNAME, alice_credentials.salt)

    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)
    await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT)

    user = await _fetch_user(database, registered_alice.id)
    assert user.failed_login_attempts == 0
    assert user.account_locked is False


async def test_verify_on_account_locked_mid_handshake(auth_service, database, registered_alice, alice_credentials):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    await _lock(database, registered_alice.id)

    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)
    with pytest.raises(AccountLockedError):
        await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT)

    async with database.session() as db:
        assert await srp_sessions.find(db, challenge.session_id) is None


async def test_superseded_session_is_rejected(auth_service, registered_alice, alice_credentials):
    first = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    second = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    assert first.session_id != second.session_id

    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, first.salt, first.server_public_key)
    with pytest.raises(UnauthorizedError):
        await auth_service.login_verify(first.session_id, handshake.public_key, handshake.proof, CLIENT)

    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, second.salt, second.server_public_key)
    result = await auth_service.login_verify(second.session_id, handshake.public_key, handshake.proof, CLIENT)
    assert result.user.id == registered_alice.id


async def test_expired_session_is_rejected(auth_service, database, registered_alice):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    async with database.transaction() as db:
        await db.execute(
            update(SrpSession)
            .where(SrpSession.id == challenge.session_id)
            .values(expires_at=utcnow() - timedelta(seconds=1))
        )

    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)
    with pytest.raises(UnauthorizedError):
        await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT)

    # Expired handshakes do not count toward lockout
    user = await _fetch_user(database, registered_alice.id)
    assert user.failed_login_attempts == 0


async def test_login_attempt_audit_omits_session_id(auth_service, database, registered_alice):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)

    async with database.session() as db:
        entry = (
            await db.execute(select(SecurityLog).where(SecurityLog.action == "login_attempt"))
        ).scalars().one()
    assert entry.details == {"stage": "init"}
    assert challenge.session_id not in str(entry.details)


async def test_concurrent_verify_consumes_session_once(auth_service, database, registered_alice):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)

    outcomes = await asyncio.gather(
        auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT),
        auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT),
        return_exceptions=True,
    )

    assert [type(o) for o in outcomes].count(LoginResult) == 1
    rejected = [o for o in outcomes if isinstance(o, UnauthorizedError)]
    assert len(rejected) == 1
    assert rejected[0].details == {"reason": "invalid_session"}


async def test_verify_stops_when_session_already_consumed(auth_service, database, registered_alice):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    handshake = client_handshake(ALICE_EMAIL, ALICE_PASSWORD, challenge.salt, challenge.server_public_key)

    # Another request deleted the row between find and consume
    with patch.object(srp_sessions, "consume", AsyncMock(return_value=False)):
        with pytest.raises(UnauthorizedError) as exc_info:
            await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT)
    assert exc_info.value.details == {"reason": "invalid_session"}

    user = await _fetch_user(database, registered_alice.id)
    assert user.failed_login_attempts == 0
    assert user.last_login is None


# --- Account maintenance ---

async def test_change_password(auth_service, database, registered_alice):
    pending = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    new_salt, new_verifier = srp.derive_registration_params(ALICE_EMAIL, "a brand new passphrase")

    await auth_service.change_password(registered_alice.id, new_salt, new_verifier, CLIENT)

    async with database.session() as db:
        assert await srp_sessions.find(db, pending.session_id) is None

    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    assert challenge.salt == new_salt
    handshake = client_handshake(ALICE_EMAIL, "a brand new passphrase", challenge.salt, challenge.server_public_key)
    result = await auth_service.login_verify(challenge.session_id, handshake.public_key, handshake.proof, CLIENT)
    assert result.user.id == registered_alice.id
    assert ("password_changed", True) in await _actions(database)


async def test_change_password_validates(auth_service, registered_alice):
    with pytest.raises(ValidationFailure):
        await auth_service.change_password(registered_alice.id, "00" * 32, "short")


async def test_change_password_unknown_user(auth_service, alice_credentials):
    with pytest.raises(UnauthorizedError):
        await auth_service.change_password("missing", alice_credentials.salt, alice_credentials.verifier)


async def test_delete_account(auth_service, database, registered_alice):
    await auth_service.login_init(ALICE_USERNAME, CLIENT)
    await auth_service.delete_account(registered_alice.id, CLIENT)

    async with database.session() as db:
        assert await users.get_by_id(db, registered_alice.id) is None
        assert await srp_sessions.find_by_user_id(db, registered_alice.id) is None

    async with database.session() as db:
        entry = (
            await db.execute(select(SecurityLog).where(SecurityLog.action == "account_deleted"))
        ).scalars().one()
    assert entry.details == {"email": ALICE_EMAIL, "username": ALICE_USERNAME}

    with pytest.raises(UnauthorizedError):
        await auth_service.delete_account(registered_alice.id)


# --- Maintenance sweeps ---

async def test_sweep_expired_sessions(auth_service, database, registered_alice):
    challenge = await auth_service.login_init(ALICE_USERNAME, CLIENT)
    assert await auth_service.sweep_expired_sessions() == 0

    async with database.transaction() as db:
        await db.execute(
            update(SrpSession)
            .where(SrpSession.id == challenge.session_id)
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )
    assert await auth_service.sweep_expired_sessions() == 1


async def test_prune_audit_log(auth_service, database, registered_alice):
    async with database.transaction() as db:
        await db.execute(update(SecurityLog).values(timestamp=utcnow() - timedelta(days=400)))
    assert await auth_service.prune_audit_log() == 1


# --- Audit failures ---

async def test_audit_failure_does_not_mask_primary_error(auth_service, database):
    with patch.object(audit_log, "record", side_effect=TransientError()):
        with pytest.raises(UnauthorizedError):
            await auth_service.login_init("nobody", CLIENT)


async def test_audit_failure_does_not_mask_success(auth_service, registered_alice):
    with patch.object(audit_log, "record", side_effect=TransientError()):
        token = await auth_service.register_init("new@example.com", "newbie", CLIENT)
    assert token
