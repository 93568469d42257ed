import pytest

from backend.app.core.exceptions import ConflictError
from backend.app.services import users
from conftest import ALICE_EMAIL, ALICE_USERNAME, Credentials, register_user


async def test_lookup_by_identifier(database, registered_alice):
    async with database.session() as db:
        by_email = await users.get_by_identifier(db, "Alice@Example.com")
        by_username = await users.get_by_identifier(db, ALICE_USERNAME)
        missing = await users.get_by_identifier(db, "Alice")

    assert by_email.id == by_username.id == registered_alice.id
    # Usernames are case-sensitive
    assert missing is None


async def test_existence_checks(database, registered_alice):
    async with database.session() as db:
        assert await users.email_exists(db, " ALICE@example.com ")
        assert not await users.email_exists(db, "bob@example.com")
        assert await users.username_exists(db, ALICE_USERNAME)
        assert not await users.username_exists(db, "bob")


async def test_duplicate_username_conflict(database, registered_alice, alice_credentials):
    with pytest.raises(ConflictError) as exc_info:
        async with database.transaction() as db:
            await users.create(
                db,
                email="other@example.com",
                username=ALICE_USERNAME,
                srp_salt=alice_credentials.salt,
                srp_verifier=alice_credentials.verifier,
                vault_key_encrypted="v",
                public_key="p",
                private_key_encrypted="k",
            )
    assert exc_info.value.message == "Username already exists"


async def test_key_updates(database, registered_alice):
    async with database.transaction() as db:
        await users.update_vault_key(db, registered_alice.id, "new-vault-key")
        await users.update_keys(db, registered_alice.id, public_key="pub", private_key_encrypted="priv")
        await users.update_last_login(db, registered_alice.id)

    async with database.session() as db:
        user = await users.get_by_id(db, registered_alice.id)
    assert user.vault_key_encrypted == "new-vault-key"
    assert user.public_key == "pub"
    assert user.private_key_encrypted == "priv"
    assert user.last_login is not None


async def test_update_srp_verifier_reports_missing_user(database, alice_credentials):
    async with database.transaction() as db:
        updated = await users.update_srp_verifier(
            db, "missing", srp_salt=alice_credentials.salt, srp_verifier=alice_credentials.verifier
        )
    assert updated is False


async def test_search_and_count(database, auth_service, registered_alice, alice_credentials):
    await register_user(
        auth_service,
        Credentials("bob@example.com", "bobby", "irrelevant", alice_credentials.salt, alice_credentials.verifier),
    )

    async with database.session() as db:
        assert await users.count(db) == 2
        assert [u.email for u in await users.search(db, "BOB")] == ["bob@example.com"]
        assert {u.email for u in await users.search(db, "example")} == {ALICE_EMAIL, "bob@example.com"}
        assert len(await users.search(db, "example", limit=1)) == 1


async def test_delete_user(database, registered_alice):
    async with database.transaction() as db:
        removed = await users.delete_user(db, registered_alice.id)
    assert removed.email == ALICE_EMAIL

    async with database.transaction() as db:
        assert await users.delete_user(db, registered_alice.id) is None
