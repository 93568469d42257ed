import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from functools import lru_cache
from typing import NamedTuple, Tuple

import pytest
import srp as pysrp
from httpx import ASGITransport, AsyncClient

from backend.app.core.config import Settings
from backend.app.db.session import Database
from backend.app.main import create_app
from backend.app.security import crypto
from backend.app.security.srp import HASH_ALG, NG_TYPE, derive_registration_params, normalize_identity
from backend.app.services.auth import AuthService

ALICE_EMAIL = "alice@example.com"
ALICE_USERNAME = "alice"
ALICE_PASSWORD = "Correct-Horse-Battery-9!"


class Credentials(NamedTuple):
    email: str
    username: str
    password: str
    salt: str
    verifier: str


@lru_cache(maxsize=1)
def cached_key_pair() -> Tuple[str, str]:
    return crypto.generate_key_pair()


class ClientHandshake(NamedTuple):
    client: pysrp.User
    public_key: str
    proof: str


@pytest.fixture(scope="session")
def alice_credentials() -> Credentials:
    salt, verifier = derive_registration_params(ALICE_EMAIL, ALICE_PASSWORD)
    return Credentials(ALICE_EMAIL, ALICE_USERNAME, ALICE_PASSWORD, salt, verifier)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        SCHEDULER_ENABLED=False,
        KEY_DERIVATION_ITERATIONS=1000,
        CORS_ORIGINS="",
    )


@pytest.fixture
async def database(test_settings):
    db = Database.from_settings(test_settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def auth_service(database, test_settings) -> AuthService:
    return AuthService(database, test_settings)


@pytest.fixture
async def client(database, test_settings):
    app = create_app(database=database, settings=test_settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def registered_alice(auth_service, alice_credentials):
    return await register_user(auth_service, alice_credentials)


async def register_user(auth_service: AuthService, creds: Credentials):
    public_key, private_key = cached_key_pair()
    # Stands in for the client wrapping its private key under a password-derived key
    wrapped = crypto.aead_encrypt(private_key, crypto.derive_key(creds.password, "vault", iterations=1000))
    return await auth_service.register_complete(
        email=creds.email,
        username=creds.username,
        srp_salt=creds.salt,
        srp_verifier=creds.verifier,
        vault_key_encrypted=crypto.random_hex(48),
        public_key=public_key,
        private_key_encrypted=(wrapped.iv + wrapped.tag + wrapped.ciphertext).hex(),
    )


def client_handshake(identity: str, password: str, salt: str, server_public_key: str) -> ClientHandshake:
    """Run the client half of SRP-6a against a login/init challenge."""
    usr = pysrp.User(
        normalize_identity(identity),
        password.encode("utf-8"),
        hash_alg=HASH_ALG,
        ng_type=NG_TYPE,
    )
    _, a_public = usr.start_authentication()
    proof = usr.process_challenge(bytes.fromhex(salt), bytes.fromhex(server_public_key))
    assert proof is not None
    return ClientHandshake(client=usr, public_key=a_public.hex(), proof=proof.hex())
