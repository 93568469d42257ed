# backend/app/security/crypto.py
"""
Stateless cryptographic primitives.

This module handles:
- Random salts, tokens and identifiers
- Constant-time comparison for every credential/proof check
- Sub-key derivation from the SRP shared secret
- AES-256-GCM authenticated encryption
- RSA key pairs for out-of-band key exchange

Any failure here is fatal for the calling request and is never retried.
"""
import hashlib
import hmac
import os
import secrets
import uuid
from typing import NamedTuple, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from backend.app.core.exceptions import CryptoError

BytesLike = Union[str, bytes]

# AES-GCM nonce and tag sizes in bytes
IV_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32

DEFAULT_KDF_ITERATIONS = 100_000


class AeadPayload(NamedTuple):
    ciphertext: bytes
    iv: bytes
    tag: bytes


def _to_bytes(value: BytesLike) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def random_hex(n: int) -> str:
    """
    Generate n cryptographically random bytes.

    Returns:
        Lowercase hex string of length 2 * n
    """
    try:
        return secrets.token_hex(n)
    except OSError as exc:
        raise CryptoError("Entropy source unavailable") from exc


def generate_secure_token(n: int = 32) -> str:
    """URL-safe random token of n bytes (registration tokens)."""
    try:
        return secrets.token_urlsafe(n)
    except OSError as exc:
        raise CryptoError("Entropy source unavailable") from exc


def generate_session_id() -> str:
    return str(uuid.uuid4())


def secure_compare(a: BytesLike, b: BytesLike) -> bool:
    """
    Compare two values in constant time to prevent timing attacks.

    Args:
        a: Expected value
        b: Provided value

    Returns:
        True if the values are byte-equal, False otherwise (including
        different lengths). Never raises for str/bytes input.
    """
    a_bytes = _to_bytes(a)
    b_bytes = _to_bytes(b)
    if len(a_bytes) != len(b_bytes):
        # Still do a comparison so both branches cost about the same
        secrets.compare_digest(a_bytes, a_bytes)
        return False
    return secrets.compare_digest(a_bytes, b_bytes)


def sha256_hex(data: BytesLike) -> str:
    return hashlib.sha256(_to_bytes(data)).hexdigest()


def hmac_sha256(key: BytesLike, message: BytesLike) -> str:
    return hmac.new(_to_bytes(key), _to_bytes(message), hashlib.sha256).hexdigest()


def derive_key(
    secret: BytesLike,
    context: str,
    iterations: int = DEFAULT_KDF_ITERATIONS,
    length: int = KEY_SIZE,
) -> bytes:
    """
    Derive a deterministic key from a secret and a domain-separation context.

    PBKDF2-HMAC-SHA256 with the context as salt, so the same shared secret
    yields independent keys for independent purposes ("vault", "auth", ...).
    """
    if not context:
        raise CryptoError("Key derivation context is required")
    if iterations < 1 or length < 1:
        raise CryptoError("Invalid key derivation parameters")
    return hashlib.pbkdf2_hmac(
        "sha256", _to_bytes(secret), context.encode("utf-8"), iterations, length
    )


def aead_encrypt(plaintext: BytesLike, key: bytes, aad: bytes = b"") -> AeadPayload:
    """Encrypt with AES-256-GCM under a fresh 12-byte nonce."""
    if len(key) != KEY_SIZE:
        raise CryptoError("Key must be 32 bytes for AES-256")

    iv = os.urandom(IV_SIZE)
    sealed = AESGCM(key).encrypt(iv, _to_bytes(plaintext), aad)
    # cryptography appends the tag to the ciphertext
    return AeadPayload(ciphertext=sealed[:-TAG_SIZE], iv=iv, tag=sealed[-TAG_SIZE:])


def aead_decrypt(ciphertext: bytes, key: bytes, iv: bytes, tag: bytes, aad: bytes = b"") -> bytes:
    """
    Decrypt and authenticate. Raises CryptoError when the tag does not
    verify; never returns unauthenticated plaintext.
    """
    if len(key) != KEY_SIZE:
        raise CryptoError("Key must be 32 bytes for AES-256")
    if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
        raise CryptoError("Invalid nonce or tag length")

    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, aad)
    except InvalidTag as exc:
        raise CryptoError("Authentication failed - data may be corrupted or tampered with") from exc


def generate_key_pair(key_size: int = 2048) -> Tuple[str, str]:
    """
    Generate an RSA key pair.

    Returns:
        (public_key_pem, private_key_pem) as text
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return public_pem.decode("ascii"), private_pem.decode("ascii")
