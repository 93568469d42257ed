# backend/app/security/srp.py
"""
SRP-6a orchestration on top of pysrp.

This module handles:
- Format checks on client-submitted salt/verifier (registration gate)
- Server ephemeral generation for login/init
- Client proof verification and shared key derivation for login/verify

Group and hash are fixed (2048-bit RFC 5054 group, SHA-256) and must match
the client. The identity is the case-folded email address.

The modular arithmetic itself lives in pysrp; nothing here reimplements it.
"""
import logging
import re
from typing import NamedTuple, Optional, Tuple

import srp as pysrp

from backend.app.security.crypto import random_hex, secure_compare

logger = logging.getLogger(__name__)

HASH_ALG = pysrp.SHA256
NG_TYPE = pysrp.NG_2048

SALT_HEX_LENGTH = 64
VERIFIER_MIN_HEX_LENGTH = 256
VERIFIER_MAX_HEX_LENGTH = 1024

# Verifier only accepts an explicit server secret of exactly 32 bytes (srp < 1.0.22)
SERVER_SECRET_BYTES = 32

_SALT_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class ServerEphemeral(NamedTuple):
    public: str  # B, hex; sent to the client
    secret: str  # b, hex; kept in srp_sessions only


class ProofVerification(NamedTuple):
    verified: bool
    server_proof: Optional[str] = None  # H(A, M, K), hex
    shared_key: Optional[bytes] = None  # K


FAILED_VERIFICATION = ProofVerification(verified=False)


def normalize_identity(identity: str) -> bytes:
    return identity.strip().lower().encode("utf-8")


def _hex_to_bytes(value: str) -> bytes:
    if len(value) % 2:
        value = "0" + value
    return bytes.fromhex(value)


def validate_salt_format(salt: object) -> bool:
    """Exactly 64 hex characters, either case."""
    return isinstance(salt, str) and bool(_SALT_RE.match(salt))


def validate_verifier_format(verifier: object) -> bool:
    """Hex, between 256 and 1024 characters inclusive."""
    if not isinstance(verifier, str):
        return False
    if not VERIFIER_MIN_HEX_LENGTH <= len(verifier) <= VERIFIER_MAX_HEX_LENGTH:
        return False
    return bool(_HEX_RE.match(verifier))


def validate_params(salt: object, verifier: object) -> bool:
    """
    Sole gate before trusting client-submitted SRP material.

    Fails closed: anything that is not a well-formed salt and verifier
    returns False.
    """
    return validate_salt_format(salt) and validate_verifier_format(verifier)


def derive_registration_params(identity: str, password: str) -> Tuple[str, str]:
    """
    Compute (salt, verifier) for an identity and password.

    Client-side helper. The service never calls this with a user's password;
    registration accepts only the values it produces.

    Returns:
        (salt, verifier) as lowercase hex; salt is always 64 characters
    """
    salt_bytes, verifier_bytes = pysrp.create_salted_verification_key(
        normalize_identity(identity),
        password.encode("utf-8"),
        hash_alg=HASH_ALG,
        ng_type=NG_TYPE,
        salt_len=SALT_HEX_LENGTH // 2,
    )
    # pysrp treats the salt as an integer, so left zero padding is harmless
    salt = salt_bytes.hex().rjust(SALT_HEX_LENGTH, "0")
    return salt, verifier_bytes.hex()


def begin_authentication(identity: str, salt: str, verifier: str) -> ServerEphemeral:
    """
    Generate a fresh server ephemeral pair bound to the verifier.

    B = k*v + g^b depends only on the verifier and b, so the challenge is
    computed before the client's A is known by handing pysrp the generator
    as a stand-in A.
    """
    secret = random_hex(SERVER_SECRET_BYTES)
    verifier_obj = pysrp.Verifier(
        normalize_identity(identity),
        _hex_to_bytes(salt),
        _hex_to_bytes(verifier),
        b"\x02",
        hash_alg=HASH_ALG,
        ng_type=NG_TYPE,
        bytes_b=bytes.fromhex(secret),
    )
    _, public = verifier_obj.get_challenge()
    return ServerEphemeral(public=public.hex(), secret=secret)


def verify_client_proof(
    client_public_ephemeral: str,
    client_proof: str,
    server_secret_ephemeral: str,
    verifier: str,
    salt: str,
    identity: str,
) -> ProofVerification:
    """
    Derive the session key from both ephemerals and check the client proof.

    The expected proof is compared with secure_compare. Any error while
    deriving (malformed hex, A % N == 0, ...) is reported as a plain
    verification failure, never as a distinct error.
    """
    try:
        verifier_obj = pysrp.Verifier(
            normalize_identity(identity),
            _hex_to_bytes(salt),
            _hex_to_bytes(verifier),
            _hex_to_bytes(client_public_ephemeral),
            hash_alg=HASH_ALG,
            ng_type=NG_TYPE,
            bytes_b=bytes.fromhex(server_secret_ephemeral),
        )
        # get_challenge() yields (None, None) when the SRP-6a safety check fails
        _, public = verifier_obj.get_challenge()
        if public is None:
            return FAILED_VERIFICATION

        proof_bytes = _hex_to_bytes(client_proof)
        # verify_session derives M before its own check; the decision is the constant-time compare
        server_proof = verifier_obj.verify_session(proof_bytes)
        expected_proof = getattr(verifier_obj, "M", None)
        if expected_proof is None or not secure_compare(expected_proof.hex(), proof_bytes.hex()):
            return FAILED_VERIFICATION

        shared_key = verifier_obj.get_session_key()
        if server_proof is None or shared_key is None:
            return FAILED_VERIFICATION
    except Exception as exc:
        # Every derivation error maps to the same plain failure
        logger.debug("SRP proof derivation failed: %s", exc.__class__.__name__)
        return FAILED_VERIFICATION

    return ProofVerification(verified=True, server_proof=server_proof.hex(), shared_key=shared_key)
