# backend/app/models/user.py
import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from backend.app.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Stored case-folded; uniqueness is enforced by the database
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(50), unique=True, index=True, nullable=False)

    # SRP material derived on the client. The password never reaches us.
    # srp_salt: 64 hex chars (32 bytes); srp_verifier: hex, 256-1024 chars
    srp_salt = Column(String(64), nullable=False)
    srp_verifier = Column(String(1024), nullable=False)

    # Opaque client-side ciphertexts
    vault_key_encrypted = Column(Text, nullable=False)
    public_key = Column(Text, nullable=False)
    private_key_encrypted = Column(Text, nullable=False)

    # Lockout bookkeeping, see services/lockout.py
    failed_login_attempts = Column(Integer, default=0, server_default="0", nullable=False)
    account_locked = Column(Boolean, default=False, server_default="0", nullable=False)
    last_failed_login = Column(DateTime(timezone=True), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now()
    )

    srp_session = relationship(
        "SrpSession",
        back_populates="user",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
