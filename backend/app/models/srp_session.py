# backend/app/models/srp_session.py
"""
ORM model for in-flight SRP handshakes.

One row per user at most (unique user_id). The row carries the server's
secret ephemeral between login/init and login/verify and is deleted as soon
as the handshake is verified, rejected, superseded, or swept after expiry.
"""
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship

from backend.app.core.clock import utcnow
from backend.app.db.base import Base


class SrpSession(Base):
    __tablename__ = "srp_sessions"

    # Opaque bearer for the second round trip
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        index=True,
        nullable=False,
    )

    # Server secret ephemeral b, hex encoded. Never sent to the client.
    srp_b = Column(String(128), nullable=False)

    # Always NULL: the row is consumed before the proof is checked, so K is
    # never persisted
    session_key = Column(String(128), nullable=True)

    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    user = relationship("User", back_populates="srp_session")
