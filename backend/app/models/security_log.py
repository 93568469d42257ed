# backend/app/models/security_log.py
"""
Append-only security audit trail.

Rows are written once and never updated. The retention sweep removes old
rows except for the protected actions listed below.
"""
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from backend.app.core.clock import utcnow
from backend.app.db.base import Base


class SecurityAction(str, Enum):
    # auth
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"

    # account management
    USER_REGISTRATION_INIT = "user_registration_init"
    USER_CREATED = "user_created"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    ACCOUNT_DELETED = "account_deleted"
    PASSWORD_CHANGED = "password_changed"

    # vault operations
    VAULT_ACCESSED = "vault_accessed"
    VAULT_KEY_UPDATED = "vault_key_updated"
    VAULT_ITEM_CREATED = "vault_item_created"
    VAULT_ITEM_DELETED = "vault_item_deleted"
    VAULT_ITEM_SHARED = "vault_item_shared"

    # security events
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_TOKEN = "invalid_token"
    BREACH_CHECK = "breach_check"


# Kept forever by the retention sweep
PROTECTED_ACTIONS = frozenset({
    SecurityAction.ACCOUNT_LOCKED,
    SecurityAction.PASSWORD_CHANGED,
    SecurityAction.ACCOUNT_DELETED,
    SecurityAction.SUSPICIOUS_ACTIVITY,
})

# Surfaced in the operator review feed together with every failed event
SUSPICIOUS_ACTIONS = frozenset({
    SecurityAction.SUSPICIOUS_ACTIVITY,
    SecurityAction.ACCOUNT_LOCKED,
    SecurityAction.RATE_LIMIT_EXCEEDED,
})


class SecurityLog(Base):
    __tablename__ = "security_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Not a foreign key: entries outlive deleted accounts, and some events
    # are written before the identifier resolves to a user
    user_id = Column(String(36), index=True, nullable=True)

    action = Column(String(50), index=True, nullable=False)
    success = Column(Boolean, nullable=False)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True, nullable=False)
