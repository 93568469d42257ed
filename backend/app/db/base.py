# backend/app/db/base.py
"""
SQLAlchemy declarative base shared by every ORM model.
"""
from sqlalchemy.orm import DeclarativeBase


# ─────────────────────────────────────────────────────────────────────────────
# Declarative Base for ORM Models
# All models inherit from this class
# ─────────────────────────────────────────────────────────────────────────────
class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Usage:
        class User(Base):
            __tablename__ = "users"
            id = Column(String(36), primary_key=True)
            ...
    """
    pass


__all__ = ["Base"]
