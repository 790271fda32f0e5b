"""Base model and mixins for all SQLAlchemy models.

Provides:
- Base: Declarative base class for all models
- AuditMixin: string primary key plus created/updated timestamps

Ids are generated by the domain layer (``RES-...``, ``PLAN-...``) so that a
record keeps the same id in memory and in the database.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all rental models."""
    pass


class AuditMixin:
    """Mixin providing the primary key and standard audit columns.

    Adds:
    - id: string primary key assigned by the caller
    - created_at: Timestamp set on insert
    - updated_at: Timestamp updated on every change
    """

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
