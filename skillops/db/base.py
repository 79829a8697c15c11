"""Declarative base for SkillOps ORM models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SkillOps ORM models.

    Exposes metadata for Alembic and for ``skillops db init``.
    """
