"""Declarative base for billing models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all billing SQLAlchemy models."""

    pass
