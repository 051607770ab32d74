# --- START OF FILE: src/signalrelay/infrastructure/db/models/base.py ---
import enum
from typing import Type

from sqlalchemy import JSON, Enum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """The base class for all SQLAlchemy ORM models."""
    pass


def enum_column_type(enum_cls: Type[enum.Enum], name: str) -> Enum:
    """Stores enum *values* ("received"), not member names, as VARCHAR."""
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )
# --- END OF FILE ---
