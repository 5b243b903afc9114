"""
Shared model mixins and column types.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are normalized to UTC on the way in and always come back
    timezone-aware, including on backends (SQLite) that drop tzinfo.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Adds created_at / updated_at audit columns."""

    created_at = Column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        comment="Row creation time",
    )
    updated_at = Column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        comment="Last modification time",
    )
