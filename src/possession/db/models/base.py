"""Base model definitions and common types.

This module provides:
- SQLAlchemy declarative base with naming conventions
- Portable column types (UUID keys, timezone-aware timestamps)
- Enum types shared by models, services and schemas
"""

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any

from sqlalchemy import DateTime, MetaData, String, TypeDecorator, Uuid
from sqlalchemy.orm import DeclarativeBase, mapped_column, registry

# Naming convention for constraints ensures consistent migration generation.
# See: https://alembic.sqlalchemy.org/en/latest/naming.html
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Shared metadata with naming convention
metadata = MetaData(naming_convention=NAMING_CONVENTION)

# Custom type registry for reusable type annotations
type_registry = registry()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    PostgreSQL keeps the offset natively; SQLite stores naive text, so values
    are normalized to UTC on the way in and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# Common type annotations for columns
# UUID primary key, generated client-side so every backend behaves the same
UUIDPrimaryKey = Annotated[
    uuid.UUID,
    mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4),
]

# Timestamp with timezone, defaults to now
TimestampTZ = Annotated[
    datetime,
    mapped_column(UTCDateTime(), nullable=False, default=utcnow),
]

# Optional timestamp with timezone
OptionalTimestampTZ = Annotated[
    datetime | None,
    mapped_column(UTCDateTime(), nullable=True),
]

# External identifiers owned by other subsystems (plots, files, staff)
ExternalRef = Annotated[str, mapped_column(String(64), nullable=False)]

# Opaque document store reference
DocumentRef = Annotated[str | None, mapped_column(String(500), nullable=True)]


class Base(DeclarativeBase):
    """Declarative base for all possession models.

    All models inherit from this base, which provides:
    - Consistent metadata with naming conventions
    - Type annotation support via mapped_column
    """

    metadata = metadata
    registry = type_registry


# =============================================================================
# Common Enums
# =============================================================================


class PossessionStatus(enum.Enum):
    """Possession lifecycle states.

    States:
        REQUESTED: Possession requested by the buyer, nothing done on site yet
        SURVEYED: Site survey done, demarcation recorded
        READY: Paperwork complete, handover can be scheduled
        HANDED_OVER: Plot physically handed to the buyer (terminal)
        CANCELLED: Request withdrawn; may be reopened
        ON_HOLD: Paused pending an external issue
    """

    REQUESTED = "requested"
    SURVEYED = "surveyed"
    READY = "ready"
    HANDED_OVER = "handed_over"
    CANCELLED = "cancelled"
    ON_HOLD = "on_hold"


class AttachmentSlot(enum.Enum):
    """Document slots on a possession record.

    Values:
        CERTIFICATE: Signed possession certificate
        PHOTO: Site photo taken at handover
        OTHER: Any other supporting document
    """

    CERTIFICATE = "certificate"
    PHOTO = "photo"
    OTHER = "other"
