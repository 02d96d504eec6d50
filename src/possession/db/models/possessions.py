"""Possession models: possession records and the code allocation counter."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - required at runtime for SQLAlchemy type resolution

from sqlalchemy import Boolean, Enum, Float, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from possession.db.models.base import (
    AttachmentSlot,
    Base,
    DocumentRef,
    ExternalRef,
    OptionalTimestampTZ,
    PossessionStatus,
    TimestampTZ,
    UTCDateTime,
    UUIDPrimaryKey,
)

# Cancelled and handed-over records free the plot for a new request
_ACTIVE_PLOT_PREDICATE = "status NOT IN ('cancelled', 'handed_over') AND is_deleted = false"

ATTACHMENT_COLUMNS = {
    AttachmentSlot.CERTIFICATE: "attachment_certificate",
    AttachmentSlot.PHOTO: "attachment_photo",
    AttachmentSlot.OTHER: "attachment_other",
}


class Possession(Base):
    """Possession record for a single plot handover.

    Tracks a plot from the buyer's request through survey and readiness to
    the physical handover, plus collection of the possession letter.
    """

    __tablename__ = "possessions"

    possession_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Human-readable code, e.g. POS-20250101-001; never changes once assigned
    possession_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    # References into the file, plot and staff subsystems
    file_id: Mapped[ExternalRef]
    plot_id: Mapped[ExternalRef]
    handover_officer_id: Mapped[ExternalRef]

    status: Mapped[PossessionStatus] = mapped_column(
        Enum(
            PossessionStatus,
            name="possession_status",
            create_constraint=True,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=PossessionStatus.REQUESTED,
    )

    init_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    # Survey
    survey_date: Mapped[OptionalTimestampTZ]
    survey_person: Mapped[str | None] = mapped_column(String(100), nullable=True)
    survey_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Handover
    handover_date: Mapped[OptionalTimestampTZ]
    handover_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Possession letter collection
    letter_collected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    collector_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    collector_nic: Mapped[str | None] = mapped_column(String(15), nullable=True)
    collection_date: Mapped[OptionalTimestampTZ]

    attachment_certificate: Mapped[DocumentRef]
    attachment_photo: Mapped[DocumentRef]
    attachment_other: Mapped[DocumentRef]

    remarks: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Audit
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Soft delete
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_at: Mapped[OptionalTimestampTZ]

    # Optimistic concurrency: every UPDATE checks and bumps this
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index("ix_possessions_plot_id", "plot_id"),
        Index("ix_possessions_file_id", "file_id"),
        Index("ix_possessions_status", "status"),
        Index("ix_possessions_init_date", "init_date"),
        Index("ix_possessions_handover_officer_id", "handover_officer_id"),
        Index("ix_possessions_location", "latitude", "longitude"),
        # At most one active possession per plot
        Index(
            "uq_possessions_active_plot",
            "plot_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PLOT_PREDICATE),
            sqlite_where=text(_ACTIVE_PLOT_PREDICATE),
        ),
    )

    def get_attachment(self, slot: AttachmentSlot) -> str | None:
        return getattr(self, ATTACHMENT_COLUMNS[slot])

    def __repr__(self) -> str:
        return f"<Possession {self.possession_code} {self.status.value}>"


class PossessionCodeCounter(Base):
    """Last sequence number handed out per code prefix (one row per day).

    Incremented with a single atomic upsert so concurrent allocators never
    observe the same value.
    """

    __tablename__ = "possession_code_counters"

    # e.g. POS-20250101
    prefix: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[TimestampTZ]
