"""Pydantic schemas for the possession API.

Request schemas only check shapes and types. Business rules (required
fields, date ordering, coordinate ranges, NIC format) are enforced by the
lifecycle service so that every failing field is reported in one response.
"""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field, field_validator

from possession.db.models.base import AttachmentSlot, PossessionStatus
from possession.services.store import age_days, duration_days
from possession.services.transitions import (
    allowed_next_statuses,
    display_name,
    status_color,
)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class _UTCModel(BaseModel):
    """Normalizes every datetime field to aware UTC."""

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return as_utc(value)
        return value


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class CreatePossessionRequest(_UTCModel):
    """Request schema for creating a possession record."""

    file_id: str = Field("", description="File reference")
    plot_id: str = Field("", description="Plot reference")
    handover_officer_id: str = Field("", description="Officer responsible for the handover")
    init_date: datetime | None = Field(None, description="Date the request was initiated")
    remarks: str | None = Field(None, description="General remarks")
    latitude: float | None = Field(None, description="Plot latitude")
    longitude: float | None = Field(None, description="Plot longitude")

    model_config = ConfigDict(extra="forbid")


class UpdatePossessionRequest(_UTCModel):
    """Editable fields of a possession. Status changes use the status endpoint."""

    handover_officer_id: str | None = None
    remarks: str | None = None
    survey_person: str | None = None
    survey_remarks: str | None = None
    survey_date: datetime | None = None
    handover_remarks: str | None = None
    handover_date: datetime | None = None
    attachment_certificate: str | None = None
    attachment_photo: str | None = None
    attachment_other: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    model_config = ConfigDict(extra="forbid")


class TransitionRequest(_UTCModel):
    """Request schema for a status change."""

    status: PossessionStatus = Field(..., description="Target status")
    remarks: str | None = Field(None, description="Remarks stored for the target status")
    survey_person: str | None = Field(None, description="Surveyor name")
    survey_date: datetime | None = Field(None, description="Explicit survey date")
    handover_date: datetime | None = Field(None, description="Explicit handover date")
    attachment_certificate: str | None = Field(None, description="Certificate reference")
    attachment_photo: str | None = Field(None, description="Site photo reference")
    attachment_other: str | None = Field(None, description="Other document reference")

    model_config = ConfigDict(extra="forbid")

    def attachments(self) -> dict[AttachmentSlot, str]:
        values = {
            AttachmentSlot.CERTIFICATE: self.attachment_certificate,
            AttachmentSlot.PHOTO: self.attachment_photo,
            AttachmentSlot.OTHER: self.attachment_other,
        }
        return {slot: ref for slot, ref in values.items() if ref}


class CollectorUpdateRequest(_UTCModel):
    """Request schema for possession letter collection."""

    letter_collected: bool = Field(..., description="Whether the letter was collected")
    collector_name: str | None = Field(None, description="Name of the collector")
    collector_nic: str | None = Field(None, description="NIC of the collector")
    collection_date: datetime | None = Field(None, description="Defaults to now")

    model_config = ConfigDict(extra="forbid")


class SurveyUpdateRequest(_UTCModel):
    """Request schema for recording survey details."""

    survey_person: str = Field("", description="Surveyor name")
    survey_date: datetime | None = Field(None, description="Defaults to now")
    survey_remarks: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    model_config = ConfigDict(extra="forbid")


class BulkTransitionRequest(BaseModel):
    """Request schema for transitioning many records at once."""

    possession_ids: list[UUID] = Field(..., min_length=1, max_length=500)
    status: PossessionStatus
    remarks: str | None = None

    model_config = ConfigDict(extra="forbid")


class CertificateGenerateRequest(_UTCModel):
    """Request schema for a handover certificate."""

    certificate_number: str = Field(..., min_length=1, max_length=100)
    certificate_date: datetime
    issued_by: str = Field(..., min_length=1, max_length=200)
    authorized_signatory: str = Field(..., min_length=1, max_length=200)
    certificate_ref: str | None = Field(
        None, description="Reference of the signed certificate document"
    )

    model_config = ConfigDict(extra="forbid")


class ReportRequest(_UTCModel):
    """Request schema for a tabular report."""

    start_date: datetime
    end_date: datetime
    status: PossessionStatus | None = None
    handover_officer_id: str | None = None
    format: Literal["json", "csv"] = "json"

    model_config = ConfigDict(extra="forbid")


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


class PossessionResponse(BaseModel):
    """Full possession record, with derived fields."""

    possession_id: UUID
    possession_code: str
    file_id: str
    plot_id: str
    handover_officer_id: str
    status: PossessionStatus
    status_display_name: str
    status_color: str
    allowed_next_statuses: list[PossessionStatus]
    init_date: datetime
    survey_date: datetime | None = None
    survey_person: str | None = None
    survey_remarks: str | None = None
    handover_date: datetime | None = None
    handover_remarks: str | None = None
    letter_collected: bool
    collector_name: str | None = None
    collector_nic: str | None = None
    collection_date: datetime | None = None
    attachment_certificate: str | None = None
    attachment_photo: str | None = None
    attachment_other: str | None = None
    remarks: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    duration_days: int | None = None
    age_days: int
    created_by: str
    updated_by: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def from_record(cls, record: Any) -> PossessionResponse:
        return cls.model_validate(
            {
                **{name: getattr(record, name) for name in _RECORD_FIELDS},
                "status_display_name": display_name(record.status),
                "status_color": status_color(record.status),
                "allowed_next_statuses": allowed_next_statuses(record.status),
                "duration_days": duration_days(record),
                "age_days": age_days(record),
            }
        )


_RECORD_FIELDS = tuple(
    name
    for name in PossessionResponse.model_fields
    if name
    not in {
        "status_display_name",
        "status_color",
        "allowed_next_statuses",
        "duration_days",
        "age_days",
    }
)


class PageSummaryResponse(BaseModel):
    total_on_page: int
    by_status: dict[str, int]
    collected: int
    pending: int
    average_duration_days: float | None = None


class PossessionListResponse(BaseModel):
    """Response schema for listing possessions."""

    items: list[PossessionResponse]
    total: int = Field(..., description="Total number of matching records")
    page: int
    limit: int
    pages: int
    summary: PageSummaryResponse


class TransitionResponse(BaseModel):
    previous_status: PossessionStatus
    status: PossessionStatus
    changed: bool
    possession: PossessionResponse


class BulkTransitionResponse(BaseModel):
    matched: int
    modified: int
    errors: list[str]


class HandoverValidationResponse(BaseModel):
    is_valid: bool
    missing_fields: list[str]
    failures: dict[str, str]


class StatusOption(BaseModel):
    value: PossessionStatus
    display_name: str
    color: str

    @classmethod
    def for_status(cls, status: PossessionStatus) -> StatusOption:
        return cls(value=status, display_name=display_name(status), color=status_color(status))


class AllowedStatusesResponse(BaseModel):
    current_status: StatusOption
    allowed_statuses: list[StatusOption]


class LetterStatusResponse(BaseModel):
    letter_collected: bool
    collector_name: str | None = None
    collector_nic: str | None = None
    collection_date: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class TimelineEventResponse(BaseModel):
    date: datetime
    event: str
    description: str
    status: PossessionStatus

    model_config = ConfigDict(from_attributes=True)


class TimelineResponse(BaseModel):
    possession_id: UUID
    possession_code: str
    events: list[TimelineEventResponse]


class ProcessingTimesResponse(BaseModel):
    average_days: float | None = None
    min_days: int | None = None
    max_days: int | None = None

    model_config = ConfigDict(from_attributes=True)


class StatusDetailResponse(BaseModel):
    status: PossessionStatus
    display_name: str
    count: int
    average_duration_days: float | None = None
    collected: int


class StatisticsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    pending: int
    collected: int
    processing_times: ProcessingTimesResponse
    distribution: dict[str, int]
    details: list[StatusDetailResponse]


class NearbyPossessionResponse(BaseModel):
    possession: PossessionResponse
    distance_meters: float


class OverduePossessionResponse(BaseModel):
    possession: PossessionResponse
    overdue_days: int


class ReportResponse(BaseModel):
    start_date: datetime
    end_date: datetime
    total: int
    rows: list[dict[str, Any]]


class CertificateResponse(BaseModel):
    certificate_number: str
    certificate_date: datetime
    issued_by: str
    authorized_signatory: str
    possession: PossessionResponse
    plot: dict[str, Any]
    file: dict[str, Any]
    officer: dict[str, Any]


class AttachmentResponse(BaseModel):
    slot: AttachmentSlot
    reference: str
    sha256_digest: str
    size_bytes: int
    possession: PossessionResponse
