"""Possession API router.

Exposes the possession lifecycle over HTTP: creation, status transitions,
letter collection, the handover readiness gate, attachments, certificates
and reporting. Mutating endpoints require the caller's identity in the
``X-Actor-ID`` header; it is stored as created_by/updated_by.

Every endpoint runs under the configured request deadline. When it expires
the in-flight store call is cancelled, the session is rolled back and the
client receives 504 ``deadline_exceeded``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime  # noqa: TC003
from typing import Annotated, Literal
from uuid import UUID  # noqa: TC003

from fastapi import APIRouter, Depends, File, Header, Query, Request, UploadFile, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from possession.api.middleware.errors import AuthenticationError
from possession.api.schemas.possessions import (
    AllowedStatusesResponse,
    AttachmentResponse,
    BulkTransitionRequest,
    BulkTransitionResponse,
    CertificateGenerateRequest,
    CertificateResponse,
    CollectorUpdateRequest,
    CreatePossessionRequest,
    HandoverValidationResponse,
    LetterStatusResponse,
    NearbyPossessionResponse,
    OverduePossessionResponse,
    PageSummaryResponse,
    PossessionListResponse,
    PossessionResponse,
    ProcessingTimesResponse,
    ReportRequest,
    ReportResponse,
    StatisticsResponse,
    StatusDetailResponse,
    StatusOption,
    SurveyUpdateRequest,
    TimelineEventResponse,
    TimelineResponse,
    TransitionRequest,
    TransitionResponse,
    UpdatePossessionRequest,
    as_utc,
)
# NOTE: types used by dependency injection must be importable at runtime
from possession.core.config import Settings  # noqa: TC001
from possession.db.models.base import AttachmentSlot, PossessionStatus
from possession.services.collaborators import Collaborators  # noqa: TC001
from possession.services.lifecycle import (
    CertificateRequest,
    NewPossession,
    PossessionLifecycleService,
    TransitionPayload,
)
from possession.services.reporting import PossessionReportingService, render_csv
from possession.services.storage import DocumentStore  # noqa: TC001
from possession.services.store import MAX_PAGE_SIZE, PossessionFilters, PossessionPage
from possession.services.transitions import ACTIVE_STATUSES, display_name

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/possessions",
    tags=["possessions"],
    responses={
        404: {"description": "Possession not found"},
        504: {"description": "Request deadline exceeded"},
    },
)


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


async def get_db_session() -> AsyncSession:
    """Get database session.

    Uses the application's async session factory.
    """
    from possession.db import get_async_session

    async with get_async_session() as session:
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


AppSettings = Annotated[Settings, Depends(get_app_settings)]


def get_collaborators(request: Request) -> Collaborators:
    """Collaborator clients created at application start."""
    return request.app.state.collaborators


def get_document_store(request: Request) -> DocumentStore:
    return request.app.state.document_store


StoreClient = Annotated[DocumentStore, Depends(get_document_store)]


def get_actor(
    x_actor_id: Annotated[str | None, Header(description="Identity of the caller")] = None,
) -> str:
    """Identity of the caller.

    Raises:
        AuthenticationError: If the header is missing or blank.
    """
    actor = (x_actor_id or "").strip()
    if not actor:
        raise AuthenticationError("X-Actor-ID header is required")
    return actor


Actor = Annotated[str, Depends(get_actor)]


def get_lifecycle_service(
    db: DbSession,
    settings: AppSettings,
    collaborators: Annotated[Collaborators, Depends(get_collaborators)],
) -> PossessionLifecycleService:
    return PossessionLifecycleService.from_settings(db, collaborators, settings.lifecycle)


LifecycleService = Annotated[PossessionLifecycleService, Depends(get_lifecycle_service)]


def get_reporting_service(db: DbSession) -> PossessionReportingService:
    return PossessionReportingService(db)


ReportingService = Annotated[PossessionReportingService, Depends(get_reporting_service)]


def deadline(settings: Settings) -> asyncio.Timeout:
    """Deadline context for one request."""
    return asyncio.timeout(settings.lifecycle.request_timeout_seconds)


def _list_response(page: PossessionPage) -> PossessionListResponse:
    return PossessionListResponse(
        items=[PossessionResponse.from_record(r) for r in page.items],
        total=page.total,
        page=page.page,
        limit=page.limit,
        pages=page.pages,
        summary=PageSummaryResponse(
            total_on_page=page.summary.total_on_page,
            by_status=page.summary.by_status,
            collected=page.summary.collected,
            pending=page.summary.pending,
            average_duration_days=page.summary.average_duration_days,
        ),
    )


# -----------------------------------------------------------------------------
# Collection endpoints
# -----------------------------------------------------------------------------


@router.post(
    "",
    response_model=PossessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a possession request",
    description="Creates a record in REQUESTED status and allocates its possession code.",
)
async def create_possession(
    request: CreatePossessionRequest,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> PossessionResponse:
    """Create a possession record.

    Returns 409 when the plot already has an active record and 422 with
    every invalid field otherwise.
    """
    async with deadline(settings):
        record = await service.create(
            NewPossession(
                file_id=request.file_id,
                plot_id=request.plot_id,
                handover_officer_id=request.handover_officer_id,
                init_date=request.init_date,
                remarks=request.remarks,
                latitude=request.latitude,
                longitude=request.longitude,
            ),
            actor=actor,
        )
        await db.commit()
    return PossessionResponse.from_record(record)


@router.get(
    "",
    response_model=PossessionListResponse,
    summary="List possessions",
)
async def list_possessions(
    service: LifecycleService,
    settings: AppSettings,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 20,
    sort_by: Literal[
        "init_date", "created_at", "updated_at", "possession_code", "status", "handover_date"
    ] = "init_date",
    sort_order: Literal["asc", "desc"] = "desc",
    status_filter: Annotated[list[PossessionStatus] | None, Query(alias="status")] = None,
    plot_id: str | None = None,
    file_id: str | None = None,
    letter_collected: bool | None = None,
    handover_officer_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    min_duration: Annotated[int | None, Query(ge=0)] = None,
    max_duration: Annotated[int | None, Query(ge=0)] = None,
    search: str | None = None,
) -> PossessionListResponse:
    """List possessions with filters, sorting and pagination.

    ``status`` may be repeated to match any of several statuses.
    Duration bounds only match handed-over records.
    """
    filters = PossessionFilters(
        plot_id=plot_id,
        file_id=file_id,
        statuses=status_filter or [],
        letter_collected=letter_collected,
        handover_officer_id=handover_officer_id,
        start_date=as_utc(start_date),
        end_date=as_utc(end_date),
        min_duration=min_duration,
        max_duration=max_duration,
        search=search,
    )
    async with deadline(settings):
        result = await service.query(
            filters,
            page=page,
            limit=limit,
            sort_by=sort_by,
            descending=sort_order == "desc",
        )
    return _list_response(result)


@router.get(
    "/stats/summary",
    response_model=StatisticsResponse,
    summary="Possession statistics",
)
async def get_statistics(
    reporting: ReportingService,
    settings: AppSettings,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> StatisticsResponse:
    """Aggregate statistics for records initiated inside the window."""
    async with deadline(settings):
        stats = await reporting.statistics(as_utc(start_date), as_utc(end_date))
    return StatisticsResponse(
        total=stats.total,
        by_status={s.value: count for s, count in stats.by_status.items()},
        pending=stats.pending,
        collected=stats.collected,
        processing_times=ProcessingTimesResponse.model_validate(stats.processing_times),
        distribution=stats.distribution,
        details=[
            StatusDetailResponse(
                status=detail.status,
                display_name=display_name(detail.status),
                count=detail.count,
                average_duration_days=detail.average_duration_days,
                collected=detail.collected,
            )
            for detail in stats.details
        ],
    )


@router.get(
    "/overdue",
    response_model=list[OverduePossessionResponse],
    summary="Overdue possessions",
)
async def get_overdue(
    reporting: ReportingService,
    settings: AppSettings,
    days: Annotated[int | None, Query(ge=1)] = None,
) -> list[OverduePossessionResponse]:
    """Active records older than the threshold (default from settings)."""
    threshold = days or settings.lifecycle.overdue_threshold_days
    async with deadline(settings):
        overdue = await reporting.overdue(threshold)
    return [
        OverduePossessionResponse(
            possession=PossessionResponse.from_record(item.possession),
            overdue_days=item.overdue_days,
        )
        for item in overdue
    ]


@router.get(
    "/pending",
    response_model=PossessionListResponse,
    summary="Pending possessions",
    description="Records not yet handed over or cancelled, oldest request first.",
)
async def get_pending(
    service: LifecycleService,
    settings: AppSettings,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 20,
) -> PossessionListResponse:
    async with deadline(settings):
        result = await service.query(
            PossessionFilters(statuses=sorted(ACTIVE_STATUSES, key=lambda s: s.value)),
            page=page,
            limit=limit,
            sort_by="init_date",
            descending=False,
        )
    return _list_response(result)


@router.get(
    "/search/location",
    response_model=list[NearbyPossessionResponse],
    summary="Search handed-over possessions near a point",
)
async def search_by_location(
    reporting: ReportingService,
    settings: AppSettings,
    latitude: Annotated[float, Query(ge=-90, le=90)],
    longitude: Annotated[float, Query(ge=-180, le=180)],
    max_distance: Annotated[float | None, Query(gt=0)] = None,
    limit: Annotated[int | None, Query(ge=1, le=1000)] = None,
) -> list[NearbyPossessionResponse]:
    """Nearest first; radius and limit default from settings."""
    async with deadline(settings):
        nearby = await reporting.proximity_search(
            latitude,
            longitude,
            max_distance_meters=max_distance or settings.lifecycle.proximity_default_meters,
            limit=limit or settings.lifecycle.proximity_default_limit,
        )
    return [
        NearbyPossessionResponse(
            possession=PossessionResponse.from_record(item.possession),
            distance_meters=round(item.distance_meters, 2),
        )
        for item in nearby
    ]


@router.post(
    "/report",
    response_model=ReportResponse,
    summary="Generate a possession report",
    responses={200: {"content": {"text/csv": {}}}},
)
async def generate_report(
    request: ReportRequest,
    reporting: ReportingService,
    settings: AppSettings,
) -> ReportResponse | Response:
    """Tabular report of records initiated inside the window.

    With ``format=csv`` the rows are returned as a CSV attachment.
    """
    async with deadline(settings):
        rows = await reporting.generate_report(
            request.start_date,
            request.end_date,
            status=request.status,
            handover_officer_id=request.handover_officer_id,
        )

    if request.format == "csv":
        filename = (
            f"possessions_{request.start_date:%Y%m%d}_{request.end_date:%Y%m%d}.csv"
        )
        return Response(
            content=render_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    return ReportResponse(
        start_date=request.start_date,
        end_date=request.end_date,
        total=len(rows),
        rows=rows,
    )


@router.post(
    "/bulk/status",
    response_model=BulkTransitionResponse,
    summary="Transition many possessions",
)
async def bulk_update_status(
    request: BulkTransitionRequest,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> BulkTransitionResponse:
    """Apply one transition to every listed record.

    Records are processed independently; failures are reported per id
    and never roll back the others.
    """
    async with deadline(settings):
        result = await service.bulk_transition(
            request.possession_ids,
            request.status,
            remarks=request.remarks,
            actor=actor,
        )
        await db.commit()
    return BulkTransitionResponse(
        matched=result.matched, modified=result.modified, errors=result.errors
    )


@router.get(
    "/code/{code}",
    response_model=PossessionResponse,
    summary="Get a possession by code",
)
async def get_possession_by_code(
    code: str,
    service: LifecycleService,
    settings: AppSettings,
) -> PossessionResponse:
    async with deadline(settings):
        record = await service.get_by_code(code)
    return PossessionResponse.from_record(record)


# -----------------------------------------------------------------------------
# Single record endpoints
# -----------------------------------------------------------------------------


@router.get(
    "/{possession_id}",
    response_model=PossessionResponse,
    summary="Get a possession",
)
async def get_possession(
    possession_id: UUID,
    service: LifecycleService,
    settings: AppSettings,
) -> PossessionResponse:
    async with deadline(settings):
        record = await service.get(possession_id)
    return PossessionResponse.from_record(record)


@router.put(
    "/{possession_id}",
    response_model=PossessionResponse,
    summary="Update possession details",
    description="Edits narrative fields, dates, attachments and coordinates. "
    "Status changes go through PATCH /{possession_id}/status.",
)
async def update_possession(
    possession_id: UUID,
    request: UpdatePossessionRequest,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> PossessionResponse:
    async with deadline(settings):
        record = await service.update_details(
            possession_id, request.model_dump(exclude_unset=True), actor=actor
        )
        await db.commit()
    return PossessionResponse.from_record(record)


@router.delete(
    "/{possession_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a possession",
)
async def delete_possession(
    possession_id: UUID,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> Response:
    """Soft-delete a record.

    Handed-over records with a signed certificate cannot be deleted.
    """
    async with deadline(settings):
        await service.delete(possession_id, actor=actor)
        await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch(
    "/{possession_id}/status",
    response_model=TransitionResponse,
    summary="Change possession status",
)
async def update_status(
    possession_id: UUID,
    request: TransitionRequest,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> TransitionResponse:
    """Move a record along the transition table.

    Requesting the current status succeeds without changing anything.
    Entering HANDED_OVER runs the readiness gate on the record as it
    would look after the change.
    """
    payload = TransitionPayload(
        remarks=request.remarks,
        survey_person=request.survey_person,
        survey_date=request.survey_date,
        handover_date=request.handover_date,
        attachments=request.attachments(),
    )
    async with deadline(settings):
        result = await service.transition(possession_id, request.status, payload, actor=actor)
        if result.changed:
            await db.commit()
    return TransitionResponse(
        previous_status=result.previous_status,
        status=result.new_status,
        changed=result.changed,
        possession=PossessionResponse.from_record(result.record),
    )


@router.patch(
    "/{possession_id}/collector",
    response_model=PossessionResponse,
    summary="Record possession letter collection",
)
async def update_collector(
    possession_id: UUID,
    request: CollectorUpdateRequest,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> PossessionResponse:
    async with deadline(settings):
        record = await service.update_collector_info(
            possession_id,
            collected=request.letter_collected,
            collector_name=request.collector_name,
            collector_nic=request.collector_nic,
            collection_date=request.collection_date,
            actor=actor,
        )
        await db.commit()
    return PossessionResponse.from_record(record)


@router.patch(
    "/{possession_id}/survey",
    response_model=PossessionResponse,
    summary="Record survey details",
)
async def update_survey(
    possession_id: UUID,
    request: SurveyUpdateRequest,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> PossessionResponse:
    async with deadline(settings):
        record = await service.update_survey_info(
            possession_id,
            survey_person=request.survey_person,
            survey_date=request.survey_date,
            survey_remarks=request.survey_remarks,
            latitude=request.latitude,
            longitude=request.longitude,
            actor=actor,
        )
        await db.commit()
    return PossessionResponse.from_record(record)


@router.get(
    "/{possession_id}/timeline",
    response_model=TimelineResponse,
    summary="Possession timeline",
)
async def get_timeline(
    possession_id: UUID,
    reporting: ReportingService,
    settings: AppSettings,
) -> TimelineResponse:
    async with deadline(settings):
        timeline = await reporting.timeline(possession_id)
    return TimelineResponse(
        possession_id=timeline.possession_id,
        possession_code=timeline.possession_code,
        events=[TimelineEventResponse.model_validate(event) for event in timeline],
    )


@router.get(
    "/{possession_id}/validate-handover",
    response_model=HandoverValidationResponse,
    summary="Check handover readiness",
)
async def validate_handover(
    possession_id: UUID,
    service: LifecycleService,
    settings: AppSettings,
) -> HandoverValidationResponse:
    """Report every unmet handover requirement without changing the record."""
    async with deadline(settings):
        validation = await service.validate_handover(possession_id)
    return HandoverValidationResponse(
        is_valid=validation.is_valid,
        missing_fields=validation.missing_fields,
        failures=validation.failures,
    )


@router.get(
    "/{possession_id}/allowed-statuses",
    response_model=AllowedStatusesResponse,
    summary="Statuses reachable from the current one",
)
async def get_allowed_statuses(
    possession_id: UUID,
    service: LifecycleService,
    settings: AppSettings,
) -> AllowedStatusesResponse:
    async with deadline(settings):
        record = await service.get(possession_id)
        allowed = await service.allowed_statuses(possession_id)
    return AllowedStatusesResponse(
        current_status=StatusOption.for_status(record.status),
        allowed_statuses=[StatusOption.for_status(s) for s in allowed],
    )


@router.get(
    "/{possession_id}/letter",
    response_model=LetterStatusResponse,
    summary="Possession letter collection status",
)
async def get_letter_status(
    possession_id: UUID,
    service: LifecycleService,
    settings: AppSettings,
) -> LetterStatusResponse:
    async with deadline(settings):
        letter = await service.letter_status(possession_id)
    return LetterStatusResponse.model_validate(letter)


@router.post(
    "/{possession_id}/attachments/{slot}",
    response_model=AttachmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a possession document",
    description="Stores the document and points the attachment slot at it.",
)
async def upload_attachment(
    possession_id: UUID,
    slot: AttachmentSlot,
    file: Annotated[UploadFile, File(description="Document to attach")],
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    store: StoreClient,
    settings: AppSettings,
) -> AttachmentResponse:
    """Upload a certificate, site photo or other document.

    The record is checked before anything is stored, so an unknown id
    never leaves an orphaned object behind.
    """
    data = await file.read()
    async with deadline(settings):
        await service.get(possession_id)
        # Ensure bucket exists before upload
        await run_in_threadpool(store.ensure_bucket)
        stored = await run_in_threadpool(
            store.put_document,
            possession_id=str(possession_id),
            slot=slot,
            data=data,
            filename=file.filename,
            content_type=file.content_type or "application/octet-stream",
        )
        record = await service.record_attachment(
            possession_id, slot, stored.reference, actor=actor
        )
        await db.commit()

    logger.info(
        "Possession document uploaded",
        extra={
            "possession_id": str(possession_id),
            "slot": slot.value,
            "size_bytes": stored.size_bytes,
        },
    )
    return AttachmentResponse(
        slot=slot,
        reference=stored.reference,
        sha256_digest=stored.sha256_digest,
        size_bytes=stored.size_bytes,
        possession=PossessionResponse.from_record(record),
    )


@router.post(
    "/{possession_id}/certificate",
    response_model=CertificateResponse,
    summary="Generate a handover certificate",
)
async def generate_certificate(
    possession_id: UUID,
    request: CertificateGenerateRequest,
    actor: Actor,
    db: DbSession,
    service: LifecycleService,
    settings: AppSettings,
) -> CertificateResponse:
    """Assemble certificate data for a handed-over record."""
    async with deadline(settings):
        certificate = await service.generate_handover_certificate(
            possession_id,
            CertificateRequest(
                certificate_number=request.certificate_number,
                certificate_date=request.certificate_date,
                issued_by=request.issued_by,
                authorized_signatory=request.authorized_signatory,
                certificate_ref=request.certificate_ref,
            ),
            actor=actor,
        )
        await db.commit()
    return CertificateResponse(
        certificate_number=certificate.certificate_number,
        certificate_date=certificate.certificate_date,
        issued_by=certificate.issued_by,
        authorized_signatory=certificate.authorized_signatory,
        possession=PossessionResponse.from_record(certificate.possession),
        plot=certificate.plot,
        file=certificate.file,
        officer=certificate.officer,
    )
