"""Possession lifecycle service.

This module implements the possession workflow:
- Creation with plot uniqueness and code allocation
- Status transitions through the transition table, stamping survey and
  handover dates on first entry
- Letter collection and survey updates
- The handover readiness gate, which consults the plot and file services
- Bulk transitions and handover certificates

Every mutating operation computes its changes first and applies them only
once all checks pass, so a rejected request never leaves a half-updated
record behind. The service never commits; the caller owns the transaction.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from possession.db.models.base import AttachmentSlot, PossessionStatus, utcnow
from possession.db.models.possessions import ATTACHMENT_COLUMNS, Possession
from possession.services.code_allocator import CodeAllocator
from possession.services.collaborators import CollaboratorError, CollaboratorNotFoundError
from possession.services.errors import (
    DuplicateActivePossessionError,
    IllegalTransitionError,
    PossessionError,
    PossessionNotFoundError,
    ValidationFailedError,
)
from possession.services.store import PossessionFilters, PossessionPage, PossessionStore
from possession.services.transitions import (
    allowed_next_statuses,
    ensure_transition,
    is_active_status,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession

    from possession.core.config import LifecycleSettings
    from possession.services.collaborators import Collaborators

logger = logging.getLogger(__name__)

# National identity card: 12345-1234567-1 or 13 bare digits
NIC_PATTERN = re.compile(r"^\d{5}-\d{7}-\d$|^\d{13}$")

MAX_LENGTHS = {
    "remarks": 1000,
    "survey_remarks": 500,
    "handover_remarks": 500,
    "survey_person": 100,
    "collector_name": 100,
    "attachment_certificate": 500,
    "attachment_photo": 500,
    "attachment_other": 500,
}

# Fields an ordinary edit may touch; status is deliberately absent
EDITABLE_FIELDS = frozenset(
    {
        "handover_officer_id",
        "remarks",
        "survey_person",
        "survey_remarks",
        "survey_date",
        "handover_remarks",
        "handover_date",
        "attachment_certificate",
        "attachment_photo",
        "attachment_other",
        "latitude",
        "longitude",
    }
)

# Stage dates an edit may set only once the record has reached that stage
_DATE_STAGES = {
    "survey_date": frozenset(
        {PossessionStatus.SURVEYED, PossessionStatus.READY, PossessionStatus.HANDED_OVER}
    ),
    "handover_date": frozenset({PossessionStatus.HANDED_OVER}),
}


def _stage_reached(record: Possession, date_field: str, status: PossessionStatus) -> bool:
    """Whether ``status`` (or the record's history) has reached a stage date's stage."""
    return status in _DATE_STAGES[date_field] or getattr(record, date_field) is not None

# Where transition remarks land, by target status
_REMARKS_FIELD = {
    PossessionStatus.SURVEYED: "survey_remarks",
    PossessionStatus.HANDED_OVER: "handover_remarks",
}


@dataclass(slots=True)
class NewPossession:
    """Input for creating a possession record."""

    file_id: str
    plot_id: str
    handover_officer_id: str
    init_date: datetime | None
    remarks: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(slots=True)
class TransitionPayload:
    """Optional data accompanying a status change.

    Attributes:
        remarks: Stored as survey remarks when entering SURVEYED, handover
            remarks when entering HANDED_OVER, general remarks otherwise.
        survey_person: Name of the surveyor.
        survey_date: Overrides the automatic survey date stamp.
        handover_date: Overrides the automatic handover date stamp.
        attachments: Document references by slot.
    """

    remarks: str | None = None
    survey_person: str | None = None
    survey_date: datetime | None = None
    handover_date: datetime | None = None
    attachments: dict[AttachmentSlot, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class TransitionResult:
    """Result of a transition.

    Attributes:
        previous_status: Status before the call.
        new_status: Status after the call.
        changed: False when the request was a no-op (same status).
        record: The record after the call.
    """

    previous_status: PossessionStatus
    new_status: PossessionStatus
    changed: bool
    record: Possession


@dataclass(frozen=True, slots=True)
class HandoverValidation:
    """Outcome of the handover readiness gate.

    Attributes:
        is_valid: True when every requirement is met.
        missing_fields: Human-readable message per unmet requirement.
        failures: Same requirements keyed by field name.
    """

    is_valid: bool
    missing_fields: list[str]
    failures: dict[str, str]


@dataclass(frozen=True, slots=True)
class BulkTransitionResult:
    matched: int
    modified: int
    errors: list[str]


@dataclass(frozen=True, slots=True)
class LetterStatus:
    letter_collected: bool
    collector_name: str | None
    collector_nic: str | None
    collection_date: datetime | None


@dataclass(frozen=True, slots=True)
class CertificateRequest:
    """Metadata for a handover certificate."""

    certificate_number: str
    certificate_date: datetime
    issued_by: str
    authorized_signatory: str
    certificate_ref: str | None = None


@dataclass(frozen=True, slots=True)
class HandoverCertificate:
    """Data needed to render a handover certificate."""

    certificate_number: str
    certificate_date: datetime
    issued_by: str
    authorized_signatory: str
    possession: Possession
    plot: dict[str, Any]
    file: dict[str, Any]
    officer: dict[str, Any]


def _check_lengths(errors: dict[str, str], values: dict[str, Any]) -> None:
    for name, limit in MAX_LENGTHS.items():
        value = values.get(name)
        if isinstance(value, str) and len(value) > limit:
            errors[name] = f"Must be at most {limit} characters"


def _check_coordinates(
    errors: dict[str, str], latitude: float | None, longitude: float | None
) -> None:
    if latitude is not None and not -90 <= latitude <= 90:
        errors["latitude"] = "Latitude must be between -90 and 90"
    if longitude is not None and not -180 <= longitude <= 180:
        errors["longitude"] = "Longitude must be between -180 and 180"


def _check_not_before(
    errors: dict[str, str], name: str, value: datetime | None, init_date: datetime | None
) -> None:
    if value is not None and init_date is not None and value < init_date:
        errors[name] = f"{name.replace('_', ' ').capitalize()} cannot be before the init date"


def validate_new_possession(request: NewPossession, now: datetime) -> dict[str, str]:
    """Collect every problem with a creation request.

    Returns:
        Field name to message; empty when the request is valid.
    """
    errors: dict[str, str] = {}
    for name in ("file_id", "plot_id", "handover_officer_id"):
        if not (getattr(request, name) or "").strip():
            errors[name] = "This field is required"
    if request.init_date is None:
        errors["init_date"] = "This field is required"
    elif request.init_date > now:
        errors["init_date"] = "Init date cannot be in the future"
    _check_coordinates(errors, request.latitude, request.longitude)
    _check_lengths(errors, {"remarks": request.remarks})
    return errors


class PossessionLifecycleService:
    """Service for possession records and their status transitions.

    Example:
        service = PossessionLifecycleService(session, collaborators)
        record = await service.create(
            NewPossession(file_id="F-1", plot_id="P-9", handover_officer_id="S-2",
                          init_date=utcnow()),
            actor="staff-17",
        )
        await service.transition(record.possession_id, PossessionStatus.SURVEYED,
                                 actor="staff-17")
        await session.commit()
    """

    def __init__(
        self,
        session: AsyncSession,
        collaborators: Collaborators,
        *,
        code_prefix: str = "POS",
        code_allocation_attempts: int = 5,
        enforce_handover_gate: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the lifecycle service.

        Args:
            session: SQLAlchemy async session for database operations.
            collaborators: Plot, file and staff lookups.
            code_prefix: Prefix of allocated possession codes.
            code_allocation_attempts: Attempts before allocation gives up.
            enforce_handover_gate: Run the readiness gate before HANDED_OVER.
            clock: Returns "now"; injectable for tests.
        """
        self._session = session
        self._store = PossessionStore(session)
        self._collaborators = collaborators
        self._allocator = CodeAllocator(
            session,
            prefix=code_prefix,
            max_attempts=code_allocation_attempts,
            clock=clock,
        )
        self._enforce_handover_gate = enforce_handover_gate
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        collaborators: Collaborators,
        settings: LifecycleSettings,
    ) -> PossessionLifecycleService:
        return cls(
            session,
            collaborators,
            code_prefix=settings.code_prefix,
            code_allocation_attempts=settings.code_allocation_max_attempts,
            enforce_handover_gate=settings.enforce_handover_gate,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, possession_id: UUID) -> Possession:
        """Get a possession by id.

        Raises:
            PossessionNotFoundError: If it does not exist or was deleted.
        """
        return await self._store.get(possession_id)

    async def get_by_code(self, code: str) -> Possession:
        return await self._store.get_by_code(code)

    async def query(
        self,
        filters: PossessionFilters,
        *,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "init_date",
        descending: bool = True,
    ) -> PossessionPage:
        return await self._store.query(
            filters, page=page, limit=limit, sort_by=sort_by, descending=descending
        )

    async def allowed_statuses(self, possession_id: UUID) -> list[PossessionStatus]:
        record = await self._store.get(possession_id)
        return allowed_next_statuses(record.status)

    async def letter_status(self, possession_id: UUID) -> LetterStatus:
        record = await self._store.get(possession_id)
        return LetterStatus(
            letter_collected=record.letter_collected,
            collector_name=record.collector_name,
            collector_nic=record.collector_nic,
            collection_date=record.collection_date,
        )

    # -------------------------------------------------------------------------
    # Creation and edits
    # -------------------------------------------------------------------------

    async def create(self, request: NewPossession, *, actor: str) -> Possession:
        """Create a possession record in REQUESTED status.

        Args:
            request: Creation data.
            actor: Identity of the caller, stored as created_by.

        Returns:
            The new record with its allocated code.

        Raises:
            ValidationFailedError: With every invalid field.
            DuplicateActivePossessionError: The plot already has an active record.
            CodeAllocationExhaustedError: No unique code could be allocated.
        """
        now = self._clock()
        errors = validate_new_possession(request, now)
        if errors:
            raise ValidationFailedError(errors)

        plot_id = request.plot_id.strip()
        existing = await self._store.find_active_for_plot(plot_id)
        if existing is not None:
            logger.info(
                "Possession request rejected: plot already active",
                extra={"plot_id": plot_id, "existing_code": existing.possession_code},
            )
            raise DuplicateActivePossessionError(plot_id, existing.possession_code)

        code = await self._allocator.allocate()
        record = Possession(
            possession_code=code,
            file_id=request.file_id.strip(),
            plot_id=plot_id,
            handover_officer_id=request.handover_officer_id.strip(),
            status=PossessionStatus.REQUESTED,
            init_date=request.init_date,
            letter_collected=False,
            remarks=request.remarks,
            latitude=request.latitude,
            longitude=request.longitude,
            is_deleted=False,
            created_by=actor,
            updated_by=actor,
            created_at=now,
            updated_at=now,
        )
        await self._store.add(record)

        logger.info(
            "Possession created",
            extra={
                "possession_id": str(record.possession_id),
                "possession_code": code,
                "plot_id": plot_id,
                "actor": actor,
            },
        )
        return record

    async def update_details(
        self, possession_id: UUID, changes: dict[str, Any], *, actor: str
    ) -> Possession:
        """Edit narrative fields, attachments, officer, dates and coordinates.

        Raises:
            ValidationFailedError: For status or unknown fields and invalid values.
        """
        errors: dict[str, str] = {}
        if "status" in changes:
            errors["status"] = "Status can only change through a status transition"
        for name in changes.keys() - EDITABLE_FIELDS - {"status"}:
            errors[name] = "Field cannot be updated"
        if errors:
            raise ValidationFailedError(errors)

        record = await self._store.get(possession_id)
        merged = {name: changes.get(name, getattr(record, name)) for name in EDITABLE_FIELDS}
        if "handover_officer_id" in changes and not (changes["handover_officer_id"] or "").strip():
            errors["handover_officer_id"] = "This field is required"
        _check_lengths(errors, merged)
        _check_coordinates(errors, merged["latitude"], merged["longitude"])
        _check_not_before(errors, "survey_date", merged["survey_date"], record.init_date)
        _check_not_before(errors, "handover_date", merged["handover_date"], record.init_date)
        for name in _DATE_STAGES:
            if changes.get(name) is not None and not _stage_reached(record, name, record.status):
                errors[name] = f"Cannot be set while the possession is {record.status.value}"
        if errors:
            raise ValidationFailedError(errors)

        if not changes:
            return record
        for name, value in changes.items():
            setattr(record, name, value)
        self._touch(record, actor)
        await self._store.save(record)
        logger.info(
            "Possession updated",
            extra={
                "possession_id": str(possession_id),
                "fields": sorted(changes),
                "actor": actor,
            },
        )
        return record

    async def update_survey_info(
        self,
        possession_id: UUID,
        *,
        survey_person: str,
        survey_date: datetime | None = None,
        survey_remarks: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        actor: str,
    ) -> Possession:
        """Record survey details without changing status.

        The survey date defaults to now when omitted.
        """
        record = await self._store.get(possession_id)
        errors: dict[str, str] = {}
        person = (survey_person or "").strip()
        if not person:
            errors["survey_person"] = "Survey person is required"
        survey_date = survey_date or self._clock()
        _check_not_before(errors, "survey_date", survey_date, record.init_date)
        _check_coordinates(errors, latitude, longitude)
        _check_lengths(errors, {"survey_person": person, "survey_remarks": survey_remarks})
        if errors:
            raise ValidationFailedError(errors)

        record.survey_person = person
        record.survey_date = survey_date
        if survey_remarks is not None:
            record.survey_remarks = survey_remarks
        if latitude is not None:
            record.latitude = latitude
        if longitude is not None:
            record.longitude = longitude
        self._touch(record, actor)
        return await self._store.save(record)

    async def update_collector_info(
        self,
        possession_id: UUID,
        *,
        collected: bool,
        collector_name: str | None = None,
        collector_nic: str | None = None,
        collection_date: datetime | None = None,
        actor: str,
    ) -> Possession:
        """Record (or clear) possession letter collection.

        When ``collected`` is true both the collector name and NIC are
        required and the collection date defaults to now.

        Raises:
            ValidationFailedError: With every missing or invalid field.
        """
        record = await self._store.get(possession_id)
        name = (collector_name or "").strip() or None
        nic = (collector_nic or "").strip() or None

        errors: dict[str, str] = {}
        if collected and name is None:
            errors["collector_name"] = "Collector name is required when the letter is collected"
        if collected and nic is None:
            errors["collector_nic"] = "Collector NIC is required when the letter is collected"
        if nic is not None and not NIC_PATTERN.match(nic):
            errors["collector_nic"] = "NIC must be 12345-1234567-1 or 13 digits"
        if collected and collection_date is None:
            collection_date = self._clock()
        _check_not_before(errors, "collection_date", collection_date, record.init_date)
        _check_lengths(errors, {"collector_name": name})
        if errors:
            raise ValidationFailedError(errors)

        record.letter_collected = collected
        record.collector_name = name
        record.collector_nic = nic
        record.collection_date = collection_date
        self._touch(record, actor)
        await self._store.save(record)
        logger.info(
            "Possession letter collection updated",
            extra={
                "possession_id": str(possession_id),
                "letter_collected": collected,
                "actor": actor,
            },
        )
        return record

    async def record_attachment(
        self, possession_id: UUID, slot: AttachmentSlot, reference: str, *, actor: str
    ) -> Possession:
        """Point an attachment slot at a stored document."""
        errors: dict[str, str] = {}
        column = ATTACHMENT_COLUMNS[slot]
        _check_lengths(errors, {column: reference})
        if not reference:
            errors[column] = "Document reference is required"
        if errors:
            raise ValidationFailedError(errors)

        record = await self._store.get(possession_id)
        setattr(record, column, reference)
        self._touch(record, actor)
        return await self._store.save(record)

    async def delete(self, possession_id: UUID, *, actor: str) -> Possession:
        """Soft-delete a record.

        Raises:
            ValidationFailedError: The record is handed over with a signed certificate.
        """
        record = await self._store.get(possession_id)
        if (
            record.status == PossessionStatus.HANDED_OVER
            and record.attachment_certificate is not None
        ):
            raise ValidationFailedError(
                {"status": "Handed-over possessions with a signed certificate cannot be deleted"}
            )
        await self._store.soft_delete(record, actor)
        logger.info(
            "Possession deleted",
            extra={"possession_id": str(possession_id), "actor": actor},
        )
        return record

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def transition(
        self,
        possession_id: UUID,
        new_status: PossessionStatus,
        payload: TransitionPayload | None = None,
        *,
        actor: str,
    ) -> TransitionResult:
        """Move a record to a new status.

        Requesting the current status is a no-op: nothing is written and the
        record is returned unchanged.

        Args:
            possession_id: Record to transition.
            new_status: Target status.
            payload: Remarks, survey details, dates and attachments to merge.
            actor: Identity of the caller, stored as updated_by.

        Returns:
            TransitionResult describing what happened.

        Raises:
            PossessionNotFoundError: Unknown or deleted record.
            IllegalTransitionError: The transition table forbids the change.
            DuplicateActivePossessionError: Reopening would make a second active
                record for the plot.
            ValidationFailedError: Invalid payload, or the handover gate failed.
            ConflictingConcurrentUpdateError: Another writer got there first.
        """
        payload = payload or TransitionPayload()
        record = await self._store.get(possession_id)
        current = record.status

        if new_status == current:
            logger.debug(
                "No-op transition",
                extra={"possession_id": str(possession_id), "status": current.value},
            )
            return TransitionResult(current, current, False, record)

        try:
            ensure_transition(current, new_status)
        except IllegalTransitionError:
            logger.warning(
                "Invalid transition attempted",
                extra={
                    "possession_id": str(possession_id),
                    "from_status": current.value,
                    "to_status": new_status.value,
                    "actor": actor,
                },
            )
            raise

        changes = self._transition_changes(record, new_status, payload)

        errors: dict[str, str] = {}
        _check_lengths(errors, changes)
        for name in ("survey_date", "handover_date"):
            _check_not_before(errors, name, changes.get(name), record.init_date)
            if getattr(payload, name) is not None and not _stage_reached(record, name, new_status):
                errors[name] = f"Cannot be set when moving to {new_status.value}"
        if errors:
            raise ValidationFailedError(errors)

        if not is_active_status(current) and is_active_status(new_status):
            other = await self._store.find_active_for_plot(
                record.plot_id, exclude_id=record.possession_id
            )
            if other is not None:
                raise DuplicateActivePossessionError(record.plot_id, other.possession_code)

        if new_status == PossessionStatus.HANDED_OVER and self._enforce_handover_gate:
            validation = await self._evaluate_handover(record, changes)
            if not validation.is_valid:
                logger.info(
                    "Handover blocked by readiness gate",
                    extra={
                        "possession_id": str(possession_id),
                        "missing": list(validation.failures),
                    },
                )
                raise ValidationFailedError(validation.failures)

        plot_id = record.plot_id
        try:
            # Savepoint keeps the transaction usable if the active-plot index fires
            async with self._session.begin_nested():
                for name, value in changes.items():
                    setattr(record, name, value)
                record.status = new_status
                self._touch(record, actor)
                await self._store.save(record)
        except DuplicateActivePossessionError as e:
            if e.existing_code is not None:
                raise
            raise await self._store.duplicate_for_plot(plot_id, exclude_id=possession_id) from e

        logger.info(
            "Possession status changed",
            extra={
                "possession_id": str(possession_id),
                "possession_code": record.possession_code,
                "from_status": current.value,
                "to_status": new_status.value,
                "actor": actor,
            },
        )
        return TransitionResult(current, new_status, True, record)

    def _transition_changes(
        self,
        record: Possession,
        new_status: PossessionStatus,
        payload: TransitionPayload,
    ) -> dict[str, Any]:
        """Field updates implied by a transition, without applying them."""
        changes: dict[str, Any] = {}
        now = self._clock()

        if payload.survey_date is not None:
            changes["survey_date"] = payload.survey_date
        elif new_status == PossessionStatus.SURVEYED and record.survey_date is None:
            changes["survey_date"] = now

        if payload.handover_date is not None:
            changes["handover_date"] = payload.handover_date
        elif new_status == PossessionStatus.HANDED_OVER and record.handover_date is None:
            changes["handover_date"] = now

        if payload.remarks is not None:
            changes[_REMARKS_FIELD.get(new_status, "remarks")] = payload.remarks
        if payload.survey_person:
            changes["survey_person"] = payload.survey_person.strip()
        for slot, reference in payload.attachments.items():
            changes[ATTACHMENT_COLUMNS[slot]] = reference
        return changes

    async def bulk_transition(
        self,
        possession_ids: Iterable[UUID],
        new_status: PossessionStatus,
        *,
        remarks: str | None = None,
        actor: str,
    ) -> BulkTransitionResult:
        """Apply the same transition to many records, independently.

        Each record runs in its own savepoint, so one failure neither aborts
        the batch nor leaves partial writes.

        Returns:
            Counts of records found and actually changed, plus one
            ``"<id>: <message>"`` entry per failure.
        """
        matched = 0
        modified = 0
        errors: list[str] = []

        for possession_id in possession_ids:
            try:
                async with self._session.begin_nested():
                    result = await self.transition(
                        possession_id,
                        new_status,
                        TransitionPayload(remarks=remarks),
                        actor=actor,
                    )
            except PossessionNotFoundError as e:
                errors.append(f"{possession_id}: {e.message}")
                continue
            except PossessionError as e:
                matched += 1
                errors.append(f"{possession_id}: {e.message}")
                continue
            except CollaboratorError as e:
                logger.warning(
                    "Bulk transition item failed on a collaborator lookup",
                    extra={"possession_id": str(possession_id), "error": str(e)},
                )
                matched += 1
                errors.append(f"{possession_id}: {e}")
                continue
            matched += 1
            if result.changed:
                modified += 1

        logger.info(
            "Bulk transition finished",
            extra={
                "to_status": new_status.value,
                "matched": matched,
                "modified": modified,
                "failed": len(errors),
                "actor": actor,
            },
        )
        return BulkTransitionResult(matched=matched, modified=modified, errors=errors)

    # -------------------------------------------------------------------------
    # Handover
    # -------------------------------------------------------------------------

    async def validate_handover(self, possession_id: UUID) -> HandoverValidation:
        """Check every handover requirement for a record. Read-only."""
        record = await self._store.get(possession_id)
        return await self._evaluate_handover(record, {})

    async def _evaluate_handover(
        self, record: Possession, overrides: dict[str, Any]
    ) -> HandoverValidation:
        def value(name: str) -> Any:
            return overrides.get(name, getattr(record, name))

        plot_ready, payment_completed = await asyncio.gather(
            self._plot_ready(record.plot_id),
            self._payment_completed(record.file_id),
        )

        failures: dict[str, str] = {}
        if not plot_ready:
            failures["plot"] = "Plot is not ready for possession"
        if not payment_completed:
            failures["file_payments"] = "File payments are not completed"
        if value("survey_date") is None:
            failures["survey_date"] = "Survey date is required"
        if not value("survey_person"):
            failures["survey_person"] = "Surveyor name is required"
        if not value("attachment_certificate"):
            failures["attachment_certificate"] = "Signed certificate is required"
        if not value("attachment_photo"):
            failures["attachment_photo"] = "Site photo is required"

        return HandoverValidation(
            is_valid=not failures,
            missing_fields=list(failures.values()),
            failures=failures,
        )

    async def _plot_ready(self, plot_id: str) -> bool:
        try:
            readiness = await self._collaborators.plots.get_plot_readiness(plot_id)
        except CollaboratorNotFoundError:
            return False
        return readiness.is_ready_for_possession

    async def _payment_completed(self, file_id: str) -> bool:
        try:
            status = await self._collaborators.files.get_file_payment_status(file_id)
        except CollaboratorNotFoundError:
            return False
        return status.is_completed

    async def generate_handover_certificate(
        self, possession_id: UUID, request: CertificateRequest, *, actor: str
    ) -> HandoverCertificate:
        """Assemble a handover certificate for a handed-over record.

        Stores the certificate document reference, when given, in the
        certificate slot.

        Raises:
            ValidationFailedError: The record is not HANDED_OVER.
        """
        record = await self._store.get(possession_id)
        if record.status != PossessionStatus.HANDED_OVER:
            raise ValidationFailedError(
                {"status": "Certificate can only be generated for handed-over possessions"}
            )

        plot, file, officer = await asyncio.gather(
            self._collaborators.plots.get_plot_details(record.plot_id),
            self._collaborators.files.get_file_details(record.file_id),
            self._collaborators.staff.get_officer_details(record.handover_officer_id),
        )

        if request.certificate_ref:
            errors: dict[str, str] = {}
            _check_lengths(errors, {"attachment_certificate": request.certificate_ref})
            if errors:
                raise ValidationFailedError(errors)
            record.attachment_certificate = request.certificate_ref
            self._touch(record, actor)
            await self._store.save(record)

        logger.info(
            "Handover certificate generated",
            extra={
                "possession_id": str(possession_id),
                "certificate_number": request.certificate_number,
                "actor": actor,
            },
        )
        return HandoverCertificate(
            certificate_number=request.certificate_number,
            certificate_date=request.certificate_date,
            issued_by=request.issued_by,
            authorized_signatory=request.authorized_signatory,
            possession=record,
            plot=plot,
            file=file,
            officer=officer,
        )

    def _touch(self, record: Possession, actor: str) -> None:
        record.updated_at = self._clock()
        record.updated_by = actor
