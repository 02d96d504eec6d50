"""Tests for the possession lifecycle service.

Tests cover:
- Creation, field validation and one-active-record-per-plot
- Status transitions: stamping, remarks routing, no-ops, illegal moves
- Reopening cancelled records
- The handover readiness gate
- Letter collection, survey and detail updates, attachments
- Bulk transitions with per-item isolation
- Handover certificates and soft delete policy
- Optimistic concurrency and concurrent creation
"""

import asyncio
from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest

from possession.db.models.base import AttachmentSlot, PossessionStatus
from possession.services.collaborators import CollaboratorUnavailableError
from possession.services.errors import (
    ConflictingConcurrentUpdateError,
    DuplicateActivePossessionError,
    IllegalTransitionError,
    PossessionNotFoundError,
    ValidationFailedError,
)
from possession.services.lifecycle import (
    CertificateRequest,
    NewPossession,
    PossessionLifecycleService,
    TransitionPayload,
)
from possession.services.store import PossessionStore
from tests.factories import FixedClock, create_collaborators, mark_ready

S = PossessionStatus

HANDOVER_DOCUMENTS = {
    AttachmentSlot.CERTIFICATE: "s3://possession-documents/cert",
    AttachmentSlot.PHOTO: "s3://possession-documents/photo",
}


def new_request(clock, plot_id="P1", file_id="F1", **overrides) -> NewPossession:
    values = {
        "file_id": file_id,
        "plot_id": plot_id,
        "handover_officer_id": "staff-7",
        "init_date": clock() - timedelta(days=1),
    }
    values.update(overrides)
    return NewPossession(**values)


async def create_ready(service, clock, collaborators, plot_id="P1", file_id="F1"):
    """Create a record and walk it to READY with handover checks satisfied."""
    mark_ready(collaborators, plot_id, file_id)
    record = await service.create(new_request(clock, plot_id, file_id), actor="staff-1")
    await service.transition(
        record.possession_id,
        S.SURVEYED,
        TransitionPayload(survey_person="A. Khan"),
        actor="staff-1",
    )
    await service.transition(record.possession_id, S.READY, actor="staff-1")
    return record


def miss_first_plot_lookup():
    """Patch the active-plot lookup to miss once, as a racing writer would see it.

    Returns the patcher and the list of looked-up plots.
    """
    real_lookup = PossessionStore.find_active_for_plot
    calls = []

    async def lookup(self, plot_id, **kwargs):
        calls.append(plot_id)
        if len(calls) == 1:
            return None
        return await real_lookup(self, plot_id, **kwargs)

    return patch.object(PossessionStore, "find_active_for_plot", lookup), calls


async def hand_over(service, record):
    return await service.transition(
        record.possession_id,
        S.HANDED_OVER,
        TransitionPayload(attachments=dict(HANDOVER_DOCUMENTS)),
        actor="staff-1",
    )


class TestCreate:
    async def test_creates_requested_record(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        assert record.possession_code == "POS-20250101-001"
        assert record.status == S.REQUESTED
        assert record.letter_collected is False
        assert record.created_by == "staff-1"
        assert record.is_deleted is False

    async def test_trims_references(self, service, clock):
        record = await service.create(
            new_request(clock, plot_id="  P9 ", file_id=" F9"), actor="staff-1"
        )

        assert record.plot_id == "P9"
        assert record.file_id == "F9"

    async def test_reports_every_invalid_field(self, service, clock):
        request = new_request(
            clock,
            plot_id="",
            file_id=" ",
            handover_officer_id="",
            init_date=clock() + timedelta(days=1),
            latitude=91.0,
            longitude=-181.0,
        )

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.create(request, actor="staff-1")

        assert set(exc_info.value.fields) == {
            "plot_id",
            "file_id",
            "handover_officer_id",
            "init_date",
            "latitude",
            "longitude",
        }
        assert exc_info.value.errors["init_date"] == "Init date cannot be in the future"

    async def test_missing_init_date(self, service, clock):
        with pytest.raises(ValidationFailedError) as exc_info:
            await service.create(new_request(clock, init_date=None), actor="staff-1")

        assert exc_info.value.fields == ["init_date"]

    async def test_remarks_length_is_bounded(self, service, clock):
        with pytest.raises(ValidationFailedError) as exc_info:
            await service.create(new_request(clock, remarks="x" * 1001), actor="staff-1")

        assert exc_info.value.fields == ["remarks"]

    async def test_second_active_record_for_plot_is_rejected(self, service, clock):
        first = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(DuplicateActivePossessionError) as exc_info:
            await service.create(new_request(clock, file_id="F2"), actor="staff-1")

        assert exc_info.value.existing_code == first.possession_code
        assert first.possession_code in exc_info.value.message

    async def test_on_hold_record_still_blocks_the_plot(self, service, clock):
        first = await service.create(new_request(clock), actor="staff-1")
        await service.transition(first.possession_id, S.ON_HOLD, actor="staff-1")

        with pytest.raises(DuplicateActivePossessionError):
            await service.create(new_request(clock), actor="staff-1")

    async def test_allowed_after_cancellation(self, service, clock):
        first = await service.create(new_request(clock), actor="staff-1")
        await service.transition(first.possession_id, S.CANCELLED, actor="staff-1")

        second = await service.create(new_request(clock), actor="staff-1")

        assert second.possession_code == "POS-20250101-002"

    async def test_allowed_after_handover(self, service, clock, collaborators):
        first = await create_ready(service, clock, collaborators)
        await hand_over(service, first)

        second = await service.create(new_request(clock), actor="staff-1")

        assert second.status == S.REQUESTED

    async def test_allowed_after_soft_delete(self, service, clock):
        first = await service.create(new_request(clock), actor="staff-1")
        await service.delete(first.possession_id, actor="staff-1")

        second = await service.create(new_request(clock), actor="staff-1")

        assert second.possession_id != first.possession_id


class TestExampleScenario:
    """Walk one plot from request to handover."""

    async def test_request_to_handover(self, service, clock, collaborators):
        mark_ready(collaborators, "P1", "F1")

        record = await service.create(new_request(clock), actor="staff-1")
        assert record.status == S.REQUESTED
        assert record.possession_code == "POS-20250101-001"

        clock.advance(hours=2)
        surveyed = await service.transition(
            record.possession_id,
            S.SURVEYED,
            TransitionPayload(survey_person="A. Khan"),
            actor="staff-1",
        )
        assert surveyed.record.survey_date == clock()
        assert surveyed.record.survey_person == "A. Khan"

        with pytest.raises(IllegalTransitionError) as exc_info:
            await service.transition(record.possession_id, S.HANDED_OVER, actor="staff-1")
        assert exc_info.value.current_status == S.SURVEYED
        assert exc_info.value.requested_status == S.HANDED_OVER

        await service.transition(record.possession_id, S.READY, actor="staff-1")

        with pytest.raises(DuplicateActivePossessionError) as dup_info:
            await service.create(new_request(clock), actor="staff-1")
        assert dup_info.value.existing_code == "POS-20250101-001"

        clock.advance(days=3)
        handed = await hand_over(service, record)
        assert handed.new_status == S.HANDED_OVER
        assert handed.record.handover_date == clock()
        assert handed.record.attachment_certificate == HANDOVER_DOCUMENTS[AttachmentSlot.CERTIFICATE]


class TestTransition:
    async def test_same_status_is_a_no_op(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        updated_at = record.updated_at
        version = record.version_id
        clock.advance(hours=1)

        result = await service.transition(
            record.possession_id, S.REQUESTED, TransitionPayload(remarks="ignored"), actor="x"
        )

        assert result.changed is False
        assert result.record.updated_at == updated_at
        assert result.record.version_id == version
        assert result.record.remarks is None
        assert result.record.updated_by == "staff-1"

    async def test_illegal_transition_leaves_record_untouched(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(IllegalTransitionError) as exc_info:
            await service.transition(
                record.possession_id,
                S.READY,
                TransitionPayload(remarks="too early"),
                actor="staff-2",
            )

        assert exc_info.value.allowed == [S.SURVEYED, S.CANCELLED, S.ON_HOLD]
        assert record.status == S.REQUESTED
        assert record.remarks is None

    async def test_handed_over_is_terminal(self, service, clock, collaborators):
        record = await create_ready(service, clock, collaborators)
        await hand_over(service, record)

        with pytest.raises(IllegalTransitionError):
            await service.transition(record.possession_id, S.CANCELLED, actor="staff-1")

    async def test_payload_survey_date_wins_over_stamp(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        surveyed_at = clock() - timedelta(hours=6)

        result = await service.transition(
            record.possession_id,
            S.SURVEYED,
            TransitionPayload(survey_date=surveyed_at),
            actor="staff-1",
        )

        assert result.record.survey_date == surveyed_at

    async def test_existing_survey_date_is_kept(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        surveyed_at = clock() - timedelta(hours=6)
        await service.update_survey_info(
            record.possession_id, survey_person="B. Ali", survey_date=surveyed_at, actor="s"
        )

        result = await service.transition(record.possession_id, S.SURVEYED, actor="staff-1")

        assert result.record.survey_date == surveyed_at

    async def test_survey_date_before_init_date_is_rejected(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.transition(
                record.possession_id,
                S.SURVEYED,
                TransitionPayload(survey_date=clock() - timedelta(days=5)),
                actor="staff-1",
            )

        assert exc_info.value.fields == ["survey_date"]
        assert record.status == S.REQUESTED
        assert record.survey_date is None

    @pytest.mark.parametrize(
        ("target", "field"),
        [
            (S.SURVEYED, "survey_remarks"),
            (S.ON_HOLD, "remarks"),
            (S.CANCELLED, "remarks"),
        ],
    )
    async def test_remarks_follow_target_status(self, service, clock, target, field):
        record = await service.create(new_request(clock), actor="staff-1")

        result = await service.transition(
            record.possession_id, target, TransitionPayload(remarks="note"), actor="staff-1"
        )

        assert getattr(result.record, field) == "note"

    async def test_handover_remarks(self, service, clock, collaborators):
        record = await create_ready(service, clock, collaborators)

        result = await service.transition(
            record.possession_id,
            S.HANDED_OVER,
            TransitionPayload(remarks="keys handed", attachments=dict(HANDOVER_DOCUMENTS)),
            actor="staff-1",
        )

        assert result.record.handover_remarks == "keys handed"
        assert result.record.remarks is None

    async def test_stamps_actor_and_time(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        clock.advance(minutes=5)

        result = await service.transition(record.possession_id, S.ON_HOLD, actor="staff-9")

        assert result.record.updated_by == "staff-9"
        assert result.record.updated_at == clock()

    async def test_unknown_record(self, service):
        with pytest.raises(PossessionNotFoundError):
            await service.transition(uuid4(), S.SURVEYED, actor="staff-1")

    async def test_reopen_cancelled_record(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        await service.transition(record.possession_id, S.CANCELLED, actor="staff-1")

        result = await service.transition(record.possession_id, S.REQUESTED, actor="staff-1")

        assert result.new_status == S.REQUESTED

    async def test_reopen_blocked_by_newer_active_record(self, service, clock):
        first = await service.create(new_request(clock), actor="staff-1")
        await service.transition(first.possession_id, S.CANCELLED, actor="staff-1")
        second = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(DuplicateActivePossessionError) as exc_info:
            await service.transition(first.possession_id, S.REQUESTED, actor="staff-1")

        assert exc_info.value.existing_code == second.possession_code
        assert first.status == S.CANCELLED


class TestHandoverGate:
    async def test_reports_every_missing_requirement(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        validation = await service.validate_handover(record.possession_id)

        assert validation.is_valid is False
        assert list(validation.failures) == [
            "plot",
            "file_payments",
            "survey_date",
            "survey_person",
            "attachment_certificate",
            "attachment_photo",
        ]
        assert "Signed certificate is required" in validation.missing_fields
        assert "Site photo is required" in validation.missing_fields

    async def test_plot_not_ready(self, service, clock, collaborators):
        record = await create_ready(service, clock, collaborators)
        collaborators.plots.readiness["P1"] = False

        validation = await service.validate_handover(record.possession_id)

        assert validation.failures == {
            "plot": "Plot is not ready for possession",
            "attachment_certificate": "Signed certificate is required",
            "attachment_photo": "Site photo is required",
        }

    async def test_validation_is_read_only(self, service, clock, collaborators):
        record = await create_ready(service, clock, collaborators)
        version = record.version_id

        await service.validate_handover(record.possession_id)

        assert record.status == S.READY
        assert record.version_id == version

    async def test_blocks_handover_with_missing_documents(self, service, clock, collaborators):
        record = await create_ready(service, clock, collaborators)

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.transition(record.possession_id, S.HANDED_OVER, actor="staff-1")

        assert set(exc_info.value.fields) == {"attachment_certificate", "attachment_photo"}
        assert record.status == S.READY
        assert record.handover_date is None

    async def test_payload_documents_satisfy_the_gate(self, service, clock, collaborators):
        record = await create_ready(service, clock, collaborators)

        result = await hand_over(service, record)

        assert result.record.status == S.HANDED_OVER
        assert result.record.attachment_photo == HANDOVER_DOCUMENTS[AttachmentSlot.PHOTO]

    async def test_gate_can_be_disabled(self, session, clock):
        service = PossessionLifecycleService(
            session, create_collaborators(), enforce_handover_gate=False, clock=clock
        )
        record = await service.create(new_request(clock), actor="staff-1")
        await service.transition(record.possession_id, S.SURVEYED, actor="staff-1")
        await service.transition(record.possession_id, S.READY, actor="staff-1")

        result = await service.transition(record.possession_id, S.HANDED_OVER, actor="staff-1")

        assert result.record.status == S.HANDED_OVER


class TestCollectorInfo:
    async def test_requires_name_and_nic_together(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_collector_info(record.possession_id, collected=True, actor="s")

        assert set(exc_info.value.fields) == {"collector_name", "collector_nic"}
        assert record.letter_collected is False

    async def test_rejects_malformed_nic(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_collector_info(
                record.possession_id,
                collected=True,
                collector_name="Bilal",
                collector_nic="12345",
                actor="s",
            )

        assert exc_info.value.fields == ["collector_nic"]

    @pytest.mark.parametrize("nic", ["35202-1234567-1", "3520212345671"])
    async def test_collection_date_defaults_to_now(self, service, clock, nic):
        record = await service.create(new_request(clock), actor="staff-1")

        updated = await service.update_collector_info(
            record.possession_id,
            collected=True,
            collector_name=" Bilal ",
            collector_nic=nic,
            actor="s",
        )

        assert updated.letter_collected is True
        assert updated.collector_name == "Bilal"
        assert updated.collection_date == clock()

    async def test_collection_date_before_init_date(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_collector_info(
                record.possession_id,
                collected=True,
                collector_name="Bilal",
                collector_nic="3520212345671",
                collection_date=clock() - timedelta(days=30),
                actor="s",
            )

        assert exc_info.value.fields == ["collection_date"]

    async def test_uncollect_clears_collector(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        await service.update_collector_info(
            record.possession_id,
            collected=True,
            collector_name="Bilal",
            collector_nic="3520212345671",
            actor="s",
        )

        updated = await service.update_collector_info(
            record.possession_id, collected=False, actor="s"
        )

        assert updated.letter_collected is False
        assert updated.collector_name is None
        assert updated.collection_date is None

    async def test_letter_status(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        letter = await service.letter_status(record.possession_id)

        assert letter.letter_collected is False
        assert letter.collector_name is None


class TestSurveyAndDetails:
    async def test_update_survey_info_keeps_status(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        updated = await service.update_survey_info(
            record.possession_id,
            survey_person="A. Khan",
            survey_remarks="boundary pillars present",
            latitude=31.5,
            longitude=74.3,
            actor="staff-3",
        )

        assert updated.status == S.REQUESTED
        assert updated.survey_date == clock()
        assert updated.latitude == 31.5
        assert updated.updated_by == "staff-3"

    async def test_update_survey_requires_person(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_survey_info(record.possession_id, survey_person=" ", actor="s")

        assert exc_info.value.fields == ["survey_person"]

    async def test_update_details(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        updated = await service.update_details(
            record.possession_id,
            {"remarks": "owner abroad", "handover_officer_id": "staff-8"},
            actor="staff-2",
        )

        assert updated.remarks == "owner abroad"
        assert updated.handover_officer_id == "staff-8"

    async def test_update_details_rejects_status(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_details(
                record.possession_id,
                {"status": S.HANDED_OVER, "possession_code": "X"},
                actor="staff-2",
            )

        assert set(exc_info.value.fields) == {"status", "possession_code"}
        assert record.status == S.REQUESTED

    async def test_update_details_validates_dates(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_details(
                record.possession_id,
                {"handover_date": clock() - timedelta(days=9), "latitude": 100.0},
                actor="staff-2",
            )

        assert set(exc_info.value.fields) == {"handover_date", "latitude"}

    @pytest.mark.parametrize("field", ["survey_date", "handover_date"])
    async def test_stage_dates_need_the_stage(self, service, clock, field):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.update_details(record.possession_id, {field: clock()}, actor="s")

        assert exc_info.value.fields == [field]
        assert getattr(record, field) is None

    async def test_survey_date_editable_once_surveyed(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        await service.transition(record.possession_id, S.SURVEYED, actor="staff-1")
        corrected = clock() - timedelta(hours=3)

        updated = await service.update_details(
            record.possession_id, {"survey_date": corrected}, actor="staff-2"
        )

        assert updated.survey_date == corrected

    async def test_survey_date_editable_while_on_hold_after_survey(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")
        await service.transition(record.possession_id, S.SURVEYED, actor="staff-1")
        await service.transition(record.possession_id, S.ON_HOLD, actor="staff-1")

        updated = await service.update_details(
            record.possession_id, {"survey_date": clock() - timedelta(hours=2)}, actor="s"
        )

        assert updated.status == S.ON_HOLD

    async def test_transition_cannot_carry_an_early_handover_date(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.transition(
                record.possession_id,
                S.SURVEYED,
                TransitionPayload(handover_date=clock()),
                actor="staff-1",
            )

        assert exc_info.value.fields == ["handover_date"]
        assert record.status == S.REQUESTED

    async def test_record_attachment(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        updated = await service.record_attachment(
            record.possession_id, AttachmentSlot.OTHER, "s3://bucket/key", actor="staff-4"
        )

        assert updated.attachment_other == "s3://bucket/key"
        assert updated.get_attachment(AttachmentSlot.OTHER) == "s3://bucket/key"


class TestBulkTransition:
    async def test_isolates_failures(self, service, clock):
        a = await service.create(new_request(clock, "P1", "F1"), actor="staff-1")
        b = await service.create(new_request(clock, "P2", "F2"), actor="staff-1")
        c = await service.create(new_request(clock, "P3", "F3"), actor="staff-1")
        await service.transition(c.possession_id, S.CANCELLED, actor="staff-1")
        missing = uuid4()

        result = await service.bulk_transition(
            [a.possession_id, b.possession_id, c.possession_id, missing],
            S.ON_HOLD,
            remarks="awaiting NOC",
            actor="staff-5",
        )

        assert result.matched == 3
        assert result.modified == 2
        assert len(result.errors) == 2
        assert result.errors[0].startswith(f"{c.possession_id}: ")
        assert result.errors[1].startswith(f"{missing}: ")
        held = await service.get(a.possession_id)
        assert held.status == S.ON_HOLD
        assert held.remarks == "awaiting NOC"
        assert (await service.get(c.possession_id)).status == S.CANCELLED

    async def test_unreachable_plot_service_fails_only_that_item(
        self, service, clock, collaborators
    ):
        a = await create_ready(service, clock, collaborators, "P1", "F1")
        b = await create_ready(service, clock, collaborators, "P2", "F2")
        for record in (a, b):
            for slot, reference in HANDOVER_DOCUMENTS.items():
                await service.record_attachment(
                    record.possession_id, slot, reference, actor="staff-1"
                )
        real_readiness = collaborators.plots.get_plot_readiness

        async def readiness(plot_id):
            if plot_id == "P2":
                raise CollaboratorUnavailableError("plot-service", "connection refused")
            return await real_readiness(plot_id)

        with patch.object(collaborators.plots, "get_plot_readiness", readiness):
            result = await service.bulk_transition(
                [a.possession_id, b.possession_id], S.HANDED_OVER, actor="staff-5"
            )

        assert (result.matched, result.modified) == (2, 1)
        assert result.errors == [
            f"{b.possession_id}: plot-service unavailable: connection refused"
        ]
        assert (await service.get(a.possession_id)).status == S.HANDED_OVER
        assert (await service.get(b.possession_id)).status == S.READY

    async def test_no_op_items_count_as_matched_only(self, service, clock):
        a = await service.create(new_request(clock), actor="staff-1")

        result = await service.bulk_transition([a.possession_id], S.REQUESTED, actor="staff-1")

        assert (result.matched, result.modified, result.errors) == (1, 0, [])


class TestCertificate:
    def certificate_request(self, clock, **overrides):
        values = {
            "certificate_number": "HC-2025-001",
            "certificate_date": clock(),
            "issued_by": "Estate Office",
            "authorized_signatory": "Director Estate",
        }
        values.update(overrides)
        return CertificateRequest(**values)

    async def test_requires_handed_over(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.generate_handover_certificate(
                record.possession_id, self.certificate_request(clock), actor="staff-1"
            )

        assert exc_info.value.fields == ["status"]

    async def test_combines_collaborator_data(self, service, clock, collaborators):
        record = await create_ready(service, clock, collaborators)
        await hand_over(service, record)

        certificate = await service.generate_handover_certificate(
            record.possession_id,
            self.certificate_request(clock, certificate_ref="s3://possession-documents/signed"),
            actor="staff-1",
        )

        assert certificate.certificate_number == "HC-2025-001"
        assert certificate.possession.attachment_certificate == "s3://possession-documents/signed"
        assert certificate.plot["plot_id"] == "P1"
        assert certificate.file["file_id"] == "F1"
        assert certificate.officer["staff_id"] == "staff-7"


class TestDelete:
    async def test_soft_delete_hides_record(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        await service.delete(record.possession_id, actor="staff-2")

        assert record.is_deleted is True
        assert record.deleted_at is not None
        with pytest.raises(PossessionNotFoundError):
            await service.get(record.possession_id)
        with pytest.raises(PossessionNotFoundError):
            await service.get_by_code(record.possession_code)

    async def test_handed_over_with_certificate_cannot_be_deleted(
        self, service, clock, collaborators
    ):
        record = await create_ready(service, clock, collaborators)
        await hand_over(service, record)

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.delete(record.possession_id, actor="staff-2")

        assert exc_info.value.fields == ["status"]
        assert record.is_deleted is False

    async def test_get_by_code_is_case_insensitive(self, service, clock):
        record = await service.create(new_request(clock), actor="staff-1")

        found = await service.get_by_code(record.possession_code.lower())

        assert found.possession_id == record.possession_id


class TestActivePlotIndex:
    """Writers that slip past the plot check are stopped by the unique index."""

    async def test_create_reports_code_holding_the_plot(self, service, session, clock):
        first = await service.create(new_request(clock, "P9"), actor="staff-1")
        await session.commit()
        first_code = first.possession_code
        patcher, lookups = miss_first_plot_lookup()

        with patcher, pytest.raises(DuplicateActivePossessionError) as exc_info:
            await service.create(new_request(clock, "P9"), actor="staff-2")

        assert lookups == ["P9", "P9"]
        assert exc_info.value.existing_code == first_code
        assert exc_info.value.to_detail() == {
            "plot_id": "P9",
            "existing_possession_code": first_code,
        }

    async def test_reopen_reports_code_holding_the_plot(self, service, session, clock):
        cancelled = await service.create(new_request(clock, "P9"), actor="staff-1")
        await service.transition(cancelled.possession_id, S.CANCELLED, actor="staff-1")
        holder = await service.create(new_request(clock, "P9"), actor="staff-1")
        await session.commit()
        holder_code = holder.possession_code
        patcher, _ = miss_first_plot_lookup()

        with patcher, pytest.raises(DuplicateActivePossessionError) as exc_info:
            await service.transition(cancelled.possession_id, S.REQUESTED, actor="staff-2")

        assert exc_info.value.existing_code == holder_code
        # The failed write is undone and the session stays usable
        assert (await service.get(cancelled.possession_id)).status == S.CANCELLED


class TestOptimisticConcurrency:
    async def test_stale_writer_gets_conflict(self, session_factory, clock):
        collaborators = create_collaborators()
        async with session_factory() as session:
            record = await PossessionLifecycleService(session, collaborators, clock=clock).create(
                new_request(clock), actor="staff-1"
            )
            await session.commit()

        async with session_factory() as first, session_factory() as second:
            stale = PossessionLifecycleService(second, collaborators, clock=clock)
            await stale.get(record.possession_id)
            # Keep the loaded copy but release the database lock
            await second.commit()

            fresh = PossessionLifecycleService(first, collaborators, clock=clock)
            await fresh.transition(record.possession_id, S.SURVEYED, actor="staff-1")
            await first.commit()

            with pytest.raises(ConflictingConcurrentUpdateError) as exc_info:
                await stale.transition(record.possession_id, S.ON_HOLD, actor="staff-2")

        assert exc_info.value.code == "conflicting_concurrent_update"


@pytest.mark.concurrency
class TestConcurrentCreation:
    async def test_same_plot_admits_one_active_record(self, session_factory):
        clock = FixedClock()
        collaborators = create_collaborators()

        async def create_one():
            async with session_factory() as session:
                service = PossessionLifecycleService(session, collaborators, clock=clock)
                record = await service.create(new_request(clock, "P-RACE"), actor="staff-1")
                await session.commit()
                return record.possession_code

        results = await asyncio.gather(*(create_one() for _ in range(10)), return_exceptions=True)

        created = [r for r in results if isinstance(r, str)]
        rejected = [r for r in results if isinstance(r, DuplicateActivePossessionError)]
        assert created == ["POS-20250101-001"]
        assert len(rejected) == 9
        assert {r.existing_code for r in rejected} == {"POS-20250101-001"}

    async def test_distinct_plots_get_sequential_codes(self, session_factory):
        clock = FixedClock()
        collaborators = create_collaborators()

        async def create_one(n: int) -> str:
            async with session_factory() as session:
                service = PossessionLifecycleService(session, collaborators, clock=clock)
                record = await service.create(
                    new_request(clock, f"P-{n}", f"F-{n}"), actor="staff-1"
                )
                await session.commit()
                return record.possession_code

        codes = await asyncio.gather(*(create_one(n) for n in range(50)))

        assert sorted(codes) == [f"POS-20250101-{n:03d}" for n in range(1, 51)]
