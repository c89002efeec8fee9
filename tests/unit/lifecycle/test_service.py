import datetime as dt
from zoneinfo import ZoneInfo

import pytest

from admission.domain.exceptions import (
    AppointmentNotFoundError,
    AppointmentStoreError,
    ConcurrentModificationError,
    InvalidAppointmentError,
    StatusChangeRejectedError,
)
from admission.domain.models import (
    AdmissionAction,
    AppointmentStatus,
    DenialCategory,
    RuleContext,
)
from admission.lifecycle.adapters.memory import InMemoryAppointmentRepository
from admission.lifecycle.service import AppointmentStatusService
from factories import at, make_appointment

# Fixtures (rules, repository, service) provided by tests/conftest.py

S = AppointmentStatus
A = AdmissionAction
CLINIC_TZ = ZoneInfo("America/Mexico_City")


def ctx(now: dt.datetime, **kwargs: object) -> RuleContext:
    return RuleContext(current_time=now, **kwargs)


class TestChangeStatus:
    @pytest.mark.asyncio
    async def test_check_in_persists_and_audits(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.CONFIRMED, appointment_id="a1"))

        saved = await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45), user_role="nurse"))

        assert saved.status == S.CHECKED_IN
        assert saved.version == 1
        assert saved.last_updated_at == at(9, 45).replace(tzinfo=CLINIC_TZ)
        assert repository.appointments["a1"] == saved

        [record] = repository.history
        assert record.from_status == S.CONFIRMED
        assert record.to_status == S.CHECKED_IN
        assert record.action == A.CHECK_IN
        assert record.changed_by_role == "nurse"
        assert record.reason == "Status change: confirmed -> checked in"
        assert record.new_scheduled_at is None

    @pytest.mark.asyncio
    async def test_full_visit(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 50)))
        await service.change_status("a1", A.START_CONSULTATION, context=ctx(at(10, 0)))
        saved = await service.change_status("a1", A.COMPLETE, context=ctx(at(10, 40)))

        assert saved.status == S.COMPLETED
        assert saved.version == 3
        assert [r.to_status for r in await service.history("a1")] == [
            S.CHECKED_IN,
            S.IN_CONSULTATION,
            S.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_rule_denial_is_raised_and_nothing_saved(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        original = make_appointment(S.SCHEDULED, appointment_id="a1")
        repository.add(original)

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 0)))

        assert exc_info.value.result.category == DenialCategory.TOO_EARLY
        assert "30 minutes" in exc_info.value.reason
        assert repository.appointments["a1"] == original
        assert repository.history == []

    @pytest.mark.asyncio
    async def test_transition_table_is_checked(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.IN_CONSULTATION, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status("a1", A.CANCEL, context=ctx(at(9, 0)), reason="Patient left")

        assert exc_info.value.result.category == DenialCategory.INVALID_TRANSITION

    @pytest.mark.asyncio
    async def test_override_never_skips_status_precondition(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status(
                "a1", A.COMPLETE, context=ctx(at(10, 0), allow_override=True, user_role="admin")
            )

        assert exc_info.value.result.category == DenialCategory.STATE_MISMATCH

    @pytest.mark.asyncio
    async def test_override_skips_time_windows(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        saved = await service.change_status("a1", A.CHECK_IN, context=ctx(at(7, 0), allow_override=True))

        assert saved.status == S.CHECKED_IN

    @pytest.mark.asyncio
    async def test_rapid_second_change_hits_cooldown(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))
        await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45)))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status("a1", A.START_CONSULTATION, context=ctx(at(9, 46)))

        assert exc_info.value.result.category == DenialCategory.COOLDOWN_ACTIVE
        saved = await service.change_status("a1", A.START_CONSULTATION, context=ctx(at(9, 48)))
        assert saved.status == S.IN_CONSULTATION

    @pytest.mark.asyncio
    async def test_same_status_is_rejected(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.CANCELLED, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError, match="already cancelled"):
            await service.change_status("a1", A.CANCEL, context=ctx(at(9, 0)), reason="dup")

    @pytest.mark.asyncio
    async def test_view_history_is_not_a_status_change(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError):
            await service.change_status("a1", A.VIEW_HISTORY, context=ctx(at(9, 0)))

    @pytest.mark.asyncio
    async def test_unknown_action(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        with pytest.raises(InvalidAppointmentError, match="Unknown admission action"):
            await service.change_status("a1", "teleport", context=ctx(at(9, 45)))

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, service: AppointmentStatusService) -> None:
        with pytest.raises(AppointmentNotFoundError, match="missing"):
            await service.change_status("missing", A.CHECK_IN, context=ctx(at(9, 45)))


class TestCancel:
    @pytest.mark.asyncio
    async def test_requires_reason(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status("a1", A.CANCEL, context=ctx(at(9, 0)), reason="   ")

        assert exc_info.value.result.category == DenialCategory.MISSING_DETAILS

    @pytest.mark.asyncio
    async def test_records_reason(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        saved = await service.change_status(
            "a1", A.CANCEL, context=ctx(at(9, 0)), reason="Patient called in sick"
        )

        assert saved.status == S.CANCELLED
        assert repository.history[0].reason == "Patient called in sick"


class TestReschedule:
    @pytest.mark.asyncio
    async def test_moves_appointment_and_records_both_times(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))
        new_time = at(11, 0, day=5)

        saved = await service.change_status(
            "a1", A.RESCHEDULE, context=ctx(at(7, 0)), new_scheduled_at=new_time
        )

        assert saved.status == S.RESCHEDULED
        assert saved.scheduled_at == new_time
        [record] = repository.history
        assert record.previous_scheduled_at == at(10, 0)
        assert record.new_scheduled_at == new_time
        assert record.reason == "Rescheduled to March 5, 2024 at 11:00 AM"

    @pytest.mark.asyncio
    async def test_requires_new_time(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.NO_SHOW, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status("a1", A.RESCHEDULE, context=ctx(at(11, 0)))

        assert exc_info.value.result.category == DenialCategory.MISSING_DETAILS

    @pytest.mark.asyncio
    async def test_rejects_unbookable_slot(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.COMPLETED, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status(
                "a1", A.RESCHEDULE, context=ctx(at(11, 0)), new_scheduled_at=at(12, 30, day=5)
            )

        assert exc_info.value.result.category == DenialCategory.OUTSIDE_OPERATING_HOURS


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_wraps_unexpected_lookup_error(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.get_error = RuntimeError("connection reset")

        with pytest.raises(AppointmentStoreError, match="connection reset"):
            await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45)))

    @pytest.mark.asyncio
    async def test_wraps_unexpected_write_error(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))
        repository.update_error = RuntimeError("disk full")

        with pytest.raises(AppointmentStoreError, match="disk full"):
            await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45)))

    @pytest.mark.asyncio
    async def test_propagates_concurrent_modification(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))
        repository.update_error = ConcurrentModificationError("a1", expected_version=0, actual_version=1)

        with pytest.raises(ConcurrentModificationError):
            await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45)))

    @pytest.mark.asyncio
    async def test_malformed_stored_appointment_surfaces(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        from admission.domain.models import Appointment

        repository.add(Appointment.model_construct(appointment_id="a1", scheduled_at=None, status=S.SCHEDULED))

        with pytest.raises(InvalidAppointmentError):
            await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45)))


class TestQueries:
    @pytest.mark.asyncio
    async def test_available_actions(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.CONFIRMED, appointment_id="a1"))

        availability = {
            a.action: a.valid
            for a in await service.available_actions("a1", context=ctx(at(9, 45)))
        }

        assert availability[A.CHECK_IN] is True
        assert availability[A.COMPLETE] is False

    @pytest.mark.asyncio
    async def test_history_of_unknown_appointment(self, service: AppointmentStatusService) -> None:
        with pytest.raises(AppointmentNotFoundError):
            await service.history("nope")


class TestConfirm:
    @pytest.mark.asyncio
    async def test_rescheduled_appointment_returns_to_admission_path(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))
        new_time = at(10, 0, day=5)

        await service.change_status("a1", A.RESCHEDULE, context=ctx(at(7, 0)), new_scheduled_at=new_time)
        stuck = {a.action for a in await service.available_actions("a1", context=ctx(at(9, 45, day=5))) if a.valid}
        assert stuck == {A.VIEW_HISTORY}

        confirmed = await service.confirm("a1", context=ctx(at(7, 5)))
        checked_in = await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45, day=5)))

        assert confirmed.status == S.CONFIRMED
        assert checked_in.status == S.CHECKED_IN
        assert checked_in.scheduled_at == new_time
        assert [(r.action, r.to_status) for r in await service.history("a1")] == [
            (A.RESCHEDULE, S.RESCHEDULED),
            (None, S.CONFIRMED),
            (A.CHECK_IN, S.CHECKED_IN),
        ]

    @pytest.mark.asyncio
    async def test_confirms_scheduled_appointment(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        saved = await service.confirm("a1", context=ctx(at(8, 0), user_role="receptionist"))

        assert saved.status == S.CONFIRMED
        assert repository.history[0].reason == "Status change: scheduled -> confirmed"
        assert repository.history[0].changed_by_role == "receptionist"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "category"),
        [
            (S.CONFIRMED, DenialCategory.STATE_MISMATCH),
            (S.CHECKED_IN, DenialCategory.INVALID_TRANSITION),
            (S.CANCELLED, DenialCategory.INVALID_TRANSITION),
        ],
        ids=["already-confirmed", "checked-in", "cancelled"],
    )
    async def test_rejects_other_statuses(
        self,
        service: AppointmentStatusService,
        repository: InMemoryAppointmentRepository,
        status: AppointmentStatus,
        category: DenialCategory,
    ) -> None:
        repository.add(make_appointment(status, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.confirm("a1", context=ctx(at(8, 0)))

        assert exc_info.value.result.category == category

    @pytest.mark.asyncio
    async def test_rejects_appointment_in_the_past(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.confirm("a1", context=ctx(at(10, 30)))

        assert exc_info.value.result.category == DenialCategory.TOO_LATE


class TestAuditAtomicity:
    @pytest.mark.asyncio
    async def test_failed_audit_write_keeps_previous_status(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        original = make_appointment(S.CONFIRMED, appointment_id="a1")
        repository.add(original)
        repository.history_error = RuntimeError("audit down")

        with pytest.raises(AppointmentStoreError, match="audit down"):
            await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45)))

        assert repository.appointments["a1"] == original
        assert repository.history == []

    @pytest.mark.asyncio
    async def test_retry_after_audit_failure_succeeds(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.CONFIRMED, appointment_id="a1"))
        repository.history_error = RuntimeError("audit down")
        with pytest.raises(AppointmentStoreError):
            await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 45)))

        repository.history_error = None
        saved = await service.change_status("a1", A.CHECK_IN, context=ctx(at(9, 46)))

        assert saved.status == S.CHECKED_IN
        assert len(repository.history) == 1


class TestRescheduleSlotClash:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("holder_status", [S.SCHEDULED, S.CONFIRMED, S.CHECKED_IN])
    async def test_rejects_slot_held_by_another_appointment(
        self,
        service: AppointmentStatusService,
        repository: InMemoryAppointmentRepository,
        holder_status: AppointmentStatus,
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))
        repository.add(make_appointment(holder_status, scheduled_at=at(11, 0, day=5), appointment_id="a2"))

        with pytest.raises(StatusChangeRejectedError) as exc_info:
            await service.change_status(
                "a1", A.RESCHEDULE, context=ctx(at(7, 0)), new_scheduled_at=at(11, 0, day=5)
            )

        assert exc_info.value.result.category == DenialCategory.INVALID_SLOT
        assert repository.appointments["a1"].status == S.SCHEDULED

    @pytest.mark.asyncio
    async def test_slot_freed_by_cancellation_can_be_taken(
        self, service: AppointmentStatusService, repository: InMemoryAppointmentRepository
    ) -> None:
        repository.add(make_appointment(S.SCHEDULED, appointment_id="a1"))
        repository.add(make_appointment(S.CANCELLED, scheduled_at=at(11, 0, day=5), appointment_id="a2"))

        saved = await service.change_status(
            "a1", A.RESCHEDULE, context=ctx(at(7, 0)), new_scheduled_at=at(11, 0, day=5)
        )

        assert saved.status == S.RESCHEDULED
