import datetime as dt
from typing import NoReturn

from loguru import logger

from admission.domain.exceptions import (
    AdmissionError,
    AppointmentNotFoundError,
    AppointmentStoreError,
    InvalidAppointmentError,
    StatusChangeRejectedError,
)
from admission.domain.models import (
    ACTION_TO_STATUS,
    ActionAvailability,
    AdmissionAction,
    Appointment,
    AppointmentStatus,
    DenialCategory,
    RuleContext,
    StatusChangeRecord,
    ValidationResult,
)
from admission.lifecycle.ports import (
    AbstractAppointmentStatusService,
    AppointmentRepositoryProtocol,
)
from admission.rules.calendar import date_to_us_long, time_to_12h
from admission.rules.engine import AdmissionRules
from admission.rules.transitions import can_transition_to_status


class AppointmentStatusService(AbstractAppointmentStatusService):
    """Applies status changes after re-running the admission rules.

    This is the server-side gate: UI checks are advisory, this one is not.
    Mutual exclusion for the write itself is left to the repository's
    version check.

    A reschedule leaves the appointment ``rescheduled`` at its new time;
    ``confirm`` puts it back on the admission path.
    """

    def __init__(self, repository: AppointmentRepositoryProtocol, rules: AdmissionRules) -> None:
        self._repository = repository
        self._rules = rules

    async def get_appointment(self, appointment_id: str) -> Appointment:
        try:
            appointment = await self._repository.get_appointment(appointment_id)
        except AdmissionError:
            raise
        except Exception as exc:
            raise AppointmentStoreError(f"Appointment lookup failed: {exc}") from exc

        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment

    async def available_actions(
        self, appointment_id: str, *, context: RuleContext | None = None
    ) -> list[ActionAvailability]:
        appointment = await self.get_appointment(appointment_id)
        return self._rules.available_actions(appointment, context=context)

    async def history(self, appointment_id: str) -> list[StatusChangeRecord]:
        await self.get_appointment(appointment_id)
        return await self._repository.list_history(appointment_id)

    async def change_status(
        self,
        appointment_id: str,
        action: AdmissionAction | str,
        *,
        context: RuleContext | None = None,
        new_scheduled_at: dt.datetime | None = None,
        reason: str | None = None,
    ) -> Appointment:
        """Re-run the transition table and action rules, then persist."""
        try:
            action = AdmissionAction(action)
        except ValueError as exc:
            raise InvalidAppointmentError(f"Unknown admission action: {action!r}") from exc
        logger.info("Status change requested: appointment={}, action={}", appointment_id, action.value)

        appointment = await self.get_appointment(appointment_id)
        now = self._rules.resolve_now(context=context)
        target = ACTION_TO_STATUS[action]

        if target is None:
            self._reject(
                appointment_id,
                ValidationResult.deny(
                    "Viewing history does not change the appointment status.",
                    DenialCategory.STATE_MISMATCH,
                ),
            )
        self._check_transition(appointment_id, appointment, target, context)
        result = self._rules.validate_action(action, appointment, now, context)
        if not result.valid:
            self._reject(appointment_id, result)

        if action is AdmissionAction.RESCHEDULE:
            if new_scheduled_at is None:
                self._reject(
                    appointment_id,
                    ValidationResult.deny(
                        "A new appointment time is required to reschedule.",
                        DenialCategory.MISSING_DETAILS,
                    ),
                )
            await self._check_new_slot(appointment_id, new_scheduled_at, now)
        else:
            new_scheduled_at = None
        if action is AdmissionAction.CANCEL and not (reason or "").strip():
            self._reject(
                appointment_id,
                ValidationResult.deny(
                    "A reason is required to cancel an appointment.",
                    DenialCategory.MISSING_DETAILS,
                ),
            )

        return await self._apply(
            appointment, target, action, now, reason, context, new_scheduled_at=new_scheduled_at
        )

    async def confirm(
        self, appointment_id: str, *, context: RuleContext | None = None
    ) -> Appointment:
        logger.info("Confirmation requested: appointment={}", appointment_id)

        appointment = await self.get_appointment(appointment_id)
        now = self._rules.resolve_now(context=context)
        self._check_transition(appointment_id, appointment, AppointmentStatus.CONFIRMED, context)
        result = self._rules.can_confirm_appointment(appointment, now, context)
        if not result.valid:
            self._reject(appointment_id, result)

        return await self._apply(appointment, AppointmentStatus.CONFIRMED, None, now, None, context)

    def _check_transition(
        self,
        appointment_id: str,
        appointment: Appointment,
        target: AppointmentStatus,
        context: RuleContext | None,
    ) -> None:
        if appointment.status == target:
            self._reject(
                appointment_id,
                ValidationResult.deny(
                    f"Appointment is already {target.label}.", DenialCategory.STATE_MISMATCH
                ),
            )
        result = can_transition_to_status(appointment.status, target, context)
        if not result.valid:
            self._reject(appointment_id, result)

    async def _check_new_slot(
        self, appointment_id: str, scheduled_at: dt.datetime, now: dt.datetime
    ) -> None:
        slot = self._rules.validate_new_appointment_time(scheduled_at, now)
        if not slot.valid:
            self._reject(appointment_id, slot)

        try:
            clashes = await self._repository.find_active_at(scheduled_at, exclude_id=appointment_id)
        except AdmissionError:
            raise
        except Exception as exc:
            raise AppointmentStoreError(f"Slot lookup failed: {exc}") from exc

        if clashes:
            self._reject(
                appointment_id,
                ValidationResult.deny(
                    "Another appointment is already booked at that time. Choose a different slot.",
                    DenialCategory.INVALID_SLOT,
                ),
            )

    async def _apply(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        action: AdmissionAction | None,
        now: dt.datetime,
        reason: str | None,
        context: RuleContext | None,
        new_scheduled_at: dt.datetime | None = None,
    ) -> Appointment:
        update: dict[str, object] = {
            "status": target,
            "last_updated_at": now,
            "version": appointment.version + 1,
        }
        if new_scheduled_at is not None:
            update["scheduled_at"] = new_scheduled_at
        updated = appointment.model_copy(update=update)
        record = self._audit_record(appointment, updated, action, now, reason, context)

        try:
            saved = await self._repository.save_status_change(
                updated, expected_version=appointment.version, record=record
            )
        except AdmissionError:
            raise
        except Exception as exc:
            logger.exception("Unexpected store failure while changing appointment status")
            raise AppointmentStoreError(
                f"Failed to save status change for appointment {appointment.appointment_id}: {exc}"
            ) from exc

        logger.info(
            "Appointment {} moved {} -> {}",
            appointment.appointment_id,
            appointment.status.value,
            saved.status.value,
        )
        return saved

    def _reject(self, appointment_id: str, result: ValidationResult) -> NoReturn:
        logger.info(
            "Status change rejected: appointment={}, category={}",
            appointment_id,
            result.category.value if result.category else "-",
        )
        raise StatusChangeRejectedError(result, appointment_id=appointment_id)

    def _audit_record(
        self,
        before: Appointment,
        after: Appointment,
        action: AdmissionAction | None,
        now: dt.datetime,
        reason: str | None,
        context: RuleContext | None,
    ) -> StatusChangeRecord:
        rescheduled = after.scheduled_at != before.scheduled_at
        if not reason:
            if rescheduled:
                local = self._rules.calendar.localize(after.scheduled_at)
                reason = f"Rescheduled to {date_to_us_long(local.date())} at {time_to_12h(local.time())}"
            else:
                reason = f"Status change: {before.status.label} -> {after.status.label}"

        return StatusChangeRecord(
            appointment_id=after.appointment_id or "",
            action=action,
            from_status=before.status,
            to_status=after.status,
            previous_scheduled_at=before.scheduled_at if rescheduled else None,
            new_scheduled_at=after.scheduled_at if rescheduled else None,
            reason=reason,
            changed_by_role=context.user_role if context else None,
            changed_at=now,
        )
