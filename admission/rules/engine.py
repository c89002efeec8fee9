import datetime as dt
from collections.abc import Callable, Sequence
from typing import NamedTuple

from loguru import logger

from admission.config import AppConfig, BusinessRules
from admission.domain.exceptions import InvalidAppointmentError
from admission.domain.models import (
    ACTION_TO_STATUS,
    ActionAvailability,
    ActionCountdown,
    AdmissionAction,
    Appointment,
    AppointmentStatus,
    DenialCategory,
    RuleContext,
    Severity,
    UrgencyAssessment,
    ValidationResult,
)
from admission.rules.calendar import (
    ClinicCalendar,
    format_minutes,
    minutes_since,
    minutes_until,
    time_to_12h,
)

S = AppointmentStatus

UPCOMING_STATUSES = frozenset({S.SCHEDULED, S.CONFIRMED})
RESCHEDULABLE_STATUSES = frozenset({S.SCHEDULED, S.CONFIRMED, S.CANCELLED, S.NO_SHOW, S.COMPLETED})
CONFIRMABLE_STATUSES = frozenset({S.SCHEDULED, S.RESCHEDULED})

# Happy-path order; cancel and no-show are never suggested.
SUGGESTION_ORDER: tuple[AdmissionAction, ...] = (
    AdmissionAction.CHECK_IN,
    AdmissionAction.START_CONSULTATION,
    AdmissionAction.COMPLETE,
)


class _Evaluation(NamedTuple):
    # Timestamps are UTC; localize before reading an hour or weekday.
    appointment: Appointment
    status: AppointmentStatus
    scheduled_at: dt.datetime
    now: dt.datetime
    last_updated_at: dt.datetime | None
    override: bool


Rule = Callable[[_Evaluation], ValidationResult | None]


def _require_status(allowed: frozenset[AppointmentStatus], message: str) -> Rule:
    def rule(ev: _Evaluation) -> ValidationResult | None:
        if ev.status in allowed:
            return None
        return ValidationResult.deny(
            message.format(status=ev.status.label), DenialCategory.STATE_MISMATCH
        )

    return rule


def _time_window(rule: Rule) -> Rule:
    """Mark ``rule`` as a time constraint that an override may skip."""

    def guarded(ev: _Evaluation) -> ValidationResult | None:
        return None if ev.override else rule(ev)

    return guarded


def _coerce_action(action: AdmissionAction | str) -> AdmissionAction:
    try:
        return AdmissionAction(action)
    except ValueError as exc:
        raise InvalidAppointmentError(f"Unknown admission action: {action!r}") from exc


def _first_failure(rules: Sequence[Rule], ev: _Evaluation) -> ValidationResult:
    for rule in rules:
        result = rule(ev)
        if result is not None:
            return result
    return ValidationResult.ok()


class AdmissionRules:
    """Decides which lifecycle actions an appointment allows at a given moment.

    Every method is a pure function of its arguments and the injected
    ``BusinessRules``; nothing is cached or mutated, so one instance can be
    shared freely. Denials come back as ``ValidationResult`` values. Only
    malformed input raises (``InvalidAppointmentError``).
    """

    def __init__(
        self,
        rules: BusinessRules | None = None,
        timezone: dt.tzinfo | str = "America/Mexico_City",
    ) -> None:
        self.rules = rules if rules is not None else BusinessRules()
        self.calendar = ClinicCalendar(self.rules, timezone)
        self._validators: dict[AdmissionAction, Callable[..., ValidationResult]] = {
            AdmissionAction.CHECK_IN: self.can_check_in,
            AdmissionAction.START_CONSULTATION: self.can_start_consultation,
            AdmissionAction.COMPLETE: self.can_complete_appointment,
            AdmissionAction.CANCEL: self.can_cancel_appointment,
            AdmissionAction.NO_SHOW: self.can_mark_no_show,
            AdmissionAction.RESCHEDULE: self.can_reschedule_appointment,
            AdmissionAction.VIEW_HISTORY: self.can_view_history,
        }

    @classmethod
    def from_config(cls, config: AppConfig) -> "AdmissionRules":
        return cls(config.rules, config.clinic_timezone)

    # ---- input handling ----

    def resolve_now(
        self, now: dt.datetime | None = None, context: RuleContext | None = None
    ) -> dt.datetime:
        if now is None and context is not None:
            now = context.current_time
        if now is None:
            return self.calendar.now()
        if not isinstance(now, dt.datetime):
            raise InvalidAppointmentError(f"Evaluation time must be a datetime, got {now!r}")
        return self.calendar.localize(now)

    def _evaluate(
        self,
        appointment: Appointment,
        now: dt.datetime | None,
        context: RuleContext | None,
    ) -> _Evaluation:
        try:
            status = AppointmentStatus(appointment.status)
        except ValueError as exc:
            raise InvalidAppointmentError(
                f"Unknown appointment status: {appointment.status!r}"
            ) from exc

        if not isinstance(appointment.scheduled_at, dt.datetime):
            raise InvalidAppointmentError("Appointment has no valid scheduled time")
        last = appointment.last_updated_at
        if last is not None and not isinstance(last, dt.datetime):
            raise InvalidAppointmentError("Appointment has an unparseable last update time")

        return _Evaluation(
            appointment=appointment,
            status=status,
            scheduled_at=self.calendar.to_utc(appointment.scheduled_at),
            now=self.calendar.to_utc(self.resolve_now(now, context)),
            last_updated_at=self.calendar.to_utc(last) if last is not None else None,
            override=bool(context and context.allow_override),
        )

    # ---- shared rules ----

    def _cooldown(self, ev: _Evaluation) -> ValidationResult | None:
        if ev.last_updated_at is None or ev.override:
            return None
        ends = ev.last_updated_at + dt.timedelta(minutes=self.rules.rapid_change_cooldown_minutes)
        if ev.now >= ends:
            return None
        remaining = minutes_until(ev.now, ends)
        return ValidationResult.deny(
            "Appointment was updated moments ago. "
            f"Wait {format_minutes(remaining)} before changing it again.",
            DenialCategory.COOLDOWN_ACTIVE,
            remaining,
        )

    def _require_work_hours(self, activity: str) -> Rule:
        def rule(ev: _Evaluation) -> ValidationResult | None:
            if self.calendar.is_within_work_hours(ev.now):
                return None
            return ValidationResult.deny(
                f"{activity} is only available during clinic hours "
                f"({self.calendar.hours_label()}, {self.calendar.work_days_label()}).",
                DenialCategory.OUTSIDE_OPERATING_HOURS,
            )

        return rule

    def _not_lunch_time(self, ev: _Evaluation) -> ValidationResult | None:
        if not self.calendar.is_lunch_time(ev.now):
            return None
        lunch_end = self.calendar.localize(ev.now).replace(
            hour=self.rules.lunch_end_hour % 24, minute=0, second=0, microsecond=0
        )
        remaining = minutes_until(ev.now, lunch_end)
        return ValidationResult.deny(
            f"Consultations cannot start during the lunch break ({self.calendar.lunch_label()}). "
            f"Available in {format_minutes(remaining)}.",
            DenialCategory.OUTSIDE_OPERATING_HOURS,
            remaining,
        )

    # ---- per-action rules ----

    def _check_in_window(self, ev: _Evaluation) -> ValidationResult | None:
        opens = ev.scheduled_at - dt.timedelta(minutes=self.rules.check_in_window_before_minutes)
        closes = ev.scheduled_at + dt.timedelta(minutes=self.rules.check_in_window_after_minutes)
        if ev.now < opens:
            remaining = minutes_until(ev.now, opens)
            return ValidationResult.deny(
                f"Too early to check in. Check-in opens at {time_to_12h(self.calendar.localize(opens).time())}, "
                f"available in {format_minutes(remaining)} "
                f"(appointment in {format_minutes(minutes_until(ev.now, ev.scheduled_at))}).",
                DenialCategory.TOO_EARLY,
                remaining,
            )
        if ev.now > closes:
            elapsed = minutes_until(closes, ev.now)
            return ValidationResult.deny(
                f"Check-in window closed {format_minutes(elapsed)} ago. "
                "Mark the patient as a no-show or reschedule the appointment.",
                DenialCategory.TOO_LATE,
                elapsed,
            )
        return None

    def _completion_deadline(self, ev: _Evaluation) -> ValidationResult | None:
        deadline = ev.scheduled_at + dt.timedelta(minutes=self.rules.completion_window_after_minutes)
        if ev.now <= deadline:
            return None
        elapsed = minutes_until(deadline, ev.now)
        return ValidationResult.deny(
            f"Completion deadline passed {format_minutes(elapsed)} ago "
            f"({self.rules.completion_window_after_minutes} minutes after the scheduled time). "
            "Consider rescheduling.",
            DenialCategory.TOO_LATE,
            elapsed,
        )

    def _not_in_past(self, verb: str) -> Rule:
        def rule(ev: _Evaluation) -> ValidationResult | None:
            if ev.scheduled_at >= ev.now:
                return None
            elapsed = minutes_until(ev.scheduled_at, ev.now)
            return ValidationResult.deny(
                f"Appointments in the past cannot be {verb} (scheduled {format_minutes(elapsed)} ago). "
                "Mark the patient as a no-show or reschedule instead.",
                DenialCategory.TOO_LATE,
                elapsed,
            )

        return rule

    def _no_show_grace(self, ev: _Evaluation) -> ValidationResult | None:
        threshold = ev.scheduled_at + dt.timedelta(minutes=self.rules.no_show_window_after_minutes)
        if ev.now >= threshold:
            return None
        remaining = minutes_until(ev.now, threshold)
        return ValidationResult.deny(
            f"Wait {format_minutes(remaining)} more before marking the patient as a no-show.",
            DenialCategory.TOO_EARLY,
            remaining,
        )

    def _reschedule_deadline(self, ev: _Evaluation) -> ValidationResult | None:
        if ev.status not in UPCOMING_STATUSES:
            return None
        deadline = ev.scheduled_at - dt.timedelta(hours=self.rules.reschedule_deadline_hours)
        if not deadline < ev.now < ev.scheduled_at:
            return None
        remaining = minutes_until(ev.now, ev.scheduled_at)
        return ValidationResult.deny(
            "Appointments cannot be rescheduled less than "
            f"{self.rules.reschedule_deadline_hours} hours in advance "
            f"(starts in {format_minutes(remaining)}).",
            DenialCategory.TOO_LATE,
            remaining,
        )

    # ---- action validators ----

    def can_check_in(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        return _first_failure(
            [
                _require_status(UPCOMING_STATUSES, "Cannot check in an appointment that is {status}."),
                self._cooldown,
                _time_window(self._check_in_window),
                _time_window(self._require_work_hours("Check-in")),
            ],
            self._evaluate(appointment, now, context),
        )

    def can_start_consultation(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        return _first_failure(
            [
                _require_status(
                    frozenset({S.CHECKED_IN}),
                    "The patient must be checked in to start the consultation (status is {status}).",
                ),
                self._cooldown,
                _time_window(self._require_work_hours("Starting a consultation")),
                _time_window(self._not_lunch_time),
            ],
            self._evaluate(appointment, now, context),
        )

    def can_complete_appointment(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        return _first_failure(
            [
                _require_status(
                    frozenset({S.IN_CONSULTATION}),
                    "Only a consultation in progress can be completed (status is {status}).",
                ),
                self._cooldown,
                _time_window(self._completion_deadline),
            ],
            self._evaluate(appointment, now, context),
        )

    def can_cancel_appointment(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        return _first_failure(
            [
                _require_status(UPCOMING_STATUSES, "Cannot cancel an appointment that is {status}."),
                self._cooldown,
                _time_window(self._not_in_past("cancelled")),
            ],
            self._evaluate(appointment, now, context),
        )

    def can_mark_no_show(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        return _first_failure(
            [
                _require_status(
                    UPCOMING_STATUSES, "Cannot mark an appointment that is {status} as a no-show."
                ),
                self._cooldown,
                _time_window(self._no_show_grace),
            ],
            self._evaluate(appointment, now, context),
        )

    def can_reschedule_appointment(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        return _first_failure(
            [
                _require_status(
                    RESCHEDULABLE_STATUSES, "Cannot reschedule an appointment that is {status}."
                ),
                self._cooldown,
                _time_window(self._reschedule_deadline),
            ],
            self._evaluate(appointment, now, context),
        )

    def can_confirm_appointment(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        """Confirm a booked or freshly rescheduled slot.

        Not an ``AdmissionAction``; the status service exposes it as ``confirm``.
        """
        return _first_failure(
            [
                _require_status(CONFIRMABLE_STATUSES, "Cannot confirm an appointment that is {status}."),
                self._cooldown,
                _time_window(self._not_in_past("confirmed")),
            ],
            self._evaluate(appointment, now, context),
        )

    def can_view_history(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        return ValidationResult.ok()

    def validate_action(
        self,
        action: AdmissionAction | str,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> ValidationResult:
        action = _coerce_action(action)

        result = self._validators[action](appointment, now, context)
        if not result.valid:
            logger.debug(
                "Action {} denied for appointment {} ({}): {}",
                action.value,
                appointment.appointment_id,
                result.category.value if result.category else "-",
                result.reason,
            )
        return result

    # ---- aggregate queries ----

    def available_actions(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> list[ActionAvailability]:
        """Evaluate every action at a single instant."""
        moment = self.resolve_now(now, context)
        availability = []
        for action in AdmissionAction:
            result = self.validate_action(action, appointment, moment, context)
            availability.append(
                ActionAvailability(
                    action=action,
                    valid=result.valid,
                    reason=result.reason,
                    category=result.category,
                    target_status=ACTION_TO_STATUS[action],
                )
            )
        return availability

    def suggest_next_action(
        self,
        appointment: Appointment,
        now: dt.datetime | None = None,
        context: RuleContext | None = None,
    ) -> AdmissionAction | None:
        moment = self.resolve_now(now, context)
        for action in SUGGESTION_ORDER:
            if self.validate_action(action, appointment, moment, context).valid:
                return action
        return None

    def needs_urgent_attention(
        self, appointment: Appointment, now: dt.datetime | None = None
    ) -> UrgencyAssessment:
        """Flag appointments that front-desk staff should look at.

        Advisory only; no action is gated on this.
        """
        ev = self._evaluate(appointment, now, None)
        rules = self.rules

        def severity_for(minutes: int) -> Severity:
            return Severity.HIGH if minutes > rules.high_severity_minutes else Severity.MEDIUM

        if ev.status is S.CHECKED_IN:
            waiting = minutes_since(ev.scheduled_at, ev.now)
            if waiting > rules.urgent_wait_minutes:
                return UrgencyAssessment(
                    urgent=True,
                    severity=severity_for(waiting),
                    reason=f"Patient checked in and waiting for {format_minutes(waiting)}.",
                    minutes=waiting,
                )

        elif ev.status in UPCOMING_STATUSES:
            overdue = minutes_since(ev.scheduled_at, ev.now)
            if overdue > rules.urgent_wait_minutes:
                return UrgencyAssessment(
                    urgent=True,
                    severity=severity_for(overdue),
                    reason=f"No check-in {format_minutes(overdue)} after the scheduled time.",
                    minutes=overdue,
                )
            starts_in = minutes_until(ev.now, ev.scheduled_at)
            if starts_in <= rules.upcoming_attention_minutes:
                return UrgencyAssessment(
                    urgent=True,
                    severity=Severity.LOW,
                    reason=(
                        f"Appointment starts in {format_minutes(starts_in)}."
                        if starts_in > 0
                        else f"Appointment started {format_minutes(overdue)} ago without check-in."
                    ),
                    minutes=starts_in,
                )

        elif ev.status is S.IN_CONSULTATION:
            overdue = minutes_since(ev.scheduled_at, ev.now)
            if overdue > rules.completion_window_after_minutes:
                return UrgencyAssessment(
                    urgent=True,
                    severity=Severity.HIGH,
                    reason=f"Consultation still open {format_minutes(overdue)} after the scheduled time.",
                    minutes=overdue,
                )

        return UrgencyAssessment(urgent=False)

    def time_until_action_available(
        self,
        appointment: Appointment,
        action: AdmissionAction | str,
        now: dt.datetime | None = None,
    ) -> ActionCountdown:
        """Countdown for actions that open at a fixed offset from the scheduled time."""
        action = _coerce_action(action)
        ev = self._evaluate(appointment, now, None)

        if action is AdmissionAction.CHECK_IN:
            opens_at = ev.scheduled_at - dt.timedelta(minutes=self.rules.check_in_window_before_minutes)
            label = "Check-in"
        elif action is AdmissionAction.NO_SHOW:
            opens_at = ev.scheduled_at + dt.timedelta(minutes=self.rules.no_show_window_after_minutes)
            label = "Marking as no-show"
        else:
            return ActionCountdown(action=action, available=True)

        if ev.now >= opens_at:
            return ActionCountdown(action=action, available=True)
        remaining = minutes_until(ev.now, opens_at)
        return ActionCountdown(
            action=action,
            available=False,
            minutes_until=remaining,
            message=f"{label} available in {format_minutes(remaining)}",
        )

    # ---- booking ----

    def validate_new_appointment_time(
        self,
        scheduled_at: dt.datetime | str,
        now: dt.datetime | None = None,
    ) -> ValidationResult:
        """Check that a proposed slot is bookable.

        Used for new bookings and for the target time of a reschedule.
        Overrides do not apply; these rules describe the slot itself.
        """
        if isinstance(scheduled_at, str):
            try:
                scheduled_at = dt.datetime.fromisoformat(scheduled_at)
            except ValueError as exc:
                raise InvalidAppointmentError(f"Unparseable appointment time: {scheduled_at!r}") from exc
        if not isinstance(scheduled_at, dt.datetime):
            raise InvalidAppointmentError("Appointment time must be a datetime")

        candidate = self.calendar.localize(scheduled_at)
        moment = self.calendar.to_utc(self.resolve_now(now))

        if self.calendar.to_utc(candidate) <= moment:
            return ValidationResult.deny(
                "The new appointment time must be in the future.", DenialCategory.TOO_LATE
            )
        if not self.calendar.is_work_day(candidate):
            return ValidationResult.deny(
                f"Appointments can only be booked on work days ({self.calendar.work_days_label()}).",
                DenialCategory.OUTSIDE_OPERATING_HOURS,
            )
        if not self.calendar.is_within_work_hours(candidate):
            return ValidationResult.deny(
                f"Appointment time is outside clinic hours ({self.calendar.hours_label()}).",
                DenialCategory.OUTSIDE_OPERATING_HOURS,
            )
        if self.calendar.is_lunch_time(candidate):
            return ValidationResult.deny(
                f"Appointments cannot be booked during the lunch break ({self.calendar.lunch_label()}).",
                DenialCategory.OUTSIDE_OPERATING_HOURS,
            )
        if not self.calendar.is_slot_aligned(candidate):
            return ValidationResult.deny(
                f"Appointments must start on a {self.rules.slot_duration_minutes}-minute boundary.",
                DenialCategory.INVALID_SLOT,
            )
        horizon = moment + dt.timedelta(days=self.rules.max_advance_days)
        if self.calendar.to_utc(candidate) > horizon:
            return ValidationResult.deny(
                f"Appointments cannot be booked more than {self.rules.max_advance_days} days ahead.",
                DenialCategory.INVALID_SLOT,
            )
        return ValidationResult.ok()
