import datetime as dt
from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from admission.domain.exceptions import InvalidAppointmentError


class AppointmentStatus(str, Enum):
    """Lifecycle states an appointment can be in."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    IN_CONSULTATION = "in_consultation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ")


class AdmissionAction(str, Enum):
    """Actions front-desk staff can take on an appointment."""

    CHECK_IN = "check_in"
    START_CONSULTATION = "start_consultation"
    COMPLETE = "complete"
    CANCEL = "cancel"
    NO_SHOW = "no_show"
    RESCHEDULE = "reschedule"
    VIEW_HISTORY = "view_history"


class DenialCategory(str, Enum):
    STATE_MISMATCH = "state-mismatch"
    TOO_EARLY = "too-early"
    TOO_LATE = "too-late"
    OUTSIDE_OPERATING_HOURS = "outside-operating-hours"
    COOLDOWN_ACTIVE = "cooldown-active"
    INVALID_TRANSITION = "invalid-transition"
    INVALID_SLOT = "invalid-slot"
    MISSING_DETAILS = "missing-details"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Statuses whose appointment still occupies its slot.
SLOT_HOLDING_STATUSES = frozenset(
    {AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED, AppointmentStatus.CHECKED_IN}
)

ACTION_TO_STATUS: dict[AdmissionAction, AppointmentStatus | None] = {
    AdmissionAction.CHECK_IN: AppointmentStatus.CHECKED_IN,
    AdmissionAction.START_CONSULTATION: AppointmentStatus.IN_CONSULTATION,
    AdmissionAction.COMPLETE: AppointmentStatus.COMPLETED,
    AdmissionAction.CANCEL: AppointmentStatus.CANCELLED,
    AdmissionAction.NO_SHOW: AppointmentStatus.NO_SHOW,
    AdmissionAction.RESCHEDULE: AppointmentStatus.RESCHEDULED,
    AdmissionAction.VIEW_HISTORY: None,
}


class Appointment(BaseModel):
    """Snapshot of an appointment as the admission rules see it.

    ``scheduled_at`` may be naive (read as clinic-local time) or aware.
    ``version`` increments on every persisted status change.
    """

    model_config = ConfigDict(frozen=True)

    appointment_id: str | None = None
    patient_id: str | None = None
    scheduled_at: dt.datetime
    status: AppointmentStatus
    last_updated_at: dt.datetime | None = None
    version: int = 0

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Appointment":
        """Build an appointment from a raw storage row.

        Raises:
            InvalidAppointmentError: If the status is unknown or a timestamp
                is missing or unparseable.
        """
        try:
            return cls.model_validate(dict(record))
        except ValidationError as exc:
            fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"])
            raise InvalidAppointmentError(f"Malformed appointment record ({fields})") from exc


class ValidationResult(BaseModel):
    """Outcome of a rule check. ``reason`` is shown to clinic staff as-is."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    reason: str | None = None
    category: DenialCategory | None = None
    minutes: int | None = None

    @classmethod
    def ok(cls, reason: str | None = None) -> "ValidationResult":
        return cls(valid=True, reason=reason)

    @classmethod
    def deny(
        cls, reason: str, category: DenialCategory, minutes: int | None = None
    ) -> "ValidationResult":
        return cls(valid=False, reason=reason, category=category, minutes=minutes)


class RuleContext(BaseModel):
    """Run-time parameters for a rule evaluation.

    ``allow_override`` relaxes time windows and the cooldown, never the
    status preconditions. ``user_role`` is recorded but not yet used to
    scope overrides.
    """

    model_config = ConfigDict(frozen=True)

    current_time: dt.datetime | None = None
    allow_override: bool = False
    user_role: str | None = None


class ActionAvailability(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: AdmissionAction
    valid: bool
    reason: str | None = None
    category: DenialCategory | None = None
    target_status: AppointmentStatus | None = None


class UrgencyAssessment(BaseModel):
    """Dashboard hint about an appointment that needs staff attention."""

    model_config = ConfigDict(frozen=True)

    urgent: bool
    severity: Severity | None = None
    reason: str | None = None
    minutes: int | None = None


class ActionCountdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: AdmissionAction
    available: bool
    minutes_until: int | None = None
    message: str | None = None


class StatusChangeRecord(BaseModel):
    """Audit entry written for every persisted status change."""

    model_config = ConfigDict(frozen=True)

    appointment_id: str
    # None for confirmations, which are not admission actions.
    action: AdmissionAction | None = None
    from_status: AppointmentStatus
    to_status: AppointmentStatus
    previous_scheduled_at: dt.datetime | None = None
    new_scheduled_at: dt.datetime | None = None
    reason: str | None = None
    changed_by_role: str | None = None
    changed_at: dt.datetime
