from admission.domain.models import (
    AppointmentStatus,
    DenialCategory,
    RuleContext,
    ValidationResult,
)

S = AppointmentStatus

# Secondary guard for the persistence boundary; timing is not considered here.
STATUS_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.CONFIRMED, S.CHECKED_IN, S.CANCELLED, S.NO_SHOW, S.RESCHEDULED}),
    S.CONFIRMED: frozenset({S.CHECKED_IN, S.CANCELLED, S.NO_SHOW, S.RESCHEDULED}),
    S.CHECKED_IN: frozenset({S.IN_CONSULTATION, S.COMPLETED, S.CANCELLED}),
    S.IN_CONSULTATION: frozenset({S.COMPLETED}),
    # Only to book a follow-up.
    S.COMPLETED: frozenset({S.RESCHEDULED}),
    S.CANCELLED: frozenset({S.RESCHEDULED}),
    S.NO_SHOW: frozenset({S.RESCHEDULED}),
    S.RESCHEDULED: frozenset({S.SCHEDULED, S.CONFIRMED}),
}


def allowed_transitions(current: AppointmentStatus) -> frozenset[AppointmentStatus]:
    return STATUS_TRANSITIONS.get(current, frozenset())


def can_transition_to_status(
    current: AppointmentStatus,
    target: AppointmentStatus,
    context: RuleContext | None = None,
) -> ValidationResult:
    """Check ``current -> target`` against the transition table.

    ``context.allow_override`` skips the table entirely.
    """
    if context is not None and context.allow_override:
        return ValidationResult.ok("Transition allowed by override.")

    if target in allowed_transitions(current):
        return ValidationResult.ok()

    allowed = sorted(s.label for s in allowed_transitions(current))
    hint = f" Allowed: {', '.join(allowed)}." if allowed else ""
    return ValidationResult.deny(
        f"Cannot change status from {current.label} to {target.label}.{hint}",
        DenialCategory.INVALID_TRANSITION,
    )
