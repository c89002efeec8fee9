import datetime as dt
from abc import ABC, abstractmethod
from typing import Protocol

from admission.domain.models import (
    ActionAvailability,
    AdmissionAction,
    Appointment,
    RuleContext,
    StatusChangeRecord,
)


class AbstractAppointmentStatusService(ABC):
    """Abstract base class for guarded appointment status changes."""

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Appointment:
        """Load an appointment.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist.
            AppointmentStoreError: If the store fails unexpectedly.
        """

    @abstractmethod
    async def change_status(
        self,
        appointment_id: str,
        action: AdmissionAction | str,
        *,
        context: RuleContext | None = None,
        new_scheduled_at: dt.datetime | None = None,
        reason: str | None = None,
    ) -> Appointment:
        """Validate and persist the status change implied by ``action``.

        Args:
            appointment_id: The appointment's unique ID.
            action: The admission action being performed.
            context: Evaluation time, override flag and acting role.
            new_scheduled_at: Target slot, required for ``reschedule``.
            reason: Free-text reason, required for ``cancel``.

        Returns:
            The stored appointment after the change.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist.
            StatusChangeRejectedError: If any rule denies the change.
            ConcurrentModificationError: If the appointment changed since it was read.
            AppointmentStoreError: If the store fails unexpectedly.
        """

    @abstractmethod
    async def available_actions(
        self, appointment_id: str, *, context: RuleContext | None = None
    ) -> list[ActionAvailability]:
        """Every action with its availability at a single instant."""

    @abstractmethod
    async def confirm(
        self, appointment_id: str, *, context: RuleContext | None = None
    ) -> Appointment:
        """Move a scheduled or rescheduled appointment to confirmed.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist.
            StatusChangeRejectedError: If the appointment cannot be confirmed now.
            ConcurrentModificationError: If the appointment changed since it was read.
            AppointmentStoreError: If the store fails unexpectedly.
        """

    @abstractmethod
    async def history(self, appointment_id: str) -> list[StatusChangeRecord]:
        """Audit records for an appointment, oldest first."""


class AppointmentRepositoryProtocol(Protocol):
    """Persistence collaborator for appointment status changes.

    Implementations own mutual exclusion for the status write:
    ``save_status_change`` must check ``expected_version``, store the
    appointment and append the audit record as one atomic step.
    """

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        """Fetch an appointment, or None if it does not exist."""
        ...

    async def find_active_at(
        self, scheduled_at: dt.datetime, exclude_id: str | None = None
    ) -> list[Appointment]:
        """Appointments in a slot-holding status booked at exactly ``scheduled_at``."""
        ...

    async def save_status_change(
        self, appointment: Appointment, expected_version: int, record: StatusChangeRecord
    ) -> Appointment:
        """Store ``appointment`` and its audit ``record`` if the stored copy is still at ``expected_version``.

        Nothing is written when any part fails.

        Raises:
            AppointmentNotFoundError: If the appointment no longer exists.
            ConcurrentModificationError: If another writer bumped the version.
        """
        ...

    async def list_history(self, appointment_id: str) -> list[StatusChangeRecord]:
        """Audit records for an appointment, oldest first."""
        ...
