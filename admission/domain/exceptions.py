from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from admission.domain.models import ValidationResult


class AdmissionError(Exception):
    """Base exception for all admission-related errors."""


class InvalidAppointmentError(AdmissionError):
    """Raised when an appointment snapshot cannot be interpreted.

    This signals a caller defect (unknown status, missing or unparseable
    timestamp), not an ordinary rule denial.
    """


class AppointmentNotFoundError(AdmissionError):
    """Raised when the requested appointment does not exist."""

    def __init__(self, appointment_id: str) -> None:
        self.appointment_id = appointment_id
        super().__init__(f"Appointment not found: {appointment_id}")


class AppointmentStoreError(AdmissionError):
    """Raised when the appointment store fails unexpectedly."""


class ConcurrentModificationError(AdmissionError):
    """Raised when the appointment changed between read and write."""

    def __init__(self, appointment_id: str, expected_version: int, actual_version: int) -> None:
        self.appointment_id = appointment_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Appointment {appointment_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class StatusChangeRejectedError(AdmissionError):
    """Raised when a status change is denied by the admission rules."""

    def __init__(self, result: "ValidationResult", appointment_id: str | None = None) -> None:
        self.result = result
        self.reason = result.reason or "Status change not allowed."
        self.appointment_id = appointment_id
        super().__init__(f"Status change rejected: {self.reason}")
