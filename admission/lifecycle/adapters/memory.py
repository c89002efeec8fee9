import asyncio
import datetime as dt
from collections.abc import Iterable

from admission.domain.exceptions import AppointmentNotFoundError, ConcurrentModificationError
from admission.domain.models import SLOT_HOLDING_STATUSES, Appointment, StatusChangeRecord


class InMemoryAppointmentRepository:
    """In-process implementation of ``AppointmentRepositoryProtocol``.

    Seed it with appointments up front or via ``add``.  Set ``get_error``,
    ``update_error`` or ``history_error`` to make the corresponding step
    raise on the next call; a failing status change leaves both the
    appointment and the history untouched.

    After calls, inspect ``appointments`` and ``history`` to verify what was
    written.
    """

    def __init__(self, appointments: Iterable[Appointment] = ()) -> None:
        self.appointments: dict[str, Appointment] = {}
        self.history: list[StatusChangeRecord] = []
        self._lock = asyncio.Lock()

        self.get_error: Exception | None = None
        self.update_error: Exception | None = None
        self.history_error: Exception | None = None

        for appointment in appointments:
            self.add(appointment)

    def add(self, appointment: Appointment) -> None:
        if not appointment.appointment_id:
            raise ValueError("appointment_id is required to store an appointment")
        self.appointments[appointment.appointment_id] = appointment

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        if self.get_error:
            raise self.get_error
        return self.appointments.get(appointment_id)

    async def find_active_at(
        self, scheduled_at: dt.datetime, exclude_id: str | None = None
    ) -> list[Appointment]:
        if self.get_error:
            raise self.get_error
        return [
            a
            for a in self.appointments.values()
            if a.appointment_id != exclude_id
            and a.status in SLOT_HOLDING_STATUSES
            and a.scheduled_at == scheduled_at
        ]

    async def save_status_change(
        self, appointment: Appointment, expected_version: int, record: StatusChangeRecord
    ) -> Appointment:
        if self.update_error:
            raise self.update_error
        appointment_id = appointment.appointment_id or ""
        async with self._lock:
            stored = self.appointments.get(appointment_id)
            if stored is None:
                raise AppointmentNotFoundError(appointment_id)
            if stored.version != expected_version:
                raise ConcurrentModificationError(appointment_id, expected_version, stored.version)
            if self.history_error:
                raise self.history_error
            self.appointments[appointment_id] = appointment
            self.history.append(record)
        return appointment

    async def list_history(self, appointment_id: str) -> list[StatusChangeRecord]:
        return [r for r in self.history if r.appointment_id == appointment_id]
