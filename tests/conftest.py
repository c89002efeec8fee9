import pytest

from admission.lifecycle.adapters.memory import InMemoryAppointmentRepository
from admission.lifecycle.service import AppointmentStatusService
from admission.rules.engine import AdmissionRules


@pytest.fixture
def rules() -> AdmissionRules:
    return AdmissionRules()


@pytest.fixture
def repository() -> InMemoryAppointmentRepository:
    return InMemoryAppointmentRepository()


@pytest.fixture
def service(repository: InMemoryAppointmentRepository, rules: AdmissionRules) -> AppointmentStatusService:
    return AppointmentStatusService(repository, rules)
