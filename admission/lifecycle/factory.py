from typing import Callable

from loguru import logger

from admission.config import AppConfig, StoreAdapter
from admission.lifecycle.adapters.memory import InMemoryAppointmentRepository
from admission.lifecycle.ports import AppointmentRepositoryProtocol
from admission.lifecycle.service import AppointmentStatusService
from admission.rules.engine import AdmissionRules

_REPOSITORIES: dict[StoreAdapter, Callable[[AppConfig], AppointmentRepositoryProtocol]] = {
    StoreAdapter.MEMORY: lambda config: InMemoryAppointmentRepository(),
}


def build_status_service(
    config: AppConfig, repository: AppointmentRepositoryProtocol | None = None
) -> AppointmentStatusService:
    """Build the status service, creating the configured repository unless one is given."""
    if repository is None:
        logger.info("Building appointment store with adapter: {}", config.store_adapter.value)
        repository = _REPOSITORIES[config.store_adapter](config)
    logger.info("Admission rules evaluated in timezone {}", config.clinic_timezone)
    return AppointmentStatusService(repository, AdmissionRules.from_config(config))
