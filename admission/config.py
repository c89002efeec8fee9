from enum import Enum
from typing import Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreAdapter(Enum):
    MEMORY = "memory"


class BusinessRules(BaseSettings):
    """Time windows and operating hours the admission rules are evaluated against.

    Hours are clinic-local. ``work_days`` uses ISO weekday numbers
    (1 = Monday ... 7 = Sunday).
    """

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_", env_file=".env", extra="ignore", frozen=True
    )

    work_start_hour: int = Field(default=8, ge=0, le=23)
    work_end_hour: int = Field(default=18, ge=1, le=24)
    lunch_start_hour: int = Field(default=12, ge=0, le=23)
    lunch_end_hour: int = Field(default=13, ge=1, le=23)
    work_days: frozenset[int] = frozenset({1, 2, 3, 4, 5})

    check_in_window_before_minutes: int = Field(default=30, ge=0)
    check_in_window_after_minutes: int = Field(default=15, ge=0)
    completion_window_after_minutes: int = Field(default=120, ge=0)
    no_show_window_after_minutes: int = Field(default=15, ge=0)
    reschedule_deadline_hours: int = Field(default=2, ge=0)
    rapid_change_cooldown_minutes: int = Field(default=2, ge=0)

    urgent_wait_minutes: int = Field(default=30, ge=0)
    high_severity_minutes: int = Field(default=60, ge=0)
    upcoming_attention_minutes: int = Field(default=60, ge=0)

    slot_duration_minutes: int = Field(default=30, ge=1, le=60)
    max_advance_days: int = Field(default=60, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> Self:
        if self.work_start_hour >= self.work_end_hour:
            raise ValueError("work_start_hour must be earlier than work_end_hour")
        if self.lunch_start_hour >= self.lunch_end_hour:
            raise ValueError("lunch_start_hour must be earlier than lunch_end_hour")
        if not (
            self.work_start_hour <= self.lunch_start_hour
            and self.lunch_end_hour <= self.work_end_hour
        ):
            raise ValueError("lunch break must fall inside work hours")
        if not self.work_days or not self.work_days <= set(range(1, 8)):
            raise ValueError("work_days must be a non-empty set of ISO weekdays (1-7)")
        if self.urgent_wait_minutes > self.high_severity_minutes:
            raise ValueError("urgent_wait_minutes cannot exceed high_severity_minutes")
        return self


class AppConfig(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    clinic_timezone: str = "America/Mexico_City"
    store_adapter: StoreAdapter = StoreAdapter.MEMORY
    rules: BusinessRules = Field(default_factory=lambda: BusinessRules())
