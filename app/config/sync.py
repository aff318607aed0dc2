from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator


class OutboxConfig(BaseModel):
    """Retry policy for writes queued in a device's outbox."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_attempts: int = Field(default=2, validation_alias="OUTBOX_MAX_ATTEMPTS")
    retry_delay_sec: float = Field(default=1.0, validation_alias="OUTBOX_RETRY_DELAY_SEC")
    attempt_timeout_sec: float = Field(
        default=10.0, validation_alias="OUTBOX_ATTEMPT_TIMEOUT_SEC"
    )

    @field_validator("max_attempts", mode="before")
    @classmethod
    def _validate_max_attempts(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 2))
        except ValueError as exc:
            msg = "Outbox max attempts must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 2 or parsed > 20:
            msg = "Outbox max attempts must be between 2 and 20"
            raise ValueError(msg)
        return parsed

    @field_validator("retry_delay_sec", "attempt_timeout_sec", mode="before")
    @classmethod
    def _validate_seconds(cls, value: Any, info: ValidationInfo) -> float:
        default = cls.model_fields[info.field_name].default
        try:
            parsed = float(str(value if value not in (None, "") else default))
        except ValueError as exc:
            msg = f"{info.field_name.replace('_', ' ')} must be a valid number"
            raise ValueError(msg) from exc
        if parsed < 0 or parsed > 600:
            msg = f"{info.field_name.replace('_', ' ').capitalize()} must be between 0 and 600"
            raise ValueError(msg)
        return parsed


class ReconciliationConfig(BaseModel):
    """Schedule of the job that re-arms links wrongly marked as fully enriched."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = Field(default=True, validation_alias="RECONCILIATION_ENABLED")
    interval_minutes: int = Field(default=15, validation_alias="RECONCILIATION_INTERVAL_MINUTES")
    rearm_offset_sec: int = Field(
        default=120,
        validation_alias="RECONCILIATION_REARM_OFFSET_SEC",
        description="How far in the past a re-armed link's last attempt is placed",
    )

    @field_validator("interval_minutes", mode="before")
    @classmethod
    def _validate_interval(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 15))
        except ValueError as exc:
            msg = "Reconciliation interval (minutes) must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 1 or parsed > 10080:
            msg = "Reconciliation interval (minutes) must be between 1 and 10080"
            raise ValueError(msg)
        return parsed

    @field_validator("rearm_offset_sec", mode="before")
    @classmethod
    def _validate_offset(cls, value: Any) -> int:
        try:
            parsed = int(str(value if value not in (None, "") else 120))
        except ValueError as exc:
            msg = "Reconciliation rearm offset must be a valid integer"
            raise ValueError(msg) from exc
        if parsed < 0 or parsed > 86400:
            msg = "Reconciliation rearm offset must be between 0 and 86400 seconds"
            raise ValueError(msg)
        return parsed
