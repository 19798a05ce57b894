"""Phase marker records persisted by the state store."""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from upgrader.models.status import ErrorCode, ReminderMode

SCHEMA_VERSION = 1


class _MarkerRecord(BaseModel):
    """Fields shared by every phase marker."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    schema_version: int = Field(
        default=SCHEMA_VERSION, description="Marker schema version"
    )
    sequence: int = Field(
        default=0, ge=0, description="Monotonic write counter, newest wins"
    )

    @field_validator("schema_version")
    @classmethod
    def supported_schema(cls, v: int) -> int:
        """Reject markers written by an unknown schema."""
        if v != SCHEMA_VERSION:
            raise ValueError(f"Unsupported marker schema version: {v}")
        return v


class ScriptRunningRecord(_MarkerRecord):
    """An attempt is in progress."""

    phase: Literal["ScriptRunning"] = "ScriptRunning"
    started_at: datetime = Field(..., description="When the attempt started")
    last_boot_time: datetime = Field(..., description="Boot time seen at start")
    pid: int = Field(default=0, ge=0, description="Owning process id")


class PendingRebootRecord(_MarkerRecord):
    """Staging succeeded; setup waits for a restart to finish."""

    phase: Literal["PendingReboot"] = "PendingReboot"
    staged_at: datetime = Field(..., description="When staging completed")
    last_boot_time: datetime = Field(..., description="Boot time seen at staging")
    reminder_mode: ReminderMode = Field(
        default=ReminderMode.NONE, description="How reminders were registered"
    )
    auto_reboot: bool = Field(default=False, description="Reboot was requested")


class FailureRecord(_MarkerRecord):
    """Terminal failure of the current attempt."""

    phase: Literal["UpgradeFailed"] = "UpgradeFailed"
    failed_at: datetime = Field(default_factory=datetime.now)
    reason: str = Field(default="Unknown failure", description="Technician-facing text")
    error_code: int = Field(
        default=int(ErrorCode.UNEXPECTED), description="Internal error code"
    )


PhaseRecord = Annotated[
    Union[ScriptRunningRecord, PendingRebootRecord, FailureRecord],
    Field(discriminator="phase"),
]

_phase_adapter: TypeAdapter = TypeAdapter(PhaseRecord)


def parse_record(attributes: dict) -> Union[ScriptRunningRecord, PendingRebootRecord, FailureRecord]:
    """Validate a flat attribute map into a typed phase record.

    Blank values are dropped so the field default applies.

    Raises:
        pydantic.ValidationError: If the attributes do not form a valid record
    """
    cleaned = {k: v for k, v in attributes.items() if str(v).strip() != ""}
    return _phase_adapter.validate_python(cleaned)


def record_to_attributes(record: _MarkerRecord) -> dict[str, str]:
    """Flatten a record into string attributes for a marker file."""
    attributes = {}
    for key, value in record.model_dump(mode="python").items():
        if value is None:
            attributes[key] = ""
        elif isinstance(value, datetime):
            attributes[key] = value.isoformat()
        elif isinstance(value, bool):
            attributes[key] = "True" if value else "False"
        elif isinstance(value, ReminderMode):
            attributes[key] = value.value
        else:
            attributes[key] = str(value)
    return attributes
