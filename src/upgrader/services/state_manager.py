"""State store backed by one marker file per upgrade phase."""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from upgrader.models.state import (
    FailureRecord,
    PendingRebootRecord,
    ScriptRunningRecord,
    parse_record,
    record_to_attributes,
)
from upgrader.models.status import ErrorCode, UpgradePhase

AnyRecord = Union[ScriptRunningRecord, PendingRebootRecord, FailureRecord]

# Precedence when more than one marker is found on disk
READ_ORDER = (
    UpgradePhase.UPGRADE_FAILED,
    UpgradePhase.PENDING_REBOOT,
    UpgradePhase.SCRIPT_RUNNING,
)
ACTIVE_PHASES = (UpgradePhase.SCRIPT_RUNNING, UpgradePhase.PENDING_REBOOT)


class StateStore:
    """Durable upgrade phase, read at the start of every invocation.

    Layout under state_dir:
    - ScriptRunning.marker
    - PendingReboot.marker
    - UpgradeFailed.marker  (watched by external monitors)

    Each marker is key=value lines, written to a temp file and renamed
    into place. Superseded markers are removed only after the new one is
    visible, so an interrupted write can leave two markers but never zero;
    read_state() resolves that by precedence and sequence number.
    """

    def __init__(self, state_dir: Path):
        """Initialize state store.

        Args:
            state_dir: Directory holding the marker files
        """
        self.logger = logging.getLogger("upgrader.state_manager")
        self.state_dir = Path(state_dir)

    def marker_path(self, phase: UpgradePhase) -> Path:
        return self.state_dir / f"{phase.value}.marker"

    def read_state(self) -> Optional[AnyRecord]:
        """Return the single current phase record, or None if no marker exists.

        A corrupt marker is quarantined and reported as UpgradeFailed.
        """
        records: dict[UpgradePhase, AnyRecord] = {}
        for phase in READ_ORDER:
            path = self.marker_path(phase)
            if not path.exists():
                continue
            try:
                records[phase] = self._read_marker(path)
            except ValueError as e:
                self.logger.error(f"Corrupt state marker {path.name}: {e}")
                quarantine = path.with_suffix(".corrupt")
                path.replace(quarantine)
                return self.write_failure(
                    f"Corrupt state marker {path.name} quarantined as {quarantine.name}: {e}",
                    ErrorCode.UNEXPECTED,
                )

        if not records:
            self.logger.debug("No state markers found")
            return None

        if UpgradePhase.UPGRADE_FAILED in records:
            current = records[UpgradePhase.UPGRADE_FAILED]
        else:
            current = max(records.values(), key=lambda r: r.sequence)

        if len(records) > 1:
            self.logger.warning(
                f"Found {len(records)} markers ({', '.join(p.value for p in records)}), "
                f"keeping {current.phase}"
            )
            for phase in records:
                if phase.value != current.phase:
                    self.marker_path(phase).unlink(missing_ok=True)

        self.logger.info(f"Loaded state: phase={current.phase}, sequence={current.sequence}")
        return current

    def read_failure(self) -> Optional[FailureRecord]:
        """Return the failure marker without resolving phase markers."""
        path = self.marker_path(UpgradePhase.UPGRADE_FAILED)
        if not path.exists():
            return None
        record = self._read_marker(path)
        return record if isinstance(record, FailureRecord) else None

    def write_state(self, record: Union[ScriptRunningRecord, PendingRebootRecord]) -> AnyRecord:
        """Persist a new active phase, superseding the other phase marker.

        Returns:
            The record as written (with its sequence number)
        """
        phase = UpgradePhase(record.phase)
        if phase not in ACTIVE_PHASES:
            raise ValueError(f"write_state() accepts active phases only, got {phase.value}")

        record = record.model_copy(update={"sequence": self._next_sequence()})
        self._write_marker(self.marker_path(phase), record)
        for other in ACTIVE_PHASES:
            if other != phase:
                self.marker_path(other).unlink(missing_ok=True)

        self.logger.info(f"State -> {phase.value} (sequence={record.sequence})")
        return record

    def clear_state(self) -> None:
        """Remove the active phase markers (failure marker is kept)."""
        for phase in ACTIVE_PHASES:
            path = self.marker_path(phase)
            if path.exists():
                path.unlink()
                self.logger.info(f"Cleared {path.name}")

    def write_failure(self, reason: str, error_code: int = ErrorCode.UNEXPECTED) -> FailureRecord:
        """Write the failure marker and clear the active phase markers."""
        record = FailureRecord(
            failed_at=datetime.now(),
            reason=reason,
            error_code=int(error_code),
            sequence=self._next_sequence(),
        )
        self._write_marker(self.marker_path(UpgradePhase.UPGRADE_FAILED), record)
        self.clear_state()
        self.logger.error(f"Failure recorded (code {int(error_code)}): {reason}")
        return record

    def clear_failure(self) -> None:
        """Remove the failure marker."""
        path = self.marker_path(UpgradePhase.UPGRADE_FAILED)
        if path.exists():
            path.unlink()
            self.logger.info("Cleared failure marker")

    def _next_sequence(self) -> int:
        highest = 0
        for phase in READ_ORDER:
            path = self.marker_path(phase)
            if not path.exists():
                continue
            try:
                highest = max(highest, self._read_marker(path).sequence)
            except ValueError:
                continue
        return highest + 1

    def _read_marker(self, path: Path) -> AnyRecord:
        """Parse a key=value marker file.

        Raises:
            ValueError: If the file is undecodable or fails validation
        """
        attributes = {}
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                attributes[key.strip()] = value.strip()
        return parse_record(attributes)

    def _write_marker(self, path: Path, record: AnyRecord) -> None:
        """Write a marker via temp file + atomic rename."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        lines = [
            f"{key}={' '.join(value.splitlines())}"
            for key, value in record_to_attributes(record).items()
        ]
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
        self.logger.debug(f"Wrote {path.name}")
