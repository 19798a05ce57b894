"""Error catalog mapping failure codes to remediation and repair actions."""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from upgrader.models.status import ErrorCode

CORRUPT_MEDIA_CODE = 0x8007025D
INCOMPATIBLE_APP_CODE = 0xC1900208


class RepairAction(str, Enum):
    """In-process repair routines a catalog entry may request."""

    CLEAR_SETUP_FOLDERS = "clear_setup_folders"
    FREE_DISK_SPACE = "free_disk_space"
    REDOWNLOAD_MEDIA = "redownload_media"
    RESET_UPDATE_SERVICES = "reset_update_services"


def normalize_code(code: Union[int, str]) -> int:
    """Normalize an error code to its unsigned 32-bit value.

    Accepts decimal ("3247440392"), signed decimal ("-1047526904") and
    hex ("0xC1900208") forms, which all refer to the same code.

    Raises:
        ValueError: If the code cannot be parsed
    """
    if isinstance(code, bool):
        raise ValueError(f"Invalid error code: {code!r}")
    if isinstance(code, int):
        value = code
    else:
        text = str(code).strip().lower()
        if not text:
            raise ValueError("Empty error code")
        value = int(text, 16) if text.startswith(("0x", "-0x")) else int(text, 10)
    return value & 0xFFFFFFFF


def format_code(code: int) -> str:
    """Render a code the way technicians search for it."""
    if code > 0xFFFF:
        return f"0x{code:08X}"
    return str(code)


class CatalogEntry(BaseModel):
    """One error catalog row."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    code: int = Field(..., description="Normalized unsigned 32-bit code")
    title: str = Field(..., min_length=1)
    description: str = Field(default="")
    remediation: str = Field(default="")
    recoverable: bool = Field(default=False)
    repair: Optional[RepairAction] = Field(
        default=None, description="Repair action to run once before retrying"
    )
    escalate: bool = Field(
        default=False, description="Never retry; hand to a technician"
    )

    @field_validator("code", mode="before")
    @classmethod
    def parse_code(cls, v):
        return normalize_code(v)

    def compose_message(self) -> str:
        """Technician-facing text for the failure marker."""
        parts = [f"{format_code(self.code)} {self.title}"]
        if self.description:
            parts.append(self.description)
        if self.remediation:
            parts.append(f"Remediation: {self.remediation}")
        return ". ".join(parts)


DEFAULT_ENTRIES: list[dict] = [
    # Internal failure classes (process exit codes)
    {"code": ErrorCode.HARDWARE_INCOMPATIBLE, "title": "Hardware requirements not met",
     "description": "TPM 2.0, Secure Boot, 64-bit CPU or 4 GB RAM check failed.",
     "remediation": "Review the device against Windows 11 requirements; replace or exempt it."},
    {"code": ErrorCode.DISK_SPACE, "title": "Insufficient disk space",
     "description": "Free space on the system drive is below the configured minimum.",
     "remediation": "Free space on C: and re-run the task."},
    {"code": ErrorCode.SECURITY_AGENT_BLOCKED, "title": "Security agent version blocks upgrade",
     "description": "The endpoint security agent is older than the supported minimum or its version is unknown.",
     "remediation": "Update the security agent, then re-run the task."},
    {"code": ErrorCode.DOWNLOAD_TRANSPORT, "title": "ISO download unavailable",
     "description": "Every transfer attempt failed.",
     "remediation": "Check internet access and proxy settings on the device."},
    {"code": ErrorCode.DOWNLOAD_VALIDATION, "title": "Downloaded ISO failed validation",
     "description": "The file is smaller than a valid ISO (often an HTML error page).",
     "remediation": "Verify the configured ISO URL is still valid."},
    {"code": ErrorCode.DOWNLOAD_HASH, "title": "Downloaded ISO hash mismatch",
     "description": "The SHA-256 of the downloaded file does not match.",
     "remediation": "Verify the configured ISO hash matches the configured URL."},
    {"code": ErrorCode.STAGING_FAILED, "title": "Windows Setup failed",
     "remediation": "Collect the setup logs and run SetupDiag."},
    {"code": ErrorCode.STAGING_STALLED, "title": "Windows Setup stalled",
     "description": "Setup showed no progress or CPU activity and was terminated.",
     "remediation": "Reboot the device and re-run the task."},
    {"code": ErrorCode.SETUP_NOT_FOUND, "title": "setup.exe not found on mounted ISO",
     "remediation": "The ISO is damaged; it will be downloaded again on the next run."},
    {"code": ErrorCode.STAGING_ESCALATED, "title": "Windows Setup needs technician review",
     "remediation": "See the failure reason for the setup error code."},
    {"code": ErrorCode.SELF_REPAIR_FAILED, "title": "Self-repair after interrupted run failed",
     "remediation": "Review the upgrade log; clear the failure marker to retry."},
    {"code": ErrorCode.UNEXPECTED, "title": "Unexpected error",
     "remediation": "Review the upgrade log for the stack trace."},
    # Windows Setup result codes
    {"code": "0xC1900208", "title": "Incompatible app blocks upgrade",
     "description": "An installed application is incompatible with Windows 11.",
     "remediation": "Uninstall or update the app named in the setup compatibility report.",
     "escalate": True},
    {"code": "0x8007025D", "title": "Installation media is corrupt",
     "description": "Setup could not read the installation source.",
     "remediation": "The ISO is deleted and downloaded again.",
     "recoverable": True, "repair": "redownload_media"},
    {"code": "0xC1900107", "title": "Previous setup cleanup pending",
     "description": "A cleanup operation from a previous installation attempt is pending.",
     "remediation": "Old setup folders are removed; reboot if it recurs.",
     "recoverable": True, "repair": "clear_setup_folders"},
    {"code": "0x80070070", "title": "Not enough disk space for setup",
     "remediation": "Temporary files are cleaned; free more space if it recurs.",
     "recoverable": True, "repair": "free_disk_space"},
    {"code": "0xC190020E", "title": "Not enough disk space for setup",
     "remediation": "Temporary files are cleaned; free more space if it recurs.",
     "recoverable": True, "repair": "free_disk_space"},
    {"code": "0x800F0922", "title": "Setup could not reach update services",
     "description": "Dynamic update or servicing stack failed.",
     "remediation": "Windows Update components are reset before retrying.",
     "recoverable": True, "repair": "reset_update_services"},
    {"code": "0xC1900101", "title": "Driver error during upgrade",
     "description": "A driver caused the upgrade to roll back.",
     "remediation": "Update storage, network and display drivers, then retry."},
    {"code": "0xC1900200", "title": "Device does not meet minimum requirements",
     "remediation": "Check the device against Windows 11 requirements."},
    {"code": "0xC1900204", "title": "Migration choice not available",
     "remediation": "Verify the ISO language and edition match the installed OS."},
]


class ErrorCatalog:
    """Lookup table keyed by normalized error code."""

    def __init__(self, entries: Optional[Iterable[CatalogEntry]] = None):
        self.logger = logging.getLogger("upgrader.catalog")
        self._entries: dict[int, CatalogEntry] = {}
        source = entries if entries is not None else (
            CatalogEntry(**e) for e in DEFAULT_ENTRIES
        )
        for entry in source:
            self._entries[entry.code] = entry

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, code: Union[int, str]) -> Optional[CatalogEntry]:
        """Find the entry for any accepted form of a code."""
        try:
            return self._entries.get(normalize_code(code))
        except ValueError:
            self.logger.warning(f"Unparseable error code: {code!r}")
            return None

    def describe(self, code: Union[int, str]) -> str:
        """Composed marker text, with a fallback for unknown codes."""
        entry = self.lookup(code)
        if entry is None:
            try:
                return f"{format_code(normalize_code(code))} Unknown error code"
            except ValueError:
                return f"{code} Unknown error code"
        return entry.compose_message()

    def merge(self, entries: Iterable[CatalogEntry]) -> None:
        """Override or extend entries (external catalog wins)."""
        for entry in entries:
            self._entries[entry.code] = entry

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ErrorCatalog":
        """Built-in catalog, merged with an external JSON file if given.

        The file holds a list of entries or {"entries": [...]}.

        Raises:
            ValueError: If the file is not valid JSON
            pydantic.ValidationError: If an entry is invalid
        """
        catalog = cls()
        if path is None:
            return catalog
        if not path.exists():
            catalog.logger.warning(f"Error catalog {path} not found, using built-in entries")
            return catalog

        try:
            with open(path, "r", encoding="utf-8-sig") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"CATALOG_INVALID: {path}: {e}") from e

        rows = data.get("entries", []) if isinstance(data, dict) else data
        catalog.merge(CatalogEntry(**row) for row in rows)
        catalog.logger.info(f"Merged {len(rows)} catalog entries from {path}")
        return catalog
