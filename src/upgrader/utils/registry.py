"""Thin HKLM registry access; winreg is imported lazily (Windows only)."""

import logging
from typing import Any, Optional

RUNONCE_KEY = r"SOFTWARE\Microsoft\Windows\CurrentVersion\RunOnce"
CURRENT_VERSION_KEY = r"SOFTWARE\Microsoft\Windows NT\CurrentVersion"
SETUP_PROGRESS_KEY = r"SYSTEM\Setup\MoSetup\Volatile"


class Registry:
    """Read and write values under HKEY_LOCAL_MACHINE."""

    def __init__(self):
        self.logger = logging.getLogger("upgrader.registry")

    def read_value(self, key_path: str, name: str) -> Optional[Any]:
        """Return a value, or None if the key or value is missing.

        Raises:
            OSError: For access errors other than "not found"
        """
        import winreg

        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, key_path, 0, winreg.KEY_READ) as key:
                value, _ = winreg.QueryValueEx(key, name)
                return value
        except FileNotFoundError:
            return None

    def set_string(self, key_path: str, name: str, value: str) -> None:
        """Create or overwrite a REG_SZ value, creating the key if needed."""
        import winreg

        with winreg.CreateKeyEx(
            winreg.HKEY_LOCAL_MACHINE, key_path, 0, winreg.KEY_SET_VALUE
        ) as key:
            winreg.SetValueEx(key, name, 0, winreg.REG_SZ, value)
        self.logger.debug(f"Set HKLM\\{key_path}\\{name}")

    def delete_value(self, key_path: str, name: str) -> bool:
        """Delete a value; returns False if it did not exist."""
        import winreg

        try:
            with winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE, key_path, 0, winreg.KEY_SET_VALUE
            ) as key:
                winreg.DeleteValue(key, name)
        except FileNotFoundError:
            return False
        self.logger.debug(f"Deleted HKLM\\{key_path}\\{name}")
        return True
