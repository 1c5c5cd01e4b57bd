#!/usr/bin/env python3
"""
Nextcloud Plugin Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

"""
State Manager for the Update System

Small key-value persistence layer for the process-wide state that survives
between update runs. Every key maps onto one plain-text file so the on-disk
contract stays readable by the plugin's shell hooks.

Keys:
- last_backup: absolute path of the most recent pre-update backup directory
- migration_ordinal: integer ordinal of the last applied migration step

Usage:
    from nextcloud_updates.utils import FileStateStore

    state = FileStateStore.from_config(get_section(config, "state"))
    ordinal = state.get_int("migration_ordinal", 0)
    state.set("migration_ordinal", ordinal + 1)
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Any
from .index import log_message

LAST_BACKUP = "last_backup"
MIGRATION_ORDINAL = "migration_ordinal"


class StateStoreError(Exception):
    """Custom exception for state store operation failures."""
    pass


class StateStore:
    """Interface for persisted update state."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def get_int(self, key: str, default: int = 0) -> int:
        """
        Read an integer value.

        Raises:
            StateStoreError: if the stored value is not an integer
        """
        value = self.get(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise StateStoreError(f"State key '{key}' holds a non-integer value: {value!r}")


class MemoryStateStore(StateStore):
    """In-process store, used by tests and dry runs."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.values: Dict[str, str] = {k: str(v) for k, v in (initial or {}).items()}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = str(value)

    def delete(self, key: str) -> None:
        self.values.pop(key, None)


class FileStateStore(StateStore):
    """One plain-text file per key; writes are atomic renames."""

    def __init__(self, paths: Dict[str, str]):
        self.paths = {key: Path(path) for key, path in paths.items()}

    @classmethod
    def from_config(cls, state_config: Dict[str, Any]) -> 'FileStateStore':
        return cls({
            LAST_BACKUP: state_config.get("last_backup_file", "/root/last_pre_update_backup"),
            MIGRATION_ORDINAL: state_config.get("migration_ordinal_file", "/root/migrations/current_migration.txt"),
        })

    def _path(self, key: str) -> Path:
        if key not in self.paths:
            raise StateStoreError(f"Unknown state key: {key}")
        return self.paths[key]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        path = self._path(key)
        try:
            value = path.read_text().strip()
        except FileNotFoundError:
            return default
        except OSError as e:
            log_message(f"Failed to read state {key} from {path}: {e}", "WARNING")
            return default
        return value if value else default

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
            with os.fdopen(fd, 'w') as f:
                f.write(f"{value}\n")
            os.replace(tmp_name, path)
        except OSError as e:
            raise StateStoreError(f"Failed to persist state {key} to {path}: {e}")

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
