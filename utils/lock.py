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

import os
import json
import time
import tempfile
from pathlib import Path
from typing import Dict, Any, Optional
from .index import log_message


class LockError(Exception):
    """Another upgrade operation holds the lock."""
    pass


class UpgradeLock:
    """
    Advisory lock keeping a single upgrade operation active at a time.

    The lock file holds the owner's pid, the operation name and a timestamp.
    A lock whose owner is gone, or which is older than ``timeout`` seconds, is
    considered stale and replaced.
    """

    def __init__(self, lock_file: str, timeout: float = 7200):
        self.lock_file = Path(lock_file)
        self.timeout = timeout
        self.held = False

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(self.lock_file.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log_message(f"Unreadable lock file {self.lock_file}: {e}", "WARNING")
            return {}
        return data if isinstance(data, dict) else {}

    def _is_stale(self, data: Dict[str, Any]) -> bool:
        if not data:
            # unreadable payload: only the file's age can tell
            try:
                age = time.time() - self.lock_file.stat().st_mtime
            except FileNotFoundError:
                return True
            return age >= self.timeout
        if time.time() - float(data.get("timestamp", 0)) >= self.timeout:
            return True
        pid = data.get("pid")
        if not isinstance(pid, int):
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def acquire(self, operation: str) -> None:
        """
        Take the lock or raise LockError.

        The payload is written to a temporary file first and hard-linked into
        place, so the lock file never exists without its owner's details.
        """
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"pid": os.getpid(), "operation": operation, "timestamp": time.time()})
        fd, temp_path = tempfile.mkstemp(dir=str(self.lock_file.parent), prefix=".lock-")
        try:
            with os.fdopen(fd, 'w') as f:
                f.write(payload)
            os.chmod(temp_path, 0o644)

            for _ in range(2):
                try:
                    os.link(temp_path, str(self.lock_file))
                except FileExistsError:
                    existing = self.read()
                    if existing is None:
                        continue
                    if self._is_stale(existing):
                        log_message(f"Removing stale upgrade lock held by pid {existing.get('pid')}", "WARNING")
                        self.lock_file.unlink(missing_ok=True)
                        continue
                    raise LockError(
                        f"Upgrade operation '{existing.get('operation', 'unknown')}' already running "
                        f"(pid {existing.get('pid', 'unknown')})"
                    )
                self.held = True
                return
        finally:
            os.unlink(temp_path)

        raise LockError(f"Could not acquire upgrade lock {self.lock_file}")

    def release(self) -> None:
        if not self.held:
            return
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log_message(f"Failed to release upgrade lock: {e}", "WARNING")
        self.held = False

    def hold(self, operation: str) -> '_HeldLock':
        """Context manager form: ``with lock.hold("post-update"): ...``"""
        return _HeldLock(self, operation)


class _HeldLock:

    def __init__(self, lock: UpgradeLock, operation: str):
        self.lock = lock
        self.operation = operation

    def __enter__(self) -> UpgradeLock:
        self.lock.acquire(self.operation)
        return self.lock

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.lock.release()
        return False
