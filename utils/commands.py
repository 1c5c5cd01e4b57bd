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
import shlex
import subprocess
from typing import Dict, List, Optional, Union
from .index import debug_log, log_message


class CommandRunner:
    """
    Thin subprocess wrapper used by every component that touches the system.

    Commands never raise for ordinary failures: a missing executable comes back
    with return code 127 and a timeout with 124, so callers only need to look at
    ``returncode``.
    """

    def run(self, cmd: List[str], env: Optional[Dict[str, str]] = None,
            timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update(env)

        debug_log(f"$ {shlex.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, text=True, env=full_env, timeout=timeout)
        except FileNotFoundError as e:
            log_message(f"Command not found: {cmd[0]} ({e})", "WARNING")
            return subprocess.CompletedProcess(cmd, 127, "", str(e))
        except subprocess.TimeoutExpired:
            log_message(f"Command timed out after {timeout}s: {cmd[0]}", "ERROR")
            return subprocess.CompletedProcess(cmd, 124, "", f"timed out after {timeout}s")

    def run_as(self, user: str, command: Union[str, List[str]], env: Optional[Dict[str, str]] = None,
               timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        """Run a command as another user through ``su -m``, preserving the environment."""
        if not isinstance(command, str):
            command = shlex.join(command)
        return self.run(["su", "-m", user, "-c", command], env=env, timeout=timeout)
