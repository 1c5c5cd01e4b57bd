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

import re
from pathlib import Path
from typing import Dict, List, Optional, Any
from .commands import CommandRunner
from .index import log_message, debug_log


class ServiceManager:
    """FreeBSD rc(8) service control through ``service`` and ``sysrc``."""

    def __init__(self, runner: CommandRunner, services_config: Dict[str, Any]):
        self.runner = runner
        self.rc_conf = services_config.get("rc_conf", "/etc/rc.conf")
        self.aliases: Dict[str, List[str]] = services_config.get("aliases", {})
        self.rcvars: Dict[str, str] = services_config.get("rcvars", {})

    def _names(self, name: str) -> List[str]:
        return self.aliases.get(name, [name])

    def rcvar(self, name: str) -> str:
        """rc.conf variable prefix for a service (``mysql-server`` -> ``mysql``)."""
        return self.rcvars.get(name, name.replace("-", "_"))

    def _service(self, name: str, action: str) -> bool:
        for candidate in self._names(name):
            result = self.runner.run(["service", candidate, action])
            if result.returncode == 0:
                return True
            debug_log(f"service {candidate} {action} returned {result.returncode}")
        return False

    def status(self, name: str) -> bool:
        """True if the service reports itself running."""
        return self._service(name, "status")

    def start(self, name: str) -> bool:
        ok = self._service(name, "start")
        if not ok:
            log_message(f"Failed to start {name}", "WARNING")
        return ok

    def stop(self, name: str) -> bool:
        ok = self._service(name, "stop")
        if not ok:
            debug_log(f"Stopping {name} failed (probably not running)")
        return ok

    def restart(self, name: str) -> bool:
        ok = self._service(name, "restart")
        if not ok:
            log_message(f"Failed to restart {name}", "WARNING")
        return ok

    def ensure_running(self, name: str) -> bool:
        """Restart a running service, start a stopped one."""
        if self.status(name):
            return self.restart(name)
        log_message(f"{name} is not running, starting it")
        return self.start(name)

    def restart_if_running(self, name: str) -> bool:
        if self.status(name):
            return self.restart(name)
        debug_log(f"{name} not running, leaving it stopped")
        return False

    def _read_rc_conf(self) -> str:
        path = Path(self.rc_conf)
        if not path.exists():
            return ""
        try:
            return path.read_text()
        except OSError as e:
            log_message(f"Failed to read {self.rc_conf}: {e}", "WARNING")
            return ""

    def get_rc_value(self, variable: str) -> Optional[str]:
        """Last assignment of an rc.conf variable, as rc(8) would see it."""
        value = None
        pattern = re.compile(rf'^\s*{re.escape(variable)}\s*=\s*"?([^"#\n]*)"?', re.MULTILINE)
        for match in pattern.finditer(self._read_rc_conf()):
            value = match.group(1).strip()
        return value

    def is_enabled(self, name: str) -> bool:
        value = self.get_rc_value(f"{self.rcvar(name)}_enable")
        return value is not None and value.upper() == "YES"

    def set_rc_value(self, variable: str, value: str) -> bool:
        result = self.runner.run(["sysrc", "-f", self.rc_conf, f"{variable}={value}"])
        if result.returncode != 0:
            log_message(f"sysrc {variable} failed: {result.stderr.strip()}", "WARNING")
            return False
        return True

    def enable(self, name: str) -> bool:
        return self.set_rc_value(f"{self.rcvar(name)}_enable", "YES")
