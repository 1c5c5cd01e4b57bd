"""
Nextcloud Plugin Update Management System - Database Probe
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

from typing import Callable, Dict, Any, List, Optional, Tuple
from nextcloud_updates.utils.index import log_message, debug_log
from nextcloud_updates.utils.moduleUtils import load_root_config, get_section, conditional_config_return
from nextcloud_updates.utils.commands import CommandRunner
from nextcloud_updates.utils.services import ServiceManager
from nextcloud_updates.utils.records import BackendType
from nextcloud_updates.utils.nextcloud_config import read_config_value

# Nextcloud's own dbtype values
DBTYPE_MAP = {
    "pgsql": BackendType.POSTGRESQL,
    "mysql": BackendType.MYSQL,
}

# Candidate services in priority order
SERVICE_CANDIDATES = [
    ("postgresql", BackendType.POSTGRESQL),
    ("mysql-server", BackendType.MYSQL),
]

Strategy = Callable[[], Optional[BackendType]]


class DatabaseProbe:
    """
    Classifies the database backend currently serving Nextcloud.

    Detection methods are tried in priority order and the first definitive
    answer wins; a method that cannot decide returns None and hands over to
    the next one. The probe is read-only and never raises.
    """

    def __init__(self, config: Dict[str, Any], services: ServiceManager):
        self.config_file = get_section(config, "nextcloud").get("config_file")
        self.services = services
        self.strategies: List[Tuple[str, Strategy]] = [
            ("application config", self._from_application_config),
            ("rc.conf flags", self._from_rc_conf),
            ("service status", self._from_service_status),
        ]

    def _from_application_config(self) -> Optional[BackendType]:
        dbtype = read_config_value(self.config_file, "dbtype")
        if not isinstance(dbtype, str):
            return None
        backend = DBTYPE_MAP.get(dbtype.strip().lower())
        if backend is None:
            debug_log(f"Unrecognised dbtype '{dbtype}' in {self.config_file}")
        return backend

    def _from_rc_conf(self) -> Optional[BackendType]:
        for service, backend in SERVICE_CANDIDATES:
            if self.services.is_enabled(service):
                return backend
        return None

    def _from_service_status(self) -> Optional[BackendType]:
        for service, backend in SERVICE_CANDIDATES:
            if self.services.status(service):
                return backend
        return None

    def detect_backend(self) -> BackendType:
        for name, strategy in self.strategies:
            try:
                backend = strategy()
            except Exception as e:
                log_message(f"Backend detection via {name} failed: {e}", "WARNING")
                continue
            if backend is not None:
                log_message(f"Detected database backend '{backend.value}' from {name}")
                return backend
            debug_log(f"Backend detection via {name} was inconclusive")

        log_message("No database backend detected (fresh install?)")
        return BackendType.NONE


def main(args=None):
    """
    Main entry point for the probe module.

    Returns:
        dict: {"success": True, "backend": "<none|mysql|postgresql>"}
    """
    config = load_root_config()
    services = ServiceManager(CommandRunner(), get_section(config, "services"))
    backend = DatabaseProbe(config, services).detect_backend()
    return conditional_config_return({"success": True, "backend": backend.value},
                                     get_section(config, "database"), config)


if __name__ == "__main__":
    print(main())
