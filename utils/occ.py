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
from typing import Dict, Any, List, Optional
from .commands import CommandRunner
from .index import log_message

OCC_TIMEOUT = 3600


class OccClient:
    """
    Nextcloud ``occ`` command line, run as the web server user.

    Failures are logged and reported as False; nothing here raises for a
    failing occ command.
    """

    def __init__(self, runner: CommandRunner, nextcloud_config: Dict[str, Any]):
        self.runner = runner
        self.install_dir = nextcloud_config.get("install_dir", "/usr/local/www/nextcloud")
        self.web_user = nextcloud_config.get("web_user", "www")
        self.php_bin = nextcloud_config.get("php_bin", "php")

    @property
    def occ_path(self) -> str:
        return os.path.join(self.install_dir, "occ")

    def available(self) -> bool:
        return os.path.exists(self.occ_path)

    def _base(self) -> List[str]:
        return [self.php_bin, self.occ_path]

    def run(self, *args: str, quiet: bool = False) -> bool:
        result = self.runner.run_as(self.web_user, self._base() + list(args), timeout=OCC_TIMEOUT)
        if result.returncode != 0:
            level = "DEBUG" if quiet else "WARNING"
            detail = (result.stderr or result.stdout or "").strip()
            log_message(f"occ {' '.join(args)} failed ({result.returncode}): {detail}", level)
            return False
        return True

    def maintenance_mode(self, enabled: bool) -> bool:
        return self.run("maintenance:mode", "--on" if enabled else "--off")

    def upgrade(self) -> bool:
        return self.run("upgrade")

    def repair(self) -> bool:
        return self.run("maintenance:repair")

    def add_missing_database_items(self) -> Dict[str, bool]:
        """Run the three schema catch-up commands; each is independent."""
        return {
            command: self.run(command)
            for command in ("db:add-missing-indices", "db:add-missing-columns", "db:add-missing-primary-keys")
        }

    def update_apps(self) -> bool:
        return self.run("app:update", "--all")

    def install_app(self, name: str) -> bool:
        return self.run("app:install", name)

    def background_cron(self) -> bool:
        return self.run("background:cron")

    def get_system(self, *keys: str) -> Optional[str]:
        """``config:system:get``; None when the key is unset or occ fails."""
        result = self.runner.run_as(self.web_user, self._base() + ["config:system:get", *keys], timeout=OCC_TIMEOUT)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def set_system(self, *keys: str, value: str, value_type: Optional[str] = None) -> bool:
        args = ["config:system:set", *keys, f"--value={value}"]
        if value_type:
            args.append(f"--type={value_type}")
        return self.run(*args)

    def convert_type(self, user: str, password: str, host: str, database: str, driver: str = "pgsql") -> bool:
        """
        ``db:convert-type`` from the live source database into the target.

        The password travels through the environment so it never shows up in
        the process list.
        """
        command = (
            f"{shlex.join(self._base())} db:convert-type --all-apps --password \"$OCC_DB_PASS\" "
            f"{shlex.join([driver, user, host, database])}"
        )
        result = self.runner.run_as(self.web_user, command, env={"OCC_DB_PASS": password}, timeout=OCC_TIMEOUT)
        if result.stdout:
            for line in result.stdout.strip().splitlines():
                log_message(f"  {line}")
        if result.returncode != 0:
            log_message(f"occ db:convert-type failed ({result.returncode}): {result.stderr.strip()}", "WARNING")
            return False
        return True
