"""
Nextcloud Plugin Update Management System - Backup Producer
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

import time
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Any
from nextcloud_updates.utils.index import log_message, log_step_start, log_step_end, wait_for
from nextcloud_updates.utils.moduleUtils import load_root_config, get_section
from nextcloud_updates.utils.commands import CommandRunner
from nextcloud_updates.utils.services import ServiceManager
from nextcloud_updates.utils.occ import OccClient
from nextcloud_updates.utils.nextcloud_config import read_config_value
from nextcloud_updates.utils.state_manager import (
    StateStore,
    FileStateStore,
    LAST_BACKUP,
    MIGRATION_ORDINAL
)
from nextcloud_updates.utils.records import (
    BackendType,
    BackupRecord,
    DatabaseCredentials,
    CredentialsError,
    load_credentials,
    CONFIG_DIR_NAME,
    DATABASE_TYPE_FILE,
    MIGRATION_STATE_FILE,
    PG_DUMP_NAME,
    MYSQL_DUMP_NAME
)
from nextcloud_updates.modules.probe import DatabaseProbe
from nextcloud_updates.modules.ssl import SSLManager

DUMP_TIMEOUT = 3600

DATABASE_SERVICES = {
    BackendType.POSTGRESQL: "postgresql",
    BackendType.MYSQL: "mysql-server",
}


class BackupProducer:
    """
    Produces one timestamped pre-update backup directory.

    Every step is best-effort: a failing step is logged as a warning and the
    remaining steps still run. Backups never delete or touch earlier ones.
    """

    def __init__(self, config: Dict[str, Any], runner: CommandRunner, services: ServiceManager,
                 occ: OccClient, state: StateStore, probe: DatabaseProbe, ssl: SSLManager,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.runner = runner
        self.services = services
        self.occ = occ
        self.state = state
        self.probe = probe
        self.ssl = ssl
        self.clock = clock
        self.sleep = sleep
        self.backup_config = get_section(config, "backup")
        self.nextcloud_config = get_section(config, "nextcloud")
        self.database_config = get_section(config, "database")
        self.wait_config = get_section(config, "wait")

    def _allocate_directory(self, now: datetime) -> Path:
        root = Path(self.backup_config.get("root", "/root"))
        base = f"{self.backup_config.get('prefix', 'pre_update_backup_')}{now.strftime('%Y%m%d_%H%M%S')}"
        candidate = root / base
        suffix = 1
        while candidate.exists():
            candidate = root / f"{base}_{suffix}"
            suffix += 1
        candidate.mkdir(parents=True)
        return candidate

    def _step(self, description: str, action: Callable[[], Any]) -> Any:
        try:
            return action()
        except Exception as e:
            log_message(f"Backup step '{description}' failed: {e}", "WARNING")
            return None

    def _enable_maintenance(self) -> None:
        if not self.occ.available():
            log_message("Nextcloud not installed yet, skipping maintenance mode")
            return
        if self.occ.maintenance_mode(True):
            log_message("Maintenance mode enabled")
        else:
            log_message("Could not enable maintenance mode", "WARNING")

    def _disable_maintenance(self) -> None:
        if not self.occ.available():
            return
        if self.occ.maintenance_mode(False):
            log_message("Maintenance mode disabled")
        else:
            log_message("Could not disable maintenance mode", "WARNING")

    def _copy_config(self, record: BackupRecord) -> None:
        source = Path(self.nextcloud_config.get("config_dir", "/usr/local/www/nextcloud/config"))
        if not source.is_dir():
            log_message("No Nextcloud config directory found (fresh install?)", "WARNING")
            return
        target = Path(record.backup_dir) / CONFIG_DIR_NAME
        shutil.copytree(source, target, symlinks=True)
        record.config_dir = str(target)
        log_message(f"Configuration backed up to {target}")

    def _record_version(self, record: BackupRecord) -> None:
        installed = read_config_value(self.nextcloud_config.get("config_file"), "version")
        if installed is not None:
            record.nextcloud_version = str(installed)
            log_message(f"Nextcloud version before update: {installed}")

    def _snapshot_ssl(self, record: BackupRecord) -> None:
        snapshot = self.ssl.snapshot(record.backup_dir)
        record.ssl_state = snapshot["ssl_state"]
        record.url_scheme = snapshot["url_scheme"]
        record.certificates_dir = snapshot["certificates_dir"]
        record.jail_options_file = snapshot["jail_options_file"]

    def _dump_command(self, backend: BackendType, credentials: DatabaseCredentials,
                      dump_file: Path) -> Dict[str, Any]:
        if backend == BackendType.POSTGRESQL:
            return {
                "cmd": ["pg_dump", "-U", credentials.user, "-h", credentials.host,
                        "-f", str(dump_file), credentials.name],
                "env": {"PGPASSWORD": credentials.password},
            }
        return {
            "cmd": ["mysqldump", "-u", credentials.user, "--single-transaction", "--routines",
                    "--triggers", "--hex-blob", f"--result-file={dump_file}", credentials.name],
            "env": {"MYSQL_PWD": credentials.password},
        }

    def _dump_database(self, record: BackupRecord) -> None:
        backend = record.backend
        if backend == BackendType.NONE:
            log_message("No database to back up (fresh install?)")
            return

        try:
            credentials = load_credentials(self.database_config)
        except CredentialsError as e:
            log_message(f"{e}, skipping database backup", "WARNING")
            return

        service = DATABASE_SERVICES[backend]
        started_here = False
        if not self.services.status(service):
            log_message(f"{service} is not running, starting it for the backup")
            started_here = self.services.start(service)
            wait_for(lambda: self.services.status(service), service,
                     max_attempts=int(self.wait_config.get("max_attempts", 30)),
                     interval=float(self.wait_config.get("interval", 2)),
                     sleep=self.sleep)

        dump_file = Path(record.backup_dir) / (PG_DUMP_NAME if backend == BackendType.POSTGRESQL else MYSQL_DUMP_NAME)
        try:
            command = self._dump_command(backend, credentials, dump_file)
            result = self.runner.run(command["cmd"], env=command["env"], timeout=DUMP_TIMEOUT)
            if not dump_file.exists():
                dump_file.touch()
            record.dump_file = str(dump_file)
            if result.returncode == 0 and record.has_usable_dump:
                size = dump_file.stat().st_size
                log_message(f"{backend.value} backup completed: {dump_file} ({size} bytes)")
            else:
                log_message(
                    f"{backend.value} backup may have failed or database is empty "
                    f"(exit {result.returncode}): {result.stderr.strip()}", "WARNING"
                )
        finally:
            if started_here:
                log_message(f"Stopping {service} again, it was started for the backup")
                self.services.stop(service)

    def _write_markers(self, record: BackupRecord) -> None:
        directory = Path(record.backup_dir)
        (directory / DATABASE_TYPE_FILE).write_text(f"{record.backend.value}\n")
        (directory / MIGRATION_STATE_FILE).write_text(f"{record.migration_ordinal}\n")
        record.save()

    def create_backup(self, keep_maintenance: bool = False) -> BackupRecord:
        """
        Create a new backup directory and point ``last_backup`` at it.

        Maintenance mode is on while the backup runs. It stays on afterwards
        only with ``keep_maintenance``, which the pre-update sequence sets
        because the package upgrade follows.

        Returns:
            BackupRecord: what was captured; ``dump_file`` empty or None when
            no usable database dump exists
        """
        log_step_start("Pre-update backup")
        now = self.clock()
        directory = self._allocate_directory(now)
        record = BackupRecord(backup_dir=str(directory), timestamp=now.isoformat(timespec="microseconds"))
        log_message(f"Backup directory: {directory}")

        self._step("maintenance mode", self._enable_maintenance)
        try:
            self._step("configuration copy", lambda: self._copy_config(record))
            self._step("SSL snapshot", lambda: self._snapshot_ssl(record))
            self._step("Nextcloud version", lambda: self._record_version(record))

            backend = self._step("database detection", self.probe.detect_backend)
            record.backend = backend if backend is not None else BackendType.NONE
            self._step("database dump", lambda: self._dump_database(record))

            try:
                record.migration_ordinal = self.state.get_int(MIGRATION_ORDINAL, 0)
            except Exception as e:
                log_message(f"Could not read migration ordinal: {e}", "WARNING")
            self._step("record markers", lambda: self._write_markers(record))
            self._step("last backup pointer", lambda: self.state.set(LAST_BACKUP, record.backup_dir))
        finally:
            if not keep_maintenance:
                self._step("maintenance mode off", self._disable_maintenance)

        status = "usable dump" if record.has_usable_dump else "no usable dump"
        log_step_end("Pre-update backup", status)
        return record


def create_backup_producer(config: Dict[str, Any]) -> BackupProducer:
    runner = CommandRunner()
    services = ServiceManager(runner, get_section(config, "services"))
    return BackupProducer(
        config,
        runner,
        services,
        OccClient(runner, get_section(config, "nextcloud")),
        FileStateStore.from_config(get_section(config, "state")),
        DatabaseProbe(config, services),
        SSLManager(config, runner),
    )


def main(args=None):
    """
    Main entry point for the backup module.

    Returns:
        dict: {"success": True, "backup_dir": ..., "backend": ..., "usable_dump": bool}
    """
    record = create_backup_producer(load_root_config()).create_backup()
    return {
        "success": True,
        "backup_dir": record.backup_dir,
        "backend": record.backend.value,
        "usable_dump": record.has_usable_dump,
    }


if __name__ == "__main__":
    print(main())
