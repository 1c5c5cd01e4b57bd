"""
Nextcloud Plugin Update Management System - Upgrade Sequencer
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
from typing import Callable, Dict, Any, Optional
from nextcloud_updates.utils.index import log_message, log_step_start, log_step_end, wait_for, compare_versions
from nextcloud_updates.utils.moduleUtils import load_root_config, get_section
from nextcloud_updates.utils.commands import CommandRunner
from nextcloud_updates.utils.services import ServiceManager
from nextcloud_updates.utils.occ import OccClient
from nextcloud_updates.utils.lock import UpgradeLock
from nextcloud_updates.utils.health import check_status_endpoint
from nextcloud_updates.utils.nextcloud_config import read_config_value, write_config_values
from nextcloud_updates.utils.state_manager import (
    StateStore,
    StateStoreError,
    FileStateStore,
    LAST_BACKUP,
    MIGRATION_ORDINAL
)
from nextcloud_updates.utils.records import (
    BackendType,
    BackupRecord,
    CredentialsError,
    load_credentials
)
from nextcloud_updates.modules.probe import DatabaseProbe
from nextcloud_updates.modules.ssl import SSLManager
from nextcloud_updates.modules.backup import BackupProducer
from nextcloud_updates.modules.converter import DatabaseConverter, PostgresAdmin
from nextcloud_updates.modules.migrations import MigrationRunner, StepContext, builtin_steps


class UpgradeSequencer:
    """
    Drives one upgrade cycle around the external package upgrade.

    pre-update:  backup, live MySQL conversion when possible, stop services
    post-update: SSL restore, migrations, PostgreSQL prepare, service restart,
                 database wait, conversion, installed flag, occ upgrade and
                 repair, maintenance off (always last)

    Every post-update step after the backup is safe to repeat, so an
    interrupted run is recovered by running it again. Only one operation can
    hold the upgrade lock at a time.
    """

    def __init__(self, config: Dict[str, Any], services: ServiceManager, occ: OccClient,
                 state: StateStore, lock: UpgradeLock, probe: DatabaseProbe, backup: BackupProducer,
                 converter: DatabaseConverter, ssl: SSLManager, postgres: PostgresAdmin,
                 migrations: MigrationRunner, runner: CommandRunner,
                 step_context: Optional[StepContext] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.services = services
        self.occ = occ
        self.state = state
        self.lock = lock
        self.probe = probe
        self.backup = backup
        self.converter = converter
        self.ssl = ssl
        self.postgres = postgres
        self.migrations = migrations
        self.runner = runner
        self.step_context = step_context
        self.sleep = sleep
        self.services_config = get_section(config, "services")
        self.nextcloud_config = get_section(config, "nextcloud")
        self.database_config = get_section(config, "database")
        self.wait_config = get_section(config, "wait")

    def _step(self, name: str, action: Callable[[], Any]) -> Any:
        log_step_start(name)
        try:
            result = action()
        except CredentialsError:
            log_step_end(name, "missing credentials")
            raise
        except Exception as e:
            log_message(f"{name} failed: {e}", "ERROR")
            log_step_end(name, "failed")
            return None
        log_step_end(name, "done")
        return result

    def _wait(self, check: Callable[[], bool], description: str) -> bool:
        return wait_for(check, description,
                        max_attempts=int(self.wait_config.get("max_attempts", 30)),
                        interval=float(self.wait_config.get("interval", 2)),
                        sleep=self.sleep)

    # pre-update

    def _convert_live(self) -> Optional[Dict[str, Any]]:
        if not self.postgres.is_initialized():
            log_message("PostgreSQL is not initialized yet, conversion deferred to post-update")
            return None
        try:
            credentials = load_credentials(self.database_config)
        except CredentialsError as e:
            log_message(f"{e}, conversion deferred to post-update", "WARNING")
            return None

        attempt = self.converter.convert_mysql_to_postgresql(credentials, allow_offline=False)
        # the live path switches maintenance mode off for db:convert-type
        self.occ.maintenance_mode(True)
        if not attempt.succeeded:
            log_message("Live conversion did not complete, post-update will retry from the backup", "WARNING")
        return attempt.to_dict()

    def _stop_services(self) -> None:
        names = list(self.services_config.get("managed", [])) + list(self.services_config.get("restart_if_running", []))
        for name in names:
            self.services.stop(name)
        log_message(f"Stopped services: {', '.join(names)}")

    def run_pre_update(self) -> Dict[str, Any]:
        """Back up, convert while MySQL is still alive, then stop every managed service."""
        with self.lock.hold("pre-update"):
            log_step_start("Pre-update")
            result: Dict[str, Any] = {"success": True, "conversion": None}
            try:
                record = self.backup.create_backup(keep_maintenance=True)
                result.update({
                    "backup_dir": record.backup_dir,
                    "backend": record.backend.value,
                    "usable_dump": record.has_usable_dump,
                })
                if record.backend == BackendType.MYSQL:
                    result["conversion"] = self._step("Live MySQL conversion", self._convert_live)
            finally:
                self._step("Stop services", self._stop_services)
                log_step_end("Pre-update")
            return result

    # post-update

    def _load_record(self) -> Optional[BackupRecord]:
        backup_dir = self.state.get(LAST_BACKUP)
        if not backup_dir:
            log_message("No pre-update backup recorded")
            return None
        record = BackupRecord.load(backup_dir)
        if record is None:
            log_message(f"Recorded backup {backup_dir} no longer exists, clearing the pointer", "WARNING")
            self.state.delete(LAST_BACKUP)
        else:
            log_message(f"Pre-update backup found at: {backup_dir}")
        return record

    def _restart_services(self) -> None:
        for name in self.services_config.get("managed", []):
            self.services.ensure_running(name)
        for name in self.services_config.get("restart_if_running", []):
            self.services.restart_if_running(name)

    def _convert_after_upgrade(self) -> Dict[str, Any]:
        credentials = load_credentials(self.database_config)
        return self.converter.convert_mysql_to_postgresql(credentials).to_dict()

    def _reconcile_installed_flag(self) -> Optional[bool]:
        """
        Make config.php's ``installed`` match the PostgreSQL database.

        Only applies once config.php points at PostgreSQL; a MySQL install
        awaiting conversion is left alone.
        """
        config_file = self.nextcloud_config.get("config_file")
        if read_config_value(config_file, "dbtype") != "pgsql":
            log_message("Nextcloud does not use PostgreSQL yet, leaving installed flag alone")
            return None

        name = read_config_value(config_file, "dbname") or self.database_config.get("name", "nextcloud")
        has_data = self.postgres.database_exists(name) and self.postgres.has_core_data(name)
        installed = read_config_value(config_file, "installed") is True
        if installed == has_data:
            return installed

        log_message(f"installed flag is {installed} but core data present is {has_data}, correcting", "WARNING")
        write_config_values(self.runner, config_file, {"installed": has_data},
                            php_bin=self.nextcloud_config.get("php_bin", "php"))
        return has_data

    def _upgrade_application(self, record: Optional[BackupRecord]) -> bool:
        if not self.occ.available():
            log_message("Nextcloud is not installed, skipping occ upgrade")
            return False
        upgraded = self.occ.upgrade()

        before = record.nextcloud_version if record else None
        after = read_config_value(self.nextcloud_config.get("config_file"), "version")
        if before and after is not None:
            comparison = compare_versions(str(after), before)
            if comparison > 0:
                log_message(f"Nextcloud upgraded from {before} to {after}")
            elif comparison < 0:
                log_message(f"Nextcloud reports {after}, older than {before} before the update; "
                            "downgrades are not supported", "WARNING")
            else:
                log_message(f"Nextcloud version unchanged ({after})")
        return upgraded

    def _repair_application(self) -> Dict[str, bool]:
        if not self.occ.available():
            return {}
        results = self.occ.add_missing_database_items()
        results["maintenance:repair"] = self.occ.repair()
        results["app:update"] = self.occ.update_apps()
        return results

    def _post_update(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": True}
        fatal: Optional[CredentialsError] = None
        try:
            record = self._load_record()
            if self.step_context is not None:
                self.step_context.record = record
            result["backup_dir"] = record.backup_dir if record else None

            result["ssl_restored"] = self._step("SSL restore", lambda: self.ssl.restore(record))
            result["migrations"] = self._step("Migrations", self.migrations.run_migrations)
            self._step("PostgreSQL prepare", lambda: self.postgres.ensure_initialized(self.services))
            self._step("Service restart", self._restart_services)
            result["database_ready"] = self._step(
                "Database wait", lambda: self._wait(self.postgres.is_ready, "PostgreSQL")
            )

            if record is not None and record.backend == BackendType.MYSQL:
                try:
                    result["conversion"] = self._step("Database conversion", self._convert_after_upgrade)
                except CredentialsError as e:
                    log_message(f"{e}; cannot convert the MySQL data", "ERROR")
                    fatal = e
                    result["success"] = False

            result["installed"] = self._step("Installed flag", self._reconcile_installed_flag)
            result["upgraded"] = self._step("Application upgrade", lambda: self._upgrade_application(record))
            result["repair"] = self._step("Application repair", self._repair_application)
        finally:
            self._step("Maintenance off", lambda: self.occ.maintenance_mode(False))

        if fatal is not None:
            raise fatal
        return result

    def run_post_update(self) -> Dict[str, Any]:
        """
        Bring the jail back after the package upgrade.

        Raises:
            CredentialsError: after the full sequence ran, when MySQL data
            needed converting but no database password exists
        """
        with self.lock.hold("post-update"):
            log_step_start("Post-update")
            try:
                return self._post_update()
            finally:
                log_step_end("Post-update")

    def run_migrations(self) -> Dict[str, Any]:
        with self.lock.hold("migrations"):
            return self.migrations.run_migrations()

    def convert(self, dump_path: Optional[str] = None, force_offline: bool = False) -> Dict[str, Any]:
        """Operator-triggered conversion. Raises CredentialsError without a password."""
        with self.lock.hold("convert"):
            credentials = load_credentials(self.database_config)
            attempt = self.converter.convert_mysql_to_postgresql(
                credentials, dump_path=dump_path, force_offline=force_offline
            )
            return {"success": attempt.succeeded, "attempt": attempt.to_dict()}

    def status(self) -> Dict[str, Any]:
        try:
            ordinal: Optional[int] = self.state.get_int(MIGRATION_ORDINAL, 0)
        except StateStoreError as e:
            log_message(str(e), "WARNING")
            ordinal = None
        status = {
            "success": True,
            "backend": self.probe.detect_backend().value,
            "migration_ordinal": ordinal,
            "last_backup": self.state.get(LAST_BACKUP),
            "lock": self.lock.read(),
            "nextcloud": check_status_endpoint(self.nextcloud_config.get("status_url", "http://localhost/status.php")),
        }
        log_message(
            f"Backend: {status['backend']}, migration ordinal: {ordinal}, "
            f"last backup: {status['last_backup'] or 'none'}"
        )
        return status


def create_sequencer(config: Dict[str, Any], runner: Optional[CommandRunner] = None) -> UpgradeSequencer:
    """Wire every component against the real system."""
    runner = runner or CommandRunner()
    services = ServiceManager(runner, get_section(config, "services"))
    occ = OccClient(runner, get_section(config, "nextcloud"))
    state = FileStateStore.from_config(get_section(config, "state"))
    state_config = get_section(config, "state")
    lock = UpgradeLock(state_config.get("lock_file", "/var/run/nextcloud-updates.lock"),
                       float(state_config.get("lock_timeout", 7200)))
    probe = DatabaseProbe(config, services)
    ssl = SSLManager(config, runner)
    postgres = PostgresAdmin(runner, get_section(config, "database"))
    backup = BackupProducer(config, runner, services, occ, state, probe, ssl)
    converter = DatabaseConverter(config, runner, services, occ, state, postgres)
    step_context = StepContext(config, services, occ, postgres, ssl)
    migrations = MigrationRunner(config, state, runner, builtin_steps(step_context))
    return UpgradeSequencer(config, services, occ, state, lock, probe, backup, converter, ssl,
                            postgres, migrations, runner, step_context)


def main(args=None):
    """
    Main entry point for the sequencer module.

    Args:
        args: ['--pre-update'] or ['--post-update'] (default)

    Returns:
        dict: Result of the selected phase
    """
    args = args or []
    sequencer = create_sequencer(load_root_config())
    if "--pre-update" in args:
        return sequencer.run_pre_update()
    return sequencer.run_post_update()


if __name__ == "__main__":
    print(main())
