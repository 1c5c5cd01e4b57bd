"""
Nextcloud Plugin Update Management System - MySQL to PostgreSQL Converter
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
import time
import glob
import argparse
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional
from nextcloud_updates.utils.index import log_message, log_step_start, log_step_end, wait_for
from nextcloud_updates.utils.moduleUtils import load_root_config, get_section
from nextcloud_updates.utils.commands import CommandRunner
from nextcloud_updates.utils.services import ServiceManager
from nextcloud_updates.utils.occ import OccClient
from nextcloud_updates.utils.state_manager import StateStore, FileStateStore, LAST_BACKUP
from nextcloud_updates.utils.nextcloud_config import read_config_value, write_config_values
from nextcloud_updates.utils.records import (
    ConversionAttempt,
    ConversionMethod,
    ConversionOutcome,
    DatabaseCredentials,
    load_credentials
)
from .postgres import PostgresAdmin, ConversionError
from .rewrite import rewrite_dump

CONVERTED_NAME = "nextcloud_pg_converted.sql"
IMPORT_ERRORS_NAME = "pg_import_errors.log"
STALE_CONFIG_KEYS = ["mysql.utf8mb4"]


def _failure(method: ConversionMethod, message: str, table_count: int = 0,
             dump_file: Optional[str] = None) -> ConversionAttempt:
    return ConversionAttempt(method, ConversionOutcome.FAILURE, table_count, message, dump_file)


def _success(method: ConversionMethod, message: str, table_count: int = 0,
             dump_file: Optional[str] = None) -> ConversionAttempt:
    return ConversionAttempt(method, ConversionOutcome.SUCCESS, table_count, message, dump_file)


class DatabaseConverter:
    """
    Moves Nextcloud's data from MySQL into PostgreSQL.

    States, in order:
    - CheckAlreadyMigrated: core tables already readable in the target -> no-op success
    - TryLiveConversion: ``occ db:convert-type`` while MySQL still runs
    - TryOfflineRewrite: rewrite the newest MySQL dump and import it
    - Done: point config.php at PostgreSQL on success

    A failed attempt leaves the target database as it is; the MySQL dump in
    the backup directory remains the way back.
    """

    def __init__(self, config: Dict[str, Any], runner: CommandRunner, services: ServiceManager,
                 occ: OccClient, state: StateStore, postgres: PostgresAdmin,
                 sleep: Callable[[float], None] = time.sleep):
        self.runner = runner
        self.services = services
        self.occ = occ
        self.state = state
        self.postgres = postgres
        self.sleep = sleep
        self.nextcloud_config = get_section(config, "nextcloud")
        self.backup_config = get_section(config, "backup")
        self.services_config = get_section(config, "services")
        self.wait_config = get_section(config, "wait")

    def _wait(self, check: Callable[[], bool], description: str) -> bool:
        return wait_for(check, description,
                        max_attempts=int(self.wait_config.get("max_attempts", 30)),
                        interval=float(self.wait_config.get("interval", 2)),
                        sleep=self.sleep)

    def _ensure_postgres(self) -> bool:
        if not self.services.status("postgresql"):
            log_message("PostgreSQL is not running. Starting it...")
            self.services.start("postgresql")
        return self._wait(self.postgres.is_ready, "PostgreSQL")

    def _check_already_migrated(self, target: DatabaseCredentials) -> Optional[ConversionAttempt]:
        if self.postgres.database_exists(target.name) and self.postgres.has_core_data(target.name):
            tables = self.postgres.table_count(target.name)
            log_message("PostgreSQL already has Nextcloud data - migration not needed")
            return _success(ConversionMethod.NONE, "already migrated", tables)
        return None

    def _try_live_conversion(self, target: DatabaseCredentials) -> Optional[ConversionAttempt]:
        if not self.services.status("mysql-server"):
            log_message("MySQL is not running, live conversion unavailable")
            return None

        log_message("Attempting migration using occ db:convert-type...")
        try:
            if not self.postgres.ensure_role_and_database(target):
                return _failure(ConversionMethod.OCC_CONVERT, "could not prepare target database")
        except ConversionError as e:
            return _failure(ConversionMethod.OCC_CONVERT, str(e))

        # db:convert-type refuses to run in maintenance mode
        self.occ.maintenance_mode(False)
        if not self.occ.convert_type(target.user, target.password, target.host, target.name):
            log_message("occ db:convert-type failed", "WARNING")
            return _failure(ConversionMethod.OCC_CONVERT, "occ db:convert-type failed")

        tables = self.postgres.table_count(target.name)
        log_message(f"occ db:convert-type completed successfully ({tables} tables)")
        return _success(ConversionMethod.OCC_CONVERT, "converted live", tables)

    def _usable(self, path: Path) -> bool:
        return path.is_file() and path.stat().st_size > 0

    def find_mysql_dump(self, explicit: Optional[str] = None) -> Optional[str]:
        """
        Locate the MySQL dump to rewrite.

        An explicit path wins, then the dump in the last backup, then the
        newest dump in any historical backup directory.
        """
        dump_names: List[str] = list(self.backup_config.get("mysql_dump_names", ["nextcloud_mysql.sql"]))

        if explicit:
            if self._usable(Path(explicit)):
                return explicit
            log_message(f"Given dump {explicit} is missing or empty, searching backups", "WARNING")

        last_backup = self.state.get(LAST_BACKUP)
        if last_backup:
            for name in dump_names:
                candidate = Path(last_backup) / name
                if self._usable(candidate):
                    return str(candidate)

        root = self.backup_config.get("root", "/root")
        directories = set()
        for pattern in self.backup_config.get("legacy_patterns", []):
            directories.update(p for p in glob.glob(os.path.join(root, pattern)) if os.path.isdir(p))
        for directory in sorted(directories, key=lambda d: os.path.basename(d), reverse=True):
            for name in dump_names:
                candidate = Path(directory) / name
                if self._usable(candidate):
                    return str(candidate)
        return None

    def _try_offline_rewrite(self, target: DatabaseCredentials, dump_path: Optional[str]) -> ConversionAttempt:
        method = ConversionMethod.SQL_DUMP_REWRITE
        log_message("Attempting SQL fallback migration from MySQL backup...")

        dump = self.find_mysql_dump(dump_path)
        if dump is None:
            log_message("No MySQL backup found for SQL fallback", "ERROR")
            return _failure(method, "no MySQL dump found")
        log_message(f"Found MySQL backup: {dump} ({Path(dump).stat().st_size} bytes)")

        workdir = Path(dump).parent
        converted = workdir / CONVERTED_NAME
        error_log = workdir / IMPORT_ERRORS_NAME

        stopped = []
        log_message("Stopping web services for migration...")
        for service in self.services_config.get("web", []):
            if self.services.status(service):
                self.services.stop(service)
                stopped.append(service)

        try:
            if not self.postgres.recreate_database(target):
                return _failure(method, "could not recreate target database", dump_file=dump)

            log_message("Converting MySQL dump to PostgreSQL format...")
            lines = rewrite_dump(dump, str(converted))
            if lines == 0:
                return _failure(method, "rewritten script is empty", dump_file=dump)

            log_message("Importing converted SQL into PostgreSQL...")
            imported = self.postgres.import_file(target, str(converted), str(error_log))
            tables = self.postgres.table_count(target.name)
        except (ConversionError, OSError) as e:
            log_message(f"SQL fallback migration failed: {e}", "ERROR")
            return _failure(method, str(e), dump_file=dump)
        finally:
            converted.unlink(missing_ok=True)
            for service in stopped:
                self.services.start(service)

        if not imported:
            log_message(f"psql import failed, {tables} tables present", "WARNING")
            return _failure(method, "psql import failed", tables, dump)
        if tables == 0:
            log_message("SQL fallback migration failed - no tables in database", "WARNING")
            return _failure(method, "no tables imported", 0, dump)

        log_message(f"SQL fallback migration completed - {tables} tables imported")
        return _success(method, "imported rewritten dump", tables, dump)

    def _point_config_at_postgres(self, target: DatabaseCredentials) -> bool:
        config_file = self.nextcloud_config.get("config_file")
        if read_config_value(config_file, "dbtype") == "pgsql" and \
                read_config_value(config_file, "dbname") == target.name:
            return True
        return write_config_values(
            self.runner,
            config_file,
            {
                "dbtype": "pgsql",
                "dbhost": target.host,
                "dbport": str(target.port),
                "dbuser": target.user,
                "dbpassword": target.password,
                "dbname": target.name,
            },
            removals=STALE_CONFIG_KEYS,
            php_bin=self.nextcloud_config.get("php_bin", "php"),
        )

    def _log_remediation(self, attempt: ConversionAttempt) -> None:
        log_message("Migration failed", "ERROR")
        last_backup = self.state.get(LAST_BACKUP)
        if attempt.dump_file:
            log_message(f"Your MySQL dump is preserved at: {attempt.dump_file}", "ERROR")
        elif last_backup:
            log_message(f"Your pre-update backup is preserved at: {last_backup}", "ERROR")
        log_message("Options:", "ERROR")
        log_message("  1. If MySQL is available, run occ db:convert-type manually", "ERROR")
        log_message("  2. Migrate the dump with pgloader or another tool", "ERROR")
        log_message("  3. Do a fresh Nextcloud installation via the web interface "
                    "(files in the data directory are kept)", "ERROR")

    def convert_mysql_to_postgresql(self, credentials: DatabaseCredentials, target_db: Optional[str] = None,
                                    dump_path: Optional[str] = None, force_offline: bool = False,
                                    allow_offline: bool = True) -> ConversionAttempt:
        """
        Run the conversion state machine.

        Args:
            credentials: Application role credentials, reused for the target
            target_db: Target database name, defaults to credentials.name
            dump_path: Explicit MySQL dump for the offline path
            force_offline: Skip the live conversion
            allow_offline: Permit the offline path (pre-update only tries live)

        Returns:
            ConversionAttempt: Outcome, method used and resulting table count
        """
        target = replace(credentials, name=target_db) if target_db else credentials
        log_step_start("MySQL to PostgreSQL Migration")

        if not self._ensure_postgres():
            attempt = _failure(ConversionMethod.NONE, "PostgreSQL is not reachable")
        else:
            attempt = self._check_already_migrated(target)
            if attempt is None and not force_offline:
                attempt = self._try_live_conversion(target)
            if (attempt is None or not attempt.succeeded) and allow_offline:
                attempt = self._try_offline_rewrite(target, dump_path)
            if attempt is None:
                attempt = _failure(ConversionMethod.OCC_CONVERT, "live conversion unavailable")

        if attempt.succeeded:
            if not self._point_config_at_postgres(target):
                log_message(f"Data converted but {self.nextcloud_config.get('config_file')} still points at "
                            "MySQL; rerun the conversion to update it", "WARNING")
            log_step_end("MySQL to PostgreSQL Migration", attempt.message)
        else:
            if allow_offline:
                self._log_remediation(attempt)
            log_step_end("MySQL to PostgreSQL Migration", f"failed: {attempt.message}")
        return attempt


def create_converter(config: Dict[str, Any]) -> DatabaseConverter:
    runner = CommandRunner()
    return DatabaseConverter(
        config,
        runner,
        ServiceManager(runner, get_section(config, "services")),
        OccClient(runner, get_section(config, "nextcloud")),
        FileStateStore.from_config(get_section(config, "state")),
        PostgresAdmin(runner, get_section(config, "database")),
    )


def main(args=None):
    """
    Main entry point for the converter module.

    Args:
        args: Optional list, accepts --force-sql-fallback and --dump PATH

    Returns:
        dict: {"success": bool, "attempt": {...}}

    Raises:
        CredentialsError: if no database password is available
    """
    parser = argparse.ArgumentParser(prog="converter", add_help=False)
    parser.add_argument("--force-sql-fallback", action="store_true")
    parser.add_argument("--dump")
    options, _ = parser.parse_known_args(args or [])

    config = load_root_config()
    credentials = load_credentials(get_section(config, "database"))
    attempt = create_converter(config).convert_mysql_to_postgresql(
        credentials, dump_path=options.dump, force_offline=options.force_sql_fallback
    )
    return {"success": attempt.succeeded, "attempt": attempt.to_dict()}


if __name__ == "__main__":
    print(main())
