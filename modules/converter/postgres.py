"""
Nextcloud Plugin Update Management System - PostgreSQL Administration
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
import glob
from pathlib import Path
from typing import Dict, Any, List, Optional
from nextcloud_updates.utils.index import log_message, debug_log
from nextcloud_updates.utils.commands import CommandRunner
from nextcloud_updates.utils.services import ServiceManager
from nextcloud_updates.utils.records import DatabaseCredentials

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConversionError(Exception):
    """A conversion step cannot continue."""
    pass


def _identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ConversionError(f"Refusing unsafe database identifier: {name!r}")
    return name


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresAdmin:
    """
    Administrative psql access as the ``postgres`` superuser.

    Role and database names are validated identifiers; passwords only ever
    travel inside quoted SQL literals or the PGPASSWORD environment variable.
    """

    def __init__(self, runner: CommandRunner, database_config: Dict[str, Any]):
        self.runner = runner
        self.superuser = database_config.get("postgres_user", "postgres")
        self.core_tables: List[str] = list(database_config.get("core_tables", ["oc_users", "oc_appconfig"]))
        self.data_glob = database_config.get("pg_data_glob", "/var/db/postgres/data*")
        self.rc_script = database_config.get("pg_rc_script", "/usr/local/etc/rc.d/postgresql")
        self.initdb_flags = database_config.get("initdb_flags", "--auth-local=trust --auth-host=trust")

    def psql(self, sql: str, database: Optional[str] = None):
        cmd = ["psql", "-tA", "-c", sql]
        if database:
            cmd[1:1] = ["-d", database]
        return self.runner.run_as(self.superuser, cmd)

    def query(self, sql: str, database: Optional[str] = None) -> Optional[str]:
        result = self.psql(sql, database)
        if result.returncode != 0:
            debug_log(f"psql query failed: {result.stderr.strip()}")
            return None
        return result.stdout.strip()

    def execute(self, sql: str, database: Optional[str] = None) -> bool:
        result = self.psql(sql, database)
        if result.returncode != 0:
            log_message(f"psql: {result.stderr.strip()}", "WARNING")
            return False
        return True

    def is_ready(self) -> bool:
        return self.psql("SELECT 1").returncode == 0

    def role_exists(self, role: str) -> bool:
        return self.query(f"SELECT 1 FROM pg_roles WHERE rolname = {_literal(role)}") == "1"

    def database_exists(self, name: str) -> bool:
        return self.query(f"SELECT 1 FROM pg_database WHERE datname = {_literal(name)}") == "1"

    def has_core_data(self, database: str) -> bool:
        """True when any core Nextcloud table can be read in ``database``."""
        for table in self.core_tables:
            if self.psql(f"SELECT 1 FROM {_identifier(table)} LIMIT 1", database).returncode == 0:
                return True
        return False

    def table_count(self, database: str) -> int:
        value = self.query(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_schema = 'public'", database
        )
        try:
            return int(value) if value else 0
        except ValueError:
            return 0

    def ensure_role_and_database(self, credentials: DatabaseCredentials) -> bool:
        """Create the application role and database if they are missing."""
        user = _identifier(credentials.user)
        name = _identifier(credentials.name)

        if not self.role_exists(user):
            log_message(f"Creating PostgreSQL role '{user}'")
            self.execute(f"CREATE USER {user} WITH NOSUPERUSER NOCREATEDB NOCREATEROLE")
        self.execute(f"ALTER USER {user} WITH PASSWORD {_literal(credentials.password)}")

        if self.database_exists(name):
            log_message(f"PostgreSQL database '{name}' already exists")
        else:
            log_message(f"Creating PostgreSQL database '{name}'")
            if not self.execute(f"CREATE DATABASE {name} OWNER {user} ENCODING 'UTF8' TEMPLATE template0"):
                return False
        self.execute(f"GRANT ALL PRIVILEGES ON DATABASE {name} TO {user}")
        self.execute(f"GRANT ALL ON SCHEMA public TO {user}", database=name)
        return self.database_exists(name)

    def recreate_database(self, credentials: DatabaseCredentials) -> bool:
        """Drop and recreate role and database for a clean import."""
        user = _identifier(credentials.user)
        name = _identifier(credentials.name)
        log_message(f"Recreating PostgreSQL database '{name}'")
        self.execute(f"DROP DATABASE IF EXISTS {name}")
        self.execute(f"DROP USER IF EXISTS {user}")
        return self.ensure_role_and_database(credentials)

    def import_file(self, credentials: DatabaseCredentials, sql_file: str, error_log: str) -> bool:
        """
        Feed a script to psql as the application role.

        Statement errors do not stop psql; they are written to ``error_log``
        and counted. Only a failing psql process counts as a failed import.
        """
        result = self.runner.run(
            ["psql", "-U", credentials.user, "-h", credentials.host, "-p", str(credentials.port),
             "-d", credentials.name, "-f", sql_file],
            env={"PGPASSWORD": credentials.password},
        )
        errors = [line for line in (result.stderr or "").splitlines() if "ERROR" in line]
        try:
            Path(error_log).write_text(result.stderr or "")
        except OSError as e:
            log_message(f"Could not write {error_log}: {e}", "WARNING")
        if errors:
            log_message(f"psql reported {len(errors)} statement errors, see {error_log}", "WARNING")
        return result.returncode == 0

    def is_initialized(self) -> bool:
        return any(Path(path).is_dir() for path in glob.glob(self.data_glob))

    def ensure_initialized(self, services: ServiceManager) -> bool:
        """Run initdb once when no cluster data directory exists yet."""
        if self.is_initialized():
            debug_log("PostgreSQL cluster already initialised")
            return True
        log_message("PostgreSQL not initialized - initializing now...")
        services.set_rc_value("postgresql_initdb_flags", self.initdb_flags)
        result = self.runner.run([self.rc_script, "oneinitdb"])
        if result.returncode != 0:
            log_message(f"PostgreSQL initialization may have failed: {result.stderr.strip()}", "WARNING")
            return False
        log_message("PostgreSQL initialized successfully")
        return True
