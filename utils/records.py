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
Shared value types: backend and SSL classifications, database credentials,
backup records and conversion attempts.

Marker files written next to a backup keep the exact text the legacy shell
hooks used, so backups taken by either implementation can be read back.
"""

import json
from enum import Enum
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional
from .index import log_message

MANIFEST_NAME = "backup.json"
DATABASE_TYPE_FILE = "database_type.txt"
SSL_STATE_FILE = "ssl_state.txt"
URL_SCHEME_FILE = "nc_url_scheme.txt"
MIGRATION_STATE_FILE = "migration_state.txt"
CONFIG_DIR_NAME = "nextcloud-config"
CERTIFICATES_DIR_NAME = "letsencrypt"
JAIL_OPTIONS_NAME = "jail_options.env"
PG_DUMP_NAME = "nextcloud_pg.sql"
MYSQL_DUMP_NAME = "nextcloud_mysql.sql"


class CredentialsError(Exception):
    """Database credentials are missing; no safe default exists."""
    pass


class _MarkerEnum(str, Enum):

    @classmethod
    def parse(cls, text: Optional[str]):
        """Map marker-file text onto a member, None when unrecognised."""
        if text is None:
            return None
        value = text.strip().lower()
        for member in cls:
            if member.value == value:
                return member
        return None


class BackendType(_MarkerEnum):
    NONE = "none"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"


class SSLState(_MarkerEnum):
    NONE = "none"
    SELF_SIGNED = "self-signed"
    LETSENCRYPT = "letsencrypt"
    CUSTOM_SSL = "custom-ssl"


class ConversionMethod(_MarkerEnum):
    NONE = "none"
    OCC_CONVERT = "occ-convert"
    SQL_DUMP_REWRITE = "sql-dump-rewrite"


class ConversionOutcome(_MarkerEnum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class DatabaseCredentials:
    user: str
    password: str
    name: str = "nextcloud"
    host: str = "localhost"
    port: str = "5432"


def _read_text(path: str) -> Optional[str]:
    try:
        value = Path(path).read_text().strip()
        return value or None
    except OSError:
        return None


def load_credentials(database_config: Dict[str, Any]) -> DatabaseCredentials:
    """
    Read database credentials from the plugin's credential files.

    Raises:
        CredentialsError: if the password file is missing or empty
    """
    password = _read_text(database_config.get("password_file", "/root/dbpassword"))
    if not password:
        raise CredentialsError(
            f"Cannot read database password from {database_config.get('password_file', '/root/dbpassword')}"
        )
    return DatabaseCredentials(
        user=_read_text(database_config.get("user_file", "/root/dbuser")) or database_config.get("default_user", "dbadmin"),
        password=password,
        name=_read_text(database_config.get("name_file", "/root/dbname")) or database_config.get("name", "nextcloud"),
        host=database_config.get("host", "localhost"),
        port=str(database_config.get("port", "5432")),
    )


@dataclass
class BackupRecord:
    """One pre-update backup directory and what was captured into it."""
    backup_dir: str
    timestamp: str
    backend: BackendType = BackendType.NONE
    dump_file: Optional[str] = None
    # None until detected, or when the marker held an unrecognised value
    ssl_state: Optional[SSLState] = None
    url_scheme: str = "http"
    migration_ordinal: int = 0
    nextcloud_version: Optional[str] = None
    config_dir: Optional[str] = None
    certificates_dir: Optional[str] = None
    jail_options_file: Optional[str] = None

    @property
    def has_usable_dump(self) -> bool:
        """An empty or missing dump means no usable database backup."""
        if not self.dump_file:
            return False
        path = Path(self.dump_file)
        return path.is_file() and path.stat().st_size > 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["backend"] = self.backend.value
        data["ssl_state"] = self.ssl_state.value if self.ssl_state else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        data = dict(data)
        data["backend"] = BackendType.parse(data.get("backend")) or BackendType.NONE
        data["ssl_state"] = SSLState.parse(data["ssl_state"]) if "ssl_state" in data else SSLState.NONE
        data["migration_ordinal"] = int(data.get("migration_ordinal") or 0)
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def save(self) -> None:
        manifest = Path(self.backup_dir) / MANIFEST_NAME
        with open(manifest, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, backup_dir: str) -> Optional['BackupRecord']:
        """
        Load a record from its directory.

        Directories written by the shell hooks have no manifest, only the
        individual marker files; those are read the same way.
        """
        directory = Path(backup_dir)
        if not directory.is_dir():
            return None

        manifest = directory / MANIFEST_NAME
        if manifest.exists():
            try:
                with open(manifest, 'r') as f:
                    return cls.from_dict(json.load(f))
            except Exception as e:
                log_message(f"Backup manifest {manifest} unreadable, falling back to marker files: {e}", "WARNING")

        dump_file = None
        for name in (PG_DUMP_NAME, MYSQL_DUMP_NAME):
            if (directory / name).exists():
                dump_file = str(directory / name)
                break

        ordinal_text = _read_text(str(directory / MIGRATION_STATE_FILE))
        try:
            ordinal = int(ordinal_text) if ordinal_text else 0
        except ValueError:
            ordinal = 0

        optional = {
            "config_dir": directory / CONFIG_DIR_NAME,
            "certificates_dir": directory / CERTIFICATES_DIR_NAME,
            "jail_options_file": directory / JAIL_OPTIONS_NAME,
        }
        return cls(
            backup_dir=str(directory),
            timestamp=directory.name,
            backend=BackendType.parse(_read_text(str(directory / DATABASE_TYPE_FILE))) or BackendType.NONE,
            dump_file=dump_file,
            ssl_state=SSLState.parse(_read_text(str(directory / SSL_STATE_FILE)) or "none"),
            url_scheme=_read_text(str(directory / URL_SCHEME_FILE)) or "http",
            migration_ordinal=ordinal,
            **{key: str(path) if path.exists() else None for key, path in optional.items()},
        )


@dataclass
class ConversionAttempt:
    method: ConversionMethod
    outcome: ConversionOutcome
    table_count: int = 0
    message: str = ""
    dump_file: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == ConversionOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["method"] = self.method.value
        data["outcome"] = self.outcome.value
        return data
