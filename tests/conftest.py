"""
Shared fixtures for the update orchestration tests.

Collaborators that would touch the system (subprocesses, rc(8) services, occ,
psql) are replaced by small recording fakes. Filesystem state lives under
pytest's tmp_path.
"""

import subprocess
from pathlib import Path

import pytest

from nextcloud_updates.utils.moduleUtils import build_config
from nextcloud_updates.utils.records import (
    BackendType,
    ConversionAttempt,
    ConversionMethod,
    ConversionOutcome
)


class FakeRunner:
    """
    CommandRunner stand-in.

    Every command is recorded. Responses come from rules registered with on();
    the most recently registered matching rule wins, unmatched commands succeed
    with empty output.
    """

    def __init__(self):
        self.calls = []
        self.rules = []

    def on(self, pattern, returncode=0, stdout="", stderr="", effect=None):
        self.rules.append((pattern, returncode, stdout, stderr, effect))
        return self

    def _matches(self, pattern, text):
        if callable(pattern):
            return pattern(text)
        return pattern in text

    def run(self, cmd, env=None, timeout=None):
        cmd = list(cmd)
        self.calls.append({"cmd": cmd, "env": env, "timeout": timeout})
        text = " ".join(cmd)
        for pattern, returncode, stdout, stderr, effect in reversed(self.rules):
            if self._matches(pattern, text):
                if effect is not None:
                    produced = effect(cmd, env)
                    if isinstance(produced, subprocess.CompletedProcess):
                        return produced
                return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def run_as(self, user, command, env=None, timeout=None):
        # joined unquoted so assertions can match SQL text verbatim
        if not isinstance(command, str):
            command = " ".join(command)
        return self.run(["su", "-m", user, "-c", command], env=env, timeout=timeout)

    def commands(self):
        return [" ".join(call["cmd"]) for call in self.calls]

    def ran(self, fragment):
        return any(fragment in command for command in self.commands())


class FakeServices:
    """ServiceManager stand-in backed by two sets."""

    def __init__(self, running=(), enabled=()):
        self.running = set(running)
        self.enabled = set(enabled)
        self.actions = []
        self.rc_values = {}

    def status(self, name):
        return name in self.running

    def start(self, name):
        self.actions.append(("start", name))
        self.running.add(name)
        return True

    def stop(self, name):
        self.actions.append(("stop", name))
        was_running = name in self.running
        self.running.discard(name)
        return was_running

    def restart(self, name):
        self.actions.append(("restart", name))
        self.running.add(name)
        return True

    def ensure_running(self, name):
        if self.status(name):
            return self.restart(name)
        return self.start(name)

    def restart_if_running(self, name):
        if self.status(name):
            return self.restart(name)
        return False

    def is_enabled(self, name):
        return name in self.enabled

    def enable(self, name):
        self.actions.append(("enable", name))
        self.enabled.add(name)
        return True

    def set_rc_value(self, variable, value):
        self.rc_values[variable] = value
        return True

    def rcvar(self, name):
        return name.replace("-", "_")


class FakeOcc:
    """OccClient stand-in recording every call in order."""

    def __init__(self, available=True, convert_ok=True, cron_ok=True):
        self.is_available = available
        self.convert_ok = convert_ok
        self.cron_ok = cron_ok
        self.system = {}
        self.calls = []

    def available(self):
        return self.is_available

    def maintenance_mode(self, enabled):
        self.calls.append(("maintenance", enabled))
        return True

    def upgrade(self):
        self.calls.append(("upgrade",))
        return True

    def repair(self):
        self.calls.append(("repair",))
        return True

    def add_missing_database_items(self):
        self.calls.append(("add-missing",))
        return {"db:add-missing-indices": True}

    def update_apps(self):
        self.calls.append(("update-apps",))
        return True

    def install_app(self, name):
        self.calls.append(("install-app", name))
        return True

    def background_cron(self):
        self.calls.append(("background-cron",))
        return self.cron_ok

    def get_system(self, *keys):
        return self.system.get(keys)

    def set_system(self, *keys, value, value_type=None):
        self.calls.append(("set-system", keys, value))
        self.system[keys] = value
        return True

    def convert_type(self, user, password, host, database, driver="pgsql"):
        self.calls.append(("convert-type", user, host, database))
        return self.convert_ok

    def names(self):
        return [call[0] for call in self.calls]


class FakePostgres:
    """PostgresAdmin stand-in with in-memory databases."""

    def __init__(self, ready=True, initialized=True, import_ok=True, imported_tables=0):
        self.ready = ready
        self.initialized = initialized
        self.import_ok = import_ok
        self.imported_tables = imported_tables
        self.databases = set()
        self.core_data = set()
        self.tables = {}
        self.calls = []
        self.imported_sql = None

    def is_ready(self):
        return self.ready

    def is_initialized(self):
        return self.initialized

    def ensure_initialized(self, services):
        self.calls.append(("ensure-initialized",))
        self.initialized = True
        return True

    def database_exists(self, name):
        return name in self.databases

    def has_core_data(self, name):
        return name in self.core_data

    def table_count(self, name):
        return self.tables.get(name, 0)

    def ensure_role_and_database(self, credentials):
        self.calls.append(("ensure-role", credentials.user, credentials.name))
        self.databases.add(credentials.name)
        return True

    def recreate_database(self, credentials):
        self.calls.append(("recreate", credentials.name))
        self.databases.add(credentials.name)
        self.core_data.discard(credentials.name)
        self.tables[credentials.name] = 0
        return True

    def import_file(self, credentials, sql_file, error_log):
        self.calls.append(("import", sql_file, error_log))
        self.imported_sql = Path(sql_file).read_text()
        Path(error_log).write_text("")
        if self.import_ok:
            self.tables[credentials.name] = self.imported_tables
        return self.import_ok


class FakeSSL:
    def __init__(self, cert_path):
        self.fullchain = Path(cert_path) / "fullchain.pem"
        self.generated = 0
        self.restored = []

    def generate_self_signed(self):
        self.generated += 1
        return True

    def restore(self, record):
        self.restored.append(record)
        return True


class FakeProbe:
    def __init__(self, backend=BackendType.NONE):
        self.backend = backend

    def detect_backend(self):
        return self.backend


class FakeConverter:
    def __init__(self, outcome=ConversionOutcome.SUCCESS, method=ConversionMethod.OCC_CONVERT):
        self.outcome = outcome
        self.method = method
        self.calls = []

    def convert_mysql_to_postgresql(self, credentials, **kwargs):
        self.calls.append((credentials, kwargs))
        return ConversionAttempt(self.method, self.outcome, 42, "test")


def write_config_php(path, values):
    """Write a config.php the way Nextcloud's var_export leaves it."""
    lines = ["<?php", "$CONFIG = array ("]
    for key, value in values.items():
        if isinstance(value, bool):
            rendered = "true" if value else "false"
        elif isinstance(value, (int, float)):
            rendered = str(value)
        else:
            rendered = "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"
        lines.append(f"  '{key}' => {rendered},")
    lines.append(");")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def config(tmp_path):
    return build_config({"config": {
        "nextcloud": {
            "install_dir": str(tmp_path / "nextcloud"),
            "config_file": str(tmp_path / "nextcloud" / "config" / "config.php"),
            "config_dir": str(tmp_path / "nextcloud" / "config"),
        },
        "database": {
            "user_file": str(tmp_path / "dbuser"),
            "password_file": str(tmp_path / "dbpassword"),
            "name_file": str(tmp_path / "dbname"),
            "pg_data_glob": str(tmp_path / "pgdata*"),
            "pg_rc_script": str(tmp_path / "rc.d" / "postgresql"),
        },
        "state": {
            "last_backup_file": str(tmp_path / "state" / "last_pre_update_backup"),
            "migration_ordinal_file": str(tmp_path / "state" / "current_migration.txt"),
            "migration_log": str(tmp_path / "log" / "migrations.log"),
            "lock_file": str(tmp_path / "run" / "updates.lock"),
        },
        "backup": {
            "root": str(tmp_path / "backups"),
        },
        "ssl": {
            "letsencrypt_dir": str(tmp_path / "letsencrypt"),
            "cert_path": str(tmp_path / "letsencrypt" / "live" / "truenas"),
            "nginx_https_conf": str(tmp_path / "nginx" / "nextcloud.https.conf"),
            "jail_options_file": str(tmp_path / "jail_options.env"),
            "self_signed_command": ["generate-certs"],
        },
        "services": {
            "rc_conf": str(tmp_path / "rc.conf"),
        },
        "wait": {
            "max_attempts": 3,
            "interval": 0,
        },
        "migrations": {
            "dir": str(tmp_path / "migrations"),
        },
    }})


@pytest.fixture
def config_php(config):
    path = config["config"]["nextcloud"]["config_file"]

    def write(**values):
        return write_config_php(path, values)
    return write


@pytest.fixture
def credentials_files(tmp_path):
    (tmp_path / "dbuser").write_text("ncuser\n")
    (tmp_path / "dbpassword").write_text("s3cret\n")
    (tmp_path / "dbname").write_text("nextcloud\n")
    return tmp_path


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def no_sleep():
    return lambda seconds: None
