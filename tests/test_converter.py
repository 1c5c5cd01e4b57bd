import json
import logging
import os

import pytest

from conftest import FakeOcc, FakePostgres, FakeRunner, FakeServices
from nextcloud_updates.modules.converter import DatabaseConverter
from nextcloud_updates.utils.records import ConversionMethod, DatabaseCredentials
from nextcloud_updates.utils.state_manager import MemoryStateStore, LAST_BACKUP

CREDENTIALS = DatabaseCredentials(user="ncuser", password="s3cret", name="nextcloud")

MYSQL_DUMP = """\
-- MySQL dump
CREATE TABLE `oc_users` (
  `uid` varchar(64) NOT NULL,
  PRIMARY KEY (`uid`)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
INSERT INTO `oc_users` VALUES ('admin');
"""


@pytest.fixture
def backup_root(tmp_path):
    root = tmp_path / "backups"
    root.mkdir()
    return root


def make_backup(root, name, dump=MYSQL_DUMP, dump_name="nextcloud_mysql.sql"):
    directory = root / name
    directory.mkdir()
    (directory / dump_name).write_text(dump)
    return directory


@pytest.fixture
def build(config, config_php, no_sleep):
    config_php(dbtype="mysql", dbname="nextcloud", **{"mysql.utf8mb4": True})

    def build(postgres=None, services=None, occ=None, state=None, runner=None):
        converter = DatabaseConverter(
            config,
            runner or FakeRunner(),
            services if services is not None else FakeServices(running={"postgresql"}),
            occ or FakeOcc(),
            state if state is not None else MemoryStateStore(),
            postgres or FakePostgres(),
            sleep=no_sleep,
        )
        return converter
    return build


def config_update(runner):
    call = next(call for call in runner.calls if call["cmd"][1:2] == ["-r"])
    return json.loads(call["env"]["NC_CONFIG_UPDATES"]), json.loads(call["env"]["NC_CONFIG_REMOVALS"])


def test_already_migrated_is_a_no_op(build):
    postgres = FakePostgres()
    postgres.databases.add("nextcloud")
    postgres.core_data.add("nextcloud")
    postgres.tables["nextcloud"] = 120
    occ = FakeOcc()
    runner = FakeRunner()

    attempt = build(postgres=postgres, occ=occ, runner=runner).convert_mysql_to_postgresql(CREDENTIALS)

    assert attempt.succeeded
    assert attempt.method == ConversionMethod.NONE
    assert attempt.table_count == 120
    assert occ.calls == []
    assert ("recreate", "nextcloud") not in postgres.calls
    assert config_update(runner)[0]["dbtype"] == "pgsql"


def test_live_conversion(build):
    postgres = FakePostgres()
    postgres.tables["nextcloud"] = 95
    occ = FakeOcc()
    runner = FakeRunner()
    services = FakeServices(running={"postgresql", "mysql-server"})

    attempt = build(postgres=postgres, occ=occ, runner=runner, services=services) \
        .convert_mysql_to_postgresql(CREDENTIALS)

    assert attempt.succeeded
    assert attempt.method == ConversionMethod.OCC_CONVERT
    assert attempt.table_count == 95
    assert occ.calls == [("maintenance", False), ("convert-type", "ncuser", "localhost", "nextcloud")]
    updates, removals = config_update(runner)
    assert updates == {"dbtype": "pgsql", "dbhost": "localhost", "dbport": "5432",
                       "dbuser": "ncuser", "dbpassword": "s3cret", "dbname": "nextcloud"}
    assert removals == ["mysql.utf8mb4"]


def test_failed_config_rewrite_is_reported(build, caplog):
    caplog.set_level(logging.INFO)
    postgres = FakePostgres()
    postgres.tables["nextcloud"] = 95
    runner = FakeRunner().on("php -r", returncode=255, stderr="Parse error")
    services = FakeServices(running={"postgresql", "mysql-server"})

    attempt = build(postgres=postgres, runner=runner, services=services).convert_mysql_to_postgresql(CREDENTIALS)

    assert attempt.succeeded
    assert "still points at MySQL" in caplog.text


def test_offline_rewrite_after_live_failure(build, backup_root):
    backup = make_backup(backup_root, "pre_update_backup_20240501_103000")
    postgres = FakePostgres(imported_tables=1)
    runner = FakeRunner()
    services = FakeServices(running={"postgresql", "mysql-server", "nginx", "php_fpm"})
    state = MemoryStateStore({LAST_BACKUP: str(backup)})

    attempt = build(postgres=postgres, services=services, occ=FakeOcc(convert_ok=False), state=state,
                    runner=runner) \
        .convert_mysql_to_postgresql(CREDENTIALS)

    assert attempt.succeeded
    assert attempt.method == ConversionMethod.SQL_DUMP_REWRITE
    assert attempt.dump_file == str(backup / "nextcloud_mysql.sql")
    assert "CREATE TABLE oc_users (" in postgres.imported_sql
    assert "ENGINE" not in postgres.imported_sql
    assert ("recreate", "nextcloud") in postgres.calls
    assert not (backup / "nextcloud_pg_converted.sql").exists()
    assert (backup / "pg_import_errors.log").exists()
    assert ("stop", "nginx") in services.actions
    assert {"nginx", "php_fpm"} <= services.running
    assert config_update(runner)[0]["dbtype"] == "pgsql"


def test_import_without_tables_is_a_failure(build, backup_root, caplog):
    caplog.set_level(logging.INFO)
    backup = make_backup(backup_root, "pre_update_backup_20240501_103000")
    postgres = FakePostgres(imported_tables=0)
    runner = FakeRunner()

    attempt = build(postgres=postgres, state=MemoryStateStore({LAST_BACKUP: str(backup)}), runner=runner) \
        .convert_mysql_to_postgresql(CREDENTIALS)

    assert not attempt.succeeded
    assert attempt.message == "no tables imported"
    assert not runner.ran("-r")
    assert f"Your MySQL dump is preserved at: {backup / 'nextcloud_mysql.sql'}" in caplog.text


def test_failed_import_is_a_failure(build, backup_root):
    backup = make_backup(backup_root, "pre_update_backup_20240501_103000")
    postgres = FakePostgres(import_ok=False)

    attempt = build(postgres=postgres, state=MemoryStateStore({LAST_BACKUP: str(backup)})) \
        .convert_mysql_to_postgresql(CREDENTIALS)

    assert not attempt.succeeded
    assert attempt.method == ConversionMethod.SQL_DUMP_REWRITE


def test_nothing_to_convert_from(build, caplog):
    caplog.set_level(logging.INFO)
    attempt = build().convert_mysql_to_postgresql(CREDENTIALS)

    assert not attempt.succeeded
    assert attempt.message == "no MySQL dump found"
    assert "Options:" in caplog.text


def test_force_offline_skips_live_conversion(build, backup_root):
    make_backup(backup_root, "mysql_backup_20230101_000000")
    occ = FakeOcc()
    services = FakeServices(running={"postgresql", "mysql-server"})

    attempt = build(postgres=FakePostgres(imported_tables=3), occ=occ, services=services) \
        .convert_mysql_to_postgresql(CREDENTIALS, force_offline=True)

    assert attempt.method == ConversionMethod.SQL_DUMP_REWRITE
    assert attempt.succeeded
    assert occ.calls == []


def test_live_only_never_touches_the_dump(build, backup_root):
    make_backup(backup_root, "mysql_backup_20230101_000000")
    postgres = FakePostgres(imported_tables=3)

    attempt = build(postgres=postgres, occ=FakeOcc(convert_ok=False),
                    services=FakeServices(running={"postgresql", "mysql-server"})) \
        .convert_mysql_to_postgresql(CREDENTIALS, allow_offline=False)

    assert not attempt.succeeded
    assert attempt.method == ConversionMethod.OCC_CONVERT
    assert postgres.imported_sql is None


def test_unreachable_postgresql(build):
    services = FakeServices()
    postgres = FakePostgres(ready=False)

    attempt = build(postgres=postgres, services=services).convert_mysql_to_postgresql(CREDENTIALS)

    assert not attempt.succeeded
    assert attempt.method == ConversionMethod.NONE
    assert ("start", "postgresql") in services.actions
    assert postgres.calls == []


def test_target_database_override(build):
    postgres = FakePostgres()
    postgres.databases.add("nc_new")
    postgres.core_data.add("nc_new")

    attempt = build(postgres=postgres).convert_mysql_to_postgresql(CREDENTIALS, target_db="nc_new")
    assert attempt.succeeded


def test_config_already_pointing_at_postgresql_is_left_alone(build, config_php):
    config_php(dbtype="pgsql", dbname="nextcloud")
    postgres = FakePostgres()
    postgres.databases.add("nextcloud")
    postgres.core_data.add("nextcloud")
    runner = FakeRunner()

    build(postgres=postgres, runner=runner).convert_mysql_to_postgresql(CREDENTIALS)
    assert runner.calls == []


def test_dump_search_order(build, backup_root, tmp_path):
    old = make_backup(backup_root, "mysql_backup_20230101_000000")
    newer = make_backup(backup_root, "pre_update_backup_20240101_000000", dump_name="nextcloud.sql")
    last = make_backup(backup_root, "pre_update_backup_20220101_000000")
    explicit = tmp_path / "manual.sql"
    explicit.write_text(MYSQL_DUMP)
    empty = tmp_path / "empty.sql"
    empty.touch()

    converter = build(state=MemoryStateStore({LAST_BACKUP: str(last)}))
    assert converter.find_mysql_dump(str(explicit)) == str(explicit)
    assert converter.find_mysql_dump(str(empty)) == str(last / "nextcloud_mysql.sql")

    converter = build()
    assert converter.find_mysql_dump() == str(newer / "nextcloud.sql")
    os.remove(newer / "nextcloud.sql")
    assert converter.find_mysql_dump() == str(last / "nextcloud_mysql.sql")
    assert old.exists()
