import pytest

from nextcloud_updates.utils.records import (
    BackendType,
    BackupRecord,
    CredentialsError,
    SSLState,
    load_credentials
)


def test_marker_parsing_is_lenient_about_case_and_whitespace():
    assert BackendType.parse("MySQL\n") == BackendType.MYSQL
    assert SSLState.parse(" self-signed ") == SSLState.SELF_SIGNED
    assert SSLState.parse("wildcard") is None
    assert BackendType.parse(None) is None


def test_load_credentials_requires_password(tmp_path):
    config = {"password_file": str(tmp_path / "dbpassword")}
    with pytest.raises(CredentialsError):
        load_credentials(config)

    (tmp_path / "dbpassword").write_text("   \n")
    with pytest.raises(CredentialsError):
        load_credentials(config)


def test_load_credentials_defaults(tmp_path):
    (tmp_path / "dbpassword").write_text("pw\n")
    credentials = load_credentials({
        "password_file": str(tmp_path / "dbpassword"),
        "user_file": str(tmp_path / "missing"),
        "name_file": str(tmp_path / "missing"),
        "port": 5433,
    })
    assert credentials.user == "dbadmin"
    assert credentials.name == "nextcloud"
    assert credentials.password == "pw"
    assert credentials.port == "5433"


def test_load_reads_shell_marker_files(tmp_path):
    backup = tmp_path / "mysql_backup_20230101_120000"
    backup.mkdir()
    (backup / "database_type.txt").write_text("mysql\n")
    (backup / "ssl_state.txt").write_text("letsencrypt\n")
    (backup / "nc_url_scheme.txt").write_text("https\n")
    (backup / "migration_state.txt").write_text("2\n")
    (backup / "nextcloud_mysql.sql").write_text("CREATE TABLE x (id int);\n")
    (backup / "letsencrypt").mkdir()

    record = BackupRecord.load(str(backup))

    assert record.backend == BackendType.MYSQL
    assert record.ssl_state == SSLState.LETSENCRYPT
    assert record.url_scheme == "https"
    assert record.migration_ordinal == 2
    assert record.dump_file == str(backup / "nextcloud_mysql.sql")
    assert record.has_usable_dump
    assert record.certificates_dir == str(backup / "letsencrypt")
    assert record.jail_options_file is None


def test_unknown_ssl_marker_is_kept_as_unknown(tmp_path):
    (tmp_path / "ssl_state.txt").write_text("something-new\n")
    record = BackupRecord.load(str(tmp_path))
    assert record.ssl_state is None
    assert record.backend == BackendType.NONE


def test_manifest_is_preferred(tmp_path):
    record = BackupRecord(backup_dir=str(tmp_path), timestamp="2024-05-01T10:00:00.000000",
                          backend=BackendType.POSTGRESQL, ssl_state=SSLState.NONE,
                          migration_ordinal=2, nextcloud_version="28.0.1.1")
    record.save()
    (tmp_path / "database_type.txt").write_text("mysql\n")

    loaded = BackupRecord.load(str(tmp_path))
    assert loaded.backend == BackendType.POSTGRESQL
    assert loaded.nextcloud_version == "28.0.1.1"
    assert loaded.to_dict()["ssl_state"] == "none"


def test_empty_dump_is_not_usable(tmp_path):
    dump = tmp_path / "nextcloud_mysql.sql"
    dump.touch()
    record = BackupRecord(backup_dir=str(tmp_path), timestamp="t", dump_file=str(dump))
    assert not record.has_usable_dump


def test_missing_directory_loads_nothing(tmp_path):
    assert BackupRecord.load(str(tmp_path / "gone")) is None
