import pytest

from conftest import FakeServices
from nextcloud_updates.modules.probe import DatabaseProbe
from nextcloud_updates.utils.records import BackendType


def test_application_config_wins(config, config_php):
    config_php(dbtype="pgsql")
    services = FakeServices(running={"mysql-server"}, enabled={"mysql-server"})
    assert DatabaseProbe(config, services).detect_backend() == BackendType.POSTGRESQL


@pytest.mark.parametrize("enabled, expected", [
    ({"postgresql", "mysql-server"}, BackendType.POSTGRESQL),
    ({"mysql-server"}, BackendType.MYSQL),
])
def test_rc_conf_flags_when_config_is_missing(config, enabled, expected):
    services = FakeServices(running={"postgresql"}, enabled=enabled)
    assert DatabaseProbe(config, services).detect_backend() == expected


def test_unrecognised_dbtype_falls_through_to_service_status(config, config_php):
    config_php(dbtype="sqlite3")
    services = FakeServices(running={"mysql-server"})
    assert DatabaseProbe(config, services).detect_backend() == BackendType.MYSQL


def test_nothing_found_means_fresh_install(config):
    assert DatabaseProbe(config, FakeServices()).detect_backend() == BackendType.NONE


def test_failing_method_is_skipped(config):
    class BrokenRcConf(FakeServices):
        def is_enabled(self, name):
            raise OSError("rc.conf unreadable")

    services = BrokenRcConf(running={"postgresql"})
    assert DatabaseProbe(config, services).detect_backend() == BackendType.POSTGRESQL


@pytest.mark.parametrize("dbtype, running, expected", [
    (None, set(), BackendType.NONE),
    ("mysql", {"mysql-server"}, BackendType.MYSQL),
    (None, {"mysql-server"}, BackendType.MYSQL),
    ("pgsql", {"postgresql"}, BackendType.POSTGRESQL),
])
def test_detection_is_repeatable_and_read_only(config, config_php, dbtype, running, expected):
    if dbtype:
        config_php(dbtype=dbtype)
    services = FakeServices(running=running)
    probe = DatabaseProbe(config, services)

    assert probe.detect_backend() == expected
    assert probe.detect_backend() == expected
    assert services.actions == []
    assert services.running == running
    assert services.enabled == set()
