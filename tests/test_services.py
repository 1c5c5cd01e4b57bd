import pytest

from conftest import FakeRunner
from nextcloud_updates.utils.services import ServiceManager


@pytest.fixture
def rc_conf(tmp_path):
    return tmp_path / "rc.conf"


def manager(runner, rc_conf):
    return ServiceManager(runner, {
        "rc_conf": str(rc_conf),
        "aliases": {"php_fpm": ["php_fpm", "php-fpm"]},
        "rcvars": {"mysql-server": "mysql"},
    })


def test_status_follows_return_code(rc_conf):
    runner = FakeRunner().on("service postgresql status", returncode=1)
    services = manager(runner, rc_conf)
    assert not services.status("postgresql")
    assert services.status("redis")


def test_aliases_are_tried_in_order(rc_conf):
    runner = FakeRunner().on("service php_fpm restart", returncode=1)
    services = manager(runner, rc_conf)

    assert services.restart("php_fpm")
    assert runner.commands() == ["service php_fpm restart", "service php-fpm restart"]


def test_ensure_running_starts_stopped_service(rc_conf):
    runner = FakeRunner().on("service nginx status", returncode=1)
    services = manager(runner, rc_conf)

    assert services.ensure_running("nginx")
    assert runner.commands()[-1] == "service nginx start"


def test_restart_if_running_leaves_stopped_service_alone(rc_conf):
    runner = FakeRunner().on("service mysql-server status", returncode=1)
    services = manager(runner, rc_conf)

    assert not services.restart_if_running("mysql-server")
    assert not runner.ran("restart")


def test_rc_conf_last_assignment_wins(rc_conf):
    rc_conf.write_text(
        'mysql_enable="YES"\n'
        'postgresql_enable="YES"\n'
        '# postgresql_enable="NO"\n'
        'postgresql_enable="NO"\n'
    )
    services = manager(FakeRunner(), rc_conf)

    assert services.is_enabled("mysql-server")
    assert not services.is_enabled("postgresql")
    assert not services.is_enabled("redis")


def test_enable_uses_sysrc(rc_conf):
    runner = FakeRunner()
    manager(runner, rc_conf).enable("mysql-server")
    assert runner.calls[0]["cmd"] == ["sysrc", "-f", str(rc_conf), "mysql_enable=YES"]
