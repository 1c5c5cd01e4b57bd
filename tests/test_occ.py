from conftest import FakeRunner
from nextcloud_updates.utils.occ import OccClient


def client(runner, tmp_path):
    return OccClient(runner, {"install_dir": str(tmp_path), "web_user": "www", "php_bin": "php"})


def test_commands_run_as_web_user(tmp_path):
    runner = FakeRunner()
    assert client(runner, tmp_path).maintenance_mode(True)
    assert runner.calls[0]["cmd"] == ["su", "-m", "www", "-c", f"php {tmp_path}/occ maintenance:mode --on"]


def test_failure_is_reported_not_raised(tmp_path):
    runner = FakeRunner().on("upgrade", returncode=3, stderr="nope")
    assert client(runner, tmp_path).upgrade() is False


def test_available_checks_for_occ(tmp_path):
    occ = client(FakeRunner(), tmp_path)
    assert not occ.available()
    (tmp_path / "occ").write_text("<?php\n")
    assert occ.available()


def test_missing_database_items_run_independently(tmp_path):
    runner = FakeRunner().on("db:add-missing-columns", returncode=1)
    results = client(runner, tmp_path).add_missing_database_items()
    assert results == {
        "db:add-missing-indices": True,
        "db:add-missing-columns": False,
        "db:add-missing-primary-keys": True,
    }


def test_convert_type_keeps_password_out_of_the_command(tmp_path):
    runner = FakeRunner()
    assert client(runner, tmp_path).convert_type("ncuser", "s3cret", "localhost", "nextcloud")

    call = runner.calls[0]
    command = " ".join(call["cmd"])
    assert "s3cret" not in command
    assert call["env"] == {"OCC_DB_PASS": "s3cret"}
    assert "db:convert-type --all-apps" in command
    assert command.endswith("pgsql ncuser localhost nextcloud")



def test_system_config_commands(tmp_path):
    runner = FakeRunner().on("config:system:get redis port", stdout="6379\n")
    occ = client(runner, tmp_path)

    assert occ.get_system("redis", "port") == "6379"
    assert occ.set_system("redis", "port", value="6379", value_type="integer")
    assert runner.calls[-1]["cmd"][-1].endswith("config:system:set redis port --value=6379 --type=integer")


def test_unset_system_key_reads_as_none(tmp_path):
    runner = FakeRunner().on("config:system:get", returncode=1)
    assert client(runner, tmp_path).get_system("memcache.local") is None
