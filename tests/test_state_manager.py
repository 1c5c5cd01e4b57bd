import pytest

from nextcloud_updates.utils.state_manager import (
    FileStateStore,
    MemoryStateStore,
    StateStoreError,
    LAST_BACKUP,
    MIGRATION_ORDINAL
)


@pytest.fixture
def store(tmp_path):
    return FileStateStore({
        LAST_BACKUP: str(tmp_path / "last_pre_update_backup"),
        MIGRATION_ORDINAL: str(tmp_path / "migrations" / "current_migration.txt"),
    })


def test_file_store_writes_plain_text_files(store, tmp_path):
    store.set(MIGRATION_ORDINAL, 3)
    store.set(LAST_BACKUP, "/root/pre_update_backup_20240101_000000")

    assert (tmp_path / "migrations" / "current_migration.txt").read_text() == "3\n"
    assert store.get_int(MIGRATION_ORDINAL) == 3
    assert store.get(LAST_BACKUP) == "/root/pre_update_backup_20240101_000000"


def test_missing_and_empty_values_fall_back_to_default(store, tmp_path):
    assert store.get(LAST_BACKUP) is None
    assert store.get_int(MIGRATION_ORDINAL, 7) == 7

    (tmp_path / "last_pre_update_backup").write_text("\n")
    assert store.get(LAST_BACKUP, "fallback") == "fallback"


def test_non_integer_ordinal_is_an_error(store, tmp_path):
    path = tmp_path / "migrations" / "current_migration.txt"
    path.parent.mkdir(parents=True)
    path.write_text("two\n")

    with pytest.raises(StateStoreError):
        store.get_int(MIGRATION_ORDINAL)


def test_unknown_key_is_rejected(store):
    with pytest.raises(StateStoreError):
        store.get("somewhere_else")


def test_delete_is_idempotent(store):
    store.set(LAST_BACKUP, "/root/x")
    store.delete(LAST_BACKUP)
    store.delete(LAST_BACKUP)
    assert store.get(LAST_BACKUP) is None


def test_from_config_uses_configured_paths(tmp_path):
    store = FileStateStore.from_config({
        "last_backup_file": str(tmp_path / "a"),
        "migration_ordinal_file": str(tmp_path / "b"),
    })
    store.set(LAST_BACKUP, "x")
    assert (tmp_path / "a").read_text() == "x\n"


def test_memory_store():
    store = MemoryStateStore({MIGRATION_ORDINAL: 2})
    assert store.get_int(MIGRATION_ORDINAL) == 2
    store.set(MIGRATION_ORDINAL, 3)
    assert store.get(MIGRATION_ORDINAL) == "3"
    store.delete(MIGRATION_ORDINAL)
    assert store.get_int(MIGRATION_ORDINAL, 0) == 0
