"""Tests for config persistence — merge, timestamps, checkpoints, corruption handling."""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from bson import ObjectId

from fakes import SOURCE_URL, make_config
from replicator.services.config_store import Checkpoint, ConfigStore


class TestLoad:
    def test_missing_file_is_unconfigured(self, config_store):
        assert config_store.load() is None

    def test_empty_file_is_unconfigured(self, tmp_path):
        path = tmp_path / "sync-config.json"
        path.write_text("")
        assert ConfigStore(path).load() is None

    def test_corrupt_file_backed_up(self, tmp_path):
        path = tmp_path / "sync-config.json"
        path.write_text("{not json")
        assert ConfigStore(path).load() is None
        backups = list(tmp_path.glob("sync-config.json.*.bak"))
        assert len(backups) == 1
        assert backups[0].read_text() == "{not json"

    def test_invalid_config_ignored(self, tmp_path):
        path = tmp_path / "sync-config.json"
        path.write_text(json.dumps({"source_url": "nope"}))
        assert ConfigStore(path).load() is None


class TestSave:
    def test_round_trip_through_new_instance(self, config_store):
        config_store.save(make_config(collections=["users", "orders"]))
        reloaded = ConfigStore(config_store.path).load()
        assert reloaded is not None
        assert reloaded.collections == ["users", "orders"]
        assert reloaded.batch_size == 10

    def test_first_save_stamps_created_and_updated(self, config_store):
        stored = config_store.save(make_config())
        assert stored.created_at is not None
        assert stored.updated_at is not None

    def test_resave_keeps_created_at(self, config_store):
        first = config_store.save(make_config())
        second = config_store.save(make_config(batch_size=50))
        assert second.created_at == first.created_at
        assert second.updated_at >= first.updated_at
        assert second.batch_size == 50

    def test_partial_update_merges(self, config_store):
        config_store.save(make_config(collections=["users"]))
        stored = config_store.save({"last_error": "boom"})
        assert stored.collections == ["users"]
        assert stored.last_error == "boom"

    def test_no_temp_files_left_behind(self, config_store):
        config_store.save(make_config())
        config_store.save(make_config(batch_size=20))
        leftovers = [p for p in config_store.path.parent.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_url_change_resets_history(self, config_store):
        config_store.save(make_config())
        config_store.record_last_sync(datetime(2026, 3, 1, tzinfo=timezone.utc))
        config_store.set_checkpoint("users", 42)

        stored = config_store.save(make_config(target_url="mongodb://elsewhere:27017/app"))
        assert stored.last_sync_at is None
        assert stored.checkpoints == {}

    def test_same_urls_keep_history(self, config_store):
        config_store.save(make_config())
        when = datetime(2026, 3, 1, tzinfo=timezone.utc)
        config_store.record_last_sync(when)
        stored = config_store.save(make_config(source_url=SOURCE_URL, batch_size=7))
        assert stored.last_sync_at == when


class TestBookkeeping:
    def test_record_last_sync_clears_error(self, config_store):
        config_store.save(make_config())
        config_store.record_error("target unreachable")
        config_store.record_last_sync(datetime(2026, 3, 1, tzinfo=timezone.utc))
        assert config_store.load().last_error is None

    def test_record_without_config_is_noop(self, config_store):
        config_store.record_error("boom")
        config_store.record_last_sync(datetime.now(timezone.utc))
        assert config_store.load() is None
        assert not config_store.path.exists()


class TestCheckpoints:
    def test_missing_checkpoint(self, config_store):
        config_store.save(make_config())
        assert config_store.get_checkpoint("users") is None

    def test_object_id_survives_reload(self, config_store):
        config_store.save(make_config())
        oid = ObjectId()
        began = datetime(2026, 3, 2, 2, 30, tzinfo=timezone.utc)
        config_store.set_checkpoint("users", oid, began)
        assert ConfigStore(config_store.path).get_checkpoint("users") == Checkpoint(oid, began)

    def test_int_checkpoint_without_pass_start(self, config_store):
        config_store.save(make_config())
        config_store.set_checkpoint("users", 17)
        assert config_store.get_checkpoint("users") == Checkpoint(17, None)

    def test_clear_one(self, config_store):
        config_store.save(make_config(collections=["users", "orders"]))
        config_store.set_checkpoint("users", 1)
        config_store.set_checkpoint("orders", 2)
        config_store.clear_checkpoint("users")
        assert config_store.get_checkpoint("users") is None
        assert config_store.get_checkpoint("orders").document_id == 2

    def test_clear_all(self, config_store):
        config_store.save(make_config())
        config_store.set_checkpoint("users", 1)
        config_store.clear_checkpoints()
        assert config_store.get_checkpoint("users") is None

    def test_concurrent_saves_from_threads_keep_every_checkpoint(self, config_store):
        config_store.save(make_config())
        names = [f"coll{i}" for i in range(20)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda name: config_store.set_checkpoint(name, 1), names))
        assert set(config_store.load().checkpoints) == set(names)
