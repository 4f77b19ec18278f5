"""Tests for the change-feed relay."""

import pytest
import pytest_asyncio

from fakes import eventually, stream_lost
from replicator.services.change_feed import ChangeFeedRelay
from replicator.services.store import ChangeEvent


@pytest_asyncio.fixture
async def relay(source, target, log_store):
    r = ChangeFeedRelay(source, target, log_store, retry_delay=0.01)
    yield r
    await r.stop()


async def logged(log_store) -> list[str]:
    return [e.message for e in await log_store.recent(1000)]


def insert(collection: str, doc: dict) -> ChangeEvent:
    return ChangeEvent(op="insert", collection=collection, document_id=doc["_id"], full_document=doc)


class TestApply:
    @pytest.mark.asyncio
    async def test_insert_replay_is_idempotent(self, relay, target):
        event = insert("users", {"_id": 1, "name": "ada"})
        await relay.apply(event)
        await relay.apply(event)
        assert target.docs("users") == [{"_id": 1, "name": "ada"}]

    @pytest.mark.asyncio
    async def test_update_replaces_whole_document(self, relay, target):
        target.seed("users", [{"_id": 1, "name": "ada", "stale": True}])
        await relay.apply(ChangeEvent(
            op="update", collection="users", document_id=1,
            full_document={"_id": 1, "name": "ada lovelace"},
        ))
        assert target.docs("users") == [{"_id": 1, "name": "ada lovelace"}]

    @pytest.mark.asyncio
    async def test_delete(self, relay, target, log_store):
        target.seed("users", [{"_id": 1}, {"_id": 2}])
        await relay.apply(ChangeEvent(op="delete", collection="users", document_id=1))
        assert target.docs("users") == [{"_id": 2}]
        assert "Processed delete operation via change stream" in await logged(log_store)

    @pytest.mark.asyncio
    async def test_delete_of_missing_document(self, relay, target):
        await relay.apply(ChangeEvent(op="delete", collection="users", document_id=99))
        assert target.docs("users") == []

    @pytest.mark.asyncio
    async def test_update_without_full_document_skipped(self, relay, target, log_store):
        target.seed("users", [{"_id": 1, "name": "ada"}])
        await relay.apply(ChangeEvent(op="update", collection="users", document_id=1))
        assert target.docs("users") == [{"_id": 1, "name": "ada"}]
        assert "Skipped update without full document via change stream" in await logged(log_store)


class TestRelayLoop:
    @pytest.mark.asyncio
    async def test_relays_tracked_collection_only(self, relay, source, target):
        await relay.track("users")
        relay.start()
        await source.events.put(insert("orders", {"_id": 1}))
        await source.events.put(insert("users", {"_id": 2}))

        await eventually(lambda: target.docs("users") == [{"_id": 2}])
        assert target.docs("orders") == []

    @pytest.mark.asyncio
    async def test_bad_event_does_not_stop_relay(self, relay, source, target, log_store):
        await relay.track("users")
        relay.start()
        await source.events.put(ChangeEvent(
            op="insert", collection="users", document_id=None, full_document={"name": "no id"},
        ))
        await source.events.put(insert("users", {"_id": 3}))

        await eventually(lambda: target.docs("users") == [{"_id": 3}])
        assert "Error processing change stream event" in await logged(log_store)
        assert source.subscriptions == 1

    @pytest.mark.asyncio
    async def test_reconnects_after_stream_loss(self, relay, source, target, log_store):
        await relay.track("users")
        relay.start()
        await source.events.put(stream_lost())
        await source.events.put(insert("users", {"_id": 4}))

        await eventually(lambda: target.docs("users") == [{"_id": 4}])
        messages = await logged(log_store)
        assert "Change stream error" in messages
        assert "Change stream reconnecting" in messages
        assert source.subscriptions == 2
        assert relay.is_active

    @pytest.mark.asyncio
    async def test_setup_failure_retried(self, relay, source, target, log_store):
        source.subscribe_error = RuntimeError("not authorized on app to execute command")
        await relay.track("users")
        relay.start()
        await source.events.put(insert("users", {"_id": 5}))

        await eventually(lambda: target.docs("users") == [{"_id": 5}])
        assert "Error setting up change stream" in await logged(log_store)

    @pytest.mark.asyncio
    async def test_tracking_added_without_resubscribe(self, relay, source, target, log_store):
        await relay.track("users")
        relay.start()
        await eventually(lambda: source.subscriptions == 1)

        await relay.track("orders")
        await source.events.put(insert("orders", {"_id": 6}))

        await eventually(lambda: target.docs("orders") == [{"_id": 6}])
        assert source.subscriptions == 1
        assert "Added orders to change stream tracking" in await logged(log_store)
        assert relay.tracked == {"users", "orders"}

    @pytest.mark.asyncio
    async def test_untracked_collection_no_longer_relayed(self, relay, source, target, log_store):
        await relay.track("users")
        await relay.track("orders")
        relay.start()
        await eventually(lambda: source.subscriptions == 1)

        await relay.untrack("orders")
        await source.events.put(insert("orders", {"_id": 7}))
        await source.events.put(insert("users", {"_id": 8}))

        await eventually(lambda: target.docs("users") == [{"_id": 8}])
        assert target.docs("orders") == []
        assert source.subscriptions == 1
        assert relay.tracked == {"users"}
        assert "Removed orders from change stream tracking" in await logged(log_store)

    @pytest.mark.asyncio
    async def test_stop_clears_tracking(self, relay):
        await relay.track("users")
        relay.start()
        await relay.stop()
        assert not relay.is_active
        assert relay.tracked == frozenset()
