"""
Tests for the instance and transcript store backends.

Covers:
  - InMemoryInstanceStore / InMemoryTranscriptStore
  - FileInstanceStore / FileTranscriptStore (JSON persistence across reloads)
  - Store factory
"""
import json
import pytest

from database.store_factory import create_stores, get_stores, reset_stores
from database.store_file import FileInstanceStore, FileTranscriptStore
from database.store_memory import InMemoryInstanceStore, InMemoryTranscriptStore
from lifecycle.errors import InstanceNotFoundError
from models.schemas import (
    ChannelType, ConversationInstance, InstanceState, TodoItem, TranscriptMessage, TranscriptRole,
)


def _instance(contact="+100", **fields) -> ConversationInstance:
    return ConversationInstance(
        objective="Collect the signed contract",
        target_contact=contact,
        todos=[TodoItem(text="Ask for the PDF")],
        **fields,
    )


# ──────────────────────────────────────────────────────────────
#  Shared behaviour
# ──────────────────────────────────────────────────────────────

class _InstanceStoreContract:

    @pytest.mark.asyncio
    async def test_create_and_get(self, instance_store):
        inst = await instance_store.create(_instance())
        loaded = await instance_store.get_by_id(inst.id)
        assert loaded.objective == "Collect the signed contract"
        assert loaded.todos[0].text == "Ask for the PDF"
        assert await instance_store.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, instance_store):
        inst = await instance_store.create(_instance())
        with pytest.raises(ValueError):
            await instance_store.create(inst)

    @pytest.mark.asyncio
    async def test_update_merges_and_bumps_timestamp(self, instance_store):
        inst = await instance_store.create(_instance(updated_at="2020-01-01T00:00:00+00:00"))
        updated = await instance_store.update(inst.id, state=InstanceState.ACTIVE, follow_up_count=1)
        assert updated.state == InstanceState.ACTIVE
        assert updated.follow_up_count == 1
        assert updated.objective == inst.objective
        assert updated.updated_at > "2020-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_update_unknown_raises(self, instance_store):
        with pytest.raises(InstanceNotFoundError):
            await instance_store.update("missing", state=InstanceState.ACTIVE)

    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self, instance_store):
        inst = await instance_store.create(_instance())
        loaded = await instance_store.get_by_id(inst.id)
        loaded.todos[0].text = "mutated"
        assert (await instance_store.get_by_id(inst.id)).todos[0].text == "Ask for the PDF"

    @pytest.mark.asyncio
    async def test_contact_queries(self, instance_store):
        done = await instance_store.create(_instance(state=InstanceState.COMPLETED))
        queued = await instance_store.create(_instance(state=InstanceState.QUEUED))
        live = await instance_store.create(_instance(state=InstanceState.WAITING_FOR_REPLY))
        await instance_store.create(_instance(contact="+200"))

        assert {i.id for i in await instance_store.get_by_contact("+100")} == {done.id, queued.id, live.id}
        assert (await instance_store.get_active_for_contact("+100")).id == live.id
        assert await instance_store.get_active_for_contact("+100", exclude_id=live.id) is None
        assert await instance_store.get_active_for_contact("+300") is None

    @pytest.mark.asyncio
    async def test_find_by_channel_data(self, instance_store):
        inst = await instance_store.create(_instance(
            channel=ChannelType.TELEGRAM, channel_data={"telegram_chat_id": "42"},
        ))
        found = await instance_store.find_by_channel_data("telegram_chat_id", "42")
        assert [i.id for i in found] == [inst.id]


class TestInMemoryInstanceStore(_InstanceStoreContract):
    @pytest.fixture
    def instance_store(self):
        return InMemoryInstanceStore()


class TestFileInstanceStore(_InstanceStoreContract):
    @pytest.fixture
    def instance_store(self, tmp_path):
        return FileInstanceStore(data_dir=str(tmp_path))

    @pytest.mark.asyncio
    async def test_survives_reload(self, tmp_path):
        first = FileInstanceStore(data_dir=str(tmp_path))
        inst = await first.create(_instance())
        await first.update(inst.id, state=InstanceState.WAITING_FOR_REPLY, follow_up_count=2)

        second = FileInstanceStore(data_dir=str(tmp_path))
        loaded = await second.get_by_id(inst.id)
        assert loaded.state == InstanceState.WAITING_FOR_REPLY
        assert loaded.follow_up_count == 2
        assert (await second.get_active_for_contact("+100")).id == inst.id

    @pytest.mark.asyncio
    async def test_file_is_plain_json(self, tmp_path):
        store = FileInstanceStore(data_dir=str(tmp_path))
        inst = await store.create(_instance())
        data = json.loads((tmp_path / "instances.json").read_text())
        assert data[inst.id]["state"] == "CREATED"
        assert not (tmp_path / "instances.tmp").exists()

    def test_corrupt_file_starts_empty(self, tmp_path):
        (tmp_path / "instances.json").write_text("{not json")
        store = FileInstanceStore(data_dir=str(tmp_path))
        assert store.count == 0


# ──────────────────────────────────────────────────────────────
#  Transcripts
# ──────────────────────────────────────────────────────────────

class TestTranscriptStores:
    @pytest.mark.asyncio
    async def test_messages_sorted_by_timestamp(self):
        store = InMemoryTranscriptStore()
        await store.append(TranscriptMessage(instance_id="i1", role=TranscriptRole.CONTACT,
                                             content="second", timestamp="2024-01-01T00:00:02+00:00"))
        await store.append(TranscriptMessage(instance_id="i1", role=TranscriptRole.AGENT,
                                             content="first", timestamp="2024-01-01T00:00:01+00:00"))
        await store.append(TranscriptMessage(instance_id="i2", role=TranscriptRole.AGENT, content="other"))

        assert [m.content for m in await store.get_by_instance("i1")] == ["first", "second"]
        assert await store.get_by_instance("nobody") == []

    @pytest.mark.asyncio
    async def test_file_transcripts_survive_reload(self, tmp_path):
        first = FileTranscriptStore(data_dir=str(tmp_path))
        await first.append(TranscriptMessage(instance_id="i1", role=TranscriptRole.MANUAL, content="hi"))

        second = FileTranscriptStore(data_dir=str(tmp_path))
        msgs = await second.get_by_instance("i1")
        assert len(msgs) == 1
        assert msgs[0].role == TranscriptRole.MANUAL


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        reset_stores()

    def teardown_method(self):
        reset_stores()

    def test_memory_backend(self):
        instances, transcripts = create_stores({"backend": "memory"})
        assert isinstance(instances, InMemoryInstanceStore)
        assert isinstance(transcripts, InMemoryTranscriptStore)
        assert get_stores() == (instances, transcripts)

    def test_file_backend(self, tmp_path):
        instances, transcripts = create_stores({"backend": "file", "data_dir": str(tmp_path)})
        assert isinstance(instances, FileInstanceStore)
        assert isinstance(transcripts, FileTranscriptStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown store backend"):
            create_stores({"backend": "postgres"})
