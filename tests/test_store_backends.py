"""
Tests for all conversation store backends.

Covers:
  - InMemoryConversationStore
  - FileConversationStore (JSON file persistence)
  - Store factory
"""
import pytest

from database.store_factory import create_store, get_store, reset_store
from database.store_file import FileConversationStore
from database.store_memory import InMemoryConversationStore
from models.schemas import (
    ChannelType,
    ChatbotRecord,
    ConversationState,
    ConversationStatus,
    TurnEvent,
    TurnEventType,
)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def sample_chatbot():
    return ChatbotRecord(id="bot_1", name="Acme Helper", flow={"nodes": [], "edges": []},
                         is_published=True, channels={"whatsapp": {"phone_number_id": "123"}})


@pytest.fixture
def sample_state():
    return ConversationState(
        conversation_id="conv_1",
        chatbot_id="bot_1",
        channel=ChannelType.WHATSAPP,
        user_identifier="919876543210",
        variables={"name": "Ada", "score": 75, "vip": True, "ratio": 0.5},
    )


# ──────────────────────────────────────────────────────────────
#  Shared contract, run against both backends
# ──────────────────────────────────────────────────────────────

@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryConversationStore()
    return FileConversationStore(data_dir=str(tmp_path / "data"))


class TestStoreContract:
    @pytest.mark.asyncio
    async def test_chatbot_roundtrip_and_versioning(self, any_store, sample_chatbot):
        saved = await any_store.save_chatbot(sample_chatbot)
        assert saved.version == 1

        again = await any_store.save_chatbot(sample_chatbot.model_copy(update={"name": "Renamed"}))
        assert again.version == 2

        loaded = await any_store.get_chatbot("bot_1")
        assert loaded.name == "Renamed"
        assert loaded.channels["whatsapp"]["phone_number_id"] == "123"
        assert [c.id for c in await any_store.list_chatbots()] == ["bot_1"]

    @pytest.mark.asyncio
    async def test_missing_records(self, any_store):
        assert await any_store.get_chatbot("nope") is None
        assert await any_store.load_state("nope") is None

    @pytest.mark.asyncio
    async def test_state_keeps_scalar_types(self, any_store, sample_state):
        await any_store.save_state(sample_state)
        loaded = await any_store.load_state("conv_1")
        assert loaded.variables == {"name": "Ada", "score": 75, "vip": True, "ratio": 0.5}
        assert loaded.channel == ChannelType.WHATSAPP

    @pytest.mark.asyncio
    async def test_find_active_conversation(self, any_store, sample_state):
        await any_store.register_conversation(sample_state)

        found = await any_store.find_active_conversation("bot_1", "whatsapp", "919876543210")
        assert found.conversation_id == "conv_1"
        assert await any_store.find_active_conversation("bot_1", "facebook", "919876543210") is None

    @pytest.mark.asyncio
    async def test_ended_conversation_not_active(self, any_store, sample_state):
        await any_store.register_conversation(sample_state)
        await any_store.save_state(sample_state.model_copy(update={"status": ConversationStatus.ENDED}))

        assert await any_store.find_active_conversation("bot_1", "whatsapp", "919876543210") is None

    @pytest.mark.asyncio
    async def test_list_conversations_filters_by_chatbot(self, any_store, sample_state):
        await any_store.save_state(sample_state)
        await any_store.save_state(ConversationState(conversation_id="conv_2", chatbot_id="bot_2"))

        assert [c.conversation_id for c in await any_store.list_conversations("bot_1")] == ["conv_1"]
        assert len(await any_store.list_conversations()) == 2

    @pytest.mark.asyncio
    async def test_events(self, any_store):
        for i in range(3):
            await any_store.append_event(TurnEvent(
                event_type=TurnEventType.MESSAGE_SENT, conversation_id="conv_1",
                chatbot_id="bot_1", payload={"i": i}))
        await any_store.append_event(TurnEvent(
            event_type=TurnEventType.CONVERSATION_ENDED, conversation_id="conv_2", chatbot_id="bot_1"))

        events = await any_store.get_events("conv_1", limit=2)
        assert [e.payload["i"] for e in events] == [1, 2]
        assert len(await any_store.get_events()) == 4


# ──────────────────────────────────────────────────────────────
#  FileConversationStore
# ──────────────────────────────────────────────────────────────

class TestFileConversationStore:
    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path, sample_chatbot, sample_state):
        data_dir = str(tmp_path / "data")
        store = FileConversationStore(data_dir=data_dir)
        await store.save_chatbot(sample_chatbot)
        await store.register_conversation(sample_state)
        await store.append_event(TurnEvent(event_type=TurnEventType.GOAL_ACHIEVED,
                                           conversation_id="conv_1", chatbot_id="bot_1"))

        reopened = FileConversationStore(data_dir=data_dir)

        assert (await reopened.get_chatbot("bot_1")).name == "Acme Helper"
        assert (await reopened.load_state("conv_1")).variables["score"] == 75
        assert (await reopened.find_active_conversation("bot_1", "whatsapp", "919876543210")) is not None
        assert len(await reopened.get_events("conv_1")) == 1

    def test_corrupt_file_skipped(self, tmp_path):
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "chatbots.json").write_text("{not json")

        store = FileConversationStore(data_dir=str(data_dir))
        assert store._chatbots == {}

    @pytest.mark.asyncio
    async def test_flush_all_writes_every_collection(self, tmp_path):
        data_dir = tmp_path / "data"
        store = FileConversationStore(data_dir=str(data_dir))
        store.flush_all()
        assert sorted(p.name for p in data_dir.iterdir()) == [
            "chatbots.json", "conversations.json", "events.json",
        ]


# ──────────────────────────────────────────────────────────────
#  Store factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_default_is_memory(self):
        assert isinstance(create_store({}), InMemoryConversationStore)

    def test_file_backend(self, tmp_path):
        store = create_store({"store_backend": "file", "store_file_dir": str(tmp_path / "d")})
        assert isinstance(store, FileConversationStore)

    def test_unknown_backend_falls_back_to_memory(self):
        store = create_store({"store_backend": "cassandra"})
        assert type(store) is InMemoryConversationStore

    def test_backend_name_is_case_insensitive(self, tmp_path):
        store = create_store({"store_backend": "FILE", "store_file_dir": str(tmp_path / "d")})
        assert isinstance(store, FileConversationStore)

    def test_singleton(self):
        assert get_store() is get_store()
        assert create_store({"store_backend": "file"}) is get_store()
