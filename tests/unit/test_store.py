import pytest

from parley.conversation import DEFAULT_TITLE
from parley.errors import ConversationNotFoundError, MessageLockedError
from parley.message import (
    MessageRole,
    MessageStatus,
    Thumbs,
    ToolCallRecord,
)
from parley.persistence import InMemoryPersistence
from parley.store import ConversationStore, StoreChange


def _texts(store, cid):
    return [m.text for m in store.get(cid).messages]


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class TestConversations:
    def test_create_is_newest_and_active(self, store):
        first = store.create_conversation()
        second = store.create_conversation(provider_id="anthropic", model_id="claude-haiku-4-5")

        assert [c.id for c in store.conversations] == [second, first]
        assert store.active_conversation.id == second
        assert store.get(second).provider_id == "anthropic"
        assert store.get(first).title == DEFAULT_TITLE

    def test_get_unknown_raises(self, store):
        with pytest.raises(ConversationNotFoundError):
            store.get("missing")
        assert "missing" not in store

    def test_delete_moves_active(self, store):
        first = store.create_conversation()
        second = store.create_conversation()

        store.delete_conversation(second)

        assert second not in store
        assert store.active_conversation.id == first

    def test_delete_last_clears_active(self, store, conversation_id):
        store.delete_conversation(conversation_id)

        assert store.active_conversation is None

    def test_set_active_unknown_raises(self, store):
        with pytest.raises(ConversationNotFoundError):
            store.set_active_conversation("missing")

    def test_rename_and_clear(self, store, seeded_conversation):
        store.update_conversation_title(seeded_conversation, "Renamed")
        store.clear_conversation_messages(seeded_conversation)

        conv = store.get(seeded_conversation)
        assert conv.title == "Renamed"
        assert conv.messages == []


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class TestMessages:
    def test_add_returns_id(self, store, conversation_id):
        mid = store.add_message(conversation_id, MessageRole.USER, "hello")

        assert store.get_message(conversation_id, mid).text == "hello"

    def test_add_to_unknown_conversation(self, store):
        assert store.add_message("missing", MessageRole.USER, "hello") is None

    def test_first_user_message_sets_title(self, store, conversation_id):
        store.add_message(conversation_id, MessageRole.USER, "x" * 100)
        store.add_message(conversation_id, MessageRole.USER, "second")

        assert store.get(conversation_id).title == "x" * 60

    def test_update_message(self, store, conversation_id):
        mid = store.add_message(conversation_id, MessageRole.USER, "draft")

        store.update_message(conversation_id, mid, "final")

        assert store.get_message(conversation_id, mid).text == "final"

    def test_delete_message(self, store, seeded_conversation):
        second = store.get(seeded_conversation).messages[1].id

        store.delete_message(seeded_conversation, second)

        assert _texts(store, seeded_conversation) == ["a", "c", "d"]

    def test_delete_messages_after(self, store, seeded_conversation):
        second = store.get(seeded_conversation).messages[1].id

        store.delete_messages_after(seeded_conversation, second)

        assert _texts(store, seeded_conversation) == ["a", "b"]

    def test_delete_after_unknown_message(self, store, seeded_conversation):
        with pytest.raises(KeyError):
            store.delete_messages_after(seeded_conversation, "missing")

    def test_metadata(self, store, conversation_id):
        mid = store.add_message(conversation_id, MessageRole.ASSISTANT, "answer")

        store.set_thumbs_rating(conversation_id, mid, Thumbs.UP)
        store.toggle_reaction(conversation_id, mid, "🎉")
        store.toggle_reaction(conversation_id, mid, "👀")
        store.toggle_reaction(conversation_id, mid, "🎉")
        store.star_message(conversation_id, mid)

        message = store.get_message(conversation_id, mid)
        assert message.thumbs == Thumbs.UP
        assert message.reactions == ["👀"]
        assert store.starred_messages() == [(conversation_id, message)]

        store.unstar_message(conversation_id, mid)
        assert store.starred_messages() == []

    def test_regenerate_context(self, store, seeded_conversation):
        context = store.regenerate_context(seeded_conversation)

        assert [m.text for m in context] == ["a", "b", "c"]
        assert context[0] is not store.get(seeded_conversation).messages[0]

    def test_regenerate_context_without_user(self, store, conversation_id):
        store.add_message(conversation_id, MessageRole.ASSISTANT, "hi")

        assert store.last_user_index(conversation_id) == -1
        assert store.regenerate_context(conversation_id) == []


# ---------------------------------------------------------------------------
# Fork
# ---------------------------------------------------------------------------

class TestFork:
    def test_fork_copies_prefix(self, store, seeded_conversation):
        source = store.get(seeded_conversation)
        at = source.messages[1].id

        fork_id = store.fork_conversation(seeded_conversation, at)

        fork = store.get(fork_id)
        assert fork.title == f"Fork: {source.title}"
        assert fork.messages == source.messages[:2]
        assert store.active_conversation.id == fork_id

    def test_fork_is_independent(self, store, seeded_conversation):
        source = store.get(seeded_conversation)
        fork_id = store.fork_conversation(seeded_conversation, source.messages[0].id)

        store.update_message(fork_id, store.get(fork_id).messages[0].id, "changed")

        assert source.messages[0].text == "a"

    def test_fork_unknown_message_copies_all(self, store, seeded_conversation):
        fork_id = store.fork_conversation(seeded_conversation, "missing")

        assert _texts(store, fork_id) == ["a", "b", "c", "d"]

    def test_fork_of_streaming_message_is_not_locked(self, store, conversation_id):
        mid = store.add_message(conversation_id, MessageRole.ASSISTANT, "", status=MessageStatus.STREAMING)
        store.lock_message(conversation_id, mid)

        fork_id = store.fork_conversation(conversation_id, mid)

        assert not store.is_locked(fork_id, mid)
        store.delete_message(fork_id, mid)


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------

class TestLocks:
    def _locked(self, store, cid):
        mid = store.add_message(cid, MessageRole.ASSISTANT, "", status=MessageStatus.STREAMING)
        return mid, store.lock_message(cid, mid)

    def test_locked_message_rejects_edits(self, store, conversation_id):
        mid, _ = self._locked(store, conversation_id)

        with pytest.raises(MessageLockedError):
            store.update_message(conversation_id, mid, "nope")
        with pytest.raises(MessageLockedError):
            store.delete_message(conversation_id, mid)
        with pytest.raises(MessageLockedError):
            store.clear_conversation_messages(conversation_id)
        with pytest.raises(MessageLockedError):
            store.delete_conversation(conversation_id)

    def test_truncation_before_locked_message_rejected(self, store, conversation_id):
        first = store.add_message(conversation_id, MessageRole.USER, "q")
        self._locked(store, conversation_id)

        with pytest.raises(MessageLockedError):
            store.delete_messages_after(conversation_id, first)

    def test_metadata_allowed_while_locked(self, store, conversation_id):
        mid, _ = self._locked(store, conversation_id)

        store.set_thumbs_rating(conversation_id, mid, Thumbs.DOWN)
        store.star_message(conversation_id, mid)

        assert store.get_message(conversation_id, mid).starred

    def test_writer_appends_and_finalizes(self, store, conversation_id):
        mid, lock = self._locked(store, conversation_id)
        record = ToolCallRecord(id="c1", name="calculator", arguments={"expression": "1+1"}, result=2)

        store.append_to_message(conversation_id, mid, "Hel", lock)
        store.append_to_message(conversation_id, mid, "lo", lock)
        assert store.get_message(conversation_id, mid).text == "Hello"

        store.finalize_message(conversation_id, mid, lock, tool_calls=[record])

        message = store.get_message(conversation_id, mid)
        assert message.status == MessageStatus.COMPLETE
        assert message.tool_calls == [record]
        assert not store.is_locked(conversation_id, mid)
        store.update_message(conversation_id, mid, "editable again")

    def test_wrong_lock_rejected(self, store, conversation_id):
        mid, _ = self._locked(store, conversation_id)

        with pytest.raises(MessageLockedError):
            store.append_to_message(conversation_id, mid, "x", "not-the-lock")

    def test_double_lock_rejected(self, store, conversation_id):
        mid, _ = self._locked(store, conversation_id)

        with pytest.raises(MessageLockedError):
            store.lock_message(conversation_id, mid)


# ---------------------------------------------------------------------------
# Persistence and notification
# ---------------------------------------------------------------------------

class TestPersistenceAndNotification:
    def test_deltas_not_persisted(self, store, persistence, conversation_id):
        mid = store.add_message(conversation_id, MessageRole.ASSISTANT, "", status=MessageStatus.STREAMING)
        lock = store.lock_message(conversation_id, mid)
        saves = persistence.save_count

        store.append_to_message(conversation_id, mid, "a", lock)
        store.append_to_message(conversation_id, mid, "b", lock)
        assert persistence.save_count == saves

        store.finalize_message(conversation_id, mid, lock)
        assert persistence.save_count == saves + 1

    def test_load_round_trip(self, store, persistence, seeded_conversation):
        reloaded = ConversationStore(persistence)
        reloaded.load()

        assert _texts(reloaded, seeded_conversation) == ["a", "b", "c", "d"]
        assert reloaded.active_conversation.id == seeded_conversation

    def test_subscribe_and_unsubscribe(self, store, conversation_id):
        changes = []
        unsubscribe = store.subscribe(changes.append)

        mid = store.add_message(conversation_id, MessageRole.USER, "hi")
        unsubscribe()
        store.add_message(conversation_id, MessageRole.USER, "ignored")

        assert changes == [StoreChange("message_added", conversation_id, mid)]

    def test_store_without_persistence(self):
        store = ConversationStore()
        cid = store.create_conversation()
        store.load()

        assert cid in store

    def test_usage_totals(self, store):
        store.add_usage("openai", 10)
        store.add_usage("openai", 5)
        store.add_usage("anthropic", 7)

        assert store.session_usage("openai") == 15
        assert store.session_usage("groq") == 0
        assert store.session_usage() == {"openai": 15, "anthropic": 7}

    def test_in_memory_persistence_seed(self, seeded_conversation, store):
        persistence = InMemoryPersistence(store.conversations)

        assert [c.id for c in persistence.load()] == [seeded_conversation]
