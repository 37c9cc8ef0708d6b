import pytest

from frontend.chat_store import (
    ChatConversation,
    ChatMessage,
    ChatStore,
    MutationState,
    Tab,
)


def _conv(conv_id, updated_at="2026-01-01T00:00:00.000000+00:00", **kwargs):
    return ChatConversation(
        id=conv_id,
        user_id="user-1",
        title=kwargs.pop("title", f"Conversation {conv_id}"),
        created_at="2026-01-01T00:00:00.000000+00:00",
        updated_at=updated_at,
        **kwargs,
    )


def _msg(msg_id, conv_id="c1", role="user", content="Hello", created_at=""):
    return ChatMessage(id=msg_id, conversation_id=conv_id, role=role, content=content, created_at=created_at)


@pytest.fixture
def store():
    s = ChatStore()
    s.set_conversations([_conv("c1"), _conv("c2")])
    return s


class TestConversations:
    def test_from_api(self):
        conv = ChatConversation.from_api({
            "id": "c9", "user_id": "u", "title": "T",
            "created_at": "a", "updated_at": "b",
            "is_starred": 1, "tags": ["x"], "message_count": 4,
        })
        assert conv.is_starred is True
        assert conv.tags == ["x"]
        assert conv.message_count == 4
        assert conv.unread_count == 0

    def test_set_conversations_keeps_unread_and_clears_stale_active(self, store):
        store.conversations["c1"].unread_count = 2
        store.set_active_conversation("c2")
        store.set_conversations([_conv("c1")])
        assert store.conversations["c1"].unread_count == 2
        assert store.active_conversation_id is None

    def test_upsert_merges_server_fields(self, store):
        store.conversations["c1"].unread_count = 3
        returned = store.upsert_conversation(_conv("c1", title="Server title"))
        assert returned is store.conversations["c1"]
        assert returned.title == "Server title"
        assert returned.unread_count == 3

    def test_remove_and_restore(self, store):
        store.set_messages("c1", [_msg("m1")])
        store.set_active_conversation("c1")
        snapshot = store.remove_conversation("c1")

        assert "c1" not in store.conversations
        assert "c1" not in store.messages
        assert store.active_conversation_id is None

        store.restore_conversation(snapshot, error="Delete failed")
        assert store.conversations["c1"].error == "Delete failed"
        assert [m.id for m in store.messages["c1"]] == ["m1"]
        assert store.active_conversation_id == "c1"
        assert store.ui_state.error == "Delete failed"

    def test_remove_missing(self, store):
        assert store.remove_conversation("nope") is None


class TestMessages:
    def test_assistant_message_on_inactive_conversation_counts_unread(self, store):
        store.set_active_conversation("c2")
        store.add_message("c1", _msg("m1", role="assistant", content="Hi"))
        assert store.conversations["c1"].unread_count == 1
        assert store.conversations["c1"].last_message_content == "Hi"
        assert store.conversations["c1"].message_count == 1

    def test_user_message_never_counts_unread(self, store):
        store.add_message("c1", _msg("m1", role="user"))
        assert store.conversations["c1"].unread_count == 0

    def test_active_conversation_never_counts_unread(self, store):
        store.set_active_conversation("c1")
        store.add_message("c1", _msg("m1", role="assistant"))
        assert store.conversations["c1"].unread_count == 0

    def test_opening_marks_read(self, store):
        store.add_message("c1", _msg("m1", role="assistant"))
        store.set_active_conversation("c1")
        assert store.conversations["c1"].unread_count == 0

    def test_add_message_bumps_updated_at(self, store):
        store.add_message("c1", _msg("m1", created_at="2026-02-01T00:00:00.000000+00:00"))
        assert store.conversations["c1"].updated_at == "2026-02-01T00:00:00.000000+00:00"

    def test_replace_and_remove(self, store):
        store.add_message("c1", _msg("local-1"))
        store.replace_message("c1", "local-1", _msg("m1", content="Saved"))
        assert store.get_message("c1", "m1").content == "Saved"
        assert store.conversations["c1"].last_message_id == "m1"

        store.remove_message("c1", "m1")
        assert store.messages["c1"] == []
        assert store.conversations["c1"].message_count == 0

    def test_restore_activity(self, store):
        before = store.snapshot_activity("c1")
        store.add_message("c1", _msg("m1", role="assistant", created_at="2026-03-01T00:00:00+00:00"))
        store.restore_activity("c1", before)
        conv = store.conversations["c1"]
        assert conv.unread_count == 0
        assert conv.message_count == 0
        assert conv.updated_at == "2026-01-01T00:00:00.000000+00:00"


class TestOptimisticSync:
    def test_apply_then_confirm(self, store):
        mutation = store.apply("c1", "is_starred", True)
        assert store.conversations["c1"].is_starred is True
        assert store.field_state("c1", "is_starred") == MutationState.APPLIED

        assert store.confirm(mutation, {"is_starred": True, "updated_at": "2026-05-01"}) is True
        assert store.field_state("c1", "is_starred") == MutationState.CONFIRMED
        assert store.conversations["c1"].updated_at == "2026-05-01"

    def test_apply_unknown_target(self, store):
        with pytest.raises(KeyError):
            store.apply("missing", "is_starred", True)

    def test_rollback_restores_previous(self, store):
        mutation = store.apply("c1", "title", "Renamed")
        assert store.rollback(mutation, "Server unavailable") is True
        conv = store.conversations["c1"]
        assert conv.title == "Conversation c1"
        assert conv.error == "Server unavailable"
        assert store.field_state("c1", "title") == MutationState.ROLLED_BACK

    def test_stale_response_is_discarded(self, store):
        first = store.apply("c1", "is_starred", True)
        second = store.apply("c1", "is_starred", False)

        assert store.confirm(second, {"is_starred": False}) is True
        assert store.confirm(first, {"is_starred": True}) is False
        assert store.conversations["c1"].is_starred is False

    def test_older_confirm_does_not_clobber_newer_optimistic_value(self, store):
        first = store.apply("c1", "is_starred", True)
        second = store.apply("c1", "is_starred", False)

        assert store.confirm(first, {"is_starred": True}) is True
        assert store.conversations["c1"].is_starred is False
        assert store.field_state("c1", "is_starred") == MutationState.APPLIED

        store.confirm(second, {"is_starred": False})
        assert store.conversations["c1"].is_starred is False
        assert store.field_state("c1", "is_starred") == MutationState.CONFIRMED

    def test_only_newest_failure_rolls_back(self, store):
        first = store.apply("c1", "is_starred", True)
        second = store.apply("c1", "is_starred", False)

        assert store.rollback(first, "boom") is False
        assert store.conversations["c1"].is_starred is False

        assert store.rollback(second, "boom") is True
        assert store.conversations["c1"].is_starred is False

    def test_older_success_after_newer_failure_is_applied(self, store):
        first = store.apply("c1", "is_starred", True)
        second = store.apply("c1", "is_starred", False)

        assert store.rollback(second, "boom") is True
        assert store.conversations["c1"].is_starred is False

        assert store.confirm(first, {"is_starred": True}) is True
        assert store.conversations["c1"].is_starred is True
        assert store.field_state("c1", "is_starred") == MutationState.CONFIRMED

        # The server now holds True, so a later failure reverts to it
        third = store.apply("c1", "is_starred", False)
        store.rollback(third, "boom")
        assert store.conversations["c1"].is_starred is True

    def test_rollback_returns_to_last_confirmed(self, store):
        first = store.apply("c1", "title", "One")
        store.confirm(first, {"title": "One"})
        second = store.apply("c1", "title", "Two")
        store.rollback(second, "boom")
        assert store.conversations["c1"].title == "One"

    def test_merge_skips_in_flight_fields(self, store):
        store.apply("c1", "title", "Mine")
        store.merge_server_fields("c1", {"title": "Theirs", "is_archived": True})
        assert store.conversations["c1"].title == "Mine"
        assert store.conversations["c1"].is_archived is True

    def test_message_field(self, store):
        store.set_messages("c1", [_msg("m1")])
        mutation = store.apply("c1", "is_starred", True, message_id="m1")
        assert store.get_message("c1", "m1").is_starred is True
        store.rollback(mutation, "nope")
        assert store.get_message("c1", "m1").is_starred is False
        assert store.field_state("c1", "is_starred", message_id="m1") == MutationState.ROLLED_BACK

    def test_confirm_after_removal(self, store):
        mutation = store.apply("c1", "is_starred", True)
        store.remove_conversation("c1")
        assert store.confirm(mutation, {"is_starred": True}) is False


class TestViews:
    @pytest.fixture
    def populated(self):
        s = ChatStore()
        s.set_conversations([
            _conv("b", updated_at="2026-01-02", title="Budget review"),
            _conv("a", updated_at="2026-01-02", title="Travel plans", is_starred=True),
            _conv("c", updated_at="2026-01-03", title="Old notes", is_archived=True, is_starred=True),
            _conv("d", updated_at="2026-01-01", title="Recipes", tags=["cooking"]),
        ])
        return s

    def test_all_tab_excludes_archived_and_sorts(self, populated):
        ids = [c.id for c in populated.get_filtered_conversations()]
        assert ids == ["a", "b", "d"]

    def test_starred_tab_includes_archived(self, populated):
        populated.set_active_tab("starred")
        assert [c.id for c in populated.get_filtered_conversations()] == ["c", "a"]

    def test_archived_tab(self, populated):
        populated.set_active_tab(Tab.ARCHIVED)
        assert [c.id for c in populated.get_filtered_conversations()] == ["c"]

    def test_search_title_and_tags(self, populated):
        populated.set_search_query("  BUDGET ")
        assert [c.id for c in populated.get_filtered_conversations()] == ["b"]
        populated.set_search_query("cook")
        assert [c.id for c in populated.get_filtered_conversations()] == ["d"]

    def test_all_tab_excludes_archived_even_when_search_matches(self, populated):
        populated.set_search_query("notes")
        assert [c.id for c in populated.get_filtered_conversations()] == []
        populated.set_active_tab(Tab.ARCHIVED)
        assert [c.id for c in populated.get_filtered_conversations()] == ["c"]

    def test_search_last_message(self, populated):
        populated.add_message("a", _msg("m1", conv_id="a", content="Flights to Lisbon"))
        populated.set_search_query("lisbon")
        assert [c.id for c in populated.get_filtered_conversations()] == ["a"]

    def test_counts(self, populated):
        assert populated.counts_by_tab() == {"all": 3, "starred": 2, "archived": 1}

    def test_invalid_tab(self, populated):
        with pytest.raises(ValueError):
            populated.set_active_tab("trash")
