"""Unit tests for the DuckDB chat store."""
import os
import tempfile
import threading

import pytest

from huddle.ids import is_valid_id
from huddle.store.schemas import AudioBody, FileBody, TextBody, body_from_columns, body_to_columns
from huddle.store.service import ChatStore


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    db_path = tempfile.mktemp(suffix=".duckdb")

    yield db_path

    if os.path.exists(db_path):
        os.remove(db_path)
    wal_path = db_path + ".wal"
    if os.path.exists(wal_path):
        os.remove(wal_path)


@pytest.fixture
def group(store):
    alice = store.create_user("Alice", email="alice@example.com")
    bob = store.create_user("Bob")
    g = store.create_group("Weekend", member_ids=[bob.id], admin_ids=[alice.id])
    return g, alice, bob


class TestUsersAndGroups:
    def test_create_user_normalizes_email(self, store):
        user = store.create_user("Dana", email="  Dana@Example.COM ")
        assert is_valid_id(user.id)
        assert store.find_user_id_by_email("dana@example.com") == user.id

    def test_unknown_email(self, store):
        assert store.find_user_id_by_email("nobody@example.com") is None

    def test_admins_are_members(self, store, group):
        g, alice, bob = group
        loaded = store.get_group(g.id)
        assert loaded.member_ids == {alice.id, bob.id}
        assert loaded.admin_ids == {alice.id}

    def test_add_and_remove_member(self, store, group):
        g, alice, bob = group
        carol = store.create_user("Carol")
        store.add_member(g.id, carol.id)
        store.add_member(g.id, carol.id)
        assert store.get_group(g.id).is_member(carol.id)

        assert store.remove_member(g.id, carol.id) is True
        assert store.remove_member(g.id, carol.id) is False
        assert not store.get_group(g.id).is_member(carol.id)

    def test_missing_group(self, store):
        assert store.get_group("f" * 32) is None


class TestCreateMessage:
    def test_author_has_read_and_group_points_at_it(self, store, group):
        g, alice, _ = group
        message, created = store.create_message(g.id, alice.id, TextBody(text="hi"))
        assert created is True
        assert message.read_by == [alice.id]
        assert message.delivered_to == []
        assert store.get_group(g.id).last_message_id == message.id

    def test_same_client_key_returns_existing(self, store, group):
        g, alice, _ = group
        first, created_first = store.create_message(g.id, alice.id, TextBody(text="a"), client_key="k")
        second, created_second = store.create_message(g.id, alice.id, TextBody(text="b"), client_key="k")
        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert second.body.text == "a"
        messages, _ = store.list_messages(g.id)
        assert len(messages) == 1

    def test_messages_without_client_key_are_not_deduplicated(self, store, group):
        g, alice, _ = group
        store.create_message(g.id, alice.id, TextBody(text="a"))
        store.create_message(g.id, alice.id, TextBody(text="a"))
        messages, _ = store.list_messages(g.id)
        assert len(messages) == 2

    def test_reply_to_other_group_is_dropped(self, store, group):
        g, alice, bob = group
        elsewhere = store.create_group("Elsewhere", member_ids=[alice.id])
        foreign, _ = store.create_message(elsewhere.id, alice.id, TextBody(text="x"))
        local, _ = store.create_message(g.id, alice.id, TextBody(text="y"))

        dropped, _ = store.create_message(g.id, bob.id, TextBody(text="re"), reply_to=foreign.id)
        linked, _ = store.create_message(g.id, bob.id, TextBody(text="re"), reply_to=local.id)
        assert dropped.reply_to is None
        assert linked.reply_to == local.id

    def test_media_body_roundtrip(self, store, group):
        g, alice, _ = group
        message, _ = store.create_message(
            g.id, alice.id, FileBody(url="https://x/plan.pdf", name="plan.pdf", caption="itinerary")
        )
        loaded = store.get_message(message.id)
        assert loaded.body == FileBody(url="https://x/plan.pdf", name="plan.pdf", caption="itinerary")

    def test_persists_to_file(self, temp_db):
        store = ChatStore(temp_db)
        user = store.create_user("Eve")
        g = store.create_group("Persisted", member_ids=[user.id])
        message, _ = store.create_message(g.id, user.id, AudioBody(url="https://x/voice.webm"))
        store.close()

        reopened = ChatStore(temp_db)
        try:
            assert reopened.get_message(message.id).body.kind == "audio"
        finally:
            reopened.close()


class TestListMessages:
    def test_pages_back_from_cursor(self, store, group):
        g, alice, _ = group
        ids = [store.create_message(g.id, alice.id, TextBody(text=str(n)))[0].id for n in range(4)]

        page, cursor = store.list_messages(g.id, limit=3)
        assert [m.id for m in page] == ids[1:]
        assert cursor == ids[1]

        page, cursor = store.list_messages(g.id, cursor=cursor, limit=3)
        assert [m.id for m in page] == ids[:1]
        assert cursor is None

    def test_exact_page_has_no_cursor(self, store, group):
        g, alice, _ = group
        for n in range(3):
            store.create_message(g.id, alice.id, TextBody(text=str(n)))
        page, cursor = store.list_messages(g.id, limit=3)
        assert len(page) == 3
        assert cursor is None


class TestReactionsAndReads:
    def test_toggle_is_an_involution(self, store, group):
        g, alice, bob = group
        message, _ = store.create_message(g.id, alice.id, TextBody(text="hi"))

        action, updated = store.toggle_reaction(message.id, "👍", bob.id)
        assert action == "added"
        assert [(r.emoji, r.user_id) for r in updated.reactions] == [("👍", bob.id)]

        action, updated = store.toggle_reaction(message.id, "👍", bob.id)
        assert action == "removed"
        assert updated.reactions == []

    def test_same_emoji_different_users(self, store, group):
        g, alice, bob = group
        message, _ = store.create_message(g.id, alice.id, TextBody(text="hi"))
        store.toggle_reaction(message.id, "👍", alice.id)
        _, updated = store.toggle_reaction(message.id, "👍", bob.id)
        assert sorted(r.user_id for r in updated.reactions) == sorted([alice.id, bob.id])

    def test_mark_read_is_a_set_union(self, store, group):
        g, alice, bob = group
        m1, _ = store.create_message(g.id, alice.id, TextBody(text="1"))
        m2, _ = store.create_message(g.id, alice.id, TextBody(text="2"))

        assert store.mark_read(g.id, bob.id, [m1.id]) == [m1.id]
        assert store.mark_read(g.id, bob.id, [m1.id, m2.id, m2.id]) == [m2.id]
        assert store.mark_read(g.id, bob.id, [m1.id, m2.id]) == []

        for message in store.get_messages([m1.id, m2.id]):
            assert sorted(message.read_by) == sorted([alice.id, bob.id])

    def test_mark_read_ignores_other_groups(self, store, group):
        g, alice, bob = group
        elsewhere = store.create_group("Elsewhere", member_ids=[alice.id])
        foreign, _ = store.create_message(elsewhere.id, alice.id, TextBody(text="x"))
        assert store.mark_read(g.id, bob.id, [foreign.id]) == []
        assert store.get_message(foreign.id).read_by == [alice.id]

    def test_mark_delivered(self, store, group):
        g, alice, bob = group
        message, _ = store.create_message(g.id, alice.id, TextBody(text="hi"))
        assert store.mark_delivered(message.id, {bob.id}) == [bob.id]
        assert store.mark_delivered(message.id, [bob.id]) == []
        assert store.get_message(message.id).delivered_to == [bob.id]


class TestConcurrency:
    def test_concurrent_sends_with_same_client_key_store_one_message(self, store, group):
        g, alice, _ = group
        results = []
        start = threading.Barrier(8)

        def send(n):
            start.wait()
            results.append(store.create_message(g.id, alice.id, TextBody(text=str(n)), client_key="dup"))

        threads = [threading.Thread(target=send, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 8
        assert [created for _, created in results].count(True) == 1
        assert len({message.id for message, _ in results}) == 1
        messages, _ = store.list_messages(g.id)
        assert len(messages) == 1

    def test_concurrent_toggles_converge(self, store, group):
        g, alice, bob = group
        message, _ = store.create_message(g.id, alice.id, TextBody(text="hi"))
        actions = []
        start = threading.Barrier(6)

        def toggle():
            start.wait()
            action, _ = store.toggle_reaction(message.id, "👍", bob.id)
            actions.append(action)

        threads = [threading.Thread(target=toggle) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(actions) == ["added"] * 3 + ["removed"] * 3
        assert store.get_message(message.id).reactions == []


class TestBodyColumns:
    def test_text_body_columns(self):
        assert body_to_columns(TextBody(text="hey")) == ("text", "hey", None, None)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            body_from_columns("sticker", None, None, None)
