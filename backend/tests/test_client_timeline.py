"""Tests for client-side timeline reconciliation."""
from huddle.client.timeline import MessageTimeline


def _msg(mid, author="u-other", client_key=None, text="hi"):
    return {
        "id": mid,
        "author": {"id": author, "fullName": "", "profileImage": None},
        "body": {"kind": "text", "text": text},
        "clientKey": client_key,
        "readBy": [author],
    }


def test_history_then_live_has_no_duplicates():
    timeline = MessageTimeline()
    a, b, c = _msg("A"), _msg("B"), _msg("C")
    timeline.load_history([a, b])

    assert timeline.apply_live(dict(a)) is False
    assert timeline.apply_live(c) is True
    assert timeline.ids() == ["A", "B", "C"]


def test_live_match_by_client_key():
    timeline = MessageTimeline()
    timeline.load_history([_msg("A", client_key="k1")])
    assert timeline.apply_live(_msg("A2", client_key="k1")) is False
    assert timeline.ids() == ["A"]


def test_pending_entry_replaced_in_place_by_server_echo():
    timeline = MessageTimeline()
    timeline.load_history([_msg("A")])
    timeline.add_pending("k9", "me", {"kind": "text", "text": "draft"})
    timeline.apply_live(_msg("B"))

    assert timeline.apply_live(_msg("M", author="me", client_key="k9", text="draft")) is True
    assert timeline.ids() == ["A", "M", "B"]
    assert not any(m.get("pending") for m in timeline.items)


def test_discard_pending_notifies_listeners():
    timeline = MessageTimeline()
    seen = []
    timeline.subscribe(lambda items, changed: seen.append((len(items), [m["clientKey"] for m in changed])))
    timeline.add_pending("k1", "me", {"kind": "text", "text": "oops"})
    timeline.discard_pending("k1")
    timeline.discard_pending("k1")
    assert timeline.items == []
    assert seen == [(1, ["k1"]), (0, ["k1"])]


def test_load_older_prepends_new_items_only():
    timeline = MessageTimeline()
    timeline.load_history([_msg("C"), _msg("D")])
    timeline.load_older([_msg("A"), _msg("B"), _msg("C")])
    assert timeline.ids() == ["A", "B", "C", "D"]


def test_listeners_see_changes_only():
    timeline = MessageTimeline()
    calls = []
    timeline.subscribe(lambda items, changed: calls.append([m["id"] for m in changed]))

    timeline.load_history([_msg("A")])
    timeline.apply_live(_msg("A"))
    timeline.apply_live(_msg("B"))
    assert calls == [["A"], ["B"]]


def test_update_replaces_existing_copy():
    timeline = MessageTimeline()
    timeline.load_history([_msg("A")])
    updated = _msg("A")
    updated["reactions"] = [{"emoji": "👍", "user": {"id": "u-2"}}]

    assert timeline.update(updated) is True
    assert timeline.items[0]["reactions"][0]["emoji"] == "👍"
    assert timeline.update(_msg("Z")) is False


def test_apply_read_is_a_set_union():
    timeline = MessageTimeline()
    timeline.load_history([_msg("A"), _msg("B")])
    timeline.apply_read("u-3", ["A"])
    timeline.apply_read("u-3", ["A", "B"])
    assert [m["readBy"] for m in timeline.items] == [["u-other", "u-3"], ["u-other", "u-3"]]


def test_unread_by_skips_own_and_swept():
    timeline = MessageTimeline()
    timeline.load_history([_msg("A"), _msg("B", author="me"), _msg("C")])
    timeline.add_pending("k", "me", {"kind": "text", "text": "x"})
    assert timeline.unread_by("me") == ["A", "C"]
    assert timeline.unread_by("me", already={"A"}) == ["C"]
