"""Tests for the message history endpoint."""
from huddle.store.schemas import ImageBody, TextBody


def _auth(world, who):
    return {"Authorization": f"Bearer {world.tokens[who]}"}


def _seed(world, count):
    ids = []
    for n in range(count):
        message, _ = world.store.create_message(
            world.group.id, world.alice.id, TextBody(text=f"message {n}")
        )
        ids.append(message.id)
    return ids


def test_history_pages_backwards_oldest_first(world):
    ids = _seed(world, 5)
    url = f"/groups/{world.group.id}/messages"

    page = world.client.get(url, params={"limit": 2}, headers=_auth(world, "bob")).json()
    assert [m["id"] for m in page["items"]] == ids[3:5]
    assert page["nextCursor"] == ids[3]

    page = world.client.get(
        url, params={"limit": 2, "cursor": page["nextCursor"]}, headers=_auth(world, "bob")
    ).json()
    assert [m["id"] for m in page["items"]] == ids[1:3]
    assert page["nextCursor"] == ids[1]

    page = world.client.get(
        url, params={"limit": 2, "cursor": page["nextCursor"]}, headers=_auth(world, "bob")
    ).json()
    assert [m["id"] for m in page["items"]] == ids[0:1]
    assert page["nextCursor"] is None


def test_history_default_page_size(world):
    ids = _seed(world, 35)
    page = world.client.get(
        f"/groups/{world.group.id}/messages", headers=_auth(world, "alice")
    ).json()
    assert len(page["items"]) == 30
    assert page["items"][-1]["id"] == ids[-1]


def test_history_items_are_enriched(world):
    first, _ = world.store.create_message(
        world.group.id, world.alice.id, ImageBody(url="https://cdn.example.com/x.png")
    )
    world.store.create_message(
        world.group.id, world.bob.id, TextBody(text="nice"), reply_to=first.id
    )
    world.store.toggle_reaction(first.id, "❤️", world.bob.id)

    page = world.client.get(
        f"/groups/{world.group.id}/messages", headers=_auth(world, "alice")
    ).json()
    image, reply = page["items"]
    assert image["body"]["kind"] == "image"
    assert image["author"] == {"id": world.alice.id, "fullName": "Alice", "profileImage": None}
    assert image["reactions"][0]["user"]["fullName"] == "Bob"
    assert reply["replyTo"]["id"] == first.id
    assert reply["replyTo"]["author"]["fullName"] == "Alice"


def test_history_requires_token(world):
    response = world.client.get(f"/groups/{world.group.id}/messages")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "unauthorized"


def test_history_forbidden_for_non_member(world):
    response = world.client.get(
        f"/groups/{world.group.id}/messages", headers=_auth(world, "carol")
    )
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "forbidden"


def test_history_bad_cursor(world):
    response = world.client.get(
        f"/groups/{world.group.id}/messages",
        params={"cursor": "../etc"},
        headers=_auth(world, "alice"),
    )
    assert response.status_code == 400


def test_history_limit_out_of_range(world):
    response = world.client.get(
        f"/groups/{world.group.id}/messages",
        params={"limit": 101},
        headers=_auth(world, "alice"),
    )
    assert response.status_code == 422


def test_health(api_client):
    assert api_client.get("/health").json() == {"status": "ok"}
