"""Shared test fixtures and configuration for backend tests."""
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from huddle.config import AppSettings, JWTSecrets, Secrets, StorageSettings
from huddle.main import create_app
from huddle.store.service import ChatStore

TEST_SECRET = "test-secret-key"


@pytest.fixture
def app_settings():
    """Settings with an in-memory database and a known signing key."""
    return AppSettings(
        storage=StorageSettings(db_path=":memory:"),
        secrets=Secrets(jwt=JWTSecrets(secret_key=TEST_SECRET)),
    )


@pytest.fixture
def api_client(app_settings):
    """TestClient with the lifespan running, so app.state is populated."""
    with TestClient(create_app(app_settings)) as client:
        yield client


@pytest.fixture
def store():
    """Standalone in-memory store."""
    s = ChatStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def world(api_client):
    """Alice and Bob share a group; Carol is registered but not a member.

    Tokens are minted with the app's own authenticator.
    """
    state = api_client.app.state
    alice = state.store.create_user("Alice", email="alice@example.com")
    bob = state.store.create_user("Bob", email="bob@example.com")
    carol = state.store.create_user("Carol", email="carol@example.com")
    group = state.store.create_group("Trip to Lisbon", member_ids=[bob.id], admin_ids=[alice.id])
    other = state.store.create_group("Other trip", member_ids=[carol.id])

    issue = state.authenticator.issue_token
    return SimpleNamespace(
        client=api_client,
        store=state.store,
        manager=state.manager,
        alice=alice,
        bob=bob,
        carol=carol,
        group=group,
        other=other,
        tokens={
            "alice": issue(alice.id),
            "bob": issue(bob.id),
            "carol": issue(carol.id),
        },
    )
