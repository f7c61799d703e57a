from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from rank_gateway.app import create_app
from rank_gateway.config import Settings
from rank_gateway.errors import NotFound
from rank_gateway.store import open_store

GROUP_ID = 4242
ROLES = [
    {"id": 1, "name": "Guest", "rank": 0},
    {"id": 11, "name": "Member", "rank": 10},
    {"id": 51, "name": "Officer", "rank": 50},
    {"id": 101, "name": "Leader", "rank": 100},
]


class FakeGroupClient:
    """In-memory stand-in for RobloxClient that records every call."""

    def __init__(self, roles=None, ranks=None, usernames=None):
        self.roles = roles if roles is not None else list(ROLES)
        self.ranks = dict(ranks or {})
        self.usernames = dict(usernames or {})
        self.calls = []
        self.login_error = None

    async def get_authenticated_user(self):
        if self.login_error: raise self.login_error
        return {"id": 1, "name": "RankBot"}

    async def get_roles(self, group_id):
        self.calls.append(("get_roles", group_id))
        return list(self.roles)

    async def get_role_in_group(self, group_id, user_id):
        self.calls.append(("get_role_in_group", user_id))
        rank = self.ranks.get(user_id, 0)
        return next((dict(r) for r in self.roles if r["rank"] == rank), {"name": "Guest", "rank": 0})

    async def set_rank(self, group_id, user_id, role_id):
        self.calls.append(("set_rank", user_id, role_id))
        self.ranks[user_id] = next(r["rank"] for r in self.roles if r["id"] == role_id)

    async def get_id_from_username(self, username):
        self.calls.append(("get_id_from_username", username))
        for user_id, name in self.usernames.items():
            if name.lower() == username.lower(): return user_id
        raise NotFound("user_not_found", f"User with username '{username}' not found.")

    async def get_username_from_id(self, user_id):
        return self.usernames.get(user_id, f"user{user_id}")

    async def get_thumbnail(self, user_id, size="150x150"):
        return f"https://tr.rbxcdn.com/{user_id}/{size}/AvatarHeadshot/Png"

    def mutations(self):
        return [c for c in self.calls if c[0] == "set_rank"]


class RecordingSink:
    def __init__(self):
        self.messages = []

    async def send(self, message):
        self.messages.append(message)


@pytest.fixture
def settings():
    return Settings(
        roblosecurity="cookie",
        group_id=GROUP_ID,
        maintainer_key="main-key",
        secondary_key="second-key",
        spectator_key="spectator-key",
        api_key="machine-key",
        request_rate_limit="1000/minute",
    )


@pytest.fixture
def group_client():
    return FakeGroupClient(ranks={100: 10, 200: 100, 300: 0}, usernames={100: "Builderman", 200: "TopDog", 300: "Newbie"})


@pytest.fixture
def store():
    return open_store()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def restart_hook():
    return Mock()


@pytest.fixture
def app(settings, group_client, store, sink, restart_hook):
    return create_app(settings, client=group_client, store=store, audit_sink=sink, restart=restart_hook)


@pytest.fixture
def http(app):
    with TestClient(app) as client:
        yield client


MAINTAINER = {"Authorization": "Bearer main-key"}
SECONDARY = {"Authorization": "Bearer second-key"}
SPECTATOR = {"Authorization": "Bearer spectator-key"}
