"""Tests for the location tool facade and the connection manager behind it."""

from __future__ import annotations

import random
from datetime import timedelta

import pytest

from modules.location.obfuscation import Obfuscator
from modules.location.records import VisibilityMode
from modules.location.tools import LocationTools
from shared.config import Settings


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        visibility_policy="community",
        public_share_base_url="https://lastseen.test/share/",
    )


@pytest.fixture
def tools(store, settings, clock):
    return LocationTools(
        store,
        settings,
        obfuscator=Obfuscator(rng=random.Random(5)),
        clock=clock,
    )


# ===================================================================
# get_circle / log_location / stop_sharing
# ===================================================================


class TestCircle:
    @pytest.mark.asyncio
    async def test_requires_user(self, tools):
        assert await tools.get_circle() == {"error": "user_id is required"}
        assert "error" in await tools.log_location(lat=1.0, lng=2.0)

    @pytest.mark.asyncio
    async def test_log_then_circle(self, tools, store, clock):
        alice = store.add_user("Alice")
        bob = store.add_user("Bob")

        result = await tools.log_location(
            lat=-41.28, lng=174.77, note="coffee", expiry_minutes=60, user_id=alice.id
        )

        assert result["success"] is True
        assert result["logged"]["note"] == "coffee"
        assert result["logged"]["name"] == "Alice"
        assert result["own_location"]["record_id"] == result["logged"]["record_id"]
        assert result["stale"] is False

        circle = await tools.get_circle(user_id=bob.id)
        assert circle["count"] == 1
        assert circle["locations"][0]["name"] == "Alice"
        assert circle["locations"][0]["last_seen"] == "just now"
        assert circle["own_location"] is None
        assert circle["stale"] is True

    @pytest.mark.asyncio
    async def test_engine_reused_per_user(self, tools, store):
        alice = store.add_user("Alice")
        await tools.get_circle(user_id=alice.id)
        engine = tools.engine_for(alice.id)
        await tools.get_circle(user_id=alice.id)
        assert tools.engine_for(alice.id) is engine

    @pytest.mark.asyncio
    async def test_vague_stranger_is_anonymous(self, tools, store):
        alice = store.add_user("Alice")
        bob = store.add_user("Bob")
        await tools.log_location(lat=-41.28, lng=174.77, visibility_mode="vague", user_id=alice.id)

        circle = await tools.get_circle(user_id=bob.id)

        entry = circle["locations"][0]
        assert entry["name"] == "Someone"
        assert entry["owner_id"] is None
        assert entry["vague"] is True

    @pytest.mark.asyncio
    async def test_missing_fix(self, tools, store):
        alice = store.add_user("Alice")
        result = await tools.log_location(lat=None, lng=None, user_id=alice.id)
        assert result["success"] is False
        assert result["error"].startswith("Could not get your position")

    @pytest.mark.asyncio
    async def test_out_of_range_fix(self, tools, store):
        alice = store.add_user("Alice")
        result = await tools.log_location(lat=123.0, lng=0.0, user_id=alice.id)
        assert result["success"] is False
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_bad_mode_and_expiry(self, tools, store):
        alice = store.add_user("Alice")

        bad_mode = await tools.log_location(
            lat=1.0, lng=1.0, visibility_mode="secret", user_id=alice.id
        )
        bad_expiry = await tools.log_location(
            lat=1.0, lng=1.0, expiry_minutes=-1, user_id=alice.id
        )

        assert "Unknown visibility mode" in bad_mode["error"]
        assert bad_expiry["success"] is False
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_unknown_user(self, tools):
        result = await tools.log_location(lat=1.0, lng=1.0, user_id="not-a-user")
        assert result["success"] is False
        assert result["error"] == "Your account could not be found."

    @pytest.mark.asyncio
    async def test_store_down_on_write(self, tools, store):
        alice = store.add_user("Alice")
        await tools.get_circle(user_id=alice.id)
        store.unavailable = True

        result = await tools.log_location(lat=1.0, lng=1.0, user_id=alice.id)

        assert result["success"] is False
        assert result["error"] == "Failed to save your location. Please try again."

    @pytest.mark.asyncio
    async def test_stop_sharing(self, tools, store, clock):
        alice = store.add_user("Alice")
        await tools.log_location(lat=1.0, lng=1.0, user_id=alice.id)

        result = await tools.stop_sharing(user_id=alice.id)
        again = await tools.stop_sharing(user_id=alice.id)

        assert result["removed"] is True
        assert again["removed"] is False
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_close_closes_engines(self, tools, store):
        alice = store.add_user("Alice")
        engine = tools.engine_for(alice.id)
        await tools.close()
        assert engine.closed is True


# ===================================================================
# Connections
# ===================================================================


class TestConnections:
    @pytest.mark.asyncio
    async def test_add_and_list(self, tools, store):
        alice = store.add_user("Alice")
        store.add_user("Zed")
        store.add_user("Bob")

        await tools.add_connection(email="ZED@example.com", user_id=alice.id)
        added = await tools.add_connection(email="bob@example.com", user_id=alice.id)
        listed = await tools.list_connections(user_id=alice.id)

        assert added["success"] is True
        assert added["connection"]["name"] == "Bob"
        assert [c["name"] for c in listed["connections"]] == ["Bob", "Zed"]

    @pytest.mark.asyncio
    async def test_unregistered_email_suggests_invite(self, tools, store):
        alice = store.add_user("Alice")
        result = await tools.add_connection(email="new@example.com", user_id=alice.id)
        assert result["success"] is False
        assert result["invite"] is True

    @pytest.mark.asyncio
    async def test_self_and_duplicate_rejected(self, tools, store):
        alice = store.add_user("Alice")
        store.add_user("Bob")

        self_add = await tools.add_connection(email="alice@example.com", user_id=alice.id)
        await tools.add_connection(email="bob@example.com", user_id=alice.id)
        duplicate = await tools.add_connection(email="bob@example.com", user_id=alice.id)

        assert "yourself" in self_add["error"]
        assert "already" in duplicate["error"]
        assert duplicate["invite"] is False

    @pytest.mark.asyncio
    async def test_remove(self, tools, store):
        alice = store.add_user("Alice")
        bob = store.add_user("Bob")
        store.connect(alice.id, bob.id)

        removed = await tools.remove_connection(connection_id=bob.id, user_id=alice.id)
        missing = await tools.remove_connection(connection_id=bob.id, user_id=alice.id)

        assert removed["success"] is True
        assert missing["error"] == "Connection not found"

    @pytest.mark.asyncio
    async def test_connections_policy_follows_new_grant(self, store, clock):
        settings = Settings(_env_file=None, visibility_policy="connections")
        tools = LocationTools(store, settings, clock=clock)
        alice = store.add_user("Alice")
        bob = store.add_user("Bob")
        store.put(bob, clock.now, mode=VisibilityMode.CONNECTIONS_ONLY)

        assert (await tools.get_circle(user_id=alice.id))["count"] == 0
        await tools.add_connection(email="bob@example.com", user_id=alice.id)
        assert (await tools.get_circle(user_id=alice.id))["count"] == 1


# ===================================================================
# Public share
# ===================================================================


class TestPublicShareTools:
    @pytest.mark.asyncio
    async def test_enable_then_resolve(self, tools, store):
        alice = store.add_user("Alice")
        await tools.log_location(lat=-41.28, lng=174.77, note="here", user_id=alice.id)

        link = await tools.enable_public_share(user_id=alice.id)
        shared = await tools.public_share(link["token"])

        assert link["url"] == f"https://lastseen.test/share/{link['token']}"
        assert shared["status"] == "sharing"
        assert shared["name"] == "Alice"
        assert shared["location"]["note"] == "here"

    @pytest.mark.asyncio
    async def test_rotation_invalidates_old_link(self, tools, store):
        alice = store.add_user("Alice")
        first = await tools.enable_public_share(user_id=alice.id)
        second = await tools.enable_public_share(user_id=alice.id)

        assert first["token"] != second["token"]
        assert (await tools.public_share(first["token"]))["status"] == "unavailable"
        assert (await tools.public_share(second["token"]))["status"] == "not_sharing"

    @pytest.mark.asyncio
    async def test_disable(self, tools, store):
        alice = store.add_user("Alice")
        link = await tools.enable_public_share(user_id=alice.id)

        await tools.disable_public_share(user_id=alice.id)

        assert await tools.public_share(link["token"]) == {"status": "unavailable"}

    @pytest.mark.asyncio
    async def test_expired_spot_not_sharing(self, tools, store, clock):
        alice = store.add_user("Alice")
        await tools.log_location(lat=1.0, lng=1.0, expiry_minutes=5, user_id=alice.id)
        link = await tools.enable_public_share(user_id=alice.id)

        clock.advance(minutes=6)
        shared = await tools.public_share(link["token"])

        assert shared["status"] == "not_sharing"
        assert "location" not in shared

    @pytest.mark.asyncio
    async def test_store_down_reads_unavailable(self, tools, store):
        store.unavailable = True
        assert await tools.public_share("anything") == {"status": "unavailable"}

    @pytest.mark.asyncio
    async def test_unknown_user_cannot_enable(self, tools):
        result = await tools.enable_public_share(user_id="nobody")
        assert result == {"success": False, "error": "User not found"}


def test_stale_threshold_from_settings(store, clock):
    tools = LocationTools(
        store, Settings(_env_file=None, stale_after_hours=1), clock=clock
    )
    engine = tools.engine_for("someone")
    assert engine.stale_after == timedelta(hours=1)
