"""
Shade - Presence registry tests.
"""

import asyncio

import pytest


@pytest.mark.asyncio
class TestPresenceRegistry:
    """Tests for identity -> connection tracking."""

    async def test_add_and_lookup(self, presence, connection):
        handle = connection("alice-1")

        assert await presence.add_connection("alice", handle) is None
        assert presence.lookup("alice") is handle
        assert presence.is_online("alice")
        assert presence.lookup("bob") is None

    async def test_last_connection_wins(self, presence, connection):
        old, new = connection("alice-1"), connection("alice-2")
        await presence.add_connection("alice", old)

        replaced = await presence.add_connection("alice", new)

        assert replaced is old
        assert presence.lookup("alice") is new
        assert len(presence) == 1

    async def test_remove_is_idempotent(self, presence, connection):
        handle = connection("alice-1")
        await presence.add_connection("alice", handle)

        assert await presence.remove_connection(handle) == "alice"
        assert await presence.remove_connection(handle) is None
        assert presence.lookup("alice") is None

    async def test_stale_disconnect_keeps_replacement(self, presence, connection):
        """A late disconnect of a replaced connection never evicts the new one."""
        old, new = connection("alice-1"), connection("alice-2")
        await presence.add_connection("alice", old)
        await presence.add_connection("alice", new)

        assert await presence.remove_connection(old) is None
        assert presence.lookup("alice") is new

    async def test_snapshot(self, presence, connection):
        await presence.add_connection("alice", connection("a"))
        await presence.add_connection("bob", connection("b"))

        assert sorted(u["userId"] for u in presence.snapshot()) == ["alice", "bob"]
        assert len(presence.handles()) == 2

    async def test_concurrent_registrations(self, presence, connection):
        handles = [connection(f"user-{i}") for i in range(50)]

        await asyncio.gather(
            *(presence.add_connection(f"user-{i}", h) for i, h in enumerate(handles))
        )
        await asyncio.gather(*(presence.remove_connection(h) for h in handles[::2]))

        assert len(presence) == 25
        assert presence.lookup("user-1") is handles[1]
        assert presence.lookup("user-0") is None
