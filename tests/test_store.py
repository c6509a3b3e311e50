"""
Tests for StateStore and ConnectionStore.
"""

from datetime import timedelta

import pytest

from connectors.store import ConnectionStore


class TestStateStore:
    @pytest.mark.asyncio
    async def test_consume_is_single_use(self, states, clock):
        await states.save("s" * 64, "u1", "a1", clock() + timedelta(minutes=10))

        record = await states.consume("s" * 64)

        assert (record.user_id, record.admin_id) == ("u1", "a1")
        assert record.expires_at == clock() + timedelta(minutes=10)
        assert await states.consume("s" * 64) is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, states, clock):
        await states.save("old", "u1", "a1", clock() - timedelta(seconds=1))
        await states.save("new", "u2", "a1", clock() + timedelta(minutes=10))

        assert await states.purge_expired(clock()) == 1
        assert await states.consume("old") is None
        assert await states.consume("new") is not None


class TestConnectionStore:
    @pytest.mark.asyncio
    async def test_swap_loses_after_concurrent_refresh(self, connections, seed_connection, clock):
        await seed_connection()
        first = await connections.get("u1")
        second = await connections.get("u1")
        expires_at = clock() + timedelta(hours=1)

        won = await connections.swap_tokens(
            first,
            access_token="at-a",
            refresh_token="rt-a",
            expires_at=expires_at,
            location_id="loc-1",
            used_at=clock(),
        )
        lost = await connections.swap_tokens(
            second,
            access_token="at-b",
            refresh_token="rt-b",
            expires_at=expires_at,
            location_id="loc-1",
            used_at=clock(),
        )

        assert (won, lost) == (True, False)
        conn = await connections.get("u1")
        assert (conn.access_token, conn.refresh_token) == ("at-a", "rt-a")
        assert conn.last_used_at == clock()

    @pytest.mark.asyncio
    async def test_swap_refused_on_inactive_row(self, connections, seed_connection, clock):
        await seed_connection()
        current = await connections.get("u1")
        await connections.mark_expired("u1", clock())

        assert not await connections.swap_tokens(
            current,
            access_token="at-x",
            refresh_token="rt-x",
            expires_at=clock(),
            location_id=None,
            used_at=clock(),
        )

    @pytest.mark.asyncio
    async def test_guarded_expiry_skips_rotated_row(self, connections, seed_connection, clock):
        await seed_connection()
        stale = await connections.get("u1")
        fresh = await connections.get("u1")
        await connections.swap_tokens(
            fresh,
            access_token="at-2",
            refresh_token="rt-2",
            expires_at=clock() + timedelta(hours=1),
            location_id="loc-1",
            used_at=clock(),
        )

        assert await connections.mark_expired("u1", clock(), current=stale) is False
        assert (await connections.get("u1")).refresh_token == "rt-2"

        current = await connections.get("u1")
        assert await connections.mark_expired("u1", clock(), current=current) is True
        assert await connections.get("u1") is None

    @pytest.mark.asyncio
    async def test_services_are_isolated(self, session_factory, cipher, connections, seed_connection):
        await seed_connection()
        other = ConnectionStore(session_factory, "othercrm", cipher=cipher)

        assert await other.get("u1") is None
        assert await other.delete("u1") == 0
        assert await connections.get("u1") is not None

    @pytest.mark.asyncio
    async def test_list_expiring_ordered_and_active_only(self, connections, seed_connection, clock):
        await seed_connection("late", expires_in=timedelta(hours=5))
        await seed_connection("soon", expires_in=timedelta(hours=1))
        await seed_connection("dead", expires_in=timedelta(hours=2))
        await seed_connection("far", expires_in=timedelta(days=3))
        await connections.mark_expired("dead", clock())

        expiring = await connections.list_expiring(clock() + timedelta(hours=24))

        assert [c.user_id for c in expiring] == ["soon", "late"]

    @pytest.mark.asyncio
    async def test_location_details_keep_existing_values(self, connections, seed_connection):
        await seed_connection()
        await connections.set_location_details("u1", name="Acme Dental", timezone_name="America/Chicago")
        await connections.set_location_details("u1", name=None, timezone_name="Europe/Paris")

        conn = await connections.get("u1")
        assert conn.location_name == "Acme Dental"
        assert conn.location_timezone == "Europe/Paris"

    @pytest.mark.asyncio
    async def test_stamp_expired_at_only_fills_missing(self, connections, seed_connection, clock):
        await seed_connection()
        await connections.mark_expired("u1", clock())
        conn = await connections.get("u1", active_only=False)
        clock.advance(hours=1)

        assert await connections.stamp_expired_at([conn.id], clock()) == 0
        assert (await connections.get("u1", active_only=False)).expired_at == conn.expired_at
