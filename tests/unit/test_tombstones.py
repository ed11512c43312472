"""Tests for retention rules."""

from datetime import timedelta

import pytest

from replisync.sync.entry import SyncClient
from replisync.sync.errors import FullResyncRequired
from replisync.sync.tombstones import (
    calculate_safe_purge_version,
    ensure_incremental,
    find_stale_clients,
    requires_full_resync,
    update_client_sync_state,
)

from tests.conftest import BASE_TIME


def client(origin_id, version, days_ago=0):
    ts = BASE_TIME - timedelta(days=days_ago)
    return SyncClient(origin_id, version, ts, ts)


class TestSafePurgeVersion:
    def test_minimum_across_clients(self):
        clients = [client("a", 100), client("b", 80), client("c", 120)]
        assert calculate_safe_purge_version(clients) == 80

    def test_no_clients_disallows_purge(self):
        assert calculate_safe_purge_version([]) is None

    def test_purge_never_strands_a_client(self):
        clients = [client("a", 100), client("b", 80), client("c", 120)]
        safe = calculate_safe_purge_version(clients)
        assert not any(requires_full_resync(c.last_sync_version, safe) for c in clients)


class TestFullResync:
    def test_behind_floor(self):
        assert requires_full_resync(40, 50)
        assert not requires_full_resync(50, 50)

    def test_ensure_incremental_raises_typed_error(self):
        with pytest.raises(FullResyncRequired) as info:
            ensure_incremental(3, 10)
        assert info.value.client_version == 3
        assert info.value.oldest_available_version == 10


class TestStaleClients:
    def test_ninety_day_default(self):
        clients = [client("fresh", 10, days_ago=1), client("stale", 5, days_ago=91)]
        assert find_stale_clients(clients, now=BASE_TIME) == ["stale"]

    def test_custom_threshold(self):
        clients = [client("a", 1, days_ago=8)]
        assert find_stale_clients(clients, BASE_TIME, timedelta(days=7)) == ["a"]


class TestUpdateClient:
    def test_keeps_created_at(self):
        existing = client("a", 5, days_ago=30)
        updated = update_client_sync_state("a", 42, BASE_TIME, existing)
        assert updated.last_sync_version == 42
        assert updated.last_sync_timestamp == BASE_TIME
        assert updated.created_at == existing.created_at

    def test_new_client(self):
        created = update_client_sync_state("b", 0, BASE_TIME)
        assert created.created_at == BASE_TIME
