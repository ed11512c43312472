"""Tests for batch construction and verification."""

from dataclasses import replace

import pytest

from replisync.sync.batches import fetch_batch, verify_batch_hash
from replisync.sync.errors import HashMismatch, InvalidInput


@pytest.fixture
def log(make_entry):
    return [make_entry(v) for v in range(1, 26)]


def reader(entries):
    def _fetch(from_version, limit):
        return [e for e in entries if e.version > from_version][:limit]
    return _fetch


class TestFetchBatch:
    def test_small_log_single_batch(self, make_entry):
        entries = [make_entry(v) for v in (1, 2, 3)]
        batch = fetch_batch(0, 10, reader(entries))
        assert [e.version for e in batch.changes] == [1, 2, 3]
        assert batch.from_version == 0
        assert batch.to_version == 3
        assert batch.has_more is False

    def test_paging_through_25_entries(self, log):
        sizes = []
        cursor = 0
        while True:
            batch = fetch_batch(cursor, 10, reader(log))
            if not batch.changes:
                break
            sizes.append(len(batch.changes))
            cursor = batch.to_version
            if not batch.has_more:
                break
        assert sizes == [10, 10, 5]
        assert cursor == 25

    def test_exactly_full_batch_reports_more(self, log):
        batch = fetch_batch(15, 10, reader(log))
        assert len(batch.changes) == 10
        assert batch.has_more is True
        follow_up = fetch_batch(batch.to_version, 10, reader(log))
        assert follow_up.changes == []
        assert follow_up.has_more is False

    def test_empty_batch_keeps_cursor(self, log):
        batch = fetch_batch(25, 10, reader(log))
        assert batch.from_version == batch.to_version == 25
        assert batch.changes == []

    def test_never_exceeds_batch_size(self, log):
        batch = fetch_batch(0, 5, lambda f, limit: log)
        assert len(batch.changes) == 5

    @pytest.mark.parametrize("from_version,size", [(0, 0), (-1, 10)])
    def test_rejects_invalid_arguments(self, log, from_version, size):
        with pytest.raises(InvalidInput):
            fetch_batch(from_version, size, reader(log))


class TestVerifyBatchHash:
    def test_untouched_batch_verifies(self, log):
        verify_batch_hash(fetch_batch(0, 10, reader(log)))

    def test_tampered_batch_rejected(self, log):
        batch = fetch_batch(0, 10, reader(log))
        tampered = replace(batch, changes=[replace(batch.changes[0], origin="evil")] + batch.changes[1:])
        with pytest.raises(HashMismatch) as info:
            verify_batch_hash(tampered)
        assert info.value.expected == batch.hash
