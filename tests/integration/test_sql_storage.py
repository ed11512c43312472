"""Tests for the SQLite triggers, log store and change applier."""

from dataclasses import replace

import pytest
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from replisync.database.engine import create_sync_engine
from replisync.database.session import init_db
from replisync.storage import state
from replisync.storage.applier import SqlChangeApplier
from replisync.storage.log_store import SqlChangeLogStore
from replisync.storage.replica import SqlReplicaStore
from replisync.storage.triggers import build_trigger_sql, track_table, tracked_tables, untrack_table
from replisync.sync.contracts import LAST_PUSH_VERSION
from replisync.sync.errors import DependencyViolation, InvalidInput, StorageError
from replisync.sync.mapping import MappingDirection, MappingState

from tests.conftest import APP_SCHEMA, APP_TABLES, BASE_TIME, track_app_tables


@pytest.fixture
def db(replica_sessions):
    track_app_tables(replica_sessions)
    session = replica_sessions()
    yield session
    session.close()


@pytest.fixture
def replica(db):
    return SqlReplicaStore(db, origin_id="replica-a")


def execute(db, sql, **params):
    db.execute(text(sql), params)
    db.commit()


class TestTriggers:
    def test_insert_update_delete_captured(self, replica, db):
        execute(db, "INSERT INTO Person (id, name) VALUES ('p1', 'Ann')")
        execute(db, "UPDATE Person SET name = 'Anne' WHERE id = 'p1'")
        execute(db, "DELETE FROM Person WHERE id = 'p1'")

        entries = replica.log.fetch_changes(0, 10)
        assert [e.operation.value for e in entries] == ["insert", "update", "delete"]
        assert [e.version for e in entries] == [1, 2, 3]
        assert entries[0].pk_value == {"id": "p1"}
        assert entries[1].payload == {"id": "p1", "name": "Anne", "email": None}
        assert entries[2].payload is None
        assert all(e.origin == "replica-a" for e in entries)

    def test_composite_primary_key(self, replica, db):
        execute(db, "INSERT INTO Enrollment VALUES ('s1', 'c1', 'A')")
        entry = replica.log.fetch_changes(0, 10)[0]
        assert entry.pk_value == {"student_id": "s1", "course_id": "c1"}

    def test_suppressed_writes_not_captured(self, replica, db):
        with replica.suppressed():
            db.execute(text("INSERT INTO Person (id, name) VALUES ('p1', 'Ann')"))
        assert replica.log.fetch_changes(0, 10) == []
        assert not replica.is_suppressed()

    def test_suppression_released_on_error(self, replica, db):
        with pytest.raises(RuntimeError):
            with replica.suppressed():
                db.execute(text("INSERT INTO Person (id, name) VALUES ('p1', 'Ann')"))
                raise RuntimeError("boom")
        assert not replica.is_suppressed()
        assert db.execute(text("SELECT COUNT(*) FROM Person")).scalar() == 0

    def test_tracking_is_idempotent(self, db):
        track_table(db, "Person")
        assert tracked_tables(db) == sorted(APP_TABLES)

    def test_untrack(self, replica, db):
        untrack_table(db, "Person")
        execute(db, "INSERT INTO Person (id, name) VALUES ('p1', 'Ann')")
        assert replica.log.fetch_changes(0, 10) == []

    def test_retracking_picks_up_new_columns(self, replica, db):
        execute(db, "ALTER TABLE Person ADD COLUMN phone TEXT")
        track_table(db, "Person")
        db.commit()
        execute(db, "INSERT INTO Person (id, name, phone) VALUES ('p1', 'Ann', '555')")
        entry = replica.log.fetch_changes(0, 10)[0]
        assert entry.payload == {"id": "p1", "name": "Ann", "email": None, "phone": "555"}

    def test_retracking_keeps_one_capture_per_write(self, replica, db):
        track_table(db, "Person")
        track_table(db, "Person")
        db.commit()
        execute(db, "INSERT INTO Person (id, name) VALUES ('p1', 'Ann')")
        assert len(replica.log.fetch_changes(0, 10)) == 1

    def test_listing_ignores_lookalike_trigger_names(self, db):
        execute(
            db,
            "CREATE TRIGGER asyncXtrgXAudit_insert AFTER INSERT ON Person "
            "BEGIN SELECT 1; END",
        )
        assert tracked_tables(db) == sorted(APP_TABLES)

    def test_rejects_unsafe_identifiers(self):
        with pytest.raises(InvalidInput):
            build_trigger_sql("Person; DROP TABLE x", ["id"], ["id"])

    def test_unknown_table(self, db):
        with pytest.raises(StorageError):
            track_table(db, "Nope")


class TestLogStore:
    def test_append_keeps_origin_and_timestamp(self, db, make_entry):
        log = SqlChangeLogStore(db)
        stored = log.append(make_entry(99, origin="replica-b"))
        db.commit()
        assert stored.version == 1
        fetched = log.fetch_changes(0, 10)[0]
        assert fetched.origin == "replica-b"
        assert fetched.timestamp == make_entry(99).timestamp

    def test_fetch_respects_limit_and_order(self, db, make_entry):
        log = SqlChangeLogStore(db)
        for v in range(5):
            log.append(make_entry(v + 1))
        assert [e.version for e in log.fetch_changes(1, 2)] == [2, 3]

    def test_purge_raises_floor_and_keeps_versions_monotonic(self, db, make_entry):
        log = SqlChangeLogStore(db)
        for v in range(5):
            log.append(make_entry(v + 1))
        assert log.purge_through(3) == 3
        assert log.retention_floor() == 3
        assert log.min_version() == 4
        assert log.purge_through(2) == 0
        assert log.append(make_entry(1)).version == 6


class TestApplier:
    def test_upsert_both_ways(self, db, make_entry):
        applier = SqlChangeApplier(db)
        applier.apply_change(make_entry(1, operation="update", pk={"id": "p1"},
                                        payload={"id": "p1", "name": "Ann"}))
        applier.apply_change(make_entry(2, operation="insert", pk={"id": "p1"},
                                        payload={"id": "p1", "name": "Anne"}))
        assert applier.rows("Person") == [{"id": "p1", "name": "Anne", "email": None}]

    def test_delete_missing_row_is_noop(self, db, make_entry):
        SqlChangeApplier(db).apply_change(make_entry(1, operation="delete", pk={"id": "ghost"}))

    def test_missing_parent_is_dependency_violation(self, db, make_entry):
        applier = SqlChangeApplier(db)
        entry = make_entry(1, "Orders", {"id": "o1"}, payload={"id": "o1", "person_id": "nobody"})
        with pytest.raises(DependencyViolation):
            applier.apply_change(entry)
        assert applier.rows("Orders") == []

    def test_failed_entry_does_not_undo_earlier_ones(self, db, make_entry):
        applier = SqlChangeApplier(db)
        applier.apply_change(make_entry(1, pk={"id": "p1"}))
        with pytest.raises(DependencyViolation):
            applier.apply_change(make_entry(2, "Orders", {"id": "o1"},
                                            payload={"id": "o1", "person_id": "nobody"}))
        assert len(applier.rows("Person")) == 1

    def test_deleting_referenced_parent_is_dependency_violation(self, db, make_entry):
        applier = SqlChangeApplier(db)
        applier.apply_change(make_entry(1, pk={"id": "p1"}))
        applier.apply_change(make_entry(2, "Orders", {"id": "o1"},
                                        payload={"id": "o1", "person_id": "p1"}))
        with pytest.raises(DependencyViolation):
            applier.apply_change(make_entry(3, pk={"id": "p1"}, operation="delete"))

    def test_unknown_table_and_column(self, db, make_entry):
        applier = SqlChangeApplier(db)
        with pytest.raises(StorageError):
            applier.apply_change(make_entry(1, "Nope"))
        with pytest.raises(StorageError):
            applier.apply_change(make_entry(1, payload={"id": "p1", "shoe_size": 9}))

    def test_invalid_entries(self, db, make_entry):
        applier = SqlChangeApplier(db)
        with pytest.raises(InvalidInput):
            applier.apply_change(make_entry(1, pk={}))
        entry = make_entry(1)
        with pytest.raises(InvalidInput):
            applier.apply_change(replace(entry, payload=None))


class TestReplicaStore:
    def test_origin_persists(self, db, replica_sessions):
        SqlReplicaStore(db, origin_id="replica-a")
        with replica_sessions() as other:
            assert SqlReplicaStore(other).origin_id == "replica-a"

    def test_generated_origin_is_stable(self, database):
        sessions = database()
        with sessions() as first:
            origin = SqlReplicaStore(first).origin_id
        with sessions() as second:
            assert SqlReplicaStore(second).origin_id == origin

    def test_cursors(self, replica):
        replica.set_cursor(LAST_PUSH_VERSION, 7)
        replica.commit()
        assert replica.get_cursor(LAST_PUSH_VERSION) == 7

    def test_pending_local_change_and_discard(self, replica, db):
        execute(db, "INSERT INTO Person (id, name) VALUES ('p1', 'Ann')")
        execute(db, "UPDATE Person SET name = 'Anne' WHERE id = 'p1'")
        execute(db, "INSERT INTO Person (id, name) VALUES ('p2', 'Bob')")

        pending = replica.pending_local_change("Person", {"id": "p1"})
        assert pending.version == 2
        assert replica.discard_local_changes("Person", {"id": "p1"}) == 2
        assert replica.pending_local_change("Person", {"id": "p1"}) is None
        assert [e.pk_value for e in replica.log.fetch_changes(0, 10)] == [{"id": "p2"}]

    def test_pushed_changes_are_not_pending(self, replica, db):
        execute(db, "INSERT INTO Person (id, name) VALUES ('p1', 'Ann')")
        replica.set_cursor(LAST_PUSH_VERSION, 1)
        assert replica.pending_local_change("Person", {"id": "p1"}) is None

    def test_row_keys(self, replica, db):
        execute(db, "INSERT INTO Enrollment VALUES ('s1', 'c2', NULL)")
        execute(db, "INSERT INTO Enrollment VALUES ('s1', 'c1', NULL)")
        assert replica.row_keys("Enrollment") == [
            {"student_id": "s1", "course_id": "c1"},
            {"student_id": "s1", "course_id": "c2"},
        ]

    def test_mapping_state_round_trip(self, replica, replica_sessions):
        assert replica.mapping_state("patients", MappingDirection.PULL).last_synced_version == 0

        saved = MappingState("patients", MappingDirection.PULL).advance(12, 3, BASE_TIME)
        replica.save_mapping_state(saved)
        replica.save_mapping_state(saved.advance(15, 1, BASE_TIME))
        replica.commit()

        with replica_sessions() as other:
            reloaded = SqlReplicaStore(other)
            pulled = reloaded.mapping_state("patients", MappingDirection.PULL)
            assert (pulled.last_synced_version, pulled.records_synced) == (15, 4)
            assert pulled.last_sync_timestamp is not None
            assert reloaded.mapping_state("patients", MappingDirection.PUSH).last_synced_version == 0


class TestSuppressionDurability:
    @pytest.fixture
    def file_sessions(self, tmp_path):
        engine = create_sync_engine(f"sqlite:///{tmp_path / 'replica.db'}")
        init_db(engine)
        with engine.begin() as conn:
            for statement in APP_SCHEMA:
                conn.exec_driver_sql(statement)
        factory = sessionmaker(autoflush=False, bind=engine)
        track_app_tables(factory)
        yield factory
        engine.dispose()

    def test_commit_while_suppressed_keeps_capture_on_disk(self, file_sessions):
        with file_sessions() as db:
            replica = SqlReplicaStore(db, origin_id="replica-a")
            with replica.suppressed():
                db.execute(text("INSERT INTO Person (id, name) VALUES ('p1', 'Ann')"))
                replica.commit()
                assert replica.is_suppressed()
                with file_sessions() as other:
                    assert not state.is_sync_active(other)
            assert replica.log.fetch_changes(0, 10) == []

    def test_flag_left_by_a_crash_is_cleared_on_open(self, replica_sessions):
        track_app_tables(replica_sessions)
        with replica_sessions() as db:
            SqlReplicaStore(db, origin_id="replica-a")
            state.set_sync_active(db, True)
            db.commit()

        with replica_sessions() as db:
            reopened = SqlReplicaStore(db)
            assert not reopened.is_suppressed()
            execute(db, "INSERT INTO Person (id, name) VALUES ('p1', 'Ann')")
            assert len(reopened.log.fetch_changes(0, 10)) == 1
