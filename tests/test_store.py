"""Tests for the job record store and the marker protocol.

Tests cover:
- MarkerStore atomic writes, scans, unreadable markers
- add_records all-or-nothing semantics
- Status transitions (monotonic, explicit reset)
- sync(): idempotence, stale markers, last write wins, expired override
- Persistence of the table snapshot
"""

import json
from datetime import timedelta

import pytest

from batchgrid.errors import DuplicateKeyError, InvalidTransitionError, UnknownReferenceError
from batchgrid.schemas import JobRecord, JobStatus, StatusMarker
from batchgrid.store import JobRecordStore, MarkerStore
from batchgrid.utils import utcnow


@pytest.fixture
def markers(tmp_path):
    return MarkerStore(tmp_path / "markers")


@pytest.fixture
def store(tmp_path, markers):
    store = JobRecordStore(tmp_path / "jobs.json", markers)
    store.add_records(JobRecord(job_id=i, seed=100 + i) for i in (1, 2, 3))
    return store


def _submit(store, job_id, job_hash="jobabc", batch_id="b1"):
    store.update_status(job_id, JobStatus.SUBMITTED, job_hash=job_hash, batch_id=batch_id)


class TestMarkerStore:
    """Tests for MarkerStore."""

    def test_write_and_read(self, markers):
        marker = StatusMarker(job_id=1, status=JobStatus.DONE, timestamp=utcnow(), job_hash="h")
        markers.write(marker)
        assert markers.read(1) == marker
        assert markers.path(1).name == "1.json"

    def test_read_missing_returns_none(self, markers):
        assert markers.read(99) is None

    def test_write_leaves_no_temp_files(self, markers):
        markers.write(StatusMarker(job_id=1, status=JobStatus.STARTED, timestamp=utcnow()))
        markers.write(StatusMarker(job_id=1, status=JobStatus.DONE, timestamp=utcnow()))
        assert [p.name for p in markers.markers_dir.iterdir()] == ["1.json"]

    def test_scan_skips_unreadable_and_hidden(self, markers):
        markers.write(StatusMarker(job_id=1, status=JobStatus.STARTED, timestamp=utcnow()))
        (markers.markers_dir / "2.json").write_text("{not json")
        (markers.markers_dir / ".3.json.abc.tmp").write_text("{}")
        assert list(markers.scan()) == [1]

    def test_remove(self, markers):
        markers.write(StatusMarker(job_id=1, status=JobStatus.STARTED, timestamp=utcnow()))
        assert markers.remove(1) is True
        assert markers.remove(1) is False


class TestStatusMarker:
    """Tests for the StatusMarker schema."""

    def test_rejects_controller_statuses(self):
        with pytest.raises(ValueError):
            StatusMarker(job_id=1, status=JobStatus.SUBMITTED, timestamp=utcnow())

    def test_error_needs_message(self):
        with pytest.raises(ValueError):
            StatusMarker(job_id=1, status=JobStatus.ERROR, timestamp=utcnow())

    def test_dict_round_trip(self):
        marker = StatusMarker(
            job_id=3, status=JobStatus.ERROR, timestamp=utcnow(), job_hash="h",
            started_at=utcnow(), error="ValueError: x", traceback="tb",
        )
        assert StatusMarker.from_dict(json.loads(json.dumps(marker.to_dict()))) == marker


class TestAddRecords:
    """Tests for appending records."""

    def test_ids_are_returned_in_order(self, store):
        assert store.all_ids() == [1, 2, 3]
        assert store.peek_ids(2) == [4, 5]

    def test_duplicate_id_raises(self, store):
        with pytest.raises(DuplicateKeyError):
            store.add_records([JobRecord(job_id=2, seed=0)])

    def test_all_or_nothing(self, store):
        with pytest.raises(DuplicateKeyError):
            store.add_records([JobRecord(job_id=4, seed=0), JobRecord(job_id=1, seed=0)])
        assert 4 not in store
        assert len(store) == 3

    def test_duplicate_within_batch(self, store):
        with pytest.raises(DuplicateKeyError):
            store.add_records([JobRecord(job_id=7, seed=0), JobRecord(job_id=7, seed=0)])
        assert 7 not in store

    def test_ids_not_reused_after_removal(self, store):
        store.remove_records([3])
        assert store.peek_ids(1) == [4]

    def test_get_unknown(self, store):
        with pytest.raises(UnknownReferenceError):
            store.get(42)

    def test_query(self, store):
        assert store.query(lambda r: r.seed > 101) == [2, 3]
        assert store.query(ids=[3, 1]) == [1, 3]


class TestTransitions:
    """Tests for update_status."""

    def test_submit_sets_hash_and_batch(self, store):
        _submit(store, 1)
        record = store.get(1)
        assert record.status == JobStatus.SUBMITTED
        assert record.job_hash == "jobabc"
        assert record.batch_id == "b1"
        assert record.submitted_at is not None

    def test_cannot_submit_twice(self, store):
        _submit(store, 1)
        with pytest.raises(InvalidTransitionError):
            _submit(store, 1)

    def test_cannot_return_to_defined(self, store):
        with pytest.raises(InvalidTransitionError, match="reset"):
            store.update_status(1, JobStatus.DEFINED)

    def test_expire_only_pending(self, store):
        with pytest.raises(InvalidTransitionError):
            store.update_status(1, JobStatus.EXPIRED)
        _submit(store, 1)
        store.update_status(1, JobStatus.EXPIRED)
        assert store.get(1).status == JobStatus.EXPIRED

    def test_expired_can_be_resubmitted(self, store):
        _submit(store, 1)
        store.update_status(1, JobStatus.EXPIRED)
        _submit(store, 1, job_hash="jobnew", batch_id="b2")
        assert store.get(1).status == JobStatus.SUBMITTED
        assert store.get(1).job_hash == "jobnew"

    def test_worker_status_writes_marker(self, store, markers):
        _submit(store, 1)
        store.update_status(1, JobStatus.DONE)
        assert store.get(1).status == JobStatus.DONE
        assert markers.read(1).status == JobStatus.DONE
        assert markers.read(1).job_hash == "jobabc"

    def test_done_is_not_regressed_by_started(self, store):
        _submit(store, 1)
        store.update_status(1, JobStatus.DONE)
        store.update_status(1, JobStatus.STARTED)
        assert store.get(1).status == JobStatus.DONE

    def test_reset(self, store, markers):
        _submit(store, 1)
        store.update_status(1, JobStatus.ERROR, error="boom")
        assert store.reset([1]) == [1]
        record = store.get(1)
        assert record.status == JobStatus.DEFINED
        assert record.error is None
        assert record.job_hash is None
        assert markers.read(1) is None


class TestSync:
    """Tests for marker reconciliation."""

    def test_applies_markers(self, store, markers):
        _submit(store, 1)
        markers.write(StatusMarker(job_id=1, status=JobStatus.STARTED, timestamp=utcnow(), job_hash="jobabc"))
        assert store.sync() == [1]
        assert store.get(1).status == JobStatus.STARTED
        assert store.get(1).started_at is not None

    def test_idempotent(self, store, markers):
        _submit(store, 1)
        _submit(store, 2)
        markers.write(StatusMarker(job_id=1, status=JobStatus.DONE, timestamp=utcnow(), job_hash="jobabc"))
        markers.write(StatusMarker(
            job_id=2, status=JobStatus.ERROR, timestamp=utcnow(), job_hash="jobabc", error="boom",
        ))
        assert store.sync() == [1, 2]
        before = [r.to_dict() for r in store.records()]
        assert store.sync() == []
        assert [r.to_dict() for r in store.records()] == before

    def test_stale_marker_ignored(self, store, markers):
        _submit(store, 1, job_hash="jobnew")
        markers.write(StatusMarker(job_id=1, status=JobStatus.DONE, timestamp=utcnow(), job_hash="jobold"))
        assert store.sync() == []
        assert store.get(1).status == JobStatus.SUBMITTED

    def test_marker_for_unsubmitted_job_ignored(self, store, markers):
        markers.write(StatusMarker(job_id=1, status=JobStatus.DONE, timestamp=utcnow(), job_hash="x"))
        assert store.sync() == []
        assert store.get(1).status == JobStatus.DEFINED

    def test_marker_for_unknown_job_ignored(self, store, markers):
        markers.write(StatusMarker(job_id=77, status=JobStatus.DONE, timestamp=utcnow(), job_hash="x"))
        assert store.sync() == []

    def test_last_write_wins_for_equal_rank(self, store):
        _submit(store, 1)
        record = store.get(1)
        now = utcnow()
        newer = StatusMarker(
            job_id=1, status=JobStatus.ERROR, timestamp=now + timedelta(seconds=5),
            job_hash="jobabc", error="late failure",
        )
        older = StatusMarker(job_id=1, status=JobStatus.DONE, timestamp=now, job_hash="jobabc")
        assert JobRecordStore._apply_marker(record, newer) is True
        assert JobRecordStore._apply_marker(record, older) is False
        assert record.status == JobStatus.ERROR
        assert record.error == "late failure"

    def test_done_overrides_expired(self, store, markers):
        _submit(store, 1)
        store.update_status(1, JobStatus.EXPIRED)
        markers.write(StatusMarker(job_id=1, status=JobStatus.DONE, timestamp=utcnow(), job_hash="jobabc"))
        assert store.sync() == [1]
        assert store.get(1).status == JobStatus.DONE
        assert store.get(1).done_at is not None

    def test_started_does_not_override_expired(self, store, markers):
        _submit(store, 1)
        store.update_status(1, JobStatus.EXPIRED)
        markers.write(StatusMarker(job_id=1, status=JobStatus.STARTED, timestamp=utcnow(), job_hash="jobabc"))
        assert store.sync() == []
        assert store.get(1).status == JobStatus.EXPIRED

    def test_fresh_store_sees_markers(self, tmp_path, store, markers):
        _submit(store, 3)
        store.save()
        markers.write(StatusMarker(job_id=3, status=JobStatus.DONE, timestamp=utcnow(), job_hash="jobabc"))

        fresh = JobRecordStore(tmp_path / "jobs.json", MarkerStore(tmp_path / "markers"))
        assert fresh.get(3).status == JobStatus.SUBMITTED
        assert fresh.sync() == [3]
        assert fresh.get(3).status == JobStatus.DONE


class TestPersistence:
    """Tests for the table snapshot."""

    def test_save_and_load(self, tmp_path, store):
        _submit(store, 2)
        store.get(2).tags = ["a"]
        store.save()

        loaded = JobRecordStore(tmp_path / "jobs.json", MarkerStore(tmp_path / "markers"))
        assert loaded.all_ids() == [1, 2, 3]
        assert loaded.get(2).to_dict() == store.get(2).to_dict()
        assert loaded.peek_ids(1) == [4]

    def test_snapshot_is_json(self, tmp_path, store):
        store.save()
        data = json.loads((tmp_path / "jobs.json").read_text())
        assert data["next_id"] == 4
        assert [row["job_id"] for row in data["jobs"]] == [1, 2, 3]
