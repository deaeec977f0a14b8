"""
Job Record Store - the durable job table and the marker protocol.

The store manages:
- The job table (JobRecords), persisted as a JSON snapshot (``jobs.json``)
- Status markers (``markers/<job_id>.json``), one per job

Workers cannot hold a connection to the table: they run as separate,
possibly remote processes. Instead every worker owns the marker files of
the jobs it executes and replaces them atomically (write to a temporary
file, then rename). ``sync()`` scans the marker directory and merges what
it finds into the in-memory table:

- a marker is applied when its status ranks higher than the record's, or
  ranks equal and is newer (last write wins)
- a marker whose job_hash differs from the record's is stale and ignored

Both rules make ``sync()`` idempotent and safe to run at any time, also
from a freshly started controller and while workers are still writing.

Storage layout:
    root/
        jobs.json
        markers/
            {job_id}.json
"""

import json
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

from batchgrid.errors import (
    DuplicateKeyError,
    InvalidTransitionError,
    SchemaMismatchError,
    UnknownReferenceError,
)
from batchgrid.schemas import JobRecord, JobStatus, StatusMarker
from batchgrid.utils import atomic_write_json, utcnow

logger = logging.getLogger(__name__)

MARKER_STATUSES = (JobStatus.STARTED, JobStatus.DONE, JobStatus.ERROR)

Predicate = Callable[[JobRecord], bool]


class MarkerStore:
    """
    File-based status markers, one file per job.

    Safe to use from many worker processes at once as long as each job is
    written by a single worker.
    """

    def __init__(self, markers_dir: Path | str):
        self._dir = Path(markers_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def markers_dir(self) -> Path:
        return self._dir

    def path(self, job_id: int) -> Path:
        return self._dir / f"{job_id}.json"

    def write(self, marker: StatusMarker) -> None:
        """Atomically replace the marker of marker.job_id."""
        atomic_write_json(self.path(marker.job_id), marker.to_dict())

    def read(self, job_id: int) -> Optional[StatusMarker]:
        """Read the marker for a job, or None if absent or unreadable."""
        return self._read_file(self.path(job_id))

    def scan(self) -> dict[int, StatusMarker]:
        """Read every marker currently visible in the directory."""
        markers: dict[int, StatusMarker] = {}
        for path in self._dir.glob("*.json"):
            if path.name.startswith("."):
                continue
            marker = self._read_file(path)
            if marker is not None:
                markers[marker.job_id] = marker
        return markers

    def remove(self, job_id: int) -> bool:
        """Delete a job's marker. Returns True if one existed."""
        path = self.path(job_id)
        if path.exists():
            path.unlink()
            return True
        return False

    def _read_file(self, path: Path) -> Optional[StatusMarker]:
        try:
            with open(path) as f:
                data = json.load(f)
            return StatusMarker.from_dict(data)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Ignoring unreadable marker {path}: {e}")
            return None


class JobRecordStore:
    """
    The job table plus marker reconciliation.

    The controller is the only writer of the table; it is not safe to
    mutate one store instance from several threads. Workers only ever
    touch markers (see MarkerStore and ``update_status``).
    """

    def __init__(self, table_path: Path | str, markers: MarkerStore):
        self._table_path = Path(table_path)
        self._markers = markers
        self._records: dict[int, JobRecord] = {}
        self._next_id = 1
        if self._table_path.exists():
            self.load()

    @property
    def markers(self) -> MarkerStore:
        return self._markers

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, job_id: int) -> bool:
        return job_id in self._records

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Replace the in-memory table with the on-disk snapshot."""
        with open(self._table_path) as f:
            data = json.load(f)
        self._records = {}
        for row in data.get("jobs", []):
            record = JobRecord.from_dict(row)
            self._records[record.job_id] = record
        self._next_id = max(
            data.get("next_id", 1),
            max(self._records, default=0) + 1,
        )

    def save(self) -> None:
        """Write the table snapshot atomically."""
        atomic_write_json(self._table_path, {
            "next_id": self._next_id,
            "jobs": [self._records[i].to_dict() for i in sorted(self._records)],
        })

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def peek_ids(self, n: int) -> list[int]:
        """Return the ids the next n appended records will receive."""
        return list(range(self._next_id, self._next_id + n))

    def check_records(self, records: Iterable[JobRecord]) -> None:
        """
        Check that records could be added and persisted, without adding them.

        Raises:
            DuplicateKeyError: If an id already exists or repeats within records
            SchemaMismatchError: If a record does not encode as JSON
        """
        seen: set[int] = set()
        for record in records:
            if record.job_id in self._records or record.job_id in seen:
                raise DuplicateKeyError(f"Job id {record.job_id} already exists")
            seen.add(record.job_id)
            try:
                json.dumps(record.to_dict(), sort_keys=True)
            except (TypeError, ValueError) as e:
                raise SchemaMismatchError(
                    f"Job {record.job_id}: parameters must be JSON values: {e}"
                ) from e

    def add_records(self, records: Iterable[JobRecord]) -> list[int]:
        """
        Append records to the table.

        Either all records are added or none.

        Args:
            records: Records with explicit, unused job ids

        Returns:
            The ids of the added records, in input order

        Raises:
            DuplicateKeyError: If an id already exists or repeats within records
            SchemaMismatchError: If a record does not encode as JSON
        """
        records = list(records)
        self.check_records(records)

        for record in records:
            self._records[record.job_id] = record
        if records:
            self._next_id = max(self._next_id, max(r.job_id for r in records) + 1)
        return [r.job_id for r in records]

    def remove_records(self, ids: Iterable[int]) -> list[int]:
        """Delete records and their markers. Returns the removed ids."""
        removed = []
        for job_id in ids:
            if self._records.pop(job_id, None) is not None:
                self._markers.remove(job_id)
                removed.append(job_id)
        return sorted(removed)

    def get(self, job_id: int) -> JobRecord:
        """
        Get a record by id.

        Raises:
            UnknownReferenceError: If no such job exists
        """
        try:
            return self._records[job_id]
        except KeyError:
            raise UnknownReferenceError(f"Unknown job id: {job_id}") from None

    def records(self, ids: Optional[Iterable[int]] = None) -> list[JobRecord]:
        """Return records for ids (all records if None), ordered by id."""
        if ids is None:
            return [self._records[i] for i in sorted(self._records)]
        return [self.get(i) for i in sorted(set(ids))]

    def all_ids(self) -> list[int]:
        return sorted(self._records)

    def query(
        self,
        predicate: Optional[Predicate] = None,
        ids: Optional[Iterable[int]] = None,
    ) -> list[int]:
        """
        Return the sorted ids of records matching predicate.

        Args:
            predicate: Filter on JobRecord (all records match if None)
            ids: Restrict the search to these ids
        """
        return [
            r.job_id for r in self.records(ids)
            if predicate is None or predicate(r)
        ]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def update_status(
        self,
        job_id: int,
        status: JobStatus,
        timestamp=None,
        *,
        job_hash: Optional[str] = None,
        batch_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Move a job forward in its lifecycle.

        Worker statuses (started, done, error) are written as the job's
        marker first and then merged, so the change is durable and visible
        to any other controller. Controller statuses (submitted, expired)
        only change the table; persist them with ``save()``.

        Raises:
            UnknownReferenceError: If the job does not exist
            InvalidTransitionError: If the update would move the job backwards
        """
        record = self.get(job_id)
        timestamp = timestamp or utcnow()

        if status in MARKER_STATUSES:
            marker = StatusMarker(
                job_id=job_id,
                status=status,
                timestamp=timestamp,
                job_hash=job_hash or record.job_hash,
                started_at=record.started_at,
                error=error,
            )
            self._markers.write(marker)
            self._apply_marker(record, marker)
            return

        if status == JobStatus.DEFINED:
            raise InvalidTransitionError(
                f"Job {job_id}: use reset() to return a job to 'defined'"
            )
        allowed_from = {
            JobStatus.SUBMITTED: (JobStatus.DEFINED, JobStatus.EXPIRED),
            JobStatus.EXPIRED: (JobStatus.SUBMITTED, JobStatus.STARTED),
        }[status]
        if record.status not in allowed_from:
            raise InvalidTransitionError(
                f"Job {job_id}: cannot change status from '{record.status.value}' "
                f"to '{status.value}'"
            )

        record.status = status
        record.updated_at = timestamp
        if status == JobStatus.SUBMITTED:
            record.submitted_at = timestamp
            record.started_at = None
            record.done_at = None
            record.error = None
            record.job_hash = job_hash
            record.batch_id = batch_id

    def reset(self, ids: Iterable[int]) -> list[int]:
        """Return jobs to ``defined`` and delete their markers."""
        reset_ids = []
        for record in self.records(ids):
            record.reset()
            self._markers.remove(record.job_id)
            reset_ids.append(record.job_id)
        return reset_ids

    def sync(self) -> list[int]:
        """
        Merge all visible markers into the table.

        Returns:
            Ids of records that changed
        """
        changed = []
        for job_id, marker in sorted(self._markers.scan().items()):
            record = self._records.get(job_id)
            if record is None:
                logger.debug(f"Ignoring marker for unknown job {job_id}")
                continue
            if self._apply_marker(record, marker):
                changed.append(job_id)
        if changed:
            logger.debug(f"Merged {len(changed)} marker(s)")
        return changed

    @staticmethod
    def _apply_marker(record: JobRecord, marker: StatusMarker) -> bool:
        """Apply marker to record if it is current and newer. Returns True if applied."""
        if marker.job_hash != record.job_hash or record.job_hash is None:
            return False

        if marker.status.rank < record.status.rank:
            return False
        if marker.status.rank == record.status.rank and marker.timestamp <= record.updated_at:
            return False

        record.status = marker.status
        record.updated_at = marker.timestamp
        if marker.status == JobStatus.STARTED:
            record.started_at = marker.started_at or marker.timestamp
        else:
            if marker.started_at is not None:
                record.started_at = marker.started_at
            record.done_at = marker.timestamp
            record.error = marker.error if marker.status == JobStatus.ERROR else None
        return True
