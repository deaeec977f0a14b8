"""
StatusMarker schema - the worker-to-controller status channel.

Workers never touch the job table. Each job owns exactly one marker file
(``markers/<job_id>.json``), replaced atomically as the job progresses.
The controller merges markers into the table on ``sync``.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from .job_record import JobStatus


@dataclass(frozen=True)
class StatusMarker:
    """
    A status update written by a worker.

    Attributes:
        job_id: Job the marker belongs to
        status: started, done or error
        timestamp: When the marker was written (last write wins)
        job_hash: Collection the worker executed; stale markers carry an old hash
        started_at: When the worker started the job
        error: Error message for status error
        traceback: Formatted traceback for status error
    """
    job_id: int
    status: JobStatus
    timestamp: datetime
    job_hash: Optional[str] = None
    started_at: Optional[datetime] = None
    error: Optional[str] = None
    traceback: Optional[str] = None

    def __post_init__(self):
        if self.status not in (JobStatus.STARTED, JobStatus.DONE, JobStatus.ERROR):
            raise ValueError(f"Markers cannot carry status '{self.status.value}'")
        if self.status == JobStatus.ERROR and not self.error:
            raise ValueError("Error markers must carry an error message")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.job_hash is not None:
            result["job_hash"] = self.job_hash
        if self.started_at is not None:
            result["started_at"] = self.started_at.isoformat()
        if self.error is not None:
            result["error"] = self.error
        if self.traceback is not None:
            result["traceback"] = self.traceback
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusMarker":
        """Deserialize from dictionary."""
        return cls(
            job_id=int(data["job_id"]),
            status=JobStatus(data["status"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            job_hash=data.get("job_hash"),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            error=data.get("error"),
            traceback=data.get("traceback"),
        )
