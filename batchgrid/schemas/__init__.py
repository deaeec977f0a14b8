"""
batchgrid.schemas - Data structures shared by the controller and workers.

JobRecord -> JobCollection (CollectionJob) -> StatusMarker

Lifecycle:
1. JobRecord: A row of the job table, created in status ``defined``
2. JobCollection: Immutable bundle of jobs with resolved definitions,
   written once per submission and consumed by exactly one worker
3. StatusMarker: Per-job status file written by the worker, merged into
   the job table by ``sync``
"""

from .job_record import JobRecord, JobStatus
from .marker import StatusMarker
from .definitions import AlgorithmDef, FunctionDef, ProblemDef
from .collection import CollectionJob, JobCollection

__all__ = [
    # Job table
    "JobRecord",
    "JobStatus",
    # Markers
    "StatusMarker",
    # Definitions
    "ProblemDef",
    "AlgorithmDef",
    "FunctionDef",
    # Collections
    "CollectionJob",
    "JobCollection",
]
