"""
Error classes for batchgrid.

Errors fall into three groups, matching where they surface:

- Definitional errors (DuplicateKeyError, UnknownReferenceError,
  SchemaMismatchError): raised immediately by the registry and abort the
  whole registration. Nothing is partially applied.
- Submission errors (SubmissionRejectedError, InvalidTransitionError):
  raised by the controller. Affected jobs keep their previous status.
- Execution errors (JobExecutionError): captured per job by the driver and
  recorded durably as an error marker. They never propagate to the
  controller or to sibling jobs; they surface when the job is inspected.

VanishedSubmissionError is raised while reconciling backend state and is
recovered by the controller by marking the affected jobs expired.
"""

from typing import Iterable, Optional


class BatchgridError(Exception):
    """Base exception for batchgrid."""
    pass


class ConfigError(BatchgridError):
    """Configuration validation error."""
    pass


class DuplicateKeyError(BatchgridError):
    """An explicit key (job id, problem or algorithm name) already exists."""
    pass


class UnknownReferenceError(BatchgridError):
    """A design or lookup names a problem, algorithm or job that does not exist."""
    pass


class SchemaMismatchError(BatchgridError):
    """Parameter names do not match the declared parameters of the target function."""
    pass


class MissingDependencyError(BatchgridError):
    """A job references a problem or algorithm removed after the job was created."""
    pass


class SubmissionRejectedError(BatchgridError):
    """
    The execution substrate refused a job collection.

    Jobs in the rejected collection stay in their previous status
    (``defined`` or ``expired``), so resubmission is always safe.
    """

    def __init__(self, message: str, job_ids: Optional[Iterable[int]] = None):
        self.job_ids = sorted(job_ids) if job_ids is not None else []
        super().__init__(message)


class InvalidTransitionError(BatchgridError):
    """A status change would move a job backwards without an explicit reset."""
    pass


class IncompleteResultsError(BatchgridError):
    """Results were required for every job but some are missing."""

    def __init__(self, missing_ids: Iterable[int]):
        self.missing_ids = sorted(missing_ids)
        shown = ", ".join(str(i) for i in self.missing_ids[:20])
        if len(self.missing_ids) > 20:
            shown += ", ..."
        super().__init__(
            f"Results missing for {len(self.missing_ids)} job(s): {shown}"
        )


class JobExecutionError(BatchgridError):
    """
    A user function failed while executing a job.

    Attributes:
        job_id: The failing job
        message: The failure message ("<ExceptionType>: <text>")
        traceback: Formatted traceback text captured on the worker
    """

    def __init__(self, job_id: int, message: str, traceback: Optional[str] = None):
        self.job_id = job_id
        self.message = message
        self.traceback = traceback
        super().__init__(f"Job {job_id} failed: {message}")


class VanishedSubmissionError(BatchgridError):
    """
    The backend no longer knows a submission whose jobs never finished.

    Recovered by the controller: the listed jobs are marked ``expired`` and
    become eligible for resubmission.
    """

    def __init__(self, batch_id: str, job_ids: Iterable[int]):
        self.batch_id = batch_id
        self.job_ids = sorted(job_ids)
        super().__init__(
            f"Submission '{batch_id}' vanished with {len(self.job_ids)} unfinished job(s)"
        )
