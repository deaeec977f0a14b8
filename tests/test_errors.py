"""Tests for batchgrid error classes.

Tests cover:
- Error hierarchy
- Extra attributes carried by submission, result and execution errors
"""

import pytest

from batchgrid.errors import (
    BatchgridError,
    ConfigError,
    DuplicateKeyError,
    IncompleteResultsError,
    InvalidTransitionError,
    JobExecutionError,
    MissingDependencyError,
    SchemaMismatchError,
    SubmissionRejectedError,
    UnknownReferenceError,
    VanishedSubmissionError,
)


class TestBatchgridError:
    """Tests for base BatchgridError."""

    def test_is_exception(self):
        """BatchgridError should be an Exception."""
        assert issubclass(BatchgridError, Exception)

    def test_has_message(self):
        """BatchgridError should have a message."""
        assert str(BatchgridError("my message")) == "my message"

    @pytest.mark.parametrize("error_cls", [
        ConfigError,
        DuplicateKeyError,
        UnknownReferenceError,
        SchemaMismatchError,
        MissingDependencyError,
        InvalidTransitionError,
    ])
    def test_definitional_errors_are_batchgrid_errors(self, error_cls):
        """All simple errors can be caught as BatchgridError."""
        with pytest.raises(BatchgridError):
            raise error_cls("boom")


class TestSubmissionRejectedError:
    """Tests for SubmissionRejectedError."""

    def test_carries_sorted_job_ids(self):
        error = SubmissionRejectedError("queue full", [3, 1, 2])
        assert error.job_ids == [1, 2, 3]
        assert str(error) == "queue full"

    def test_job_ids_default_empty(self):
        assert SubmissionRejectedError("queue full").job_ids == []


class TestIncompleteResultsError:
    """Tests for IncompleteResultsError."""

    def test_names_missing_ids(self):
        error = IncompleteResultsError([5, 2])
        assert error.missing_ids == [2, 5]
        assert "2, 5" in str(error)

    def test_truncates_long_lists(self):
        error = IncompleteResultsError(range(1, 31))
        assert len(error.missing_ids) == 30
        assert str(error).endswith("...")
        assert "30 job(s)" in str(error)


class TestJobExecutionError:
    """Tests for JobExecutionError."""

    def test_attributes(self):
        error = JobExecutionError(4, "ValueError: nope", "Traceback ...")
        assert error.job_id == 4
        assert error.message == "ValueError: nope"
        assert error.traceback == "Traceback ..."
        assert "Job 4 failed" in str(error)

    def test_is_batchgrid_error(self):
        assert isinstance(JobExecutionError(1, "x"), BatchgridError)


class TestVanishedSubmissionError:
    """Tests for VanishedSubmissionError."""

    def test_attributes(self):
        error = VanishedSubmissionError("1234", [9, 8])
        assert error.batch_id == "1234"
        assert error.job_ids == [8, 9]
        assert "1234" in str(error)
        assert "2 unfinished" in str(error)
