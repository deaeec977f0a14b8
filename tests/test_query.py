"""Tests for finders and status views."""

import pytest

import jobfns
from batchgrid.backends import InteractiveBackend
from batchgrid.controller import submit_jobs, sync_registry
from batchgrid.experiments import add_algorithm, add_experiments, add_job_tags, add_problem, batch_map
from batchgrid.query import (
    find_defined,
    find_done,
    find_errors,
    find_experiments,
    find_expired,
    find_jobs,
    find_not_done,
    find_not_submitted,
    find_pending,
    find_running,
    find_started,
    find_submitted,
    find_tagged,
    get_error_messages,
    get_job_pars,
    get_job_table,
    get_status,
    get_traceback,
)
from batchgrid.schemas import JobStatus, StatusMarker
from batchgrid.utils import utcnow


@pytest.fixture
def grid(reg):
    """Jobs 1-2: algorithm a, ratio 0.5/0.9; jobs 3-4: algorithm b (factor 2), ratio 0.5/0.9."""
    add_problem(reg, "p", data=list(range(10)), fn=jobfns.subsample)
    add_algorithm(reg, "a", fn=jobfns.identity)
    add_algorithm(reg, "b", fn=jobfns.scaled)
    add_experiments(reg, {"p": [{"ratio": 0.5}, {"ratio": 0.9}]}, {"a": None, "b": [{"factor": 2}]})
    return reg


@pytest.fixture
def mixed(reg):
    """Job 1 done, job 2 error, job 3 submitted, job 4 started, job 5 expired, job 6 defined."""
    batch_map(reg, jobfns.fail_on, x=[1, 2, 3, 4, 5, 6])
    submit_jobs(reg, InteractiveBackend(), ids=[1, 2])
    queued = InteractiveBackend(run_immediately=False)
    submit_jobs(reg, queued, ids=[3, 4, 5])
    sync_registry(reg)

    record = reg.store.get(4)
    reg.markers.write(StatusMarker(
        job_id=4, status=JobStatus.STARTED, timestamp=utcnow(), job_hash=record.job_hash,
    ))
    queued.forget(reg.store.get(5).batch_id)
    sync_registry(reg, queued)
    return reg


class TestFindJobs:
    """Tests for parameter and predicate finders."""

    def test_by_parameter(self, grid):
        assert find_jobs(grid, ratio=0.5) == [1, 3]
        assert find_jobs(grid, factor=2) == [3, 4]
        assert find_jobs(grid, ratio=0.9, factor=2) == [4]

    def test_by_predicate(self, grid):
        assert find_jobs(grid, lambda r: r.algorithm == "a") == [1, 2]

    def test_restricted_to_ids(self, grid):
        assert find_jobs(grid, ids=[2, 3], ratio=0.5) == [3]

    def test_batch_map_pars(self, reg):
        batch_map(reg, jobfns.add, x=[1, 2], y=[3, 3])
        assert find_jobs(reg, y=3) == [1, 2]
        assert find_jobs(reg, x=2) == [2]

    def test_no_match(self, grid):
        assert find_jobs(grid, ratio=0.1) == []
        assert find_jobs(grid, unknown=1) == []


class TestFindExperiments:
    """Tests for find_experiments."""

    def test_by_problem_and_algorithm(self, grid):
        assert find_experiments(grid, problem="p") == [1, 2, 3, 4]
        assert find_experiments(grid, algorithm="b") == [3, 4]

    def test_by_pars(self, grid):
        assert find_experiments(grid, prob_pars={"ratio": 0.9}, algo_pars={"factor": 2}) == [4]

    def test_by_replication(self, grid):
        add_experiments(grid, {"p": [{"ratio": 0.5}]}, {"a": None}, replications=2)
        assert find_experiments(grid, repls=[2]) == [5]

    def test_excludes_batch_map_jobs(self, grid):
        batch_map(grid, jobfns.square, x=[1])
        assert find_experiments(grid) == [1, 2, 3, 4]


class TestStatusFinders:
    """Tests for the status finders."""

    def test_each_status(self, mixed):
        assert find_done(mixed) == [1]
        assert find_errors(mixed) == [2]
        assert find_running(mixed) == [4]
        assert find_expired(mixed) == [5]
        assert find_defined(mixed) == [6]

    def test_groups(self, mixed):
        assert find_submitted(mixed) == [1, 2, 3, 4]
        assert find_started(mixed) == [1, 2, 4]
        assert find_pending(mixed) == [3, 4]
        assert find_not_submitted(mixed) == [5, 6]
        assert find_not_done(mixed) == [2, 3, 4, 5, 6]

    def test_restricted_to_ids(self, mixed):
        assert find_not_done(mixed, ids=[1, 2]) == [2]

    def test_tagged(self, mixed):
        add_job_tags(mixed, [1, 3], ["slow"])
        add_job_tags(mixed, [6], ["big"])
        assert find_tagged(mixed, ["slow"]) == [1, 3]
        assert find_tagged(mixed, ["slow", "big"]) == [1, 3, 6]
        assert find_tagged(mixed, ["none"]) == []


class TestViews:
    """Tests for status summaries and job tables."""

    def test_get_status(self, mixed):
        assert get_status(mixed) == {
            "defined": 1,
            "submitted": 1,
            "started": 1,
            "expired": 1,
            "done": 1,
            "error": 1,
            "total": 6,
        }

    def test_get_status_subset(self, mixed):
        status = get_status(mixed, ids=[1, 2])
        assert status["total"] == 2
        assert status["done"] == 1

    def test_job_table(self, mixed):
        rows = get_job_table(mixed)
        assert [row["status"] for row in rows] == [
            "done", "error", "submitted", "started", "expired", "defined",
        ]
        assert rows[0]["function"] == "fail_on"
        assert rows[0]["done_at"] is not None
        assert rows[1]["error"] == "ValueError: bad value 2"
        assert rows[5]["job_hash"] is None

    def test_job_pars(self, grid):
        rows = get_job_pars(grid, ids=[3])
        assert rows == [{
            "job_id": 3, "problem": "p", "algorithm": "b", "repl": 1, "ratio": 0.5, "factor": 2,
        }]

    def test_job_pars_batch_map(self, reg):
        batch_map(reg, jobfns.add, x=[1], y=[2])
        assert get_job_pars(reg) == [{"job_id": 1, "x": 1, "y": 2}]

    def test_error_messages(self, mixed):
        assert get_error_messages(mixed) == {2: "ValueError: bad value 2"}

    def test_traceback(self, mixed):
        assert "ValueError" in get_traceback(mixed, 2)
        assert get_traceback(mixed, 1) is None
        assert get_traceback(mixed, 6) is None
