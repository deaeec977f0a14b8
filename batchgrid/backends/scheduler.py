"""
Batch scheduler backend - Slurm, SGE or any scheduler driven by a job script.

For every collection a job script is rendered from a ``string.Template``
and written next to the collection (``collections/<hash>.sh``). The
template sees:

    ${job_name}   the collection hash
    ${log_file}   file receiving worker stdout/stderr
    ${resources}  directive lines built from the resources mapping
    ${command}    the driver command line
    ${work_dir}   working directory for the worker
    ${n_jobs}     number of jobs in the collection

and any extra variables passed as ``template_vars``. Presets provide the
commands for Slurm (sbatch/squeue/scancel) and SGE (qsub/qstat/qdel).
"""

import getpass
import logging
import re
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from string import Template
from typing import Any, Callable, Optional

from batchgrid.errors import SubmissionRejectedError
from batchgrid.schemas import JobCollection

from .base import (
    BackendHooks,
    BackendStatus,
    ClusterBackend,
    output_path,
    run_command,
    worker_command,
)

logger = logging.getLogger(__name__)


def _parse_slurm_listing(stdout: str) -> dict[str, str]:
    states = {}
    for line in stdout.splitlines():
        fields = line.split()
        if len(fields) >= 2:
            states[fields[0]] = fields[1]
    return states


def _parse_sge_listing(stdout: str) -> dict[str, str]:
    # qstat prints two header lines; data lines start with the numeric job id
    states = {}
    for line in stdout.splitlines():
        fields = line.split()
        if len(fields) >= 5 and fields[0].isdigit():
            states[fields[0]] = fields[4]
    return states


@dataclass(frozen=True)
class SchedulerCommands:
    """Command set and output conventions of one scheduler."""
    name: str
    submit: tuple[str, ...]
    submit_id_pattern: str
    listing: tuple[str, ...]
    parse_listing: Callable[[str], dict[str, str]]
    cancel: tuple[str, ...]
    directive: str
    state_map: dict[str, BackendStatus] = field(default_factory=dict)
    template: str = ""

    def map_state(self, state: str) -> BackendStatus:
        return self.state_map.get(state, BackendStatus.RUNNING)


SLURM_TEMPLATE = """#!/bin/bash
#SBATCH --job-name=${job_name}
#SBATCH --output=${log_file}
#SBATCH --error=${log_file}
${resources}
cd ${work_dir}
${command}
"""

SGE_TEMPLATE = """#!/bin/bash
#$$ -N ${job_name}
#$$ -o ${log_file}
#$$ -j y
#$$ -S /bin/bash
${resources}
cd ${work_dir}
${command}
"""

SLURM = SchedulerCommands(
    name="slurm",
    submit=("sbatch", "--parsable"),
    submit_id_pattern=r"^(\d+)",
    listing=("squeue", "-h", "-u", "${user}", "-o", "%i %T"),
    parse_listing=_parse_slurm_listing,
    cancel=("scancel",),
    directive="#SBATCH --{key}={value}",
    state_map={
        "PENDING": BackendStatus.QUEUED,
        "CONFIGURING": BackendStatus.QUEUED,
        "REQUEUED": BackendStatus.QUEUED,
        "SUSPENDED": BackendStatus.QUEUED,
        "RUNNING": BackendStatus.RUNNING,
        "COMPLETING": BackendStatus.RUNNING,
        "COMPLETED": BackendStatus.DONE,
        "FAILED": BackendStatus.FAILED,
        "CANCELLED": BackendStatus.FAILED,
        "TIMEOUT": BackendStatus.FAILED,
        "NODE_FAIL": BackendStatus.FAILED,
        "OUT_OF_MEMORY": BackendStatus.FAILED,
        "PREEMPTED": BackendStatus.FAILED,
    },
    template=SLURM_TEMPLATE,
)

SGE = SchedulerCommands(
    name="sge",
    submit=("qsub",),
    submit_id_pattern=r"Your job (\d+)",
    listing=("qstat", "-u", "${user}"),
    parse_listing=_parse_sge_listing,
    cancel=("qdel",),
    directive="#$ -l {key}={value}",
    state_map={
        "qw": BackendStatus.QUEUED,
        "hqw": BackendStatus.QUEUED,
        "t": BackendStatus.RUNNING,
        "r": BackendStatus.RUNNING,
        "Rr": BackendStatus.RUNNING,
        "s": BackendStatus.QUEUED,
        "Eqw": BackendStatus.FAILED,
        "dr": BackendStatus.FAILED,
    },
    template=SGE_TEMPLATE,
)

PRESETS = {preset.name: preset for preset in (SLURM, SGE)}


class SchedulerBackend(ClusterBackend):
    """
    Submit collections as job scripts to a batch scheduler.

    Usage:
        backend = SchedulerBackend("slurm", resources={"time": "01:00:00"})
        backend = SchedulerBackend("sge", template="my_template.sh")
    """

    name = "scheduler"

    def __init__(
        self,
        scheduler: str | SchedulerCommands = "slurm",
        template: Optional[str | Path] = None,
        resources: Optional[dict[str, Any]] = None,
        template_vars: Optional[dict[str, Any]] = None,
        python: Optional[str] = None,
        user: Optional[str] = None,
        timeout: float = 60.0,
        hooks: Optional[BackendHooks] = None,
    ):
        super().__init__(hooks)
        if isinstance(scheduler, str):
            if scheduler not in PRESETS:
                raise ValueError(
                    f"Unknown scheduler: {scheduler}. Available: {sorted(PRESETS)}"
                )
            scheduler = PRESETS[scheduler]
        if template is not None:
            scheduler = replace(scheduler, template=_read_template(template))
        self.commands = scheduler
        self.resources = dict(resources or {})
        self.template_vars = dict(template_vars or {})
        self.python = python
        self.user = user or getpass.getuser()
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"SchedulerBackend(scheduler={self.commands.name})"

    def render_resources(self, resources: dict[str, Any]) -> str:
        return "\n".join(
            self.commands.directive.format(key=key, value=value)
            for key, value in resources.items()
        )

    def render_script(self, reg, collection: JobCollection, resources: Optional[dict[str, Any]] = None) -> str:
        """
        Render the job script for a collection.

        Raises:
            KeyError: If the template uses a variable that is not provided
        """
        merged = {**self.resources, **(resources or {})}
        command = " ".join(shlex.quote(part) for part in worker_command(
            reg.collection_path(collection.job_hash), self.python
        ))
        variables = {
            **self.template_vars,
            "job_name": collection.job_hash,
            "log_file": str(output_path(reg, collection.job_hash)),
            "resources": self.render_resources(merged),
            "command": command,
            "work_dir": shlex.quote(collection.work_dir or str(reg.root)),
            "n_jobs": len(collection),
        }
        return Template(self.commands.template).substitute(variables)

    def submit(self, reg, collection: JobCollection, resources: Optional[dict[str, Any]] = None) -> str:
        script = self.render_script(reg, collection, resources)
        script_path = reg.collection_path(collection.job_hash).with_suffix(".sh")
        script_path.write_text(script)
        output_path(reg, collection.job_hash).parent.mkdir(parents=True, exist_ok=True)

        result = run_command([*self.commands.submit, str(script_path)], timeout=self.timeout)
        if not result.ok:
            raise SubmissionRejectedError(
                f"{self.commands.submit[0]} failed (exit {result.exit_code}): {result.stderr.strip()}",
                collection.job_ids,
            )
        match = re.search(self.commands.submit_id_pattern, result.stdout, re.MULTILINE)
        if match is None:
            raise SubmissionRejectedError(
                f"Could not parse job id from {self.commands.submit[0]} output: "
                f"{result.stdout.strip()!r}",
                collection.job_ids,
            )
        return match.group(1)

    def _listing(self) -> Optional[dict[str, str]]:
        cmd = [Template(part).substitute(user=self.user) for part in self.commands.listing]
        result = run_command(cmd, timeout=self.timeout)
        if not result.ok:
            logger.warning(f"{cmd[0]} failed (exit {result.exit_code}): {result.stderr.strip()}")
            return None
        return self.commands.parse_listing(result.stdout)

    def query_status(self, batch_id: str) -> BackendStatus:
        states = self._listing()
        if states is None:
            # scheduler unreachable; do not expire anything on this round
            return BackendStatus.RUNNING
        if batch_id not in states:
            return BackendStatus.DONE
        return self.commands.map_state(states[batch_id])

    def cancel(self, batch_id: str) -> None:
        result = run_command([*self.commands.cancel, batch_id], timeout=self.timeout)
        if not result.ok:
            logger.debug(f"{self.commands.cancel[0]} {batch_id}: {result.stderr.strip()}")

    def list_running(self) -> list[str]:
        states = self._listing() or {}
        return [
            batch_id for batch_id, state in states.items()
            if self.commands.map_state(state).is_active
        ]


def _read_template(template: str | Path) -> str:
    """A template is either the script text itself or a path to it."""
    if isinstance(template, Path) or "\n" not in template:
        return Path(template).read_text()
    return template
