"""
CLI interface for batchgrid.

Operates on one registry, given with --root (or $BATCHGRID_REGISTRY, or the
current directory). Backend and submission defaults come from
``$BATCHGRID_HOME/config.yaml`` (see ``batchgrid config init``).

Problems, algorithms and experiments are defined from Python; the CLI
covers the operational side: submitting, syncing, inspecting and cleaning up.
"""

import sys
from pathlib import Path

import click
from rich.table import Table

from batchgrid import __version__
from batchgrid.utils import console


def _ids(ids: tuple[int, ...]) -> list[int] | None:
    return list(ids) if ids else None


def _config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _registry(ctx):
    from batchgrid.registry import load_registry

    root = ctx.obj["root"]
    try:
        return load_registry(root)
    except FileNotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        click.echo("Run 'batchgrid init' to create a registry.", err=True)
        raise SystemExit(1)


def _backend(ctx):
    from batchgrid.backends import create_backend

    config = _config(ctx)
    try:
        return create_backend(config)
    except (KeyError, TypeError, ValueError) as e:
        click.echo(f"✗ Cannot create backend '{config.backend}': {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(version=__version__, prog_name="batchgrid")
@click.option(
    "--root",
    envvar="BATCHGRID_REGISTRY",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Registry root directory",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Config file (default: $BATCHGRID_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, root: str, config_path: str | None):
    """
    batchgrid - Batch experiment registry.

    Submit, track and collect jobs defined in a registry.
    """
    from batchgrid.config import default_config, load_config
    from batchgrid.errors import ConfigError
    from batchgrid.utils import setup_logging

    ctx.ensure_object(dict)
    ctx.obj["root"] = Path(root)
    try:
        config = load_config(Path(config_path) if config_path else None)
    except FileNotFoundError:
        if config_path:
            ctx.obj["config_error"] = f"Config file not found: {config_path}"
            return
        config = default_config()
    except ConfigError as e:
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level=config.log_level,
        log_format=config.log_format,
    )


@main.command("init")
@click.option("--seed", type=int, default=None, help="Base seed (default: from config, else random)")
@click.option("--serializer", type=click.Choice(["pickle", "json"]), default=None,
              help="Payload serializer (default: from config)")
@click.option("--work-dir", type=click.Path(file_okay=False), default=None,
              help="Working directory for workers")
@click.option("--package", "packages", multiple=True, help="Module workers import first (repeatable)")
@click.pass_context
def init(ctx, seed, serializer, work_dir, packages):
    """Create a new registry at --root."""
    from batchgrid.registry import create_registry

    config = _config(ctx)
    try:
        reg = create_registry(
            ctx.obj["root"],
            seed=seed if seed is not None else config.seed,
            serializer=serializer or config.serializer,
            work_dir=work_dir,
            packages=packages,
        )
    except FileExistsError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Created registry at {reg.root} (seed={reg.seed})")


@main.command("status")
@click.option("--ids", "-i", multiple=True, type=int, help="Restrict to job ids")
@click.pass_context
def status(ctx, ids):
    """Show job counts per status."""
    from batchgrid.query import get_status

    reg = _registry(ctx)
    counts = get_status(reg, _ids(ids))
    total = counts.pop("total")

    table = Table(title=f"Registry {reg.root}")
    table.add_column("Status")
    table.add_column("Jobs", justify="right")
    table.add_column("%", justify="right")
    for name, n in counts.items():
        share = f"{100 * n / total:.1f}" if total else "-"
        table.add_row(name, str(n), share)
    table.add_row("total", str(total), "")
    console.print(table)


@main.command("sync")
@click.pass_context
def sync(ctx):
    """Merge worker markers and expire vanished submissions."""
    from batchgrid.controller import sync_registry

    reg = _registry(ctx)
    changed = sync_registry(reg, _backend(ctx))
    click.echo(f"✓ {len(changed)} job(s) updated")


@main.command("submit")
@click.option("--ids", "-i", multiple=True, type=int, help="Job ids (default: all defined and expired)")
@click.option("--chunk-size", type=int, default=None, help="Jobs per collection (default: from config)")
@click.option("--attempts", type=int, default=None, help="Submission attempts (default: from config)")
@click.pass_context
def submit(ctx, ids, chunk_size, attempts):
    """Submit jobs to the configured backend."""
    from batchgrid.controller import submit_jobs
    from batchgrid.errors import BatchgridError

    config = _config(ctx)
    reg = _registry(ctx)
    try:
        submitted = submit_jobs(
            reg,
            _backend(ctx),
            ids=_ids(ids),
            chunk_size=chunk_size or config.chunk_size,
            attempts=attempts or config.submit_attempts,
            backoff_seconds=config.submit_backoff_seconds,
        )
    except BatchgridError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo(f"✓ Submitted {len(submitted)} job(s)")


@main.command("wait")
@click.option("--ids", "-i", multiple=True, type=int, help="Job ids (default: all jobs)")
@click.option("--sleep", type=float, default=10.0, show_default=True, help="Seconds between syncs")
@click.option("--timeout", type=float, default=None, help="Give up after this many seconds")
@click.option("--stop-on-error", is_flag=True, help="Return as soon as one job failed")
@click.pass_context
def wait(ctx, ids, sleep, timeout, stop_on_error):
    """Sync until the jobs are finished."""
    import time

    from batchgrid.controller import wait_for_jobs
    from batchgrid.utils import format_duration, print_error, print_success

    reg = _registry(ctx)
    start = time.monotonic()
    ok = wait_for_jobs(
        reg, _backend(ctx), _ids(ids),
        sleep=sleep, timeout=timeout, stop_on_error=stop_on_error,
    )
    elapsed = format_duration(time.monotonic() - start)
    if ok:
        print_success(f"All jobs done after {elapsed}")
        return
    print_error(f"Jobs unfinished or failed after {elapsed}; see 'batchgrid status'")
    raise SystemExit(1)


@main.command("kill")
@click.option("--ids", "-i", multiple=True, type=int, help="Job ids (default: all pending)")
@click.pass_context
def kill(ctx, ids):
    """Cancel pending jobs (best effort)."""
    from batchgrid.controller import kill_jobs

    reg = _registry(ctx)
    killed = kill_jobs(reg, _backend(ctx), _ids(ids))
    click.echo(f"✓ Sent cancel for {len(killed)} job(s)")


@main.command("reset")
@click.option("--ids", "-i", multiple=True, type=int, help="Job ids to reset")
@click.option("--all", "reset_all", is_flag=True, help="Reset every job")
@click.pass_context
def reset(ctx, ids, reset_all):
    """Return jobs to 'defined', deleting markers and results."""
    from batchgrid.controller import reset_jobs

    if not ids and not reset_all:
        raise click.UsageError("Pass --ids or --all")
    reg = _registry(ctx)
    done = reset_jobs(reg, None if reset_all else list(ids))
    click.echo(f"✓ Reset {len(done)} job(s)")


@main.command("jobs")
@click.option("--status", "status_filter", default=None,
              type=click.Choice(["defined", "submitted", "started", "expired", "done", "error"]),
              help="Only jobs in this status")
@click.option("--tag", "tags", multiple=True, help="Only jobs with one of these tags")
@click.pass_context
def jobs(ctx, status_filter, tags):
    """List jobs."""
    from batchgrid.query import find_tagged, get_job_table

    reg = _registry(ctx)
    ids = find_tagged(reg, tags) if tags else None
    rows = get_job_table(reg, ids)
    if status_filter:
        rows = [r for r in rows if r["status"] == status_filter]

    if not rows:
        click.echo("No jobs found")
        return

    table = Table()
    for column in ("ID", "Status", "Problem", "Algorithm", "Repl", "Tags"):
        table.add_column(column)
    for row in rows:
        table.add_row(
            str(row["job_id"]),
            row["status"],
            row["problem"] or row["function"] or "",
            row["algorithm"] or "",
            "" if row["repl"] is None else str(row["repl"]),
            ",".join(row["tags"]),
        )
    console.print(table)


@main.command("errors")
@click.option("--traceback", "show_traceback", is_flag=True, help="Show worker tracebacks")
@click.pass_context
def errors(ctx, show_traceback):
    """Show error messages of failed jobs."""
    from batchgrid.query import get_error_messages, get_traceback

    reg = _registry(ctx)
    messages = get_error_messages(reg)
    if not messages:
        click.echo("No failed jobs")
        return
    for job_id, message in messages.items():
        click.echo(f"✗ Job {job_id}: {message}")
        if show_traceback:
            trace = get_traceback(reg, job_id)
            if trace:
                click.echo(trace)


@main.command("log")
@click.argument("job_id", type=int)
@click.pass_context
def log(ctx, job_id):
    """Print the log of the collection that ran JOB_ID."""
    from batchgrid.controller import get_log
    from batchgrid.errors import BatchgridError

    reg = _registry(ctx)
    try:
        click.echo(get_log(reg, job_id), nl=False)
    except (BatchgridError, FileNotFoundError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


@main.command("sweep")
@click.pass_context
def sweep(ctx):
    """Delete collections, logs, markers and results no job needs."""
    from batchgrid.controller import sweep_registry

    reg = _registry(ctx)
    removed = sweep_registry(reg)
    summary = ", ".join(f"{n} {kind}" for kind, n in removed.items())
    click.echo(f"✓ Removed {summary}")


@main.command("worker")
@click.argument("collection", type=click.Path(exists=True, dir_okay=False))
def worker(collection):
    """Run the job collection file COLLECTION in this process."""
    from batchgrid.driver import run_collection_file

    report = run_collection_file(collection)
    click.echo(f"✓ {len(report.done)} done, {len(report.errors)} error(s)")


@main.group("config")
def config_group():
    """Manage the batchgrid configuration file."""
    pass


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def config_init(force: bool):
    """Write a default config.yaml to $BATCHGRID_HOME."""
    import yaml

    from batchgrid.config import default_config, get_batchgrid_home

    home = get_batchgrid_home()
    home.mkdir(parents=True, exist_ok=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg = default_config().to_dict()
    cfg["env_file"] = str(home / ".env")
    cfg_path.write_text(yaml.safe_dump(cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# BATCHGRID_REGISTRY=...\n")

    click.echo(f"Initialized batchgrid config at {cfg_path}")


@config_group.command("show")
@click.pass_context
def config_show(ctx):
    """Print the effective configuration."""
    import yaml

    config = _config(ctx)
    click.echo(yaml.safe_dump(config.to_dict(), sort_keys=False), nl=False)


if __name__ == "__main__":
    sys.exit(main())
