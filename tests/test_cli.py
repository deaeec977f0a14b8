"""Tests for the batchgrid CLI."""

import yaml
from click.testing import CliRunner

import jobfns
from batchgrid.builder import build_collections
from batchgrid.experiments import batch_map
from batchgrid.registry import create_registry


def _invoke(root, *args, **kwargs):
    from batchgrid.cli import main

    return CliRunner().invoke(main, ["--root", str(root), *args], **kwargs)


def _failing_registry(tmp_path):
    """Registry with fail_on mapped over 1..3 (job 2 fails)."""
    reg = create_registry(tmp_path / "reg", seed=3)
    batch_map(reg, jobfns.fail_on, x=[1, 2, 3])
    return reg


def test_init_creates_registry(tmp_path):
    root = tmp_path / "reg"
    result = _invoke(root, "init", "--seed", "5", "--serializer", "json")

    assert result.exit_code == 0, result.output
    assert "✓ Created registry" in result.output
    from batchgrid.registry import load_registry

    reg = load_registry(root)
    assert reg.seed == 5
    assert reg.serializer.name == "json"


def test_init_refuses_existing(tmp_path):
    root = tmp_path / "reg"
    _invoke(root, "init", "--seed", "1")
    result = _invoke(root, "init")
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_missing_registry(tmp_path):
    result = _invoke(tmp_path / "nothing", "status")
    assert result.exit_code == 1
    assert "No registry found" in result.output
    assert "batchgrid init" in result.output


def test_registry_from_env(tmp_path):
    from batchgrid.cli import main

    reg = _failing_registry(tmp_path)
    result = CliRunner().invoke(main, ["status"], env={"BATCHGRID_REGISTRY": str(reg.root)})
    assert result.exit_code == 0, result.output
    assert "defined" in result.output


def test_submit_status_and_errors(tmp_path):
    reg = _failing_registry(tmp_path)

    result = _invoke(reg.root, "submit")
    assert result.exit_code == 0, result.output
    assert "✓ Submitted 3 job(s)" in result.output

    result = _invoke(reg.root, "status")
    assert result.exit_code == 0
    assert "done" in result.output
    assert "error" in result.output

    result = _invoke(reg.root, "errors")
    assert "✗ Job 2: ValueError: bad value 2" in result.output
    assert "Traceback" not in result.output

    result = _invoke(reg.root, "errors", "--traceback")
    assert "Traceback" in result.output


def test_submit_selected_ids_with_chunks(tmp_path):
    reg = _failing_registry(tmp_path)
    result = _invoke(reg.root, "submit", "-i", "1", "-i", "3", "--chunk-size", "2")
    assert result.exit_code == 0, result.output

    from batchgrid.registry import load_registry

    records = load_registry(reg.root).store.records()
    assert records[0].job_hash == records[2].job_hash
    assert records[1].job_hash is None


def test_submit_finished_job_fails(tmp_path):
    reg = _failing_registry(tmp_path)
    _invoke(reg.root, "submit", "-i", "1")
    result = _invoke(reg.root, "submit", "-i", "1")
    assert result.exit_code == 1
    assert "reset" in result.output


def test_jobs_listing(tmp_path):
    reg = _failing_registry(tmp_path)
    _invoke(reg.root, "submit", "-i", "2")

    result = _invoke(reg.root, "jobs", "--status", "error")
    assert result.exit_code == 0
    assert "fail_on" in result.output
    assert "error" in result.output

    result = _invoke(reg.root, "jobs", "--status", "done")
    assert "No jobs found" in result.output


def test_jobs_by_tag(tmp_path):
    from batchgrid.experiments import add_job_tags

    reg = _failing_registry(tmp_path)
    add_job_tags(reg, [3], ["slow"])
    result = _invoke(reg.root, "jobs", "--tag", "slow")
    assert "slow" in result.output
    assert "No jobs found" not in result.output


def test_log(tmp_path):
    reg = _failing_registry(tmp_path)
    result = _invoke(reg.root, "log", "1")
    assert result.exit_code == 1
    assert "not been submitted" in result.output

    _invoke(reg.root, "submit", "-i", "1")
    result = _invoke(reg.root, "log", "1")
    assert result.exit_code == 0
    assert "Job 1 done" in result.output


def test_reset(tmp_path):
    reg = _failing_registry(tmp_path)
    _invoke(reg.root, "submit")

    result = _invoke(reg.root, "reset")
    assert result.exit_code == 2
    assert "--ids or --all" in result.output

    result = _invoke(reg.root, "reset", "--ids", "2")
    assert result.exit_code == 0
    assert "✓ Reset 1 job(s)" in result.output

    result = _invoke(reg.root, "reset", "--all")
    assert "✓ Reset 3 job(s)" in result.output


def test_sync_and_kill(tmp_path):
    reg = _failing_registry(tmp_path)
    result = _invoke(reg.root, "sync")
    assert result.exit_code == 0
    assert "✓ 0 job(s) updated" in result.output

    result = _invoke(reg.root, "kill")
    assert result.exit_code == 0
    assert "✓ Sent cancel for 0 job(s)" in result.output


def test_sweep(tmp_path):
    reg = _failing_registry(tmp_path)
    build_collections(reg, [1])
    result = _invoke(reg.root, "sweep")
    assert result.exit_code == 0
    assert "1 collections" in result.output


def test_worker(tmp_path):
    reg = _failing_registry(tmp_path)
    (collection,) = build_collections(reg, [1, 2], chunk_size=2)
    result = _invoke(reg.root, "worker", str(reg.collection_path(collection.job_hash)))
    assert result.exit_code == 0, result.output
    assert "✓ 1 done, 1 error(s)" in result.output


def test_invalid_config(tmp_path, isolated_home):
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text(yaml.dump({"chunk_size": 0}))
    reg = _failing_registry(tmp_path)

    result = _invoke(reg.root, "submit")
    assert result.exit_code == 1
    assert "Config not loaded" in result.output
    assert "chunk_size" in result.output


def test_unknown_backend(tmp_path, isolated_home):
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text(yaml.dump({"backend": "cloud"}))
    reg = _failing_registry(tmp_path)

    result = _invoke(reg.root, "sync")
    assert result.exit_code == 1
    assert "Cannot create backend 'cloud'" in result.output


def test_explicit_config_file(tmp_path):
    config_file = tmp_path / "cfg.yaml"
    config_file.write_text(yaml.dump({"backend": "interactive", "chunk_size": 3}))
    reg = _failing_registry(tmp_path)

    result = _invoke(reg.root, "--config", str(config_file), "config", "show")
    assert result.exit_code == 0, result.output
    assert "chunk_size: 3" in result.output

    result = _invoke(reg.root, "--config", str(tmp_path / "missing.yaml"), "config", "show")
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_config_init(isolated_home):
    from batchgrid.cli import main

    runner = CliRunner()
    result = runner.invoke(main, ["config", "init"])
    assert result.exit_code == 0
    assert "Initialized batchgrid config" in result.output

    cfg = yaml.safe_load((isolated_home / "config.yaml").read_text())
    assert cfg["backend"] == "interactive"
    assert cfg["env_file"] == str(isolated_home / ".env")
    assert (isolated_home / ".env").exists()

    result = runner.invoke(main, ["config", "init"])
    assert result.exit_code == 1
    assert "--force" in result.output

    result = runner.invoke(main, ["config", "init", "--force"])
    assert result.exit_code == 0


def test_config_show_defaults():
    from batchgrid.cli import main

    result = CliRunner().invoke(main, ["config", "show"])
    assert result.exit_code == 0
    assert "backend: interactive" in result.output


def test_wait(tmp_path):
    reg = create_registry(tmp_path / "reg", seed=3)
    batch_map(reg, jobfns.square, x=[1, 2])
    _invoke(reg.root, "submit")

    result = _invoke(reg.root, "wait", "--sleep", "0")
    assert result.exit_code == 0, result.output
    assert "All jobs done" in result.output


def test_wait_with_failures(tmp_path):
    reg = _failing_registry(tmp_path)
    _invoke(reg.root, "submit")

    result = _invoke(reg.root, "wait", "--sleep", "0", "--stop-on-error")
    assert result.exit_code == 1
    assert "unfinished or failed" in result.output
