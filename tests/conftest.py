import logging

import pytest

from batchgrid.config import BatchgridConfig
from batchgrid.registry import create_registry


@pytest.fixture
def test_config():
    return BatchgridConfig(
        backend="interactive",
        chunk_size=1,
        serializer="pickle",
        seed=42,
        submit_attempts=1,
        submit_backoff_seconds=0,
        log_level="DEBUG",
    )


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Never read the user's ~/.config/batchgrid."""
    home = tmp_path / "batchgrid_home"
    monkeypatch.setenv("BATCHGRID_HOME", str(home))
    monkeypatch.delenv("BATCHGRID_REGISTRY", raising=False)
    return home


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("batchgrid")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def reg(tmp_path):
    """A fresh pickle registry with a fixed seed."""
    return create_registry(tmp_path / "registry", seed=42)


@pytest.fixture
def json_reg(tmp_path):
    """A fresh registry storing data and results as JSON."""
    return create_registry(tmp_path / "json_registry", seed=7, serializer="json")
