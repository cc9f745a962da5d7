"""Test fixtures and configuration helpers."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]

# Keep ``db_snapshot_toolkit`` and ``tests.helpers`` importable without an install.
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db_snapshot_toolkit.clone.context import (  # noqa: E402
    ENV_OVERRIDES,
    CloneConfig,
    CloneContext,
    build_config,
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer shells from leaking Oracle or override variables into tests."""

    for name in (*ENV_OVERRIDES, "ORACLE_HOME", "ORACLE_SID", "GRID_HOME"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_config(tmp_path: Path):
    """Build a validated :class:`CloneConfig` with test-friendly defaults."""

    def _make(**overrides) -> CloneConfig:
        values = {
            "source_sid": "PROD",
            "target_sid": "COPY",
            "snapshot_command": "snapctl take --volume prod",
            "source_home": "/u01/app/oracle/product/19c",
            "oracle_home": "/u01/app/oracle/product/19c",
            "grid_home": "/u01/app/grid",
            "dest": "+COPY_DATA",
            "bundle": str(tmp_path / "db-snapshot.tar.gz"),
        }
        values.update(overrides)
        return build_config(values)

    return _make


@pytest.fixture
def make_context(tmp_path: Path, make_config):
    def _make(**overrides) -> CloneContext:
        workdir = tmp_path / "work"
        workdir.mkdir(exist_ok=True)
        return CloneContext(config=make_config(**overrides), workdir=workdir)

    return _make
