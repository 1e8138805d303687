"""Shared fixtures for the memory_mesh test suite.

- Every test gets its own data directories under tmp_path
- Stores write synchronously (batch window 0) unless a test says otherwise
- Environment defaults point at tmp_path so nothing touches ~/.memory-mesh
"""

import sys
from pathlib import Path

import pytest

# Make memory_mesh and api importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from memory_mesh.core.store import MemoryStore
from memory_mesh.feedback.calibrator import ConfidenceCalibrator
from memory_mesh.feedback.collector import FeedbackCollector
from memory_mesh.patterns.aggregator import PatternAggregator
from memory_mesh.teams.sync import TeamSync


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point the environment defaults at a per-test directory."""
    home = tmp_path / "mesh-home"
    monkeypatch.setenv("MEMORY_MESH_HOME", str(home))
    monkeypatch.setenv("MEMORY_MESH_SCOPE", "test")
    monkeypatch.setenv("MEMORY_MESH_BATCH_MS", "0")
    return home


@pytest.fixture
def store(tmp_path):
    """Fresh synchronous store."""
    s = MemoryStore(data_dir=str(tmp_path / "global"), scope="test", batch_window_ms=0)
    s.init()
    yield s
    s.close()


@pytest.fixture
def make_store(tmp_path):
    """Factory for additional isolated stores."""
    created = []

    def _make(name="other", batch_window_ms=0):
        s = MemoryStore(data_dir=str(tmp_path / name), scope=name, batch_window_ms=batch_window_ms)
        s.init()
        created.append(s)
        return s

    yield _make
    for s in created:
        s.close()


@pytest.fixture
def multi_project_store(store):
    """Three registered projects with overlapping patterns.

    - naming::camelCase    used by api, web, cli  (strong consensus)
    - async::async-await   used by api, web       (moderate consensus)
    - testing::jest        used by web only       (outlier)
    """
    for name in ("api", "web", "cli"):
        store.register_project(f"/src/{name}", {"name": name})

    for source in ("api", "web", "cli"):
        store.record_pattern("naming", "camelCase", source=source)
    for source in ("api", "web"):
        store.record_pattern("async", "async-await", source=source)
    store.record_pattern("testing", "jest", source="web")
    return store


@pytest.fixture
def aggregator(multi_project_store):
    return PatternAggregator(multi_project_store).init()


@pytest.fixture
def collector(tmp_path):
    return FeedbackCollector(data_dir=str(tmp_path / "feedback")).init()


@pytest.fixture
def calibrator(tmp_path):
    return ConfidenceCalibrator(data_dir=str(tmp_path / "calibration")).init()


@pytest.fixture
def sync(store):
    return TeamSync(store)
