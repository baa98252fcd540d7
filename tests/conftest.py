"""Shared fixtures for shipyard tests."""

import pytest
from fakes import FakeClock, FakeCluster, FakeTool

from orchestrator.retry import BackoffSpec, RetryPolicy
from pipeline.config import Config


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def fake_tool(cluster):
    return FakeTool(cluster)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep_policy():
    """Three attempts without real backoff."""
    return RetryPolicy(max_attempts=3, backoff=BackoffSpec(base=0.0, jitter=0.0), sleep=lambda d: None)


@pytest.fixture
def config_data(tmp_path):
    """Config dict for a local source dir and a 2-replica deployment."""
    source = tmp_path / "src"
    source.mkdir()
    return {
        "source": {"workdir": str(source)},
        "build": {"tag": "42"},
        "registry": {"url": "registry.example.com", "repository": "shop/web"},
        "deploy": {"deployment": "web", "replicas": 2},
        "rollout": {"poll_interval": 1.0, "timeout": 10.0, "verify_timeout": 5.0},
        "pipeline": {
            "runs_dir": str(tmp_path / "runs"),
            "history_file": str(tmp_path / "history.json"),
        },
    }


@pytest.fixture
def config(config_data):
    return Config.from_dict(config_data)
