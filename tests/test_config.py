"""Tests for pipeline.config."""

import pytest

from pipeline.config import Config, ConfigError, load_config

ENV_VARS = [
    "SHIPYARD_REPO_URL",
    "SHIPYARD_BRANCH",
    "GIT_TOKEN",
    "BUILD_NUMBER",
    "SHIPYARD_REGISTRY",
    "SHIPYARD_IMAGE",
    "REGISTRY_USERNAME",
    "REGISTRY_PASSWORD",
    "KUBE_CONTEXT",
    "KUBE_NAMESPACE",
    "SHIPYARD_RUNS_DIR",
    "SHIPYARD_LOG_LEVEL",
]

TOML = """
[build]
tag = "7"
tag_latest = true

[build.build_args]
VERSION = "7"

[registry]
url = "registry.example.com"
repository = "shop/web"
password = "hunter2"

[deploy]
deployment = "web"
namespace = "shop"
replicas = 3

[retry]
max_attempts = 5
backoff_base = 2

[rollout]
poll_interval = 0.5
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "shipyard.toml"
    path.write_text(TOML)
    return path


class TestLoadConfig:
    def test_from_file(self, config_file):
        config = load_config(config_file)
        assert config.build.tag == "7"
        assert config.build.tag_latest is True
        assert config.build.build_args == {"VERSION": "7"}
        assert config.deploy.replicas == 3
        assert config.retry.max_attempts == 5
        assert config.retry.backoff_base == 2.0
        assert config.rollout.poll_interval == 0.5

    def test_defaults_without_file(self):
        config = load_config()
        assert config == Config()
        assert config.deploy.rollback_enabled is True
        assert config.retry.max_attempts == 3

    def test_found_in_parent_directory(self, config_file, monkeypatch):
        sub = config_file.parent / "services" / "web"
        sub.mkdir(parents=True)
        monkeypatch.chdir(sub)
        assert load_config().deploy.deployment == "web"

    def test_env_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv("BUILD_NUMBER", "1234")
        monkeypatch.setenv("KUBE_NAMESPACE", "staging")
        monkeypatch.setenv("GIT_TOKEN", "t0ken")
        config = load_config(config_file)
        assert config.build.tag == "1234"
        assert config.deploy.namespace == "staging"
        assert config.source.token == "t0ken"

    def test_dotenv_file(self, config_file, tmp_path, monkeypatch):
        # Registered so the value loaded from the file is removed afterwards
        monkeypatch.setenv("SHIPYARD_IMAGE", "")
        monkeypatch.delenv("SHIPYARD_IMAGE")
        env_file = tmp_path / "ci.env"
        env_file.write_text("SHIPYARD_IMAGE=shop/web-canary\n")
        assert load_config(config_file, env_file=env_file).registry.repository == "shop/web-canary"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "shipyard.toml"
        path.write_text("[build\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)


class TestFromDict:
    def test_unknown_section(self):
        with pytest.raises(ConfigError, match="section"):
            Config.from_dict({"llm": {}})

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="deploy"):
            Config.from_dict({"deploy": {"strategy": "canary"}})

    @pytest.mark.parametrize(
        "data",
        [
            {"deploy": {"replicas": "3"}},
            {"deploy": {"replicas": True}},
            {"registry": {"push": "yes"}},
            {"build": {"build_args": "VERSION=1"}},
            {"retry": "fast"},
        ],
    )
    def test_wrong_types(self, data):
        with pytest.raises(ConfigError):
            Config.from_dict(data)

    def test_immutable(self):
        config = Config()
        with pytest.raises(AttributeError):
            config.deploy.replicas = 5

    def test_to_dict_masks_secrets(self):
        config = Config.from_dict({"registry": {"password": "hunter2"}, "source": {"token": "t0ken"}})
        data = config.to_dict()
        assert data["registry"]["password"] == "********"
        assert data["source"]["token"] == "********"
        assert "hunter2" not in repr(config)
