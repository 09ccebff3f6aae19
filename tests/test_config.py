"""Tests for configuration loading."""

import pytest

from cubesat.config import Config, StoreConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove any CUBESAT_ variables from the environment."""
    for key in (
        "NODE_ID",
        "DATA_DIR",
        "IN_MEMORY",
        "NETWORK_URL",
        "NETWORK_TIMEOUT",
        "NETWORK_MAX_RETRIES",
        "SERVER_HOST",
        "SERVER_PORT",
    ):
        monkeypatch.delenv(f"CUBESAT_{key}", raising=False)


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults(self):
        config = load_config()

        assert config == Config()
        assert config.store.data_dir == "~/.cubesat"
        assert config.network.url == ""
        assert config.server.port == 8765

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_config(tmp_path / "absent.yaml") == Config()

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "node:\n"
            "  node_id: pi-kitchen\n"
            "store:\n"
            "  data_dir: /var/lib/cubesat\n"
            "network:\n"
            "  url: http://peer:8765\n"
            "  max_retries: 5\n"
            "server:\n"
            "  port: 9000\n"
        )

        config = load_config(path)

        assert config.node.node_id == "pi-kitchen"
        assert config.store.data_dir == "/var/lib/cubesat"
        assert config.store.in_memory is False
        assert config.network.url == "http://peer:8765"
        assert config.network.max_retries == 5
        assert config.network.timeout == 30.0
        assert config.server.port == 9000
        assert config.server.host == "0.0.0.0"

    def test_empty_yaml_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path) == Config()

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("network:\n  url: http://from-file:8765\n")
        monkeypatch.setenv("CUBESAT_NETWORK_URL", "http://from-env:8765")
        monkeypatch.setenv("CUBESAT_NETWORK_TIMEOUT", "2.5")
        monkeypatch.setenv("CUBESAT_IN_MEMORY", "yes")
        monkeypatch.setenv("CUBESAT_SERVER_PORT", "9100")
        monkeypatch.setenv("CUBESAT_NODE_ID", "env-node")

        config = load_config(path)

        assert config.network.url == "http://from-env:8765"
        assert config.network.timeout == 2.5
        assert config.store.in_memory is True
        assert config.server.port == 9100
        assert config.node.node_id == "env-node"


class TestStoreConfig:
    """Tests for database path resolution."""

    def test_in_memory(self):
        assert StoreConfig(in_memory=True).path_for("anything", "log") == ":memory:"

    def test_path_for(self, tmp_path):
        config = StoreConfig(data_dir=str(tmp_path))

        assert config.path_for("characters", "docs") == str(tmp_path / "characters.docs.db")

    def test_path_for_sanitizes_name(self, tmp_path):
        config = StoreConfig(data_dir=str(tmp_path))

        assert config.path_for("../etc/passwd", "log") == str(tmp_path / ".._etc_passwd.log.db")
