"""Configuration loading for cubesat."""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    node_id: str = ""  # empty: each log picks a random replica id


@dataclass
class StoreConfig:
    """Where logs and document stores keep their SQLite files."""

    data_dir: str = "~/.cubesat"
    in_memory: bool = False

    def path_for(self, name: str, kind: str) -> str:
        """Database path for a logical name, or ":memory:".

        Args:
            name: Logical store name or fingerprint.
            kind: "log" or "docs".
        """
        if self.in_memory:
            return ":memory:"
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", name)
        return str(Path(self.data_dir).expanduser() / f"{safe}.{kind}.db")


@dataclass
class NetworkConfig:
    """Options for the content network collaborator."""

    url: str = ""  # block server URL; empty means a local block store
    timeout: float = 30.0
    max_retries: int = 3
    blocks_db: str = "blocks.db"  # relative to store.data_dir


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8765


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CUBESAT_ prefix."""
    return os.environ.get(f"CUBESAT_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if node_id := _get_env("NODE_ID"):
        config.node.node_id = node_id

    # Store overrides
    if data_dir := _get_env("DATA_DIR"):
        config.store.data_dir = data_dir
    if in_memory := _get_env("IN_MEMORY"):
        config.store.in_memory = in_memory.lower() in ("true", "1", "yes")

    # Network overrides
    if url := _get_env("NETWORK_URL"):
        config.network.url = url
    if timeout := _get_env("NETWORK_TIMEOUT"):
        config.network.timeout = float(timeout)
    if max_retries := _get_env("NETWORK_MAX_RETRIES"):
        config.network.max_retries = int(max_retries)

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "node" in data:
                config.node = NodeConfig(
                    node_id=data["node"].get("node_id", config.node.node_id)
                )

            if "store" in data:
                store_data = data["store"]
                config.store = StoreConfig(
                    data_dir=store_data.get("data_dir", config.store.data_dir),
                    in_memory=store_data.get("in_memory", config.store.in_memory),
                )

            if "network" in data:
                net_data = data["network"]
                config.network = NetworkConfig(
                    url=net_data.get("url", config.network.url),
                    timeout=net_data.get("timeout", config.network.timeout),
                    max_retries=net_data.get("max_retries", config.network.max_retries),
                    blocks_db=net_data.get("blocks_db", config.network.blocks_db),
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

    return _apply_env_overrides(config)
