# serverpanel/services/config_store.py
"""
Per-server configuration files.

Each server root holds a ``server.json`` mirroring the launch-relevant part of
its database record. A missing or partial file is recoverable: the fleet
coordinator re-derives it from the record on boot.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from serverpanel.core.config import SERVERS_DIR
from serverpanel.core.errors import filesystem_error

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "server.json"
LEGACY_CONFIG_FILENAME = "config.json"

DEFAULT_PORT = 5520
DEFAULT_MAX_MEMORY = 1024
DEFAULT_MAX_PLAYERS = 10


@dataclass
class ServerConfig:
    """Launch configuration for one server (persisted to server.json)"""
    id: str
    name: str
    path: str
    executable: str = "java"
    jar_file: str = "HytaleServer.jar"
    assets_path: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    ip: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    max_memory: int = DEFAULT_MAX_MEMORY
    max_players: int = DEFAULT_MAX_PLAYERS
    version: Optional[str] = None
    bind_address: Optional[str] = None
    backup_enabled: bool = True
    backup_frequency: Optional[int] = None
    backup_max_count: Optional[int] = None
    aot_cache_enabled: bool = False
    accept_early_plugins: bool = False
    session_token: Optional[str] = None
    identity_token: Optional[str] = None
    autostart: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ServerConfig":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def default_server_root(server_id: str) -> Path:
    return SERVERS_DIR / server_id


def _config_file(server_id: str, root_path: Optional[str]) -> Path:
    root = Path(root_path).expanduser() if root_path else default_server_root(server_id)
    return root / CONFIG_FILENAME


def load_config(server_id: str, root_path: Optional[str] = None) -> Optional[ServerConfig]:
    """Load server.json from the server root, migrating a legacy config.json once."""
    config_file = _config_file(server_id, root_path)
    legacy_file = config_file.with_name(LEGACY_CONFIG_FILENAME)

    source = config_file if config_file.exists() else legacy_file
    if not source.exists():
        return None

    try:
        with open(source, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to read config for server {server_id} from {source}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config for server {server_id}: {source} is not a JSON object")
        return None

    data.setdefault("id", server_id)
    data.setdefault("name", server_id)
    data.setdefault("path", str(config_file.parent))
    try:
        config = ServerConfig.from_dict(data)
    except TypeError as e:
        logger.warning(f"Ignoring malformed config for server {server_id}: {e}")
        return None

    if source == legacy_file:
        save_config(config)
        try:
            legacy_file.unlink()
        except OSError as e:
            logger.warning(f"Could not remove legacy config {legacy_file}: {e}")
        logger.info(f"Migrated legacy config for server {server_id}")

    return config


def save_config(config: ServerConfig) -> Path:
    config_file = _config_file(config.id, config.path)
    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = config_file.with_suffix(".json.tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(config.to_dict(), f, indent=2)
        tmp_file.replace(config_file)
    except OSError as e:
        raise filesystem_error("write", str(config_file), str(e)) from e
    return config_file


def delete_config(server_id: str, root_path: Optional[str] = None) -> bool:
    config_file = _config_file(server_id, root_path)
    if not config_file.exists():
        return False
    try:
        config_file.unlink()
    except OSError as e:
        raise filesystem_error("delete", str(config_file), str(e)) from e
    return True
