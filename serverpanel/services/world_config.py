# serverpanel/services/world_config.py
"""
Per-world configuration files.

The game server keeps one ``config.json`` per world under
``<server root>/universe/worlds/<world>/``. World names come from request
paths, so they are sanitized and the resulting path must stay inside the
server root.
"""

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List

from serverpanel.core.errors import NotFoundError, config_error, filesystem_error

logger = logging.getLogger(__name__)

WORLDS_SUBDIR = Path("universe") / "worlds"
WORLD_CONFIG_FILENAME = "config.json"

_UNSAFE_CHARS_RE = re.compile(r"[/\\:.\x00]")


def sanitize_world_name(world: str) -> str:
    """Replace separators and dots so a world name is a single path component."""
    return _UNSAFE_CHARS_RE.sub("_", world.strip())


def list_worlds(server_root: Path) -> List[str]:
    worlds_dir = server_root / WORLDS_SUBDIR
    if not worlds_dir.is_dir():
        return []
    try:
        return sorted(entry.name for entry in worlds_dir.iterdir() if entry.is_dir())
    except OSError as e:
        logger.error(f"Failed to read worlds directory {worlds_dir}: {e}")
        return []


def world_config_path(server_root: Path, world: str, server_id: str) -> Path:
    name = sanitize_world_name(world)
    if not name:
        raise config_error("read", "world name is required", server_id)

    config_path = server_root / WORLDS_SUBDIR / name / WORLD_CONFIG_FILENAME
    root = server_root.resolve()
    if not config_path.resolve().is_relative_to(root):
        raise filesystem_error("access", str(config_path), "path escapes the server root")
    return config_path


def _world_not_found(world: str, server_id: str) -> NotFoundError:
    return NotFoundError(
        "WORLD_NOT_FOUND",
        f"World {world} not found or config.json does not exist",
        "Verify the world exists and has been initialized by the server",
        {"server_id": server_id, "world": world},
    )


def read_world_config(server_root: Path, world: str, server_id: str) -> Dict[str, Any]:
    config_path = world_config_path(server_root, world, server_id)
    if not config_path.is_file():
        raise _world_not_found(world, server_id)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise config_error("parse", f"{config_path.name} of world {world} is not valid JSON: {e}", server_id) from e
    except OSError as e:
        raise filesystem_error("read", str(config_path), str(e)) from e

    if not isinstance(data, dict):
        raise config_error("parse", f"{config_path.name} of world {world} is not a JSON object", server_id)
    return data


def write_world_config(server_root: Path, world: str, updates: Dict[str, Any], server_id: str) -> Dict[str, Any]:
    """Shallow-merge ``updates`` into the world's config.json and write it atomically."""
    merged = {**read_world_config(server_root, world, server_id), **updates}
    config_path = world_config_path(server_root, world, server_id)

    tmp_path = config_path.with_name(config_path.name + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(merged, f, indent=2)
        tmp_path.replace(config_path)
    except OSError as e:
        raise filesystem_error("write", str(config_path), str(e)) from e

    logger.info(f"Updated world {world} config of server {server_id}: {', '.join(sorted(updates))}")
    return merged
