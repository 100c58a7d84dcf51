# serverpanel/services/launch_args.py
"""Launch command construction for a game server process."""

import math
import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from serverpanel.services.config_store import ServerConfig

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEFAULT_BACKUP_FREQUENCY = 30
DEFAULT_BACKUP_MAX_COUNT = 5
AOT_CACHE_FILE = "HytaleServer.aot"

SESSION_TOKEN_ENV = "HYTALE_SERVER_SESSION_TOKEN"
IDENTITY_TOKEN_ENV = "HYTALE_SERVER_IDENTITY_TOKEN"


def compute_heap_sizes(max_memory_mb: int) -> Tuple[int, int]:
    """Return (initial_gb, max_gb) for -Xms/-Xmx.

    Initial heap stays below max heap, except at the 1 GB minimum where both
    are 1 GB.
    """
    # half-up, not banker's rounding
    max_gb = max(1, math.floor(max_memory_mb / 1024 + 0.5))
    if max_gb >= 5:
        init_gb = 4
    elif max_gb == 4:
        init_gb = 3
    else:
        init_gb = max(1, max_gb - 1)
    if init_gb >= max_gb:
        init_gb = max(1, max_gb - 1)
    return init_gb, max_gb


def server_backup_dir(backup_root: Path, server_id: str) -> Path:
    return backup_root / f"{server_id}-back"


def build_launch_args(
    config: ServerConfig,
    jar_path: str,
    assets_path: str,
    backup_dir: Path,
) -> List[str]:
    init_gb, max_gb = compute_heap_sizes(config.max_memory)
    args = [f"-Xms{init_gb}G", f"-Xmx{max_gb}G"]

    if config.aot_cache_enabled:
        args.append(f"-XX:AOTCache={AOT_CACHE_FILE}")

    args += ["-jar", jar_path, "--assets", assets_path]

    if config.accept_early_plugins:
        args.append("--accept-early-plugins")

    bind_host = config.bind_address or config.ip or "0.0.0.0"
    args += ["--bind", f"{bind_host}:{config.port}"]
    args += ["--backup-dir", str(backup_dir)]

    if config.backup_enabled:
        args += [
            "--backup",
            "--backup-frequency", str(config.backup_frequency or DEFAULT_BACKUP_FREQUENCY),
            "--backup-max-count", str(config.backup_max_count or DEFAULT_BACKUP_MAX_COUNT),
        ]

    if config.session_token:
        args += ["--session-token", config.session_token]
    if config.identity_token:
        args += ["--identity-token", config.identity_token]

    args += [str(a) for a in config.args]
    return args


def build_environment(config: ServerConfig, base_env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if base_env is None else base_env)
    env.setdefault("PATH", DEFAULT_PATH)
    env.update({k: str(v) for k, v in config.env.items()})
    if config.session_token and SESSION_TOKEN_ENV not in env:
        env[SESSION_TOKEN_ENV] = config.session_token
    if config.identity_token and IDENTITY_TOKEN_ENV not in env:
        env[IDENTITY_TOKEN_ENV] = config.identity_token
    return env
