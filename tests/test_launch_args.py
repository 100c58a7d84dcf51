from pathlib import Path

import pytest

from serverpanel.services.config_store import ServerConfig
from serverpanel.services.launch_args import (
    IDENTITY_TOKEN_ENV,
    SESSION_TOKEN_ENV,
    build_environment,
    build_launch_args,
    compute_heap_sizes,
)


@pytest.mark.parametrize("max_memory_mb,expected", [
    (4096, (3, 4)),
    (8192, (4, 8)),
    (5120, (4, 5)),
    (2048, (1, 2)),
    (3072, (2, 3)),
    (16384, (4, 16)),
    (2560, (2, 3)),
])
def test_heap_sizing(max_memory_mb, expected):
    assert compute_heap_sizes(max_memory_mb) == expected


@pytest.mark.parametrize("max_memory_mb", [512, 1024, 1400])
def test_heap_sizing_minimum_is_one_gigabyte_each(max_memory_mb):
    # 1 GB max leaves no room below it; both heaps are 1 GB
    assert compute_heap_sizes(max_memory_mb) == (1, 1)


@pytest.mark.parametrize("max_memory_mb", range(1536, 65536, 512))
def test_initial_heap_below_max_from_two_gigabytes(max_memory_mb):
    init_gb, max_gb = compute_heap_sizes(max_memory_mb)
    assert max_gb >= 2
    assert 1 <= init_gb < max_gb


def _config(**kwargs) -> ServerConfig:
    return ServerConfig(id="srv-1", name="Test", path="/srv/test", **kwargs)


def test_launch_args_minimal_order():
    args = build_launch_args(
        _config(max_memory=4096, backup_enabled=False),
        "/srv/test/HytaleServer.jar",
        "/srv/test/Assets.zip",
        Path("/backup/srv-1-back"),
    )

    assert args == [
        "-Xms3G", "-Xmx4G",
        "-jar", "/srv/test/HytaleServer.jar",
        "--assets", "/srv/test/Assets.zip",
        "--bind", "0.0.0.0:5520",
        "--backup-dir", "/backup/srv-1-back",
    ]


def test_launch_args_with_all_options():
    config = _config(
        ip="10.0.0.5",
        bind_address="127.0.0.1",
        port=6000,
        aot_cache_enabled=True,
        accept_early_plugins=True,
        backup_frequency=15,
        session_token="sess",
        identity_token="ident",
        args=["--verbose"],
    )
    args = build_launch_args(config, "server.jar", "assets.zip", Path("/b/srv-1-back"))

    assert args[2] == "-XX:AOTCache=HytaleServer.aot"
    assert args[args.index("--bind") + 1] == "127.0.0.1:6000"
    assert "--accept-early-plugins" in args
    backup_at = args.index("--backup")
    assert args[backup_at:backup_at + 5] == ["--backup", "--backup-frequency", "15", "--backup-max-count", "5"]
    assert args[args.index("--session-token") + 1] == "sess"
    assert args[args.index("--identity-token") + 1] == "ident"
    assert args[-1] == "--verbose"


def test_environment_merges_config_and_tokens():
    env = build_environment(
        _config(env={"JAVA_TOOL_OPTIONS": "-Dfoo=1"}, session_token="sess", identity_token="ident"),
        base_env={IDENTITY_TOKEN_ENV: "from-parent"},
    )

    assert env["PATH"]
    assert env["JAVA_TOOL_OPTIONS"] == "-Dfoo=1"
    assert env[SESSION_TOKEN_ENV] == "sess"
    assert env[IDENTITY_TOKEN_ENV] == "from-parent"
