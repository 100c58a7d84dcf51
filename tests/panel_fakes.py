"""Shared fakes for supervisor and coordinator tests."""

import asyncio
import os
import signal
from typing import Callable, List, Optional

from serverpanel.core import config as panel_config
from serverpanel.services import audit_log, config_store, panel_db, server_instance, server_manager
from serverpanel.services.config_store import ServerConfig


class FakeStdin:
    def __init__(self, process: "FakeProcess"):
        self._process = process
        self.written = bytearray()
        self.closed = False

    def write(self, data: bytes):
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self.written.extend(data)
        for line in data.decode("utf-8").splitlines():
            self._process.on_command(line)

    async def drain(self):
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self):
        self.closed = True


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, exit_on_terminate: bool = True, responder: Optional[Callable[[str], List[str]]] = None):
        self.pid = os.getpid()
        self.stdin = FakeStdin(self)
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: Optional[int] = None
        self.signals: List[str] = []
        self.exit_on_terminate = exit_on_terminate
        self.responder = responder
        self._exited = asyncio.Event()

    def emit(self, line: str, stream: str = "stdout"):
        reader = self.stdout if stream == "stdout" else self.stderr
        reader.feed_data((line + "\n").encode("utf-8"))

    def on_command(self, command: str):
        if self.responder is None:
            return
        for line in self.responder(command):
            self.emit(line)

    def exit(self, code: int):
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self.stdin.close()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self):
        self.signals.append("SIGTERM")
        if self.exit_on_terminate:
            self.exit(-signal.SIGTERM)

    def kill(self):
        self.signals.append("SIGKILL")
        self.exit(-signal.SIGKILL)


class FakeSpawner:
    """Replacement for asyncio.create_subprocess_exec recording every launch."""

    def __init__(self, error: Optional[Exception] = None, **process_kwargs):
        self.error = error
        self.process_kwargs = process_kwargs
        self.calls = []
        self.processes: List[FakeProcess] = []

    async def __call__(self, program, *args, **kwargs):
        self.calls.append((program, list(args), kwargs))
        if self.error is not None:
            raise self.error
        process = FakeProcess(**self.process_kwargs)
        self.processes.append(process)
        return process


def setup_panel_env(monkeypatch, tmp_path, spawner: Optional[FakeSpawner] = None) -> FakeSpawner:
    """Point every on-disk location at tmp_path and swap process spawning for a fake."""
    monkeypatch.setattr(panel_db, "DATABASE_PATH", tmp_path / "data" / "panel.db")
    monkeypatch.setattr(panel_config, "LOGS_DIR", tmp_path / "logs")
    monkeypatch.setattr(panel_config, "CONSOLE_RULES_FILE", tmp_path / "data" / "console_rules.yml")
    audit_log.close_file_loggers()
    monkeypatch.setattr(panel_config, "ALLOWED_HOSTS", ["testserver"])
    monkeypatch.setattr(config_store, "SERVERS_DIR", tmp_path / "servers")
    monkeypatch.setattr(server_manager, "SERVERS_DIR", tmp_path / "servers")
    monkeypatch.setattr(server_manager, "BACKUP_DIR", tmp_path / "backup")
    monkeypatch.setattr(server_instance, "BACKUP_DIR", tmp_path / "backup")

    monkeypatch.setattr(server_instance, "SAMPLE_INTERVAL_SEC", 3600)
    monkeypatch.setattr(server_instance, "RESTART_DELAY_SEC", 0)
    monkeypatch.setattr(server_instance, "STOP_TIMEOUT_SEC", 0.2)
    monkeypatch.setattr(server_instance, "KILL_TIMEOUT_SEC", 0.2)

    spawner = spawner or FakeSpawner()
    monkeypatch.setattr(server_instance.asyncio, "create_subprocess_exec", spawner)

    panel_db.init_db()
    return spawner


def make_installed_server(tmp_path, server_id: str = "srv-1", port: int = 5520, **config_kwargs) -> ServerConfig:
    root = tmp_path / "servers" / server_id
    root.mkdir(parents=True, exist_ok=True)
    jar = root / "HytaleServer.jar"
    assets = root / "Assets.zip"
    jar.write_bytes(b"jar")
    assets.write_bytes(b"assets")

    panel_db.create_server_record({
        "id": server_id,
        "name": f"Server {server_id}",
        "port": port,
        "server_root": str(root),
        "autostart": config_kwargs.get("autostart", False),
    })
    panel_db.update_install_state(
        server_id, panel_db.INSTALL_INSTALLED, jar_path=str(jar), assets_path=str(assets)
    )

    config = ServerConfig(id=server_id, name=f"Server {server_id}", path=str(root), port=port, **config_kwargs)
    config_store.save_config(config)
    return config


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
