# serverpanel/services/server_instance.py
"""
Game Server Process Supervisor

One ServerInstance owns at most one OS child process for one server id.

Handles:
- Lifecycle state machine: offline -> starting -> online/auth_required -> stopping -> offline
- Spawning with the configured launch vector and merged environment
- stdout/stderr pipeline: sanitize, classify, persist, broadcast
- Auth-required detection from console text
- CPU/RSS sampling while online
- Exit cleanup (idempotent against an explicit stop)
"""

import asyncio
import logging
import os
import signal
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import psutil

from serverpanel.core.config import BACKUP_DIR
from serverpanel.core.errors import (
    ConflictError,
    OperationError,
    PanelError,
    ValidationError,
    filesystem_error,
    server_error,
)
from serverpanel.services import audit_log, events, panel_db
from serverpanel.services.config_store import ServerConfig
from serverpanel.services.console_text import (
    LEVEL_ERROR,
    LEVEL_INFO,
    LineKind,
    OutputClassifier,
    strip_ansi,
)
from serverpanel.services.events import EventBus
from serverpanel.services.launch_args import build_environment, build_launch_args, server_backup_dir
from serverpanel.services.player_tracker import PlayerTracker

logger = logging.getLogger(__name__)

SPAWN_TIMEOUT_SEC = float(os.getenv("SPAWN_TIMEOUT_SEC", "10"))
STOP_TIMEOUT_SEC = float(os.getenv("STOP_TIMEOUT_SEC", "10"))
KILL_TIMEOUT_SEC = 5.0
RESTART_DELAY_SEC = float(os.getenv("RESTART_DELAY_SEC", "1"))
SAMPLE_INTERVAL_SEC = float(os.getenv("SAMPLE_INTERVAL_SEC", "5"))
OUTPUT_DRAIN_TIMEOUT_SEC = 2.0
STREAM_LINE_LIMIT = 1024 * 1024

STATUS_OFFLINE = "offline"
STATUS_STARTING = "starting"
STATUS_ONLINE = "online"
STATUS_STOPPING = "stopping"
STATUS_AUTH_REQUIRED = "auth_required"

RUNNING_STATUSES = frozenset({STATUS_STARTING, STATUS_ONLINE, STATUS_STOPPING, STATUS_AUTH_REQUIRED})
COMMAND_STATUSES = frozenset({STATUS_ONLINE, STATUS_AUTH_REQUIRED})


@dataclass
class ProcessHandle:
    pid: int
    started_at: float
    process: asyncio.subprocess.Process


@dataclass(frozen=True)
class ConsoleLine:
    """A cleaned console line as seen by line listeners."""
    server_id: str
    text: str
    level: str
    timestamp: float


LineListener = Callable[[ConsoleLine], None]


class ServerInstance:
    def __init__(
        self,
        config: ServerConfig,
        tracker: PlayerTracker,
        bus: EventBus,
        classifier: Optional[OutputClassifier] = None,
    ):
        self.config = config
        self.server_id = config.id
        self.tracker = tracker
        self.bus = bus
        self.classifier = classifier or OutputClassifier()

        self.status: str = STATUS_OFFLINE
        self.handle: Optional[ProcessHandle] = None

        self._reader_tasks: List[asyncio.Task] = []
        self._exit_task: Optional[asyncio.Task] = None
        self._sample_task: Optional[asyncio.Task] = None
        self._line_listeners: List[LineListener] = []

    # ------------------------------------------------------------------
    # State & persistence
    # ------------------------------------------------------------------

    def _persist_status(self, update_pid: bool):
        try:
            if update_pid:
                panel_db.update_status(self.server_id, self.status, self.handle.pid if self.handle else None)
            else:
                panel_db.update_status(self.server_id, self.status)
        except sqlite3.Error:
            logger.error(f"Failed to persist status {self.status} for server {self.server_id}", exc_info=True)

    async def _set_status(self, status: str, update_pid: bool = False):
        previous = self.status
        self.status = status
        self._persist_status(update_pid)
        if previous != status:
            logger.info(f"Server {self.server_id}: {previous} -> {status}")
        await self.bus.emit(events.STATUS_CHANGE, self.server_id, status=status, previous=previous)

    @property
    def pid(self) -> Optional[int]:
        return self.handle.pid if self.handle else None

    def get_uptime(self) -> float:
        if self.handle is None:
            return 0.0
        return max(0.0, time.time() - self.handle.started_at)

    def snapshot(self) -> dict:
        return {
            "id": self.server_id,
            "name": self.config.name,
            "status": self.status,
            "pid": self.pid,
            "uptime": round(self.get_uptime(), 1),
            "players": self.tracker.get_player_count(self.server_id),
            "max_players": self.config.max_players,
        }

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _validate_installation(self) -> tuple[str, str, Path]:
        record = panel_db.get_server_record(self.server_id)
        if record is None:
            raise server_error("start", "server record not found", self.server_id,
                               "Recreate the server", error_cls=ConflictError)
        if record["install_state"] != panel_db.INSTALL_INSTALLED:
            raise server_error("start", f"server is not installed (state: {record['install_state']})",
                               self.server_id, "Install the server first before starting it",
                               error_cls=ConflictError)

        jar_path, assets_path = record.get("jar_path"), record.get("assets_path")
        if not jar_path or not assets_path:
            raise server_error("start", "installation paths are missing", self.server_id,
                               "Reinstall the server to restore the binary and assets paths",
                               error_cls=ConflictError)
        for path in (jar_path, assets_path):
            if not Path(path).exists():
                raise filesystem_error("read", path, "file not found", missing=True)

        work_dir = Path(record.get("server_root") or self.config.path).expanduser()
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise filesystem_error("create", str(work_dir), str(e)) from e

        return jar_path, assets_path, work_dir

    async def start(self) -> dict:
        if self.status in (STATUS_STARTING, STATUS_ONLINE, STATUS_AUTH_REQUIRED):
            raise server_error("start", f"server is already {self.status}", self.server_id,
                               "Stop the server first before starting it again", error_cls=ConflictError)
        if self.status == STATUS_STOPPING:
            raise server_error("start", "server is still stopping", self.server_id,
                               "Wait for the server to stop before starting it again", error_cls=ConflictError)

        jar_path, assets_path, work_dir = self._validate_installation()

        backup_dir = server_backup_dir(BACKUP_DIR, self.server_id)
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create backup directory {backup_dir}: {e}")

        args = build_launch_args(self.config, jar_path, assets_path, backup_dir)
        env = build_environment(self.config)

        await self._set_status(STATUS_STARTING)
        logger.info(f"Starting server {self.server_id}: {self.config.executable} {' '.join(args)}")

        try:
            process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    self.config.executable,
                    *args,
                    cwd=str(work_dir),
                    env=env,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=STREAM_LINE_LIMIT,
                ),
                timeout=SPAWN_TIMEOUT_SEC,
            )
        except asyncio.TimeoutError:
            error = server_error("start", f"process did not launch within {SPAWN_TIMEOUT_SEC:g}s",
                                 self.server_id, "Check system load and the Java installation")
            await self._fail_start(error)
            raise error
        except OSError as e:
            error = server_error("start", f"could not spawn {self.config.executable}: {e}", self.server_id,
                                 "Check that Java is installed and the executable is on PATH")
            await self._fail_start(error)
            raise error from e
        except Exception as e:
            # e.g. ValueError for a NUL byte or a bad environment key
            error = server_error("start", f"could not spawn {self.config.executable}: {e}", self.server_id,
                                 "Check the server arguments and environment variables")
            await self._fail_start(error)
            raise error from e

        if self.status != STATUS_STARTING:
            # stop() ran while the spawn was pending
            self._send_signal(process, force=True)
            await process.wait()
            raise server_error("start", f"start was interrupted (server is {self.status})", self.server_id,
                               "Start the server again", error_cls=ConflictError)

        self.handle = ProcessHandle(pid=process.pid, started_at=time.time(), process=process)
        await self._set_status(STATUS_ONLINE, update_pid=True)

        self._reader_tasks = [
            asyncio.create_task(self._read_stream(process.stdout, LEVEL_INFO)),
            asyncio.create_task(self._read_stream(process.stderr, LEVEL_ERROR)),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(process))
        self._start_sampling()

        logger.info(f"Server {self.server_id} started with PID {process.pid}")
        return self.snapshot()

    async def _fail_start(self, error: PanelError):
        logger.error(f"Server {self.server_id} failed to start: {error.message}")
        self.handle = None
        await self._set_status(STATUS_OFFLINE, update_pid=True)
        await self.bus.emit(events.ERROR, self.server_id, error=error.to_dict())

    # ------------------------------------------------------------------
    # Stop / restart / destroy
    # ------------------------------------------------------------------

    async def _wait_for_exit(self, timeout: float) -> bool:
        if self._exit_task is None:
            return self.handle is None
        done, _ = await asyncio.wait({self._exit_task}, timeout=timeout)
        return bool(done)

    @staticmethod
    def _send_signal(process: asyncio.subprocess.Process, force: bool):
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass

    async def stop(self, force: bool = False) -> dict:
        """Stop the server. Graceful SIGTERM first unless ``force``; no-op when offline or stopping."""
        if self.status in (STATUS_OFFLINE, STATUS_STOPPING):
            return self.snapshot()

        await self._set_status(STATUS_STOPPING)
        self._stop_sampling()

        handle = self.handle
        if handle is None:
            await self._set_status(STATUS_OFFLINE, update_pid=True)
            return self.snapshot()

        process = handle.process
        if force:
            logger.warning(f"Force killing server {self.server_id} (PID {handle.pid})")
            self._send_signal(process, force=True)
        else:
            logger.info(f"Sending SIGTERM to server {self.server_id} (PID {handle.pid})")
            self._send_signal(process, force=False)
            if not await self._wait_for_exit(STOP_TIMEOUT_SEC):
                logger.warning(f"Server {self.server_id} did not stop within {STOP_TIMEOUT_SEC:g}s, killing")
                self._send_signal(process, force=True)

        if not await self._wait_for_exit(KILL_TIMEOUT_SEC):
            error = server_error("stop", "process did not exit after SIGKILL", self.server_id,
                                 "Check the process manually and remove it if it is stuck")
            await self._abandon_process(handle)
            await self.bus.emit(events.ERROR, self.server_id, error=error.to_dict())
            raise error

        # The exit watcher normally did this already
        if self.handle is handle:
            await self._handle_process_exit(process, process.returncode)
        return self.snapshot()

    async def _abandon_process(self, handle: ProcessHandle):
        """Best-effort offline when a process cannot be confirmed dead."""
        if self.handle is not handle:
            return
        self.handle = None
        self._cancel_io_tasks()
        self.tracker.clear_server_players(self.server_id)
        await self._set_status(STATUS_OFFLINE, update_pid=True)

    async def restart(self) -> dict:
        await self.stop()
        await asyncio.sleep(RESTART_DELAY_SEC)
        return await self.start()

    async def destroy(self):
        """Tear down without waiting: kill any live process and cancel background tasks."""
        self._stop_sampling()
        handle = self.handle
        if handle is not None and self.status != STATUS_OFFLINE:
            self._send_signal(handle.process, force=True)
        self.handle = None
        self._cancel_io_tasks()
        self._line_listeners.clear()
        self.status = STATUS_OFFLINE
        audit_log.close_console_file_logger(self.server_id)

    def _cancel_io_tasks(self):
        current = asyncio.current_task()
        for task in [*self._reader_tasks, self._exit_task]:
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader_tasks = []
        self._exit_task = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send_command(self, command: str) -> dict:
        command = command.strip()
        if not command:
            raise ValidationError("COMMAND_EMPTY", "Command must not be empty",
                                  "Enter a command", {"server_id": self.server_id})
        if "\n" in command or "\r" in command:
            raise ValidationError("COMMAND_MULTILINE", "Command must be a single line",
                                  "Send each command separately", {"server_id": self.server_id})

        handle = self.handle
        if handle is None or self.status not in COMMAND_STATUSES:
            raise server_error("command", f"Cannot send command: server is {self.status}", self.server_id,
                               "Start the server before sending commands", error_cls=ConflictError)

        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            raise server_error("command", "Server process stdin is not available", self.server_id,
                               "Restart the server", error_cls=OperationError)

        try:
            stdin.write(f"{command}\n".encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise server_error("command", f"could not write to server process: {e}", self.server_id,
                               "Restart the server") from e

        await self._record_line(f"> {command}", LEVEL_INFO, notify_listeners=False)
        await self.bus.emit(events.COMMAND, self.server_id, command=command)
        return {"success": True, "command": command}

    # ------------------------------------------------------------------
    # Output pipeline
    # ------------------------------------------------------------------

    def add_line_listener(self, listener: LineListener):
        self._line_listeners.append(listener)

    def remove_line_listener(self, listener: LineListener):
        if listener in self._line_listeners:
            self._line_listeners.remove(listener)

    async def _read_stream(self, stream: Optional[asyncio.StreamReader], default_level: str):
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning(f"Server {self.server_id}: dropped an over-long output line")
                continue
            if not raw:
                break
            try:
                await self.handle_output_line(raw.decode("utf-8", errors="replace"), default_level)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error(f"Error handling output of server {self.server_id}", exc_info=True)

    async def handle_output_line(self, raw: str, default_level: str = LEVEL_INFO):
        text = strip_ansi(raw).rstrip()
        if not text.strip():
            return

        classified = self.classifier.classify(text, default_level)
        if classified.kind == LineKind.IGNORABLE:
            return

        if classified.kind == LineKind.AUTH_REQUIRED and self.status in (STATUS_STARTING, STATUS_ONLINE):
            logger.warning(f"Server {self.server_id} requires authentication")
            await self._set_status(STATUS_AUTH_REQUIRED)
        elif classified.kind == LineKind.AUTH_SUCCESS and self.status == STATUS_AUTH_REQUIRED:
            logger.info(f"Server {self.server_id} authenticated")
            await self._set_status(STATUS_ONLINE)

        await self._record_line(text, classified.level)

    async def _record_line(self, text: str, level: str, notify_listeners: bool = True) -> dict:
        timestamp = time.time()
        entry = {"id": None, "server_id": self.server_id, "timestamp": timestamp, "level": level, "message": text}

        try:
            entry["id"] = panel_db.insert_log_entry(self.server_id, level, text, timestamp)
        except sqlite3.Error:
            logger.error(f"Failed to persist console line for server {self.server_id}", exc_info=True)

        try:
            audit_log.write_console_line(self.server_id, level, text)
        except OSError as e:
            logger.warning(f"Failed to write console file for server {self.server_id}: {e}")

        if notify_listeners:
            line = ConsoleLine(self.server_id, text, level, timestamp)
            for listener in list(self._line_listeners):
                try:
                    listener(line)
                except Exception:
                    logger.error(f"Line listener failed for server {self.server_id}", exc_info=True)

        await self.bus.emit(events.LOG, self.server_id, entry=entry)
        return entry

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------

    async def _watch_exit(self, process: asyncio.subprocess.Process):
        returncode = await process.wait()
        readers = [t for t in self._reader_tasks if not t.done()]
        if readers:
            _, pending = await asyncio.wait(readers, timeout=OUTPUT_DRAIN_TIMEOUT_SEC)
            for task in pending:
                task.cancel()
        await self._handle_process_exit(process, returncode)

    async def _handle_process_exit(self, process: asyncio.subprocess.Process, returncode: Optional[int]):
        # Already handled, or a newer process owns this instance
        if self.handle is None or self.handle.process is not process:
            return

        was_stopping = self.status == STATUS_STOPPING
        self._stop_sampling()
        self.handle = None
        self._cancel_io_tasks()
        left = self.tracker.clear_server_players(self.server_id)

        exit_code, signal_name = returncode, None
        if returncode is not None and returncode < 0:
            exit_code = None
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)

        await self._set_status(STATUS_OFFLINE, update_pid=True)

        for name in left:
            await self.bus.emit(events.PLAYER_LEAVE, self.server_id, player=name)
        await self.bus.emit(events.EXIT, self.server_id, code=exit_code, signal=signal_name)

        if was_stopping or returncode == 0:
            logger.info(f"Server {self.server_id} exited (code={exit_code}, signal={signal_name})")
        else:
            logger.warning(f"Server {self.server_id} exited unexpectedly (code={exit_code}, signal={signal_name})")

    # ------------------------------------------------------------------
    # Resource sampling
    # ------------------------------------------------------------------

    def _start_sampling(self):
        self._stop_sampling()
        self._sample_task = asyncio.create_task(self._sample_loop())

    def _stop_sampling(self):
        task = self._sample_task
        self._sample_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _take_sample(self, proc: psutil.Process, handle: ProcessHandle) -> dict:
        cores = psutil.cpu_count(logical=True) or 1
        cpu = min(100.0, max(0.0, proc.cpu_percent(interval=None) / cores))
        memory_mb = proc.memory_info().rss / 1024 / 1024
        return {
            "cpu": round(cpu, 1),
            "memory": round(memory_mb, 1),
            "uptime": round(time.time() - handle.started_at, 1),
            "players": self.tracker.get_player_count(self.server_id),
            "max_players": self.config.max_players,
        }

    @staticmethod
    def _primed_process(pid: int) -> psutil.Process:
        proc = psutil.Process(pid)
        # First cpu_percent call always returns 0; later calls measure from here
        proc.cpu_percent(interval=None)
        return proc

    async def _sample_loop(self):
        """Sample CPU/RSS every SAMPLE_INTERVAL_SEC while online."""
        proc: Optional[psutil.Process] = None
        if self.handle is not None:
            try:
                proc = self._primed_process(self.handle.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                # Retried on the first tick
                logger.debug(f"Could not prime sampling for server {self.server_id}: {e}")

        while True:
            await asyncio.sleep(SAMPLE_INTERVAL_SEC)
            handle = self.handle
            if handle is None or self.status != STATUS_ONLINE:
                continue

            try:
                if proc is None or proc.pid != handle.pid:
                    proc = self._primed_process(handle.pid)
                    continue
                sample = self._take_sample(proc, handle)
            except psutil.NoSuchProcess:
                logger.info(f"Server {self.server_id} process {handle.pid} is gone")
                await self._handle_process_exit(handle.process, handle.process.returncode)
                return
            except psutil.AccessDenied:
                logger.warning(f"Access denied sampling server {self.server_id} (PID {handle.pid})")
                continue
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error(f"Error sampling server {self.server_id}", exc_info=True)
                continue

            try:
                panel_db.insert_resource_sample(
                    self.server_id, sample["cpu"], sample["memory"], sample["players"], sample["max_players"]
                )
            except sqlite3.Error:
                logger.error(f"Failed to persist stats for server {self.server_id}", exc_info=True)

            await self.bus.emit(events.STATS, self.server_id, **sample)
