# serverpanel/services/server_manager.py
"""
Fleet Coordinator

Owns one ServerInstance per server id and everything that spans servers:
- boot recovery (interrupted installs, stale statuses, config repair)
- per-id serialization of start/stop/restart/install/config/delete
- autostart after boot
- player roster polling and presence reconciliation
- backup retention

Lifecycle: start() / shutdown() - called from the app lifespan.
"""

import asyncio
import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from serverpanel.core.config import BACKUP_DIR, SERVERS_DIR, load_console_rules
from serverpanel.core.errors import (
    ConflictError,
    PanelError,
    ServerNotFoundError,
    config_error,
    filesystem_error,
)
from serverpanel.services import audit_log, config_store, events, panel_db, world_config
from serverpanel.services.backup_retention import cleanup_old_backups
from serverpanel.services.config_store import ServerConfig, default_server_root
from serverpanel.services.console_text import OutputClassifier, build_classifier
from serverpanel.services.events import EventBus
from serverpanel.services.installer import Installer
from serverpanel.services.launch_args import server_backup_dir
from serverpanel.services.player_list import PlayerListParser, RosterMatch, build_parser
from serverpanel.services.player_tracker import PlayerTracker, PresenceChange
from serverpanel.services.server_instance import (
    RUNNING_STATUSES,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    ConsoleLine,
    ServerInstance,
)

logger = logging.getLogger(__name__)

AUTOSTART_DELAY_SEC = float(os.getenv("AUTOSTART_DELAY_SEC", "2"))
PLAYER_POLL_INTERVAL_SEC = float(os.getenv("PLAYER_POLL_INTERVAL_SEC", "300"))
PLAYER_POLL_WARMUPS_SEC = (30, 120)
ROSTER_COMMAND = os.getenv("ROSTER_COMMAND", "who")
ROSTER_RESPONSE_WINDOW_SEC = float(os.getenv("ROSTER_RESPONSE_WINDOW_SEC", "10"))
ROSTER_SETTLE_SEC = float(os.getenv("ROSTER_SETTLE_SEC", "0.5"))
BACKUP_RETENTION_INTERVAL_SEC = float(os.getenv("BACKUP_RETENTION_INTERVAL_SEC", "3600"))
BACKUP_RETENTION_WARMUP_SEC = float(os.getenv("BACKUP_RETENTION_WARMUP_SEC", "60"))

# Config fields that only take effect on the next launch
_LAUNCH_FIELDS = frozenset(ServerConfig.__dataclass_fields__) - {"id", "path", "name", "autostart"}
_EDITABLE_FIELDS = frozenset(ServerConfig.__dataclass_fields__) - {"id", "path"}
_RECORD_FIELDS = ("name", "ip", "port", "version", "max_memory", "max_players", "autostart")


class ServerManager:
    def __init__(
        self,
        bus: Optional[EventBus] = None,
        tracker: Optional[PlayerTracker] = None,
        installer: Optional[Installer] = None,
        classifier: Optional[OutputClassifier] = None,
        parser: Optional[PlayerListParser] = None,
    ):
        self.bus = bus or EventBus()
        self.tracker = tracker or PlayerTracker()
        self.installer = installer or Installer(self.bus)

        extra_rules = load_console_rules() if classifier is None or parser is None else {}
        self.classifier = classifier or build_classifier(extra_rules)
        self.parser = parser or build_parser(extra_rules)

        self.instances: Dict[str, ServerInstance] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: List[asyncio.Task] = []
        self._started = False

    # =========================================================================
    # Boot & shutdown
    # =========================================================================

    async def start(self, autostart: bool = True):
        """Recover persisted state, then start background tasks."""
        if self._started:
            return
        self._started = True

        await self.installer.recover_interrupted_installations()
        self.restore_servers()

        self._tasks.append(asyncio.create_task(self._player_poll_loop()))
        self._tasks.append(asyncio.create_task(self._backup_retention_loop()))
        if autostart:
            self._tasks.append(asyncio.create_task(self._autostart_servers()))

        logger.info(f"Server manager started with {len(self.instances)} server(s)")

    async def shutdown(self):
        for task in self._tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._tasks = []

        for server_id, instance in list(self.instances.items()):
            if instance.status != STATUS_OFFLINE:
                try:
                    await instance.stop(force=True)
                except PanelError as e:
                    logger.error(f"Failed to stop server {server_id} during shutdown: {e.message}")
            await instance.destroy()
        audit_log.close_file_loggers()

        self._started = False
        logger.info("Server manager stopped")

    def restore_servers(self):
        for record in panel_db.get_all_server_records():
            try:
                self._restore_server(record)
            except Exception:
                logger.error(f"Failed to restore server {record['id']}", exc_info=True)

    def _restore_server(self, record: dict):
        server_id = record["id"]
        root = record.get("server_root") or str(default_server_root(server_id))

        if record["status"] in RUNNING_STATUSES:
            # The panel process that owned this server's handle is gone
            logger.warning(f"Server {server_id} was {record['status']} before restart, marking offline")
            panel_db.update_status(server_id, STATUS_OFFLINE, None)

        config = config_store.load_config(server_id, root)
        if config is not None:
            if self._repair_config(config, record, root):
                config_store.save_config(config)
                logger.info(f"Repaired configuration of server {server_id} from database record")
        elif Path(root).expanduser().is_dir():
            config = self._config_from_record(record, root)
            config_store.save_config(config)
            logger.info(f"Rebuilt missing configuration of server {server_id}")
        else:
            logger.warning(f"Skipping server {server_id}: no configuration and no directory at {root}")
            return

        self._validate_config(config, server_id, check_ports=False)
        self.instances[server_id] = ServerInstance(config, self.tracker, self.bus, self.classifier)

    @staticmethod
    def _config_from_record(record: dict, root: str) -> ServerConfig:
        return ServerConfig(
            id=record["id"],
            name=record["name"],
            path=root,
            ip=record.get("ip") or "0.0.0.0",
            port=record["port"],
            max_memory=record.get("max_memory") or config_store.DEFAULT_MAX_MEMORY,
            max_players=record.get("max_players") or config_store.DEFAULT_MAX_PLAYERS,
            version=record.get("version"),
            autostart=bool(record.get("autostart")),
        )

    @staticmethod
    def _repair_config(config: ServerConfig, record: dict, root: str) -> bool:
        expected = {
            "id": record["id"],
            "name": record["name"],
            "ip": record.get("ip") or "0.0.0.0",
            "port": record["port"],
            "max_memory": record.get("max_memory") or config_store.DEFAULT_MAX_MEMORY,
            "max_players": record.get("max_players") or config_store.DEFAULT_MAX_PLAYERS,
            "path": root,
        }
        changed = False
        for name, value in expected.items():
            if getattr(config, name) != value:
                setattr(config, name, value)
                changed = True
        return changed

    def _validate_config(self, config: ServerConfig, server_id: Optional[str] = None, check_ports: bool = True):
        if not str(config.name).strip():
            raise config_error("validate", "name is required", server_id)
        if not isinstance(config.port, int) or not 1 <= config.port <= 65535:
            raise config_error("validate", f"port must be between 1 and 65535, got {config.port!r}", server_id)
        if not isinstance(config.max_memory, int) or config.max_memory < 512:
            raise config_error("validate", "max_memory must be at least 512 MB", server_id)
        if not isinstance(config.max_players, int) or config.max_players < 1:
            raise config_error("validate", "max_players must be at least 1", server_id)
        if not isinstance(config.args, list) or not isinstance(config.env, dict):
            raise config_error("validate", "args must be a list and env a mapping", server_id)
        if any("\0" in str(arg) for arg in config.args):
            raise config_error("validate", "args must not contain NUL characters", server_id)
        for key, value in config.env.items():
            if not str(key) or "=" in str(key) or "\0" in str(key):
                raise config_error("validate", f"invalid environment variable name {key!r}", server_id)
            if "\0" in str(value):
                raise config_error("validate", f"environment variable {key} contains a NUL character", server_id)
        for other_id, other in self.instances.items():
            if check_ports and other_id != config.id and other.config.port == config.port:
                raise config_error("validate", f"port {config.port} is already used by {other.config.name}", server_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lock_for(self, server_id: str) -> asyncio.Lock:
        return self._locks.setdefault(server_id, asyncio.Lock())

    def get_instance(self, server_id: str) -> ServerInstance:
        instance = self.instances.get(server_id)
        if instance is None:
            raise ServerNotFoundError(server_id)
        return instance

    @staticmethod
    async def _audited(action: str, server_id: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await operation()
        except PanelError as e:
            audit_log.audit_event(action=action, server_id=server_id, result="failed", extra={"code": e.code})
            raise
        audit_log.audit_event(action=action, server_id=server_id, result="ok")
        return result

    # =========================================================================
    # Lifecycle operations (serialized per id)
    # =========================================================================

    async def start_server(self, server_id: str) -> dict:
        async with self._lock_for(server_id):
            instance = self.get_instance(server_id)
            return await self._audited("start", server_id, instance.start)

    async def stop_server(self, server_id: str, force: bool = False) -> dict:
        async with self._lock_for(server_id):
            instance = self.get_instance(server_id)
            return await self._audited("stop", server_id, lambda: instance.stop(force=force))

    async def restart_server(self, server_id: str) -> dict:
        # The lock spans stop, delay and start
        async with self._lock_for(server_id):
            instance = self.get_instance(server_id)
            return await self._audited("restart", server_id, instance.restart)

    async def install_server(self, server_id: str) -> dict:
        async with self._lock_for(server_id):
            instance = self.get_instance(server_id)
            if instance.status != STATUS_OFFLINE:
                raise ConflictError(
                    "SERVER_INSTALL_FAILED",
                    f"Server install failed: server is {instance.status}",
                    "Stop the server before installing",
                    {"server_id": server_id},
                )
            return await self._audited("install", server_id, lambda: self.installer.install_server(server_id))

    async def send_command(self, server_id: str, command: str) -> dict:
        instance = self.get_instance(server_id)
        return await self._audited("command", server_id, lambda: instance.send_command(command))

    # =========================================================================
    # Fleet CRUD
    # =========================================================================

    async def create_server(self, data: dict) -> dict:
        unknown = set(data) - _EDITABLE_FIELDS
        if unknown:
            raise config_error("create", f"unknown fields: {', '.join(sorted(unknown))}")

        server_id = str(uuid.uuid4())
        root = default_server_root(server_id)
        config = ServerConfig.from_dict({
            "port": config_store.DEFAULT_PORT,
            "backup_enabled": True,
            "aot_cache_enabled": False,
            **data,
            "id": server_id,
            "name": str(data.get("name", "")).strip(),
            "path": str(root),
        })
        self._validate_config(config)

        try:
            root.mkdir(parents=True, exist_ok=True)
            server_backup_dir(BACKUP_DIR, server_id).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise filesystem_error("create", str(root), str(e)) from e

        config_store.save_config(config)
        panel_db.create_server_record({
            "id": server_id,
            "name": config.name,
            "ip": config.ip,
            "port": config.port,
            "version": config.version,
            "max_memory": config.max_memory,
            "max_players": config.max_players,
            "server_root": str(root),
            "autostart": config.autostart,
        })
        self.instances[server_id] = ServerInstance(config, self.tracker, self.bus, self.classifier)

        audit_log.audit_event(action="create", server_id=server_id, result="ok", extra={"name": config.name})
        logger.info(f"Created server {server_id} ({config.name}) at {root}")
        return self.get_server(server_id)

    async def update_server_config(self, server_id: str, updates: dict) -> dict:
        async with self._lock_for(server_id):
            instance = self.get_instance(server_id)

            unknown = set(updates) - _EDITABLE_FIELDS
            if unknown:
                raise config_error("update", f"unknown fields: {', '.join(sorted(unknown))}", server_id)
            if instance.status != STATUS_OFFLINE and set(updates) & _LAUNCH_FIELDS:
                raise ConflictError(
                    "CONFIG_UPDATE_FAILED",
                    f"Configuration update failed: server is {instance.status}",
                    "Stop the server before changing launch settings",
                    {"server_id": server_id, "fields": sorted(set(updates) & _LAUNCH_FIELDS)},
                )

            merged = ServerConfig.from_dict({**instance.config.to_dict(), **updates})
            self._validate_config(merged, server_id)

            config_store.save_config(merged)
            panel_db.update_server_fields(server_id, **{f: getattr(merged, f) for f in _RECORD_FIELDS})
            instance.config = merged

        audit_log.audit_event(action="update", server_id=server_id, result="ok", extra={"fields": sorted(updates)})
        return self.get_server(server_id)

    async def delete_server(self, server_id: str):
        async with self._lock_for(server_id):
            instance = self.instances.get(server_id)
            record = panel_db.get_server_record(server_id)
            if instance is None and record is None:
                raise ServerNotFoundError(server_id)

            if instance is not None:
                if instance.status != STATUS_OFFLINE:
                    await instance.stop(force=True)
                await instance.destroy()
                del self.instances[server_id]

            root_value = (record or {}).get("server_root") or (instance.config.path if instance else None)
            root = Path(root_value).expanduser() if root_value else default_server_root(server_id)

            panel_db.delete_server_record(server_id)
            config_store.delete_config(server_id, str(root))
            self.tracker.clear_server_players(server_id)

            servers_dir = SERVERS_DIR.resolve()
            resolved = root.resolve()
            if resolved != servers_dir and resolved.is_relative_to(servers_dir) and resolved.exists():
                try:
                    await asyncio.to_thread(shutil.rmtree, resolved)
                except OSError as e:
                    logger.warning(f"Could not remove directory of server {server_id}: {e}")
            else:
                logger.info(f"Leaving directory {root} of server {server_id} in place (outside {SERVERS_DIR})")

        self._locks.pop(server_id, None)
        audit_log.audit_event(action="delete", server_id=server_id, result="ok")
        logger.info(f"Deleted server {server_id}")

    # =========================================================================
    # Queries
    # =========================================================================

    def _merge_live(self, record: dict) -> dict:
        data = dict(record)
        instance = self.instances.get(record["id"])
        if instance is not None:
            data["status"] = instance.status
            data["pid"] = instance.pid
            data["uptime"] = round(instance.get_uptime(), 1)
        else:
            data["uptime"] = 0
        data["players"] = self.tracker.get_player_count(record["id"])
        return data

    def get_server(self, server_id: str) -> dict:
        record = panel_db.get_server_record(server_id)
        if record is None:
            raise ServerNotFoundError(server_id)
        return self._merge_live(record)

    def get_all_servers(self) -> List[dict]:
        return [self._merge_live(r) for r in panel_db.get_all_server_records()]

    def get_players(self, server_id: str) -> List[dict]:
        self.get_instance(server_id)
        return [p.to_dict() for p in self.tracker.get_players(server_id)]

    def get_logs(self, server_id: str, limit: int = 100) -> List[dict]:
        self.get_server(server_id)
        return panel_db.get_recent_log_entries(server_id, limit)

    def get_stats(self, server_id: str, limit: int = 100) -> List[dict]:
        self.get_server(server_id)
        return panel_db.get_resource_samples(server_id, limit)

    # =========================================================================
    # World configuration
    # =========================================================================

    def _server_root(self, server_id: str) -> Path:
        instance = self.get_instance(server_id)
        record = panel_db.get_server_record(server_id) or {}
        return Path(record.get("server_root") or instance.config.path).expanduser()

    def get_worlds(self, server_id: str) -> List[str]:
        return world_config.list_worlds(self._server_root(server_id))

    def get_world_config(self, server_id: str, world: str) -> dict:
        return world_config.read_world_config(self._server_root(server_id), world, server_id)

    async def update_world_config(self, server_id: str, world: str, updates: dict) -> dict:
        async with self._lock_for(server_id):
            root = self._server_root(server_id)
            instance = self.get_instance(server_id)
            if instance.status != STATUS_OFFLINE:
                raise ConflictError(
                    "CONFIG_WRITE_FAILED",
                    f"Cannot modify world config while server is {instance.status}",
                    "Stop the server first before modifying world configuration",
                    {"server_id": server_id, "world": world},
                )
            merged = world_config.write_world_config(root, world, updates, server_id)

        audit_log.audit_event(action="world_config", server_id=server_id, result="ok",
                              extra={"world": world, "fields": sorted(updates)})
        return merged

    # =========================================================================
    # Player roster polling
    # =========================================================================

    async def _reconcile_players(self, server_id: str, names: List[str]) -> PresenceChange:
        change = self.tracker.update_players_from_list(server_id, names)
        for name in change.left:
            await self.bus.emit(events.PLAYER_LEAVE, server_id, player=name)
        for name in change.joined:
            await self.bus.emit(events.PLAYER_JOIN, server_id, player=name)
        if change.changed:
            logger.info(f"Server {server_id} players: +{change.joined} -{change.left}")
        return change

    async def poll_server_players(self, instance: ServerInstance) -> Optional[PresenceChange]:
        """Send the roster command and reconcile presence from the response lines.

        Only lines printed after the command, within the response window, are
        considered. Returns None when no roster response arrived.
        """
        matches: asyncio.Queue = asyncio.Queue()

        def _on_line(line: ConsoleLine):
            match = self.parser.match_line(line.text)
            if match is not None:
                matches.put_nowait(match)

        loop = asyncio.get_running_loop()
        instance.add_line_listener(_on_line)
        try:
            await instance.send_command(ROSTER_COMMAND)
            deadline = loop.time() + ROSTER_RESPONSE_WINDOW_SEC
            try:
                found: List[RosterMatch] = [await asyncio.wait_for(matches.get(), ROSTER_RESPONSE_WINDOW_SEC)]
            except asyncio.TimeoutError:
                logger.debug(f"No roster response from server {instance.server_id}")
                return None

            # Multi-world servers answer with one line per world
            while loop.time() < deadline:
                try:
                    found.append(await asyncio.wait_for(matches.get(), ROSTER_SETTLE_SEC))
                except asyncio.TimeoutError:
                    break
        finally:
            instance.remove_line_listener(_on_line)

        names = list(dict.fromkeys(name for match in found for name in match.names))
        return await self._reconcile_players(instance.server_id, names)

    async def refresh_players(self, server_id: str) -> dict:
        """Poll one server's roster on demand."""
        instance = self.get_instance(server_id)
        if instance.status != STATUS_ONLINE:
            raise ConflictError(
                "SERVER_NOT_ONLINE",
                "Server must be online to refresh player list",
                "Start the server first",
                {"server_id": server_id, "status": instance.status},
            )

        change = await self.poll_server_players(instance)
        if change is None:
            return {
                "success": False,
                "message": "Could not find player list in server response",
                "players": 0,
                "playerNames": [],
            }
        names = self.tracker.get_player_names(server_id)
        return {"success": True, "message": "Player list refreshed", "players": len(names), "playerNames": names}

    async def poll_players(self):
        for server_id, instance in list(self.instances.items()):
            if instance.status != STATUS_ONLINE:
                continue
            try:
                await self.poll_server_players(instance)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(f"Player poll failed for server {server_id}", exc_info=True)

    async def _player_poll_loop(self):
        """Warmup polls shortly after boot, then every PLAYER_POLL_INTERVAL_SEC."""
        delays = [PLAYER_POLL_WARMUPS_SEC[0]]
        delays += [b - a for a, b in zip(PLAYER_POLL_WARMUPS_SEC, PLAYER_POLL_WARMUPS_SEC[1:])]

        while True:
            await asyncio.sleep(delays.pop(0) if delays else PLAYER_POLL_INTERVAL_SEC)
            try:
                await self.poll_players()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Error in player poll loop", exc_info=True)

    # =========================================================================
    # Background: backups & autostart
    # =========================================================================

    async def _backup_retention_loop(self):
        await asyncio.sleep(BACKUP_RETENTION_WARMUP_SEC)
        while True:
            try:
                await asyncio.to_thread(cleanup_old_backups, BACKUP_DIR)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Error in backup retention loop", exc_info=True)

            await asyncio.sleep(BACKUP_RETENTION_INTERVAL_SEC)

    async def _autostart_servers(self):
        await asyncio.sleep(AUTOSTART_DELAY_SEC)
        for record in panel_db.get_all_server_records():
            if not record["autostart"] or record["install_state"] != panel_db.INSTALL_INSTALLED:
                continue
            instance = self.instances.get(record["id"])
            if instance is None or instance.status != STATUS_OFFLINE:
                continue
            logger.info(f"Autostarting server {record['id']} ({record['name']})")
            try:
                await self.start_server(record["id"])
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(f"Autostart of server {record['id']} failed", exc_info=True)
