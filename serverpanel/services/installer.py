# serverpanel/services/installer.py
"""
Server installation bookkeeping.

Installation here means adopting server files that are already provisioned
in the server root (binary jar plus assets archive): the installer records
their paths and moves the install state through the atomic
NOT_INSTALLED/FAILED -> INSTALLING -> INSTALLED/FAILED path.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from serverpanel.core.errors import PanelError, ServerNotFoundError, install_error
from serverpanel.services import events, panel_db
from serverpanel.services.config_store import default_server_root
from serverpanel.services.events import EventBus

logger = logging.getLogger(__name__)

SERVER_JAR_NAME = "HytaleServer.jar"
ASSETS_NAME = "Assets.zip"
SEARCH_SUBDIRS = ("", "Server")

INTERRUPTED_MESSAGE = "Installation was interrupted due to panel restart. Please retry the installation."


def locate_server_files(root: Path) -> tuple[Optional[Path], Optional[Path]]:
    """Find the server jar and assets archive under root or root/Server."""
    jar_path = assets_path = None
    for subdir in SEARCH_SUBDIRS:
        base = root / subdir if subdir else root
        if jar_path is None and (base / SERVER_JAR_NAME).is_file():
            jar_path = base / SERVER_JAR_NAME
        if assets_path is None and (base / ASSETS_NAME).is_file():
            assets_path = base / ASSETS_NAME
    return jar_path, assets_path


class Installer:
    def __init__(self, bus: EventBus):
        self.bus = bus

    async def _progress(self, server_id: str, stage: str, progress: int, message: str):
        await self.bus.emit(
            events.INSTALL_PROGRESS,
            server_id,
            stage=stage,
            progress=progress,
            message=message,
        )

    async def recover_interrupted_installations(self) -> List[str]:
        """Mark installs left INSTALLING by a previous panel process as FAILED."""
        recovered = []
        for record in panel_db.get_all_server_records():
            if record["install_state"] != panel_db.INSTALL_INSTALLING:
                continue
            panel_db.update_install_state(record["id"], panel_db.INSTALL_FAILED, INTERRUPTED_MESSAGE)
            await self._progress(record["id"], "failed", 0, INTERRUPTED_MESSAGE)
            recovered.append(record["id"])

        if recovered:
            logger.warning(f"Recovered {len(recovered)} interrupted installation(s): {', '.join(recovered)}")
        return recovered

    async def install_server(self, server_id: str) -> dict:
        record = panel_db.get_server_record(server_id)
        if record is None:
            raise ServerNotFoundError(server_id)

        guard = panel_db.try_start_installation(server_id)
        if not guard["success"]:
            raise install_error(guard["reason"], server_id)

        root = Path(record.get("server_root") or default_server_root(server_id)).expanduser()
        await self._progress(server_id, "starting", 0, "Installation started")

        try:
            await self._progress(server_id, "locating", 30, f"Looking for server files in {root}")
            jar_path, assets_path = await asyncio.to_thread(locate_server_files, root)
            if jar_path is None:
                raise install_error(f"{SERVER_JAR_NAME} not found under {root}", server_id)
            if assets_path is None:
                raise install_error(f"{ASSETS_NAME} not found under {root}", server_id)

            panel_db.update_install_state(
                server_id,
                panel_db.INSTALL_INSTALLED,
                jar_path=str(jar_path),
                assets_path=str(assets_path),
                server_root=str(root),
            )
        except Exception as e:
            message = e.message if isinstance(e, PanelError) else str(e)
            logger.error(f"Installation of server {server_id} failed: {message}")
            panel_db.update_install_state(server_id, panel_db.INSTALL_FAILED, message)
            await self._progress(server_id, "failed", 0, message)
            raise

        await self._progress(server_id, "completed", 100, "Installation completed")
        logger.info(f"Server {server_id} installed from {root}")
        return {"success": True, "jar_path": str(jar_path), "assets_path": str(assets_path)}
