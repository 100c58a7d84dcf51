# serverpanel/routers/servers.py
"""
Server lifecycle, console and live event endpoints.

Thin JSON layer over the ServerManager stored on app.state. Typed panel
errors are rendered by the exception handler registered in create_app().
"""

import asyncio
import logging
import re

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from serverpanel.core.errors import ValidationError
from serverpanel.services.events import PanelEvent
from serverpanel.services.server_manager import ServerManager

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 256
MAX_QUERY_LIMIT = 1000
WS_HEARTBEAT_SEC = 30.0

router = APIRouter()


def get_manager(request: Request) -> ServerManager:
    return request.app.state.server_manager


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("INVALID_BODY", "Request body must be valid JSON", "Send a JSON object")
    if not isinstance(body, dict):
        raise ValidationError("INVALID_BODY", "Request body must be a JSON object", "Send a JSON object")
    return body


def _clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_QUERY_LIMIT))


@router.get("/api/servers")
async def list_servers(manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "servers": manager.get_all_servers()})


@router.post("/api/servers")
async def create_server(request: Request, manager: ServerManager = Depends(get_manager)):
    body = await _json_body(request)
    server = await manager.create_server(body)
    return JSONResponse({"status": "ok", "server": server}, status_code=201)


@router.get("/api/servers/{server_id}")
async def get_server(server_id: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "server": manager.get_server(server_id)})


@router.patch("/api/servers/{server_id}")
async def update_server(server_id: str, request: Request, manager: ServerManager = Depends(get_manager)):
    body = await _json_body(request)
    server = await manager.update_server_config(server_id, body)
    return JSONResponse({"status": "ok", "server": server})


@router.delete("/api/servers/{server_id}")
async def delete_server(server_id: str, manager: ServerManager = Depends(get_manager)):
    await manager.delete_server(server_id)
    return JSONResponse({"status": "ok"})


@router.post("/api/servers/{server_id}/start")
async def start_server(server_id: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "server": await manager.start_server(server_id)})


@router.post("/api/servers/{server_id}/stop")
async def stop_server(server_id: str, force: bool = False, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "server": await manager.stop_server(server_id, force=force)})


@router.post("/api/servers/{server_id}/restart")
async def restart_server(server_id: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "server": await manager.restart_server(server_id)})


@router.post("/api/servers/{server_id}/install")
async def install_server(server_id: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "result": await manager.install_server(server_id)})


@router.post("/api/servers/{server_id}/command")
async def send_command(server_id: str, request: Request, manager: ServerManager = Depends(get_manager)):
    body = await _json_body(request)
    command = str(body.get("command", ""))
    # Strip control characters, cap length
    command = re.sub(r"[\x00-\x1f\x7f]", "", command).strip()[:MAX_COMMAND_LENGTH]
    result = await manager.send_command(server_id, command)
    return JSONResponse({"status": "ok", **result})


@router.get("/api/servers/{server_id}/logs")
async def get_logs(server_id: str, limit: int = 100, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "logs": manager.get_logs(server_id, _clamp_limit(limit))})


@router.get("/api/servers/{server_id}/stats")
async def get_stats(server_id: str, limit: int = 100, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "stats": manager.get_stats(server_id, _clamp_limit(limit))})


@router.get("/api/servers/{server_id}/players")
async def get_players(server_id: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "players": manager.get_players(server_id)})


@router.post("/api/servers/{server_id}/refresh-players")
async def refresh_players(server_id: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse(await manager.refresh_players(server_id))


@router.get("/api/servers/{server_id}/worlds")
async def list_worlds(server_id: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "worlds": manager.get_worlds(server_id)})


@router.get("/api/servers/{server_id}/worlds/{world}/config")
async def get_world_config(server_id: str, world: str, manager: ServerManager = Depends(get_manager)):
    return JSONResponse({"status": "ok", "config": manager.get_world_config(server_id, world)})


@router.put("/api/servers/{server_id}/worlds/{world}/config")
async def update_world_config(
    server_id: str, world: str, request: Request, manager: ServerManager = Depends(get_manager)
):
    body = await _json_body(request)
    config = await manager.update_world_config(server_id, world, body)
    return JSONResponse({"status": "ok", "config": config})


@router.websocket("/ws/events")
async def websocket_events(websocket: WebSocket):
    """Stream panel events as JSON. Optional ?server_id= narrows to one server."""
    manager: ServerManager = websocket.app.state.server_manager
    server_filter = websocket.query_params.get("server_id")
    await websocket.accept()

    event_queue: asyncio.Queue = asyncio.Queue()

    # Enqueue only, so per-server emission order is kept
    def on_event(event: PanelEvent):
        if server_filter is None or event.server_id == server_filter:
            event_queue.put_nowait(event.to_dict())

    manager.bus.subscribe(on_event)

    try:
        while True:
            try:
                payload = await asyncio.wait_for(event_queue.get(), timeout=WS_HEARTBEAT_SEC)
                await websocket.send_json(payload)
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat"})
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.debug("Events WebSocket error", exc_info=True)
    finally:
        manager.bus.unsubscribe(on_event)
