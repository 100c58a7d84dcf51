import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from serverpanel.core import config as panel_config
from serverpanel.core.config import APP_VERSION, ENV_FILE, LOG_LEVEL
from serverpanel.core.errors import PanelError, internal_error_payload

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup/shutdown."""
    from serverpanel.services import panel_db
    from serverpanel.services.server_manager import ServerManager

    panel_db.init_db()

    manager = ServerManager()
    app.state.server_manager = manager
    await manager.start(autostart=app.state.autostart)
    logger.info("Server manager started")

    yield

    await manager.shutdown()
    logger.info("Panel shutting down")


def create_app(autostart: bool = True):
    """FastAPI application factory."""
    load_dotenv(dotenv_path=ENV_FILE)
    logging.getLogger("serverpanel").setLevel(LOG_LEVEL)

    app = FastAPI(
        title="Game Server Panel",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.autostart = autostart

    @app.exception_handler(PanelError)
    async def panel_error_handler(request: Request, exc: PanelError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"status": "error", **exc.to_dict()})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}", exc_info=exc)
        return JSONResponse(status_code=500, content={"status": "error", **internal_error_payload()})

    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=panel_config.ALLOWED_HOSTS,
    )

    from serverpanel.routers import servers

    app.include_router(servers.router, tags=["Servers"])

    return app
