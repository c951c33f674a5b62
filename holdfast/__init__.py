from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from holdfast.core.config import APP_VERSION, ENV_FILE, resolve_config_file
from holdfast.core.errors import HoldfastError


def _lifespan(config_file: Optional[str]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan event handler for startup/shutdown."""
        from holdfast.core.auth import ensure_token
        from holdfast.core.backup_config import load_backup_config
        from holdfast.services import backup_service

        ensure_token()
        config = load_backup_config(resolve_config_file(config_file))
        await backup_service.start_service(config)

        yield

        await backup_service.stop_service()

    return lifespan


def create_app(config_file: Optional[str] = None, start_service: bool = True):
    """FastAPI application factory."""
    load_dotenv(dotenv_path=ENV_FILE)

    app = FastAPI(
        title="holdfast",
        version=APP_VERSION,
        docs_url=None,
        redoc_url=None,
        lifespan=_lifespan(config_file) if start_service else None,
    )

    @app.exception_handler(HoldfastError)
    async def holdfast_error_handler(request: Request, exc: HoldfastError):
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    from holdfast.routers import backups

    app.include_router(backups.router, tags=["Backups"])

    return app
