# holdfast/routers/backups.py
"""
Backup control routes.

/health is open so container health checks can poll it; everything under
/api needs the bearer token.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from holdfast.core.auth import require_token
from holdfast.services.backup_service import BackupService, container_status, get_backup_service

logger = logging.getLogger(__name__)

router = APIRouter()

def _service() -> BackupService:
    service = get_backup_service()
    if service is None:
        raise HTTPException(status_code=503, detail="Backup service is not running")
    return service


def _spawn(service: BackupService, coro):
    # Requests outlive the HTTP call; the service holds the task until it ends
    return service.track(asyncio.create_task(coro))


@router.get("/health")
async def health():
    service = get_backup_service()
    healthy = service is not None and service.actor.health_file.exists()
    return JSONResponse({"status": "ok" if healthy else "unhealthy"}, status_code=200 if healthy else 503)


@router.get("/api/status")
async def get_status(token: str = Depends(require_token)):
    return JSONResponse({"status": "ok", **_service().get_status()})


@router.get("/api/containers")
async def list_containers(token: str = Depends(require_token)):
    service = _service()
    return JSONResponse({"status": "ok", "containers": [container_status(c) for c in service.containers]})


@router.post("/api/backup")
async def backup_all(token: str = Depends(require_token)):
    """Start a full pass over every container"""
    service = _service()
    _spawn(service, service.actor.backup_all_containers())
    return JSONResponse({"status": "accepted"}, status_code=202)


@router.post("/api/backup/{container_name}")
async def backup_one(container_name: str, token: str = Depends(require_token)):
    """Start a backup of one container"""
    service = _service()
    container = service.actor.find(container_name)
    if container is None:
        raise HTTPException(status_code=404, detail=f"Unknown container: {container_name}")
    _spawn(service, service.actor.backup_container(container))
    return JSONResponse({"status": "accepted", "container": container_name}, status_code=202)
