import hmac
from typing import Optional
from fastapi import APIRouter, Depends, Header, Request
from mirror_sync.core.config import get_settings
from mirror_sync.core.exceptions import AdminAccessDeniedError
from mirror_sync.workers.mirror_worker import MirrorWorker


async def require_admin(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")):
    expected = get_settings().ADMIN_TOKEN
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise AdminAccessDeniedError()


def get_mirror_worker(request: Request) -> MirrorWorker:
    return request.app.state.mirror_worker


router = APIRouter(prefix="/mirror", dependencies=[Depends(require_admin)])


@router.post("/start")
async def start_worker(worker: MirrorWorker = Depends(get_mirror_worker)):
    await worker.start()
    return {"success": True, "message": "Mirror worker started", "status": worker.get_status()}


@router.post("/stop")
async def stop_worker(worker: MirrorWorker = Depends(get_mirror_worker)):
    await worker.stop()
    return {"success": True, "message": "Mirror worker stopped", "status": worker.get_status()}


@router.get("/status")
async def worker_status(worker: MirrorWorker = Depends(get_mirror_worker)):
    return {"success": True, "status": worker.get_status()}


@router.get("/health")
async def worker_health(worker: MirrorWorker = Depends(get_mirror_worker)):
    return await worker.get_health_status()
