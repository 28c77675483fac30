from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import func
from sqlmodel import Session, select

from zimshelf.database import get_session
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.schemas.server import DiskUsageOut, ServerStatusOut
from zimshelf.services import disk_space, kiwix_supervisor

router = APIRouter(prefix="/server", tags=["server"])


@router.get("/status", response_model=ServerStatusOut)
def server_status(session: Session = Depends(get_session)) -> ServerStatusOut:
    status = kiwix_supervisor.get_supervisor().status()
    quarantined = session.exec(
        select(func.count())
        .select_from(ZimArchive)
        .where(ZimArchive.status == ArchiveStatus.QUARANTINED)
    ).one()
    return ServerStatusOut(
        state=status.state,
        pid=status.pid,
        port=status.port,
        archive_count=status.archive_count,
        uptime_seconds=status.uptime_seconds,
        last_exit_code=status.last_exit_code,
        quarantined_count=quarantined,
    )


@router.post("/restart", response_model=ServerStatusOut)
async def restart_server(session: Session = Depends(get_session)) -> ServerStatusOut:
    started = await kiwix_supervisor.get_supervisor().restart()
    if not started:
        raise HTTPException(503, "kiwix-serve could not be started (no active archives?)")
    return server_status(session)


@router.get("/disk", response_model=DiskUsageOut)
def disk_usage() -> DiskUsageOut:
    disk = disk_space.check_available()
    return DiskUsageOut(
        available_bytes=disk.available_bytes,
        total_bytes=disk.total_bytes,
        used_bytes=disk.used_bytes,
    )
