"""Registry operations on installed archives.

Every mutation that changes what kiwix-serve should load requests a
supervisor restart.
"""

import logging
from pathlib import Path

from sqlmodel import Session, col, select

from zimshelf.errors import ArchiveNotQuarantinedError
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.services import kiwix_supervisor
from zimshelf.services.activity_log import log_activity

logger = logging.getLogger(__name__)


def list_archives(
    session: Session,
    *,
    include_quarantined: bool = True,
    include_hidden: bool = True,
) -> list[ZimArchive]:
    query = select(ZimArchive)
    if not include_quarantined:
        query = query.where(ZimArchive.status == ArchiveStatus.ACTIVE)
    if not include_hidden:
        query = query.where(ZimArchive.hidden == False)  # noqa: E712
    return list(session.exec(query.order_by(col(ZimArchive.created_at).desc())).all())


def get_archive(session: Session, archive_id: int) -> ZimArchive | None:
    return session.get(ZimArchive, archive_id)


def update_metadata(
    session: Session,
    archive: ZimArchive,
    *,
    title: str | None = None,
    description: str | None = None,
    hidden: bool | None = None,
) -> ZimArchive:
    changed: list[str] = []
    if title is not None and title != archive.title:
        archive.title = title
        changed.append("title")
    if description is not None and description != archive.description:
        archive.description = description
        changed.append("description")
    if hidden is not None and hidden != archive.hidden:
        archive.hidden = hidden
        changed.append("hidden")
    session.add(archive)
    session.commit()
    session.refresh(archive)
    if changed:
        log_activity(
            "metadata_updated",
            archive=archive,
            details=f"Updated {', '.join(changed)}",
        )
    return archive


def set_auto_update(session: Session, archive: ZimArchive, enabled: bool) -> ZimArchive:
    archive.auto_update_enabled = enabled
    session.add(archive)
    session.commit()
    session.refresh(archive)
    log_activity(
        "auto_update_toggled",
        archive=archive,
        details=f"Auto-update {'enabled' if enabled else 'disabled'}",
    )
    return archive


def reactivate(session: Session, archive: ZimArchive) -> ZimArchive:
    """Return a quarantined archive to service and restart kiwix-serve."""
    if archive.status != ArchiveStatus.QUARANTINED:
        raise ArchiveNotQuarantinedError(archive.id or 0)
    archive.status = ArchiveStatus.ACTIVE
    archive.error_message = None
    session.add(archive)
    session.commit()
    session.refresh(archive)
    logger.info("Reactivated ZIM %s", archive.filename)
    log_activity("zim_reactivated", archive=archive)

    supervisor = kiwix_supervisor.get_supervisor()
    supervisor.mark_touched(archive.id)
    supervisor.request_restart()
    return archive


def delete_archive(session: Session, archive: ZimArchive) -> None:
    """Remove the registry row, then the archive file, and restart kiwix-serve.

    A failed commit leaves both the row and the file in place.
    A file that is already gone is not an error; any other failure is logged
    as ``zim_delete_failed`` and re-raised.
    """
    title, filename, archive_id = archive.title, archive.filename, archive.id
    filepath = Path(archive.filepath)
    try:
        session.delete(archive)
        session.commit()
    except Exception as e:
        session.rollback()
        _log_delete_failed(title, filename, archive_id, e)
        raise

    supervisor = kiwix_supervisor.get_supervisor()
    if supervisor.last_touched_archive_id == archive_id:
        supervisor.mark_touched(None)
    supervisor.request_restart()

    try:
        filepath.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Removed ZIM %s from the registry but not from disk: %s", filename, e)
        _log_delete_failed(title, filename, archive_id, e)
        raise
    logger.info("Deleted ZIM %s", filename)
    log_activity(
        "zim_deleted",
        zim_title=title,
        zim_filename=filename,
        zim_id=archive_id,
        details=f"Deleted {filename}",
    )


def _log_delete_failed(title: str, filename: str, archive_id: int | None, exc: Exception) -> None:
    log_activity(
        "zim_delete_failed",
        zim_title=title,
        zim_filename=filename,
        zim_id=archive_id,
        status="failed",
        error_message=str(exc)[:500],
    )
