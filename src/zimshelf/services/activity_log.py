"""Audit trail of library actions (downloads, updates, deletions, quarantines)."""

import logging
from dataclasses import dataclass, field

from sqlalchemy import func
from sqlmodel import Session, col, select

from zimshelf.database import engine
from zimshelf.models.activity import ActivityLog
from zimshelf.models.archive import ZimArchive

logger = logging.getLogger(__name__)

_RECENT_ERRORS_LIMIT = 10


@dataclass
class ActivityStats:
    total_actions: int = 0
    action_counts: dict[str, int] = field(default_factory=dict)
    total_download_size: int = 0
    avg_download_duration: float = 0.0
    recent_errors: list[ActivityLog] = field(default_factory=list)


def log_activity(
    action: str,
    *,
    archive: ZimArchive | None = None,
    zim_title: str | None = None,
    zim_filename: str | None = None,
    zim_id: int | None = None,
    details: str | None = None,
    status: str = "success",
    error_message: str | None = None,
    file_size: int | None = None,
    download_duration: int | None = None,
) -> None:
    """Persist one activity row in its own session. Never raises."""
    if archive is not None:
        zim_title = zim_title or archive.title
        zim_filename = zim_filename or archive.filename
        zim_id = zim_id or archive.id
    try:
        with Session(engine) as s:
            s.add(
                ActivityLog(
                    action=action,
                    zim_title=zim_title,
                    zim_filename=zim_filename,
                    zim_id=zim_id,
                    details=details,
                    status=status,
                    error_message=error_message,
                    file_size=file_size,
                    download_duration=download_duration,
                )
            )
            s.commit()
    except Exception:
        logger.exception("Failed to record activity %s", action)
        return
    logger.info("Activity %s: %s - %s", action, zim_title or zim_filename or "N/A", status)


def list_activity(
    session: Session,
    *,
    limit: int = 50,
    offset: int = 0,
    action: str | None = None,
    status: str | None = None,
) -> tuple[list[ActivityLog], int]:
    query = select(ActivityLog)
    count_query = select(func.count()).select_from(ActivityLog)
    if action:
        query = query.where(ActivityLog.action == action)
        count_query = count_query.where(ActivityLog.action == action)
    if status:
        query = query.where(ActivityLog.status == status)
        count_query = count_query.where(ActivityLog.status == status)

    rows = session.exec(
        query.order_by(col(ActivityLog.created_at).desc(), col(ActivityLog.id).desc())
        .offset(offset)
        .limit(limit)
    ).all()
    total = session.exec(count_query).one()
    return list(rows), total


def activity_stats(session: Session) -> ActivityStats:
    stats = ActivityStats()
    rows = session.exec(
        select(ActivityLog.action, func.count()).group_by(ActivityLog.action)
    ).all()
    stats.action_counts = {action: count for action, count in rows}
    stats.total_actions = sum(stats.action_counts.values())

    completed = ("download_completed", "update_completed", "auto_update_completed")
    total_size = session.exec(
        select(func.sum(ActivityLog.file_size)).where(
            col(ActivityLog.action).in_(completed)
        )
    ).one()
    stats.total_download_size = int(total_size or 0)

    avg_duration = session.exec(
        select(func.avg(ActivityLog.download_duration)).where(
            col(ActivityLog.download_duration).is_not(None)
        )
    ).one()
    stats.avg_download_duration = float(avg_duration or 0.0)

    stats.recent_errors = list(
        session.exec(
            select(ActivityLog)
            .where(ActivityLog.status == "failed")
            .order_by(col(ActivityLog.created_at).desc(), col(ActivityLog.id).desc())
            .limit(_RECENT_ERRORS_LIMIT)
        ).all()
    )
    return stats
