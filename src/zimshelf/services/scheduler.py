"""Recurring update sweep over archives with auto-update enabled.

Every tick the scheduler decides whether a sweep is due (never checked, or
``check_interval_hours`` elapsed since the most recent check). A sweep checks
each auto-update archive against the catalog and, when automatic downloads
are enabled and the local hour falls inside the download window, applies
the updates it found.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import func
from sqlmodel import Session, select

from zimshelf.catalog.client import CatalogClient
from zimshelf.config import settings
from zimshelf.database import engine
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.services import update_service
from zimshelf.services.settings_helpers import get_update_settings

logger = logging.getLogger(__name__)


def is_within_download_window(start: int, end: int, hour: int) -> bool:
    """Half-open ``[start, end)`` hour window; wraps past midnight when start > end."""
    if start <= end:
        return start <= hour < end
    return hour >= start or hour < end


@dataclass
class SweepReport:
    checked: int = 0
    updates_found: int = 0
    updated: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped_outside_window: bool = False


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def is_sweep_due(session: Session, now: datetime | None = None) -> bool:
    update_settings = get_update_settings(session)
    last_check = session.exec(
        select(func.max(ZimArchive.last_checked_at)).where(
            ZimArchive.auto_update_enabled == True  # noqa: E712
        )
    ).one()
    if last_check is None:
        return True
    now = now or datetime.now(UTC)
    return now - _as_utc(last_check) >= timedelta(hours=update_settings.check_interval_hours)


async def run_update_sweep(hour: int | None = None) -> SweepReport:
    """Check every auto-update archive and apply updates when allowed.

    *hour* defaults to the current local hour.
    """
    report = SweepReport()
    if hour is None:
        hour = datetime.now().hour

    with Session(engine) as session:
        update_settings = get_update_settings(session)
        auto_download = update_settings.auto_download_enabled
        in_window = is_within_download_window(
            update_settings.download_window_start,
            update_settings.download_window_end,
            hour,
        )
        async with CatalogClient() as client:
            results = await update_service.check_all_for_updates(
                session, client, auto_update_only=True
            )
        pending = [r.archive_id for r in results if r.update_available and r.error is None]
        active_ids = set(
            session.exec(
                select(ZimArchive.id).where(ZimArchive.status == ArchiveStatus.ACTIVE)
            ).all()
        )

    report.checked = len(results)
    report.updates_found = len(pending)
    logger.info(
        "Update sweep checked %d archive(s), %d update(s) found", report.checked, len(pending)
    )

    if not pending or not auto_download:
        return report
    if not in_window:
        logger.info("Outside download window (hour %d); deferring %d update(s)", hour, len(pending))
        report.skipped_outside_window = True
        return report

    for archive_id in pending:
        if archive_id not in active_ids:
            continue
        try:
            ok = await update_service.apply_update(archive_id, auto=True)
        except Exception:
            logger.exception("Automatic update of archive %d failed", archive_id)
            ok = False
        (report.updated if ok else report.failed).append(archive_id)
    return report


class UpdateScheduler:
    def __init__(self, tick_seconds: float | None = None) -> None:
        if tick_seconds is None:
            tick_seconds = settings.scheduler_tick_seconds
        self.tick_seconds = tick_seconds
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> SweepReport | None:
        """Run a sweep if one is due. Never raises."""
        try:
            with Session(engine) as session:
                due = is_sweep_due(session)
            if not due:
                return None
            return await run_update_sweep()
        except Exception:
            logger.exception("Scheduled update sweep failed")
            return None

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.tick_seconds)

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info("Update scheduler started (tick every %.0fs)", self.tick_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Update scheduler stopped")

    async def restart(self) -> None:
        await self.stop()
        self.start()


_scheduler: UpdateScheduler | None = None


def get_scheduler() -> UpdateScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = UpdateScheduler()
    return _scheduler
