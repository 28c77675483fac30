"""Update detection and in-place replacement of installed ZIM archives.

Detection:
1. Parse the installed filename into base name + ``YYYY-MM`` release token
2. Query the catalog with a search hint derived from the base name
3. Keep candidates whose normalized base name matches exactly
4. Compare publish dates (primary) or release tokens (fallback)
5. Persist the newest candidate as the archive's update snapshot, or clear it

Replacement downloads to ``<name>.downloading`` and then swaps files with a
pair of renames: installed -> ``.backup``, download -> final name. Anything
that fails after the backup exists is rolled back by renaming it back.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from sqlmodel import Session, select

from zimshelf.catalog.client import (
    CatalogClient,
    InstalledRelease,
    select_update,
)
from zimshelf.config import settings
from zimshelf.database import engine
from zimshelf.errors import (
    CatalogUnavailableError,
    InsufficientDiskSpaceError,
    NoUpdateAvailableError,
    UpdateFinalizationError,
)
from zimshelf.matching.filename_parser import catalog_search_term, parse_zim_filename
from zimshelf.models.archive import ZimArchive
from zimshelf.services import disk_space, download_service, kiwix_supervisor
from zimshelf.services.activity_log import log_activity
from zimshelf.services.settings_helpers import get_update_settings

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".backup"


@dataclass
class UpdateCheckResult:
    archive_id: int
    update_available: bool
    current_version: str | None = None
    latest_version: str | None = None
    update_url: str | None = None
    update_size: int | None = None
    update_date: datetime | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class UpdateSnapshot:
    url: str
    version: str | None
    size: int | None
    date: datetime | None
    article_count: int | None
    media_count: int | None


@dataclass
class UpdatePlan:
    archive_id: int
    title: str
    old_filename: str
    old_filepath: Path
    new_filename: str
    final_path: Path
    temp_path: Path
    backup_path: Path
    snapshot: UpdateSnapshot
    record: download_service.InFlightDownload
    auto: bool = False


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


async def check_for_update(
    archive: ZimArchive,
    session: Session,
    client: CatalogClient,
) -> UpdateCheckResult:
    """Check the catalog for a newer release of *archive* and persist the outcome.

    ``last_checked_at`` always advances. A catalog failure leaves any
    previously found update snapshot untouched and is reported via ``error``.
    """
    assert archive.id is not None
    parsed = parse_zim_filename(archive.filename)
    now = datetime.now(UTC)

    try:
        entries = await client.find_candidates(catalog_search_term(parsed.base_name))
    except CatalogUnavailableError as e:
        logger.warning("Update check for %s failed: %s", archive.filename, e)
        archive.last_checked_at = now
        session.add(archive)
        session.commit()
        return UpdateCheckResult(
            archive_id=archive.id,
            update_available=archive.has_update,
            current_version=parsed.version,
            latest_version=archive.available_update_version,
            update_url=archive.available_update_url,
            update_size=archive.available_update_size,
            error=str(e),
        )

    installed = InstalledRelease(published_date=archive.updated_date, version=parsed.version)
    latest = select_update(archive.filename, installed, entries)

    archive.last_checked_at = now
    if latest is not None and latest.url:
        archive.available_update_url = latest.url
        archive.available_update_version = latest.version
        archive.available_update_size = latest.size
        archive.available_update_date = latest.published_date
        archive.available_update_article_count = latest.article_count
        archive.available_update_media_count = latest.media_count
    else:
        archive.clear_available_update()
    session.add(archive)
    session.commit()
    session.refresh(archive)

    if latest is None:
        logger.info("%s is up to date", archive.filename)
        return UpdateCheckResult(
            archive_id=archive.id,
            update_available=False,
            current_version=parsed.version,
        )

    logger.info(
        "Update available for %s: %s -> %s",
        archive.filename,
        parsed.version,
        latest.filename,
    )
    return UpdateCheckResult(
        archive_id=archive.id,
        update_available=True,
        current_version=parsed.version,
        latest_version=latest.version,
        update_url=latest.url,
        update_size=latest.size,
        update_date=latest.published_date,
    )


async def check_all_for_updates(
    session: Session,
    client: CatalogClient,
    *,
    auto_update_only: bool = False,
) -> list[UpdateCheckResult]:
    query = select(ZimArchive)
    if auto_update_only:
        query = query.where(ZimArchive.auto_update_enabled == True)  # noqa: E712
    archives = session.exec(query).all()

    results: list[UpdateCheckResult] = []
    for i, archive in enumerate(archives):
        if i:
            await asyncio.sleep(settings.sweep_pause_seconds)
        results.append(await check_for_update(archive, session, client))
    return results


# ---------------------------------------------------------------------------
# Replacement
# ---------------------------------------------------------------------------


def prepare_update(archive: ZimArchive, session: Session, *, auto: bool = False) -> UpdatePlan:
    """Validate preconditions and reserve the download slot for an update.

    Raises before any I/O: ``NoUpdateAvailableError`` without a snapshot,
    ``InsufficientDiskSpaceError`` when the volume cannot take the new file
    plus the configured buffer, ``DownloadAlreadyInProgressError`` when the
    same file is already being fetched.
    """
    assert archive.id is not None
    if not archive.available_update_url:
        raise NoUpdateAvailableError()

    update_settings = get_update_settings(session)
    buffer = disk_space.gb_to_bytes(update_settings.min_space_buffer_gb)
    size = archive.available_update_size or 0
    disk = disk_space.check_available()
    if not disk_space.has_room_for(size, buffer, disk):
        raise InsufficientDiskSpaceError(disk.available_bytes, size + buffer)

    url = archive.available_update_url
    new_filename = download_service.derive_filename(url)
    zim_dir = Path(settings.zim_dir)
    old_filepath = Path(archive.filepath)
    record = download_service.reserve(
        new_filename,
        url,
        archive.title,
        archive.available_update_size,
        is_update=True,
        original_archive_id=archive.id,
    )
    return UpdatePlan(
        archive_id=archive.id,
        title=archive.title,
        old_filename=archive.filename,
        old_filepath=old_filepath,
        new_filename=new_filename,
        final_path=zim_dir / new_filename,
        temp_path=zim_dir / (new_filename + download_service.TEMP_SUFFIX),
        backup_path=Path(str(old_filepath) + BACKUP_SUFFIX),
        snapshot=UpdateSnapshot(
            url=url,
            version=archive.available_update_version,
            size=archive.available_update_size,
            date=archive.available_update_date,
            article_count=archive.available_update_article_count,
            media_count=archive.available_update_media_count,
        ),
        record=record,
        auto=auto,
    )


def _commit_update(plan: UpdatePlan, size: int) -> None:
    """Point the registry row at the new file and clear the update snapshot."""
    with Session(engine) as s:
        archive = s.get(ZimArchive, plan.archive_id)
        if archive is None:
            raise LookupError(f"ZIM archive {plan.archive_id} disappeared during update")
        archive.filename = plan.new_filename
        archive.filepath = str(plan.final_path)
        archive.size = size
        archive.source_url = plan.snapshot.url
        archive.updated_date = plan.snapshot.date
        archive.article_count = plan.snapshot.article_count
        archive.media_count = plan.snapshot.media_count
        archive.clear_available_update()
        s.add(archive)
        s.commit()


def _rollback(plan: UpdatePlan) -> None:
    """Remove whatever was swapped in and put the original file back."""
    plan.final_path.unlink(missing_ok=True)
    plan.temp_path.unlink(missing_ok=True)
    if plan.backup_path.exists():
        os.replace(plan.backup_path, plan.old_filepath)
    kiwix_supervisor.get_supervisor().request_restart()


def _finalize(plan: UpdatePlan) -> int:
    """Swap the downloaded file into place. Rolls back on any failure."""
    try:
        if plan.old_filepath.exists():
            os.replace(plan.old_filepath, plan.backup_path)
        os.replace(plan.temp_path, plan.final_path)
        size = plan.final_path.stat().st_size
        _commit_update(plan, size)
        return size
    except Exception as e:
        logger.exception("Update finalization failed for %s", plan.old_filename)
        try:
            _rollback(plan)
        except OSError:
            logger.exception("Rollback failed for %s", plan.old_filename)
        raise UpdateFinalizationError(
            f"Failed to finalize update of {plan.old_filename} to {plan.new_filename}: {e}"
        ) from e


async def _delete_backup_later(plan: UpdatePlan) -> None:
    await asyncio.sleep(settings.backup_grace_seconds)
    if plan.backup_path.exists():
        plan.backup_path.unlink()
        log_activity(
            "backup_deleted",
            zim_title=plan.title,
            zim_filename=plan.old_filename,
            zim_id=plan.archive_id,
            details=f"Deleted backup file {plan.backup_path.name}",
        )


async def run_update(plan: UpdatePlan) -> bool:
    """Download, swap and commit an update prepared by ``prepare_update``.

    Returns True on success. Download failures leave the installed file
    untouched; swap/commit failures restore it and raise
    ``UpdateFinalizationError``.
    """
    prefix = "auto_update" if plan.auto else "update"
    started = time.time()
    log_activity(
        f"{prefix}_started",
        zim_title=plan.title,
        zim_filename=plan.old_filename,
        zim_id=plan.archive_id,
        details=(
            f"Updating from {plan.old_filename} to {plan.new_filename}. "
            f"Size: {disk_space.format_gb(plan.snapshot.size)}"
        ),
        status="in_progress",
    )
    try:
        try:
            await download_service.fetch(
                plan.record, plan.snapshot.url, plan.temp_path, plan.snapshot.size
            )
        except Exception as e:
            logger.exception("Update download failed for %s", plan.old_filename)
            log_activity(
                f"{prefix}_failed",
                zim_title=plan.title,
                zim_filename=plan.old_filename,
                zim_id=plan.archive_id,
                details=f"Download of {plan.new_filename} failed",
                status="failed",
                error_message=str(e)[:500],
                download_duration=round(time.time() - started),
            )
            return False

        try:
            size = _finalize(plan)
        except UpdateFinalizationError as e:
            log_activity(
                f"{prefix}_failed",
                zim_title=plan.title,
                zim_filename=plan.old_filename,
                zim_id=plan.archive_id,
                details=f"Failed to finalize update to {plan.new_filename}",
                status="failed",
                error_message=str(e)[:500],
            )
            raise
    finally:
        download_service.release(plan.new_filename)

    supervisor = kiwix_supervisor.get_supervisor()
    supervisor.mark_touched(plan.archive_id)
    supervisor.request_restart()
    download_service.spawn(_delete_backup_later(plan))

    log_activity(
        f"{prefix}_completed",
        zim_title=plan.title,
        zim_filename=plan.new_filename,
        zim_id=plan.archive_id,
        details=f"Updated from {plan.old_filename} to {plan.new_filename}",
        file_size=size,
        download_duration=round(time.time() - started),
    )
    logger.info("Update complete: %s -> %s", plan.old_filename, plan.new_filename)
    return True


async def apply_update(archive_id: int, *, auto: bool = False) -> bool:
    """Prepare and run an update to completion (used by the scheduler)."""
    with Session(engine) as s:
        archive = s.get(ZimArchive, archive_id)
        if archive is None:
            raise LookupError(f"ZIM archive {archive_id} not found")
        plan = prepare_update(archive, s, auto=auto)
    return await run_update(plan)


async def _run_update_logged(plan: UpdatePlan) -> None:
    try:
        await run_update(plan)
    except UpdateFinalizationError:
        logger.warning("Update of %s was rolled back", plan.old_filename)


def start_update(plan: UpdatePlan) -> None:
    """Run a prepared update as a tracked background task."""
    download_service.spawn(_run_update_logged(plan))
