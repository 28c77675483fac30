"""Download orchestration for ZIM archives.

Transfers are streamed with httpx in background tasks. Progress lives in an
in-memory table keyed by destination filename; clients poll it. A filename
can only have one transfer at a time, checked before any I/O.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
from sqlmodel import Session, select

from zimshelf.catalog.client import direct_download_url, filename_from_url
from zimshelf.config import settings
from zimshelf.database import engine
from zimshelf.errors import (
    ArchiveExistsError,
    DownloadAlreadyInProgressError,
    DownloadCorruptError,
    UpstreamUnavailableError,
)
from zimshelf.models.archive import ZimArchive
from zimshelf.services import kiwix_supervisor
from zimshelf.services.activity_log import log_activity

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".downloading"

_STREAM_CHUNK_SIZE = 1024 * 1024  # 1 MB
_CONNECT_TIMEOUT = 30.0

# In-flight transfers keyed by destination filename
_in_flight: dict[str, "InFlightDownload"] = {}
# Strong references to background tasks (prevent GC mid-execution)
_background_tasks: set[asyncio.Task] = set()  # type: ignore[type-arg]


@dataclass
class InFlightDownload:
    filename: str
    url: str
    title: str
    total_size: int = 0
    downloaded_size: int = 0
    progress: int = 0
    status: str = "starting"  # starting | downloading
    is_update: bool = False
    original_archive_id: int | None = None
    start_time: float = field(default_factory=time.time)

    def record_progress(self, downloaded: int, header_total: int | None) -> None:
        if header_total:
            self.total_size = header_total
        self.downloaded_size = downloaded
        self.progress = round(downloaded / self.total_size * 100) if self.total_size else 0
        self.status = "downloading"


@dataclass
class DownloadMetadata:
    title: str | None = None
    description: str | None = None
    language: str | None = None
    size: int | None = None
    article_count: int | None = None
    media_count: int | None = None
    updated_date: datetime | None = None


def spawn(coro) -> asyncio.Task:  # type: ignore[type-arg]
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def reserve(
    filename: str,
    url: str,
    title: str | None = None,
    total_size: int | None = None,
    *,
    is_update: bool = False,
    original_archive_id: int | None = None,
) -> InFlightDownload:
    """Register an in-flight download, rejecting a second one for the same file."""
    if filename in _in_flight:
        raise DownloadAlreadyInProgressError(filename)
    record = InFlightDownload(
        filename=filename,
        url=url,
        title=title or filename,
        total_size=total_size or 0,
        is_update=is_update,
        original_archive_id=original_archive_id,
    )
    _in_flight[filename] = record
    return record


def release(filename: str) -> None:
    _in_flight.pop(filename, None)


def is_downloading(filename: str) -> bool:
    return filename in _in_flight


def list_in_flight() -> list[InFlightDownload]:
    return list(_in_flight.values())


def snapshot(record: InFlightDownload) -> dict[str, Any]:
    return asdict(record)


def derive_filename(url: str) -> str:
    """Validate a catalog download URL and return the archive filename it names."""
    filename = filename_from_url(direct_download_url(url))
    if not filename or filename in (".", "..") or not filename.endswith(".zim"):
        raise ValueError("URL must point to a .zim file")
    return filename


def _describe_upstream_error(exc: httpx.HTTPError) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code == 429:
            return "Too many download requests. Please wait a few minutes and try again."
        return f"Download server returned HTTP {exc.response.status_code}"
    if isinstance(exc, httpx.ConnectError):
        return "Unable to connect to download server. Check your internet connection."
    return str(exc) or type(exc).__name__


async def open_stream(url: str) -> tuple[httpx.AsyncClient, httpx.Response]:
    """Send the GET and return once headers arrive; the body is read by ``stream_to_disk``."""
    client = httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(_CONNECT_TIMEOUT, read=None),
    )
    try:
        resp = await client.send(client.build_request("GET", url), stream=True)
    except httpx.HTTPError as e:
        await client.aclose()
        raise UpstreamUnavailableError(_describe_upstream_error(e)) from e
    except BaseException:
        await client.aclose()
        raise
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        await resp.aclose()
        await client.aclose()
        raise UpstreamUnavailableError(_describe_upstream_error(e)) from e
    return client, resp


async def stream_to_disk(
    record: InFlightDownload,
    client: httpx.AsyncClient,
    resp: httpx.Response,
    dest: Path,
    expected_size: int | None = None,
) -> int:
    """Write the response body to *dest* and validate its size.

    Returns the size on disk. On any failure the partial file is removed and
    the error propagates; the in-flight record is left for the caller.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    header_total = int(resp.headers.get("Content-Length", 0)) or None
    try:
        downloaded = 0
        with open(dest, "wb") as f:
            async for chunk in resp.aiter_bytes(chunk_size=_STREAM_CHUNK_SIZE):
                f.write(chunk)
                downloaded += len(chunk)
                record.record_progress(downloaded, header_total)
        await asyncio.sleep(settings.download_flush_wait_seconds)
        actual = dest.stat().st_size
        if (
            expected_size
            and abs(actual - expected_size) > settings.download_size_tolerance_bytes
        ):
            raise DownloadCorruptError(record.filename, expected_size, actual)
        return actual
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    finally:
        await resp.aclose()
        await client.aclose()


async def fetch(
    record: InFlightDownload,
    url: str,
    dest: Path,
    expected_size: int | None = None,
) -> int:
    client, resp = await open_stream(url)
    return await stream_to_disk(record, client, resp, dest, expected_size)


async def download_new(
    url: str,
    metadata: DownloadMetadata,
    session: Session,
) -> str:
    """Start downloading a new archive; returns the destination filename.

    Existence and duplicate checks, and the initial request, happen before
    returning. The body is streamed by a background task that registers the
    archive and restarts kiwix-serve on success.
    """
    url = direct_download_url(url)
    filename = derive_filename(url)

    existing = session.exec(select(ZimArchive).where(ZimArchive.filename == filename)).first()
    if existing:
        raise ArchiveExistsError(filename)

    record = reserve(filename, url, metadata.title, metadata.size)
    try:
        client, resp = await open_stream(url)
    except UpstreamUnavailableError as e:
        release(filename)
        log_activity(
            "download_failed",
            zim_title=record.title,
            zim_filename=filename,
            status="failed",
            error_message=str(e),
        )
        raise
    except (httpx.InvalidURL, UnicodeError) as e:
        release(filename)
        raise ValueError(f"Invalid download URL: {e}") from e
    except BaseException:
        release(filename)
        raise

    log_activity(
        "download_started",
        zim_title=record.title,
        zim_filename=filename,
        details=f"Downloading {filename} from {url}",
        status="in_progress",
    )
    spawn(_run_new_download(record, client, resp, metadata))
    return filename


async def _run_new_download(
    record: InFlightDownload,
    client: httpx.AsyncClient,
    resp: httpx.Response,
    metadata: DownloadMetadata,
) -> None:
    zim_dir = Path(settings.zim_dir)
    final_path = zim_dir / record.filename
    temp_path = zim_dir / (record.filename + TEMP_SUFFIX)
    registered = False
    try:
        size = await stream_to_disk(record, client, resp, temp_path, metadata.size)
        temp_path.replace(final_path)

        with Session(engine) as s:
            archive = ZimArchive(
                filename=record.filename,
                filepath=str(final_path),
                title=metadata.title or record.filename,
                description=metadata.description,
                language=metadata.language,
                size=size,
                article_count=metadata.article_count,
                media_count=metadata.media_count,
                source_url=record.url,
                updated_date=metadata.updated_date,
            )
            s.add(archive)
            s.commit()
            s.refresh(archive)
        registered = True

        supervisor = kiwix_supervisor.get_supervisor()
        supervisor.mark_touched(archive.id)
        supervisor.request_restart()
        log_activity(
            "download_completed",
            archive=archive,
            file_size=size,
            download_duration=round(time.time() - record.start_time),
        )
        logger.info("ZIM download complete: %s", record.filename)
    except asyncio.CancelledError:
        logger.info("ZIM download cancelled at shutdown: %s", record.filename)
        raise
    except Exception as e:
        logger.exception("ZIM download failed: %s", record.filename)
        temp_path.unlink(missing_ok=True)
        if not registered:
            final_path.unlink(missing_ok=True)
        log_activity(
            "download_failed",
            zim_title=record.title,
            zim_filename=record.filename,
            status="failed",
            error_message=str(e)[:500],
            download_duration=round(time.time() - record.start_time),
        )
    finally:
        release(record.filename)


async def shutdown() -> None:
    """Cancel background transfers at application exit."""
    tasks = list(_background_tasks)
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    _in_flight.clear()
