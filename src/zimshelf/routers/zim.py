import logging
from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlmodel import Session

from zimshelf.catalog.client import CatalogClient
from zimshelf.database import get_session
from zimshelf.errors import (
    ArchiveExistsError,
    ArchiveNotQuarantinedError,
    ContentUnavailableError,
    DownloadAlreadyInProgressError,
    InsufficientDiskSpaceError,
    NoUpdateAvailableError,
    UpstreamUnavailableError,
)
from zimshelf.models.archive import ArchiveStatus, ZimArchive
from zimshelf.routers.deps import get_archive_or_404
from zimshelf.schemas.archive import (
    ArchiveMetadataUpdate,
    ArchiveOut,
    AutoUpdateToggle,
    UpdateCheckOut,
    UpdateCheckSummary,
    UpdateStartResult,
)
from zimshelf.schemas.content import SearchHitOut, SearchResultsOut
from zimshelf.schemas.download import (
    DownloadProgressOut,
    DownloadRequest,
    DownloadStartResult,
)
from zimshelf.services import (
    archive_service,
    download_service,
    kiwix_content,
    update_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/zim", tags=["zim"])


def _archive_to_out(archive: ZimArchive) -> ArchiveOut:
    return ArchiveOut(
        **archive.model_dump(),
        has_update=archive.has_update,
        kiwix_url=kiwix_content.content_url(archive.filename),
    )


@router.get("/", response_model=list[ArchiveOut])
def list_archives(
    include_quarantined: bool = True,
    include_hidden: bool = True,
    session: Session = Depends(get_session),
) -> list[ArchiveOut]:
    archives = archive_service.list_archives(
        session,
        include_quarantined=include_quarantined,
        include_hidden=include_hidden,
    )
    return [_archive_to_out(a) for a in archives]


@router.post("/download", response_model=DownloadStartResult, status_code=202)
async def start_download(
    body: DownloadRequest,
    session: Session = Depends(get_session),
) -> DownloadStartResult:
    metadata = download_service.DownloadMetadata(
        title=body.title,
        description=body.description,
        language=body.language,
        size=body.size,
        article_count=body.article_count,
        media_count=body.media_count,
        updated_date=body.updated_date,
    )
    try:
        filename = await download_service.download_new(body.url, metadata, session)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e
    except (ArchiveExistsError, DownloadAlreadyInProgressError) as e:
        raise HTTPException(409, str(e)) from e
    except UpstreamUnavailableError as e:
        raise HTTPException(502, str(e)) from e
    return DownloadStartResult(filename=filename, message=f"Download started: {filename}")


@router.get("/download/progress", response_model=list[DownloadProgressOut])
def download_progress() -> list[DownloadProgressOut]:
    return [
        DownloadProgressOut(**download_service.snapshot(r))
        for r in download_service.list_in_flight()
    ]


@router.get("/search", response_model=SearchResultsOut)
async def search_content(
    q: str,
    archive_id: int | None = None,
    limit: int = Query(kiwix_content.DEFAULT_SEARCH_LIMIT, ge=1, le=100),
    session: Session = Depends(get_session),
) -> SearchResultsOut:
    if archive_id is not None:
        archive = get_archive_or_404(archive_id, session)
        archives = [archive] if archive.status == ArchiveStatus.ACTIVE else []
    else:
        archives = archive_service.list_archives(
            session, include_quarantined=False, include_hidden=False
        )
    try:
        hits = await kiwix_content.search_archives(archives, q, limit)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e
    return SearchResultsOut(
        query=q.strip(),
        total=len(hits),
        results=[SearchHitOut(**asdict(h)) for h in hits],
    )


@router.post("/check-updates/all", response_model=UpdateCheckSummary)
async def check_all_updates(
    auto_update_only: bool = False,
    session: Session = Depends(get_session),
) -> UpdateCheckSummary:
    async with CatalogClient() as client:
        results = await update_service.check_all_for_updates(
            session, client, auto_update_only=auto_update_only
        )
    return UpdateCheckSummary(
        checked=len(results),
        updates_available=sum(1 for r in results if r.update_available),
        errors=sum(1 for r in results if r.error),
        results=[UpdateCheckOut(**asdict(r)) for r in results],
    )


@router.get("/{archive_id}", response_model=ArchiveOut)
def get_archive(archive_id: int, session: Session = Depends(get_session)) -> ArchiveOut:
    return _archive_to_out(get_archive_or_404(archive_id, session))


@router.patch("/{archive_id}", response_model=ArchiveOut)
def update_archive(
    archive_id: int,
    body: ArchiveMetadataUpdate,
    session: Session = Depends(get_session),
) -> ArchiveOut:
    archive = get_archive_or_404(archive_id, session)
    archive = archive_service.update_metadata(
        session,
        archive,
        title=body.title,
        description=body.description,
        hidden=body.hidden,
    )
    return _archive_to_out(archive)


@router.delete("/{archive_id}")
async def delete_archive(
    archive_id: int, session: Session = Depends(get_session)
) -> dict[str, str]:
    archive = get_archive_or_404(archive_id, session)
    filename = archive.filename
    try:
        archive_service.delete_archive(session, archive)
    except OSError as e:
        raise HTTPException(500, f"Failed to delete {filename}: {e}") from e
    return {"deleted": filename}


@router.post("/{archive_id}/check-update", response_model=UpdateCheckOut)
async def check_update(
    archive_id: int, session: Session = Depends(get_session)
) -> UpdateCheckOut:
    archive = get_archive_or_404(archive_id, session)
    async with CatalogClient() as client:
        result = await update_service.check_for_update(archive, session, client)
    if result.error:
        raise HTTPException(502, f"Failed to query catalog: {result.error}")
    return UpdateCheckOut(**asdict(result))


@router.post("/{archive_id}/update", response_model=UpdateStartResult, status_code=202)
async def apply_update(
    archive_id: int, session: Session = Depends(get_session)
) -> UpdateStartResult:
    archive = get_archive_or_404(archive_id, session)
    try:
        plan = update_service.prepare_update(archive, session)
    except NoUpdateAvailableError as e:
        raise HTTPException(400, str(e)) from e
    except InsufficientDiskSpaceError as e:
        raise HTTPException(507, str(e)) from e
    except DownloadAlreadyInProgressError as e:
        raise HTTPException(409, str(e)) from e
    except ValueError as e:
        raise HTTPException(400, str(e)) from e

    update_service.start_update(plan)
    return UpdateStartResult(
        archive_id=archive_id,
        filename=plan.new_filename,
        message=f"Update started: {plan.old_filename} -> {plan.new_filename}",
    )


@router.put("/{archive_id}/auto-update", response_model=ArchiveOut)
def toggle_auto_update(
    archive_id: int,
    body: AutoUpdateToggle,
    session: Session = Depends(get_session),
) -> ArchiveOut:
    archive = get_archive_or_404(archive_id, session)
    return _archive_to_out(archive_service.set_auto_update(session, archive, body.enabled))


@router.post("/{archive_id}/reactivate", response_model=ArchiveOut)
async def reactivate_archive(
    archive_id: int, session: Session = Depends(get_session)
) -> ArchiveOut:
    archive = get_archive_or_404(archive_id, session)
    try:
        archive = archive_service.reactivate(session, archive)
    except ArchiveNotQuarantinedError as e:
        raise HTTPException(409, str(e)) from e
    return _archive_to_out(archive)


@router.get("/{archive_id}/content/{content_path:path}")
async def proxy_content(
    archive_id: int,
    content_path: str,
    request: Request,
    session: Session = Depends(get_session),
) -> StreamingResponse:
    archive = get_archive_or_404(archive_id, session)
    if archive.status != ArchiveStatus.ACTIVE:
        raise HTTPException(409, f"ZIM archive {archive_id} is quarantined and not served")
    try:
        client, resp = await kiwix_content.open_content(
            archive.filename, content_path, list(request.query_params.multi_items())
        )
    except ContentUnavailableError as e:
        raise HTTPException(502, str(e)) from e

    async def _close() -> None:
        await resp.aclose()
        await client.aclose()

    cleanup = BackgroundTasks()
    cleanup.add_task(_close)
    return StreamingResponse(
        resp.aiter_bytes(),
        status_code=resp.status_code,
        headers=kiwix_content.forwarded_headers(resp),
        background=cleanup,
    )
