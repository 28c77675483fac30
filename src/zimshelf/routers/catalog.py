from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select

from zimshelf.catalog.client import CatalogClient, CatalogEntry
from zimshelf.database import get_session
from zimshelf.errors import CatalogUnavailableError
from zimshelf.models.archive import ZimArchive
from zimshelf.schemas.catalog import CatalogEntryOut, CatalogLanguageOut, CatalogPageOut

router = APIRouter(prefix="/catalog", tags=["catalog"])


def _entry_to_out(entry: CatalogEntry, installed: set[str]) -> CatalogEntryOut:
    return CatalogEntryOut(
        id=entry.id,
        name=entry.name,
        title=entry.title,
        summary=entry.summary,
        language=entry.language,
        category=entry.category,
        tags=entry.tags,
        url=entry.url,
        filename=entry.filename,
        size=entry.size,
        version=entry.version,
        published_date=entry.published_date,
        article_count=entry.article_count,
        media_count=entry.media_count,
        content_path=entry.content_path,
        icon=entry.icon,
        installed=entry.filename in installed,
    )


@router.get("/", response_model=CatalogPageOut)
async def browse_catalog(
    count: int = Query(50, ge=1, le=500),
    start: int = Query(0, ge=0),
    lang: str | None = None,
    category: str | None = None,
    q: str | None = None,
    session: Session = Depends(get_session),
) -> CatalogPageOut:
    try:
        async with CatalogClient() as client:
            page = await client.search(
                count=count, start=start, lang=lang, category=category, query=q
            )
    except CatalogUnavailableError as e:
        raise HTTPException(502, f"Failed to fetch Kiwix catalog: {e}") from e

    installed = set(session.exec(select(ZimArchive.filename)).all())
    return CatalogPageOut(
        total=page.total,
        start=start,
        count=count,
        entries=[_entry_to_out(e, installed) for e in page.entries],
    )


@router.get("/languages", response_model=list[CatalogLanguageOut])
async def list_languages() -> list[CatalogLanguageOut]:
    try:
        async with CatalogClient() as client:
            languages = await client.list_languages()
    except CatalogUnavailableError as e:
        raise HTTPException(502, f"Failed to fetch catalog languages: {e}") from e
    return [
        CatalogLanguageOut(code=lang.code, name=lang.name, count=lang.count)
        for lang in languages
    ]
