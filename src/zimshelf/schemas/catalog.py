from datetime import datetime

from pydantic import BaseModel


class CatalogEntryOut(BaseModel):
    id: str | None = None
    name: str | None = None
    title: str | None = None
    summary: str | None = None
    language: str | None = None
    category: str | None = None
    tags: list[str] = []
    url: str | None = None
    filename: str | None = None
    size: int | None = None
    version: str | None = None
    published_date: datetime | None = None
    article_count: int | None = None
    media_count: int | None = None
    content_path: str | None = None
    icon: str | None = None
    installed: bool = False


class CatalogPageOut(BaseModel):
    total: int | None = None
    start: int
    count: int
    entries: list[CatalogEntryOut]


class CatalogLanguageOut(BaseModel):
    code: str
    name: str
    count: int
