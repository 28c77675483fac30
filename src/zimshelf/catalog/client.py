"""Async client for the Kiwix OPDS catalog.

The catalog is an Atom feed; each ``<entry>`` describes one published
archive with an acquisition link (download URL and byte length), a preview
link and an ``<updated>`` timestamp. Parsing goes through defusedxml so a
hostile feed cannot expand entities.
"""

import logging
import posixpath
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import TracebackType
from typing import Self
from urllib.parse import urlparse
from xml.etree.ElementTree import Element, ParseError

import defusedxml.ElementTree as DefusedET
import httpx
from defusedxml import DefusedXmlException

from zimshelf.config import settings
from zimshelf.errors import CatalogUnavailableError
from zimshelf.matching.filename_parser import normalized_base, parse_zim_filename

logger = logging.getLogger(__name__)

ENTRIES_PATH = "/catalog/v2/entries"
LANGUAGES_PATH = "/catalog/v2/languages"

CANDIDATE_COUNT = 100
DEFAULT_LANGUAGE = "eng"

_ATOM = "{http://www.w3.org/2005/Atom}"
_DC = "{http://purl.org/dc/terms/}"
_THR = "{http://purl.org/syndication/thread/1.0}"
_OPENSEARCH = "{http://a9.com/-/spec/opensearch/1.1/}"

_REL_ACQUISITION = "http://opds-spec.org/acquisition/open-access"
_REL_THUMBNAIL = "http://opds-spec.org/image/thumbnail"
_META4_SUFFIX = ".meta4"


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    name: str | None
    title: str | None
    url: str | None
    filename: str | None
    base_name: str | None = None
    version: str | None = None
    published_date: datetime | None = None
    size: int | None = None
    article_count: int | None = None
    media_count: int | None = None
    id: str | None = None
    summary: str | None = None
    language: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    content_path: str | None = None
    icon: str | None = None


@dataclass(frozen=True, slots=True)
class InstalledRelease:
    """The release identity of an installed archive, comparable with a CatalogEntry."""

    published_date: datetime | None
    version: str | None


@dataclass(frozen=True, slots=True)
class CatalogPage:
    total: int | None
    entries: list[CatalogEntry]


@dataclass(frozen=True, slots=True)
class CatalogLanguage:
    code: str
    name: str
    count: int


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        return None


def _to_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def direct_download_url(url: str) -> str:
    """Rewrite a metalink descriptor URL (``x.zim.meta4``) to the archive URL."""
    if url.endswith(_META4_SUFFIX):
        return url[: -len(_META4_SUFFIX)]
    return url


def filename_from_url(url: str | None) -> str | None:
    if not url:
        return None
    name = posixpath.basename(urlparse(url).path)
    return name or None


def _text(entry: Element, tag: str) -> str | None:
    value = entry.findtext(f"{_ATOM}{tag}")
    return value.strip() if value else None


def _parse_entry(entry: Element) -> CatalogEntry:
    url: str | None = None
    size: int | None = None
    content_path: str | None = None
    icon: str | None = None
    for link in entry.findall(f"{_ATOM}link"):
        rel = link.get("rel", "")
        href = link.get("href")
        if rel == _REL_ACQUISITION and href and url is None:
            url = direct_download_url(href)
            size = _to_int(link.get("length"))
        elif rel == _REL_THUMBNAIL:
            icon = href
        elif link.get("type") == "text/html" and content_path is None:
            content_path = href

    filename = filename_from_url(url)
    parsed = parse_zim_filename(filename) if filename else None
    published = parse_timestamp(_text(entry, "updated")) or parse_timestamp(
        entry.findtext(f"{_DC}issued")
    )
    tags = _text(entry, "tags")

    return CatalogEntry(
        id=_text(entry, "id"),
        name=_text(entry, "name"),
        title=_text(entry, "title"),
        summary=_text(entry, "summary"),
        language=_text(entry, "language"),
        category=_text(entry, "category"),
        tags=[t for t in tags.split(";") if t] if tags else [],
        url=url,
        size=size,
        filename=filename,
        base_name=parsed.base_name if parsed else None,
        version=parsed.version if parsed else None,
        published_date=published,
        article_count=_to_int(_text(entry, "articleCount")),
        media_count=_to_int(_text(entry, "mediaCount")),
        content_path=content_path,
        icon=icon,
    )


def _parse_feed(payload: bytes | str) -> Element:
    try:
        return DefusedET.fromstring(payload)
    except (ParseError, DefusedXmlException) as exc:
        raise CatalogUnavailableError(f"Unparsable catalog feed: {exc}") from exc


def parse_catalog_page(payload: bytes | str) -> CatalogPage:
    root = _parse_feed(payload)
    total_text = root.findtext(f"{_ATOM}totalResults") or root.findtext(
        f"{_OPENSEARCH}totalResults"
    )
    entries = [_parse_entry(e) for e in root.findall(f"{_ATOM}entry")]
    return CatalogPage(total=_to_int(total_text), entries=entries)


def parse_languages(payload: bytes | str) -> list[CatalogLanguage]:
    root = _parse_feed(payload)
    languages: list[CatalogLanguage] = []
    for entry in root.findall(f"{_ATOM}entry"):
        code = entry.findtext(f"{_DC}language")
        name = entry.findtext(f"{_ATOM}title")
        if not code or not name:
            continue
        languages.append(
            CatalogLanguage(
                code=code.strip(),
                name=name.strip(),
                count=_to_int(entry.findtext(f"{_THR}count")) or 0,
            )
        )
    return languages


def match_candidates(installed_filename: str, entries: list[CatalogEntry]) -> list[CatalogEntry]:
    """Keep only catalog entries for the same archive as *installed_filename*.

    Exact comparison of the normalized base name; substring matching pairs
    e.g. ``wikipedia_en_all`` with ``wikipedia_en_all_maxi`` and is rejected.
    """
    key = normalized_base(installed_filename)
    return [e for e in entries if e.filename and normalized_base(e.filename) == key]


def is_newer(candidate: CatalogEntry, installed: CatalogEntry | InstalledRelease) -> bool:
    """Return True if *candidate* is a strictly later release than *installed*.

    Publish dates win when both sides have one; the ``YYYY-MM`` filename
    token is the fallback. Without either pair nothing is reported.
    """
    if candidate.published_date and installed.published_date:
        return _as_utc(candidate.published_date) > _as_utc(installed.published_date)
    if candidate.version and installed.version:
        return candidate.version > installed.version
    return False


def select_update(
    installed_filename: str,
    installed: InstalledRelease,
    entries: list[CatalogEntry],
) -> CatalogEntry | None:
    """Pick the newest matching catalog entry that is newer than the installed one."""
    latest: CatalogEntry | None = None
    for entry in match_candidates(installed_filename, entries):
        if not is_newer(entry, installed):
            continue
        if latest is None or is_newer(entry, latest):
            latest = entry
    return latest


class CatalogClient:
    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self._base_url = (base_url or settings.catalog_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.catalog_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/atom+xml"},
            timeout=self._timeout,
            follow_redirects=True,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._client:
            await self._client.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("CatalogClient not entered as context manager")
        return self._client

    async def _get(self, path: str, params: dict[str, str | int]) -> bytes:
        try:
            resp = await self.client.get(path, params=params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CatalogUnavailableError(
                f"Catalog returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise CatalogUnavailableError(f"Catalog unreachable: {e}") from e
        return resp.content

    async def find_candidates(self, search_term: str) -> list[CatalogEntry]:
        """Fetch catalog entries for *search_term*, dropping those without a filename."""
        params: dict[str, str | int] = {"count": CANDIDATE_COUNT}
        if search_term:
            params["q"] = search_term
        page = parse_catalog_page(await self._get(ENTRIES_PATH, params))
        candidates = [e for e in page.entries if e.filename]
        logger.debug(
            "Catalog search %r: %d entries, %d with filenames",
            search_term,
            len(page.entries),
            len(candidates),
        )
        return candidates

    async def search(
        self,
        *,
        count: int = 50,
        start: int = 0,
        lang: str | None = None,
        category: str | None = None,
        query: str | None = None,
    ) -> CatalogPage:
        params: dict[str, str | int] = {
            "count": count,
            "start": start,
            "lang": lang or DEFAULT_LANGUAGE,
        }
        if category:
            params["category"] = category
        if query:
            params["q"] = query
        return parse_catalog_page(await self._get(ENTRIES_PATH, params))

    async def list_languages(self) -> list[CatalogLanguage]:
        return parse_languages(await self._get(LANGUAGES_PATH, {}))
