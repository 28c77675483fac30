"""Read access to what the local kiwix-serve is serving.

kiwix-serve addresses each archive by its filename without the ``.zim``
suffix. Full-text search asks for the RSS rendition of the search page and
queries one archive at a time, so a broken archive only drops its own hits.
"""

import html
import logging
import re
from dataclasses import dataclass
from urllib.parse import quote
from xml.etree.ElementTree import ParseError

import defusedxml.ElementTree as DefusedET
import httpx
from defusedxml import DefusedXmlException

from zimshelf.config import settings
from zimshelf.errors import ContentUnavailableError
from zimshelf.models.archive import ZimArchive

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2
DEFAULT_SEARCH_LIMIT = 20

_ZIM_SUFFIX = ".zim"
_SNIPPET_LENGTH = 150
_TAG_RE = re.compile(r"<[^>]+>")

# Forwarded from kiwix-serve on proxied content
_FORWARDED_HEADERS = ("content-type", "cache-control", "etag", "last-modified")


@dataclass(frozen=True, slots=True)
class SearchHit:
    archive_id: int
    archive_title: str
    title: str
    snippet: str
    url: str


def kiwix_base_url() -> str:
    return f"http://{settings.kiwix_host}:{settings.kiwix_port}"


def content_name(filename: str) -> str:
    if filename.endswith(_ZIM_SUFFIX):
        return filename[: -len(_ZIM_SUFFIX)]
    return filename


def content_url(filename: str) -> str:
    return f"{kiwix_base_url()}/content/{content_name(filename)}"


def _clean_snippet(value: str | None) -> str:
    if not value:
        return ""
    text = html.unescape(_TAG_RE.sub("", value))
    return " ".join(text.split())[:_SNIPPET_LENGTH]


def parse_search_results(payload: bytes | str, archive: ZimArchive) -> list[SearchHit]:
    try:
        root = DefusedET.fromstring(payload)
    except (ParseError, DefusedXmlException) as exc:
        raise ContentUnavailableError(f"Unparsable search results: {exc}") from exc

    hits: list[SearchHit] = []
    for item in root.iter("item"):
        title = (item.findtext("title") or "").strip()
        link = (item.findtext("link") or "").strip()
        if not title or not link:
            continue
        if not link.startswith(("http://", "https://")):
            link = f"{kiwix_base_url()}/{link.lstrip('/')}"
        hits.append(
            SearchHit(
                archive_id=archive.id or 0,
                archive_title=archive.title,
                title=title,
                snippet=_clean_snippet(item.findtext("description")),
                url=link,
            )
        )
    return hits


async def search_archives(
    archives: list[ZimArchive],
    query: str,
    limit: int = DEFAULT_SEARCH_LIMIT,
) -> list[SearchHit]:
    """Full-text search across *archives*, at most *limit* hits in archive order."""
    query = query.strip()
    if len(query) < MIN_QUERY_LENGTH:
        raise ValueError(f"Search query must be at least {MIN_QUERY_LENGTH} characters")

    hits: list[SearchHit] = []
    async with httpx.AsyncClient(
        base_url=kiwix_base_url(), timeout=settings.kiwix_request_timeout_seconds
    ) as client:
        for archive in archives:
            if len(hits) >= limit:
                break
            params: dict[str, str | int] = {
                "content": content_name(archive.filename),
                "pattern": query,
                "pageLength": limit,
                "format": "xml",
            }
            try:
                resp = await client.get("/search", params=params)
                resp.raise_for_status()
                hits.extend(parse_search_results(resp.content, archive))
            except (httpx.HTTPError, ContentUnavailableError) as e:
                logger.warning("Search failed for ZIM %s: %s", archive.filename, e)
    return hits[:limit]


async def open_content(
    filename: str,
    path: str,
    params: list[tuple[str, str]] | None = None,
) -> tuple[httpx.AsyncClient, httpx.Response]:
    """Start a streaming GET for *path* inside the archive; the caller closes both."""
    client = httpx.AsyncClient(
        base_url=kiwix_base_url(),
        timeout=httpx.Timeout(settings.kiwix_request_timeout_seconds, read=None),
    )
    url = f"/content/{quote(content_name(filename))}/{path.lstrip('/')}"
    try:
        resp = await client.send(client.build_request("GET", url, params=params), stream=True)
    except httpx.HTTPError as e:
        await client.aclose()
        raise ContentUnavailableError(f"kiwix-serve unreachable: {e}") from e
    except BaseException:
        await client.aclose()
        raise
    return client, resp


def forwarded_headers(resp: httpx.Response) -> dict[str, str]:
    return {name: resp.headers[name] for name in _FORWARDED_HEADERS if name in resp.headers}
