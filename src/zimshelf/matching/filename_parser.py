"""Parse Kiwix ZIM filenames into a base name and a release token.

Kiwix publishes archives with a predictable naming scheme:
  {project}_{lang}_{selection}[_{flavour}]_{YYYY-MM}.zim
  wikipedia_en_all_maxi_2024-01.zim
  pets.stackexchange.com_en_all_2023-10.zim

The ``YYYY-MM`` token sorts lexicographically in release order, which is
what makes it usable as a fallback version when no publish date is known.
"""

import re
from dataclasses import dataclass

_VERSION_RE = re.compile(r"^(.+?)_(\d{4}-\d{2})\.[^.]+$")
_VERSION_SUFFIX_RE = re.compile(r"_\d{4}-\d{2}$")

# Catalog names for DevDocs archives carry the topic after the language segment
_DEVDOCS_PREFIX = "devdocs_"


@dataclass(frozen=True, slots=True)
class ParsedZimFilename:
    base_name: str
    version: str | None


def _strip_extension(filename: str) -> str:
    return filename.rsplit(".", 1)[0] if "." in filename else filename


def parse_zim_filename(filename: str) -> ParsedZimFilename:
    """Split ``<base>_<YYYY-MM>.<ext>`` into base and version.

    Filenames without the trailing release token return the filename minus
    its extension and ``version=None``.
    """
    match = _VERSION_RE.match(filename)
    if match:
        return ParsedZimFilename(base_name=match.group(1), version=match.group(2))
    return ParsedZimFilename(base_name=_strip_extension(filename), version=None)


def catalog_search_term(base_name: str) -> str:
    """Derive a free-text catalog query from an archive base name.

    Catalog entry names do not always match filenames verbatim, so this is
    only a hint to narrow the candidate list; matching happens afterwards.
    """
    if "." in base_name:
        # "pets.stackexchange.com_en_all" -> "pets"
        return base_name.split("_")[0].split(".")[0]
    parts = base_name.split("_")
    if base_name.startswith(_DEVDOCS_PREFIX):
        # "devdocs_en_redux" -> "redux"
        return " ".join(parts[2:]) if len(parts) > 2 else base_name
    # "wikipedia_ace_all_nopic" -> "wikipedia ace"
    return " ".join(parts[:2])


def normalized_base(filename: str) -> str:
    """Canonical key for matching an installed file against catalog filenames."""
    stem = _strip_extension(filename)
    stem = _VERSION_SUFFIX_RE.sub("", stem)
    return re.sub(r"[_\-\s]+", "-", stem.lower())
