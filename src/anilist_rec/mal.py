"""
MyAnimeList watch-list import.

MAL ids and AniList ids agree for older titles but drift apart for newer
ones, so each completed MAL entry is reconciled to an AniList id before its
record is fetched. Entries that cannot be reconciled are skipped.
"""
import html
import logging
import re
from dataclasses import dataclass

import httpx
from selectolax.parser import HTMLParser

from .client import AniListClient, TransportError
from .config import HTTP_TIMEOUT, MAL_LIST_URL, MAL_STATUS_COMPLETED, USER_AGENT
from .profile import ProgressCallback
from .tags import CatalogRecord

logger = logging.getLogger(__name__)

# Ids below this are shared between MAL and AniList
SHARED_ID_LIMIT = 19000

# MAL id -> AniList id; False marks entries with no AniList counterpart
KNOWN_ID_ALIASES: dict[int, int | bool] = {
    19285: 19285,
    20039: 20039,
    20423: 20423,
    22297: 19603,  # F/SN: UBW (ufotable)
    23277: 20657,  # Saenai Heroine no Sodate-kata
    27821: False,  # Fate/stay night: Unlimited Blade Works (TV) - Prologue
    28701: 20792,  # F/SN: UBW (ufotable) 2nd Season
    29317: False,  # Saenai Heroine no Sodate-kata Episode 0
}

_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.S)


@dataclass(frozen=True)
class MalEntry:
    series_id: int
    title: str
    status: str
    score: float


def _node_text(node, selector: str) -> str:
    child = node.css_first(selector)
    if child is None:
        return ""
    return child.text(deep=True).strip()


def parse_mal_list(xml: str) -> list[MalEntry]:
    """Parse a malappinfo.php export into entries, in document order."""
    # The HTML parser does not know CDATA sections; inline them as escaped text
    xml = _CDATA_RE.sub(lambda m: html.escape(m.group(1), quote=False), xml)
    tree = HTMLParser(xml)
    entries = []
    for node in tree.css("anime"):
        raw_id = _node_text(node, "series_animedb_id")
        if not raw_id.isdigit():
            logger.warning(f"Skipping MAL entry without a numeric id: '{raw_id}'")
            continue
        try:
            score = float(_node_text(node, "my_score") or 0)
        except ValueError:
            score = 0.0
        entries.append(MalEntry(
            series_id=int(raw_id),
            title=_node_text(node, "series_title"),
            status=_node_text(node, "my_status"),
            score=score,
        ))
    return entries


def fetch_mal_list(user: str, timeout: float = HTTP_TIMEOUT,
                   transport: httpx.BaseTransport | None = None) -> list[MalEntry]:
    """Download and parse the full MAL list of a user."""
    params = {'status': 'all', 'type': 'anime', 'u': user}
    try:
        with httpx.Client(headers={"User-Agent": USER_AGENT}, timeout=timeout, transport=transport) as http:
            resp = http.get(MAL_LIST_URL, params=params)
    except httpx.HTTPError as exc:
        raise TransportError(f"Failed to fetch MAL list of {user}: {exc}") from exc

    if not resp.is_success:
        raise TransportError(f"Failed to fetch MAL list of {user}: HTTP {resp.status_code}")
    return parse_mal_list(resp.text)


def normalize_title(title: str) -> str:
    """Loosen a MAL title into an AniList search query."""
    title = re.sub(r"\W", " ", title)
    title = re.sub(r"\s+TV\s*$", "", title)
    title = re.sub(r"\s+2nd\s+Season\s*$", " 2", title)
    return re.sub(r"\s+wo\s+", " ", title)


def _search_match(client: AniListClient, title: str) -> dict | None:
    query = normalize_title(title)
    hits = client.search(query)
    exact = [
        hit for hit in hits
        if title in (hit.get('title_romaji'), hit.get('title_english'), hit.get('title_japanese'))
    ]
    candidates = exact or hits
    return candidates[0] if candidates else None


def resolve_catalog_id(client: AniListClient, entry: MalEntry) -> int | None:
    """
    Map a MAL entry to an AniList id.

    Shared and aliased ids are trusted as-is. Any other id is checked
    against the AniList title and, on mismatch, looked up by title search.
    Returns None when no AniList title could be found.
    """
    anime_id = entry.series_id
    if anime_id < SHARED_ID_LIMIT:
        return anime_id

    if anime_id in KNOWN_ID_ALIASES:
        alias = KNOWN_ID_ALIASES[anime_id]
        return alias if alias is not False else None

    page = client.fetch_page(anime_id)
    if page and page.get('title_romaji') == entry.title:
        return anime_id

    hit = _search_match(client, entry.title)
    if hit is None or 'id' not in hit:
        logger.warning(f"Failed to find “{entry.title}” on AniList")
        return None

    logger.info(
        f"Auto-mapped “{entry.title}” -> “{hit.get('title_romaji')}” / “{hit.get('title_english')}”"
    )
    return int(hit['id'])


def mal_rating_history(
    client: AniListClient,
    entries: list[MalEntry],
    progress: ProgressCallback | None = None,
) -> list[tuple[CatalogRecord, float]]:
    """Rated history from the completed MAL entries that map to AniList titles."""
    history = []
    total = len(entries)
    for done, entry in enumerate(entries, 1):
        if entry.status == MAL_STATUS_COMPLETED:
            anime_id = resolve_catalog_id(client, entry)
            page = client.fetch_page(anime_id) if anime_id is not None else None
            if page:
                history.append((CatalogRecord.from_api(page), entry.score))
        if progress:
            progress(done, total)
    return history
