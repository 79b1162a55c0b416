import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from .config import API_BASE, DEFAULT_MAX_CONCURRENT, DEFAULT_TOP_PAGES, HTTP_TIMEOUT, USER_AGENT
from .profile import ProgressCallback
from .tags import CatalogRecord

logger = logging.getLogger(__name__)


class AniListError(Exception):
    """Base class for errors that abort a run."""


class TransportError(AniListError):
    """A catalog request failed or returned something unusable."""


class ConfigurationError(AniListError):
    """Credentials or the user to fetch scores from are missing."""


@dataclass(frozen=True)
class CandidateFilter:
    """Which candidate list to fetch: a season, the top-rated pages, or another user's list."""
    kind: str
    year: int | None = None
    season: str | None = None
    pages: int = DEFAULT_TOP_PAGES
    user: str | None = None

    @classmethod
    def for_season(cls, season: str, year: int) -> "CandidateFilter":
        return cls("season", year=year, season=season.lower())

    @classmethod
    def top(cls, pages: int = DEFAULT_TOP_PAGES) -> "CandidateFilter":
        return cls("top", pages=pages)

    @classmethod
    def watched_by(cls, user: str) -> "CandidateFilter":
        return cls("user", user=user)


def _decode(resp: httpx.Response, what: str) -> Any:
    if not resp.is_success:
        raise TransportError(f"{what} failed with HTTP {resp.status_code}")
    try:
        return resp.json()
    except ValueError as exc:
        raise TransportError(f"{what} returned malformed JSON: {exc}") from exc


def _unique_stubs(stubs: list[dict]) -> list[dict]:
    seen = set()
    unique = []
    for stub in stubs:
        try:
            anime_id = int(stub['id'])
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(f"Candidate stub without a usable id: {stub!r}") from exc
        if anime_id not in seen:
            seen.add(anime_id)
            unique.append(stub)
    return unique


class AniListClient:
    """
    Synchronous client for the AniList v1 API.

    Every failure raises TransportError; nothing is retried.
    """

    BASE = API_BASE

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token: str | None = None
        self.client = httpx.Client(
            base_url=self.BASE,
            headers={"User-Agent": USER_AGENT},
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _request(self, method: str, path: str, params: dict | None = None, data: dict | None = None,
                 allow_missing: bool = False) -> Any:
        params = dict(params or {})
        if self.token:
            params['access_token'] = self.token

        what = f"{method} {path}"
        try:
            resp = self.client.request(method, path, params=params, data=data)
        except httpx.HTTPError as exc:
            raise TransportError(f"{what} failed: {exc}") from exc

        if allow_missing and resp.status_code == 404:
            return None
        return _decode(resp, what)

    def authenticate(self) -> str:
        """Exchange client credentials for an access token."""
        info = self._request("POST", "auth/access_token", data={
            'grant_type': 'client_credentials',
            'client_id': self.client_id,
            'client_secret': self.client_secret,
        })
        token = info.get('access_token') if isinstance(info, dict) else None
        if not token:
            raise TransportError("Invalid client ID/secret specified")
        self.token = token
        logger.debug("Authenticated against AniList")
        return token

    def get(self, path: str, params: dict | None = None, allow_missing: bool = False) -> Any:
        return self._request("GET", path, params=params, allow_missing=allow_missing)

    def fetch_page(self, anime_id: int) -> dict | None:
        """Full record payload, or None when the id does not exist."""
        payload = self.get(f"anime/{anime_id}/page", allow_missing=True)
        if payload is not None and (not isinstance(payload, dict) or 'id' not in payload):
            raise TransportError(f"Malformed record for anime {anime_id}")
        return payload

    def fetch_candidate(self, anime_id: int) -> CatalogRecord:
        payload = self.get(f"anime/{anime_id}/page")
        if not isinstance(payload, dict) or 'id' not in payload:
            raise TransportError(f"Malformed record for anime {anime_id}")
        return CatalogRecord.from_api(payload)

    def search(self, title: str) -> list[dict]:
        result = self.get(f"anime/search/{quote(title)}", allow_missing=True)
        return result if isinstance(result, list) else []

    def fetch_completed_list(self, user: str) -> list[dict]:
        payload = self.get(f"user/{user}/animelist")
        completed = None
        if isinstance(payload, dict):
            completed = (payload.get('lists') or {}).get('completed')
        if completed is None:
            raise TransportError(f"Failed to fetch anime list of {user}")
        return completed

    def fetch_rating_history(
        self,
        user: str,
        progress: ProgressCallback | None = None,
    ) -> list[tuple[CatalogRecord, float]]:
        """Completed titles of a user with their scores, in list order."""
        completed = self.fetch_completed_list(user)
        total = len(completed)
        logger.info(f"Fetching {total} completed titles of {user}")

        history = []
        for done, entry in enumerate(completed, 1):
            record = self.fetch_candidate(int(entry['anime']['id']))
            history.append((record, float(entry.get('score') or 0)))
            if progress:
                progress(done, total)
        return history

    def _browse(self, params: dict) -> list[dict]:
        result = self.get("browse/anime", params=params)
        if not isinstance(result, list):
            raise TransportError(f"browse/anime returned {type(result).__name__}, expected a list")
        return result

    def fetch_candidate_batch(self, candidate_filter: CandidateFilter) -> list[dict]:
        """
        Minimal candidate stubs for a filter, de-duplicated by id.

        Each stub carries at least an ``id``; hydrate with fetch_candidate.
        """
        if candidate_filter.kind == "season":
            stubs = self._browse({
                'year': candidate_filter.year,
                'season': candidate_filter.season,
                'full_page': 'true',
            })
        elif candidate_filter.kind == "top":
            stubs = []
            for page in range(candidate_filter.pages):
                stubs.extend(self._browse({'sort': 'score-desc', 'page': page}))
        elif candidate_filter.kind == "user":
            stubs = [entry['anime'] for entry in self.fetch_completed_list(candidate_filter.user)]
        else:
            raise ValueError(f"Unknown candidate filter: {candidate_filter.kind}")

        unique = _unique_stubs(stubs)
        logger.debug(f"{len(unique)} candidates for {candidate_filter}")
        return unique

    def close(self):
        self.client.close()


class AsyncAniListClient:
    """Hydrates many candidates concurrently with a bounded number of requests in flight."""

    BASE = API_BASE

    def __init__(
        self,
        token: str | None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.timeout = timeout
        self.transport = transport

    async def _fetch_one(self, client: httpx.AsyncClient, anime_id: int) -> CatalogRecord:
        path = f"anime/{anime_id}/page"
        params = {'access_token': self.token} if self.token else {}
        async with self.semaphore:
            try:
                resp = await client.get(path, params=params)
            except httpx.HTTPError as exc:
                raise TransportError(f"GET {path} failed: {exc}") from exc

        payload = _decode(resp, f"GET {path}")
        if not isinstance(payload, dict) or 'id' not in payload:
            raise TransportError(f"Malformed record for anime {anime_id}")
        return CatalogRecord.from_api(payload)

    async def fetch_candidates(
        self,
        ids: list[int],
        progress: ProgressCallback | None = None,
    ) -> list[CatalogRecord]:
        """Records in the same order as ``ids``. The first failure aborts the batch."""
        done = 0
        total = len(ids)

        async def _tracked(client, anime_id):
            nonlocal done
            record = await self._fetch_one(client, anime_id)
            done += 1
            if progress:
                progress(done, total)
            return record

        async with httpx.AsyncClient(
            base_url=self.BASE,
            headers={"User-Agent": USER_AGENT},
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            tasks = [asyncio.ensure_future(_tracked(client, i)) for i in ids]
            try:
                return list(await asyncio.gather(*tasks))
            except BaseException:
                # Settle the other fetches before the client closes under them
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise


def hydrate_candidates(
    client: AniListClient,
    ids: list[int],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    progress: ProgressCallback | None = None,
) -> list[CatalogRecord]:
    """
    Fetch full records for candidate ids, preserving their order.

    Sequential by default; with max_concurrent > 1 the fetches run on a
    bounded async pool.
    """
    if max_concurrent <= 1:
        records = []
        for done, anime_id in enumerate(ids, 1):
            records.append(client.fetch_candidate(anime_id))
            if progress:
                progress(done, len(ids))
        return records

    pool = AsyncAniListClient(client.token, max_concurrent=max_concurrent, timeout=client.client.timeout)
    return asyncio.run(pool.fetch_candidates(ids, progress=progress))
