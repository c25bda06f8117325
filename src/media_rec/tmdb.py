"""
Async TMDB client.

Resolves a (type, id) identity to normalized MediaMetadata. Pure I/O plus
normalization: no caching happens here, callers own cache population.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

import httpx

from .config import (
    DEFAULT_RETRY_AFTER,
    HTTP2_ENABLED,
    HTTP_TIMEOUT,
    MAX_CONCURRENT_REQUESTS,
    MAX_RATE_LIMIT_WAIT_SECONDS,
    TMDB_ACCESS_TOKEN,
    TMDB_BASE_URL,
    TMDB_LANGUAGE,
    TMDB_REGION,
    TOP_CAST_COUNT,
)
from .errors import CallerError, ConfigurationError, FetchError, RateLimitedError
from .models import MediaIdentity, MediaMetadata, MediaType, NotFound, SearchHit
from .utils import parse_retry_after, parse_year

logger = logging.getLogger(__name__)

MOVIE_APPEND = "credits,keywords,recommendations,similar,release_dates,reviews,translations,watch/providers"
TV_APPEND = "credits,keywords,content_ratings,reviews,translations,watch/providers"

SleepFunc = Callable[[float], Awaitable[None]]


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _id_name_pairs(entries: Any) -> tuple[tuple[int, str], ...]:
    """Normalize [{"id": .., "name": ..}] into unique (id, name) pairs, first occurrence wins."""
    seen: set[int] = set()
    pairs: list[tuple[int, str]] = []
    for entry in _as_list(entries):
        if not isinstance(entry, dict):
            continue
        entry_id = entry.get("id")
        if not isinstance(entry_id, int) or isinstance(entry_id, bool) or entry_id in seen:
            continue
        seen.add(entry_id)
        pairs.append((entry_id, str(entry.get("name") or "")))
    return tuple(pairs)


def _candidate_identities(listing: Any, parent_type: MediaType) -> tuple[MediaIdentity, ...]:
    """Identities from a recommendations/similar payload, in provider order, deduplicated."""
    seen: set[MediaIdentity] = set()
    identities: list[MediaIdentity] = []
    for entry in _as_list(_as_dict(listing).get("results")):
        if not isinstance(entry, dict):
            continue
        media_type = entry.get("media_type")
        if media_type not in ("movie", "tv"):
            media_type = parent_type
        try:
            identity = MediaIdentity(media_type, entry.get("id"))
        except CallerError:
            logger.debug(f"Skipping malformed candidate entry: {entry.get('id')!r}")
            continue
        if identity not in seen:
            seen.add(identity)
            identities.append(identity)
    return tuple(identities)


def _content_rating(payload: dict, media_type: MediaType, region: str) -> str | None:
    if media_type is MediaType.MOVIE:
        for result in _as_list(_as_dict(payload.get("release_dates")).get("results")):
            if isinstance(result, dict) and result.get("iso_3166_1") == region:
                for release in _as_list(result.get("release_dates")):
                    certification = _as_dict(release).get("certification")
                    if certification:
                        return certification
        return None

    for result in _as_list(_as_dict(payload.get("content_ratings")).get("results")):
        if isinstance(result, dict) and result.get("iso_3166_1") == region:
            return result.get("rating") or None
    return None


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _unique_names(entries: Iterable[Any]) -> tuple[str, ...]:
    names: list[str] = []
    for entry in entries:
        name = _text(_as_dict(entry).get("name"))
        if name and name not in names:
            names.append(name)
    return tuple(names)


def _top_cast(credits: dict, limit: int = TOP_CAST_COUNT) -> tuple[str, ...]:
    """Top-billed cast names, by billing order."""
    members = [m for m in _as_list(credits.get("cast")) if isinstance(m, dict)]
    members.sort(key=lambda m: m["order"] if isinstance(m.get("order"), int) else float("inf"))
    return _unique_names(members)[:limit]


def _directors(payload: dict, credits: dict, media_type: MediaType) -> tuple[str, ...]:
    """Movie directors, or a show's creators (falling back to credited directors)."""
    if media_type is MediaType.TV:
        creators = _unique_names(_as_list(payload.get("created_by")))
        if creators:
            return creators
    crew = _as_list(credits.get("crew"))
    return _unique_names(m for m in crew if _as_dict(m).get("job") == "Director")


def parse_media_details(
    identity: MediaIdentity,
    payload: dict,
    region: str = TMDB_REGION,
    recommendations: dict | None = None,
    similar: dict | None = None,
) -> MediaMetadata:
    """
    Shared normalization for detail payloads.

    ``recommendations``/``similar`` override the appended lists (TV shows fetch
    them with separate calls). Missing or malformed fields become absent data.
    """
    media_type = identity.media_type
    keywords_obj = _as_dict(payload.get("keywords"))
    keyword_entries = keywords_obj.get("keywords") if media_type is MediaType.MOVIE else keywords_obj.get("results")
    if keyword_entries is None:
        keyword_entries = keywords_obj.get("keywords") or keywords_obj.get("results")

    overview = _text(payload.get("overview"))
    reviews = tuple(
        text for text in (_text(_as_dict(r).get("content")) for r in _as_list(_as_dict(payload.get("reviews")).get("results")))
        if text
    )
    translated = []
    for translation in _as_list(_as_dict(payload.get("translations")).get("translations")):
        text = _text(_as_dict(_as_dict(translation).get("data")).get("overview"))
        # The source-language translation repeats the main overview
        if text and text != overview and text not in translated:
            translated.append(text)

    providers_region = _as_dict(_as_dict(_as_dict(payload.get("watch/providers")).get("results")).get(region))
    providers = tuple(
        name for name in (_as_dict(p).get("provider_name") for p in _as_list(providers_region.get("flatrate")))
        if name
    )

    vote_average = payload.get("vote_average")
    vote_count = payload.get("vote_count")
    popularity = payload.get("popularity")
    credits = _as_dict(payload.get("credits"))

    recs_source = recommendations if recommendations is not None else payload.get("recommendations")
    similar_source = similar if similar is not None else payload.get("similar")

    return MediaMetadata(
        identity=identity,
        title=_text(payload.get("title")) or _text(payload.get("name")) or "Unknown Title",
        overview=overview,
        tagline=_text(payload.get("tagline")),
        genres=_id_name_pairs(payload.get("genres")),
        keywords=_id_name_pairs(keyword_entries),
        release_date=_text(payload.get("release_date")) or _text(payload.get("first_air_date")),
        vote_average=float(vote_average) if isinstance(vote_average, (int, float)) else None,
        vote_count=int(vote_count) if isinstance(vote_count, (int, float)) else 0,
        popularity=float(popularity) if isinstance(popularity, (int, float)) else None,
        content_rating=_content_rating(payload, media_type, region),
        poster_path=payload.get("poster_path") or None,
        reviews=reviews,
        translated_overviews=tuple(translated),
        watch_providers=providers,
        cast=_top_cast(credits),
        directors=_directors(payload, credits, media_type),
        direct_recommendations=_candidate_identities(recs_source, media_type),
        similar_items=_candidate_identities(similar_source, media_type),
    )


class TMDBClient:
    """Async TMDB client with bounded concurrency and coordinated rate limiting."""

    def __init__(
        self,
        access_token: str | None = None,
        *,
        base_url: str = TMDB_BASE_URL,
        language: str = TMDB_LANGUAGE,
        region: str = TMDB_REGION,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
        timeout: float = HTTP_TIMEOUT,
        http2: bool = HTTP2_ENABLED,
        default_retry_after: float = DEFAULT_RETRY_AFTER,
        max_rate_limit_wait: float = MAX_RATE_LIMIT_WAIT_SECONDS,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc | None = None,
    ):
        token = access_token if access_token is not None else TMDB_ACCESS_TOKEN
        if not token:
            raise ConfigurationError("TMDB access token is not configured (set TMDB_ACCESS_TOKEN)")

        self.base_url = base_url.rstrip("/")
        self.language = language
        self.region = region
        self.timeout = timeout
        self.http2 = http2
        self.default_retry_after = default_retry_after
        self.max_rate_limit_wait = max_rate_limit_wait
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self.client = client
        self._owns_client = client is None
        self._sleep = sleep or asyncio.sleep
        self._headers = {
            "Authorization": f"Bearer {token}",
            "accept": "application/json",
        }
        # Coordinated rate limiting: when one request hits 429, all requests pause
        self._rate_limit_event = asyncio.Event()
        self._rate_limit_event.set()
        self._rate_limit_waiters = 0

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"User-Agent": "media-rec/1.0"},
                timeout=self.timeout,
                http2=self.http2,
            )
            self._owns_client = True
        return self.client

    async def aclose(self) -> None:
        if self.client is not None and self._owns_client:
            await self.client.aclose()
            self.client = None

    async def _get_json(self, path: str, params: dict | None = None) -> dict | None:
        """
        GET a provider path and decode its JSON body.

        Returns None on 404. Each 429 is retried once after the provider's
        Retry-After hint; the total wait per request is capped.
        """
        client = self._ensure_client()
        url = f"{self.base_url}{path}"
        query = {"language": self.language}
        query.update(params or {})
        waited = 0.0

        async with self.semaphore:
            while True:
                # Wait if globally rate limited by another request
                await self._rate_limit_event.wait()

                try:
                    resp = await client.get(url, params=query, headers=self._headers)
                except httpx.HTTPError as exc:
                    raise FetchError(f"Request error on {path}: {type(exc).__name__}: {exc}") from exc

                if resp.status_code == 404:
                    logger.debug(f"Not found: {path}")
                    return None

                if resp.status_code == 429:
                    retry_after = parse_retry_after(resp.headers.get("Retry-After"), self.default_retry_after)
                    if waited + retry_after > self.max_rate_limit_wait:
                        raise RateLimitedError(
                            f"Rate limited on {path} beyond {self.max_rate_limit_wait}s total wait",
                            waited=waited,
                        )
                    logger.warning(f"Rate limited on {path}, pausing ALL requests for {retry_after}s")
                    self._rate_limit_waiters += 1
                    self._rate_limit_event.clear()
                    try:
                        await self._sleep(retry_after)
                    finally:
                        # Reopen only once the longest overlapping pause is over
                        self._rate_limit_waiters -= 1
                        if self._rate_limit_waiters == 0:
                            self._rate_limit_event.set()
                    waited += retry_after
                    continue

                if resp.is_error:
                    raise FetchError(_error_message(resp), status=resp.status_code)

                try:
                    payload = resp.json()
                except ValueError as exc:
                    raise FetchError(f"Invalid JSON from {path}", status=resp.status_code) from exc
                return payload if isinstance(payload, dict) else {}

    async def _get_candidate_list(self, path: str) -> dict:
        """
        A show's recommendations/similar page.

        Provider errors degrade to an empty list so the show's details still
        resolve. Exhausting the rate-limit wait still propagates.
        """
        try:
            payload = await self._get_json(path, {"page": 1})
        except RateLimitedError:
            raise
        except FetchError as exc:
            logger.warning(f"Failed to fetch {path}, using an empty list: {exc}")
            return {"results": []}
        return payload or {"results": []}

    async def fetch(self, identity: MediaIdentity) -> MediaMetadata | NotFound:
        """
        Resolve an identity to normalized metadata.

        Movies use a single combined call. TV shows need separate calls for
        recommendations and similar items; the provider does not append them.
        """
        if not isinstance(identity, MediaIdentity):
            raise CallerError(f"Expected a MediaIdentity, got {identity!r}")

        ext_id = identity.external_id
        if identity.media_type is MediaType.MOVIE:
            payload = await self._get_json(f"/movie/{ext_id}", {"append_to_response": MOVIE_APPEND})
            if payload is None:
                return NotFound(identity)
            return parse_media_details(identity, payload, region=self.region)

        payload, recommendations, similar = await asyncio.gather(
            self._get_json(f"/tv/{ext_id}", {"append_to_response": TV_APPEND}),
            self._get_candidate_list(f"/tv/{ext_id}/recommendations"),
            self._get_candidate_list(f"/tv/{ext_id}/similar"),
        )
        if payload is None:
            return NotFound(identity)
        return parse_media_details(
            identity,
            payload,
            region=self.region,
            recommendations=recommendations,
            similar=similar,
        )

    async def fetch_many(
        self,
        identities: Iterable[MediaIdentity],
        on_complete: Callable[[MediaIdentity], None] | None = None,
    ) -> dict[MediaIdentity, MediaMetadata | NotFound | Exception]:
        """
        Fetch several identities concurrently. Failures are isolated per identity.

        ``on_complete`` is called once per identity as it finishes, success or not.
        """
        unique = list(dict.fromkeys(identities))

        async def _fetch_one(identity: MediaIdentity):
            try:
                return await self.fetch(identity)
            finally:
                if on_complete is not None:
                    on_complete(identity)

        results = await asyncio.gather(*(_fetch_one(i) for i in unique), return_exceptions=True)

        outcome: dict[MediaIdentity, MediaMetadata | NotFound | Exception] = {}
        failed = 0
        for identity, result in zip(unique, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to fetch {identity}: {type(result).__name__}: {result}")
                failed += 1
            outcome[identity] = result

        if failed:
            logger.warning(f"Batch complete: {len(unique) - failed}/{len(unique)} fetched, {failed} failed")
        return outcome

    async def search(self, query: str, page: int = 1) -> list[SearchHit]:
        """Multi-type search. People and other non-media results are skipped."""
        if not query or not query.strip():
            raise CallerError("Search query is required")

        payload = await self._get_json(
            "/search/multi",
            {"query": query.strip(), "page": page, "include_adult": "false"},
        )
        hits: list[SearchHit] = []
        for entry in _as_list(_as_dict(payload).get("results")):
            if not isinstance(entry, dict) or entry.get("media_type") not in ("movie", "tv"):
                continue
            try:
                identity = MediaIdentity(entry["media_type"], entry.get("id"))
            except CallerError:
                continue
            hits.append(
                SearchHit(
                    identity=identity,
                    title=_text(entry.get("title")) or _text(entry.get("name")) or "Unknown Title",
                    year=parse_year(entry.get("release_date") or entry.get("first_air_date")),
                    poster_path=entry.get("poster_path") or None,
                    popularity=entry.get("popularity"),
                )
            )
        return hits


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict) and body.get("status_message"):
        return str(body["status_message"])
    return resp.reason_phrase
