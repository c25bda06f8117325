"""
Public entry points for the media recommender.

    async with MediaRecommender() as rec:
        result = await rec.get_recommendations(["tv:1396"])

``MediaRecommender`` owns the TMDB client and the cache for its lifetime.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from .aggregator import CandidateAggregator, coerce_seeds
from .cache import CacheLayer
from .config import CHAIN_EXPANSION_BREADTH
from .errors import CallerError
from .filters import RecommendationOptions
from .models import MediaIdentity, MediaMetadata, NotFound, RecommendationResult, SearchHit
from .patterns import classify_patterns  # noqa: F401  (re-exported)
from .scoring import SimilarityScorer
from .scoring_weights import ScoringWeights, load_scoring_weights
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)


def _coerce_identity(identity: MediaIdentity | str) -> MediaIdentity:
    if isinstance(identity, MediaIdentity):
        return identity
    if isinstance(identity, str):
        return MediaIdentity.parse(identity)
    raise CallerError(f"Invalid identity: {identity!r}")


class MediaRecommender:
    """Facade over fetching, caching, scoring and aggregation."""

    def __init__(
        self,
        client: TMDBClient | None = None,
        cache: CacheLayer | None = None,
        weights: ScoringWeights | None = None,
        chain_breadth: int = CHAIN_EXPANSION_BREADTH,
    ):
        self._owns_client = client is None
        self._owns_cache = cache is None
        self.client = client if client is not None else TMDBClient()
        self.cache = cache if cache is not None else CacheLayer()
        self.weights = weights if weights is not None else load_scoring_weights()
        self.aggregator = CandidateAggregator(
            self.client,
            cache=self.cache,
            scorer=SimilarityScorer(self.weights),
            chain_breadth=chain_breadth,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
        if self._owns_cache:
            await self.cache.close()

    async def get_recommendations(
        self,
        identities: Iterable[MediaIdentity | str],
        options: RecommendationOptions | None = None,
    ) -> RecommendationResult:
        return await self.aggregator.aggregate(identities, options)

    async def get_details(self, identity: MediaIdentity | str, skip_cache: bool = False) -> MediaMetadata | NotFound:
        """Normalized, pattern-classified metadata for one identity."""
        return await self.aggregator.load_metadata(_coerce_identity(identity), skip_cache=skip_cache)

    async def search(self, query: str) -> list[SearchHit]:
        return await self.client.search(query)

    async def resolve_title(self, query: str) -> MediaIdentity | None:
        """Identity of the first movie/TV search hit, or None."""
        hits = await self.client.search(query)
        if not hits:
            logger.warning(f"No TMDB match for '{query}'")
            return None
        hit = hits[0]
        logger.debug(f"Resolved '{query}' to {hit.title} ({hit.identity})")
        return hit.identity

    async def clear_cache(self, identity: MediaIdentity | str | None = None) -> None:
        """Invalidate one identity's entries, or flush the whole cache."""
        if identity is None:
            await self.cache.clear()
        else:
            await self.cache.invalidate_seed(_coerce_identity(identity))

    async def warm_cache(
        self,
        identities: Iterable[MediaIdentity | str],
        on_progress: Callable[[MediaIdentity], None] | None = None,
    ) -> dict[MediaIdentity, MediaMetadata | NotFound | Exception]:
        """
        Prefetch metadata into the cache.

        Already-cached identities are not refetched; the rest go to the
        client in one batch. Failures are isolated per identity and returned
        in the mapping. ``on_progress`` is called once per identity.
        """
        unique = coerce_seeds(identities)
        outcome: dict[MediaIdentity, MediaMetadata | NotFound | Exception] = {}
        missing: list[MediaIdentity] = []

        for identity in unique:
            cached = await self.cache.get_media(identity)
            if cached is None:
                missing.append(identity)
                continue
            outcome[identity] = cached
            if on_progress is not None:
                on_progress(identity)

        fetched = await self.client.fetch_many(missing, on_complete=on_progress) if missing else {}
        for identity, result in fetched.items():
            if isinstance(result, MediaMetadata):
                result = await self.aggregator.store_metadata(result)
            outcome[identity] = result

        failed = sum(1 for r in fetched.values() if isinstance(r, Exception))
        not_found = sum(1 for r in fetched.values() if isinstance(r, NotFound))
        logger.info(
            f"Warmed {len(unique) - failed - not_found}/{len(unique)} items "
            f"({len(unique) - len(missing)} already cached, {not_found} not found, {failed} failed)"
        )
        return {identity: outcome[identity] for identity in unique}


async def get_recommendations(
    identities: Iterable[MediaIdentity | str],
    options: RecommendationOptions | None = None,
) -> RecommendationResult:
    """One-shot convenience wrapper using configuration from the environment."""
    async with MediaRecommender() as recommender:
        return await recommender.get_recommendations(identities, options)
