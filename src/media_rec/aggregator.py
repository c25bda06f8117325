"""
Multi-seed candidate aggregation.

For each seed, the provider's direct recommendations and similar items become
candidate paths. Every path is scored against its own seed, then paths are
merged by identity so each title appears once with the mean score over all
paths that surfaced it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Iterable

from .cache import CacheLayer
from .config import CHAIN_EXPANSION_BREADTH, CHAIN_EXPANSION_DEPTH, MAX_CHAIN_BREADTH, MIN_CHAIN_BREADTH
from .errors import CallerError, NoSeedsResolvedError
from .filters import RecommendationOptions, apply_filters
from .models import (
    Candidate,
    CandidateSource,
    MediaIdentity,
    MediaMetadata,
    NotFound,
    RecommendationResult,
    RecommendedItem,
    SourceMetadata,
)
from .patterns import classify_metadata
from .scoring import SimilarityScorer

logger = logging.getLogger(__name__)


@dataclass
class CandidatePath:
    """One route by which a candidate was surfaced for a seed."""

    identity: MediaIdentity
    source: CandidateSource
    via_title: str | None = None


@dataclass
class SeedOutcome:
    seed: MediaIdentity
    metadata: MediaMetadata | None = None
    candidates: list[Candidate] = field(default_factory=list)
    item_metadata: dict[MediaIdentity, MediaMetadata] = field(default_factory=dict)
    reason: str | None = None

    @property
    def resolved(self) -> bool:
        return self.metadata is not None


def coerce_seeds(seeds: Iterable[MediaIdentity | str]) -> list[MediaIdentity]:
    """Validate seeds, accepting ``type:id`` strings. Duplicates collapse, order is kept."""
    if seeds is None or isinstance(seeds, (str, MediaIdentity)):
        raise CallerError("Seeds must be a list of identities")
    parsed = []
    for seed in seeds:
        if isinstance(seed, MediaIdentity):
            parsed.append(seed)
        elif isinstance(seed, str):
            parsed.append(MediaIdentity.parse(seed))
        else:
            raise CallerError(f"Invalid seed: {seed!r}")
    if not parsed:
        raise CallerError("At least one seed is required")
    return list(dict.fromkeys(parsed))


def rank_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Score descending, ties broken by match count descending. Stable."""
    return sorted(candidates, key=lambda c: (-c.score, -c.match_count))


class CandidateAggregator:
    """
    Builds ranked recommendations from one or more seeds.

    ``fetcher`` is anything with an async ``fetch(identity)`` returning
    MediaMetadata or NotFound (normally a TMDBClient).

    Chain expansion always walks exactly CHAIN_EXPANSION_DEPTH hops;
    ``chain_breadth`` is clamped to MIN_CHAIN_BREADTH..MAX_CHAIN_BREADTH.
    """

    def __init__(
        self,
        fetcher,
        cache: CacheLayer | None = None,
        scorer: SimilarityScorer | None = None,
        chain_breadth: int = CHAIN_EXPANSION_BREADTH,
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.scorer = scorer or SimilarityScorer()
        self.chain_breadth = self._clamp_breadth(chain_breadth)

    @staticmethod
    def _clamp_breadth(value: int) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise CallerError(f"chain_breadth must be an integer, got {value!r}")
        if value < MIN_CHAIN_BREADTH:
            logger.warning(f"chain_breadth={value} is below minimum {MIN_CHAIN_BREADTH}, using {MIN_CHAIN_BREADTH}")
            return MIN_CHAIN_BREADTH
        if value > MAX_CHAIN_BREADTH:
            logger.warning(f"chain_breadth={value} is above maximum {MAX_CHAIN_BREADTH}, using {MAX_CHAIN_BREADTH}")
            return MAX_CHAIN_BREADTH
        return value

    async def load_metadata(self, identity: MediaIdentity, skip_cache: bool = False) -> MediaMetadata | NotFound:
        """Cache-backed metadata load. Fresh fetches are pattern-classified before caching."""
        use_cache = self.cache is not None and not skip_cache
        if use_cache:
            cached = await self.cache.get_media(identity)
            if cached is not None:
                return cached

        result = await self.fetcher.fetch(identity)
        if isinstance(result, NotFound):
            return result
        return await self.store_metadata(result, use_cache)

    async def store_metadata(self, metadata: MediaMetadata, use_cache: bool = True) -> MediaMetadata:
        """Classify patterns on freshly fetched metadata and cache it."""
        metadata = replace(metadata, patterns=classify_metadata(metadata))
        if use_cache and self.cache is not None:
            await self.cache.set_media(metadata)
        return metadata

    async def _load_shared(
        self,
        identity: MediaIdentity,
        skip_cache: bool,
        inflight: dict[MediaIdentity, asyncio.Future],
    ) -> MediaMetadata | NotFound:
        """One load per identity per aggregation; concurrent seeds await the same task."""
        task = inflight.get(identity)
        if task is None:
            task = asyncio.ensure_future(self.load_metadata(identity, skip_cache))
            inflight[identity] = task
        return await task

    async def _load_many(
        self,
        identities: Iterable[MediaIdentity],
        skip_cache: bool,
        known: dict[MediaIdentity, MediaMetadata],
        inflight: dict[MediaIdentity, asyncio.Future],
    ) -> dict[MediaIdentity, MediaMetadata]:
        """Load metadata concurrently into ``known``. Failed and not-found items are dropped."""
        pending = [i for i in dict.fromkeys(identities) if i not in known]
        if not pending:
            return known

        results = await asyncio.gather(
            *(self._load_shared(i, skip_cache, inflight) for i in pending),
            return_exceptions=True,
        )
        dropped = 0
        for identity, result in zip(pending, results):
            if isinstance(result, BaseException):
                logger.warning(f"Dropping candidate {identity}: {type(result).__name__}: {result}")
                dropped += 1
            elif isinstance(result, NotFound):
                logger.info(f"Dropping candidate {identity}: {result.message}")
                dropped += 1
            else:
                known[identity] = result

        if dropped:
            logger.info(f"Loaded {len(pending) - dropped}/{len(pending)} candidates, {dropped} dropped")
        return known

    async def _expand_chain(
        self,
        seed: MediaMetadata,
        skip_cache: bool,
        known: dict[MediaIdentity, MediaMetadata],
        inflight: dict[MediaIdentity, asyncio.Future],
    ) -> list[CandidatePath]:
        """
        Bounded breadth walk over direct recommendations.

        Each level expands the first ``chain_breadth`` unvisited direct
        candidates of the previous level and contributes their own direct
        recommendations, tagged with the title they came through.
        """
        visited = {seed.identity}
        level = [seed]
        paths: list[CandidatePath] = []

        for _ in range(CHAIN_EXPANSION_DEPTH):
            frontier = []
            for node in level:
                for identity in node.direct_recommendations:
                    if identity in visited:
                        continue
                    visited.add(identity)
                    frontier.append(identity)
                    if len(frontier) >= self.chain_breadth:
                        break
                if len(frontier) >= self.chain_breadth:
                    break
            if not frontier:
                break

            await self._load_many(frontier, skip_cache, known, inflight)
            level = [known[i] for i in frontier if i in known]
            for node in level:
                paths.extend(
                    CandidatePath(identity, CandidateSource.DIRECT, via_title=node.title)
                    for identity in node.direct_recommendations
                )

        logger.debug(f"Chain expansion for {seed.identity} added {len(paths)} paths")
        return paths

    def _score_paths(
        self,
        seed: MediaMetadata,
        paths: list[CandidatePath],
        known: dict[MediaIdentity, MediaMetadata],
    ) -> list[Candidate]:
        accumulated: dict[MediaIdentity, Candidate] = {}
        for path in paths:
            metadata = known.get(path.identity)
            if metadata is None:
                continue
            breakdown = self.scorer.score(seed, metadata, path.source)
            candidate = accumulated.get(path.identity)
            if candidate is None:
                candidate = Candidate(path.identity, path.source, seed.identity, via_title=path.via_title)
                accumulated[path.identity] = candidate
            candidate.add_path(breakdown.score, path.source, breakdown)
        return list(accumulated.values())

    async def _run_seed(
        self,
        seed: MediaIdentity,
        options: RecommendationOptions,
        inflight: dict[MediaIdentity, asyncio.Future],
    ) -> SeedOutcome:
        skip_cache = options.skip_cache
        seed_meta = await self._load_shared(seed, skip_cache, inflight)
        if isinstance(seed_meta, NotFound):
            logger.warning(f"Seed {seed} could not be resolved: {seed_meta.message}")
            return SeedOutcome(seed, reason=seed_meta.message)

        use_cache = self.cache is not None and not skip_cache
        known: dict[MediaIdentity, MediaMetadata] = {}

        if use_cache:
            cached = await self.cache.get_recommendations(seed, chain=options.expand_chain)
            if cached is not None:
                await self._load_many((c.identity for c in cached), skip_cache, known, inflight)
                candidates = [c for c in cached if c.identity in known]
                return SeedOutcome(seed, seed_meta, candidates, known)

        paths = [CandidatePath(i, CandidateSource.DIRECT) for i in seed_meta.direct_recommendations]
        paths.extend(CandidatePath(i, CandidateSource.SIMILAR) for i in seed_meta.similar_items)
        if options.expand_chain:
            paths.extend(await self._expand_chain(seed_meta, skip_cache, known, inflight))

        paths = [p for p in paths if p.identity != seed]
        await self._load_many((p.identity for p in paths), skip_cache, known, inflight)
        candidates = self._score_paths(seed_meta, paths, known)

        logger.info(f"{seed_meta.title} ({seed}): {len(paths)} paths -> {len(candidates)} candidates")
        if use_cache:
            await self.cache.set_recommendations(seed, candidates, chain=options.expand_chain)
        return SeedOutcome(seed, seed_meta, candidates, known)

    async def aggregate(
        self,
        seeds: Iterable[MediaIdentity | str],
        options: RecommendationOptions | None = None,
    ) -> RecommendationResult:
        """
        Ranked, deduplicated recommendations across every seed.

        Seeds that cannot be resolved are reported in ``unresolved_seeds``;
        if none resolve, NoSeedsResolvedError is raised.
        """
        options = options or RecommendationOptions()
        unique_seeds = coerce_seeds(seeds)
        # Shared across seeds so each identity is fetched at most once
        inflight: dict[MediaIdentity, asyncio.Future] = {}

        outcomes = await asyncio.gather(
            *(self._run_seed(seed, options, inflight) for seed in unique_seeds),
            return_exceptions=True,
        )

        source_metadata: list[SourceMetadata] = []
        unresolved: list[MediaIdentity] = []
        reasons: dict[MediaIdentity, str] = {}
        item_metadata: dict[MediaIdentity, MediaMetadata] = {}
        merged: dict[MediaIdentity, Candidate] = {}
        seed_set = set(unique_seeds)

        # Merge serially, after every seed has finished
        for seed, outcome in zip(unique_seeds, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Seed {seed} failed: {type(outcome).__name__}: {outcome}")
                unresolved.append(seed)
                reasons[seed] = str(outcome)
                continue
            if not outcome.resolved:
                unresolved.append(seed)
                reasons[seed] = outcome.reason or "unresolved"
                continue

            source_metadata.append(SourceMetadata.from_metadata(outcome.metadata))
            item_metadata.update(outcome.item_metadata)
            for candidate in outcome.candidates:
                if candidate.identity in seed_set:
                    continue
                existing = merged.get(candidate.identity)
                if existing is None:
                    merged[candidate.identity] = replace(candidate, sources=set(candidate.sources))
                else:
                    existing.absorb(candidate)

        if not source_metadata:
            raise NoSeedsResolvedError(unique_seeds, reasons)

        ranked = rank_candidates(merged.values())
        items = [RecommendedItem(c, item_metadata[c.identity]) for c in ranked if c.identity in item_metadata]
        items = apply_filters(items, options)[:options.effective_limit]

        logger.info(
            f"Aggregated {len(merged)} unique candidates from {len(source_metadata)} seed(s), "
            f"returning {len(items)}"
        )
        return RecommendationResult(items, source_metadata, unresolved)
