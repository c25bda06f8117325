"""
Seed/candidate similarity scoring.

The score is a weighted mean of per-signal component values in [0, 1]. A
component whose data is missing on either side is skipped and its weight
left out of the denominator, so missing data never deflates the score.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .config import (
    KEYWORD_DENOMINATOR_CAP,
    POPULARITY_DAMPENER_CAP,
    POPULARITY_SCALE,
    VOTE_PRIOR_COUNT,
    VOTE_PRIOR_MEAN,
    YEAR_WINDOW,
)
from .models import CandidateSource, MediaMetadata, ScoreBreakdown
from .scoring_weights import DEFAULT_WEIGHTS, ScoringWeights
from .utils import clamp

logger = logging.getLogger(__name__)


ComponentFunc = Callable[[MediaMetadata, MediaMetadata], Optional[float]]


def _overlap_ratio(a: frozenset, b: frozenset) -> float:
    return len(a & b) / max(len(a), len(b))


def bayesian_rating(vote_average: float, vote_count: int) -> float:
    """
    Vote average shrunk toward a 7.0/10 prior worth 1000 votes, on a 0-1 scale.

    Small-sample extremes are pulled toward the prior; heavily voted titles
    keep close to their own average.
    """
    return (vote_count * (vote_average / 10) + VOTE_PRIOR_COUNT * VOTE_PRIOR_MEAN) / (
        vote_count + VOTE_PRIOR_COUNT
    )


def _genre_component(seed: MediaMetadata, candidate: MediaMetadata) -> float | None:
    if not seed.genres or not candidate.genres:
        return None
    return _overlap_ratio(seed.genre_ids, candidate.genre_ids)


def _keyword_component(seed: MediaMetadata, candidate: MediaMetadata) -> float | None:
    if not seed.keywords or not candidate.keywords:
        return None
    seed_ids = seed.keyword_ids
    # Capped denominator so richly tagged seeds are not penalized
    denominator = max(1, min(len(seed_ids), KEYWORD_DENOMINATOR_CAP))
    return min(1.0, len(seed_ids & candidate.keyword_ids) / denominator)


def _pattern_component(seed: MediaMetadata, candidate: MediaMetadata) -> float | None:
    if not seed.patterns or not candidate.has_text:
        return None
    return _overlap_ratio(seed.patterns, candidate.patterns)


def _has_votes(candidate: MediaMetadata) -> bool:
    return candidate.vote_average is not None and candidate.vote_count > 0


def _rating_component(seed: MediaMetadata, candidate: MediaMetadata) -> float | None:
    if not _has_votes(candidate):
        return None
    return bayesian_rating(candidate.vote_average, candidate.vote_count)


def _popularity_component(seed: MediaMetadata, candidate: MediaMetadata) -> float | None:
    """Well-rated but less mainstream titles score higher."""
    if not _has_votes(candidate) or candidate.popularity is None:
        return None
    quality = bayesian_rating(candidate.vote_average, candidate.vote_count)
    credibility = min(candidate.vote_count / VOTE_PRIOR_COUNT, 1.0)
    dampener = 1 - min(max(candidate.popularity, 0.0) / POPULARITY_SCALE, POPULARITY_DAMPENER_CAP)
    return credibility * quality * dampener


def _year_component(seed: MediaMetadata, candidate: MediaMetadata) -> float | None:
    seed_year, candidate_year = seed.year, candidate.year
    if seed_year is None or candidate_year is None:
        return None
    return max(0.0, 1 - abs(seed_year - candidate_year) / YEAR_WINDOW)


COMPONENT_RULES: dict[str, ComponentFunc] = {
    "genre": _genre_component,
    "keyword": _keyword_component,
    "pattern": _pattern_component,
    "rating": _rating_component,
    "popularity": _popularity_component,
    "year": _year_component,
}


class SimilarityScorer:
    """Weighted multi-signal similarity between a seed and a candidate."""

    def __init__(self, weights: ScoringWeights = DEFAULT_WEIGHTS):
        self.weights = weights

    def source_value(self, source: CandidateSource) -> float:
        if source is CandidateSource.DIRECT:
            return 1.0
        return self.weights.similar_source_value

    def score(
        self,
        seed: MediaMetadata,
        candidate: MediaMetadata,
        source: CandidateSource,
    ) -> ScoreBreakdown:
        """
        Score ``candidate`` against ``seed``.

        Both items are expected to carry their classified patterns. Returns a
        breakdown whose ``score`` is always within [0, 1].
        """
        components: dict[str, float] = {"source": self.source_value(source)}
        for name, rule in COMPONENT_RULES.items():
            value = rule(seed, candidate)
            if value is not None:
                components[name] = clamp(value)

        slots = self.weights.slots()
        applied_weight = sum(slots[name] for name in components)
        weighted_sum = sum(slots[name] * value for name, value in components.items())

        if applied_weight <= 0:
            score = 0.0
        else:
            score = clamp(weighted_sum / applied_weight)

        return ScoreBreakdown(
            score=score,
            source=source,
            components=components,
            applied_weight=applied_weight,
            weighted_sum=weighted_sum,
        )
