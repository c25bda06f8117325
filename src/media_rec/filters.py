"""Request options and post-ranking filters for recommendation results."""

import logging
from dataclasses import dataclass

from .config import MAX_RESULTS
from .errors import CallerError
from .models import MediaType, RecommendedItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecommendationOptions:
    skip_cache: bool = False
    expand_chain: bool = False
    limit: int = MAX_RESULTS
    min_rating: float | None = None
    min_year: int | None = None
    max_year: int | None = None
    include_genres: tuple[str, ...] = ()
    exclude_genres: tuple[str, ...] = ()
    content_ratings: tuple[str, ...] = ()
    media_type: MediaType | None = None

    def __post_init__(self) -> None:
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1:
            raise CallerError(f"limit must be a positive integer, got {self.limit!r}")
        if self.min_rating is not None and not 0 <= self.min_rating <= 10:
            raise CallerError(f"min_rating must be between 0 and 10, got {self.min_rating}")
        if self.min_year is not None and self.max_year is not None and self.min_year > self.max_year:
            raise CallerError(f"min_year ({self.min_year}) is after max_year ({self.max_year})")
        if self.media_type is not None:
            object.__setattr__(self, "media_type", MediaType.coerce(self.media_type))
        for name in ("include_genres", "exclude_genres", "content_ratings"):
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))

    @property
    def effective_limit(self) -> int:
        return min(self.limit, MAX_RESULTS)

    @property
    def has_filters(self) -> bool:
        return any((
            self.min_rating is not None,
            self.min_year is not None,
            self.max_year is not None,
            self.include_genres,
            self.exclude_genres,
            self.content_ratings,
            self.media_type is not None,
        ))


def _matches(item: RecommendedItem, options: RecommendationOptions) -> bool:
    meta = item.metadata

    if options.media_type is not None and meta.identity.media_type is not options.media_type:
        return False

    if options.min_rating is not None:
        if meta.vote_average is None or meta.vote_average < options.min_rating:
            return False

    if options.min_year is not None or options.max_year is not None:
        year = meta.year
        if year is None:
            return False
        if options.min_year is not None and year < options.min_year:
            return False
        if options.max_year is not None and year > options.max_year:
            return False

    genres = {name.lower() for name in meta.genre_names}
    if options.include_genres and not genres & {g.lower() for g in options.include_genres}:
        return False
    if options.exclude_genres and genres & {g.lower() for g in options.exclude_genres}:
        return False

    if options.content_ratings:
        allowed = {r.upper() for r in options.content_ratings}
        if meta.content_rating is None or meta.content_rating.upper() not in allowed:
            return False

    return True


def apply_filters(items: list[RecommendedItem], options: RecommendationOptions) -> list[RecommendedItem]:
    """Keep the items that pass every active filter, preserving rank order."""
    if not options.has_filters:
        return list(items)
    kept = [item for item in items if _matches(item, options)]
    logger.debug(f"Filters kept {len(kept)}/{len(items)} candidates")
    return kept
