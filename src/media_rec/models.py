"""
Data model for the recommendation core.

Identities are immutable and hashable so they can key caches and the
dedup accumulator. Metadata is immutable too: a refresh replaces the
cached value wholesale rather than patching it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import CallerError
from .utils import parse_year


class MediaType(Enum):
    """Provider namespaces. Movie and TV ids never share a namespace."""

    MOVIE = "movie"
    TV = "tv"

    @classmethod
    def coerce(cls, value: "MediaType | str") -> "MediaType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise CallerError(f"Invalid media type: {value!r}. Must be 'movie' or 'tv'") from None


class CandidateSource(Enum):
    """How the provider surfaced a candidate."""

    DIRECT = "direct"    # recommendations endpoint
    SIMILAR = "similar"  # content-similarity endpoint


@dataclass(frozen=True)
class MediaIdentity:
    media_type: MediaType
    external_id: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "media_type", MediaType.coerce(self.media_type))
        ext_id = self.external_id
        if isinstance(ext_id, bool) or not isinstance(ext_id, (int, str)):
            raise CallerError(f"Invalid media id: {ext_id!r}")
        try:
            ext_id = int(ext_id)
        except ValueError:
            raise CallerError(f"Invalid media id: {self.external_id!r}") from None
        if ext_id <= 0:
            raise CallerError(f"Media id must be positive, got {ext_id}")
        object.__setattr__(self, "external_id", ext_id)

    @classmethod
    def parse(cls, text: str) -> "MediaIdentity":
        """Parse the ``type:id`` form used on the command line (``tv:1396``)."""
        if not text or ":" not in text:
            raise CallerError(f"Expected 'type:id' (e.g. 'movie:603'), got {text!r}")
        media_type, _, ext_id = text.partition(":")
        return cls(media_type, ext_id.strip())

    def __str__(self) -> str:
        return f"{self.media_type.value}:{self.external_id}"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.media_type.value, "id": self.external_id}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MediaIdentity":
        return cls(payload["type"], payload["id"])


@dataclass(frozen=True)
class NotFound:
    """Typed not-found outcome. The provider has no record for this identity."""

    identity: MediaIdentity
    message: str = "Not found in TMDB database"


@dataclass(frozen=True)
class MediaMetadata:
    identity: MediaIdentity
    title: str
    overview: str = ""
    tagline: str = ""
    genres: tuple[tuple[int, str], ...] = ()
    keywords: tuple[tuple[int, str], ...] = ()
    release_date: str = ""
    vote_average: float | None = None
    vote_count: int = 0
    popularity: float | None = None
    content_rating: str | None = None
    poster_path: str | None = None
    reviews: tuple[str, ...] = ()
    translated_overviews: tuple[str, ...] = ()
    watch_providers: tuple[str, ...] = ()
    cast: tuple[str, ...] = ()
    directors: tuple[str, ...] = ()
    direct_recommendations: tuple[MediaIdentity, ...] = ()
    similar_items: tuple[MediaIdentity, ...] = ()
    patterns: frozenset[str] = field(default_factory=frozenset)

    @property
    def year(self) -> int | None:
        return parse_year(self.release_date)

    @property
    def genre_ids(self) -> frozenset[int]:
        return frozenset(gid for gid, _ in self.genres)

    @property
    def genre_names(self) -> list[str]:
        return [name for _, name in self.genres]

    @property
    def keyword_ids(self) -> frozenset[int]:
        return frozenset(kid for kid, _ in self.keywords)

    @property
    def has_text(self) -> bool:
        return bool(self.overview or self.tagline or self.reviews or self.translated_overviews)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "title": self.title,
            "overview": self.overview,
            "tagline": self.tagline,
            "genres": [{"id": gid, "name": name} for gid, name in self.genres],
            "keywords": [{"id": kid, "name": name} for kid, name in self.keywords],
            "release_date": self.release_date,
            "vote_average": self.vote_average,
            "vote_count": self.vote_count,
            "popularity": self.popularity,
            "content_rating": self.content_rating,
            "poster_path": self.poster_path,
            "reviews": list(self.reviews),
            "translated_overviews": list(self.translated_overviews),
            "watch_providers": list(self.watch_providers),
            "cast": list(self.cast),
            "directors": list(self.directors),
            "direct_recommendations": [i.to_dict() for i in self.direct_recommendations],
            "similar_items": [i.to_dict() for i in self.similar_items],
            "patterns": sorted(self.patterns),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MediaMetadata":
        return cls(
            identity=MediaIdentity.from_dict(payload["identity"]),
            title=payload.get("title") or "",
            overview=payload.get("overview") or "",
            tagline=payload.get("tagline") or "",
            genres=tuple((g["id"], g["name"]) for g in payload.get("genres", [])),
            keywords=tuple((k["id"], k["name"]) for k in payload.get("keywords", [])),
            release_date=payload.get("release_date") or "",
            vote_average=payload.get("vote_average"),
            vote_count=payload.get("vote_count") or 0,
            popularity=payload.get("popularity"),
            content_rating=payload.get("content_rating"),
            poster_path=payload.get("poster_path"),
            reviews=tuple(payload.get("reviews", [])),
            translated_overviews=tuple(payload.get("translated_overviews", [])),
            watch_providers=tuple(payload.get("watch_providers", [])),
            cast=tuple(payload.get("cast", [])),
            directors=tuple(payload.get("directors", [])),
            direct_recommendations=tuple(
                MediaIdentity.from_dict(i) for i in payload.get("direct_recommendations", [])
            ),
            similar_items=tuple(MediaIdentity.from_dict(i) for i in payload.get("similar_items", [])),
            patterns=frozenset(payload.get("patterns", [])),
        )


@dataclass(frozen=True)
class ScoreBreakdown:
    """Per-component values behind a similarity score."""

    score: float
    source: CandidateSource
    components: dict[str, float]
    applied_weight: float
    weighted_sum: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "source": self.source.value,
            "components": dict(self.components),
            "applied_weight": self.applied_weight,
            "weighted_sum": self.weighted_sum,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ScoreBreakdown":
        return cls(
            score=payload["score"],
            source=CandidateSource(payload["source"]),
            components=dict(payload.get("components", {})),
            applied_weight=payload.get("applied_weight", 0.0),
            weighted_sum=payload.get("weighted_sum", 0.0),
        )


@dataclass
class Candidate:
    """
    A proposed recommendation and its provenance.

    Scores are accumulated as (sum, count) so the reported score is the true
    mean over every path that surfaced the candidate, whatever the merge order.
    """

    identity: MediaIdentity
    source: CandidateSource
    seed: MediaIdentity
    score_total: float = 0.0
    match_count: int = 0
    via_title: str | None = None
    sources: set[CandidateSource] = field(default_factory=set)
    breakdown: ScoreBreakdown | None = None

    @property
    def score(self) -> float:
        if self.match_count == 0:
            return 0.0
        return self.score_total / self.match_count

    def add_path(self, score: float, source: CandidateSource, breakdown: ScoreBreakdown | None = None) -> None:
        self.score_total += score
        self.match_count += 1
        self.sources.add(source)
        if self.breakdown is None:
            self.breakdown = breakdown

    def absorb(self, other: "Candidate") -> None:
        """Merge another accumulator for the same identity into this one."""
        if other.identity != self.identity:
            raise ValueError(f"Cannot merge {other.identity} into {self.identity}")
        self.score_total += other.score_total
        self.match_count += other.match_count
        self.sources |= other.sources
        if self.via_title is None:
            self.via_title = other.via_title
        if self.breakdown is None:
            self.breakdown = other.breakdown

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "source": self.source.value,
            "seed": self.seed.to_dict(),
            "score_total": self.score_total,
            "match_count": self.match_count,
            "via_title": self.via_title,
            "sources": sorted(s.value for s in self.sources),
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Candidate":
        breakdown = payload.get("breakdown")
        return cls(
            identity=MediaIdentity.from_dict(payload["identity"]),
            source=CandidateSource(payload["source"]),
            seed=MediaIdentity.from_dict(payload["seed"]),
            score_total=payload.get("score_total", 0.0),
            match_count=payload.get("match_count", 0),
            via_title=payload.get("via_title"),
            sources={CandidateSource(s) for s in payload.get("sources", [])},
            breakdown=ScoreBreakdown.from_dict(breakdown) if breakdown else None,
        )


@dataclass
class RecommendedItem:
    candidate: Candidate
    metadata: MediaMetadata

    @property
    def identity(self) -> MediaIdentity:
        return self.candidate.identity

    @property
    def score(self) -> float:
        return self.candidate.score

    @property
    def match_count(self) -> int:
        return self.candidate.match_count

    def to_dict(self) -> dict[str, Any]:
        meta = self.metadata
        return {
            "id": meta.identity.external_id,
            "media_type": meta.identity.media_type.value,
            "title": meta.title,
            "year": meta.year,
            "poster_path": meta.poster_path,
            "genres": [{"id": gid, "name": name} for gid, name in meta.genres],
            "keywords": [{"id": kid, "name": name} for kid, name in meta.keywords],
            "vote_average": meta.vote_average,
            "content_rating": meta.content_rating,
            "patterns": sorted(meta.patterns),
            "score": round(self.candidate.score, 4),
            "match_count": self.candidate.match_count,
            "source": self.candidate.source.value,
            "sources": sorted(s.value for s in self.candidate.sources),
            "via_title": self.candidate.via_title,
            "breakdown": self.candidate.breakdown.to_dict() if self.candidate.breakdown else None,
        }


@dataclass(frozen=True)
class SourceMetadata:
    identity: MediaIdentity
    title: str
    genres: tuple[tuple[int, str], ...] = ()
    keywords: tuple[tuple[int, str], ...] = ()

    @classmethod
    def from_metadata(cls, metadata: MediaMetadata) -> "SourceMetadata":
        return cls(
            identity=metadata.identity,
            title=metadata.title,
            genres=metadata.genres,
            keywords=metadata.keywords,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity.to_dict(),
            "title": self.title,
            "genres": [{"id": gid, "name": name} for gid, name in self.genres],
            "keywords": [{"id": kid, "name": name} for kid, name in self.keywords],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SourceMetadata":
        return cls(
            identity=MediaIdentity.from_dict(payload["identity"]),
            title=payload.get("title") or "",
            genres=tuple((g["id"], g["name"]) for g in payload.get("genres", [])),
            keywords=tuple((k["id"], k["name"]) for k in payload.get("keywords", [])),
        )


@dataclass
class RecommendationResult:
    items: list[RecommendedItem]
    source_metadata: list[SourceMetadata]
    unresolved_seeds: list[MediaIdentity] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [item.to_dict() for item in self.items],
            "sourceMetadata": [s.to_dict() for s in self.source_metadata],
            "unresolvedSeeds": [str(s) for s in self.unresolved_seeds],
        }


@dataclass(frozen=True)
class SearchHit:
    identity: MediaIdentity
    title: str
    year: int | None = None
    poster_path: str | None = None
    popularity: float | None = None
