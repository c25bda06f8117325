import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from media_rec.models import MediaIdentity, MediaMetadata, NotFound, SearchHit  # noqa: E402


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_metadata(media_type="movie", ext_id=1, **overrides) -> MediaMetadata:
    identity = MediaIdentity(media_type, ext_id)
    fields = {
        "title": f"Title {identity}",
        "overview": "A quiet story about ordinary people.",
        "genres": ((18, "Drama"),),
        "keywords": ((100, "family"), (101, "small town")),
        "release_date": "2010-05-01",
        "vote_average": 7.5,
        "vote_count": 500,
        "popularity": 40.0,
    }
    fields.update(overrides)
    return MediaMetadata(identity=identity, **fields)


class StubFetcher:
    """In-memory stand-in for TMDBClient: fetch, fetch_many, search and aclose."""

    def __init__(self, items=None, failures=None, search_hits=None, suspend=False):
        self.items: dict[MediaIdentity, MediaMetadata] = dict(items or {})
        self.failures: dict[MediaIdentity, Exception] = dict(failures or {})
        self.search_hits: list[SearchHit] = list(search_hits or [])
        self.calls: list[MediaIdentity] = []
        self.batches: list[list[MediaIdentity]] = []
        self.closed = False
        # Yield to the event loop inside fetch, like a real network call
        self.suspend = suspend

    def add(self, metadata: MediaMetadata) -> MediaMetadata:
        self.items[metadata.identity] = metadata
        return metadata

    async def fetch(self, identity):
        self.calls.append(identity)
        if self.suspend:
            await asyncio.sleep(0)
        if identity in self.failures:
            raise self.failures[identity]
        if identity in self.items:
            return self.items[identity]
        return NotFound(identity)

    async def fetch_many(self, identities, on_complete=None):
        unique = list(dict.fromkeys(identities))
        self.batches.append(unique)

        async def _one(identity):
            try:
                return await self.fetch(identity)
            finally:
                if on_complete is not None:
                    on_complete(identity)

        results = await asyncio.gather(*(_one(i) for i in unique), return_exceptions=True)
        return dict(zip(unique, results))

    async def search(self, query, page=1):
        return list(self.search_hits)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def metadata_factory():
    return make_metadata


@pytest.fixture
def stub_fetcher():
    return StubFetcher()


@pytest.fixture
def breaking_bad_catalog():
    """
    Seed tv:1396 with 5 direct recommendations and 5 similar items.

    tv:4 and tv:5 appear in both lists, giving 8 unique candidates.
    """
    seed = make_metadata(
        "tv", 1396,
        title="Breaking Bad",
        genres=((18, "Drama"), (80, "Crime")),
        keywords=((1, "drug"), (2, "teacher"), (3, "cancer")),
        release_date="2008-01-20",
        vote_average=8.9,
        vote_count=12000,
        popularity=300.0,
        direct_recommendations=tuple(MediaIdentity("tv", i) for i in (1, 2, 3, 4, 5)),
        similar_items=tuple(MediaIdentity("tv", i) for i in (4, 5, 6, 7, 8)),
    )
    fetcher = StubFetcher()
    fetcher.add(seed)
    for i in range(1, 9):
        fetcher.add(make_metadata(
            "tv", i,
            title=f"Show {i}",
            genres=((18, "Drama"),) if i % 2 else ((80, "Crime"), (18, "Drama")),
            keywords=((1, "drug"),) if i < 4 else ((50, "ranch"),),
            release_date=f"{2000 + i}-03-01",
            vote_average=6.0 + i * 0.3,
            vote_count=100 * i,
            popularity=10.0 * i,
        ))
    return seed, fetcher
