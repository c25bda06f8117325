import argparse
import asyncio
import json
import logging
from pathlib import Path

from tqdm import tqdm

from .cache import CacheLayer, create_cache_backend
from .config import MAX_RESULTS, TMDB_IMAGE_BASE
from .errors import CallerError, RecommenderError
from .filters import RecommendationOptions
from .models import MediaIdentity, MediaMetadata, MediaType, NotFound, RecommendationResult
from .patterns import PATTERN_MARKERS, classify_patterns, count_markers
from .recommender import MediaRecommender

logger = logging.getLogger(__name__)


def _build_recommender(args: argparse.Namespace) -> MediaRecommender:
    """Recommender wired from configuration, with an optional cache backend override."""
    backend = getattr(args, 'cache_backend', None)
    cache = CacheLayer(create_cache_backend(backend)) if backend else None
    return MediaRecommender(cache=cache)


def _read_lines(path: str) -> list[str]:
    file_path = Path(path)
    if not file_path.exists():
        raise CallerError(f"File not found: {path}")
    return [line.strip() for line in file_path.read_text().splitlines() if line.strip() and not line.startswith('#')]


def _parse_seeds(values: list[str] | None) -> list[MediaIdentity]:
    return [MediaIdentity.parse(v) for v in values or []]


def _options_from_args(args: argparse.Namespace) -> RecommendationOptions:
    return RecommendationOptions(
        skip_cache=args.skip_cache,
        expand_chain=args.chain,
        limit=args.limit,
        min_rating=args.min_rating,
        min_year=args.min_year,
        max_year=args.max_year,
        include_genres=tuple(args.genres or ()),
        exclude_genres=tuple(args.exclude_genres or ()),
        content_ratings=tuple(args.content_ratings or ()),
        media_type=args.media_type,
    )


def _output_recommendations(result: RecommendationResult, args: argparse.Namespace) -> None:
    """Format and log recommendations in the requested format."""
    if args.format == 'json':
        payload = result.to_dict()
        if not args.explain:
            for entry in payload["results"]:
                entry.pop("breakdown", None)
        logger.info(json.dumps(payload, indent=2))
        return

    seeds = ", ".join(s.title for s in result.source_metadata)
    logger.info(f"\nTop {len(result)} recommendations based on {seeds}:")
    for i, item in enumerate(result.items, 1):
        meta = item.metadata
        year = f" ({meta.year})" if meta.year else ""
        genres = ", ".join(meta.genre_names[:3])
        logger.info(f"{i:2}. {meta.title}{year} [{meta.identity}]  score {item.score:.3f}  x{item.match_count}")
        details = [d for d in (genres, meta.content_rating) if d]
        if item.candidate.via_title:
            details.append(f"via {item.candidate.via_title}")
        if details:
            logger.info(f"    {' | '.join(details)}")
        if args.explain and item.candidate.breakdown:
            components = ", ".join(
                f"{name}={value:.2f}" for name, value in item.candidate.breakdown.components.items()
            )
            logger.info(f"    {item.candidate.source.value}: {components}")

    if result.unresolved_seeds:
        logger.warning(f"Could not resolve: {', '.join(str(s) for s in result.unresolved_seeds)}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations from one or more seeds."""
    seeds = _parse_seeds(args.seeds)
    options = _options_from_args(args)

    async def _run() -> RecommendationResult:
        async with _build_recommender(args) as recommender:
            for title in args.title or []:
                identity = await recommender.resolve_title(title)
                if identity is not None:
                    seeds.append(identity)
            if not seeds:
                raise CallerError("No seeds given (use SEED arguments or --title)")
            return await recommender.get_recommendations(seeds, options)

    _output_recommendations(asyncio.run(_run()), args)


def _log_metadata(meta: MediaMetadata) -> None:
    year = f" ({meta.year})" if meta.year else ""
    logger.info(f"\n{meta.title}{year} [{meta.identity}]")
    if meta.tagline:
        logger.info(f"  {meta.tagline}")
    if meta.genres:
        logger.info(f"  Genres: {', '.join(meta.genre_names)}")
    if meta.directors:
        label = "Created by" if meta.identity.media_type is MediaType.TV else "Directed by"
        logger.info(f"  {label}: {', '.join(meta.directors)}")
    if meta.cast:
        logger.info(f"  Cast: {', '.join(meta.cast)}")
    if meta.vote_average is not None:
        logger.info(f"  Rating: {meta.vote_average:.1f} ({meta.vote_count} votes)")
    if meta.content_rating:
        logger.info(f"  Content rating: {meta.content_rating}")
    if meta.watch_providers:
        logger.info(f"  Streaming: {', '.join(meta.watch_providers)}")
    if meta.patterns:
        logger.info(f"  Patterns: {', '.join(sorted(meta.patterns))}")
    if meta.poster_path:
        logger.info(f"  Poster: {TMDB_IMAGE_BASE}{meta.poster_path}")
    logger.info(
        f"  {len(meta.direct_recommendations)} recommendations, {len(meta.similar_items)} similar"
    )


def cmd_details(args: argparse.Namespace) -> None:
    """Show normalized metadata for one title."""
    identity = MediaIdentity.parse(args.seed)

    async def _run():
        async with _build_recommender(args) as recommender:
            return await recommender.get_details(identity, skip_cache=args.skip_cache)

    result = asyncio.run(_run())
    if isinstance(result, NotFound):
        logger.error(f"{identity}: {result.message}")
        raise SystemExit(1)

    if args.format == 'json':
        logger.info(json.dumps(result.to_dict(), indent=2))
    else:
        _log_metadata(result)


def cmd_search(args: argparse.Namespace) -> None:
    """Search movies and TV shows by title."""
    query = " ".join(args.query)

    async def _run():
        async with _build_recommender(args) as recommender:
            return await recommender.search(query)

    hits = asyncio.run(_run())
    if not hits:
        logger.info(f"No results for '{query}'")
        return
    for hit in hits[:args.limit]:
        year = f" ({hit.year})" if hit.year else ""
        logger.info(f"  {str(hit.identity):<14} {hit.title}{year}")


def cmd_classify(args: argparse.Namespace) -> None:
    """Classify free text into thematic patterns."""
    if args.file:
        text = Path(args.file).read_text()
    elif args.text:
        text = " ".join(args.text)
    else:
        raise CallerError("Provide TEXT or --file")

    labels = classify_patterns(text)
    if args.verbose_counts:
        for label in PATTERN_MARKERS:
            marker = "*" if label in labels else " "
            logger.info(f" {marker} {label}: {count_markers(text, label)}")
    if labels:
        logger.info(f"Patterns: {', '.join(sorted(labels))}")
    else:
        logger.info("No patterns matched")


def cmd_clear_cache(args: argparse.Namespace) -> None:
    """Invalidate cached entries for some titles, or everything."""
    seeds = _parse_seeds(args.seeds)

    async def _run() -> None:
        async with _build_recommender(args) as recommender:
            if not seeds:
                await recommender.clear_cache()
            for seed in seeds:
                await recommender.clear_cache(seed)

    asyncio.run(_run())
    if seeds:
        logger.info(f"Invalidated cache entries for {len(seeds)} title(s)")
    else:
        logger.info("Cache cleared")


def cmd_warm_cache(args: argparse.Namespace) -> None:
    """Prefetch metadata for a list of titles into the cache."""
    values = list(args.seeds or [])
    if args.file:
        values.extend(_read_lines(args.file))
    seeds = _parse_seeds(values)
    if not seeds:
        raise CallerError("No titles given (use SEED arguments or --file)")

    async def _run():
        async with _build_recommender(args) as recommender:
            with tqdm(total=len(dict.fromkeys(seeds)), desc="Metadata") as pbar:
                return await recommender.warm_cache(seeds, on_progress=lambda _: pbar.update(1))

    outcome = asyncio.run(_run())
    for identity, result in outcome.items():
        if isinstance(result, NotFound):
            logger.warning(f"  {identity}: not found")
        elif isinstance(result, Exception):
            logger.error(f"  {identity}: {result}")


def _add_filter_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--limit", type=int, default=MAX_RESULTS,
                        help=f"Number of recommendations (max {MAX_RESULTS})")
    parser.add_argument("--min-rating", type=float, help="Minimum TMDB vote average (0-10)")
    parser.add_argument("--min-year", type=int, help="Minimum release year")
    parser.add_argument("--max-year", type=int, help="Maximum release year")
    parser.add_argument("--genres", nargs="+", help="Keep titles in any of these genres")
    parser.add_argument("--exclude-genres", nargs="+", help="Exclude genres")
    parser.add_argument("--content-ratings", nargs="+", help="Allowed content ratings (e.g. PG-13 TV-MA)")
    parser.add_argument("--media-type", choices=['movie', 'tv'], help="Only recommend this media type")


def main():
    parser = argparse.ArgumentParser(description="Movie and TV recommendations from TMDB")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--cache-backend", choices=['memory', 'sqlite', 'redis'],
                        help="Override MEDIA_REC_CACHE_BACKEND")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Recommend command
    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("seeds", nargs="*", metavar="SEED", help="Seed titles as type:id (movie:603, tv:1396)")
    rec_parser.add_argument("--title", action="append", help="Seed by title (first search match); repeatable")
    rec_parser.add_argument("--skip-cache", action="store_true", help="Bypass cache reads and writes")
    rec_parser.add_argument("--chain", action="store_true", help="Expand through recommendations of top picks")
    _add_filter_args(rec_parser)
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    rec_parser.add_argument("--explain", action="store_true", help="Show per-signal score breakdown")
    rec_parser.set_defaults(func=cmd_recommend)

    # Details command
    details_parser = subparsers.add_parser("details", help="Show metadata for one title")
    details_parser.add_argument("seed", metavar="SEED", help="Title as type:id")
    details_parser.add_argument("--skip-cache", action="store_true", help="Fetch fresh metadata")
    details_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    details_parser.set_defaults(func=cmd_details)

    # Search command
    search_parser = subparsers.add_parser("search", help="Search movies and TV shows")
    search_parser.add_argument("query", nargs="+", help="Title to search for")
    search_parser.add_argument("--limit", type=int, default=10, help="Number of results to show")
    search_parser.set_defaults(func=cmd_search)

    # Classify command
    classify_parser = subparsers.add_parser("classify", help="Classify text into thematic patterns")
    classify_parser.add_argument("text", nargs="*", help="Text to classify")
    classify_parser.add_argument("--file", "-f", help="Read text from a file")
    classify_parser.add_argument("--counts", dest="verbose_counts", action="store_true",
                                 help="Show marker counts per pattern")
    classify_parser.set_defaults(func=cmd_classify)

    # Cache management
    clear_parser = subparsers.add_parser("clear-cache", help="Invalidate cached titles (all if none given)")
    clear_parser.add_argument("seeds", nargs="*", metavar="SEED", help="Titles as type:id")
    clear_parser.set_defaults(func=cmd_clear_cache)

    warm_parser = subparsers.add_parser("warm-cache", help="Prefetch metadata into the cache")
    warm_parser.add_argument("seeds", nargs="*", metavar="SEED", help="Titles as type:id")
    warm_parser.add_argument("--file", "-f", help="File with type:id entries (one per line)")
    warm_parser.set_defaults(func=cmd_warm_cache)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except RecommenderError as e:
        logger.error(str(e))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
