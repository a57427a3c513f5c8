"""
Media lookup cache maintenance.

    python -m scripts.cleanup_cache              # standard: 90 days / 10000 entries / 0.3
    python -m scripts.cleanup_cache --light      # 180 days / 20000 entries / 0.1
    python -m scripts.cleanup_cache --aggressive # 30 days / 5000 entries / 0.5
    python -m scripts.cleanup_cache --stats-only

Run from backend/ (or anywhere once the project is pip-installed).
"""
import argparse
import asyncio
import logging
from typing import Dict, List, Optional

from models.media import CacheStats
from services.media_cache import MediaCacheOrchestrator

PRESETS: Dict[str, Dict[str, float]] = {
    "light": {"older_than_days": 180, "max_entries": 20000, "min_confidence": 0.1},
    "standard": {"older_than_days": 90, "max_entries": 10000, "min_confidence": 0.3},
    "aggressive": {"older_than_days": 30, "max_entries": 5000, "min_confidence": 0.5},
}


def _print_stats(title: str, stats: CacheStats) -> None:
    print(f"\n=== {title} ===")
    print(f"Total entries:          {stats.total_entries}")
    print(f"With audio match:       {stats.entries_with_audio}")
    print(f"With video match:       {stats.entries_with_video}")
    print(f"Without any match:      {stats.entries_without_match}")
    print(f"Negative audio markers: {stats.negative_audio}")
    print(f"Negative video markers: {stats.negative_video}")
    if stats.oldest_entry:
        e = stats.oldest_entry
        print(f"Oldest: {e['artist']} - {e['track']} (first resolved {e['first_resolved_at']})")


def _print_top(entries: List[dict]) -> None:
    print("\n=== TOP 5 MOST ACCESSED ===")
    for i, e in enumerate(entries, start=1):
        print(f"{i}. {e['artist']} - {e['track']} ({e['access_count']} accesses)")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Clean up the media lookup cache")
    preset = parser.add_mutually_exclusive_group()
    preset.add_argument("--light", action="store_const", dest="preset", const="light")
    preset.add_argument("--aggressive", action="store_const", dest="preset", const="aggressive")
    parser.add_argument("--min-access-count", type=int, default=0)
    parser.add_argument("--stats-only", action="store_true")
    parser.set_defaults(preset="standard")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, cache: Optional[MediaCacheOrchestrator] = None) -> int:
    cache = cache or MediaCacheOrchestrator()
    before = await cache.stats()
    _print_stats("BEFORE CLEANUP" if not args.stats_only else "CACHE STATS", before)
    if args.stats_only:
        _print_top(before.top_accessed)
        return 0

    options = PRESETS[args.preset]
    print(f"\nRunning {args.preset.upper()} cleanup... {options}")
    report = await cache.cleanup(min_access_count=args.min_access_count, **options)
    print(
        f"\nDeleted {report.total} entries "
        f"(stale={report.deleted_stale}, rarely used={report.deleted_rarely_used}, "
        f"over cap={report.deleted_over_cap}, low confidence={report.deleted_low_confidence})"
    )

    after = await cache.stats()
    _print_stats("AFTER CLEANUP", after)
    _print_top(after.top_accessed)
    return report.total


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    main()
