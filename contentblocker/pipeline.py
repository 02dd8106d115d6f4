#!/usr/bin/env python3
"""
pipeline.py

Cache-or-refresh loader for content blocker rule lists.

Usage:
    python -m contentblocker.pipeline [--sources sources.txt] [--cache DIR] [--force]

Loading order for each list:
1. Rule list already compiled in the store (no work)
2. Encoded list in the on-disk cache, compiled again
3. Download, convert, cache and compile

Every run is all-or-nothing: if any list fails, the caller gets NotFound.
A failure on the cache path is retried once as a full refresh.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Callable, Iterable, NamedTuple

import aiohttp

from contentblocker.cache import CacheStore
from contentblocker.config import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CONCURRENCY,
    DEFAULT_SOURCES,
    DEFAULT_TIMEOUT,
    OPTIMIZE,
    RULE_LIMIT,
    Source,
    load_sources,
    validate_sources,
)
from contentblocker.converter import RuleConverter, translate
from contentblocker.downloader import create_session, fetch_rules
from contentblocker.errors import LoaderError, NotFound
from contentblocker.registry import CompiledRuleList, RuleListRegistry, RuleListStore


logger = logging.getLogger(__name__)


class ListResult(NamedTuple):
    """Settled outcome of loading a single list."""
    identifier: str
    rule_list: CompiledRuleList | None = None
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.rule_list is not None


def settle(identifiers: list[str], results: list[CompiledRuleList | BaseException]) -> list[ListResult]:
    """Pair gather(return_exceptions=True) output with identifiers, in order."""
    settled = []
    for identifier, result in zip(identifiers, results):
        if isinstance(result, BaseException):
            settled.append(ListResult(identifier, error=result))
        else:
            settled.append(ListResult(identifier, rule_list=result))
    return settled


def collect(results: list[ListResult]) -> list[CompiledRuleList]:
    """
    Return every rule list in order, or raise NotFound if any failed.

    Raises:
        NotFound: naming the failed identifiers
    """
    failed = [r for r in results if not r.success]
    if failed:
        for r in failed:
            logger.debug("rule list %s failed: %r", r.identifier, r.error)
        raise NotFound("rule lists failed: " + ", ".join(r.identifier for r in failed))
    return [r.rule_list for r in results]  # type: ignore[misc]


class FilterListLoader:
    """
    Produces one compiled rule list per source.

    All collaborators are passed in so tests can substitute them; the
    defaults build a cache under DEFAULT_CACHE_DIR, an in-process store and
    the bundled converter.
    """

    def __init__(
        self,
        sources: Iterable[Source] = DEFAULT_SOURCES,
        cache: CacheStore | None = None,
        registry: RuleListRegistry | None = None,
        converter: RuleConverter | None = None,
        *,
        rule_limit: int = RULE_LIMIT,
        optimize: bool = OPTIMIZE,
        timeout: int = DEFAULT_TIMEOUT,
        concurrency: int = DEFAULT_CONCURRENCY,
        session_factory: Callable[[], aiohttp.ClientSession] | None = None,
    ):
        self.sources = validate_sources(sources)
        self.cache = cache or CacheStore()
        self.registry = registry or RuleListRegistry(RuleListStore())
        self.converter = converter or RuleConverter()
        self.rule_limit = rule_limit
        self.optimize = optimize
        self.timeout = timeout
        self._session_factory = session_factory or (lambda: create_session(concurrency))

    async def get_lists(self, force_refresh: bool = False) -> list[CompiledRuleList]:
        """
        Load every rule list, from the store or cache when fresh.

        Args:
            force_refresh: Skip the cache and download everything

        Returns:
            Compiled rule lists in source order

        Raises:
            NotFound: if any list could not be produced
        """
        if not force_refresh:
            cached = self.cache.check_freshness(self.sources)
            if cached is not None and len(cached) == len(self.sources):
                logger.info("loading %d rule lists from cached values", len(cached))
                try:
                    return await self._load_cached(cached)
                except NotFound as e:
                    logger.warning("cached rule lists returned error, loading from network: %s", e)
                    return await self.get_lists(force_refresh=True)

        return await self._refresh()

    async def _load_cached(self, cached: list[tuple[str, Path]]) -> list[CompiledRuleList]:
        identifiers = [identifier for identifier, _ in cached]
        results = await asyncio.gather(
            *(self._lookup_cached(identifier, path) for identifier, path in cached),
            return_exceptions=True,
        )
        return collect(settle(identifiers, results))

    async def _refresh(self) -> list[CompiledRuleList]:
        start_time = time.time()
        identifiers = [source.identifier for source in self.sources]

        async with self._session_factory() as session:
            results = await asyncio.gather(
                *(self._load_block_list(session, source) for source in self.sources),
                return_exceptions=True,
            )

        rule_lists = collect(settle(identifiers, results))
        logger.info("refreshed %d rule lists in %.1fs", len(rule_lists), time.time() - start_time)
        return rule_lists

    async def _lookup_cached(self, identifier: str, path: Path) -> CompiledRuleList:
        """Store lookup first, then compile the cached file."""
        rule_list = await self.registry.lookup_compiled(identifier)
        if rule_list is not None:
            return rule_list

        encoded = await self.cache.read(path)
        return await self.registry.compile(identifier, encoded)

    async def _load_block_list(self, session: aiohttp.ClientSession, source: Source) -> CompiledRuleList:
        """Download, convert, cache and compile one list."""
        logger.debug("loading block list: %s, %s", source.identifier, source.url)
        rules = await fetch_rules(session, source.url, self.timeout)
        encoded = await asyncio.to_thread(
            translate, rules, self.converter, self.rule_limit, self.optimize
        )
        await self.cache.write(source.identifier, encoded)
        return await self.registry.compile(source.identifier, encoded)


# ============================================================================
# CLI
# ============================================================================

def print_summary(rule_lists: list[CompiledRuleList], sources: tuple[Source, ...]) -> None:
    """Print formatted summary."""
    print("\n" + "=" * 60)
    print("📊 RULE LISTS")
    print("=" * 60)

    total = 0
    for source, rule_list in zip(sources, rule_lists):
        total += len(rule_list)
        print(f"   {source.identifier:<32} {len(rule_list):>10,} rules  ({rule_list.encoded_size:,} bytes)")
    print(f"\n📦 Total: {total:,} rules in {len(rule_lists)} lists")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Load content blocker rule lists with caching")
    parser.add_argument("--sources", help="Sources file ('<identifier> | <url>' per line)")
    parser.add_argument("--cache", default=DEFAULT_CACHE_DIR, help="Cache directory for converted lists")
    parser.add_argument("--force", action="store_true", help="Ignore the cache and download everything")
    parser.add_argument("--clear-cache", action="store_true", help="Delete cached lists before loading")
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help="Request timeout in seconds")
    parser.add_argument("--concurrency", type=int, default=DEFAULT_CONCURRENCY, help="Max concurrent downloads")
    parser.add_argument("--limit", type=int, default=RULE_LIMIT, help="Maximum rules per list")
    parser.add_argument("--no-optimize", action="store_true", help="Keep generic and redundant rules")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sources = load_sources(args.sources) if args.sources else list(DEFAULT_SOURCES)
    except (OSError, ValueError) as e:
        print(f"ERROR: Cannot load sources: {e}", file=sys.stderr)
        return 2
    if not sources:
        print("No sources found in sources file", file=sys.stderr)
        return 2

    cache = CacheStore(args.cache)
    if args.clear_cache:
        removed = cache.clear()
        print(f"🧹 Removed {removed} cached lists")

    loader = FilterListLoader(
        sources,
        cache,
        rule_limit=args.limit,
        optimize=not args.no_optimize,
        timeout=args.timeout,
        concurrency=args.concurrency,
    )

    print(f"🔄 Loading {len(sources)} rule lists...")
    start_time = time.time()
    try:
        rule_lists = asyncio.run(loader.get_lists(force_refresh=args.force))
    except LoaderError as e:
        print(f"\n❌ ERROR: {e}", file=sys.stderr)
        return 1

    print_summary(rule_lists, loader.sources)
    print(f"\n⏱️  Total time: {time.time() - start_time:.1f}s")
    print("✅ Rule lists loaded successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
