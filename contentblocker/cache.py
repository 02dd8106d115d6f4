"""
cache.py - On-disk Cache of Converted Rule Lists

One file per source, <cache_dir>/<identifier>.json, holding the encoded rule
list. Freshness is judged by modification time against the retention window,
and the whole source set is judged at once: a single missing or stale file
means no usable cache.

Writes are plain overwrites (no temp file + rename). A reader racing a
refresh can see a partial file; compiling it fails and the loader falls back
to the network.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Iterable, NamedTuple

import aiofiles

from contentblocker.config import DEFAULT_CACHE_DIR, RETENTION_SECONDS, Source
from contentblocker.errors import NotFound


logger = logging.getLogger(__name__)

CACHE_SUFFIX = ".json"


class CacheEntry(NamedTuple):
    """A cached encoded rule list on disk."""
    identifier: str
    path: Path
    last_modified: float


class CacheStore:
    """Encoded rule lists keyed by source identifier."""

    def __init__(
        self,
        cache_dir: str | Path = DEFAULT_CACHE_DIR,
        retention: float = RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.retention = retention
        self._clock = clock

    def path_for(self, identifier: str) -> Path:
        """Cache file for an identifier (used verbatim, spaces included)."""
        return self.cache_dir / f"{identifier}{CACHE_SUFFIX}"

    @staticmethod
    def identifier_from_path(path: Path) -> str | None:
        """
        Recover the identifier from a cache file name.

        Example:
            >>> CacheStore.identifier_from_path(Path("AdGuard Base filter.json"))
            'AdGuard Base filter'
        """
        name = path.name
        if not name.endswith(CACHE_SUFFIX):
            return None
        identifier = name[: -len(CACHE_SUFFIX)]
        return identifier or None

    def entries(self, sources: Iterable[Source]) -> list[CacheEntry] | None:
        """
        Stat the cache file of every source.

        Returns:
            One CacheEntry per source in order, or None if the cache
            directory or any file is missing or unreadable
        """
        if not self.cache_dir.is_dir():
            return None

        entries = []
        for source in sources:
            path = self.path_for(source.identifier)
            try:
                stat = path.stat()
            except OSError:
                return None
            if not path.is_file():
                return None
            identifier = self.identifier_from_path(path)
            if identifier is None:
                logger.debug("skipping cache file with unexpected name: %s", path)
                continue
            entries.append(CacheEntry(identifier, path, stat.st_mtime))
        return entries

    def check_freshness(self, sources: Iterable[Source]) -> list[tuple[str, Path]] | None:
        """
        Return (identifier, path) for every source if all cache files are fresh.

        A file is fresh when it was modified within the retention window.
        One stale or missing file invalidates the whole batch.

        Returns:
            List of (identifier, path) in source order, or None
        """
        entries = self.entries(sources)
        if entries is None:
            return None

        cutoff = self._clock() - self.retention
        for entry in entries:
            if entry.last_modified < cutoff:
                logger.debug("found cached files, but %s is older than the retention window, refreshing", entry.path.name)
                return None

        return [(entry.identifier, entry.path) for entry in entries]

    async def write(self, identifier: str, encoded: str) -> bool:
        """
        Persist an encoded rule list.

        Failures are logged and reported as False; the cache is best effort.
        """
        path = self.path_for(identifier)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(encoded)
        except OSError as e:
            logger.error("failed to write rule list %s to cache: %s", identifier, e)
            return False
        return True

    async def read(self, path: Path) -> str:
        """
        Read a cached encoded rule list.

        Raises:
            NotFound: if the file cannot be read or decoded
        """
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise NotFound(f"cannot read cached rule list {path}: {e}") from e

    def clear(self) -> int:
        """Remove all cached rule lists. Returns the number of files removed."""
        if not self.cache_dir.is_dir():
            return 0

        removed = 0
        for path in self.cache_dir.glob(f"*{CACHE_SUFFIX}"):
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("could not remove %s: %s", path, e)
        return removed
