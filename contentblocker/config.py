"""
config.py - Loader defaults and filter list sources

Sources file format, one list per line:

    # comment
    AdGuard Base filter | http://testfilters.adtidy.org/ios/filters/2_optimized.txt

The identifier is used verbatim as the cache file name and, with spaces
replaced, as the rule list store key.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Final, Iterable, NamedTuple


logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_TIMEOUT: Final[int] = 30
DEFAULT_CONCURRENCY: Final[int] = 8
DEFAULT_CACHE_DIR: Final[str] = ".cache/contentblocker"

# Converter policy: caps compiled list size and compile latency
RULE_LIMIT: Final[int] = 50000
OPTIMIZE: Final[bool] = True

# Cached lists older than this are refreshed from the network
RETENTION_DAYS: Final[int] = 7
RETENTION_SECONDS: Final[int] = RETENTION_DAYS * 24 * 60 * 60

SOURCE_SEPARATOR: Final[str] = "|"


class Source(NamedTuple):
    """A named remote filter list."""
    identifier: str
    url: str


DEFAULT_SOURCES: Final[tuple[Source, ...]] = (
    Source("AdGuard Base filter", "http://testfilters.adtidy.org/ios/filters/2_optimized.txt"),
    Source("AdGuard Mobile Ads filter", "http://testfilters.adtidy.org/ios/filters/11_optimized.txt"),
    Source("AdGuard Spyware filter", "http://testfilters.adtidy.org/ios/filters/3_optimized.txt"),
    Source("AdGuard Annoyances filter", "http://testfilters.adtidy.org/ios/filters/14_optimized.txt"),
    Source("AdGuard Safari filter", "http://testfilters.adtidy.org/ios/filters/12_optimized.txt"),
)


def normalize_identifier(identifier: str) -> str:
    """
    Map a source identifier into the rule list store key space.

    Example:
        >>> normalize_identifier("AdGuard Base filter")
        'AdGuard-Base-filter'
    """
    return identifier.replace(" ", "-")


def validate_sources(sources: Iterable[Source]) -> tuple[Source, ...]:
    """
    Check that every source has an identifier and a URL, and that
    identifiers are unique both verbatim (cache files) and normalized
    (store keys).

    Raises:
        ValueError: on an empty field or a duplicate identifier
    """
    result = tuple(sources)
    seen: dict[str, str] = {}
    for source in result:
        if not source.identifier.strip() or not source.url.strip():
            raise ValueError(f"Incomplete source: {source!r}")
        key = normalize_identifier(source.identifier)
        if key in seen:
            if seen[key] == source.identifier:
                raise ValueError(f"Duplicate source identifier: {source.identifier}")
            raise ValueError(
                f"Source identifiers {seen[key]!r} and {source.identifier!r} both map to store key {key!r}"
            )
        seen[key] = source.identifier
    return result


def parse_source_line(line: str) -> Source | None:
    """
    Parse one sources-file line.

    Returns:
        Source, or None for blank lines and comments

    Raises:
        ValueError: if the line has no identifier/URL separator

    Example:
        >>> parse_source_line("My list | https://example.com/list.txt")
        Source(identifier='My list', url='https://example.com/list.txt')
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None
    identifier, sep, url = line.partition(SOURCE_SEPARATOR)
    if not sep:
        raise ValueError(f"Expected '<identifier> {SOURCE_SEPARATOR} <url>': {line}")
    return Source(identifier.strip(), url.strip())


def load_sources(sources_file: str | Path) -> list[Source]:
    """Load sources from a file, skipping comments and empty lines."""
    path = Path(sources_file)
    sources = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            try:
                source = parse_source_line(line)
            except ValueError as e:
                raise ValueError(f"{path}:{lineno}: {e}") from None
            if source is not None:
                sources.append(source)

    logger.debug("loaded %d sources from %s", len(sources), path)
    return list(validate_sources(sources))
