"""
downloader.py - Filter List Downloader

One GET per list per pipeline run, no retries. The body is split into lines
and comment (!) and empty lines are dropped; an empty result is an error
rather than an empty success.
"""
from __future__ import annotations

import asyncio
import logging

import aiohttp

from contentblocker.config import DEFAULT_CONCURRENCY, DEFAULT_TIMEOUT
from contentblocker.errors import NoRules, RequestFailed


logger = logging.getLogger(__name__)

COMMENT_MARKER = "!"


def parse_rule_lines(text: str) -> list[str]:
    """
    Split a downloaded list into rule lines.

    Lines are stripped before the comment check, so an indented
    "  ! note" is dropped as a comment like "! note".

    Example:
        >>> parse_rule_lines("! Title: test\\n\\n||ads.example.com^\\r\\n")
        ['||ads.example.com^']
    """
    lines = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(COMMENT_MARKER):
            continue
        lines.append(line)
    return lines


def create_session(concurrency: int = DEFAULT_CONCURRENCY) -> aiohttp.ClientSession:
    """Create a pooled client session for one refresh."""
    connector = aiohttp.TCPConnector(limit=concurrency, limit_per_host=2)
    return aiohttp.ClientSession(connector=connector)


async def fetch_rules(
    session: aiohttp.ClientSession,
    url: str,
    timeout: int = DEFAULT_TIMEOUT,
) -> list[str]:
    """
    Download a filter list and return its rule lines.

    Raises:
        RequestFailed: on transport errors, timeouts, HTTP errors or an
            undecodable body
        NoRules: if the list holds only comments and blank lines
    """
    try:
        async with session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=timeout),
            allow_redirects=True,
        ) as response:
            if response.status >= 400:
                raise RequestFailed(f"HTTP {response.status} for {url}")
            text = await response.text(errors="replace")
    except asyncio.TimeoutError as e:
        raise RequestFailed(f"Timeout fetching {url}") from e
    except aiohttp.ClientError as e:
        raise RequestFailed(f"{e} fetching {url}") from e
    except (UnicodeDecodeError, LookupError) as e:
        raise RequestFailed(f"Cannot decode response from {url}: {e}") from e

    lines = parse_rule_lines(text)
    if not lines:
        raise NoRules(f"No rules in {url}")

    logger.debug("fetched %d rule lines from %s", len(lines), url)
    return lines
