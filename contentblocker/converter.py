"""
converter.py - ABP Rules to WebKit Content Blocker JSON

Translates filter rules into the encoded content rule list format accepted by
the rule list store (a JSON array of trigger/action objects).

CONVERSION:
    ||ads.example.com^           →  url-filter ^[^:]+://+([^:/]+\\.)?ads\\.example\\.com[/:?=&]
    @@||example.com^             →  action ignore-previous-rules
    example.com##.banner         →  css-display-none, if-domain ["*example.com"]
    ||x.com^$third-party,script  →  load-type ["third-party"], resource-type ["script"]

OUTPUT ORDER:
    WebKit applies rules in order and ignore-previous-rules only cancels rules
    listed before it, so element hiding comes first, then blocking, then
    exceptions. When the rule limit is hit, exceptions are kept and blocking
    rules are truncated.

OPTIMIZE MODE:
    - Generic element hiding rules (no domain) are dropped
    - Identical entries are emitted once
    - ||sub.example.com^ is dropped when ||example.com^ is present, both
      without options (parent walk uses the public suffix list)
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Final

import tldextract

from contentblocker.config import OPTIMIZE, RULE_LIMIT
from contentblocker.errors import ParseError
from contentblocker.rules import (
    ELEMENT_HIDING_MARKER,
    ElementHidingRule,
    NetworkRule,
    normalize_domain,
    parse_rules,
)


logger = logging.getLogger(__name__)

# Bundled public suffix snapshot only, no network fetch
_tld_extract = tldextract.TLDExtract(suffix_list_urls=())

# ============================================================================
# WEBKIT VOCABULARY
# ============================================================================

#: Matches scheme and any subdomain in front of a || anchored domain
DOMAIN_ANCHOR: Final[str] = r"^[^:]+://+([^:/]+\.)?"

#: ABP ^ separator
SEPARATOR: Final[str] = "[/:?=&]"

REGEX_SPECIALS: Final[frozenset[str]] = frozenset(".+?{}()[]\\$|")

#: Regex features WebKit's url-filter does not support
UNSUPPORTED_REGEX: Final[tuple[str, ...]] = ("|", "{", "(?", "\\d", "\\D", "\\w", "\\W", "\\s", "\\S", "\\b", "\\B")

RESOURCE_TYPES: Final[dict[str, str]] = {
    "document": "document",
    "doc": "document",
    "subdocument": "document",
    "image": "image",
    "stylesheet": "style-sheet",
    "css": "style-sheet",
    "script": "script",
    "js": "script",
    "font": "font",
    "media": "media",
    "popup": "popup",
    "xmlhttprequest": "raw",
    "xhr": "raw",
    "websocket": "raw",
    "ping": "raw",
    "other": "raw",
}

THIRD_PARTY: Final[frozenset[str]] = frozenset({"third-party", "3p", "~first-party", "~1p"})
FIRST_PARTY: Final[frozenset[str]] = frozenset({"~third-party", "~3p", "first-party", "1p"})

#: Accepted but without a WebKit equivalent
IGNORED_OPTIONS: Final[frozenset[str]] = frozenset({"important"})


class UnsupportedRule(ValueError):
    """A rule that has no WebKit content blocker equivalent."""


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ConvertStats:
    """Statistics from conversion."""
    total_input: int = 0
    converted: int = 0
    errors: int = 0
    generic_hiding_pruned: int = 0
    duplicate_pruned: int = 0
    subdomain_pruned: int = 0
    over_limit: bool = False


@dataclass
class _Buckets:
    hiding: list[dict[str, Any]] = field(default_factory=list)
    blocking: list[dict[str, Any]] = field(default_factory=list)
    exceptions: list[dict[str, Any]] = field(default_factory=list)
    # Plain ||domain^ blocking rules: domain -> index in blocking
    plain_domains: dict[str, int] = field(default_factory=dict)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

@lru_cache(maxsize=65536)
def walk_parent_domains(domain: str) -> tuple[str, ...]:
    """
    Walk up the domain hierarchy to the registered domain.

    Example: "a.b.example.com" -> ("b.example.com", "example.com")
    """
    ext = _tld_extract(domain)
    if not ext.suffix or not ext.domain or not ext.subdomain:
        return ()

    registered = f"{ext.domain}.{ext.suffix}"
    parts = ext.subdomain.split(".")
    parents = [f"{'.'.join(parts[i:])}.{registered}" for i in range(1, len(parts))]
    parents.append(registered)
    return tuple(parents)


def to_webkit_domain(domain: str) -> str:
    """Punycode a domain and prefix * so subdomains match as well."""
    domain = normalize_domain(domain)
    try:
        ascii_domain = domain.encode("idna").decode("ascii")
    except UnicodeError as e:
        raise UnsupportedRule(f"invalid domain {domain!r}") from e
    return f"*{ascii_domain}"


def split_domains(domains: list[str]) -> tuple[list[str], list[str]]:
    """Split a domain list into (included, excluded) WebKit domains."""
    include, exclude = [], []
    for domain in domains:
        if domain.startswith("~"):
            exclude.append(to_webkit_domain(domain[1:]))
        elif domain:
            include.append(to_webkit_domain(domain))
    if include and exclude:
        raise UnsupportedRule("mixed included and excluded domains")
    return include, exclude


def pattern_to_url_filter(pattern: str) -> str:
    """
    Convert an ABP pattern to a WebKit url-filter regex.

    Example:
        >>> pattern_to_url_filter("|https://ads.")
        '^https://ads\\\\.'
    """
    if len(pattern) > 1 and pattern.startswith("/") and pattern.endswith("/"):
        regex = pattern[1:-1]
        for feature in UNSUPPORTED_REGEX:
            if feature in regex:
                raise UnsupportedRule(f"regex feature {feature!r} not supported")
        try:
            re.compile(regex)
        except re.error as e:
            raise UnsupportedRule(f"invalid regex {regex!r}: {e}") from e
        return regex

    prefix = suffix = ""
    if pattern.startswith("||"):
        prefix, pattern = DOMAIN_ANCHOR, pattern[2:]
    elif pattern.startswith("|"):
        prefix, pattern = "^", pattern[1:]
    if pattern.endswith("|"):
        suffix, pattern = "$", pattern[:-1]

    body = []
    for ch in pattern:
        if ch == "*":
            body.append(".*")
        elif ch == "^":
            body.append(SEPARATOR)
        elif ch in REGEX_SPECIALS:
            body.append("\\" + ch)
        else:
            body.append(ch)

    url_filter = prefix + "".join(body) + suffix
    return url_filter or ".*"


def convert_network_rule(rule: NetworkRule) -> dict[str, Any]:
    """
    Convert one network rule to a WebKit rule object.

    Raises:
        UnsupportedRule: for options or patterns WebKit cannot express
    """
    trigger: dict[str, Any] = {"url-filter": pattern_to_url_filter(rule.pattern)}
    resource_types: list[str] = []

    for name, value in rule.options:
        if name in THIRD_PARTY:
            trigger["load-type"] = ["third-party"]
        elif name in FIRST_PARTY:
            trigger["load-type"] = ["first-party"]
        elif name == "domain":
            include, exclude = split_domains((value or "").split("|"))
            if include:
                trigger["if-domain"] = include
            elif exclude:
                trigger["unless-domain"] = exclude
        elif name in RESOURCE_TYPES:
            resource_type = RESOURCE_TYPES[name]
            if resource_type not in resource_types:
                resource_types.append(resource_type)
        elif name == "match-case":
            trigger["url-filter-is-case-sensitive"] = True
        elif name in IGNORED_OPTIONS:
            continue
        else:
            raise UnsupportedRule(f"option {name!r} not supported")

    if resource_types:
        trigger["resource-type"] = resource_types

    action = "ignore-previous-rules" if rule.exception else "block"
    return {"trigger": trigger, "action": {"type": action}}


def convert_element_hiding_rule(rule: ElementHidingRule) -> dict[str, Any]:
    """Convert one ## rule to a css-display-none rule object."""
    if rule.marker != ELEMENT_HIDING_MARKER:
        raise UnsupportedRule(f"cosmetic marker {rule.marker!r} not supported")
    if not rule.selector:
        raise UnsupportedRule("empty selector")

    trigger: dict[str, Any] = {"url-filter": ".*"}
    include, exclude = split_domains(list(rule.domains))
    if include:
        trigger["if-domain"] = include
    elif exclude:
        trigger["unless-domain"] = exclude
    return {"trigger": trigger, "action": {"type": "css-display-none", "selector": rule.selector}}


def plain_block_domain(rule: NetworkRule) -> str | None:
    """Return the domain of a ||domain^ block rule without options."""
    if rule.exception or rule.options:
        return None
    pattern = rule.pattern
    if not pattern.startswith("||") or not pattern.endswith("^"):
        return None
    domain = pattern[2:-1]
    if not domain or any(ch in domain for ch in "/*^|:"):
        return None
    return normalize_domain(domain)


def _apply_limit(buckets: _Buckets, limit: int) -> tuple[list[dict[str, Any]], bool]:
    """Order rules and cap the list, keeping exceptions where possible."""
    exceptions = buckets.exceptions[:limit]
    room = limit - len(exceptions)
    ordered = buckets.hiding + buckets.blocking
    over_limit = len(ordered) + len(buckets.exceptions) > limit
    return ordered[:room] + exceptions, over_limit


# ============================================================================
# CONVERTER
# ============================================================================

class RuleConverter:
    """Converts ABP filter rules into WebKit content blocker JSON."""

    def json_from_rules(self, rules: list[str], limit: int = RULE_LIMIT, optimize: bool = OPTIMIZE) -> dict[str, Any]:
        """
        Convert rule lines.

        Args:
            rules: Filter rule lines; comments are skipped
            limit: Maximum number of rules in the output
            optimize: Drop generic hiding, duplicates and covered subdomains

        Returns:
            Dictionary with "converted" (the encoded JSON string, absent when
            nothing converted), "convertedCount", "errorsCount",
            "totalConvertedCount" and "overLimit"
        """
        stats = ConvertStats(total_input=len(rules))
        parsed, stats.errors = parse_rules(rules)
        buckets = _Buckets()
        seen: set[str] = set()

        for rule in parsed:
            try:
                if isinstance(rule, ElementHidingRule):
                    if optimize and rule.is_generic:
                        stats.generic_hiding_pruned += 1
                        continue
                    entry = convert_element_hiding_rule(rule)
                    bucket = buckets.hiding
                else:
                    entry = convert_network_rule(rule)
                    bucket = buckets.exceptions if rule.exception else buckets.blocking
            except UnsupportedRule as e:
                stats.errors += 1
                logger.debug("skipping %r: %s", rule.text, e)
                continue

            if optimize:
                key = json.dumps(entry, sort_keys=True)
                if key in seen:
                    stats.duplicate_pruned += 1
                    continue
                seen.add(key)
                if isinstance(rule, NetworkRule):
                    domain = plain_block_domain(rule)
                    if domain is not None:
                        buckets.plain_domains[domain] = len(bucket)

            bucket.append(entry)

        if optimize and buckets.plain_domains:
            stats.subdomain_pruned = self._prune_subdomains(buckets)

        entries, stats.over_limit = _apply_limit(buckets, limit)
        stats.converted = len(entries)
        total = len(buckets.hiding) + len(buckets.blocking) + len(buckets.exceptions)

        logger.debug(
            "converted %d of %d rules (errors: %d, generic hiding: %d, duplicates: %d, subdomains: %d)",
            stats.converted, stats.total_input, stats.errors,
            stats.generic_hiding_pruned, stats.duplicate_pruned, stats.subdomain_pruned,
        )

        result: dict[str, Any] = {
            "convertedCount": stats.converted,
            "errorsCount": stats.errors,
            "totalConvertedCount": total,
            "overLimit": stats.over_limit,
        }
        if entries:
            result["converted"] = json.dumps(entries)
        return result

    @staticmethod
    def _prune_subdomains(buckets: _Buckets) -> int:
        """Drop plain domain blocks already covered by a parent domain block."""
        covered = {
            index
            for domain, index in buckets.plain_domains.items()
            if any(parent in buckets.plain_domains for parent in walk_parent_domains(domain))
        }
        if covered:
            buckets.blocking = [entry for i, entry in enumerate(buckets.blocking) if i not in covered]
        return len(covered)


# ============================================================================
# PIPELINE POLICY
# ============================================================================

def translate(
    lines: list[str],
    converter: RuleConverter | None = None,
    limit: int = RULE_LIMIT,
    optimize: bool = OPTIMIZE,
) -> str:
    """
    Translate rule lines into an encoded rule list.

    Raises:
        ParseError: if the converter fails or produces no encoded list
    """
    converter = converter or RuleConverter()
    try:
        result = converter.json_from_rules(lines, limit, optimize)
    except Exception as e:
        raise ParseError(f"converter failed: {e}") from e

    encoded = result.get("converted") if isinstance(result, dict) else None
    if not isinstance(encoded, str):
        raise ParseError("converter produced no rule list")
    if result.get("overLimit"):
        logger.info("rule list truncated to %d rules", limit)
    return encoded
