"""
rules.py - ABP Filter Rule Classification and Parsing

First stage of conversion: every downloaded line is classified as a comment,
a network rule, or an element-hiding rule, and split into its parts.

Supported syntax:
    ||ads.example.com^$third-party     network rule with options
    @@||example.com/allowed^           exception (allowlist) rule
    /banner[0-9]+\\.gif/               regex rule
    example.com,~shop.example.com##.ad element hiding rule
    0.0.0.0 ads.example.com            hosts line, rewritten to ||ads.example.com^
    banner.gif                         plain substring rule, matched anywhere in the URL

Anything else (scriptlets, extended CSS, HTML filtering) is reported with a
reason so the converter can count it as an error.
"""
from __future__ import annotations

import re
from typing import Final, NamedTuple, Union


# =============================================================================
# REGEX PATTERNS
# =============================================================================

#: Full-line comments: "! text", "# text", "#!", or separator lines of only #
COMMENT_PATTERN: Final[re.Pattern[str]] = re.compile(r"^(?:!|#(?:\s|!|#*$))")

#: Element hiding markers: ## #@# #?# #@?# #$# #@$# #$?# #@$?# #%# #@%#
COSMETIC_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(?P<domains>[^\s/|$#]*)"           # Optional comma-separated domain list
    r"(?P<marker>#@?(?:\$\??|\?|%)?#)"    # Marker
    r"(?P<body>.+)$"                      # Selector / script body
)

#: Hosts format: IP domain [domain2 ...]
HOSTS_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^([\d.:a-fA-F]+)\s+"   # IP address (IPv4 or IPv6)
    r"(.+)$"                 # Rest of line (domains)
)

#: Valid hostname inside a hosts line
HOSTS_DOMAIN_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z0-9][\w.-]*$")

#: Option section after the last $: names, ~negation, =values, | domain lists
OPTIONS_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[\w~,=|.*-]+$")

# Local/blocking IPs in hosts format
BLOCKING_IPS: Final[frozenset[str]] = frozenset({
    "0.0.0.0", "127.0.0.1", "::1", "::0", "::", "0:0:0:0:0:0:0:0", "0:0:0:0:0:0:0:1",
})

# Local hostnames to skip
LOCAL_HOSTNAMES: Final[frozenset[str]] = frozenset({
    "localhost", "localhost.localdomain", "local", "broadcasthost",
    "ip6-localhost", "ip6-loopback", "ip6-localnet",
    "ip6-mcastprefix", "ip6-allnodes", "ip6-allrouters", "ip6-allhosts",
})

ELEMENT_HIDING_MARKER: Final[str] = "##"


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class NetworkRule(NamedTuple):
    """
    A URL blocking or exception rule.

    Attributes:
        text: Original rule text
        pattern: ABP pattern without the @@ prefix and $options
        exception: True for @@ rules
        options: (name, value) pairs; name is lowercase and keeps a leading ~
    """
    text: str
    pattern: str
    exception: bool
    options: tuple[tuple[str, str | None], ...]

    @property
    def is_regex(self) -> bool:
        return len(self.pattern) > 1 and self.pattern.startswith("/") and self.pattern.endswith("/")


class ElementHidingRule(NamedTuple):
    """
    A cosmetic rule.

    Attributes:
        text: Original rule text
        marker: The separator, "##" for plain element hiding
        selector: CSS selector or script body after the marker
        domains: Domain list before the marker; ~ prefixed entries are exclusions
    """
    text: str
    marker: str
    selector: str
    domains: tuple[str, ...]

    @property
    def is_generic(self) -> bool:
        return not any(not d.startswith("~") for d in self.domains)


Rule = Union[NetworkRule, ElementHidingRule]


class ParseResult(NamedTuple):
    """
    Result of parsing a single line.

    Attributes:
        rule: Parsed rule, or None if discarded
        reason: Why the line was discarded ("empty", "comment", "invalid"), or None
    """
    rule: Rule | None
    reason: str | None


# =============================================================================
# HELPERS
# =============================================================================

def normalize_domain(domain: str) -> str:
    """Normalize domain to lowercase, stripped."""
    return domain.lower().strip().rstrip(".")


def is_comment(line: str) -> bool:
    """
    Check if line is a comment.

    Example:
        >>> is_comment("! Title: Base filter")
        True
        >>> is_comment("###ad-banner")
        False
    """
    return bool(COMMENT_PATTERN.match(line))


def extract_hosts_domains(line: str) -> list[str]:
    """
    Extract blocked domains from a hosts-style line.

    Only lines that point at a blocking IP count; local hostnames are dropped.

    Example:
        >>> extract_hosts_domains("0.0.0.0 ads.example.com tracker.example.com")
        ['ads.example.com', 'tracker.example.com']
    """
    match = HOSTS_PATTERN.match(line)
    if not match:
        return []

    ip, rest = match.group(1), match.group(2)
    if ip not in BLOCKING_IPS and not ip.startswith("0.") and not ip.startswith("127."):
        return []

    domains = []
    for part in rest.split():
        # Stop at comments
        if part.startswith("#"):
            break
        if HOSTS_DOMAIN_PATTERN.match(part):
            domain = normalize_domain(part)
            if domain and domain not in LOCAL_HOSTNAMES:
                domains.append(domain)
    return domains


def expand_line(line: str) -> list[str]:
    """
    Rewrite hosts lines to ABP domain rules.

    Other lines are returned unchanged (stripped). A bare token such as
    "ads.example.com" stays a substring rule; only hosts lines are domain
    blocks.

    Example:
        >>> expand_line("127.0.0.1 ads.example.com")
        ['||ads.example.com^']
        >>> expand_line("||example.com^$third-party")
        ['||example.com^$third-party']
    """
    line = line.strip()
    if not line:
        return []

    domains = extract_hosts_domains(line)
    if domains:
        return [f"||{domain}^" for domain in domains]
    if HOSTS_PATTERN.match(line) and " " in line:
        # Hosts line for a non-blocking IP or only local names
        return []

    return [line]


def split_options(line: str) -> tuple[str, str | None]:
    """
    Split a network rule into its pattern and raw option string.

    Example:
        >>> split_options("||example.com^$script,domain=a.com|b.com")
        ('||example.com^', 'script,domain=a.com|b.com')
        >>> split_options("/ads$/")
        ('/ads$/', None)
    """
    if line.startswith("/") and line.endswith("/") and len(line) > 1:
        return line, None

    index = line.rfind("$")
    if index < 0:
        return line, None
    options = line[index + 1:]
    if not options or not OPTIONS_PATTERN.match(options):
        return line, None
    return line[:index], options


def parse_options(option_string: str | None) -> tuple[tuple[str, str | None], ...]:
    """
    Parse an option string into (name, value) pairs.

    Example:
        >>> parse_options("~third-party,domain=a.com|~b.com")
        (('~third-party', None), ('domain', 'a.com|~b.com'))
    """
    if not option_string:
        return ()

    options = []
    for part in option_string.split(","):
        name, sep, value = part.partition("=")
        name = name.strip().lower()
        if not name:
            continue
        options.append((name, value.strip() if sep else None))
    return tuple(options)


# =============================================================================
# PARSING
# =============================================================================

def parse_rule(line: str) -> ParseResult:
    """
    Parse a single (already expanded) rule line.

    Args:
        line: A rule line; hosts lines should go through
            expand_line first

    Returns:
        ParseResult with the parsed rule or a discard reason

    Example:
        >>> parse_rule("example.com##.ad").rule.selector
        '.ad'
        >>> parse_rule("@@||example.com^").rule.exception
        True
    """
    line = line.strip()
    if not line:
        return ParseResult(None, "empty")
    if is_comment(line):
        return ParseResult(None, "comment")

    cosmetic = COSMETIC_PATTERN.match(line)
    if cosmetic:
        domains = tuple(
            normalize_domain(d) for d in cosmetic.group("domains").split(",") if d.strip()
        )
        return ParseResult(
            ElementHidingRule(line, cosmetic.group("marker"), cosmetic.group("body").strip(), domains),
            None,
        )

    exception = line.startswith("@@")
    body = line[2:] if exception else line
    pattern, option_string = split_options(body)
    if not pattern and not option_string:
        return ParseResult(None, "invalid")

    return ParseResult(NetworkRule(line, pattern, exception, parse_options(option_string)), None)


def parse_rules(lines: list[str]) -> tuple[list[Rule], int]:
    """
    Expand and parse a list of lines.

    Returns:
        Tuple of (rules, invalid_count); comments and empty lines are
        not counted as invalid
    """
    rules: list[Rule] = []
    invalid = 0
    for raw in lines:
        for line in expand_line(raw):
            result = parse_rule(line)
            if result.rule is not None:
                rules.append(result.rule)
            elif result.reason == "invalid":
                invalid += 1
    return rules, invalid
