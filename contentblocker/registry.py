"""
registry.py - Content Rule List Store

RuleListStore compiles encoded rule lists (WebKit content blocker JSON) into
CompiledRuleList objects and keeps them by identifier, so a list compiled
once can be looked up again without recompiling.

RuleListRegistry is the loader's view of the store: it normalizes
identifiers into the store's key space and turns every store-side failure,
including a missing store, into WebkitError.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Final, NamedTuple

from contentblocker.config import normalize_identifier
from contentblocker.errors import WebkitError


logger = logging.getLogger(__name__)

ACTION_TYPES: Final[frozenset[str]] = frozenset({
    "block", "block-cookies", "css-display-none", "ignore-previous-rules", "make-https",
})
LOAD_TYPES: Final[frozenset[str]] = frozenset({"first-party", "third-party"})
RESOURCE_TYPES: Final[frozenset[str]] = frozenset({
    "document", "image", "style-sheet", "script", "font", "raw", "svg-document", "media", "popup",
})

#: Store keys may not contain whitespace or path separators
INVALID_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"[\s/\\]")


class RuleListCompileError(Exception):
    """The store rejected an identifier or an encoded rule list."""


class CompiledRule(NamedTuple):
    """A single rule with its url-filter compiled."""
    url_filter: re.Pattern[str]
    action: str
    selector: str | None
    trigger: dict[str, Any]


@dataclass(frozen=True)
class CompiledRuleList:
    """A compiled, registered content rule list."""
    identifier: str
    rules: tuple[CompiledRule, ...]
    encoded_size: int

    def __len__(self) -> int:
        return len(self.rules)


def _check_string_list(trigger: dict[str, Any], key: str, allowed: frozenset[str] | None = None) -> None:
    if key not in trigger:
        return
    values = trigger[key]
    if not isinstance(values, list) or not values or not all(isinstance(v, str) for v in values):
        raise RuleListCompileError(f"{key} must be a non-empty list of strings")
    if allowed is not None and not set(values) <= allowed:
        raise RuleListCompileError(f"unknown {key}: {sorted(set(values) - allowed)}")


def compile_rule(index: int, obj: Any) -> CompiledRule:
    """Validate and compile one rule object."""
    if not isinstance(obj, dict):
        raise RuleListCompileError(f"rule {index}: not an object")
    trigger, action = obj.get("trigger"), obj.get("action")
    if not isinstance(trigger, dict) or not isinstance(action, dict):
        raise RuleListCompileError(f"rule {index}: missing trigger or action")

    url_filter = trigger.get("url-filter")
    if not isinstance(url_filter, str) or not url_filter:
        raise RuleListCompileError(f"rule {index}: missing url-filter")

    action_type = action.get("type")
    if action_type not in ACTION_TYPES:
        raise RuleListCompileError(f"rule {index}: unknown action type {action_type!r}")
    selector = action.get("selector")
    if action_type == "css-display-none" and not isinstance(selector, str):
        raise RuleListCompileError(f"rule {index}: css-display-none without selector")

    if "if-domain" in trigger and "unless-domain" in trigger:
        raise RuleListCompileError(f"rule {index}: both if-domain and unless-domain")
    try:
        _check_string_list(trigger, "if-domain")
        _check_string_list(trigger, "unless-domain")
        _check_string_list(trigger, "load-type", LOAD_TYPES)
        _check_string_list(trigger, "resource-type", RESOURCE_TYPES)
    except RuleListCompileError as e:
        raise RuleListCompileError(f"rule {index}: {e}") from None

    flags = 0 if trigger.get("url-filter-is-case-sensitive") else re.IGNORECASE
    try:
        pattern = re.compile(url_filter, flags)
    except re.error as e:
        raise RuleListCompileError(f"rule {index}: invalid url-filter {url_filter!r}: {e}") from e

    return CompiledRule(pattern, action_type, selector, trigger)


def compile_encoded(identifier: str, encoded: str) -> CompiledRuleList:
    """
    Compile an encoded rule list.

    Raises:
        RuleListCompileError: on an invalid identifier or rule list
    """
    if not identifier or INVALID_KEY_PATTERN.search(identifier):
        raise RuleListCompileError(f"invalid identifier {identifier!r}")
    try:
        data = json.loads(encoded)
    except json.JSONDecodeError as e:
        raise RuleListCompileError(f"invalid JSON: {e}") from e
    if not isinstance(data, list) or not data:
        raise RuleListCompileError("rule list must be a non-empty array")

    rules = tuple(compile_rule(i, obj) for i, obj in enumerate(data))
    return CompiledRuleList(identifier, rules, len(encoded))


class RuleListStore:
    """In-process store of compiled rule lists, safe to use from threads."""

    def __init__(self) -> None:
        self._lists: dict[str, CompiledRuleList] = {}
        self._lock = threading.Lock()

    async def lookup(self, identifier: str) -> CompiledRuleList | None:
        with self._lock:
            return self._lists.get(identifier)

    async def compile(self, identifier: str, encoded: str) -> CompiledRuleList:
        """Compile in a worker thread and register under identifier."""
        rule_list = await asyncio.to_thread(compile_encoded, identifier, encoded)
        with self._lock:
            self._lists[identifier] = rule_list
        return rule_list

    async def remove(self, identifier: str) -> bool:
        with self._lock:
            return self._lists.pop(identifier, None) is not None

    def identifiers(self) -> list[str]:
        with self._lock:
            return sorted(self._lists)


class RuleListRegistry:
    """Loader-facing adapter around a RuleListStore."""

    def __init__(self, store: RuleListStore | None):
        self.store = store

    def _require_store(self) -> RuleListStore:
        if self.store is None:
            raise WebkitError("rule list store unavailable")
        return self.store

    async def lookup_compiled(self, identifier: str) -> CompiledRuleList | None:
        """
        Return an already compiled list, or None.

        Raises:
            WebkitError: if there is no store
        """
        store = self._require_store()
        key = normalize_identifier(identifier)
        try:
            return await store.lookup(key)
        except Exception as e:
            logger.debug("lookup of %s failed, treating as miss: %s", key, e)
            return None

    async def compile(self, identifier: str, encoded: str) -> CompiledRuleList:
        """
        Compile and register a list under the normalized identifier.

        Raises:
            WebkitError: if there is no store or compilation fails
        """
        store = self._require_store()
        key = normalize_identifier(identifier)
        try:
            rule_list = await store.compile(key, encoded)
        except Exception as e:
            raise WebkitError(f"failed to compile {key}: {e}") from e
        logger.debug("compiled list store for %s", key)
        return rule_list
