"""
errors.py - Loader error taxonomy

Per-list failures (RequestFailed, NoRules, ParseError, WebkitError) are
collected at the task boundary. Callers of the pipeline only ever see NotFound.
"""
from __future__ import annotations


class LoaderError(Exception):
    """Base class for every error raised by the loader."""


class RequestFailed(LoaderError):
    """The transport did not yield a response body."""


class NoRules(LoaderError):
    """The response held nothing but comments and blank lines."""


class ParseError(LoaderError):
    """The rule converter did not produce an encoded rule list."""


class WebkitError(LoaderError):
    """The rule list store is missing or refused to compile a list."""


class NotFound(LoaderError):
    """No complete set of rule lists could be produced."""
