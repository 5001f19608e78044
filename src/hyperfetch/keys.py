"""Key derivation, path-param substitution and invalidation matching."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import urlencode

InvalidatePattern = str | re.Pattern[str]

_PARAM_TOKEN = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")


def fill_params(template: str, params: Mapping[str, Any] | None) -> str:
    """Substitute ``:name`` segments of ``template`` with values from ``params``.

    Segments without a matching param are left in place.
    """
    if not params:
        return template

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in params:
            return match.group(0)
        return str(params[name])

    return _PARAM_TOKEN.sub(_replace, template)


def missing_params(endpoint: str) -> list[str]:
    """Return the names of ``:name`` segments that are still unresolved."""
    return _PARAM_TOKEN.findall(endpoint)


def encode_query(query: Mapping[str, Any] | str | None) -> str:
    """Encode query params into a stable string without the leading ``?``."""
    if query is None:
        return ""
    if isinstance(query, str):
        return query.lstrip("?")
    pairs: list[tuple[str, Any]] = []
    for key, value in query.items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append((str(key), value))
    return urlencode(pairs, doseq=True)


def join_url(base_url: str, endpoint: str, query: str = "") -> str:
    url = f"{base_url}{endpoint}"
    if query:
        return f"{url}?{query}"
    return url


def get_abort_key(method: str, base_url: str, endpoint: str, cancelable: bool) -> str:
    """Key grouping operations that are aborted together."""
    return f"{method}_{base_url}{endpoint}_{cancelable}"


def get_request_key(method: str, base_url: str, endpoint: str, query: str = "") -> str:
    """Key used for both caching and queue serialization unless pinned."""
    return f"{method}_{base_url}{endpoint}_{query}"


def compile_pattern(pattern: InvalidatePattern) -> re.Pattern[str] | None:
    """Return a regex for ``/expr/`` strings and compiled patterns, else None."""
    if isinstance(pattern, re.Pattern):
        return pattern
    if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
        return re.compile(pattern[1:-1])
    return None


def key_matches(pattern: InvalidatePattern, key: str) -> bool:
    """Literal equality for plain strings, regex search for patterns."""
    regex = compile_pattern(pattern)
    if regex is None:
        return pattern == key
    return regex.search(key) is not None


def matching_keys(patterns: Iterable[InvalidatePattern], keys: Iterable[str]) -> list[str]:
    """Return each key matched by any pattern once, in ``keys`` order."""
    pattern_list = list(patterns)
    return [key for key in keys if any(key_matches(p, key) for p in pattern_list)]


def pattern_to_str(pattern: InvalidatePattern) -> str:
    """Serializable form of an invalidation pattern."""
    if isinstance(pattern, re.Pattern):
        return f"/{pattern.pattern}/"
    return pattern
