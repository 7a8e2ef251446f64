"""Resource pattern grammar.

Resources and patterns are ``/``-separated segment lists (``doc:42``,
``dept:123/reports/7``). In a pattern:

* a final segment that is exactly ``*`` matches one or more remaining
  segments, so the lone pattern ``*`` matches every resource;
* any other ``*`` matches zero or more characters inside a single segment;
* everything else matches literally and case-sensitively.

Empty segments and ``**`` are invalid.
"""

from __future__ import annotations

import re
from functools import lru_cache

from tenantguard.domain.errors import InvalidArgumentError

WILDCARD = "*"
SEPARATOR = "/"


def validate_pattern(pattern: str) -> str:
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidArgumentError("resource pattern must not be empty")
    pattern = pattern.strip()
    if "**" in pattern:
        raise InvalidArgumentError("'**' is not supported in resource patterns")
    if any(segment == "" for segment in pattern.split(SEPARATOR)):
        raise InvalidArgumentError(f"resource pattern has an empty segment: {pattern!r}")
    return pattern


def _segment_regex(segment: str) -> str:
    return "[^/]*".join(re.escape(part) for part in segment.split(WILDCARD))


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    segments = validate_pattern(pattern).split(SEPARATOR)
    tail = ""
    if segments[-1] == WILDCARD:
        segments = segments[:-1]
        tail = "[^/]+(?:/[^/]+)*"
    parts = [_segment_regex(segment) for segment in segments]
    if tail:
        parts.append(tail)
    return re.compile("/".join(parts))


def resource_matches(pattern: str, resource: str) -> bool:
    """Return True when ``resource`` is covered by ``pattern``.

    Invalid patterns and empty resources never match.
    """
    if not resource or any(segment == "" for segment in resource.split(SEPARATOR)):
        return False
    try:
        compiled = compile_pattern(pattern)
    except InvalidArgumentError:
        return False
    return compiled.fullmatch(resource) is not None
