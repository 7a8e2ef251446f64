from __future__ import annotations

from collections.abc import Iterable

from tenantguard.domain.errors import InvalidArgumentError

ACTION_WILDCARD = "*"
ACTION_CREATE = "create"
ACTION_READ = "read"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_EXPORT = "export"


def normalize_actions(actions: str | Iterable[str]) -> list[str]:
    """Accept ``"read,write"`` or ``["read", "write"]`` and return a sorted unique list."""
    if isinstance(actions, str):
        raw = actions.split(",")
    else:
        raw = list(actions)
    normalized: set[str] = set()
    for item in raw:
        if not isinstance(item, str):
            raise InvalidArgumentError("action must be a string")
        token = item.strip()
        if not token:
            continue
        if any(ch.isspace() for ch in token) or "," in token:
            raise InvalidArgumentError(f"invalid action: {token!r}")
        normalized.add(token)
    if not normalized:
        raise InvalidArgumentError("actions must not be empty")
    return sorted(normalized)


def action_matches(policy_actions: Iterable[str], action: str) -> bool:
    actions = set(policy_actions)
    return action in actions or ACTION_WILDCARD in actions
