from __future__ import annotations

import pytest

from tenantguard.domain.errors import InvalidArgumentError, InvalidOperationError
from tenantguard.domain.resource_pattern import resource_matches, validate_pattern


@pytest.mark.parametrize(
    ("pattern", "resource", "expected"),
    [
        ("*", "doc:1", True),
        ("*", "dept:1/reports/7", True),
        ("doc:42", "doc:42", True),
        ("doc:42", "doc:420", False),
        ("doc:42", "Doc:42", False),
        ("doc:*", "doc:7", True),
        ("doc:*", "doc:", True),
        ("doc:*", "doc:42/comments", False),
        ("doc:*", "folder:1", False),
        ("dept:123/*", "dept:123/reports", True),
        ("dept:123/*", "dept:123/reports/7", True),
        ("dept:123/*", "dept:123", False),
        ("dept:123/*", "dept:1234/reports", False),
        ("dept:*/reports", "dept:9/reports", True),
        ("dept:*/reports", "dept:9/reports/1", False),
        ("dept:*/reports", "dept:9/x/reports", False),
        ("dept:*/*", "dept:9/x/reports", True),
        ("*/reports", "dept:9/reports", True),
        ("*/reports", "reports", False),
        ("a*c", "abbbc", True),
        ("a*c", "ab/c", False),
        ("doc:[1]", "doc:[1]", True),
        ("doc:[1]", "doc:1", False),
        ("doc:a.b", "doc:aXb", False),
        ("doc:?", "doc:x", False),
    ],
)
def test_resource_matches(pattern: str, resource: str, expected: bool) -> None:
    assert resource_matches(pattern, resource) is expected


@pytest.mark.parametrize("resource", ["", "/doc:1", "doc:1/", "doc:1//x"])
def test_malformed_resources_never_match(resource: str) -> None:
    assert resource_matches("*", resource) is False


@pytest.mark.parametrize("pattern", ["", "   ", "doc:**", "a//b", "/doc:1", "doc:1/"])
def test_invalid_patterns_rejected(pattern: str) -> None:
    with pytest.raises(InvalidArgumentError):
        validate_pattern(pattern)
    assert resource_matches(pattern, "doc:1") is False


def test_invalid_pattern_is_an_invalid_operation() -> None:
    with pytest.raises(InvalidOperationError):
        validate_pattern("")


def test_validate_pattern_strips_whitespace() -> None:
    assert validate_pattern("  doc:* ") == "doc:*"
