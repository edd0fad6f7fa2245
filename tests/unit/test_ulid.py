"""Unit tests for generate_ulid() — audit entry and session identifiers."""

from __future__ import annotations

import re

from crmguard.utils.ulid import generate_ulid

# Crockford Base32 charset: 0-9 and A-Z, excluding I, L, O, U
ULID_CHARSET = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")


def test_format() -> None:
    value = generate_ulid()
    assert isinstance(value, str)
    assert ULID_CHARSET.match(value), value


def test_unique_across_many_calls() -> None:
    values = [generate_ulid() for _ in range(1000)]
    assert len(set(values)) == 1000
    assert all(ULID_CHARSET.match(v) for v in values)
