"""Pytest configuration for all tests."""

from typing import Any

import pytest

from dbuswire.compiler import clear_caches


class FakeConnection:
    """In-memory exported-object registry keyed by (peer, path)."""

    def __init__(self) -> None:
        self.exports: dict[tuple[str | None, str], Any] = {}
        self.lookups: list[tuple[str | None, str]] = []

    def export(self, source: str | None, path: str, obj: Any) -> None:
        self.exports[(source, path)] = obj

    def get_exported_object(self, source: str | None, path: str) -> Any:
        self.lookups.append((source, path))
        return self.exports.get((source, path))


@pytest.fixture
def connection() -> FakeConnection:
    """A connection with nothing exported yet."""
    return FakeConnection()


@pytest.fixture
def fresh_caches():
    """Run a test against empty type caches."""
    clear_caches()
    yield
    clear_caches()
