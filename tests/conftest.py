"""
Shared pytest fixtures for schemaspine tests.

This module provides:
- A file-backed SQLite store per test (in ``tmp_path``)
- A ConnectionManager disposed after each test
- A ``users`` table snapshot
- Settings-cache isolation

Thread helpers live in ``tests._support.concurrency``.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from schemaspine.core.connection import ConnectionManager
from schemaspine.core.logging import configure_logging
from schemaspine.core.schema import ColumnSpec, SchemaSnapshot
from schemaspine.core.settings import clear_settings_cache


def pytest_configure(config: pytest.Config) -> None:
    """Silence structured logs for the whole run."""
    configure_logging(level="CRITICAL", json_format=True)


@pytest.fixture(autouse=True)
def _isolated_settings() -> Iterator[None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'store.db'}"


@pytest.fixture
def manager(db_url) -> Iterator[ConnectionManager]:
    mgr = ConnectionManager(db_url, lock_timeout=5.0)
    yield mgr
    mgr.dispose()


@pytest.fixture
def users_table() -> SchemaSnapshot:
    """users(id integer primary key, email text unique not null)."""
    return SchemaSnapshot(
        name="users",
        columns=(
            ColumnSpec(name="id", type="INTEGER"),
            ColumnSpec(name="email", type="TEXT", nullable=False, unique=True),
        ),
        primary_key=("id",),
    )
