"""Connection manager for an embedded single-writer SQLite store.

``ConnectionManager`` is the **single entry point** for touching the
store.  It owns the SQLAlchemy ``Engine`` and the ``AccessGate``; every
caller (read sessions, write sessions, migration runs) goes through
``acquire()`` or a ``SessionScope`` built on it.

Manifesto:
    SQLite allows one writer and enforces foreign keys only when asked.
    Leaving either to the caller produces ``database is locked`` storms
    and silently orphaned rows, so the manager serialises writers
    in-process and hands out connections whose foreign-key checking is
    verified on before first use.

Architecture:
    ::

        ┌──────────────────────── ConnectionManager ────────────────────────┐
        │                                                                   │
        │  AccessGate ──(READ / WRITE / EXCLUSIVE, timeout)──┐              │
        │                                                    ▼              │
        │  Engine ── connect: isolation_level=None, PRAGMA foreign_keys=ON, │
        │         │           busy_timeout, journal_mode                    │
        │         └─ begin:   BEGIN DEFERRED | IMMEDIATE | EXCLUSIVE        │
        │                                                    │              │
        │                                         ConnectionHandle          │
        │                              (execute / begin / commit / FK pragma)│
        └───────────────────────────────────────────────────────────────────┘

    pysqlite's implicit transaction handling is disabled so SQLAlchemy
    emits ``BEGIN`` itself; DDL then participates in transactions and a
    failed rewrite rolls back completely.

Usage
-----
::

    from schemaspine.core.connection import ConnectionManager, AccessMode

    manager = ConnectionManager("sqlite:///app.db", lock_timeout=5.0)

    with manager.lease(AccessMode.READ) as handle:
        rows = handle.execute("SELECT * FROM users").all()

    with manager.session() as scope:          # WRITE, commits on exit
        scope.execute("INSERT INTO users (email) VALUES (:e)", {"e": "a@x"})

Tags:
    schemaspine, connection, sqlite, sqlalchemy, locking

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine, Result, make_url
from sqlalchemy.pool import StaticPool

from schemaspine.core.errors import (
    ConfigError,
    IntegrityViolationError,
    LockTimeoutError,
    SchemaSpineError,
    SessionStateError,
)
from schemaspine.core.locks import AccessGate, AccessMode
from schemaspine.core.logging import get_logger

if TYPE_CHECKING:
    from schemaspine.core.session import SessionScope
    from schemaspine.core.settings import SchemaSpineSettings

logger = get_logger(__name__)

_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}

_BEGIN = {
    AccessMode.READ: "DEFERRED",
    AccessMode.WRITE: "IMMEDIATE",
    AccessMode.EXCLUSIVE: "EXCLUSIVE",
}


# ── ConnectionInfo ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConnectionInfo:
    """Metadata about the managed store."""

    url: str
    """The URL the manager was created with."""

    persistent: bool
    """Whether data survives process exit."""

    resolved_path: str | None = None
    """For file-backed stores, the resolved absolute path."""

    def __repr__(self) -> str:
        where = f"path={self.resolved_path!r}" if self.resolved_path else f"url={self.url!r}"
        return f"ConnectionInfo(persistent={self.persistent}, {where})"


def describe_url(url: str) -> ConnectionInfo:
    """Validate a SQLite URL and describe it."""
    try:
        parsed = make_url(url)
    except sa_exc.ArgumentError as exc:
        raise ConfigError(f"Invalid database URL {url!r}", cause=exc) from exc
    if parsed.get_backend_name() != "sqlite":
        raise ConfigError(f"schemaspine manages embedded SQLite stores only, got {url!r}")
    database = parsed.database
    if not database or database == ":memory:" or database.startswith("file::memory:"):
        return ConnectionInfo(url=url, persistent=False)
    return ConnectionInfo(url=url, persistent=True, resolved_path=str(Path(database).resolve()))


# ── Driver error translation ─────────────────────────────────────────────


def is_lock_error(exc: BaseException) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "database is locked" in message or "database table is locked" in message


def translate_driver_error(exc: sa_exc.DBAPIError) -> SchemaSpineError | None:
    """Map a driver error to the schemaspine taxonomy, or ``None`` to propagate as is."""
    if isinstance(exc, sa_exc.OperationalError) and is_lock_error(exc):
        return LockTimeoutError(f"Store is locked by another connection: {exc.orig}", cause=exc)
    if isinstance(exc, sa_exc.IntegrityError):
        return IntegrityViolationError(f"Constraint violated: {exc.orig}", cause=exc)
    return None


# ── Engine factory ───────────────────────────────────────────────────────


def create_store_engine(
    url: str,
    *,
    busy_timeout_ms: int = 5000,
    journal_mode: str = "WAL",
    pool_size: int = 5,
    echo: bool = False,
) -> Engine:
    """Create a SQLAlchemy engine configured for transactional DDL on SQLite.

    Every new DBAPI connection gets ``PRAGMA foreign_keys=ON``, the busy
    timeout and the journal mode.  Transactions are opened by the
    ``begin`` event with the mode stored in the ``schemaspine_begin``
    execution option.
    """
    info = describe_url(url)
    journal_mode = journal_mode.upper()
    if journal_mode not in _JOURNAL_MODES:
        raise ConfigError(f"Unknown SQLite journal mode {journal_mode!r}")

    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if info.persistent:
        Path(info.resolved_path).parent.mkdir(parents=True, exist_ok=True)
        kwargs["pool_size"] = pool_size
    else:
        kwargs["poolclass"] = StaticPool

    engine = create_engine(url, echo=echo, **kwargs)

    @event.listens_for(engine, "connect")
    def _configure_connection(dbapi_connection: Any, _rec: Any) -> None:
        # SQLAlchemy, not pysqlite, decides when transactions begin
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        if info.persistent:
            cursor.execute(f"PRAGMA journal_mode={journal_mode}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin(conn: Connection) -> None:
        mode = conn.get_execution_options().get("schemaspine_begin", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")

    return engine


# ── ConnectionHandle ─────────────────────────────────────────────────────


class ConnectionHandle:
    """A leased connection plus the gate slot that admits it.

    Obtained from :meth:`ConnectionManager.acquire` and returned with
    :meth:`ConnectionManager.release`.  A handle is owned by at most one
    root ``SessionScope`` at a time.
    """

    def __init__(self, manager: ConnectionManager, connection: Connection, mode: AccessMode, slot: AccessMode):
        self.manager = manager
        self.mode = mode
        self._connection = connection
        self._slot = slot
        self._released = False
        self._owner: object | None = None

    def __repr__(self) -> str:
        state = "released" if self._released else "leased"
        return f"ConnectionHandle(mode={self.mode.value}, {state})"

    @property
    def released(self) -> bool:
        return self._released

    @property
    def connection(self) -> Connection:
        """The SQLAlchemy connection; raises once released."""
        if self._released:
            raise SessionStateError("ConnectionHandle used after release")
        return self._connection

    @property
    def in_transaction(self) -> bool:
        return not self._released and self._connection.in_transaction()

    # -- ownership ----------------------------------------------------------

    def claim(self, owner: object) -> None:
        if self._owner is not None and self._owner is not owner:
            raise SessionStateError("ConnectionHandle is already owned by another SessionScope")
        self._owner = owner

    def disown(self, owner: object) -> None:
        if self._owner is owner:
            self._owner = None

    # -- SQL ----------------------------------------------------------------

    def execute(self, statement: Any, params: Mapping[str, Any] | None = None) -> Result[Any]:
        """Execute SQL text or a SQLAlchemy statement.

        Lock contention surfaces as ``LockTimeoutError`` and constraint
        failures as ``IntegrityViolationError``; other driver errors
        propagate unchanged.
        """
        if isinstance(statement, str):
            statement = text(statement)
        try:
            return self.connection.execute(statement, dict(params or {}))
        except sa_exc.DBAPIError as exc:
            translated = translate_driver_error(exc)
            if translated is None:
                raise
            raise translated from exc

    def _driver_execute(self, sql: str) -> Any:
        # Bypasses SQLAlchemy autobegin; PRAGMA foreign_keys is a no-op inside a transaction
        return self.connection.connection.driver_connection.execute(sql)

    def foreign_keys_enforced(self) -> bool:
        row = self._driver_execute("PRAGMA foreign_keys").fetchone()
        return bool(row and row[0])

    def set_foreign_keys(self, enabled: bool) -> None:
        if self.in_transaction:
            raise SessionStateError("Foreign-key enforcement can only change outside a transaction")
        self._driver_execute(f"PRAGMA foreign_keys={'ON' if enabled else 'OFF'}")

    # -- transactions -------------------------------------------------------

    def begin(self) -> None:
        if self.connection.in_transaction():
            raise SessionStateError("ConnectionHandle already has an open transaction")
        try:
            self._connection.begin()
        except sa_exc.DBAPIError as exc:
            translated = translate_driver_error(exc)
            if translated is None:
                raise
            raise translated from exc

    def commit(self) -> None:
        try:
            self.connection.commit()
        except sa_exc.DBAPIError as exc:
            translated = translate_driver_error(exc)
            if translated is None:
                raise
            raise translated from exc

    def rollback(self) -> None:
        self.connection.rollback()


# ── ConnectionManager ────────────────────────────────────────────────────


class ConnectionManager:
    """Pool of store connections behind a read/write/exclusive gate.

    Each manager owns its own gate, so independent managers (one per test)
    never contend with each other in-process.
    """

    def __init__(
        self,
        url: str = "sqlite:///schemaspine.db",
        *,
        lock_timeout: float = 30.0,
        busy_timeout_ms: int = 5000,
        journal_mode: str = "WAL",
        pool_size: int = 5,
        echo: bool = False,
    ):
        self.info = describe_url(url)
        self.url = url
        self.lock_timeout = lock_timeout
        self.engine = create_store_engine(
            url,
            busy_timeout_ms=busy_timeout_ms,
            journal_mode=journal_mode,
            pool_size=pool_size,
            echo=echo,
        )
        # in-memory stores share one connection, so every access is serialised
        self.gate = AccessGate(name=self.info.resolved_path or url, serialize_reads=not self.info.persistent)
        self._local = threading.local()

    @classmethod
    def from_settings(cls, settings: SchemaSpineSettings | None = None) -> ConnectionManager:
        if settings is None:
            from schemaspine.core.settings import get_settings

            settings = get_settings()
        return cls(
            settings.database_url,
            lock_timeout=settings.lock_timeout,
            busy_timeout_ms=settings.busy_timeout_ms,
            journal_mode=settings.journal_mode,
            pool_size=settings.pool_size,
        )

    def __repr__(self) -> str:
        return f"ConnectionManager({self.info!r})"

    def __enter__(self) -> ConnectionManager:
        return self

    def __exit__(self, *args: Any) -> None:
        self.dispose()

    @property
    def sqlite_version(self) -> tuple[int, ...]:
        return tuple(self.engine.dialect.loaded_dbapi.sqlite_version_info)

    # -- acquire / release --------------------------------------------------

    def acquire(self, mode: AccessMode = AccessMode.READ, timeout: float | None = None) -> ConnectionHandle:
        """Lease a connection with foreign-key enforcement on.

        Blocks on the gate for up to ``timeout`` seconds (default
        ``lock_timeout``) and raises ``LockTimeoutError`` after that.
        """
        mode = AccessMode(mode)
        wait = self.lock_timeout if timeout is None else timeout
        slot = self.gate.acquire(mode, wait)
        try:
            connection = self.engine.connect()
        except sa_exc.DBAPIError as exc:
            self.gate.release(slot)
            translated = translate_driver_error(exc)
            if translated is None:
                raise
            raise translated from exc
        except BaseException:
            self.gate.release(slot)
            raise
        connection.execution_options(schemaspine_begin=_BEGIN[mode])

        handle = ConnectionHandle(self, connection, mode, slot)
        try:
            if not handle.foreign_keys_enforced():
                handle.set_foreign_keys(True)
        except BaseException:
            self.release(handle)
            raise
        logger.debug("connection.acquired", mode=mode.value)
        return handle

    def release(self, handle: ConnectionHandle) -> None:
        """Return ``handle`` to the pool; rolls back an open transaction. Idempotent."""
        if handle.released:
            return
        connection = handle._connection
        try:
            if connection.in_transaction():
                connection.rollback()
            if not handle.foreign_keys_enforced():
                handle.set_foreign_keys(True)
        finally:
            handle._released = True
            try:
                connection.close()
            finally:
                self.gate.release(handle._slot)
                logger.debug("connection.released", mode=handle.mode.value)

    @contextmanager
    def lease(self, mode: AccessMode = AccessMode.READ, timeout: float | None = None) -> Iterator[ConnectionHandle]:
        handle = self.acquire(mode, timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    @contextmanager
    def exclusive_section(self, timeout: float | None = None) -> Iterator[None]:
        """Hold the gate exclusively without leasing a connection.

        Scopes opened by the same thread inside the section re-enter the
        gate; every other thread waits until the section ends.
        """
        wait = self.lock_timeout if timeout is None else timeout
        with self.gate.hold(AccessMode.EXCLUSIVE, wait):
            yield

    def session(
        self,
        mode: AccessMode = AccessMode.WRITE,
        *,
        enforce_foreign_keys: bool = True,
        timeout: float | None = None,
    ) -> SessionScope:
        from schemaspine.core.session import SessionScope

        return SessionScope(self, mode, enforce_foreign_keys=enforce_foreign_keys, timeout=timeout)

    # -- thread-local scope tracking ---------------------------------------

    def _scopes(self) -> list[Any]:
        scopes = getattr(self._local, "scopes", None)
        if scopes is None:
            scopes = self._local.scopes = []
        return scopes

    def active_scope(self) -> SessionScope | None:
        """Innermost active scope opened by the current thread, if any."""
        scopes = self._scopes()
        return scopes[-1] if scopes else None

    def _push_scope(self, scope: SessionScope) -> None:
        self._scopes().append(scope)

    def _pop_scope(self, scope: SessionScope) -> None:
        scopes = self._scopes()
        if scopes and scopes[-1] is scope:
            scopes.pop()
        elif scope in scopes:
            scopes.remove(scope)

    def dispose(self) -> None:
        self.engine.dispose()


__all__ = [
    "AccessMode",
    "ConnectionInfo",
    "ConnectionHandle",
    "ConnectionManager",
    "create_store_engine",
    "describe_url",
    "is_lock_error",
    "translate_driver_error",
]
