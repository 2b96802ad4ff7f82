"""Transactional session scopes.

Manifesto:
    Helpers compose.  A repository function that opens its own scope must
    be callable from inside a caller's scope without committing the
    caller's half-finished work.  ``SessionScope`` therefore joins an
    already-active scope on the same thread instead of starting a second
    transaction, and only the outermost (root) scope ever commits.

Lifecycle:
    ::

        root  __enter__ : acquire handle (gate + pool) → [FK off] → BEGIN
        nested __enter__: reuse root handle; mode and FK policy checked
        nested __exit__ : error → root marked rollback-only
        root  __exit__  : COMMIT | ROLLBACK → release handle (FK back on)

    A root that exits normally after a nested failure rolls back and
    raises ``SessionStateError``; the nested error was already raised to
    whoever caught it, and committing the remainder would persist a
    partial unit of work.

Examples:
    >>> with manager.session() as outer:
    ...     outer.execute("INSERT INTO users (email) VALUES ('a@x')")
    ...     with manager.session() as inner:       # same transaction
    ...         inner.execute("INSERT INTO users (email) VALUES ('b@x')")
    ... # one COMMIT here

    ORM code gets a session joined to the scope's transaction:

    >>> with manager.session() as scope:
    ...     scope.orm_session().add(User(email="c@x"))

Tags:
    schemaspine, session, transaction, sqlalchemy, orm

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from types import TracebackType
from typing import Any

from sqlalchemy.engine import Connection, Result
from sqlalchemy.orm import Session

from schemaspine.core.connection import ConnectionHandle, ConnectionManager
from schemaspine.core.errors import SessionStateError
from schemaspine.core.locks import AccessMode
from schemaspine.core.logging import get_logger

logger = get_logger(__name__)


class SessionState(str, Enum):
    """Lifecycle of a scope."""

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class StoreSession(Session):
    """ORM session with ``expire_on_commit=False``.

    Prevents lazy-load surprises after the scope commits.
    """

    def __init__(self, bind: Connection | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


class SessionScope:
    """Scoped transaction over a leased ``ConnectionHandle``.

    Args:
        manager: Manager to lease from
        mode: Gate mode for the root scope (default WRITE)
        enforce_foreign_keys: ``False`` suspends FK checking for the
            transaction (batch rewrites); restored on release
        timeout: Gate wait in seconds (default: manager ``lock_timeout``)
    """

    def __init__(
        self,
        manager: ConnectionManager,
        mode: AccessMode = AccessMode.WRITE,
        *,
        enforce_foreign_keys: bool = True,
        timeout: float | None = None,
    ):
        self.manager = manager
        self.mode = AccessMode(mode)
        self.enforce_foreign_keys = enforce_foreign_keys
        self.timeout = timeout
        self.state: SessionState | None = None
        self._root: SessionScope | None = None
        self._handle: ConnectionHandle | None = None
        self._rollback_only = False
        self._orm: StoreSession | None = None
        self._entered = False

    def __repr__(self) -> str:
        state = self.state.value if self.state else "new"
        return f"SessionScope(mode={self.mode.value}, state={state}, root={self.is_root})"

    # ── properties ───────────────────────────────────────────────────────

    @property
    def is_root(self) -> bool:
        return self._root is self

    @property
    def root(self) -> SessionScope:
        if self._root is None:
            raise SessionStateError("SessionScope has not been entered")
        return self._root

    @property
    def rollback_only(self) -> bool:
        return self.root._rollback_only

    @property
    def handle(self) -> ConnectionHandle:
        if self.state is not SessionState.ACTIVE or self._handle is None:
            raise SessionStateError(f"SessionScope is not active (state={self.state})")
        return self._handle

    @property
    def connection(self) -> Connection:
        return self.handle.connection

    @property
    def foreign_keys_enforced(self) -> bool:
        return self.handle.foreign_keys_enforced()

    # ── work ─────────────────────────────────────────────────────────────

    def execute(self, statement: Any, params: Mapping[str, Any] | None = None) -> Result[Any]:
        return self.handle.execute(statement, params)

    def orm_session(self) -> StoreSession:
        """ORM session bound to this scope's connection and transaction.

        The session never commits the scope's transaction; it is flushed
        when the root scope commits.
        """
        connection = self.connection
        root = self.root
        if root._orm is None:
            root._orm = StoreSession(bind=connection)
        return root._orm

    def mark_rollback_only(self) -> None:
        self.root._rollback_only = True

    # ── context manager ──────────────────────────────────────────────────

    def __enter__(self) -> SessionScope:
        if self._entered:
            raise SessionStateError("SessionScope objects are single-use; open a new scope")
        self._entered = True

        parent = self.manager.active_scope()
        if parent is not None:
            root = parent.root
            if root.state is not SessionState.ACTIVE:
                raise SessionStateError("Enclosing SessionScope is no longer active")
            if self.mode.rank > root.mode.rank:
                raise SessionStateError(
                    f"Nested scope requests {self.mode.value} inside a {root.mode.value} scope"
                )
            if not self.enforce_foreign_keys and root.enforce_foreign_keys:
                raise SessionStateError(
                    "Foreign-key enforcement cannot be suspended inside a scope that enforces it"
                )
            self._root = root
            self._handle = root._handle
        else:
            handle = self.manager.acquire(self.mode, self.timeout)
            try:
                handle.claim(self)
                if not self.enforce_foreign_keys:
                    handle.set_foreign_keys(False)
                handle.begin()
            except BaseException:
                self.manager.release(handle)
                raise
            self._root = self
            self._handle = handle

        self.state = SessionState.ACTIVE
        self.manager._push_scope(self)
        logger.debug("session.begin", mode=self.mode.value, nested=not self.is_root)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        self.manager._pop_scope(self)

        if not self.is_root:
            # work is folded into the root transaction
            if exc_type is not None:
                self.root._rollback_only = True
                self.state = SessionState.ROLLED_BACK
            else:
                self.state = SessionState.COMMITTED
            self._handle = None
            return False

        handle = self._handle
        assert handle is not None
        doomed = exc_type is None and self._rollback_only
        try:
            if exc_type is None and not self._rollback_only:
                if self._orm is not None:
                    self._orm.flush()
                handle.commit()
                self.state = SessionState.COMMITTED
                logger.debug("session.commit", mode=self.mode.value)
            else:
                handle.rollback()
                self.state = SessionState.ROLLED_BACK
                logger.debug("session.rollback", mode=self.mode.value, error=exc_type.__name__ if exc_type else None)
        except BaseException:
            self.state = SessionState.ROLLED_BACK
            raise
        finally:
            if self._orm is not None:
                self._orm.close()
                self._orm = None
            handle.disown(self)
            self._handle = None
            self.manager.release(handle)

        if doomed:
            raise SessionStateError("A nested scope failed; the transaction was rolled back")
        return False


__all__ = ["SessionScope", "SessionState", "StoreSession"]
