"""Tests for SessionScope: commit / rollback, nesting, FK policy, ORM."""

from __future__ import annotations

import pytest
from sqlalchemy import Integer, String, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from schemaspine.core.errors import IntegrityViolationError, SessionStateError
from schemaspine.core.locks import AccessMode
from schemaspine.core.session import SessionScope, SessionState
from tests._support.concurrency import fetch_rows


class Base(DeclarativeBase):
    pass


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    body: Mapped[str] = mapped_column(String(200))


@pytest.fixture
def store(manager):
    with manager.session() as scope:
        scope.execute("CREATE TABLE parents (id INTEGER PRIMARY KEY)")
        scope.execute("CREATE TABLE children (id INTEGER PRIMARY KEY, parent_id INTEGER REFERENCES parents(id))")
        scope.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY, body VARCHAR(200))")
    return manager


class TestRootScope:
    """Test the outermost scope's transaction lifecycle."""

    def test_commits_on_normal_exit(self, store):
        """Leaving the block normally commits."""
        with store.session() as scope:
            scope.execute("INSERT INTO parents (id) VALUES (1)")
        assert scope.state is SessionState.COMMITTED
        assert fetch_rows(store, "SELECT id FROM parents") == [(1,)]

    def test_rolls_back_on_error(self, store):
        """An exception rolls everything back."""
        with pytest.raises(RuntimeError):
            with store.session() as scope:
                scope.execute("INSERT INTO parents (id) VALUES (1)")
                raise RuntimeError("boom")
        assert scope.state is SessionState.ROLLED_BACK
        assert fetch_rows(store, "SELECT id FROM parents") == []

    def test_releases_gate_on_every_exit(self, store):
        """The gate and active scope are cleared even on error."""
        with pytest.raises(RuntimeError):
            with store.session():
                raise RuntimeError("boom")
        assert store.gate.held_mode() is None
        assert store.active_scope() is None

    def test_single_use(self, store):
        """A scope cannot be entered twice."""
        scope = store.session()
        with scope:
            pass
        with pytest.raises(SessionStateError):
            with scope:
                pass

    def test_handle_unavailable_after_exit(self, store):
        """A finished scope refuses statements."""
        with store.session() as scope:
            pass
        with pytest.raises(SessionStateError):
            scope.execute("SELECT 1")

    def test_foreign_keys_enforced_by_default(self, store):
        """Orphan rows are rejected unless enforcement is suspended."""
        with pytest.raises(IntegrityViolationError):
            with store.session() as scope:
                assert scope.foreign_keys_enforced
                scope.execute("INSERT INTO children (id, parent_id) VALUES (1, 99)")


class TestNesting:
    """Test scopes opened inside another scope."""

    def test_nested_scope_reuses_handle(self, store):
        """Nested scopes share the root's connection."""
        with store.session() as outer:
            with store.session() as inner:
                assert inner.handle is outer.handle
                assert inner.root is outer
                assert not inner.is_root
                assert store.active_scope() is inner
            assert inner.state is SessionState.COMMITTED
            assert store.active_scope() is outer

    def test_only_root_commits(self, store):
        """Work done in a finished nested scope is undone with the root."""
        with pytest.raises(RuntimeError):
            with store.session() as outer:
                with store.session() as inner:
                    inner.execute("INSERT INTO parents (id) VALUES (1)")
                outer.execute("INSERT INTO parents (id) VALUES (2)")
                raise RuntimeError("boom")
        assert fetch_rows(store, "SELECT id FROM parents") == []

    def test_nested_failure_dooms_root(self, store):
        with pytest.raises(SessionStateError):
            with store.session() as outer:
                outer.execute("INSERT INTO parents (id) VALUES (1)")
                try:
                    with store.session():
                        raise ValueError("inner failure")
                except ValueError:
                    pass
                assert outer.rollback_only
        assert outer.state is SessionState.ROLLED_BACK
        assert fetch_rows(store, "SELECT id FROM parents") == []

    def test_mark_rollback_only(self, store):
        """A scope marked rollback-only refuses to commit."""
        with pytest.raises(SessionStateError):
            with store.session() as scope:
                scope.execute("INSERT INTO parents (id) VALUES (1)")
                scope.mark_rollback_only()
        assert fetch_rows(store, "SELECT id FROM parents") == []

    def test_nested_cannot_request_stronger_mode(self, store):
        """A READ root cannot host a WRITE scope."""
        with store.session(AccessMode.READ):
            with pytest.raises(SessionStateError):
                with store.session(AccessMode.WRITE):
                    pass

    def test_nested_weaker_mode_is_allowed(self, store):
        """A weaker nested mode joins the root."""
        with store.session(AccessMode.EXCLUSIVE) as outer:
            with store.session(AccessMode.READ) as inner:
                assert inner.handle is outer.handle

    def test_nested_cannot_suspend_foreign_keys(self, store):
        """Enforcement cannot be switched off from inside an enforcing root."""
        with store.session():
            with pytest.raises(SessionStateError):
                with store.session(enforce_foreign_keys=False):
                    pass

    def test_nested_inside_suspended_root(self, store):
        """A nested scope inherits a suspended root's setting."""
        with store.session(AccessMode.EXCLUSIVE, enforce_foreign_keys=False):
            with store.session() as inner:
                assert not inner.foreign_keys_enforced


class TestForeignKeySuspension:
    """Test enforce_foreign_keys=False."""

    def test_suspended_for_the_transaction(self, store):
        """Enforcement is off inside the scope and back on afterwards."""
        with store.session(AccessMode.EXCLUSIVE, enforce_foreign_keys=False) as scope:
            assert not scope.foreign_keys_enforced
            scope.execute("INSERT INTO children (id, parent_id) VALUES (1, 99)")
            scope.execute("DELETE FROM children")

        with store.session() as scope:
            assert scope.foreign_keys_enforced


class TestOrmSession:
    """Test the ORM session bound to a scope."""

    def test_orm_writes_commit_with_scope(self, store):
        """ORM changes are flushed and committed with the root."""
        with store.session() as scope:
            scope.orm_session().add(Note(id=1, body="hello"))
        with store.session(AccessMode.READ) as scope:
            note = scope.orm_session().scalars(select(Note)).one()
        # expire_on_commit is off, so attributes survive the scope
        assert note.body == "hello"

    def test_one_orm_session_per_root(self, store):
        """Nested scopes get the root's ORM session."""
        with store.session() as outer:
            with store.session() as inner:
                assert inner.orm_session() is outer.orm_session()

    def test_orm_writes_roll_back_with_scope(self, store):
        """Flushed ORM changes roll back with the root."""
        with pytest.raises(RuntimeError):
            with store.session() as scope:
                orm = scope.orm_session()
                orm.add(Note(id=2, body="lost"))
                orm.flush()
                raise RuntimeError("boom")
        assert fetch_rows(store, "SELECT id FROM notes") == []


def test_repr_reports_state(manager):
    """repr shows the scope state."""
    scope = SessionScope(manager)
    assert "state=new" in repr(scope)
