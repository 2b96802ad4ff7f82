"""Tests for ConnectionManager and ConnectionHandle."""

from __future__ import annotations

from contextlib import contextmanager

import pytest
from sqlalchemy import exc as sa_exc

from schemaspine.core.connection import (
    ConnectionManager,
    create_store_engine,
    describe_url,
    is_lock_error,
    translate_driver_error,
)
from schemaspine.core.errors import ConfigError, IntegrityViolationError, LockTimeoutError, SessionStateError
from schemaspine.core.locks import AccessMode
from schemaspine.core.settings import SchemaSpineSettings
from tests._support.concurrency import held_in_thread, hold_write


class TestDescribeUrl:
    """Test URL validation and classification."""

    def test_file_store(self, tmp_path):
        """File URLs are persistent and resolve to an absolute path."""
        info = describe_url(f"sqlite:///{tmp_path / 'a.db'}")
        assert info.persistent is True
        assert info.resolved_path == str((tmp_path / "a.db").resolve())

    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_memory_store(self, url):
        """In-memory URLs have no path."""
        info = describe_url(url)
        assert info.persistent is False
        assert info.resolved_path is None

    def test_rejects_other_backends(self):
        """Only sqlite URLs are accepted."""
        with pytest.raises(ConfigError):
            describe_url("postgresql://localhost/app")

    def test_rejects_garbage(self):
        """Unparseable URLs raise ConfigError."""
        with pytest.raises(ConfigError):
            describe_url("not a url")


class TestEngine:
    """Test engine construction."""

    def test_unknown_journal_mode(self, db_url):
        """An unknown journal mode is a configuration error."""
        with pytest.raises(ConfigError):
            create_store_engine(db_url, journal_mode="SIDEWAYS")

    def test_file_store_uses_wal(self, manager):
        """File stores default to WAL."""
        with manager.lease() as handle:
            assert handle.execute("PRAGMA journal_mode").scalar_one().lower() == "wal"

    def test_creates_parent_directory(self, tmp_path):
        """Missing parent directories are created on first connect."""
        url = f"sqlite:///{tmp_path / 'nested' / 'dir' / 'store.db'}"
        with ConnectionManager(url) as mgr:
            with mgr.lease() as handle:
                handle.execute("SELECT 1")
        assert (tmp_path / "nested" / "dir").is_dir()


class TestAcquire:
    """Test acquire and release."""

    def test_foreign_keys_enforced_on_acquire(self, manager):
        """Every leased connection enforces foreign keys."""
        handle = manager.acquire()
        try:
            assert handle.foreign_keys_enforced()
        finally:
            manager.release(handle)

    def test_foreign_keys_restored_on_release(self, manager):
        """Turning enforcement off does not leak to the next lease."""
        handle = manager.acquire(AccessMode.WRITE)
        handle.set_foreign_keys(False)
        assert not handle.foreign_keys_enforced()
        manager.release(handle)

        with manager.lease(AccessMode.WRITE) as again:
            assert again.foreign_keys_enforced()

    def test_release_is_idempotent(self, manager):
        """Releasing twice frees the gate once."""
        handle = manager.acquire()
        manager.release(handle)
        manager.release(handle)
        assert handle.released
        assert manager.gate.held_mode() is None

    def test_handle_unusable_after_release(self, manager):
        """A released handle refuses statements."""
        handle = manager.acquire()
        manager.release(handle)
        with pytest.raises(SessionStateError):
            handle.execute("SELECT 1")

    def test_release_rolls_back_open_transaction(self, manager):
        """Uncommitted work is discarded on release."""
        with manager.session() as scope:
            scope.execute("CREATE TABLE t (x INTEGER)")

        handle = manager.acquire(AccessMode.WRITE)
        handle.begin()
        handle.execute("INSERT INTO t VALUES (1)")
        manager.release(handle)

        with manager.lease() as reader:
            assert reader.execute("SELECT COUNT(*) FROM t").scalar_one() == 0

    def test_cannot_toggle_foreign_keys_inside_transaction(self, manager):
        """PRAGMA foreign_keys cannot change mid-transaction."""
        with manager.lease(AccessMode.WRITE) as handle:
            handle.begin()
            with pytest.raises(SessionStateError):
                handle.set_foreign_keys(False)
            handle.rollback()

    def test_sqlite_version(self, manager):
        """The library version is a three-part tuple."""
        version = manager.sqlite_version
        assert len(version) == 3
        assert version >= (3, 0, 0)

    def test_from_settings(self, db_url):
        """Settings supply the URL and lock timeout."""
        settings = SchemaSpineSettings(database_url=db_url, lock_timeout=1.5)
        with ConnectionManager.from_settings(settings) as mgr:
            assert mgr.lock_timeout == 1.5
            assert mgr.info.persistent


class TestSerialization:
    """Test concurrent access to one store."""

    def test_second_writer_times_out(self, manager):
        """A second writer waits and then raises LockTimeoutError."""
        with held_in_thread(hold_write(manager)):
            with pytest.raises(LockTimeoutError):
                manager.acquire(AccessMode.WRITE, timeout=0.1)

    def test_reader_concurrent_with_writer(self, manager):
        """Readers run beside a writer and see committed data only."""
        with manager.session() as scope:
            scope.execute("CREATE TABLE t (x INTEGER)")
            scope.execute("INSERT INTO t VALUES (1)")

        @contextmanager
        def uncommitted_writer():
            with manager.session(AccessMode.WRITE) as scope:
                scope.execute("INSERT INTO t VALUES (2)")
                yield

        with held_in_thread(uncommitted_writer):
            with manager.lease(AccessMode.READ, timeout=0.5) as reader:
                # only committed rows are visible
                assert reader.execute("SELECT COUNT(*) FROM t").scalar_one() == 1

    def test_readers_wait_behind_exclusive_section(self, manager):
        """An exclusive section blocks readers."""
        with held_in_thread(lambda: manager.exclusive_section()):
            with pytest.raises(LockTimeoutError):
                manager.acquire(AccessMode.READ, timeout=0.1)

    def test_exclusive_section_reentered_by_owner(self, manager):
        """The owning thread can lease inside its exclusive section."""
        with manager.exclusive_section(timeout=0.1):
            with manager.lease(AccessMode.WRITE, timeout=0) as handle:
                handle.execute("SELECT 1")


class TestMemoryStore:
    """Test in-memory stores."""

    def test_data_shared_between_scopes(self):
        """All scopes share one in-memory database."""
        with ConnectionManager("sqlite://") as mgr:
            assert mgr.gate.serialize_reads
            with mgr.session() as scope:
                scope.execute("CREATE TABLE t (x INTEGER)")
                scope.execute("INSERT INTO t VALUES (42)")
            with mgr.session(AccessMode.READ) as scope:
                assert scope.execute("SELECT x FROM t").scalar_one() == 42


class TestDriverErrors:
    """Test driver error translation."""

    def test_is_lock_error(self):
        """Only busy or locked messages count as lock errors."""
        assert is_lock_error(Exception("database is locked"))
        assert not is_lock_error(Exception("no such table: t"))

    def test_lock_error_translates_to_timeout(self):
        """Locked errors become LockTimeoutError."""
        exc = sa_exc.OperationalError("BEGIN", {}, Exception("database is locked"))
        assert isinstance(translate_driver_error(exc), LockTimeoutError)

    def test_other_operational_errors_pass_through(self):
        """Other operational errors are not translated."""
        exc = sa_exc.OperationalError("SELECT", {}, Exception("no such table: t"))
        assert translate_driver_error(exc) is None

    def test_constraint_failure_surfaces_as_integrity_violation(self, manager):
        """Constraint failures become IntegrityViolationError."""
        with manager.session() as scope:
            scope.execute("CREATE TABLE t (x INTEGER UNIQUE)")
            scope.execute("INSERT INTO t VALUES (1)")
        with pytest.raises(IntegrityViolationError):
            with manager.session() as scope:
                scope.execute("INSERT INTO t VALUES (1)")
