"""Tests for BatchTableRewriter shadow-table rebuilds."""

from __future__ import annotations

import pytest

from schemaspine.core.ddl import render_create_table
from schemaspine.core.errors import (
    IntegrityViolationError,
    NonNullableWithoutDefaultError,
    UnsupportedOperationError,
)
from schemaspine.core.locks import AccessMode
from schemaspine.core.migrations.introspect import SHADOW_PREFIX, SchemaIntrospector
from schemaspine.core.migrations.operations import (
    AddColumn,
    AddForeignKey,
    AlterColumnType,
    DropColumn,
    RenameColumn,
)
from schemaspine.core.migrations.rewriter import BatchTableRewriter
from schemaspine.core.schema import ColumnSpec, ForeignKeySpec, IndexSpec
from tests._support.concurrency import fetch_rows

PHONE = ColumnSpec(name="phone", type="TEXT")


@pytest.fixture
def rewriter(manager) -> BatchTableRewriter:
    return BatchTableRewriter(manager)


@pytest.fixture
def seeded(manager, users_table):
    with manager.session() as scope:
        scope.execute(render_create_table(users_table))
        scope.execute("CREATE INDEX ix_users_email_id ON users (email, id)")
        scope.execute("INSERT INTO users (id, email) VALUES (1, 'a@example.com'), (2, 'b@example.com')")
    return manager


@pytest.fixture
def with_subscriptions(seeded):
    with seeded.session() as scope:
        scope.execute("CREATE TABLE subscriptions (id INTEGER PRIMARY KEY, email TEXT REFERENCES users (email))")
        scope.execute("INSERT INTO subscriptions (id, email) VALUES (10, 'a@example.com')")
    return seeded


def reflect(manager, table):
    with manager.session(AccessMode.READ) as scope:
        return SchemaIntrospector().reflect_table(scope, table)


def table_names(manager) -> list[str]:
    return [r[0] for r in fetch_rows(manager, "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name")]


class TestRewrite:
    """Test shadow-table rebuilds of one table."""

    def test_add_then_drop_preserves_rows(self, seeded, rewriter):
        """Adding then dropping a column leaves the rows as they were."""
        before = fetch_rows(seeded, "SELECT id, email FROM users ORDER BY id")

        result = rewriter.rewrite(AddColumn(table="users", column=PHONE))
        assert result.rows_copied == 2
        assert reflect(seeded, "users").column_names == ["id", "email", "phone"]
        assert fetch_rows(seeded, "SELECT id, email, phone FROM users ORDER BY id") == [
            (1, "a@example.com", None),
            (2, "b@example.com", None),
        ]

        rewriter.rewrite(DropColumn(table="users", column="phone", restore=PHONE))
        assert fetch_rows(seeded, "SELECT * FROM users ORDER BY id") == before

    def test_no_shadow_table_left_behind(self, seeded, rewriter):
        rewriter.rewrite(AddColumn(table="users", column=PHONE))
        assert not [name for name in table_names(seeded) if name.startswith(SHADOW_PREFIX)]

    def test_indexes_recreated(self, seeded, rewriter):
        """Tracked indexes are recreated on the rebuilt table."""
        rewriter.rewrite(AddColumn(table="users", column=PHONE))
        assert reflect(seeded, "users").index("ix_users_email_id") == IndexSpec(
            name="ix_users_email_id", columns=("email", "id")
        )

    def test_rename_copies_data_into_new_name(self, seeded, rewriter):
        rewriter.rewrite(RenameColumn(table="users", old="email", new="mail"))
        users = reflect(seeded, "users")
        assert users.column("mail").unique
        assert users.index("ix_users_email_id").columns == ("mail", "id")
        assert fetch_rows(seeded, "SELECT mail FROM users ORDER BY id") == [("a@example.com",), ("b@example.com",)]

    def test_alter_type_keeps_values(self, seeded, rewriter):
        """Changing a column type copies every value."""
        wider = ColumnSpec(name="email", type="VARCHAR(320)", nullable=False, unique=True)
        rewriter.rewrite(AlterColumnType(table="users", column=wider))
        assert reflect(seeded, "users").column("email") == wider
        assert len(fetch_rows(seeded, "SELECT * FROM users")) == 2


class TestReferencingTables:
    """Test tables whose foreign keys point at the rebuilt table."""

    def test_child_foreign_key_follows_rename(self, with_subscriptions, rewriter):
        """A child FK on a renamed column is rebuilt to the new name."""
        result = rewriter.rewrite(RenameColumn(table="users", old="email", new="mail"))

        assert result.rebuilt_children == ("subscriptions",)
        subscriptions = reflect(with_subscriptions, "subscriptions")
        assert subscriptions.foreign_keys == (
            ForeignKeySpec(columns=("email",), referred_table="users", referred_columns=("mail",)),
        )
        assert fetch_rows(with_subscriptions, "SELECT id, email FROM subscriptions") == [(10, "a@example.com")]

    def test_dropping_referenced_column_is_refused(self, with_subscriptions, rewriter):
        with with_subscriptions.session() as scope:
            scope.execute("DROP INDEX ix_users_email_id")
        with pytest.raises(IntegrityViolationError) as exc_info:
            rewriter.rewrite(DropColumn(table="users", column="email"))
        assert exc_info.value.context.table == "subscriptions"
        assert reflect(with_subscriptions, "users").column("email") is not None

    def test_composite_foreign_key_is_unsupported(self, manager, rewriter):
        """Composite FKs on a renamed column are refused before any write."""
        with manager.session() as scope:
            scope.execute("CREATE TABLE pairs (a INTEGER, b INTEGER, UNIQUE (a, b))")
            scope.execute(
                "CREATE TABLE links (x INTEGER, y INTEGER, FOREIGN KEY (x, y) REFERENCES pairs (a, b))"
            )
        before = reflect(manager, "pairs")

        with pytest.raises(UnsupportedOperationError, match="Composite foreign key"):
            rewriter.rewrite(RenameColumn(table="pairs", old="a", new="a2"))
        assert reflect(manager, "pairs") == before


class TestRefusals:
    """Test rewrites refused before or rolled back after writing."""

    def test_not_null_without_default(self, seeded, rewriter):
        with pytest.raises(NonNullableWithoutDefaultError):
            rewriter.rewrite(AddColumn(table="users", column=ColumnSpec(name="code", type="TEXT", nullable=False)))
        assert reflect(seeded, "users").column("code") is None

    def test_not_null_alter_over_null_rows_rolls_back(self, seeded, rewriter):
        """A NOT NULL change over NULL rows leaves the table as it was."""
        rewriter.rewrite(AddColumn(table="users", column=PHONE))
        required = ColumnSpec(name="phone", type="TEXT", nullable=False)

        with pytest.raises(IntegrityViolationError):
            rewriter.rewrite(AlterColumnType(table="users", column=required, existing=PHONE))

        assert reflect(seeded, "users").column("phone") == PHONE
        assert not [name for name in table_names(seeded) if name.startswith(SHADOW_PREFIX)]
        assert len(fetch_rows(seeded, "SELECT * FROM users")) == 2

    def test_foreign_key_over_orphans(self, seeded, rewriter):
        """Adding an FK over orphan rows reports the violations."""
        with seeded.session() as scope:
            scope.execute("CREATE TABLE posts (id INTEGER PRIMARY KEY, user_id INTEGER)")
            scope.execute("INSERT INTO posts (id, user_id) VALUES (1, 1), (2, 99)")
        fk = ForeignKeySpec(columns=("user_id",), referred_table="users", referred_columns=("id",))

        with pytest.raises(IntegrityViolationError) as exc_info:
            rewriter.rewrite(AddForeignKey(table="posts", foreign_key=fk))
        assert exc_info.value.violations[0][0] == "posts"
        assert reflect(seeded, "posts").foreign_keys == ()

    def test_missing_table(self, manager, rewriter):
        with pytest.raises(UnsupportedOperationError):
            rewriter.rewrite(AddColumn(table="ghosts", column=PHONE))


def catalog(manager, table) -> set[tuple[str, str]]:
    return set(
        fetch_rows(
            manager,
            f"SELECT type, name FROM sqlite_master WHERE tbl_name = '{table}' AND type IN ('index', 'trigger') "
            "AND sql IS NOT NULL",
        )
    )


@pytest.fixture
def audited(manager):
    """notes with an expression index, a partial index and an insert trigger."""
    with manager.session() as scope:
        scope.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY, title TEXT)")
        scope.execute("CREATE TABLE audit (note_id INTEGER)")
        scope.execute("CREATE INDEX ix_notes_lower_title ON notes (lower(title))")
        scope.execute("CREATE INDEX ix_notes_recent ON notes (id) WHERE id > 100")
        scope.execute(
            "CREATE TRIGGER trg_notes_audit AFTER INSERT ON notes "
            "BEGIN INSERT INTO audit (note_id) VALUES (NEW.id); END"
        )
        scope.execute("INSERT INTO notes (id, title) VALUES (1, 'first')")
    return manager


@pytest.mark.filterwarnings("ignore::schemaspine.core.errors.SchemaDriftWarning")
class TestStoredObjects:
    """Objects the snapshot does not model survive a rebuild or block it."""

    def test_triggers_and_untracked_indexes_are_replayed(self, audited, rewriter):
        before = catalog(audited, "notes")

        rewriter.rewrite(AddColumn(table="notes", column=ColumnSpec(name="body", type="TEXT")))

        assert catalog(audited, "notes") == before
        with audited.session() as scope:
            scope.execute("INSERT INTO notes (id, title) VALUES (2, 'second')")
        assert fetch_rows(audited, "SELECT note_id FROM audit ORDER BY note_id") == [(1,), (2,)]

    def test_expression_index_on_renamed_column_blocks_rewrite(self, audited, rewriter):
        with pytest.raises(UnsupportedOperationError, match="ix_notes_lower_title"):
            rewriter.rewrite(RenameColumn(table="notes", old="title", new="heading"))
        assert reflect(audited, "notes").column("title") is not None
        assert ("index", "ix_notes_lower_title") in catalog(audited, "notes")

    def test_trigger_on_dropped_column_blocks_rewrite(self, manager, rewriter):
        with manager.session() as scope:
            scope.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, price INTEGER, label TEXT)")
            scope.execute(
                "CREATE TRIGGER trg_items_price AFTER UPDATE OF price ON items "
                "BEGIN UPDATE items SET label = 'repriced' WHERE id = NEW.id; END"
            )
        with pytest.raises(UnsupportedOperationError, match="trg_items_price"):
            rewriter.rewrite(DropColumn(table="items", column="price", restore=ColumnSpec(name="price", type="INTEGER")))
        assert reflect(manager, "items").column("price") is not None

    @pytest.mark.parametrize(
        "ddl, feature",
        [
            ("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT CHECK (length(name) < 5))", "CHECK"),
            ("CREATE TABLE t (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT)", "AUTOINCREMENT"),
            ("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT COLLATE NOCASE)", "COLLATE"),
            (
                "CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT, shout TEXT GENERATED ALWAYS AS (upper(name)))",
                "generated",
            ),
            ("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT) WITHOUT ROWID", "WITHOUT ROWID"),
        ],
    )
    def test_unmodelled_table_clause_is_refused(self, manager, rewriter, ddl, feature):
        """Nothing is written when the table definition cannot be reproduced."""
        with manager.session() as scope:
            scope.execute(ddl)
            scope.execute("INSERT INTO t (id, name) VALUES (1, 'abc')")
        definition = fetch_rows(manager, "SELECT sql FROM sqlite_master WHERE name = 't'")

        with pytest.raises(UnsupportedOperationError, match=feature):
            rewriter.rewrite(AddColumn(table="t", column=ColumnSpec(name="extra", type="TEXT")))

        assert fetch_rows(manager, "SELECT sql FROM sqlite_master WHERE name = 't'") == definition
        assert fetch_rows(manager, "SELECT id, name FROM t") == [(1, "abc")]

    def test_check_constraint_keeps_its_index_and_trigger(self, manager, rewriter):
        with manager.session() as scope:
            scope.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT CHECK (length(name) < 5), n INT)")
            scope.execute("CREATE INDEX ix_lower ON t (lower(name))")
            scope.execute("CREATE TRIGGER trg AFTER INSERT ON t BEGIN UPDATE t SET n = 1 WHERE id = NEW.id; END")

        with pytest.raises(UnsupportedOperationError):
            rewriter.rewrite(AddColumn(table="t", column=ColumnSpec(name="extra", type="TEXT")))

        assert catalog(manager, "t") == {("index", "ix_lower"), ("trigger", "trg")}

    def test_keywords_inside_literals_are_ignored(self, manager, rewriter):
        with manager.session() as scope:
            scope.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, note TEXT DEFAULT 'check (later)')")

        rewriter.rewrite(AddColumn(table="t", column=ColumnSpec(name="extra", type="TEXT")))
        assert reflect(manager, "t").column_names == ["id", "note", "extra"]
