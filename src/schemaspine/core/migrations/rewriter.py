"""Batch table rewriter: emulate ALTERs SQLite cannot do in place.

SQLite's ``ALTER TABLE`` can add, drop and rename columns under narrow
conditions and cannot change a column's type, nullability or
constraints at all.  Everything else is done by rebuilding the table:

Architecture:
    ::

        EXCLUSIVE SessionScope, PRAGMA foreign_keys=OFF, one transaction
        ─────────────────────────────────────────────────────────────────
        1  reflect table + every FK elsewhere that references it
        2  target = operation.apply_to(current)           (no writes yet)
        3  plan:   new NOT NULL column without default  ──► NonNullableWithoutDefaultError
                   composite FK on renamed/dropped column ──► UnsupportedOperationError
                   single FK on dropped column          ──► IntegrityViolationError
                   CHECK, AUTOINCREMENT, COLLATE, generated
                   column or WITHOUT ROWID in the table ──► UnsupportedOperationError
                   trigger, view or untracked index naming
                   a renamed/dropped column             ──► UnsupportedOperationError
        4  CREATE TABLE _schemaspine_shadow_<table>_<hex>  (target)
        5  INSERT INTO shadow (…) SELECT … FROM table     (name intersection,
                                                            renames new ← old)
           verify row count
        6  DROP TABLE table;  ALTER TABLE shadow RENAME TO table
        7  recreate indexes, then replay the stored SQL of triggers and
           expression or partial indexes; rebuild child tables whose FK
           named a renamed column the same way
        8  PRAGMA foreign_key_check over the whole store ──► IntegrityViolationError

    Any error rolls the transaction back, so the store is either fully
    rewritten or untouched.  When called inside a migration's scope the
    rewrite joins that scope and its transaction.

Manifesto:
    Losing rows silently is the worst possible outcome of a migration.
    The rewriter refuses anything it cannot copy faithfully before the
    first write, and verifies both row counts and referential integrity
    before it lets the transaction commit.

Tags:
    schemaspine, migrations, batch, shadow-table, sqlite

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from sqlalchemy import exc as sa_exc

from schemaspine.core.connection import ConnectionManager
from schemaspine.core.ddl import (
    quote,
    quote_list,
    render_create_index,
    render_create_table,
    render_drop_table,
    render_rename_table,
)
from schemaspine.core.errors import (
    IntegrityViolationError,
    NonNullableWithoutDefaultError,
    UnsupportedOperationError,
)
from schemaspine.core.locks import AccessMode
from schemaspine.core.logging import get_logger
from schemaspine.core.migrations.introspect import SHADOW_PREFIX, CatalogEntry, SchemaIntrospector
from schemaspine.core.migrations.operations import DropColumn, Operation, RenameColumn
from schemaspine.core.schema import ForeignKeySpec, SchemaSnapshot
from schemaspine.core.session import SessionScope

logger = get_logger(__name__)

# Table-definition clauses a snapshot cannot carry into the shadow table
_UNREPRODUCIBLE = (
    ("CHECK constraint", re.compile(r"\bCHECK\s*\(", re.IGNORECASE)),
    ("AUTOINCREMENT key", re.compile(r"\bAUTOINCREMENT\b", re.IGNORECASE)),
    ("generated column", re.compile(r"\bGENERATED\s+ALWAYS\b|\bAS\s*\(", re.IGNORECASE)),
    ("COLLATE clause", re.compile(r"\bCOLLATE\b", re.IGNORECASE)),
    ("WITHOUT ROWID clause", re.compile(r"\bWITHOUT\s+ROWID\b", re.IGNORECASE)),
)
_QUOTED = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|`(?:[^`]|``)*`|\[[^\]]*\]")


def _mentions(sql: str, identifier: str) -> bool:
    return re.search(rf"(?<![\w$]){re.escape(identifier)}(?![\w$])", sql, re.IGNORECASE) is not None


@dataclass(frozen=True)
class RewriteResult:
    """Outcome of one batch rewrite."""

    table: str
    rows_copied: int
    rebuilt_children: tuple[str, ...] = ()


def check_foreign_keys(scope: SessionScope) -> None:
    """Raise ``IntegrityViolationError`` if any FK in the store is violated."""
    try:
        rows = scope.execute("PRAGMA foreign_key_check").all()
    except sa_exc.OperationalError as exc:
        # "foreign key mismatch": an FK points at columns that are not a key
        raise IntegrityViolationError(f"Foreign key check failed: {exc.orig}", cause=exc) from exc
    if rows:
        violations = [tuple(r) for r in rows]
        tables = sorted({str(v[0]) for v in violations})
        raise IntegrityViolationError(
            f"{len(violations)} foreign key violation(s) in {', '.join(tables)}",
            violations=violations,
        )


class BatchTableRewriter:
    """Rebuilds tables through shadow copies."""

    def __init__(self, manager: ConnectionManager, introspector: SchemaIntrospector | None = None):
        self.manager = manager
        self.introspector = introspector or SchemaIntrospector()

    def rewrite(self, operation: Operation) -> RewriteResult:
        """Apply a column/constraint ``operation`` by rebuilding its table."""
        table = operation.table_name
        with self.manager.session(AccessMode.EXCLUSIVE, enforce_foreign_keys=False) as scope:
            current = self.introspector.reflect_table(scope, table)
            if current is None:
                raise UnsupportedOperationError(f"Table {table} does not exist").with_context(
                    operation=operation.describe(), table=table
                )
            target = operation.apply_to({table: current})[table]
            column_map = self._column_map(operation, current, target)
            preserved = self._preserved_objects(scope, operation, current, self._changed_columns(operation))
            children = [
                (child_current, child_target, self._preserved_objects(scope, operation, child_current))
                for child_current, child_target in self._plan_children(scope, operation, current)
            ]

            rows = self._rebuild(scope, current, target, column_map, preserved)
            for child_current, child_target, child_preserved in children:
                self._rebuild(
                    scope,
                    child_current,
                    child_target,
                    {c.name: c.name for c in child_target.columns},
                    child_preserved,
                )
            check_foreign_keys(scope)

        result = RewriteResult(
            table=table,
            rows_copied=rows,
            rebuilt_children=tuple(c.name for c, _, _ in children),
        )
        logger.info(
            "rewrite.completed",
            table=table,
            operation=operation.describe(),
            rows=rows,
            children=list(result.rebuilt_children),
        )
        return result

    # ── planning (no writes) ─────────────────────────────────────────────

    def _column_map(
        self, operation: Operation, current: SchemaSnapshot, target: SchemaSnapshot
    ) -> dict[str, str | None]:
        """Target column -> source column (``None`` for new columns)."""
        renamed = {operation.new: operation.old} if isinstance(operation, RenameColumn) else {}
        mapping: dict[str, str | None] = {}
        for column in target.columns:
            source = renamed.get(column.name, column.name)
            mapping[column.name] = source if current.column(source) is not None else None
            if mapping[column.name] is None and not column.nullable and column.default is None:
                raise NonNullableWithoutDefaultError(target.name, column.name).with_context(
                    operation=operation.describe()
                )
        if not any(mapping.values()):
            raise UnsupportedOperationError(f"No columns of {target.name} survive the rewrite").with_context(
                operation=operation.describe(), table=target.name
            )
        return mapping

    def _plan_children(
        self, scope: SessionScope, operation: Operation, current: SchemaSnapshot
    ) -> list[tuple[SchemaSnapshot, SchemaSnapshot]]:
        """Child tables to rebuild, as ``(current, target)`` pairs."""
        renamed: dict[str, str] = {}
        dropped: set[str] = set()
        if isinstance(operation, RenameColumn):
            renamed[operation.old] = operation.new
        elif isinstance(operation, DropColumn):
            dropped.add(operation.column)
        if not renamed and not dropped:
            return []

        references = self.introspector.referencing_foreign_keys(scope, current.name)
        references += [(current.name, fk) for fk in current.foreign_keys if fk.referred_table == current.name]

        updated: dict[str, dict[ForeignKeySpec, ForeignKeySpec]] = {}
        for child, fk in references:
            touched = set(fk.referred_columns) & (set(renamed) | dropped)
            if not touched:
                continue
            if fk.is_composite:
                raise UnsupportedOperationError(
                    f"Composite foreign key {child}{fk.describe()} uses {', '.join(sorted(touched))}; "
                    "drop it before changing the column"
                ).with_context(operation=operation.describe(), table=child)
            if touched & dropped:
                raise IntegrityViolationError(
                    f"Foreign key {child}{fk.describe()} references dropped column "
                    f"{current.name}.{fk.referred_columns[0]}"
                ).with_context(operation=operation.describe(), table=child)
            if child == current.name:
                # self-references are renamed by the snapshot itself
                continue
            new_fk = fk.model_copy(update={"referred_columns": (renamed[fk.referred_columns[0]],)})
            updated.setdefault(child, {})[fk] = new_fk

        plans = []
        for child, replacements in updated.items():
            child_current = self.introspector.reflect_table(scope, child)
            if child_current is None:
                continue
            fks = tuple(replacements.get(fk, fk) for fk in child_current.foreign_keys)
            plans.append((child_current, child_current.evolve(foreign_keys=fks)))
        return plans

    @staticmethod
    def _changed_columns(operation: Operation) -> tuple[str, ...]:
        if isinstance(operation, RenameColumn):
            return (operation.old,)
        if isinstance(operation, DropColumn):
            return (operation.column,)
        return ()

    def _preserved_objects(
        self,
        scope: SessionScope,
        operation: Operation,
        current: SchemaSnapshot,
        changed: Sequence[str] = (),
    ) -> list[CatalogEntry]:
        """Triggers and untracked indexes of ``current`` to replay after the rebuild.

        Raises ``UnsupportedOperationError`` for anything the rebuild would
        lose: table clauses the snapshot does not model, and stored
        statements that name a column in ``changed``.
        """
        definition = _QUOTED.sub("''", self.introspector.table_sql(scope, current.name) or "")
        for feature, pattern in _UNREPRODUCIBLE:
            if pattern.search(definition):
                raise UnsupportedOperationError(
                    f"Table {current.name} has a {feature} that a batch rewrite cannot reproduce"
                ).with_context(operation=operation.describe(), table=current.name)

        tracked = {index.name for index in current.indexes}
        preserved = []
        for entry in self.introspector.catalog_entries(scope):
            own = entry.table.lower() == current.name.lower()
            if own and entry.type == "index" and entry.name in tracked:
                continue
            if own or _mentions(entry.sql, current.name):
                used = [c for c in changed if _mentions(entry.sql, c)]
                if used:
                    raise UnsupportedOperationError(
                        f"{entry.type.capitalize()} {entry.name} uses {current.name}.{used[0]}; "
                        "drop it before changing the column"
                    ).with_context(operation=operation.describe(), table=entry.table)
            if own and entry.type in ("index", "trigger"):
                preserved.append(entry)
        return preserved

    # ── rebuild ──────────────────────────────────────────────────────────

    def _rebuild(
        self,
        scope: SessionScope,
        current: SchemaSnapshot,
        target: SchemaSnapshot,
        column_map: Mapping[str, str | None],
        preserved: Sequence[CatalogEntry] = (),
    ) -> int:
        shadow = f"{SHADOW_PREFIX}{target.name}_{uuid.uuid4().hex[:8]}"
        source = quote(current.name)

        scope.execute(render_create_table(target, name=shadow))
        expected = scope.execute(f"SELECT COUNT(*) FROM {source}").scalar_one()

        pairs = [(dest, src) for dest, src in column_map.items() if src is not None]
        scope.execute(
            f"INSERT INTO {quote(shadow)} ({quote_list(d for d, _ in pairs)}) "
            f"SELECT {quote_list(s for _, s in pairs)} FROM {source}"
        )
        copied = scope.execute(f"SELECT COUNT(*) FROM {quote(shadow)}").scalar_one()
        if copied != expected:
            raise IntegrityViolationError(
                f"Rewrite of {current.name} copied {copied} of {expected} rows"
            ).with_context(table=current.name)

        scope.execute(render_drop_table(current.name))
        scope.execute(render_rename_table(shadow, target.name))
        for index in target.indexes:
            scope.execute(render_create_index(target.name, index))
        for entry in preserved:
            # stored statements are replayed verbatim, without bind parameters
            scope.connection.exec_driver_sql(entry.sql)

        logger.info(
            "rewrite.table_rebuilt",
            table=target.name,
            rows=copied,
            shadow=shadow,
            replayed=[entry.name for entry in preserved],
        )
        return copied


__all__ = ["BatchTableRewriter", "RewriteResult", "check_foreign_keys"]
