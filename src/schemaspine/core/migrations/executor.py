"""Operation execution: one exhaustive dispatch per store.

``OperationExecutor.execute`` matches every member of the operation
union.  Operations SQLite can express directly run as DDL on the
caller's scope; the rest go through ``BatchTableRewriter``, which joins
the same scope.  Which column ALTERs run in place is decided by
``StoreCapabilities``, derived from the SQLite library version (or forced
off with ``recreate="always"``).

Structural problems are found before any DDL is emitted: every
operation is first replayed against the reflected table.

Batch operations open a nested EXCLUSIVE scope with foreign keys off, so
the caller's scope must be EXCLUSIVE with ``enforce_foreign_keys=False``
(``MigrationRunner`` opens one per revision).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

from schemaspine.core.ddl import (
    is_constant_default,
    render_add_column,
    render_create_index,
    render_create_table,
    render_drop_column,
    render_drop_index,
    render_drop_table,
    render_rename_column,
)
from schemaspine.core.errors import NonNullableWithoutDefaultError, UnsupportedOperationError
from schemaspine.core.logging import get_logger
from schemaspine.core.migrations.introspect import SchemaIntrospector
from schemaspine.core.migrations.operations import (
    AddColumn,
    AddForeignKey,
    AlterColumnType,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropForeignKey,
    DropIndex,
    DropTable,
    Operation,
    RenameColumn,
)
from schemaspine.core.migrations.rewriter import BatchTableRewriter
from schemaspine.core.schema import ColumnSpec, SchemaSnapshot
from schemaspine.core.session import SessionScope

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoreCapabilities:
    """Column ALTERs the store can run in place.

    Type, nullability, default and constraint changes are never in place
    on SQLite and always use the rewriter.
    """

    add_column: bool = True
    drop_column: bool = True
    rename_column: bool = True

    @classmethod
    def for_sqlite_version(cls, version: tuple[int, ...]) -> StoreCapabilities:
        return cls(
            add_column=True,
            drop_column=tuple(version) >= (3, 35, 0),
            rename_column=tuple(version) >= (3, 26, 0),
        )

    @classmethod
    def batch_only(cls) -> StoreCapabilities:
        return cls(add_column=False, drop_column=False, rename_column=False)


class OperationExecutor:
    """Applies operations to the store through one ``SessionScope``."""

    def __init__(
        self,
        scope: SessionScope,
        capabilities: StoreCapabilities | None = None,
        *,
        introspector: SchemaIntrospector | None = None,
        rewriter: BatchTableRewriter | None = None,
    ):
        self.scope = scope
        self.capabilities = capabilities or StoreCapabilities.for_sqlite_version(scope.manager.sqlite_version)
        self.introspector = introspector or SchemaIntrospector()
        self.rewriter = rewriter or BatchTableRewriter(scope.manager, self.introspector)

    def execute(self, operation: Operation) -> str:
        """Apply ``operation``; return the strategy used (``in_place`` or ``batch``)."""
        strategy = "in_place"
        match operation:
            case CreateTable(table=snapshot):
                self._require_absent(operation, snapshot.name)
                self.scope.execute(render_create_table(snapshot))
                for index in snapshot.indexes:
                    self.scope.execute(render_create_index(snapshot.name, index))

            case DropTable(name=name):
                self._require_table(operation, name)
                self.scope.execute(render_drop_table(name))

            case AddColumn(table=table, column=column):
                if not column.nullable and column.default is None:
                    raise NonNullableWithoutDefaultError(table, column.name).with_context(
                        operation=operation.describe()
                    )
                self._check(operation)
                if self._add_in_place(column):
                    self.scope.execute(render_add_column(table, column))
                else:
                    strategy = self._batch(operation)

            case DropColumn(table=table, column=column):
                current = self._check(operation)
                if self._drop_in_place(current, column):
                    self.scope.execute(render_drop_column(table, column))
                else:
                    strategy = self._batch(operation)

            case RenameColumn(table=table, old=old, new=new):
                self._check(operation)
                if self.capabilities.rename_column:
                    self.scope.execute(render_rename_column(table, old, new))
                else:
                    strategy = self._batch(operation)

            case AlterColumnType() | AddForeignKey() | DropForeignKey():
                self._check(operation)
                strategy = self._batch(operation)

            case CreateIndex(table=table, index=index):
                self._check(operation)
                self.scope.execute(render_create_index(table, index))

            case DropIndex(name=name):
                self._check(operation)
                self.scope.execute(render_drop_index(name))

            case _:
                assert_never(operation)

        logger.info("migration.operation_applied", operation=operation.describe(), strategy=strategy)
        return strategy

    # ── decisions ────────────────────────────────────────────────────────

    def _add_in_place(self, column: ColumnSpec) -> bool:
        # ADD COLUMN cannot add UNIQUE columns or non-constant defaults
        return self.capabilities.add_column and not column.unique and is_constant_default(column.default)

    def _drop_in_place(self, current: SchemaSnapshot, column: str) -> bool:
        if not self.capabilities.drop_column:
            return False
        spec = current.column(column)
        if spec is None or spec.unique:
            return False
        for _, fk in self.introspector.referencing_foreign_keys(self.scope, current.name):
            if column in fk.referred_columns:
                return False
        return not any(column in fk.referred_columns for fk in current.foreign_keys if fk.referred_table == current.name)

    # ── helpers ──────────────────────────────────────────────────────────

    def _batch(self, operation: Operation) -> str:
        self.rewriter.rewrite(operation)
        return "batch"

    def _require_absent(self, operation: Operation, name: str) -> None:
        if self.introspector.reflect_table(self.scope, name) is not None:
            raise UnsupportedOperationError(f"Table {name} already exists").with_context(
                operation=operation.describe(), table=name
            )

    def _require_table(self, operation: Operation, name: str) -> SchemaSnapshot:
        current = self.introspector.reflect_table(self.scope, name)
        if current is None:
            raise UnsupportedOperationError(f"Table {name} does not exist").with_context(
                operation=operation.describe(), table=name
            )
        return current

    def _check(self, operation: Operation) -> SchemaSnapshot:
        """Reflect the table and replay ``operation`` on it; raises before any write."""
        current = self._require_table(operation, operation.table_name)
        operation.apply_to({current.name: current})
        return current


__all__ = ["StoreCapabilities", "OperationExecutor"]
