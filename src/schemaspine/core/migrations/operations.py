"""Schema operations: a closed, serialisable union.

Every change a revision can make is one of the models below,
discriminated by the ``op`` field so revision files round-trip through
pydantic.  Each operation knows three things about itself:

* ``describe()``: a short label used in logs and error context
* ``apply_to(schema)``: the schema it produces, without touching a store
* ``invert()``: the operation that undoes it, or ``IrreversibleOperationError``

Drops carry an optional ``restore`` descriptor and alters an ``existing``
descriptor; without them the inverse cannot be built.  Executing an
operation against a store is the executor's job (``executor.py``), which
dispatches over this union exhaustively.

Tags:
    schemaspine, migrations, operations, pydantic

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from schemaspine.core.errors import IrreversibleOperationError, SchemaChangeError, UnsupportedOperationError
from schemaspine.core.schema import ColumnSpec, ForeignKeySpec, IndexSpec, SchemaSnapshot

SchemaMap = dict[str, SchemaSnapshot]


class _OperationBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def table_name(self) -> str:
        return self.table  # type: ignore[attr-defined]

    def describe(self) -> str:
        raise NotImplementedError

    def invert(self) -> Operation:
        raise NotImplementedError

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        raise NotImplementedError

    def apply_to(self, schema: Mapping[str, SchemaSnapshot]) -> SchemaMap:
        """Return a new schema map with this operation applied."""
        result = dict(schema)
        current = result.get(self.table_name)
        if current is None:
            raise UnsupportedOperationError(f"Table {self.table_name} does not exist").with_context(
                operation=self.describe(), table=self.table_name
            )
        try:
            result[self.table_name] = self._apply(current)
        except SchemaChangeError as exc:
            raise exc.with_context(operation=self.describe(), table=self.table_name)
        return result

    def _irreversible(self, reason: str) -> IrreversibleOperationError:
        return IrreversibleOperationError(f"{self.describe()} cannot be inverted: {reason}").with_context(
            operation=self.describe(), table=self.table_name
        )


# ── tables ───────────────────────────────────────────────────────────────


class CreateTable(_OperationBase):
    op: Literal["create_table"] = "create_table"
    table: SchemaSnapshot

    @property
    def table_name(self) -> str:
        return self.table.name

    def describe(self) -> str:
        return f"CreateTable {self.table.name}"

    def invert(self) -> Operation:
        return DropTable(name=self.table.name, restore=self.table)

    def apply_to(self, schema: Mapping[str, SchemaSnapshot]) -> SchemaMap:
        if self.table.name in schema:
            raise UnsupportedOperationError(f"Table {self.table.name} already exists").with_context(
                operation=self.describe(), table=self.table.name
            )
        return {**schema, self.table.name: self.table}


class DropTable(_OperationBase):
    op: Literal["drop_table"] = "drop_table"
    name: str
    restore: SchemaSnapshot | None = None

    @property
    def table_name(self) -> str:
        return self.name

    def describe(self) -> str:
        return f"DropTable {self.name}"

    def invert(self) -> Operation:
        if self.restore is None:
            raise self._irreversible("no restore snapshot recorded")
        return CreateTable(table=self.restore)

    def apply_to(self, schema: Mapping[str, SchemaSnapshot]) -> SchemaMap:
        if self.name not in schema:
            raise UnsupportedOperationError(f"Table {self.name} does not exist").with_context(
                operation=self.describe(), table=self.name
            )
        return {k: v for k, v in schema.items() if k != self.name}


# ── columns ──────────────────────────────────────────────────────────────


class AddColumn(_OperationBase):
    op: Literal["add_column"] = "add_column"
    table: str
    column: ColumnSpec

    def describe(self) -> str:
        return f"AddColumn {self.table}.{self.column.name}"

    def invert(self) -> Operation:
        return DropColumn(table=self.table, column=self.column.name, restore=self.column)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.with_column(self.column)


class DropColumn(_OperationBase):
    op: Literal["drop_column"] = "drop_column"
    table: str
    column: str
    restore: ColumnSpec | None = None

    @model_validator(mode="after")
    def _restore_matches(self) -> DropColumn:
        if self.restore is not None and self.restore.name != self.column:
            raise ValueError(f"restore describes {self.restore.name!r}, not {self.column!r}")
        return self

    def describe(self) -> str:
        return f"DropColumn {self.table}.{self.column}"

    def invert(self) -> Operation:
        if self.restore is None:
            raise self._irreversible("no restore descriptor recorded")
        if not self.restore.nullable and self.restore.default is None:
            raise self._irreversible("column is NOT NULL without a default, existing rows cannot be repopulated")
        return AddColumn(table=self.table, column=self.restore)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.without_column(self.column)


class RenameColumn(_OperationBase):
    op: Literal["rename_column"] = "rename_column"
    table: str
    old: str
    new: str

    def describe(self) -> str:
        return f"RenameColumn {self.table}.{self.old} -> {self.new}"

    def invert(self) -> Operation:
        return RenameColumn(table=self.table, old=self.new, new=self.old)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.with_renamed_column(self.old, self.new)


class AlterColumnType(_OperationBase):
    """Change a column's type, nullability, default or uniqueness.

    ``column`` is the full target definition; ``existing`` the definition
    being replaced (needed for the inverse).
    """

    op: Literal["alter_column"] = "alter_column"
    table: str
    column: ColumnSpec
    existing: ColumnSpec | None = None

    @model_validator(mode="after")
    def _same_column(self) -> AlterColumnType:
        if self.existing is not None and self.existing.name != self.column.name:
            raise ValueError("existing and column must describe the same column name")
        return self

    def describe(self) -> str:
        return f"AlterColumnType {self.table}.{self.column.name}"

    def invert(self) -> Operation:
        if self.existing is None:
            raise self._irreversible("no existing column descriptor recorded")
        return AlterColumnType(table=self.table, column=self.existing, existing=self.column)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.with_altered_column(self.column)


# ── indexes ──────────────────────────────────────────────────────────────


class CreateIndex(_OperationBase):
    op: Literal["create_index"] = "create_index"
    table: str
    index: IndexSpec

    def describe(self) -> str:
        return f"CreateIndex {self.index.name} on {self.table}"

    def invert(self) -> Operation:
        return DropIndex(table=self.table, name=self.index.name, restore=self.index)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.with_index(self.index)


class DropIndex(_OperationBase):
    op: Literal["drop_index"] = "drop_index"
    table: str
    name: str
    restore: IndexSpec | None = None

    def describe(self) -> str:
        return f"DropIndex {self.name} on {self.table}"

    def invert(self) -> Operation:
        if self.restore is None:
            raise self._irreversible("no restore descriptor recorded")
        return CreateIndex(table=self.table, index=self.restore)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.without_index(self.name)


# ── foreign keys ─────────────────────────────────────────────────────────


class AddForeignKey(_OperationBase):
    op: Literal["add_foreign_key"] = "add_foreign_key"
    table: str
    foreign_key: ForeignKeySpec

    def describe(self) -> str:
        return f"AddForeignKey {self.table}{self.foreign_key.describe()}"

    def invert(self) -> Operation:
        return DropForeignKey(table=self.table, foreign_key=self.foreign_key)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.with_foreign_key(self.foreign_key)


class DropForeignKey(_OperationBase):
    op: Literal["drop_foreign_key"] = "drop_foreign_key"
    table: str
    foreign_key: ForeignKeySpec

    def describe(self) -> str:
        return f"DropForeignKey {self.table}{self.foreign_key.describe()}"

    def invert(self) -> Operation:
        return AddForeignKey(table=self.table, foreign_key=self.foreign_key)

    def _apply(self, current: SchemaSnapshot) -> SchemaSnapshot:
        return current.without_foreign_key(self.foreign_key)


Operation = Annotated[
    Union[
        CreateTable,
        DropTable,
        AddColumn,
        DropColumn,
        RenameColumn,
        AlterColumnType,
        CreateIndex,
        DropIndex,
        AddForeignKey,
        DropForeignKey,
    ],
    Field(discriminator="op"),
]

_OPERATION_ADAPTER: TypeAdapter[Operation] = TypeAdapter(Operation)


def parse_operation(data: Mapping[str, object]) -> Operation:
    """Validate one serialised operation (``{"op": "add_column", ...}``)."""
    return _OPERATION_ADAPTER.validate_python(data)


def replay(operations: Iterable[Operation], schema: Mapping[str, SchemaSnapshot] | None = None) -> SchemaMap:
    """Schema produced by applying ``operations`` in order (empty store by default)."""
    result: SchemaMap = dict(schema or {})
    for operation in operations:
        result = operation.apply_to(result)
    return result


def invert_all(operations: Sequence[Operation]) -> list[Operation]:
    """Inverses of ``operations`` in undo order; raises before returning anything."""
    return [operation.invert() for operation in reversed(operations)]


__all__ = [
    "Operation",
    "SchemaMap",
    "CreateTable",
    "DropTable",
    "AddColumn",
    "DropColumn",
    "RenameColumn",
    "AlterColumnType",
    "CreateIndex",
    "DropIndex",
    "AddForeignKey",
    "DropForeignKey",
    "parse_operation",
    "replay",
    "invert_all",
]
