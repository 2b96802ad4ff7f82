"""Table structure snapshots.

A ``SchemaSnapshot`` is the full structure of one table: ordered columns,
primary key, indexes, foreign keys and multi-column unique constraints.
It is the unit the introspector compares and the blueprint the batch
rewriter builds shadow tables from.

Snapshots normalise themselves on construction so that a snapshot
declared in code, one reflected from SQLite and one produced by replaying
revisions compare equal with plain ``==``:

* type names are upper-cased with canonical spacing (``varchar( 20 )`` →
  ``VARCHAR(20)``)
* one layer of enclosing parentheses is stripped from defaults (SQLite
  reports ``DEFAULT (datetime('now'))`` as ``datetime('now')``)
* primary-key columns are never nullable
* foreign-key actions default to ``NO ACTION``
* indexes, foreign keys and unique constraints are sorted

``snapshot_from_table`` converts SQLAlchemy ``Table`` metadata (the
schema-authoring collaborator) into declared snapshots.

Tags:
    schemaspine, schema, snapshot, introspection, sqlalchemy

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from sqlalchemy import Table, UniqueConstraint
from sqlalchemy.dialects import sqlite as sqlite_dialect
from sqlalchemy.sql.elements import TextClause

from schemaspine.core.errors import UnsupportedOperationError

_DIALECT = sqlite_dialect.dialect()

_FK_ACTIONS = {"NO ACTION", "RESTRICT", "SET NULL", "SET DEFAULT", "CASCADE"}


def normalize_type(type_: str) -> str:
    """Canonical spelling of a SQL type name."""
    text = re.sub(r"\s+", " ", type_.strip()).upper()
    text = re.sub(r"\s*\(\s*", "(", text)
    text = re.sub(r"\s*\)", ")", text)
    return re.sub(r"\s*,\s*", ", ", text)


def _wrapped_in_parens(text: str) -> bool:
    if not (text.startswith("(") and text.endswith(")")):
        return False
    depth = 0
    quote: str | None = None
    for i, ch in enumerate(text):
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0 and i != len(text) - 1:
                return False
    return depth == 0


def normalize_default(value: Any) -> str | None:
    """Canonical SQL text of a column default, or ``None``."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    text = str(value).strip()
    while _wrapped_in_parens(text):
        text = text[1:-1].strip()
    return text or None


class ColumnSpec(BaseModel):
    """One column. ``default`` is SQL expression text (``'n/a'``, ``0``,
    ``CURRENT_TIMESTAMP``), not a Python value."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    type: str
    nullable: bool = True
    default: str | None = None
    unique: bool = False

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        # untyped columns (BLOB affinity) reflect as an empty string
        return normalize_type(value)

    @field_validator("default", mode="before")
    @classmethod
    def _normalize_default(cls, value: Any) -> str | None:
        return normalize_default(value)


class IndexSpec(BaseModel):
    """A named (non-constraint) index."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    columns: tuple[str, ...]
    unique: bool = False

    @field_validator("columns")
    @classmethod
    def _non_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not value:
            raise ValueError("index needs at least one column")
        return value


class ForeignKeySpec(BaseModel):
    """A foreign key, identified by its structure (SQLite does not report names)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    columns: tuple[str, ...]
    referred_table: str
    referred_columns: tuple[str, ...]
    on_delete: str = "NO ACTION"
    on_update: str = "NO ACTION"

    @field_validator("on_delete", "on_update", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> str:
        action = re.sub(r"\s+", " ", str(value or "NO ACTION").strip()).upper()
        if action not in _FK_ACTIONS:
            raise ValueError(f"unknown foreign key action {value!r}")
        return action

    @model_validator(mode="after")
    def _check_arity(self) -> ForeignKeySpec:
        if not self.columns or len(self.columns) != len(self.referred_columns):
            raise ValueError("foreign key columns and referred_columns must be non-empty and the same length")
        return self

    @property
    def is_composite(self) -> bool:
        return len(self.columns) > 1

    def sort_key(self) -> tuple[Any, ...]:
        return (self.referred_table, self.columns, self.referred_columns)

    def describe(self) -> str:
        return f"({', '.join(self.columns)}) -> {self.referred_table}({', '.join(self.referred_columns)})"


class SchemaSnapshot(BaseModel):
    """Full structure of one table."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    columns: tuple[ColumnSpec, ...]
    primary_key: tuple[str, ...] = ()
    indexes: tuple[IndexSpec, ...] = ()
    foreign_keys: tuple[ForeignKeySpec, ...] = ()
    unique_constraints: tuple[tuple[str, ...], ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        pk = tuple(data.get("primary_key") or ())

        # single-column unique constraints live on the column
        uniques: list[tuple[str, ...]] = []
        single_unique: set[str] = set()
        for unique in data.get("unique_constraints") or ():
            unique = tuple(unique)
            if len(unique) == 1:
                single_unique.add(unique[0])
            else:
                uniques.append(unique)

        columns = []
        for col in data.get("columns") or ():
            if not isinstance(col, ColumnSpec):
                col = ColumnSpec.model_validate(col)
            if col.name in pk and col.nullable:
                col = col.model_copy(update={"nullable": False})
            if col.name in single_unique and not col.unique:
                col = col.model_copy(update={"unique": True})
            columns.append(col)
        data["columns"] = tuple(columns)
        data["primary_key"] = pk

        indexes = [i if isinstance(i, IndexSpec) else IndexSpec.model_validate(i) for i in data.get("indexes") or ()]
        data["indexes"] = tuple(sorted(indexes, key=lambda i: i.name))

        fks = [f if isinstance(f, ForeignKeySpec) else ForeignKeySpec.model_validate(f) for f in data.get("foreign_keys") or ()]
        data["foreign_keys"] = tuple(sorted(fks, key=ForeignKeySpec.sort_key))

        data["unique_constraints"] = tuple(sorted(uniques))
        return data

    @model_validator(mode="after")
    def _check_references(self) -> SchemaSnapshot:
        names = [c.name for c in self.columns]
        if not names:
            raise ValueError(f"table {self.name!r} has no columns")
        if len(set(names)) != len(names):
            raise ValueError(f"table {self.name!r} has duplicate column names")
        known = set(names)
        referenced = list(self.primary_key)
        for index in self.indexes:
            referenced.extend(index.columns)
        for fk in self.foreign_keys:
            referenced.extend(fk.columns)
        for unique in self.unique_constraints:
            referenced.extend(unique)
        missing = sorted(set(referenced) - known)
        if missing:
            raise ValueError(f"table {self.name!r} references unknown columns: {missing}")
        return self

    # -- accessors ---------------------------------------------------------

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> ColumnSpec | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def index(self, name: str) -> IndexSpec | None:
        for index in self.indexes:
            if index.name == name:
                return index
        return None

    def evolve(self, **changes: Any) -> SchemaSnapshot:
        """Return a re-validated copy with ``changes`` applied."""
        try:
            return type(self)(**{**dict(self), **changes})
        except ValidationError as exc:
            message = "; ".join(str(e.get("msg", "")) for e in exc.errors())
            raise UnsupportedOperationError(f"Invalid structure for {self.name}: {message}", cause=exc) from exc

    def dependents_of(self, column: str) -> list[str]:
        """Describe every constraint or index of this table that uses ``column``."""
        found = []
        if column in self.primary_key:
            found.append("primary key")
        found.extend(f"index {i.name}" for i in self.indexes if column in i.columns)
        found.extend(f"foreign key {fk.describe()}" for fk in self.foreign_keys if column in fk.columns)
        found.extend(f"unique ({', '.join(u)})" for u in self.unique_constraints if column in u)
        return found

    # -- structural edits --------------------------------------------------

    def with_column(self, column: ColumnSpec) -> SchemaSnapshot:
        if self.column(column.name) is not None:
            raise UnsupportedOperationError(f"Column {self.name}.{column.name} already exists")
        return self.evolve(columns=self.columns + (column,))

    def without_column(self, name: str) -> SchemaSnapshot:
        if self.column(name) is None:
            raise UnsupportedOperationError(f"Column {self.name}.{name} does not exist")
        dependents = self.dependents_of(name)
        if dependents:
            raise UnsupportedOperationError(
                f"Column {self.name}.{name} is used by {', '.join(dependents)}; drop those first"
            )
        return self.evolve(columns=tuple(c for c in self.columns if c.name != name))

    def with_altered_column(self, column: ColumnSpec) -> SchemaSnapshot:
        if self.column(column.name) is None:
            raise UnsupportedOperationError(f"Column {self.name}.{column.name} does not exist")
        return self.evolve(columns=tuple(column if c.name == column.name else c for c in self.columns))

    def with_renamed_column(self, old: str, new: str) -> SchemaSnapshot:
        if self.column(old) is None:
            raise UnsupportedOperationError(f"Column {self.name}.{old} does not exist")
        if self.column(new) is not None:
            raise UnsupportedOperationError(f"Column {self.name}.{new} already exists")

        def swap(names: tuple[str, ...]) -> tuple[str, ...]:
            return tuple(new if n == old else n for n in names)

        fks = []
        for fk in self.foreign_keys:
            referred = swap(fk.referred_columns) if fk.referred_table == self.name else fk.referred_columns
            fks.append(fk.model_copy(update={"columns": swap(fk.columns), "referred_columns": referred}))
        return self.evolve(
            columns=tuple(c.model_copy(update={"name": new}) if c.name == old else c for c in self.columns),
            primary_key=swap(self.primary_key),
            indexes=tuple(i.model_copy(update={"columns": swap(i.columns)}) for i in self.indexes),
            foreign_keys=tuple(fks),
            unique_constraints=tuple(swap(u) for u in self.unique_constraints),
        )

    def with_index(self, index: IndexSpec) -> SchemaSnapshot:
        if self.index(index.name) is not None:
            raise UnsupportedOperationError(f"Index {index.name} already exists on {self.name}")
        return self.evolve(indexes=self.indexes + (index,))

    def without_index(self, name: str) -> SchemaSnapshot:
        if self.index(name) is None:
            raise UnsupportedOperationError(f"Index {name} does not exist on {self.name}")
        return self.evolve(indexes=tuple(i for i in self.indexes if i.name != name))

    def with_foreign_key(self, fk: ForeignKeySpec) -> SchemaSnapshot:
        if fk in self.foreign_keys:
            raise UnsupportedOperationError(f"Foreign key {fk.describe()} already exists on {self.name}")
        return self.evolve(foreign_keys=self.foreign_keys + (fk,))

    def without_foreign_key(self, fk: ForeignKeySpec) -> SchemaSnapshot:
        if fk not in self.foreign_keys:
            raise UnsupportedOperationError(f"Foreign key {fk.describe()} does not exist on {self.name}")
        return self.evolve(foreign_keys=tuple(f for f in self.foreign_keys if f != fk))


# ── SQLAlchemy metadata bridge ───────────────────────────────────────────


def _server_default_sql(column: Any) -> str | None:
    server_default = column.server_default
    if server_default is None:
        return None
    arg = getattr(server_default, "arg", None)
    if isinstance(arg, str):
        return "'" + arg.replace("'", "''") + "'"
    if isinstance(arg, TextClause):
        return arg.text
    if arg is None:
        return None
    return str(arg.compile(dialect=_DIALECT, compile_kwargs={"literal_binds": True}))


def snapshot_from_table(table: Table) -> SchemaSnapshot:
    """Build a declared snapshot from SQLAlchemy ``Table`` metadata."""
    single_unique: set[str] = set()
    multi_unique: list[tuple[str, ...]] = []
    for constraint in table.constraints:
        if isinstance(constraint, UniqueConstraint):
            names = tuple(c.name for c in constraint.columns)
            if len(names) == 1:
                single_unique.add(names[0])
            elif names:
                multi_unique.append(names)

    columns = [
        ColumnSpec(
            name=col.name,
            type=col.type.compile(dialect=_DIALECT),
            nullable=bool(col.nullable),
            default=_server_default_sql(col),
            unique=bool(col.unique) or col.name in single_unique,
        )
        for col in table.columns
    ]

    indexes = []
    for idx in table.indexes:
        cols = tuple(c.name for c in idx.columns)
        name = str(idx.name) if idx.name else f"ix_{table.name}_{'_'.join(cols)}"
        indexes.append(IndexSpec(name=name, columns=cols, unique=bool(idx.unique)))

    fks = []
    for fkc in table.foreign_key_constraints:
        targets = [element.target_fullname.rsplit(".", 1) for element in fkc.elements]
        fks.append(
            ForeignKeySpec(
                columns=tuple(element.parent.name for element in fkc.elements),
                referred_table=targets[0][0],
                referred_columns=tuple(t[1] for t in targets),
                on_delete=fkc.ondelete or "NO ACTION",
                on_update=fkc.onupdate or "NO ACTION",
            )
        )

    return SchemaSnapshot(
        name=table.name,
        columns=tuple(columns),
        primary_key=tuple(c.name for c in table.primary_key.columns),
        indexes=tuple(indexes),
        foreign_keys=tuple(fks),
        unique_constraints=tuple(multi_unique),
    )


__all__ = [
    "ColumnSpec",
    "IndexSpec",
    "ForeignKeySpec",
    "SchemaSnapshot",
    "normalize_type",
    "normalize_default",
    "snapshot_from_table",
]
