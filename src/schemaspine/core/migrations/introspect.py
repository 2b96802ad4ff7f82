"""Reflect the live store and diff it against declared snapshots.

Reflection reads SQLite's own catalogue through the ``pragma_*``
table-valued functions (``table_info``, ``index_list``, ``index_info``,
``foreign_key_list``) rather than parsing ``CREATE`` statements, so the
result is exactly what SQLite will enforce.  Indexes SQLite builds for
``UNIQUE`` constraints (origin ``u``) become column-level ``unique``
flags or table-level unique constraints; primary-key autoindexes are
ignored.  The ledger table and leftover shadow tables are never reported.

``diff(declared, live)`` returns the operations that turn ``live`` into
``declared``:

    1. CreateTable for tables only in ``declared``
    2. per shared table: DropForeignKey, DropIndex, DropColumn,
       AddColumn, AlterColumnType, CreateIndex, AddForeignKey
    3. DropTable for tables only in ``live``

Renames are never inferred.  A same-typed drop/add pair in one table is
emitted as two operations (data in the dropped column is lost) and
reported with ``AmbiguousRenameWarning`` so the author can replace it
with an explicit ``RenameColumn``.  Differences the operation set cannot
express (primary-key or multi-column unique changes on an existing
table) are reported with ``SchemaDriftWarning``.

Tags:
    schemaspine, migrations, introspection, autogenerate, sqlite

Doc-Types:
    api-reference
"""

from __future__ import annotations

import warnings
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from schemaspine.core.errors import AmbiguousRenameWarning, SchemaDriftWarning
from schemaspine.core.logging import get_logger
from schemaspine.core.migrations.history import DEFAULT_HISTORY_TABLE
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
)
from schemaspine.core.schema import ColumnSpec, ForeignKeySpec, IndexSpec, SchemaSnapshot
from schemaspine.core.session import SessionScope

logger = get_logger(__name__)

SHADOW_PREFIX = "_schemaspine_shadow_"


@dataclass(frozen=True)
class CatalogEntry:
    """One ``sqlite_master`` row that carries its own ``CREATE`` statement."""

    type: str
    name: str
    table: str
    sql: str


def _as_mapping(snapshots: Mapping[str, SchemaSnapshot] | Iterable[SchemaSnapshot]) -> dict[str, SchemaSnapshot]:
    if isinstance(snapshots, Mapping):
        return dict(snapshots)
    return {s.name: s for s in snapshots}


class SchemaIntrospector:
    """Reads table structure from a store and computes differences."""

    def __init__(self, history_table: str = DEFAULT_HISTORY_TABLE):
        self.history_table = history_table

    # ── reflection ───────────────────────────────────────────────────────

    def is_managed_table(self, name: str) -> bool:
        return not (
            name.startswith("sqlite_")
            or name.startswith(SHADOW_PREFIX)
            or name.lower() == self.history_table.lower()
        )

    def table_names(self, scope: SessionScope) -> list[str]:
        rows = scope.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name").all()
        return [r[0] for r in rows if self.is_managed_table(r[0])]

    def reflect(self, scope: SessionScope) -> dict[str, SchemaSnapshot]:
        """Snapshots of every managed table, keyed by name."""
        result = {}
        for name in self.table_names(scope):
            snapshot = self.reflect_table(scope, name)
            if snapshot is not None:
                result[name] = snapshot
        return result

    def reflect_table(self, scope: SessionScope, name: str) -> SchemaSnapshot | None:
        """Snapshot of one table, or ``None`` if it does not exist."""
        info = [dict(r._mapping) for r in scope.execute("SELECT * FROM pragma_table_info(:t)", {"t": name})]
        if not info:
            return None

        primary_key = tuple(r["name"] for r in sorted((r for r in info if r["pk"]), key=lambda r: r["pk"]))
        single_unique: set[str] = set()
        unique_constraints: list[tuple[str, ...]] = []
        indexes: list[IndexSpec] = []

        for idx in scope.execute("SELECT * FROM pragma_index_list(:t)", {"t": name}).mappings():
            if idx["origin"] == "pk":
                continue
            columns = [
                r["name"]
                for r in scope.execute(
                    "SELECT * FROM pragma_index_info(:i) ORDER BY seqno", {"i": idx["name"]}
                ).mappings()
            ]
            if any(c is None for c in columns) or idx["partial"]:
                warnings.warn(
                    SchemaDriftWarning(f"{name}: index {idx['name']} uses expressions or a WHERE clause; not tracked"),
                    stacklevel=2,
                )
                continue
            if idx["origin"] == "u":
                if len(columns) == 1:
                    single_unique.add(columns[0])
                else:
                    unique_constraints.append(tuple(columns))
            else:
                indexes.append(IndexSpec(name=idx["name"], columns=tuple(columns), unique=bool(idx["unique"])))

        columns_spec = [
            ColumnSpec(
                name=r["name"],
                type=r["type"] or "",
                nullable=not r["notnull"],
                default=r["dflt_value"],
                unique=r["name"] in single_unique,
            )
            for r in info
        ]

        return SchemaSnapshot(
            name=name,
            columns=tuple(columns_spec),
            primary_key=primary_key,
            indexes=tuple(indexes),
            foreign_keys=tuple(self._foreign_keys(scope, name)),
            unique_constraints=tuple(unique_constraints),
        )

    def _foreign_keys(self, scope: SessionScope, name: str) -> list[ForeignKeySpec]:
        grouped: dict[int, list[dict[str, Any]]] = defaultdict(list)
        for row in scope.execute("SELECT * FROM pragma_foreign_key_list(:t)", {"t": name}).mappings():
            grouped[row["id"]].append(dict(row))

        fks = []
        for rows in grouped.values():
            rows.sort(key=lambda r: r["seq"])
            referred_table = rows[0]["table"]
            referred = [r["to"] for r in rows]
            if any(c is None for c in referred):
                # REFERENCES parent without columns targets the parent's primary key
                parent = [
                    dict(r._mapping)
                    for r in scope.execute("SELECT * FROM pragma_table_info(:t)", {"t": referred_table})
                ]
                referred = [r["name"] for r in sorted((r for r in parent if r["pk"]), key=lambda r: r["pk"])]
            fks.append(
                ForeignKeySpec(
                    columns=tuple(r["from"] for r in rows),
                    referred_table=referred_table,
                    referred_columns=tuple(referred),
                    on_delete=rows[0]["on_delete"],
                    on_update=rows[0]["on_update"],
                )
            )
        return fks

    def referencing_foreign_keys(self, scope: SessionScope, table: str) -> list[tuple[str, ForeignKeySpec]]:
        """``(child_table, fk)`` for every FK on another table that points at ``table``."""
        found = []
        for name in self.table_names(scope):
            if name == table:
                continue
            for fk in self._foreign_keys(scope, name):
                if fk.referred_table.lower() == table.lower():
                    found.append((name, fk))
        return found

    def table_sql(self, scope: SessionScope, name: str) -> str | None:
        """The stored ``CREATE TABLE`` statement for ``name``."""
        return scope.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :t", {"t": name}
        ).scalar_one_or_none()

    def catalog_entries(
        self, scope: SessionScope, types: Iterable[str] = ("index", "trigger", "view")
    ) -> list[CatalogEntry]:
        """Indexes, triggers and views with a stored statement, in creation order.

        Autoindexes SQLite builds for ``UNIQUE`` and primary-key
        constraints have no statement and are not listed.
        """
        wanted = tuple(types)
        placeholders = ", ".join(f":t{i}" for i in range(len(wanted)))
        rows = scope.execute(
            f"SELECT type, name, tbl_name, sql FROM sqlite_master "
            f"WHERE sql IS NOT NULL AND type IN ({placeholders}) ORDER BY rowid",
            {f"t{i}": t for i, t in enumerate(wanted)},
        ).all()
        return [
            CatalogEntry(type=r[0], name=r[1], table=r[2], sql=r[3])
            for r in rows
            if self.is_managed_table(r[2])
        ]

    # ── diff ─────────────────────────────────────────────────────────────

    def diff(
        self,
        declared: Mapping[str, SchemaSnapshot] | Iterable[SchemaSnapshot],
        live: Mapping[str, SchemaSnapshot] | Iterable[SchemaSnapshot],
    ) -> list[Operation]:
        """Operations that transform ``live`` into ``declared``."""
        declared = _as_mapping(declared)
        live = _as_mapping(live)
        operations: list[Operation] = []

        for name, snapshot in declared.items():
            if name not in live:
                operations.append(CreateTable(table=snapshot))

        for name, snapshot in declared.items():
            if name in live:
                operations.extend(self._diff_table(snapshot, live[name]))

        for name, snapshot in live.items():
            if name not in declared:
                operations.append(DropTable(name=name, restore=snapshot))

        logger.debug("introspect.diff", operations=len(operations))
        return operations

    def _diff_table(self, declared: SchemaSnapshot, live: SchemaSnapshot) -> list[Operation]:
        table = declared.name
        ops: list[Operation] = []

        if declared.primary_key != live.primary_key:
            warnings.warn(
                SchemaDriftWarning(
                    f"{table}: primary key differs ({', '.join(live.primary_key)} -> "
                    f"{', '.join(declared.primary_key)}); recreate the table explicitly"
                ),
                stacklevel=3,
            )
        if declared.unique_constraints != live.unique_constraints:
            warnings.warn(
                SchemaDriftWarning(f"{table}: multi-column unique constraints differ; not migrated automatically"),
                stacklevel=3,
            )

        ops.extend(
            DropForeignKey(table=table, foreign_key=fk) for fk in live.foreign_keys if fk not in declared.foreign_keys
        )
        ops.extend(
            DropIndex(table=table, name=idx.name, restore=idx)
            for idx in live.indexes
            if declared.index(idx.name) != idx
        )

        dropped = [c for c in live.columns if declared.column(c.name) is None]
        added = [c for c in declared.columns if live.column(c.name) is None]
        for old in dropped:
            for new in added:
                if old.type == new.type:
                    warnings.warn(AmbiguousRenameWarning(table, old.name, new.name, old.type), stacklevel=3)

        ops.extend(DropColumn(table=table, column=c.name, restore=c) for c in dropped)
        ops.extend(AddColumn(table=table, column=c) for c in added)

        for column in declared.columns:
            existing = live.column(column.name)
            if existing is not None and existing != column:
                ops.append(AlterColumnType(table=table, column=column, existing=existing))

        ops.extend(
            CreateIndex(table=table, index=idx) for idx in declared.indexes if live.index(idx.name) != idx
        )
        ops.extend(
            AddForeignKey(table=table, foreign_key=fk) for fk in declared.foreign_keys if fk not in live.foreign_keys
        )
        return ops


__all__ = ["SHADOW_PREFIX", "CatalogEntry", "SchemaIntrospector"]
