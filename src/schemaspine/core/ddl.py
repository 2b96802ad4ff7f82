"""SQLite DDL rendering for table snapshots.

Identifiers are quoted with SQLAlchemy's SQLite identifier preparer so
reserved words and mixed-case names survive a round trip through
``PRAGMA table_info``.  Column defaults that are not plain literals are
wrapped in parentheses as SQLite requires for expressions.

Tags:
    schemaspine, ddl, sqlite, sqlalchemy

Doc-Types:
    api-reference
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from sqlalchemy.dialects import sqlite as sqlite_dialect

from schemaspine.core.schema import ColumnSpec, ForeignKeySpec, IndexSpec, SchemaSnapshot

_PREPARER = sqlite_dialect.dialect().identifier_preparer

_NUMBER = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_STRING = re.compile(r"^'(?:[^']|'')*'$")
_KEYWORDS = {"NULL", "TRUE", "FALSE"}
_CURRENT = {"CURRENT_TIME", "CURRENT_DATE", "CURRENT_TIMESTAMP"}


def quote(name: str) -> str:
    """Quote an identifier if SQLite needs it."""
    return _PREPARER.quote(name)


def quote_list(names: Iterable[str]) -> str:
    return ", ".join(quote(n) for n in names)


def is_literal_default(default: str) -> bool:
    """True for defaults SQLite accepts without parentheses."""
    return bool(_NUMBER.match(default) or _STRING.match(default)) or default.upper() in _KEYWORDS | _CURRENT


def is_constant_default(default: str | None) -> bool:
    """True for defaults usable by ``ALTER TABLE ... ADD COLUMN``.

    SQLite rejects ``CURRENT_*`` and parenthesised expressions there.
    """
    if default is None:
        return True
    return is_literal_default(default) and default.upper() not in _CURRENT


def render_default(default: str) -> str:
    return default if is_literal_default(default) else f"({default})"


def render_column(column: ColumnSpec) -> str:
    parts = [quote(column.name)]
    if column.type:
        parts.append(column.type)
    if not column.nullable:
        parts.append("NOT NULL")
    if column.default is not None:
        parts.append(f"DEFAULT {render_default(column.default)}")
    if column.unique:
        parts.append("UNIQUE")
    return " ".join(parts)


def render_foreign_key(fk: ForeignKeySpec) -> str:
    sql = (
        f"FOREIGN KEY ({quote_list(fk.columns)}) "
        f"REFERENCES {quote(fk.referred_table)} ({quote_list(fk.referred_columns)})"
    )
    if fk.on_delete != "NO ACTION":
        sql += f" ON DELETE {fk.on_delete}"
    if fk.on_update != "NO ACTION":
        sql += f" ON UPDATE {fk.on_update}"
    return sql


def render_create_table(snapshot: SchemaSnapshot, name: str | None = None) -> str:
    """``CREATE TABLE`` for ``snapshot``, optionally under another name."""
    lines = [render_column(c) for c in snapshot.columns]
    if snapshot.primary_key:
        lines.append(f"PRIMARY KEY ({quote_list(snapshot.primary_key)})")
    for unique in snapshot.unique_constraints:
        lines.append(f"UNIQUE ({quote_list(unique)})")
    for fk in snapshot.foreign_keys:
        lines.append(render_foreign_key(fk))
    body = ",\n    ".join(lines)
    return f"CREATE TABLE {quote(name or snapshot.name)} (\n    {body}\n)"


def render_create_index(table: str, index: IndexSpec) -> str:
    unique = "UNIQUE " if index.unique else ""
    return f"CREATE {unique}INDEX {quote(index.name)} ON {quote(table)} ({quote_list(index.columns)})"


def render_drop_index(name: str) -> str:
    return f"DROP INDEX {quote(name)}"


def render_drop_table(name: str) -> str:
    return f"DROP TABLE {quote(name)}"


def render_rename_table(old: str, new: str) -> str:
    return f"ALTER TABLE {quote(old)} RENAME TO {quote(new)}"


def render_add_column(table: str, column: ColumnSpec) -> str:
    return f"ALTER TABLE {quote(table)} ADD COLUMN {render_column(column)}"


def render_drop_column(table: str, column: str) -> str:
    return f"ALTER TABLE {quote(table)} DROP COLUMN {quote(column)}"


def render_rename_column(table: str, old: str, new: str) -> str:
    return f"ALTER TABLE {quote(table)} RENAME COLUMN {quote(old)} TO {quote(new)}"


__all__ = [
    "quote",
    "quote_list",
    "is_literal_default",
    "is_constant_default",
    "render_default",
    "render_column",
    "render_foreign_key",
    "render_create_table",
    "render_create_index",
    "render_drop_index",
    "render_drop_table",
    "render_rename_table",
    "render_add_column",
    "render_drop_column",
    "render_rename_column",
]
