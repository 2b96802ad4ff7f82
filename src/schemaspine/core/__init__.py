"""Core primitives: store connections, session scopes, schema snapshots.

Modules
-------
connection  ConnectionManager, ConnectionHandle, engine factory
session     SessionScope (nested, rollback-only) and StoreSession
locks       AccessGate: reentrant read / write / exclusive gate
schema      SchemaSnapshot, ColumnSpec, IndexSpec, ForeignKeySpec
ddl         SQLite DDL rendering
errors      Error taxonomy
logging     structlog configuration
settings    pydantic-settings configuration

Tags:
    schemaspine, core, sqlite, sessions

Doc-Types:
    package-overview
"""

from schemaspine.core.connection import ConnectionHandle, ConnectionManager
from schemaspine.core.locks import AccessGate, AccessMode
from schemaspine.core.schema import ColumnSpec, ForeignKeySpec, IndexSpec, SchemaSnapshot, snapshot_from_table
from schemaspine.core.session import SessionScope, SessionState

__all__ = [
    "AccessGate",
    "AccessMode",
    "ColumnSpec",
    "ConnectionHandle",
    "ConnectionManager",
    "ForeignKeySpec",
    "IndexSpec",
    "SchemaSnapshot",
    "SessionScope",
    "SessionState",
    "snapshot_from_table",
]
