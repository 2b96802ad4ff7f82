"""Schema migrations for schemaspine stores.

Manifesto:
    A schema change is a revision in a graph, not a script in a folder.
    Revisions carry typed, invertible operations; the runner applies
    them one transaction at a time and records each in a ledger, and
    ALTERs SQLite cannot express are emulated by rebuilding the table.

Modules
-------
graph       RevisionGraph: heads, ancestry, topological order, paths
revision    Revision model, content ids, YAML revision files
operations  Operation union, inversion and snapshot replay
introspect  SchemaIntrospector: reflect and diff
rewriter    BatchTableRewriter: shadow-table rebuilds
executor    StoreCapabilities and OperationExecutor
history     HistoryLedger of applied revisions
runner      MigrationRunner: upgrade / downgrade / stamp / autogenerate

Tags:
    schemaspine, migrations, schema, sqlite, revisions

Doc-Types:
    package-overview
"""

from schemaspine.core.migrations.executor import OperationExecutor, StoreCapabilities
from schemaspine.core.migrations.graph import BASE, HEAD, PathDirection, RevisionGraph, RevisionPath
from schemaspine.core.migrations.history import HistoryLedger, RevisionHistoryRecord
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
from schemaspine.core.migrations.revision import Revision, RevisionDocument, RevisionStore
from schemaspine.core.migrations.rewriter import BatchTableRewriter, RewriteResult
from schemaspine.core.migrations.runner import MigrationResult, MigrationRunner

__all__ = [
    "BASE",
    "HEAD",
    "AddColumn",
    "AddForeignKey",
    "AlterColumnType",
    "BatchTableRewriter",
    "CreateIndex",
    "CreateTable",
    "DropColumn",
    "DropForeignKey",
    "DropIndex",
    "DropTable",
    "HistoryLedger",
    "MigrationResult",
    "MigrationRunner",
    "Operation",
    "OperationExecutor",
    "PathDirection",
    "RenameColumn",
    "Revision",
    "RevisionDocument",
    "RevisionGraph",
    "RevisionHistoryRecord",
    "RevisionPath",
    "RevisionStore",
    "RewriteResult",
    "SchemaIntrospector",
    "StoreCapabilities",
]
