"""Migration runner.

Applies revisions from a ``RevisionGraph`` to the store, tracks them in
the history ledger, and reverts them with their inverse operations.

Manifesto:
    A migration either happened or it did not.  Each revision runs in its
    own EXCLUSIVE transaction together with its ledger record, so an
    interrupted run leaves the store at the last fully committed
    revision, and the ledger always names exactly what the schema
    contains.

Architecture:
    ::

        upgrade(target)
          resolve target               ── MultipleHeadsError / RevisionNotFoundError (no writes)
          exclusive_section ───────────────────────────────────────────────┐
          │ ensure ledger                                                   │
          │ for revision in resolve_path(base, target) - applied:           │
          │   SessionScope(EXCLUSIVE, foreign keys off)                     │
          │     OperationExecutor.execute(op) ... (in place or batch)       │
          │     PRAGMA foreign_key_check                                    │
          │     ledger.append(revision)                                     │
          │   COMMIT                                                        │
          └─────────────────────────────────────────────────────────────────┘

        downgrade(target)
          inverses of every revision to revert computed first
                                       ── IrreversibleOperationError (no writes)
          revert in reverse application order, one transaction each

    The exclusive section keeps concurrent ``upgrade()`` calls, readers
    and writers out for the whole run; a second runner blocks and fails
    with ``LockTimeoutError`` after ``lock_timeout``.

Examples:
    >>> manager = ConnectionManager("sqlite:///app.db")
    >>> graph = RevisionStore("migrations/versions").load()
    >>> runner = MigrationRunner(manager, graph)
    >>> result = runner.upgrade()
    >>> result.applied
    ['a41be0c95f2e', '3f9a1c2b7d10']
    >>> runner.downgrade("a41be0c95f2e").reverted
    ['3f9a1c2b7d10']

Tags:
    schemaspine, migrations, runner, ledger, transactions

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import exc as sa_exc

from schemaspine.core.connection import ConnectionManager
from schemaspine.core.errors import (
    MigrationError,
    RevisionNotFoundError,
    SchemaSpineError,
    SessionStateError,
)
from schemaspine.core.locks import AccessMode
from schemaspine.core.logging import LogContext, get_logger
from schemaspine.core.migrations.executor import OperationExecutor, StoreCapabilities
from schemaspine.core.migrations.graph import RevisionGraph
from schemaspine.core.migrations.history import DEFAULT_HISTORY_TABLE, HistoryLedger, RevisionHistoryRecord
from schemaspine.core.migrations.introspect import SchemaIntrospector
from schemaspine.core.migrations.operations import Operation
from schemaspine.core.migrations.revision import Revision, RevisionStore
from schemaspine.core.migrations.rewriter import BatchTableRewriter, check_foreign_keys
from schemaspine.core.schema import SchemaSnapshot

if TYPE_CHECKING:
    from schemaspine.core.settings import SchemaSpineSettings

logger = get_logger(__name__)


@dataclass
class MigrationResult:
    """Result of a runner call."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    reverted: list[str] = field(default_factory=list)
    current: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.applied or self.reverted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": list(self.applied),
            "skipped": list(self.skipped),
            "reverted": list(self.reverted),
            "current": self.current,
        }


class MigrationRunner:
    """Applies and reverts revisions against one store.

    Parameters
    ----------
    manager
        Connection manager for the store.
    graph
        Revisions to apply.
    history_table
        Ledger table name.
    capabilities
        In-place ALTER support; derived from the SQLite version by default.
    recreate
        ``"always"`` routes every column ALTER through the batch rewriter.
    lock_timeout
        Seconds to wait for the exclusive section (default: the manager's).
    """

    def __init__(
        self,
        manager: ConnectionManager,
        graph: RevisionGraph,
        *,
        history_table: str = DEFAULT_HISTORY_TABLE,
        capabilities: StoreCapabilities | None = None,
        recreate: str = "auto",
        lock_timeout: float | None = None,
    ) -> None:
        self.manager = manager
        self.graph = graph
        self.ledger = HistoryLedger(history_table)
        self.introspector = SchemaIntrospector(history_table)
        self.rewriter = BatchTableRewriter(manager, self.introspector)
        if capabilities is None:
            if recreate == "always":
                capabilities = StoreCapabilities.batch_only()
            else:
                capabilities = StoreCapabilities.for_sqlite_version(manager.sqlite_version)
        self.capabilities = capabilities
        self.lock_timeout = lock_timeout

    @classmethod
    def from_settings(
        cls,
        settings: SchemaSpineSettings | None = None,
        *,
        manager: ConnectionManager | None = None,
        graph: RevisionGraph | None = None,
    ) -> MigrationRunner:
        if settings is None:
            from schemaspine.core.settings import get_settings

            settings = get_settings()
        return cls(
            manager or ConnectionManager.from_settings(settings),
            graph if graph is not None else RevisionStore(settings.versions_dir).load(),
            history_table=settings.history_table,
            recreate=settings.recreate,
            lock_timeout=settings.lock_timeout,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def history(self) -> list[RevisionHistoryRecord]:
        """Ledger records in application order."""
        with self.manager.session(AccessMode.READ, timeout=self.lock_timeout) as scope:
            return self.ledger.records(scope)

    def current(self) -> RevisionHistoryRecord | None:
        """The most recently applied revision, or ``None`` for an empty ledger."""
        records = self.history()
        return records[-1] if records else None

    def heads(self) -> list[str]:
        return self.graph.heads()

    def pending(self, target: str | None = None) -> list[Revision]:
        """Revisions ``upgrade(target)`` would apply, in order."""
        target_id = self.graph.resolve(target)
        if target_id is None:
            return []
        applied = {r.revision_id for r in self.history()}
        return [r for r in self.graph.resolve_path(None, target_id) if r.id not in applied]

    def reflect(self) -> dict[str, SchemaSnapshot]:
        """Live snapshots of every managed table."""
        with self.manager.session(AccessMode.READ, timeout=self.lock_timeout) as scope:
            return self.introspector.reflect(scope)

    def autogenerate(
        self, declared: Mapping[str, SchemaSnapshot] | Iterable[SchemaSnapshot]
    ) -> list[Operation]:
        """Operations that bring the store (at head) to ``declared``."""
        outstanding = self.pending()
        if outstanding:
            raise MigrationError(
                f"Store is not at head ({len(outstanding)} pending revision(s)); upgrade before autogenerating"
            )
        return self.introspector.diff(declared, self.reflect())

    # ------------------------------------------------------------------
    # Upgrade / downgrade
    # ------------------------------------------------------------------

    def upgrade(self, target: str | None = None) -> MigrationResult:
        """Apply every unapplied ancestor of ``target`` (default: the unique head)."""
        self._require_no_active_scope()
        target_id = self.graph.resolve(target)
        plan = list(self.graph.resolve_path(None, target_id)) if target_id is not None else []
        result = MigrationResult()

        with self.manager.exclusive_section(self.lock_timeout):
            with self.manager.session(AccessMode.EXCLUSIVE, timeout=self.lock_timeout) as scope:
                self.ledger.ensure(scope)
                records = self.ledger.records(scope)
            applied = {r.revision_id for r in records}
            last_applied = records[-1].revision_id if records else None
            self._warn_unknown(applied)

            logger.info("migration.upgrade_started", target=target_id, pending=sum(1 for r in plan if r.id not in applied))
            for revision in plan:
                if revision.id in applied:
                    result.skipped.append(revision.id)
                    continue
                self._run(revision, revision.operations, last_applied, forward=True)
                result.applied.append(revision.id)
                last_applied = revision.id

        result.current = last_applied
        logger.info("migration.upgrade_finished", applied=len(result.applied), current=result.current)
        return result

    def downgrade(self, target: str) -> MigrationResult:
        """Revert every applied revision that is not an ancestor of ``target``.

        ``target="base"`` reverts everything.  Every inverse is computed
        before the first write, so an irreversible operation anywhere in the
        range blocks the whole downgrade.
        """
        self._require_no_active_scope()
        target_id = self.graph.resolve(target)
        keep = self.graph.ancestors(target_id)
        result = MigrationResult()

        with self.manager.exclusive_section(self.lock_timeout):
            with self.manager.session(AccessMode.EXCLUSIVE, timeout=self.lock_timeout) as scope:
                records = self.ledger.records(scope)
            applied_ids = [r.revision_id for r in records]
            if target_id is not None and target_id not in applied_ids:
                raise RevisionNotFoundError(target_id, f"Revision {target_id} is not applied; cannot downgrade to it")

            to_revert = [rid for rid in reversed(applied_ids) if rid not in keep]
            plans: list[tuple[Revision, list[Operation]]] = []
            for rid in to_revert:
                if rid not in self.graph:
                    raise RevisionNotFoundError(rid, f"Applied revision {rid} is not in the revision graph")
                revision = self.graph.get(rid)
                try:
                    inverses = [op.invert() for op in reversed(revision.operations)]
                except SchemaSpineError as exc:
                    raise exc.with_context(revision=rid)
                plans.append((revision, inverses))

            logger.info("migration.downgrade_started", target=target_id, reverting=len(plans))
            remaining = list(applied_ids)
            for revision, inverses in plans:
                self._run(revision, inverses, remaining[-1] if remaining else None, forward=False)
                remaining.remove(revision.id)
                result.reverted.append(revision.id)

        result.current = remaining[-1] if remaining else None
        logger.info("migration.downgrade_finished", reverted=len(result.reverted), current=result.current)
        return result

    def stamp(self, revision: str) -> MigrationResult:
        """Record ``revision`` and its unapplied ancestors without executing them.

        ``"base"`` clears the ledger.
        """
        self._require_no_active_scope()
        target_id = self.graph.resolve(revision)
        result = MigrationResult()

        with self.manager.exclusive_section(self.lock_timeout):
            with self.manager.session(AccessMode.EXCLUSIVE, timeout=self.lock_timeout) as scope:
                self.ledger.ensure(scope)
                records = self.ledger.records(scope)
                if target_id is None:
                    self.ledger.clear(scope)
                    result.reverted = [r.revision_id for r in reversed(records)]
                else:
                    applied = {r.revision_id for r in records}
                    for rid in self.graph.topological_order(self.graph.ancestors(target_id)):
                        if rid in applied:
                            result.skipped.append(rid)
                        else:
                            self.ledger.append(scope, rid)
                            result.applied.append(rid)
                latest = self.ledger.latest(scope)

        result.current = latest.revision_id if latest else None
        logger.info("migration.stamped", revision=target_id, recorded=len(result.applied))
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_no_active_scope(self) -> None:
        if self.manager.active_scope() is not None:
            raise SessionStateError(
                "Migrations cannot run inside an active SessionScope; each revision needs its own transaction"
            )

    def _warn_unknown(self, applied: Iterable[str]) -> None:
        unknown = sorted(rid for rid in applied if rid not in self.graph)
        if unknown:
            logger.warning("migration.unknown_revisions", revisions=unknown)

    def _run(
        self,
        revision: Revision,
        operations: Sequence[Operation],
        last_applied: str | None,
        *,
        forward: bool,
    ) -> None:
        """Execute ``operations`` and update the ledger in one transaction."""
        label: str | None = None
        with LogContext(revision=revision.id):
            try:
                with self.manager.session(
                    AccessMode.EXCLUSIVE, enforce_foreign_keys=False, timeout=self.lock_timeout
                ) as scope:
                    executor = OperationExecutor(
                        scope,
                        self.capabilities,
                        introspector=self.introspector,
                        rewriter=self.rewriter,
                    )
                    for operation in operations:
                        label = operation.describe()
                        executor.execute(operation)
                    label = None
                    check_foreign_keys(scope)
                    if forward:
                        self.ledger.append(scope, revision.id)
                    else:
                        self.ledger.remove(scope, revision.id)
            except SchemaSpineError as exc:
                logger.error(
                    "migration.revision_failed",
                    operation=label,
                    error=exc.message,
                    error_type=type(exc).__name__,
                )
                raise exc.with_context(revision=revision.id, operation=label, last_applied=last_applied)
            except sa_exc.SQLAlchemyError as exc:
                logger.error("migration.revision_failed", operation=label, error=str(exc))
                raise MigrationError(
                    f"Revision {revision.id} failed: {exc}",
                    cause=exc,
                ).with_context(revision=revision.id, operation=label, last_applied=last_applied) from exc

            event = "migration.revision_applied" if forward else "migration.revision_reverted"
            logger.info(event, operations=len(operations), message=revision.message)


__all__ = ["MigrationResult", "MigrationRunner"]
