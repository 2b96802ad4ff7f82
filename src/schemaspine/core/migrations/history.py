"""History ledger: which revisions are applied to the store.

One table, ``(revision_id TEXT PRIMARY KEY, applied_at TIMESTAMP NOT
NULL)``, written only by ``MigrationRunner`` inside the same transaction
as the revision it records, so a record exists exactly when the
revision's changes do.  ``applied_at`` is stored as ISO 8601 UTC text;
records are read back in application order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from schemaspine.core.ddl import quote
from schemaspine.core.logging import get_logger
from schemaspine.core.session import SessionScope
from schemaspine.core.timestamps import from_iso8601, to_iso8601, utc_now

logger = get_logger(__name__)

DEFAULT_HISTORY_TABLE = "schemaspine_history"


@dataclass(frozen=True)
class RevisionHistoryRecord:
    """One applied revision."""

    revision_id: str
    applied_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"revision_id": self.revision_id, "applied_at": to_iso8601(self.applied_at)}


class HistoryLedger:
    """Reads and writes the ledger table through a ``SessionScope``."""

    def __init__(self, table_name: str = DEFAULT_HISTORY_TABLE):
        self.table_name = table_name
        self._table = quote(table_name)

    def __repr__(self) -> str:
        return f"HistoryLedger({self.table_name!r})"

    def exists(self, scope: SessionScope) -> bool:
        row = scope.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = :name",
            {"name": self.table_name},
        ).first()
        return row is not None

    def ensure(self, scope: SessionScope) -> bool:
        """Create the ledger table if absent; return True when created."""
        if self.exists(scope):
            return False
        scope.execute(
            f"CREATE TABLE {self._table} ("
            "revision_id TEXT PRIMARY KEY, "
            "applied_at TIMESTAMP NOT NULL)"
        )
        logger.info("history.ledger_created", table=self.table_name)
        return True

    def records(self, scope: SessionScope) -> list[RevisionHistoryRecord]:
        """All records in application order."""
        if not self.exists(scope):
            return []
        rows = scope.execute(
            f"SELECT revision_id, applied_at FROM {self._table} ORDER BY applied_at, rowid"
        ).all()
        return [RevisionHistoryRecord(revision_id=r[0], applied_at=from_iso8601(str(r[1]))) for r in rows]

    def applied_ids(self, scope: SessionScope) -> set[str]:
        return {r.revision_id for r in self.records(scope)}

    def latest(self, scope: SessionScope) -> RevisionHistoryRecord | None:
        records = self.records(scope)
        return records[-1] if records else None

    def append(self, scope: SessionScope, revision_id: str, applied_at: datetime | None = None) -> RevisionHistoryRecord:
        record = RevisionHistoryRecord(revision_id=revision_id, applied_at=applied_at or utc_now())
        scope.execute(
            f"INSERT INTO {self._table} (revision_id, applied_at) VALUES (:revision_id, :applied_at)",
            record.to_dict(),
        )
        return record

    def remove(self, scope: SessionScope, revision_id: str) -> None:
        scope.execute(f"DELETE FROM {self._table} WHERE revision_id = :revision_id", {"revision_id": revision_id})

    def clear(self, scope: SessionScope) -> None:
        if self.exists(scope):
            scope.execute(f"DELETE FROM {self._table}")


__all__ = ["DEFAULT_HISTORY_TABLE", "HistoryLedger", "RevisionHistoryRecord"]
