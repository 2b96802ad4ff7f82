"""Revisions and revision files.

A ``Revision`` is an immutable, identified unit of schema change with one
parent (linear history), several parents (a merge) or none (a base).
Ids are content-addressed: the first 12 hex digits of SHA-256 over the
parents, message, operations and creation sequence.  The sequence makes
ids unique even when two revisions carry identical content, so an id is
never reused.

Revision files are YAML documents in the versions directory::

    apiVersion: schemaspine.io/v1
    kind: Revision
    metadata:
      id: 3f9a1c2b7d10
      parents: [a41be0c95f2e]
      message: add phone to users
      sequence: 2
      created_at: '2026-10-18T09:12:44.120512+00:00'
    spec:
      operations:
        - op: add_column
          table: users
          column: {name: phone, type: TEXT, nullable: true}

named ``<sequence>_<id>_<slug>.yaml`` so a directory listing reads in
creation order.

Manifesto:
    Migration authors should be able to read, review and hand-edit a
    revision without running Python.  The YAML form is validated by the
    same pydantic models the engine executes, so both paths are
    first-class.

Tags:
    schemaspine, migrations, revision, yaml, pydantic

Doc-Types:
    api-reference
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from schemaspine.core.errors import ConfigError, MultipleHeadsError
from schemaspine.core.logging import get_logger
from schemaspine.core.migrations.operations import Operation
from schemaspine.core.timestamps import utc_now

if TYPE_CHECKING:
    from schemaspine.core.migrations.graph import RevisionGraph

logger = get_logger(__name__)

API_VERSION = "schemaspine.io/v1"
REVISION_ID_LENGTH = 12


def compute_revision_id(
    parents: Sequence[str],
    message: str,
    operations: Sequence[Operation],
    sequence: int,
) -> str:
    """Content-addressed revision id (12 hex digits)."""
    payload = json.dumps(
        {
            "parents": list(parents),
            "message": message,
            "operations": [op.model_dump(mode="json") for op in operations],
            "sequence": sequence,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:REVISION_ID_LENGTH]


class Revision(BaseModel):
    """Immutable revision record."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    parents: tuple[str, ...] = ()
    message: str = ""
    operations: tuple[Operation, ...] = ()
    sequence: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    applied_at: datetime | None = None

    @field_validator("id")
    @classmethod
    def _plain_id(cls, value: str) -> str:
        if not re.fullmatch(r"[A-Za-z0-9_\-]+", value):
            raise ValueError(f"revision id must be alphanumeric, got {value!r}")
        return value

    @classmethod
    def create(
        cls,
        *,
        parents: Iterable[str] = (),
        message: str = "",
        operations: Iterable[Operation] = (),
        sequence: int = 0,
        created_at: datetime | None = None,
    ) -> Revision:
        """Build a revision whose id is derived from its content."""
        parents = tuple(parents)
        operations = tuple(operations)
        return cls(
            id=compute_revision_id(parents, message, operations, sequence),
            parents=parents,
            message=message,
            operations=operations,
            sequence=sequence,
            created_at=created_at or utc_now(),
        )

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def is_base(self) -> bool:
        return not self.parents

    def mark_applied(self, applied_at: datetime) -> Revision:
        return self.model_copy(update={"applied_at": applied_at})

    def slug(self) -> str:
        return re.sub(r"[^a-z0-9]+", "_", self.message.lower()).strip("_")[:40] or "revision"

    def filename(self) -> str:
        return f"{self.sequence:04d}_{self.id}_{self.slug()}.yaml"


# ── YAML document ────────────────────────────────────────────────────────


class RevisionMetadataSpec(BaseModel):
    """Metadata section of a revision file."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Revision id")
    parents: list[str] = Field(default_factory=list, description="Parent revision ids")
    message: str = Field(default="", description="Human-readable description")
    sequence: int = Field(default=0, ge=0, description="Creation sequence")
    created_at: datetime = Field(default_factory=utc_now, description="Creation time (UTC)")


class RevisionSpecSection(BaseModel):
    """The ``spec`` section: the ordered operations."""

    model_config = ConfigDict(extra="forbid")

    operations: list[Operation] = Field(default_factory=list)


class RevisionDocument(BaseModel):
    """Complete YAML revision file."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["schemaspine.io/v1"] = Field(default=API_VERSION)
    kind: Literal["Revision"] = Field(default="Revision")
    metadata: RevisionMetadataSpec
    spec: RevisionSpecSection = Field(default_factory=RevisionSpecSection)

    def to_revision(self) -> Revision:
        return Revision(
            id=self.metadata.id,
            parents=tuple(self.metadata.parents),
            message=self.metadata.message,
            operations=tuple(self.spec.operations),
            sequence=self.metadata.sequence,
            created_at=self.metadata.created_at,
        )

    @classmethod
    def from_revision(cls, revision: Revision) -> RevisionDocument:
        return cls(
            metadata=RevisionMetadataSpec(
                id=revision.id,
                parents=list(revision.parents),
                message=revision.message,
                sequence=revision.sequence,
                created_at=revision.created_at,
            ),
            spec=RevisionSpecSection(operations=list(revision.operations)),
        )

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.model_dump(mode="json", exclude_none=True), sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> RevisionDocument:
        """Parse and validate YAML content.

        Raises
        ------
        ConfigError
            If the YAML is malformed or does not match the schema.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", cause=e) from e
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid revision document: {e}", cause=e) from e

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> RevisionDocument:
        content = Path(path).read_text(encoding="utf-8")
        try:
            return cls.from_yaml(content)
        except ConfigError as e:
            raise e.with_context(file=str(path))


# ── Directory store ──────────────────────────────────────────────────────


class RevisionStore:
    """Reads and writes revision files in one versions directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def __repr__(self) -> str:
        return f"RevisionStore({str(self.directory)!r})"

    def paths(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(self.directory.glob("*.yaml"))

    def load_revisions(self) -> list[Revision]:
        revisions = [RevisionDocument.from_yaml_file(p).to_revision() for p in self.paths()]
        # parents are always created before children, so sequence order is insertable
        return sorted(revisions, key=lambda r: (r.sequence, r.id))

    def load(self) -> RevisionGraph:
        from schemaspine.core.migrations.graph import RevisionGraph

        graph = RevisionGraph()
        for revision in self.load_revisions():
            graph.add_revision(revision)
        logger.debug("revisions.loaded", directory=str(self.directory), count=len(graph))
        return graph

    def save(self, revision: Revision) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / revision.filename()
        path.write_text(RevisionDocument.from_revision(revision).to_yaml(), encoding="utf-8")
        logger.info("revision.written", revision=revision.id, path=str(path))
        return path

    def create(
        self,
        graph: RevisionGraph,
        message: str,
        operations: Iterable[Operation] = (),
        parents: Sequence[str] | None = None,
    ) -> Revision:
        """Create a revision on top of the current head, add it to ``graph`` and save it."""
        if parents is None:
            heads = graph.heads()
            if len(heads) > 1:
                raise MultipleHeadsError(heads)
            parents = heads
        revision = Revision.create(
            parents=parents,
            message=message,
            operations=operations,
            sequence=graph.next_sequence(),
        )
        graph.add_revision(revision)
        self.save(revision)
        return revision

    def merge(self, graph: RevisionGraph, parents: Sequence[str], message: str) -> Revision:
        revision = graph.merge(parents, message)
        self.save(revision)
        return revision


__all__ = [
    "API_VERSION",
    "Revision",
    "RevisionDocument",
    "RevisionMetadataSpec",
    "RevisionSpecSection",
    "RevisionStore",
    "compute_revision_id",
]
