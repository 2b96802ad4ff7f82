"""Revision graph: a DAG of revisions keyed by id.

Revisions live in an insertion-ordered arena (``id -> Revision``) with a
``parent -> children`` index beside it; edges are parent ids, never object
references, so persistence and traversal are plain dictionary walks.

Manifesto:
    Branches happen whenever two people write a migration on the same
    day.  The graph makes that visible (``heads()`` > 1) instead of
    silently picking one, and makes the fix explicit (``merge()``).

Architecture:
    ::

        add_revision(r)    parents must already exist   ──► CycleError
                           id must be new                ──► DuplicateRevisionError
        heads() / head()   revisions without children    ──► MultipleHeadsError
        resolve(target)    head | base | id | id-prefix  ──► RevisionNotFoundError
        resolve_path(a, b) forward:  ancestors(b) - ancestors(a), topological
                           backward: ancestors(a) - ancestors(b), reverse

    Because a parent must exist before its child is added, the arena is
    acyclic by construction.  Topological order is Kahn's algorithm with
    ties broken by insertion order, so the same graph always yields the
    same sequence.

Examples:
    >>> graph = RevisionGraph()
    >>> base = Revision.create(message="users")
    >>> graph.add_revision(base)
    >>> graph.head() == base.id
    True

Tags:
    schemaspine, migrations, revision-graph, dag, topological-sort

Doc-Types:
    api-reference
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum

from schemaspine.core.errors import (
    CycleError,
    DuplicateRevisionError,
    MultipleHeadsError,
    RevisionError,
    RevisionNotFoundError,
)
from schemaspine.core.migrations.revision import Revision

HEAD = "head"
BASE = "base"


class PathDirection(str, Enum):
    """Direction of travel between two points in history."""

    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass(frozen=True)
class RevisionPath:
    """Ordered revisions to apply (forward) or revert (backward)."""

    direction: PathDirection
    revisions: tuple[Revision, ...] = ()

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.revisions]

    def __len__(self) -> int:
        return len(self.revisions)

    def __iter__(self) -> Iterator[Revision]:
        return iter(self.revisions)


class RevisionGraph:
    """Directed acyclic graph of revisions."""

    def __init__(self, revisions: Iterable[Revision] = ()):
        self._revisions: dict[str, Revision] = {}
        self._children: dict[str, list[str]] = {}
        self._position: dict[str, int] = {}
        for revision in revisions:
            self.add_revision(revision)

    def __len__(self) -> int:
        return len(self._revisions)

    def __contains__(self, revision_id: object) -> bool:
        return revision_id in self._revisions

    def __iter__(self) -> Iterator[Revision]:
        return iter(self._revisions.values())

    def __repr__(self) -> str:
        return f"RevisionGraph(revisions={len(self)}, heads={self.heads()})"

    # =========================================================================
    # Construction
    # =========================================================================

    def add_revision(self, revision: Revision) -> None:
        """Add ``revision``; its parents must already be present."""
        if revision.id in self._revisions:
            raise DuplicateRevisionError(revision.id)
        if revision.id in revision.parents:
            raise CycleError(f"Revision {revision.id} lists itself as a parent")
        if len(set(revision.parents)) != len(revision.parents):
            raise CycleError(f"Revision {revision.id} lists the same parent twice")
        missing = [p for p in revision.parents if p not in self._revisions]
        if missing:
            raise CycleError(
                f"Revision {revision.id} references unknown parent(s) {', '.join(missing)}; "
                "parents must be added first"
            )

        self._position[revision.id] = len(self._revisions)
        self._revisions[revision.id] = revision
        self._children[revision.id] = []
        for parent in revision.parents:
            self._children[parent].append(revision.id)

    def next_sequence(self) -> int:
        return max((r.sequence for r in self._revisions.values()), default=0) + 1

    def merge(self, parents: Sequence[str], message: str) -> Revision:
        """Add a revision joining ``parents`` (ids or prefixes) into one head."""
        resolved = []
        for target in parents:
            revision_id = self.resolve(target)
            if revision_id is None:
                raise RevisionError("Cannot merge the base; name revisions to join")
            if revision_id not in resolved:
                resolved.append(revision_id)
        if len(resolved) < 2:
            raise RevisionError("A merge needs at least two distinct revisions")
        revision = Revision.create(parents=resolved, message=message, sequence=self.next_sequence())
        self.add_revision(revision)
        return revision

    # =========================================================================
    # Accessors
    # =========================================================================

    def get(self, revision_id: str) -> Revision:
        try:
            return self._revisions[revision_id]
        except KeyError:
            raise RevisionNotFoundError(revision_id) from None

    def children(self, revision_id: str) -> list[str]:
        self.get(revision_id)
        return list(self._children[revision_id])

    def heads(self) -> list[str]:
        """Ids of revisions with no children, in insertion order."""
        return [rid for rid, kids in self._children.items() if not kids]

    def head(self) -> str | None:
        """The unique head, or ``None`` for an empty graph."""
        heads = self.heads()
        if len(heads) > 1:
            raise MultipleHeadsError(heads)
        return heads[0] if heads else None

    def bases(self) -> list[str]:
        return [r.id for r in self._revisions.values() if not r.parents]

    def resolve(self, target: str | None) -> str | None:
        """Resolve ``head``/``None``, ``base``, an id or a unique id prefix.

        Returns ``None`` for ``base``.
        """
        if target is None or target == HEAD:
            return self.head()
        if target == BASE:
            return None
        if target in self._revisions:
            return target
        matches = [rid for rid in self._revisions if rid.startswith(target)]
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise RevisionNotFoundError(
                target, f"Revision prefix {target!r} is ambiguous: {', '.join(matches)}"
            )
        raise RevisionNotFoundError(target)

    # =========================================================================
    # Traversal
    # =========================================================================

    def ancestors(self, revision_id: str | None, *, inclusive: bool = True) -> set[str]:
        """``revision_id`` and everything it descends from (empty for base)."""
        if revision_id is None:
            return set()
        self.get(revision_id)
        seen: set[str] = set()
        stack = [revision_id] if inclusive else list(self._revisions[revision_id].parents)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._revisions[current].parents)
        return seen

    def descendants(self, revision_id: str | None, *, inclusive: bool = True) -> set[str]:
        if revision_id is None:
            return set(self._revisions)
        self.get(revision_id)
        seen: set[str] = set()
        stack = [revision_id] if inclusive else list(self._children[revision_id])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._children[current])
        return seen

    def topological_order(self, subset: Iterable[str] | None = None) -> list[str]:
        """Ids in parent-before-child order, ties broken by insertion order.

        With ``subset``, only those ids are ordered; edges to revisions
        outside the subset are ignored.
        """
        nodes = set(self._revisions) if subset is None else set(subset)
        for rid in nodes:
            self.get(rid)

        in_degree = {rid: sum(1 for p in self._revisions[rid].parents if p in nodes) for rid in nodes}
        ready = [(self._position[rid], rid) for rid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        result: list[str] = []

        while ready:
            _, node = heapq.heappop(ready)
            result.append(node)
            for child in self._children[node]:
                if child not in nodes:
                    continue
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (self._position[child], child))

        return result

    def resolve_path(self, from_revision: str | None, to_revision: str | None = HEAD) -> RevisionPath:
        """Revisions between two points in history.

        ``from_revision=None`` means the base; ``to_revision`` defaults to
        the unique head.  Moving between diverged branches is refused.
        """
        start = None if from_revision is None else self.resolve(from_revision)
        end = self.resolve(to_revision)
        start_ancestors = self.ancestors(start)
        end_ancestors = self.ancestors(end)

        if start is None or start in end_ancestors:
            ordered = self.topological_order(end_ancestors - start_ancestors)
            return RevisionPath(PathDirection.FORWARD, tuple(self._revisions[r] for r in ordered))
        if end is None or end in start_ancestors:
            ordered = self.topological_order(start_ancestors - end_ancestors)
            return RevisionPath(PathDirection.BACKWARD, tuple(self._revisions[r] for r in reversed(ordered)))
        raise RevisionError(
            f"Revisions {start} and {end} are on diverged branches; merge them or target a common ancestor"
        )


__all__ = ["HEAD", "BASE", "PathDirection", "RevisionPath", "RevisionGraph"]
