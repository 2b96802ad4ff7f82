"""
Structured error types for schemaspine.

Every failure raised by the migration engine or the connection layer is a
``SchemaSpineError`` subclass carrying a category, a retryable flag, the
CLI exit code it maps to, and an ``ErrorContext`` naming the revision,
operation and table involved.

Manifesto:
    A failed migration must say *which* revision and *which* operation
    failed, and what the store looks like now.  Generic exceptions lose
    that, so every error here carries structured context that the runner
    fills in before re-raising.

    - **Typed hierarchy:** Revision, schema-change, lock and session errors
    - **Explicit retry semantics:** Only lock timeouts are retryable
    - **Rich context:** revision / operation / table / last_applied
    - **Error chaining:** Driver exceptions kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                     SchemaSpineError                          │
        │        (category, retryable, exit_code, context, cause)       │
        ├──────────────────────────────────────────────────────────────┤
        │  RevisionError          SchemaChangeError        LockTimeout  │
        │  (REVISION)             (SCHEMA)                 (LOCK)       │
        │     │                      │                                  │
        │  CycleError             UnsupportedOperation     SessionState │
        │   └ DuplicateRevision   NonNullableWithoutDefault(SESSION)    │
        │  MultipleHeadsError     IrreversibleOperation                 │
        │  RevisionNotFound       IntegrityViolation       Migration    │
        │                                                  Config       │
        └──────────────────────────────────────────────────────────────┘

    Warnings (surfaced, never raised): ``AmbiguousRenameWarning``,
    ``SchemaDriftWarning``.

Examples:
    >>> err = MultipleHeadsError(["a1", "b2"])
    >>> err.exit_code
    3
    >>> err.with_context(operation="upgrade").context.operation
    'upgrade'

Tags:
    error-handling, exception-hierarchy, migrations, schemaspine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    REVISION = "REVISION"  # Graph structure, unknown ids, heads
    SCHEMA = "SCHEMA"  # Operations the store cannot express or invert
    INTEGRITY = "INTEGRITY"  # Referential / constraint violations
    LOCK = "LOCK"  # Write lock and busy-store timeouts
    SESSION = "SESSION"  # Scope misuse
    DATABASE = "DATABASE"  # Driver errors
    CONFIG = "CONFIG"  # Invalid settings
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        revision: Revision id being applied or reverted
        operation: Short description of the operation (``AddColumn users.phone``)
        table: Table the operation touched
        last_applied: Last revision committed before the failure
        metadata: Any additional key/value pairs
    """

    revision: str | None = None
    operation: str | None = None
    table: str | None = None
    last_applied: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["revision", "operation", "table", "last_applied"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SchemaSpineError(Exception):
    """
    Base exception for all schemaspine errors.

    Subclasses set ``default_category``, ``default_retryable`` and
    ``exit_code`` class attributes.  The CLI maps an error to a process
    exit code by reading ``exit_code`` alone.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False
    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SchemaSpineError:
        """
        Add context to this error (fluent API).

        Existing values are kept, so the innermost layer that knew the table
        wins over an outer layer that only knows the revision.

        Usage:
            raise exc.with_context(revision=rev.id, last_applied=previous)
        """
        for key, value in kwargs.items():
            if value is None:
                continue
            if hasattr(self.context, key) and key != "metadata":
                if getattr(self.context, key) is None:
                    setattr(self.context, key, value)
            else:
                self.context.metadata.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        ctx = self.context.to_dict()
        if not ctx:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in ctx.items())
        return f"{self.message} [{details}]"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# REVISION GRAPH ERRORS
# =============================================================================


class RevisionError(SchemaSpineError):
    """Revision graph structure error. Raised before any store mutation."""

    default_category = ErrorCategory.REVISION


class CycleError(RevisionError):
    """Adding a revision would create a cycle or reference a missing parent."""


class DuplicateRevisionError(CycleError):
    """A revision id is already present in the graph."""

    def __init__(self, revision_id: str):
        self.revision_id = revision_id
        super().__init__(f"Revision {revision_id} already exists; revision ids are never reused")


class MultipleHeadsError(RevisionError):
    """The graph has more than one head and the target was 'latest'."""

    exit_code = 3

    def __init__(self, heads: Sequence[str]):
        self.heads = list(heads)
        super().__init__(
            f"Multiple heads present ({', '.join(self.heads)}); "
            "create a merge revision or name an explicit target"
        )


class RevisionNotFoundError(RevisionError):
    """Revision id (or prefix) not known to the graph or not applied."""

    def __init__(self, revision_id: str, message: str | None = None):
        self.revision_id = revision_id
        super().__init__(message or f"Unknown revision: {revision_id}")


# =============================================================================
# SCHEMA CHANGE ERRORS
# =============================================================================


class SchemaChangeError(SchemaSpineError):
    """An operation cannot be applied or inverted as requested."""

    default_category = ErrorCategory.SCHEMA


class UnsupportedOperationError(SchemaChangeError):
    """The store (or the rewriter) cannot express this operation."""


class NonNullableWithoutDefaultError(SchemaChangeError):
    """A new NOT NULL column has no default to populate existing rows."""

    def __init__(self, table: str, column: str):
        self.table = table
        self.column = column
        super().__init__(
            f"Column {table}.{column} is NOT NULL without a default; existing rows cannot be populated",
            context=ErrorContext(table=table),
        )


class IrreversibleOperationError(SchemaChangeError):
    """An operation has no defined inverse."""

    exit_code = 5


class IntegrityViolationError(SchemaChangeError):
    """Referential or constraint integrity would be broken."""

    default_category = ErrorCategory.INTEGRITY

    def __init__(
        self,
        message: str,
        *,
        violations: Iterable[tuple[Any, ...]] = (),
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.violations = list(violations)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.violations:
            result["violations"] = [list(v) for v in self.violations]
        return result


# =============================================================================
# CONNECTION / SESSION ERRORS
# =============================================================================


class LockTimeoutError(SchemaSpineError):
    """
    Timed out waiting for store access.

    Retryable at the caller's discretion; the core never retries on its own.
    """

    default_category = ErrorCategory.LOCK
    default_retryable = True
    exit_code = 4

    def __init__(self, message: str, *, mode: str | None = None, timeout: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.mode = mode
        self.timeout = timeout


class SessionStateError(SchemaSpineError):
    """A SessionScope or ConnectionHandle was used in an invalid state."""

    default_category = ErrorCategory.SESSION


class MigrationError(SchemaSpineError):
    """Driver-level failure while applying a revision."""

    default_category = ErrorCategory.DATABASE


class ConfigError(SchemaSpineError):
    """Configuration error. Never retryable."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# WARNINGS
# =============================================================================


class AmbiguousRenameWarning(UserWarning):
    """A same-typed column add and drop in one table; possibly a rename."""

    def __init__(self, table: str, dropped: str, added: str, type_: str):
        self.table = table
        self.dropped = dropped
        self.added = added
        self.type_ = type_
        super().__init__(
            f"{table}: dropping {dropped!r} and adding {added!r} ({type_}); "
            "renames are not inferred, use an explicit RenameColumn to keep data"
        )


class SchemaDriftWarning(UserWarning):
    """A live/declared difference the differ does not turn into operations."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, SchemaSpineError):
        return error.retryable
    return False


def exit_code_for(error: BaseException) -> int:
    """Map an exception to the CLI exit code."""
    if isinstance(error, SchemaSpineError):
        return error.exit_code
    return 1


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SchemaSpineError",
    # Revision graph
    "RevisionError",
    "CycleError",
    "DuplicateRevisionError",
    "MultipleHeadsError",
    "RevisionNotFoundError",
    # Schema change
    "SchemaChangeError",
    "UnsupportedOperationError",
    "NonNullableWithoutDefaultError",
    "IrreversibleOperationError",
    "IntegrityViolationError",
    # Connection / session
    "LockTimeoutError",
    "SessionStateError",
    "MigrationError",
    "ConfigError",
    # Warnings
    "AmbiguousRenameWarning",
    "SchemaDriftWarning",
    # Utilities
    "is_retryable",
    "exit_code_for",
]
