"""Tests for schemaspine.core.errors."""

import pytest

from schemaspine.core.errors import (
    AmbiguousRenameWarning,
    ConfigError,
    CycleError,
    DuplicateRevisionError,
    ErrorCategory,
    ErrorContext,
    IntegrityViolationError,
    IrreversibleOperationError,
    LockTimeoutError,
    MigrationError,
    MultipleHeadsError,
    RevisionError,
    SchemaSpineError,
    exit_code_for,
    is_retryable,
)


class TestErrorContext:
    """Test ErrorContext serialization."""

    def test_empty_context_serializes_to_nothing(self):
        """An empty context contributes no keys."""
        assert ErrorContext().to_dict() == {}

    def test_to_dict_includes_set_fields_and_metadata(self):
        """Set fields and metadata are flattened into one dict."""
        ctx = ErrorContext(revision="abc", table="users", metadata={"file": "0001.yaml"})
        assert ctx.to_dict() == {"revision": "abc", "table": "users", "file": "0001.yaml"}


class TestSchemaSpineError:
    """Test the base error type."""

    def test_defaults(self):
        """A bare error is internal, not retryable, and exits 1."""
        err = SchemaSpineError("boom")
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert err.exit_code == 1
        assert str(err) == "boom"

    def test_with_context_keeps_innermost_values(self):
        """The layer closest to the failure wins."""
        err = SchemaSpineError("boom").with_context(table="orders")
        err.with_context(table="users", revision="r1", extra="x")
        assert err.context.table == "orders"
        assert err.context.revision == "r1"
        assert err.context.metadata == {"extra": "x"}

    def test_with_context_ignores_none(self):
        """None values do not overwrite anything."""
        err = SchemaSpineError("boom").with_context(operation=None)
        assert err.context.operation is None

    def test_str_includes_context(self):
        """Context is appended to the message in brackets."""
        err = SchemaSpineError("boom").with_context(revision="r1")
        assert str(err) == "boom [revision=r1]"

    def test_cause_is_chained(self):
        """The cause becomes __cause__ and appears in to_dict."""
        cause = ValueError("driver")
        err = MigrationError("failed", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "driver"


class TestHierarchy:
    """Test the error subclasses."""

    def test_duplicate_is_a_cycle_error(self):
        """Duplicate ids are reported as graph errors."""
        assert issubclass(DuplicateRevisionError, CycleError)
        assert issubclass(CycleError, RevisionError)

    def test_multiple_heads_lists_heads(self):
        """The competing heads are kept and named in the message."""
        err = MultipleHeadsError(["a1", "b2"])
        assert err.heads == ["a1", "b2"]
        assert "a1" in str(err) and "b2" in str(err)

    def test_integrity_violation_serializes_violations(self):
        """Violation rows are serialized as lists."""
        err = IntegrityViolationError("bad", violations=[("orders", 1, "users", 0)])
        assert err.to_dict()["violations"] == [["orders", 1, "users", 0]]
        assert err.category == ErrorCategory.INTEGRITY

    def test_lock_timeout_is_retryable(self):
        """Only lock timeouts are worth retrying."""
        err = LockTimeoutError("wait", mode="write", timeout=0.1)
        assert is_retryable(err)
        assert not is_retryable(ConfigError("bad"))
        assert not is_retryable(ValueError("plain"))


class TestExitCodes:
    """Test CLI exit code mapping."""

    @pytest.mark.parametrize(
        "error, code",
        [
            (MultipleHeadsError(["a", "b"]), 3),
            (LockTimeoutError("wait"), 4),
            (IrreversibleOperationError("no inverse"), 5),
            (ConfigError("bad"), 1),
            (RuntimeError("other"), 1),
        ],
    )
    def test_exit_code_for(self, error, code):
        """Each error class maps to its documented exit code."""
        assert exit_code_for(error) == code


class TestWarnings:
    """Test warning categories."""

    def test_ambiguous_rename_message(self):
        """The warning suggests an explicit RenameColumn."""
        warning = AmbiguousRenameWarning("users", "mail", "email", "TEXT")
        assert issubclass(AmbiguousRenameWarning, UserWarning)
        assert "RenameColumn" in str(warning)
        assert warning.dropped == "mail" and warning.added == "email"
