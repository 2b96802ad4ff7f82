"""Tests for revision ids, YAML revision files and the directory store."""

from __future__ import annotations

import re
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from schemaspine.core.errors import ConfigError, MultipleHeadsError
from schemaspine.core.migrations.graph import RevisionGraph
from schemaspine.core.migrations.operations import AddColumn, CreateTable, RenameColumn
from schemaspine.core.migrations.revision import Revision, RevisionDocument, RevisionStore, compute_revision_id
from schemaspine.core.schema import ColumnSpec

PHONE_OP = AddColumn(table="users", column=ColumnSpec(name="phone", type="TEXT"))


class TestRevisionId:
    def test_deterministic(self):
        first = compute_revision_id(["a1"], "add phone", [PHONE_OP], 2)
        assert first == compute_revision_id(["a1"], "add phone", [PHONE_OP], 2)
        assert re.fullmatch(r"[0-9a-f]{12}", first)

    def test_sequence_makes_identical_content_unique(self):
        assert compute_revision_id([], "noop", [], 1) != compute_revision_id([], "noop", [], 2)

    def test_content_changes_id(self):
        base = compute_revision_id([], "m", [PHONE_OP], 1)
        renamed = RenameColumn(table="users", old="phone", new="mobile")
        assert compute_revision_id([], "m", [renamed], 1) != base
        assert compute_revision_id([], "other", [PHONE_OP], 1) != base

    def test_create_derives_id(self):
        revision = Revision.create(message="add phone", operations=[PHONE_OP], sequence=3)
        assert revision.id == compute_revision_id([], "add phone", [PHONE_OP], 3)
        assert revision.is_base
        assert not revision.is_merge

    def test_rejects_odd_ids(self):
        with pytest.raises(ValidationError):
            Revision(id="../etc")


class TestFilename:
    def test_filename_sorts_by_sequence(self):
        revision = Revision.create(message="Add phone to Users!", sequence=7)
        assert revision.filename() == f"0007_{revision.id}_add_phone_to_users.yaml"

    def test_empty_message_slug(self):
        assert Revision.create(sequence=1).slug() == "revision"


class TestRevisionDocument:
    def test_yaml_round_trip(self, users_table):
        revision = Revision.create(
            parents=["a41be0c95f2e"],
            message="users",
            operations=[CreateTable(table=users_table), PHONE_OP],
            sequence=2,
            created_at=datetime(2026, 10, 18, 9, 12, tzinfo=UTC),
        )
        text = RevisionDocument.from_revision(revision).to_yaml()
        assert text.startswith("apiVersion: schemaspine.io/v1\nkind: Revision\n")
        assert RevisionDocument.from_yaml(text).to_revision() == revision

    def test_wrong_kind(self):
        with pytest.raises(ConfigError, match="Invalid revision document"):
            RevisionDocument.from_yaml("apiVersion: schemaspine.io/v1\nkind: Workflow\nmetadata: {id: abc}\n")

    def test_bad_operation(self):
        text = (
            "apiVersion: schemaspine.io/v1\nkind: Revision\nmetadata: {id: abc}\n"
            "spec:\n  operations:\n    - op: truncate\n      table: users\n"
        )
        with pytest.raises(ConfigError):
            RevisionDocument.from_yaml(text)

    def test_malformed_yaml(self):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            RevisionDocument.from_yaml("metadata: [unclosed")

    def test_file_path_in_context(self, tmp_path):
        path = tmp_path / "0001_bad.yaml"
        path.write_text("kind: Revision\n", encoding="utf-8")
        with pytest.raises(ConfigError) as exc_info:
            RevisionDocument.from_yaml_file(path)
        assert exc_info.value.context.metadata["file"] == str(path)


class TestRevisionStore:
    def test_missing_directory_is_empty(self, tmp_path):
        store = RevisionStore(tmp_path / "versions")
        assert store.paths() == []
        assert len(store.load()) == 0

    def test_create_chains_on_head(self, tmp_path, users_table):
        store = RevisionStore(tmp_path / "versions")
        graph = store.load()
        first = store.create(graph, "create users", [CreateTable(table=users_table)])
        second = store.create(graph, "add phone", [PHONE_OP])

        assert first.parents == ()
        assert second.parents == (first.id,)
        assert [p.name for p in store.paths()] == [first.filename(), second.filename()]

        reloaded = store.load()
        assert reloaded.topological_order() == [first.id, second.id]
        assert reloaded.get(second.id).operations == (PHONE_OP,)

    def test_create_refuses_multiple_heads(self, tmp_path):
        store = RevisionStore(tmp_path / "versions")
        graph = store.load()
        base = store.create(graph, "base")
        store.create(graph, "left", parents=[base.id])
        store.create(graph, "right", parents=[base.id])
        with pytest.raises(MultipleHeadsError):
            store.create(graph, "on top")

    def test_merge_writes_file(self, tmp_path):
        store = RevisionStore(tmp_path / "versions")
        graph = store.load()
        base = store.create(graph, "base")
        left = store.create(graph, "left", parents=[base.id])
        right = store.create(graph, "right", parents=[base.id])

        merge = store.merge(graph, [left.id, right.id], "merge branches")
        assert merge.parents == (left.id, right.id)
        assert store.load().head() == merge.id
