"""
Tests for bulk row document writes
"""
from unittest.mock import MagicMock

import pytest

from conftest import row_data
from models import Row
from services import row_batcher
from services.row_batcher import RowPatch, apply_patches, collapse_patches


class TestCollapsePatches:

    def test_last_patch_wins(self):
        patches = collapse_patches([
            RowPatch("a", {"v": 1}),
            RowPatch("b", {"v": 2}),
            RowPatch("a", {"v": 3}),
        ])
        assert {p.row_id: p.data for p in patches} == {"a": {"v": 3}, "b": {"v": 2}}


class TestApplyPatches:

    def test_local_store_writes_documents(self, db, seeded):
        written = apply_patches(db, [
            RowPatch(seeded.row_ids[0], {"x": {"value": 1}}),
            RowPatch(seeded.row_ids[1], {"x": {"value": 2}}),
        ], chunk_size=1)
        assert written == 2
        assert row_data(db, seeded.row_ids[0]) == {"x": {"value": 1}}
        assert row_data(db, seeded.row_ids[1]) == {"x": {"value": 2}}

    def test_empty_is_noop(self, db):
        assert apply_patches(db, []) == 0

    def test_native_path_through_engine(self, db, seeded):
        # The SQLite engine accepts the executemany form too
        written = apply_patches(db, [
            RowPatch(rid, {"n": {"value": i}}) for i, rid in enumerate(seeded.row_ids)
        ], native=True, chunk_size=2, max_parallel=1)
        assert written == len(seeded.row_ids)
        assert row_data(db, seeded.row_ids[4]) == {"n": {"value": 4}}

    def test_failed_chunk_propagates(self, db, seeded, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("write failed")

        monkeypatch.setattr(row_batcher, "_apply_local", boom)
        with pytest.raises(RuntimeError, match="write failed"):
            apply_patches(db, [RowPatch(seeded.row_ids[0], {})])

    def test_transport_selected_from_bind(self, monkeypatch):
        db = MagicMock()
        native = MagicMock()
        monkeypatch.setattr(row_batcher, "is_local_store", lambda session: False)
        monkeypatch.setattr(row_batcher, "_apply_native", native)

        apply_patches(db, [RowPatch("r", {"a": 1})], chunk_size=10, max_parallel=3)

        native.assert_called_once()
        assert native.call_args.args[2:] == (10, 3)
        db.commit.assert_called()
        db.expire_all.assert_called_once()


def test_patch_for_missing_row_changes_nothing(db, seeded):
    submitted = apply_patches(db, [
        RowPatch("does-not-exist", {"a": 1}),
        RowPatch(seeded.row_ids[0], {"a": 2}),
    ])
    assert submitted == 2
    assert row_data(db, seeded.row_ids[0]) == {"a": 2}
    assert db.query(Row).filter(Row.id == "does-not-exist").first() is None
