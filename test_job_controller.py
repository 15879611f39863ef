"""
Tests for job admission, cancellation and stuck-cell recovery
"""
import pytest

from conftest import row_data
from models import BatchEnrichmentJob, BatchJobStatus, EnrichmentJob, JobStatus
from services.job_controller import (
    CANCELLED_BY_USER, STALE_CELL_MESSAGE, JobAdmissionError, JobNotFoundError, job_controller,
)
from services.row_batcher import RowPatch, apply_patches


def set_cell(db, row_id, column_id, cell):
    data = dict(row_data(db, row_id))
    data[column_id] = cell
    apply_patches(db, [RowPatch(row_id, data)])


class TestCreateJob:

    def test_marks_every_row_pending(self, db, seeded):
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)

        assert job.status == JobStatus.PENDING.value
        assert job.row_ids == seeded.row_ids
        assert job.current_index == 0
        for row_id in seeded.row_ids:
            assert row_data(db, row_id)[seeded.target]["status"] == "pending"

    def test_explicit_rows_are_deduplicated(self, db, seeded):
        ids = [seeded.row_ids[1], seeded.row_ids[0], seeded.row_ids[1]]
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target, row_ids=ids)
        assert job.row_ids == [seeded.row_ids[1], seeded.row_ids[0]]
        assert "status" not in row_data(db, seeded.row_ids[2]).get(seeded.target, {})

    def test_only_empty_skips_filled_cells(self, db, seeded):
        set_cell(db, seeded.row_ids[0], seeded.target, {"value": "done", "status": "complete"})
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target, only_empty=True)
        assert seeded.row_ids[0] not in job.row_ids
        assert len(job.row_ids) == 4

    def test_no_rows_is_rejected(self, db, seeded):
        with pytest.raises(JobAdmissionError):
            job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target, row_ids=[])

    def test_unknown_config_is_rejected(self, db, seeded):
        with pytest.raises(JobAdmissionError):
            job_controller.create_job(db, "nope", seeded.table_id, seeded.target)

    def test_new_job_replaces_active_job_on_column(self, db, seeded):
        first = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        second = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)

        db.expire_all()
        assert job_controller.get_job(db, first.id).status == JobStatus.CANCELLED.value
        active = job_controller.list_jobs(db, column_id=seeded.target, active_only=True)
        assert [j.id for j in active] == [second.id]
        assert row_data(db, seeded.row_ids[0])[seeded.target]["status"] == "pending"

    def test_active_batch_job_is_cancelled_locally(self, db, seeded):
        db.add(BatchEnrichmentJob(
            id="batch-1",
            table_id=seeded.table_id,
            config_id=seeded.config_id,
            target_column_id=seeded.target,
            row_mappings=[{"rowId": seeded.row_ids[0], "customId": f"row-{seeded.row_ids[0]}"}],
            status=BatchJobStatus.SUBMITTED.value,
        ))
        db.commit()
        set_cell(db, seeded.row_ids[0], seeded.target, {"value": None, "status": "batch_submitted", "batchJobId": "batch-1"})

        job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target, row_ids=[seeded.row_ids[1]])

        db.expire_all()
        batch = db.query(BatchEnrichmentJob).filter(BatchEnrichmentJob.id == "batch-1").first()
        assert batch.status == BatchJobStatus.CANCELLED.value
        cell = row_data(db, seeded.row_ids[0])[seeded.target]
        assert cell["status"] == "error"
        assert cell["error"] == CANCELLED_BY_USER


class TestCancelJob:

    def test_cancel_resets_in_flight_cells(self, db, seeded):
        set_cell(db, seeded.row_ids[0], seeded.target, {"value": "old"})
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        set_cell(db, seeded.row_ids[1], seeded.target, {"value": None, "status": "processing"})
        set_cell(db, seeded.row_ids[2], seeded.target, {"value": "fresh", "status": "complete"})

        assert job_controller.cancel_job(db, job.id) is True

        assert row_data(db, seeded.row_ids[0])[seeded.target] == {"value": "old"}
        assert "status" not in row_data(db, seeded.row_ids[1])[seeded.target]
        assert row_data(db, seeded.row_ids[2])[seeded.target]["status"] == "complete"

    def test_cancel_is_idempotent(self, db, seeded):
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        assert job_controller.cancel_job(db, job.id) is True
        assert job_controller.cancel_job(db, job.id) is False
        db.expire_all()
        assert job_controller.get_job(db, job.id).status == JobStatus.CANCELLED.value

    def test_cancel_unknown_job(self, db, seeded):
        with pytest.raises(JobNotFoundError):
            job_controller.cancel_job(db, "missing")

    def test_completed_job_cannot_be_cancelled(self, db, seeded):
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        db.query(EnrichmentJob).filter(EnrichmentJob.id == job.id).update({"status": JobStatus.COMPLETE.value})
        db.commit()
        assert job_controller.cancel_job(db, job.id) is False
        db.expire_all()
        assert job_controller.get_job(db, job.id).status == JobStatus.COMPLETE.value

    def test_cancel_all(self, db, seeded):
        job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.industry)
        assert job_controller.cancel_all_jobs(db) == 2
        assert job_controller.list_jobs(db, active_only=True) == []

    def test_reset_stuck_cells(self, db, seeded):
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        job_controller.cancel_job(db, job.id)
        # A late writer left a cell behind after the cancel
        set_cell(db, seeded.row_ids[3], seeded.target, {"value": None, "status": "processing"})

        assert job_controller.reset_stuck_cells(db) == 1
        assert job_controller.reset_stuck_cells(db) == 0
        assert "status" not in row_data(db, seeded.row_ids[3])[seeded.target]

    def test_reset_leaves_active_job_cells_alone(self, db, seeded):
        old = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        current = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        set_cell(db, seeded.row_ids[0], seeded.target, {"value": None, "status": "processing"})
        db.expire_all()
        assert job_controller.get_job(db, old.id).status == JobStatus.CANCELLED.value

        assert job_controller.reset_stuck_cells(db) == 0

        assert row_data(db, seeded.row_ids[0])[seeded.target]["status"] == "processing"
        assert row_data(db, seeded.row_ids[1])[seeded.target]["status"] == "pending"
        assert job_controller.get_job(db, current.id).status == JobStatus.PENDING.value


class TestForceComplete:

    def test_processing_becomes_error_pending_is_cleared(self, db, seeded):
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        set_cell(db, seeded.row_ids[0], seeded.target, {"value": None, "status": "processing"})

        assert job_controller.force_complete_job(db, job.id) is True

        processing = row_data(db, seeded.row_ids[0])[seeded.target]
        assert processing["status"] == "error"
        assert processing["error"] == STALE_CELL_MESSAGE
        assert "status" not in row_data(db, seeded.row_ids[1])[seeded.target]
        db.expire_all()
        job = job_controller.get_job(db, job.id)
        assert job.status == JobStatus.COMPLETE.value
        assert job.completed_at is not None

    def test_second_call_is_a_noop(self, db, seeded):
        job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
        assert job_controller.force_complete_job(db, job.id) is True
        assert job_controller.force_complete_job(db, job.id) is False


def test_column_cancel_and_reset_are_idempotent(db, seeded):
    job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
    set_cell(db, seeded.row_ids[0], seeded.target, {"value": None, "status": "processing"})
    set_cell(db, seeded.row_ids[1], seeded.target, {"value": "kept", "status": "complete"})

    job_controller.cancel_jobs_for_column(db, seeded.target)
    job_controller.reset_stuck_cells(db)
    once = {rid: row_data(db, rid) for rid in seeded.row_ids}

    assert job_controller.cancel_jobs_for_column(db, seeded.target) == 0
    assert job_controller.reset_stuck_cells(db) == 0
    assert {rid: row_data(db, rid) for rid in seeded.row_ids} == once
    assert once[seeded.row_ids[1]][seeded.target] == {"value": "kept", "status": "complete"}
