"""
Tests for the stuck-job operator script
"""
import pytest

from models import JobStatus
from scripts.fix_stuck_jobs import build_parser, run
from services.job_controller import job_controller


def test_one_action_is_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--cancel-all", "--reset-stuck"])


def test_cancel_all(db, seeded, capsys):
    job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)

    assert run(build_parser().parse_args(["--cancel-all"]), db) == 0

    assert "Cancelled 1 jobs" in capsys.readouterr().out
    db.expire_all()
    assert job_controller.get_job(db, job.id).status == JobStatus.CANCELLED.value


def test_complete_twice(db, seeded, capsys):
    job = job_controller.create_job(db, seeded.config_id, seeded.table_id, seeded.target)
    args = build_parser().parse_args(["--complete", job.id])

    run(args, db)
    run(args, db)

    out = capsys.readouterr().out
    assert f"Job {job.id} completed" in out
    assert "already finished" in out
