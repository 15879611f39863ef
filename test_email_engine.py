"""
Tests for email finder jobs: admission, lookups, time budget and staleness
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import row_data
from models import EmailFinderJob, JobStatus, TableColumn
from services.email_engine import NOT_FOUND_VALUE, EmailEngine, email_job_to_dict
from services.email_finder import EmailLookupResult
from services.job_controller import STALE_CELL_MESSAGE, JobAdmissionError
from services.row_batcher import RowPatch, apply_patches

DOMAIN_COL = "col-domain"
DOMAINS = ["acme.com", "", "other.io", "broken.dev", "https://www.acme.com/team"]


class FakeEmailClient:

    def __init__(self, emails=None, fail_for=None, configured=True):
        self.emails = emails or {"acme.com": "hit@acme.com"}
        self.fail_for = fail_for
        self.configured = configured
        self.calls = []
        self.closed = False

    def is_configured(self):
        return self.configured

    async def find_email(self, name, domain):
        self.calls.append((name, domain))
        if domain == self.fail_for:
            raise RuntimeError("connection reset")
        email = self.emails.get(domain)
        if email:
            return EmailLookupResult(success=True, email=email, status="accepted", confidence="high")
        return EmailLookupResult(success=False, error="No valid email found")

    async def aclose(self):
        self.closed = True


class FakeClock:
    """Advances a fixed step on every reading"""

    def __init__(self, step):
        self.step = step
        self.now = 0.0

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


@pytest.fixture
def domains(db, seeded):
    db.add(TableColumn(id=DOMAIN_COL, table_id=seeded.table_id, name="Domain", order=4))
    db.commit()
    patches = []
    for row_id, domain in zip(seeded.row_ids, DOMAINS):
        data = dict(row_data(db, row_id))
        data[DOMAIN_COL] = {"value": domain}
        patches.append(RowPatch(row_id, data))
    apply_patches(db, patches)
    return seeded


def make_engine(client, batch_size=10):
    engine = EmailEngine(client_factory=lambda: client, rate_limit_ms=0)
    engine.batch_size = batch_size
    return engine


def create(engine, db, seeded, **kwargs):
    return engine.create_email_job(
        db, seeded.table_id, "full_name", DOMAIN_COL,
        full_name_column_id=seeded.name, **kwargs
    )


def fresh(engine, db, job_id):
    db.expire_all()
    return engine.get_email_job(db, job_id)


class TestCreateEmailJob:

    def test_creates_output_column_and_marks_rows(self, db, domains):
        engine = make_engine(FakeEmailClient())

        job = create(engine, db, domains)

        column = db.query(TableColumn).filter(TableColumn.id == job.target_column_id).first()
        assert column.name == "Email"
        assert column.width == 200
        assert column.order == 5
        assert job.row_ids == domains.row_ids
        assert job.status == JobStatus.PENDING.value
        assert row_data(db, domains.row_ids[0])[job.target_column_id] == {"value": None, "status": "pending"}

    def test_existing_column_is_reused(self, db, domains):
        engine = make_engine(FakeEmailClient())
        first = create(engine, db, domains, output_column_name="Work Email")
        second = create(engine, db, domains, output_column_name="work email")

        assert second.target_column_id == first.target_column_id
        assert fresh(engine, db, first.id).status == JobStatus.CANCELLED.value

    @pytest.mark.parametrize("mode,kwargs", [
        ("sideways", {}),
        ("full_name", {}),
        ("first_last", {"first_name_column_id": "col-name"}),
    ])
    def test_invalid_requests_are_rejected(self, db, domains, mode, kwargs):
        engine = make_engine(FakeEmailClient())
        with pytest.raises(JobAdmissionError):
            engine.create_email_job(db, domains.table_id, mode, DOMAIN_COL, **kwargs)

    def test_unconfigured_client_is_rejected(self, db, domains):
        engine = make_engine(FakeEmailClient(configured=False))
        with pytest.raises(JobAdmissionError, match="not configured"):
            create(engine, db, domains)


class TestProcessBatch:

    def test_outcomes_per_row(self, db, domains):
        client = FakeEmailClient(fail_for="broken.dev")
        engine = make_engine(client)
        job = create(engine, db, domains)
        column = job.target_column_id

        result = asyncio.run(engine.process_job_batch(db, job, client))

        assert (result.processed, result.found, result.not_found, result.errors) == (5, 2, 2, 1)
        found = row_data(db, domains.row_ids[0])[column]
        assert found["value"] == "hit@acme.com"
        assert found["status"] == "complete"
        assert found["enrichmentData"]["verificationStatus"] == "accepted"
        assert found["enrichmentData"]["name"] == "Person 0"

        invalid = row_data(db, domains.row_ids[1])[column]
        assert invalid["status"] == "complete"
        assert invalid["value"] is None
        assert invalid["enrichmentData"]["error"] == "Invalid or empty domain"

        assert row_data(db, domains.row_ids[2])[column]["value"] == NOT_FOUND_VALUE
        failed = row_data(db, domains.row_ids[3])[column]
        assert failed["status"] == "error"
        assert failed["error"] == "connection reset"
        assert row_data(db, domains.row_ids[4])[column]["value"] == "hit@acme.com"

        job = fresh(engine, db, job.id)
        assert job.status == JobStatus.COMPLETE.value
        assert (job.found_count, job.not_found_count, job.error_count) == (2, 2, 1)
        assert email_job_to_dict(job)["progress"] == 100

    def test_first_last_mode(self, db, domains):
        client = FakeEmailClient()
        engine = make_engine(client)
        job = engine.create_email_job(
            db, domains.table_id, "first_last", DOMAIN_COL, row_ids=[domains.row_ids[0]],
            first_name_column_id=domains.name, last_name_column_id=domains.company,
        )

        asyncio.run(engine.process_job_batch(db, job, client))

        assert client.calls == [("Person 0 Company 0", "acme.com")]

    def test_cancelled_job_is_not_processed(self, db, domains):
        client = FakeEmailClient()
        engine = make_engine(client)
        job = create(engine, db, domains)
        assert engine.cancel_email_job(db, job.id) is True

        result = asyncio.run(engine.process_job_batch(db, fresh(engine, db, job.id), client))

        assert result.processed == 0
        assert client.calls == []
        assert row_data(db, domains.row_ids[0])[job.target_column_id] == {"value": None}
        assert engine.cancel_email_job(db, job.id) is False


class TestSweep:

    def test_runs_jobs_to_completion_and_closes_owned_client(self, db, domains):
        client = FakeEmailClient()
        engine = make_engine(client, batch_size=2)
        job = create(engine, db, domains)

        summary = asyncio.run(engine.process_email_jobs(db))

        assert summary.processed == 5
        assert summary.found == 2
        assert client.closed is True
        assert fresh(engine, db, job.id).status == JobStatus.COMPLETE.value

    def test_time_budget_stops_new_batches(self, db, domains):
        client = FakeEmailClient()
        engine = make_engine(client, batch_size=2)
        engine.max_execution_seconds = 50
        engine.batch_reserve_seconds = 15
        job = create(engine, db, domains)

        summary = asyncio.run(engine.process_email_jobs(db, client=client, clock=FakeClock(10)))

        assert summary.processed == 2
        assert summary.to_dict()["timeMs"] == 50000
        assert client.closed is False
        job = fresh(engine, db, job.id)
        assert job.status == JobStatus.RUNNING.value
        assert job.current_index == 2

    def test_stale_job_is_completed(self, db, domains):
        client = FakeEmailClient()
        engine = make_engine(client)
        job = create(engine, db, domains)
        db.query(EmailFinderJob).filter(EmailFinderJob.id == job.id).update({
            "status": JobStatus.RUNNING.value,
            "current_index": 1,
            "updated_at": datetime.utcnow() - timedelta(hours=2),
        })
        db.commit()
        data = dict(row_data(db, domains.row_ids[1]))
        data[job.target_column_id] = {"value": None, "status": "processing"}
        apply_patches(db, [RowPatch(domains.row_ids[1], data)])

        summary = asyncio.run(engine.process_email_jobs(db, client=client))

        assert summary.stale_completed == 1
        assert summary.processed == 0
        assert client.calls == []
        assert fresh(engine, db, job.id).status == JobStatus.COMPLETE.value
        assert row_data(db, domains.row_ids[1])[job.target_column_id]["error"] == STALE_CELL_MESSAGE
