"""
Shared fixtures: an in-memory SQLite store seeded with one table
"""
import asyncio
import os

# Keep the module-level engine off the filesystem
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from models import DataTable, EnrichmentConfig, Row, TableColumn
from services.ai_provider import AIResult

TABLE_ID = "tbl-leads"
CONFIG_ID = "cfg-summary"
NAME_COL = "col-name"
COMPANY_COL = "col-company"
TARGET_COL = "col-summary"
INDUSTRY_COL = "col-industry"


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


def add_rows(db, count, start=0, table_id=TABLE_ID):
    ids = []
    for i in range(start, start + count):
        row_id = f"row-{i}"
        db.add(Row(
            id=row_id,
            table_id=table_id,
            data={
                NAME_COL: {"value": f"Person {i}"},
                COMPANY_COL: {"value": f"Company {i}"},
            },
            created_at=datetime(2024, 1, 1, 0, 0, i),
        ))
        ids.append(row_id)
    db.commit()
    return ids


@pytest.fixture
def seeded(db):
    """Table with Name/Company inputs, an enrichment target and one Data Guide output column"""
    db.add(DataTable(id=TABLE_ID, name="Leads"))
    db.add(EnrichmentConfig(
        id=CONFIG_ID,
        name="Summary",
        model="gpt-4o-mini",
        prompt="Describe {{Company}} for {{Name}}",
        output_columns=["Industry"],
        temperature=0.2,
    ))
    db.add_all([
        TableColumn(id=NAME_COL, table_id=TABLE_ID, name="Name", order=0),
        TableColumn(id=COMPANY_COL, table_id=TABLE_ID, name="Company", order=1),
        TableColumn(id=TARGET_COL, table_id=TABLE_ID, name="Summary", type="enrichment", order=2,
                    enrichment_config_id=CONFIG_ID),
        TableColumn(id=INDUSTRY_COL, table_id=TABLE_ID, name="Industry", order=3),
    ])
    db.commit()
    row_ids = add_rows(db, 5)
    return SimpleNamespace(
        table_id=TABLE_ID,
        config_id=CONFIG_ID,
        target=TARGET_COL,
        industry=INDUSTRY_COL,
        name=NAME_COL,
        company=COMPANY_COL,
        row_ids=row_ids,
    )


def row_data(db, row_id):
    db.expire_all()
    return db.query(Row).filter(Row.id == row_id).first().data


class FakeAIService:
    """Stands in for AIProviderService; fails any prompt containing a marker"""

    def __init__(self, text='{"Industry": "Software"}', fail_on=None, delay=0.0, finish_reason="stop"):
        self.text = text
        self.fail_on = fail_on
        self.delay = delay
        self.finish_reason = finish_reason
        self.calls = []

    async def generate(self, prompt, model_id, temperature=None, max_output_tokens=None):
        self.calls.append({"prompt": prompt, "model": model_id, "max_output_tokens": max_output_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on and self.fail_on in prompt:
            raise RuntimeError("provider exploded")
        return AIResult(
            text=self.text,
            input_tokens=100,
            output_tokens=20,
            time_taken_ms=5,
            finish_reason=self.finish_reason,
        )


@pytest.fixture
def fake_ai():
    return FakeAIService()
