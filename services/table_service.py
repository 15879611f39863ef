"""
Table, column and row lookups shared by the job engines
"""
import uuid
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Row, TableColumn

# Keeps IN (...) lists well under SQLite's bound-parameter limit
ROW_LOOKUP_CHUNK = 500


def get_table_columns(db: Session, table_id: str) -> List[TableColumn]:
    return (
        db.query(TableColumn)
        .filter(TableColumn.table_id == table_id)
        .order_by(TableColumn.order)
        .all()
    )


def resolve_output_column_ids(
    columns: List[TableColumn],
    output_names: Optional[List[str]],
    exclude_column_id: Optional[str] = None,
) -> Dict[str, str]:
    """Lower-cased Data Guide field name -> column id, in configured order"""
    by_name = {}
    for column in columns:
        by_name.setdefault(column.name.strip().lower(), column)

    resolved = {}
    for name in output_names or []:
        key = name.strip().lower()
        column = by_name.get(key)
        if column is not None and column.id != exclude_column_id and key not in resolved:
            resolved[key] = column.id
    return resolved


def ensure_output_columns(db: Session, table_id: str, output_names: Optional[List[str]]) -> List[TableColumn]:
    """Create a text column for every Data Guide field the table does not have yet"""
    columns = get_table_columns(db, table_id)
    existing = {c.name.strip().lower() for c in columns}
    next_order = (db.query(func.max(TableColumn.order)).filter(TableColumn.table_id == table_id).scalar() or 0) + 1

    created = []
    for name in output_names or []:
        if not name or name.strip().lower() in existing:
            continue
        column = TableColumn(
            id=str(uuid.uuid4()),
            table_id=table_id,
            name=name.strip(),
            type="text",
            order=next_order,
        )
        next_order += 1
        existing.add(name.strip().lower())
        db.add(column)
        created.append(column)

    if created:
        db.commit()
        columns = get_table_columns(db, table_id)
    return columns


def load_rows(db: Session, row_ids: List[str]) -> Dict[str, Row]:
    """Rows by id; ids that no longer exist are simply absent"""
    rows = {}
    unique_ids = list(dict.fromkeys(row_ids))
    for i in range(0, len(unique_ids), ROW_LOOKUP_CHUNK):
        chunk = unique_ids[i:i + ROW_LOOKUP_CHUNK]
        for row in db.query(Row).filter(Row.id.in_(chunk)).all():
            rows[row.id] = row
    return rows


def list_row_ids(db: Session, table_id: str) -> List[str]:
    return [
        row_id for (row_id,) in
        db.query(Row.id).filter(Row.table_id == table_id).order_by(Row.created_at, Row.id).all()
    ]
