"""
Bulk row document writes

Every patch replaces a row's whole cell map. Against PostgreSQL the patches
go out as executemany UPDATE groups on several pooled connections; against
the local SQLite store they are written one row at a time in smaller chunks.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import bindparam, update
from sqlalchemy.orm import Session

from config import settings
from database import is_local_store
from models import Row
import logging

logger = logging.getLogger(__name__)

rows_table = Row.__table__


@dataclass
class RowPatch:
    row_id: str
    data: Dict[str, Any]


def collapse_patches(patches: Iterable[RowPatch]) -> List[RowPatch]:
    """One patch per row; a later patch for the same row replaces an earlier one"""
    latest: Dict[str, RowPatch] = {}
    for patch in patches:
        latest[patch.row_id] = patch
    return list(latest.values())


def _chunks(items: List[RowPatch], size: int) -> List[List[RowPatch]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _apply_native(engine, patches: List[RowPatch], chunk_size: int, max_parallel: int):
    statement = (
        update(rows_table)
        .where(rows_table.c.id == bindparam("b_id"))
        .values(data=bindparam("b_data", type_=rows_table.c.data.type))
    )

    def write_chunk(chunk: List[RowPatch]) -> int:
        with engine.begin() as conn:
            conn.execute(statement, [{"b_id": p.row_id, "b_data": p.data} for p in chunk])
        return len(chunk)

    chunks = _chunks(patches, chunk_size)
    with ThreadPoolExecutor(max_workers=max(1, min(max_parallel, len(chunks)))) as pool:
        # list() re-raises the first failed chunk
        written = sum(list(pool.map(write_chunk, chunks)))
    logger.debug(f"Native row update: {written} rows in {len(chunks)} chunks")


def _apply_local(db: Session, patches: List[RowPatch], chunk_size: int):
    for chunk in _chunks(patches, chunk_size):
        for patch in chunk:
            db.execute(
                update(rows_table)
                .where(rows_table.c.id == patch.row_id)
                .values(data=patch.data)
            )
        db.commit()


def apply_patches(
    db: Session,
    patches: Iterable[RowPatch],
    native: Optional[bool] = None,
    chunk_size: Optional[int] = None,
    max_parallel: Optional[int] = None,
) -> int:
    """
    Replace the cell maps of many rows.

    native=None picks the transport from the session's bind. Pending session
    changes are committed first, and the session is expired afterwards so
    later reads see the written documents. Returns the number of patches
    submitted after collapsing duplicates; patches for rows that no longer
    exist are counted but change nothing.
    """
    collapsed = collapse_patches(patches)
    if not collapsed:
        return 0

    if native is None:
        native = not is_local_store(db)

    db.commit()
    if native:
        _apply_native(
            db.get_bind(),
            collapsed,
            chunk_size or settings.ROW_UPDATE_CHUNK_SIZE,
            max_parallel or settings.ROW_UPDATE_PARALLEL_BATCHES,
        )
    else:
        _apply_local(db, collapsed, chunk_size or settings.LOCAL_ROW_UPDATE_CHUNK_SIZE)
    db.expire_all()
    return len(collapsed)
