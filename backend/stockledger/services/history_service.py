# Overview: Append-only audit trail for stock movements, plus replay reads.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import HistoryEntry, StockRecord
from ..models.stock import HISTORY_REASONS
from .errors import LedgerValidationError

"""
History invariants (authoritative)

- Entries are written in the same DB transaction as the stock change they
  document; a rolled-back batch leaves no entries.
- Entries are never updated or deleted (enforced by mapper events).
- For every (product, size): SUM(delta) over all entries == StockRecord.stock,
  and entries ordered by (occurred_at, id) chain previous_stock -> new_stock.
- As-of reads are inclusive: occurred_at <= as_of.
"""


@dataclass(frozen=True)
class HistoryRow:
    product_id: int
    size_id: int
    previous: int
    new: int
    delta: int
    reason: str
    reference_type: str | None = None
    reference_id: int | None = None


class HistoryRecorder:
    def record(
        self,
        rows: list[HistoryRow],
        *,
        batch_id: str,
        occurred_at: datetime,
        actor: str | None = None,
        note: str | None = None,
    ) -> list[HistoryEntry]:
        """
        Stage one entry per row in the current unit of work.

        Must be called inside the batch transaction; the coordinator commits.
        """
        entries = []
        for sequence, row in enumerate(rows):
            if row.reason not in HISTORY_REASONS:
                raise LedgerValidationError(f"Unknown history reason {row.reason!r}")
            if row.new != row.previous + row.delta:
                raise LedgerValidationError(
                    f"History row for product {row.product_id} size {row.size_id} does not add up: "
                    f"{row.previous} + {row.delta} != {row.new}"
                )
            entry = HistoryEntry(
                batch_id=batch_id,
                sequence=sequence,
                product_id=row.product_id,
                size_id=row.size_id,
                previous_stock=row.previous,
                new_stock=row.new,
                delta=row.delta,
                reason=row.reason,
                reference_type=row.reference_type,
                reference_id=row.reference_id,
                actor=actor,
                note=note,
                occurred_at=occurred_at,
            )
            db.session.add(entry)
            entries.append(entry)
        db.session.flush()
        return entries


def list_history(
    *,
    product_id: int | None = None,
    size_id: int | None = None,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[HistoryEntry], int]:
    """Newest-first page of history entries plus the unpaged total."""
    query = db.session.query(HistoryEntry)

    if product_id is not None:
        query = query.filter(HistoryEntry.product_id == product_id)
    if size_id is not None:
        query = query.filter(HistoryEntry.size_id == size_id)
    if reason:
        if reason not in HISTORY_REASONS:
            raise LedgerValidationError(
                f"Invalid reason. Must be one of: {', '.join(HISTORY_REASONS)}"
            )
        query = query.filter(HistoryEntry.reason == reason)
    if reference_type:
        query = query.filter(HistoryEntry.reference_type == reference_type)
    if reference_id is not None:
        query = query.filter(HistoryEntry.reference_id == reference_id)
    if from_date:
        query = query.filter(HistoryEntry.occurred_at >= from_date)
    if to_date:
        query = query.filter(HistoryEntry.occurred_at <= to_date)

    total = query.count()
    query = query.order_by(HistoryEntry.occurred_at.desc(), HistoryEntry.id.desc())
    return query.offset(offset).limit(limit).all(), total


def entries_for_reference(reference_type: str, reference_id: int) -> list[HistoryEntry]:
    return (
        db.session.query(HistoryEntry)
        .filter_by(reference_type=reference_type, reference_id=reference_id)
        .order_by(HistoryEntry.id.asc())
        .all()
    )


def replay(product_id: int, size_id: int, as_of: datetime | None = None) -> int:
    """Stock reconstructed from history: SUM(delta) up to as_of (inclusive)."""
    query = db.session.query(func.coalesce(func.sum(HistoryEntry.delta), 0)).filter(
        HistoryEntry.product_id == product_id,
        HistoryEntry.size_id == size_id,
    )
    if as_of is not None:
        query = query.filter(HistoryEntry.occurred_at <= as_of)
    return int(query.scalar() or 0)


def verify_replay() -> list[dict]:
    """
    Check every stock row against its history.

    Returns one dict per mismatching (product, size); an empty list means the
    replay invariant holds everywhere.
    """
    problems = []

    entries = db.session.query(HistoryEntry).order_by(
        HistoryEntry.product_id.asc(),
        HistoryEntry.size_id.asc(),
        HistoryEntry.occurred_at.asc(),
        HistoryEntry.id.asc(),
    )
    replayed: dict[tuple[int, int], int] = {}
    broken_chain: set[tuple[int, int]] = set()
    for entry in entries:
        key = (entry.product_id, entry.size_id)
        running = replayed.get(key, 0)
        if entry.previous_stock != running:
            broken_chain.add(key)
        replayed[key] = running + entry.delta

    stock = {
        (record.product_id, record.size_id): record.stock
        for record in db.session.query(StockRecord)
    }

    for key in sorted(set(stock) | set(replayed)):
        current = stock.get(key, 0)
        summed = replayed.get(key, 0)
        if current != summed or key in broken_chain:
            problems.append({
                "product_id": key[0],
                "size_id": key[1],
                "stock": current,
                "replayed": summed,
                "chain_intact": key not in broken_chain,
            })
    return problems
