"""
Adjustment Service - manual corrections and customer returns

Both are ledger batches whose document (Adjustment + lines) is written in the
coordinator's prepare() hook, so the document, the stock change and the
history entries commit or roll back together.

- Adjustments take signed deltas; each line needs a free-text reason.
- Returns only take positive deltas (goods coming back onto the shelf).
"""

from __future__ import annotations

from ..extensions import db
from ..models import Adjustment, AdjustmentLine
from ..models.stock import REASON_ADJUSTMENT, REASON_RETURN
from stockledger.time_utils import utcnow
from .errors import LedgerValidationError, NotFound
from .transaction_coordinator import BatchResult, Reference, get_coordinator


ADJUSTMENT_KINDS = (REASON_ADJUSTMENT, REASON_RETURN)


def _parse_lines(entries, *, kind: str) -> list[dict]:
    if not isinstance(entries, list) or not entries:
        raise LedgerValidationError("entries must be a non-empty list")

    lines = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise LedgerValidationError(f"entry {index} must be an object")
        for name in ("product_id", "size_id", "delta"):
            value = entry.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise LedgerValidationError(f"entry {index}: {name} must be an integer")

        delta = entry["delta"]
        if delta == 0:
            raise LedgerValidationError(f"entry {index}: delta must not be zero")
        if kind == REASON_RETURN and delta < 0:
            raise LedgerValidationError(f"entry {index}: returned quantity must be positive")

        reason = entry.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            if kind == REASON_RETURN:
                reason = "Customer return"
            else:
                raise LedgerValidationError(f"entry {index}: reason is required")

        lines.append({
            "product_id": entry["product_id"],
            "size_id": entry["size_id"],
            "delta": delta,
            "reason": reason.strip()[:255],
        })
    return lines


def submit_adjustment(
    entries,
    *,
    actor: str | None = None,
    note: str | None = None,
    kind: str = REASON_ADJUSTMENT,
) -> tuple[Adjustment, BatchResult]:
    """
    Apply a set of stock corrections as one batch.

    A decrement larger than the available stock rejects the whole adjustment
    with InsufficientStock; nothing is recorded.
    """
    if kind not in ADJUSTMENT_KINDS:
        raise LedgerValidationError(f"kind must be one of: {', '.join(ADJUSTMENT_KINDS)}")
    lines = _parse_lines(entries, kind=kind)

    def _create_adjustment() -> Reference:
        adjustment = Adjustment(kind=kind, actor=actor, note=note, occurred_at=utcnow())
        db.session.add(adjustment)
        for position, line in enumerate(lines):
            adjustment.lines.append(AdjustmentLine(position=position, **line))
        db.session.flush()
        return Reference(kind, adjustment.id)

    result = get_coordinator().submit(
        kind,
        [(line["product_id"], line["size_id"], line["delta"]) for line in lines],
        actor=actor,
        note=note or "; ".join(dict.fromkeys(line["reason"] for line in lines))[:255],
        prepare=_create_adjustment,
    )
    return get_adjustment(result.reference.id), result


def submit_return(
    entries,
    *,
    actor: str | None = None,
    note: str | None = None,
) -> tuple[Adjustment, BatchResult]:
    return submit_adjustment(entries, actor=actor, note=note, kind=REASON_RETURN)


def get_adjustment(adjustment_id: int) -> Adjustment:
    adjustment = db.session.get(Adjustment, adjustment_id)
    if adjustment is None:
        raise NotFound(f"Adjustment {adjustment_id} not found", details={"adjustment_id": adjustment_id})
    return adjustment


def list_adjustments(
    *,
    kind: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Adjustment], int]:
    query = db.session.query(Adjustment)
    if kind:
        if kind not in ADJUSTMENT_KINDS:
            raise LedgerValidationError(f"kind must be one of: {', '.join(ADJUSTMENT_KINDS)}")
        query = query.filter(Adjustment.kind == kind)

    total = query.count()
    query = query.order_by(Adjustment.occurred_at.desc(), Adjustment.id.desc())
    return query.offset(offset).limit(limit).all(), total
