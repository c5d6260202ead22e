# Overview: Applies one batch of stock deltas atomically with its history and alerts.

"""
Transaction Coordinator

Every stock change (sale checkout, order receipt, adjustment, return) is a
batch submitted here. A batch:

1. normalizes its rows and nets deltas per (product_id, size_id); the sorted
   net keys define lock order,
2. acquires the process-level key locks in that order, together with any
   guard keys such as the order being received (bounded wait),
3. runs the caller's prepare() hook inside the transaction (creates the sale,
   flips the order status) which may supply the reference,
4. projects new stock and rejects the whole batch with InsufficientStock if
   any row would go negative,
5. applies the net deltas through the StockLedger,
6. stages one HistoryEntry per submitted row, in submission order,
7. commits stock, documents and history together (retrying transient
   failures by rebuilding the unit of work, else PersistenceFailure),
8. evaluates low-stock crossings, releases locks and dispatches intents.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Hashable, Iterable

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import HistoryEntry, Product, Size
from ..models.stock import HISTORY_REASONS
from stockledger.time_utils import to_utc_naive, to_utc_z, utcnow
from .concurrency import KeyLockRegistry, get_lock_registry, run_with_retry, stock_key
from .errors import LedgerError, LedgerValidationError, PersistenceFailure
from .history_service import HistoryRecorder, HistoryRow
from .notification_service import (
    NotificationDispatcher,
    NotificationIntent,
    NotificationTrigger,
    StockTransition,
    get_dispatcher,
)
from .stock_ledger import StockLedger, coalesce

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (OperationalError, StaleDataError, IntegrityError)


@dataclass(frozen=True)
class LedgerRow:
    product_id: int
    size_id: int
    delta: int

    @property
    def key(self) -> tuple[int, int]:
        return (self.product_id, self.size_id)


@dataclass(frozen=True)
class Reference:
    type: str
    id: int | None = None


@dataclass
class BatchResult:
    batch_id: str
    reason: str
    reference: Reference | None
    new_stock: dict[tuple[int, int], int]
    entries: list[HistoryEntry] = field(default_factory=list)
    intents: list[NotificationIntent] = field(default_factory=list)

    def stock_for(self, product_id: int, size_id: int) -> int:
        return self.new_stock[(product_id, size_id)]

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "reason": self.reason,
            "reference_type": self.reference.type if self.reference else None,
            "reference_id": self.reference.id if self.reference else None,
            "rows": [
                {"product_id": pid, "size_id": sid, "stock": stock}
                for (pid, sid), stock in self.new_stock.items()
            ],
            "history": [entry.to_dict() for entry in self.entries],
            "notifications": [intent.to_dict() for intent in self.intents],
        }


def _as_int(value, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise LedgerValidationError(f"{field_name} must be an integer")
    return value


def normalize_rows(rows: Iterable) -> list[LedgerRow]:
    """Accept LedgerRow, (product_id, size_id, delta) tuples or dicts; reject zero deltas."""
    normalized = []
    for row in rows:
        if isinstance(row, LedgerRow):
            product_id, size_id, delta = row.product_id, row.size_id, row.delta
        elif isinstance(row, dict):
            product_id, size_id, delta = row.get("product_id"), row.get("size_id"), row.get("delta")
        else:
            try:
                product_id, size_id, delta = row
            except (TypeError, ValueError):
                raise LedgerValidationError("each row must be (product_id, size_id, delta)")
        row = LedgerRow(
            _as_int(product_id, "product_id"),
            _as_int(size_id, "size_id"),
            _as_int(delta, "delta"),
        )
        if row.delta == 0:
            raise LedgerValidationError(
                f"delta for product {row.product_id} size {row.size_id} must not be zero"
            )
        normalized.append(row)
    if not normalized:
        raise LedgerValidationError("a batch needs at least one row")
    return normalized


def plan_history(
    rows: list[LedgerRow], previous: dict[tuple[int, int], int]
) -> list[tuple[LedgerRow, int, int]]:
    """
    (row, previous, new) per submitted row against the running total.

    Rows keep their submission order. If a key's running total would dip
    below zero mid-batch (a decrement listed before an increment on the same
    row), that key's deltas are replayed increases-first in the slots the key
    occupies, so every recorded intermediate value stays non-negative while
    the net result is unchanged.
    """
    by_key: dict[tuple[int, int], list[LedgerRow]] = {}
    for row in rows:
        by_key.setdefault(row.key, []).append(row)

    queues: dict[tuple[int, int], list[LedgerRow]] = {}
    for key, key_rows in by_key.items():
        running = previous[key]
        dips = False
        for row in key_rows:
            running += row.delta
            if running < 0:
                dips = True
                break
        if dips:
            key_rows = [r for r in key_rows if r.delta > 0] + [r for r in key_rows if r.delta < 0]
        queues[key] = list(key_rows)

    running_totals = dict(previous)
    planned = []
    for row in rows:
        actual = queues[row.key].pop(0)
        before = running_totals[row.key]
        after = before + actual.delta
        running_totals[row.key] = after
        planned.append((actual, before, after))
    return planned


def _batch_time(occurred_at: datetime | None, net) -> datetime:
    """
    Business time for a batch. Per row it never moves backwards.

    A supplied occurred_at may backdate the batch but must not lie in the
    future or precede the latest entry of a touched row. Without one the
    batch gets now, or the latest entry's time if the clock reads earlier.
    """
    now = utcnow()
    if occurred_at is not None:
        occurred_at = to_utc_naive(occurred_at)
        if occurred_at > now:
            raise LedgerValidationError(
                "occurred_at cannot be in the future",
                details={"occurred_at": to_utc_z(occurred_at, precise=True)},
            )
    when = now if occurred_at is None else occurred_at
    for product_id, size_id in net:
        latest = (
            db.session.query(func.max(HistoryEntry.occurred_at))
            .filter(HistoryEntry.product_id == product_id, HistoryEntry.size_id == size_id)
            .scalar()
        )
        if latest is None or latest <= when:
            continue
        if occurred_at is not None:
            raise LedgerValidationError(
                f"occurred_at cannot precede existing history for product {product_id} size {size_id}",
                details={"product_id": product_id, "size_id": size_id},
            )
        when = latest
    return when


def catalog_names(product_id: int, size_id: int) -> tuple[str, str]:
    product = db.session.get(Product, product_id)
    size = db.session.get(Size, size_id)
    return (
        product.name if product else f"#{product_id}",
        size.name if size else f"#{size_id}",
    )


class TransactionCoordinator:
    def __init__(
        self,
        *,
        ledger: StockLedger | None = None,
        recorder: HistoryRecorder | None = None,
        trigger: NotificationTrigger | None = None,
        dispatcher: NotificationDispatcher | None = None,
        locks: KeyLockRegistry | None = None,
        lock_timeout: float = 2.0,
        commit_attempts: int = 3,
    ):
        self.ledger = ledger or StockLedger()
        self.recorder = recorder or HistoryRecorder()
        self.trigger = trigger or NotificationTrigger(names=catalog_names)
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.locks = locks or KeyLockRegistry()
        self.lock_timeout = lock_timeout
        self.commit_attempts = commit_attempts

    @classmethod
    def from_app(cls) -> "TransactionCoordinator":
        config = current_app.config
        return cls(
            trigger=NotificationTrigger.from_config(config, names=catalog_names),
            dispatcher=get_dispatcher(),
            locks=get_lock_registry(),
            lock_timeout=config["LEDGER_LOCK_TIMEOUT_SECONDS"],
            commit_attempts=config["LEDGER_COMMIT_ATTEMPTS"],
        )

    def submit(
        self,
        reason: str,
        rows: Iterable,
        reference: Reference | None = None,
        *,
        actor: str | None = None,
        note: str | None = None,
        occurred_at: datetime | None = None,
        guard_keys: Iterable[Hashable] = (),
        prepare: Callable[[], Reference | None] | None = None,
    ) -> BatchResult:
        """
        Apply a batch atomically.

        Raises InsufficientStock (nothing applied), LockTimeout (nothing
        applied, safe to retry), PersistenceFailure (rolled back), or whatever
        LedgerError prepare() raises. On success every row has its history
        entry and the returned intents have been dispatched.

        guard_keys are extra lock keys (e.g. an order key) held for the batch
        alongside the stock keys, acquired in the same sorted pass. A supplied
        occurred_at may not lie in the future or precede existing history of
        the touched rows.
        """
        if reason not in HISTORY_REASONS:
            raise LedgerValidationError(
                f"Invalid reason. Must be one of: {', '.join(HISTORY_REASONS)}"
            )
        submitted = normalize_rows(rows)
        net = coalesce((row.product_id, row.size_id, row.delta) for row in submitted)
        batch_id = uuid.uuid4().hex

        keys = [stock_key(*key) for key in net] + list(guard_keys)
        with self.locks.hold(keys, self.lock_timeout):
            result = self._commit_batch(
                batch_id, reason, submitted, net, reference,
                actor=actor, note=note, occurred_at=occurred_at, prepare=prepare,
            )

        if result.intents:
            self.dispatcher.dispatch(result.intents)
        return result

    def _commit_batch(self, batch_id, reason, submitted, net, reference, *, actor, note, occurred_at, prepare):
        def _op() -> BatchResult:
            try:
                ref = reference
                if prepare is not None:
                    ref = prepare() or ref

                deltas = [(pid, sid, delta) for (pid, sid), delta in net.items()]
                projected = self.ledger.project(deltas)
                when = _batch_time(occurred_at, net)
                new_stock = self.ledger.apply(deltas)

                previous = {key: before for key, (before, _) in projected.items()}
                history_rows = [
                    HistoryRow(
                        product_id=row.product_id,
                        size_id=row.size_id,
                        previous=before,
                        new=after,
                        delta=row.delta,
                        reason=reason,
                        reference_type=ref.type if ref else None,
                        reference_id=ref.id if ref else None,
                    )
                    for row, before, after in plan_history(submitted, previous)
                ]
                entries = self.recorder.record(
                    history_rows,
                    batch_id=batch_id,
                    occurred_at=when,
                    actor=actor,
                    note=note,
                )

                intents = self.trigger.evaluate(
                    StockTransition(key[0], key[1], before, after)
                    for key, (before, after) in projected.items()
                )

                db.session.commit()
            except _TRANSIENT_ERRORS:
                raise
            except Exception:
                db.session.rollback()
                raise

            return BatchResult(
                batch_id=batch_id,
                reason=reason,
                reference=ref,
                new_stock=new_stock,
                entries=entries,
                intents=intents,
            )

        try:
            result = run_with_retry(_op, attempts=self.commit_attempts, retry_on=_TRANSIENT_ERRORS)
        except LedgerError as exc:
            logger.info("Batch %s (%s) rejected: %s", batch_id, reason, exc)
            raise
        except SQLAlchemyError as exc:
            logger.error("Batch %s (%s) could not be persisted: %s", batch_id, reason, exc)
            raise PersistenceFailure(
                "Stock batch could not be persisted; no changes were applied",
                details={"batch_id": batch_id, "reason": reason},
            ) from exc

        logger.info(
            "Batch %s (%s) committed: %d rows, %d history entries",
            batch_id, reason, len(result.new_stock), len(result.entries),
        )
        return result


def get_coordinator() -> TransactionCoordinator:
    """Coordinator wired to the current app's config, locks and dispatcher."""
    return TransactionCoordinator.from_app()
