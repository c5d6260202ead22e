"""
History recorder tests.

History entries are append-only and must replay to the current stock.
"""

from datetime import timedelta

import pytest
from sqlalchemy import text

from stockledger.models import HistoryEntry
from stockledger.services import history_service, reporting_service
from stockledger.services.errors import LedgerValidationError
from stockledger.services.history_service import HistoryRecorder, HistoryRow
from stockledger.time_utils import parse_iso_datetime, utcnow

from conftest import stock_up


def test_record_rejects_rows_that_do_not_add_up(db_session, product, size_m):
    recorder = HistoryRecorder()
    row = HistoryRow(product.id, size_m.id, previous=0, new=4, delta=3, reason="adjustment")
    with pytest.raises(LedgerValidationError):
        recorder.record([row], batch_id="b1", occurred_at=utcnow())
    db_session.rollback()


def test_record_rejects_unknown_reason(db_session, product, size_m):
    recorder = HistoryRecorder()
    row = HistoryRow(product.id, size_m.id, previous=0, new=3, delta=3, reason="gift")
    with pytest.raises(LedgerValidationError):
        recorder.record([row], batch_id="b1", occurred_at=utcnow())
    db_session.rollback()


def test_entries_are_immutable(db_session, product, size_m):
    stock_up(product.id, size_m.id, 5)
    entry = db_session.query(HistoryEntry).one()

    entry.note = "rewritten"
    with pytest.raises(ValueError):
        db_session.flush()
    db_session.rollback()

    entry = db_session.query(HistoryEntry).one()
    db_session.delete(entry)
    with pytest.raises(ValueError):
        db_session.flush()
    db_session.rollback()


def test_replay_matches_stock_after_mixed_batches(db_session, product, size_m, sink):
    stock_up(product.id, size_m.id, 10)
    stock_up(product.id, size_m.id, -3)
    stock_up(product.id, size_m.id, 8)

    assert history_service.replay(product.id, size_m.id) == 15
    assert history_service.verify_replay() == []


def test_replay_as_of_is_inclusive(db_session, product, size_m, sink):
    first = stock_up(product.id, size_m.id, 10)
    occurred_at = first.entries[0].occurred_at

    assert history_service.replay(product.id, size_m.id, as_of=occurred_at) == 10
    assert history_service.replay(product.id, size_m.id, as_of=occurred_at - timedelta(seconds=1)) == 0


def test_serialized_timestamp_reads_back_its_own_entry(db_session, product, size_m, sink):
    first = stock_up(product.id, size_m.id, 10)
    stamp = first.entries[0].to_dict()["occurred_at"]

    assert stamp.endswith("Z")
    assert parse_iso_datetime(stamp) == first.entries[0].occurred_at

    report = reporting_service.stock_as_of(as_of=stamp, product_id=product.id)
    assert [row["stock"] for row in report["rows"]] == [10]


def test_list_history_filters_and_pages_newest_first(db_session, product, size_m, size_l, sink):
    stock_up(product.id, size_m.id, 10)
    stock_up(product.id, size_l.id, 4)
    stock_up(product.id, size_m.id, -2)

    entries, total = history_service.list_history(product_id=product.id, size_id=size_m.id)
    assert total == 2
    assert [entry.delta for entry in entries] == [-2, 10]

    page, total = history_service.list_history(limit=1, offset=1)
    assert total == 3
    assert len(page) == 1


def test_list_history_rejects_unknown_reason(db_session):
    with pytest.raises(LedgerValidationError):
        history_service.list_history(reason="shrinkage")


def test_verify_replay_detects_tampered_stock(db_session, product, size_m, sink):
    result = stock_up(product.id, size_m.id, 6)
    db_session.execute(
        text("UPDATE stock_records SET stock = 9 WHERE product_id = :p AND size_id = :s"),
        {"p": product.id, "s": size_m.id},
    )
    db_session.commit()

    problems = history_service.verify_replay()
    assert problems == [{
        "product_id": product.id,
        "size_id": size_m.id,
        "stock": 9,
        "replayed": 6,
        "chain_intact": True,
    }]
    assert result.entries[0].new_stock == 6
