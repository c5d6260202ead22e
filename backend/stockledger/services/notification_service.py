# Overview: Decides when stock movements, sales and orders deserve a notification.

"""
Notification Trigger

WHY: The ledger only decides *that* something noteworthy happened. Turning a
NotificationIntent into a toast, push message or email is the job of the
delivery sinks registered on the dispatcher, which live outside this package.

LOW-STOCK POLICY (edge-triggered):
- stock_low fires once when a row crosses the threshold downward
  (previous >= T and new < T). Further decrements while already below T
  stay silent, so many small sales cannot produce an alert storm.
- stock_restocked fires once on the matching upward crossing
  (previous < T and new >= T) when recovery notices are enabled.
- Priority is "high" when the new stock is at or below the high-priority
  floor, "medium" otherwise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from flask import current_app

logger = logging.getLogger(__name__)


TYPE_STOCK_LOW = "stock_low"
TYPE_STOCK_RESTOCKED = "stock_restocked"
TYPE_IMPORTANT_SALE = "important_sale"
TYPE_ORDER_DELAYED = "order_delayed"

PRIORITY_HIGH = "high"
PRIORITY_MEDIUM = "medium"
PRIORITY_LOW = "low"


@dataclass(frozen=True)
class StockTransition:
    product_id: int
    size_id: int
    previous: int
    new: int


@dataclass(frozen=True)
class NotificationIntent:
    type: str
    priority: str
    entity_type: str
    entity_id: int | None
    title: str
    message: str
    link: str | None = None
    payload: dict = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "priority": self.priority,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "title": self.title,
            "message": self.message,
            "link": self.link,
            "payload": dict(self.payload),
        }


NameLookup = Callable[[int, int], tuple[str, str]]


def _ids_as_names(product_id: int, size_id: int) -> tuple[str, str]:
    return (f"#{product_id}", f"#{size_id}")


class NotificationTrigger:
    def __init__(
        self,
        threshold: int = 5,
        *,
        high_priority_at: int = 2,
        notify_restocked: bool = True,
        names: NameLookup | None = None,
    ):
        self.threshold = threshold
        self.high_priority_at = high_priority_at
        self.notify_restocked = notify_restocked
        self.names = names or _ids_as_names

    @classmethod
    def from_config(cls, config, names: NameLookup | None = None) -> "NotificationTrigger":
        return cls(
            config["LOW_STOCK_THRESHOLD"],
            high_priority_at=config["LOW_STOCK_HIGH_PRIORITY_AT"],
            notify_restocked=config["NOTIFY_RESTOCKED"],
            names=names,
        )

    def evaluate(self, rows: Iterable[StockTransition | tuple]) -> list[NotificationIntent]:
        intents = []
        for row in rows:
            if not isinstance(row, StockTransition):
                row = StockTransition(*row)

            crossed_down = row.previous >= self.threshold and row.new < self.threshold
            crossed_up = row.previous < self.threshold and row.new >= self.threshold

            if crossed_down:
                intents.append(self._stock_low(row))
            elif crossed_up and self.notify_restocked:
                intents.append(self._restocked(row))
        return intents

    def evaluate_opening(self, rows: Iterable[StockTransition | tuple]) -> list[NotificationIntent]:
        """stock_low for rows that start out below the threshold (a new product's sizes)."""
        intents = []
        for row in rows:
            if not isinstance(row, StockTransition):
                row = StockTransition(*row)
            if row.new < self.threshold:
                intents.append(self._stock_low(row))
        return intents

    def _stock_low(self, row: StockTransition) -> NotificationIntent:
        product_name, size_name = self.names(row.product_id, row.size_id)
        priority = PRIORITY_HIGH if row.new <= self.high_priority_at else PRIORITY_MEDIUM
        return NotificationIntent(
            type=TYPE_STOCK_LOW,
            priority=priority,
            entity_type="product",
            entity_id=row.product_id,
            title="Low stock",
            message=f'Product "{product_name}" (size {size_name}) is down to {row.new} units.',
            link=f"/inventory/{row.product_id}",
            payload={
                "product_id": row.product_id,
                "size_id": row.size_id,
                "previous_stock": row.previous,
                "stock": row.new,
                "threshold": self.threshold,
            },
        )

    def _restocked(self, row: StockTransition) -> NotificationIntent:
        product_name, size_name = self.names(row.product_id, row.size_id)
        return NotificationIntent(
            type=TYPE_STOCK_RESTOCKED,
            priority=PRIORITY_LOW,
            entity_type="product",
            entity_id=row.product_id,
            title="Stock recovered",
            message=f'Product "{product_name}" (size {size_name}) is back to {row.new} units.',
            link=f"/inventory/{row.product_id}",
            payload={
                "product_id": row.product_id,
                "size_id": row.size_id,
                "previous_stock": row.previous,
                "stock": row.new,
                "threshold": self.threshold,
            },
        )


def important_sale_intent(sale, threshold_cents: int) -> NotificationIntent | None:
    """Intent for a sale whose total reaches the important-sale threshold, else None."""
    if sale.total_cents < threshold_cents:
        return None
    return NotificationIntent(
        type=TYPE_IMPORTANT_SALE,
        priority=PRIORITY_MEDIUM,
        entity_type="sale",
        entity_id=sale.id,
        title="Important sale",
        message=f"Invoice {sale.invoice_number} recorded for {sale.total_cents / 100:,.2f}.",
        link=f"/sales/{sale.id}",
        payload={"invoice_number": sale.invoice_number, "total_cents": sale.total_cents},
    )


def delayed_order_intent(order, days_late: int) -> NotificationIntent:
    expected = order.expected_arrival_date.isoformat() if order.expected_arrival_date else None
    return NotificationIntent(
        type=TYPE_ORDER_DELAYED,
        priority=PRIORITY_HIGH if days_late >= 7 else PRIORITY_MEDIUM,
        entity_type="order",
        entity_id=order.id,
        title="Order delayed",
        message=f"Order {order.reference or order.id} is {days_late} days late. Expected: {expected}.",
        link=f"/orders/{order.id}",
        payload={"reference": order.reference, "expected_arrival_date": expected, "days_late": days_late},
    )


Sink = Callable[[NotificationIntent], None]


class NotificationDispatcher:
    """
    Hands intents to the registered delivery sinks.

    Dispatch happens after the batch committed, so a failing sink cannot undo
    stock changes; its error is logged and the remaining sinks still run.
    """

    def __init__(self) -> None:
        self._sinks: list[Sink] = []

    def register(self, sink: Sink) -> Sink:
        self._sinks.append(sink)
        return sink

    def unregister(self, sink: Sink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def dispatch(self, intents: Iterable[NotificationIntent]) -> int:
        delivered = 0
        for intent in intents:
            for sink in list(self._sinks):
                try:
                    sink(intent)
                except Exception:
                    logger.exception("Notification sink %r failed for %s", sink, intent.type)
                else:
                    delivered += 1
        return delivered


def log_sink(intent: NotificationIntent) -> None:
    """Default sink: record the intent in the application log."""
    current_app.logger.info(
        "notification type=%s priority=%s entity=%s:%s %s",
        intent.type,
        intent.priority,
        intent.entity_type,
        intent.entity_id,
        intent.message,
    )


def get_dispatcher() -> NotificationDispatcher:
    return current_app.extensions["notification_dispatcher"]


def init_app(app) -> NotificationDispatcher:
    dispatcher = NotificationDispatcher()
    dispatcher.register(log_sink)
    app.extensions["notification_dispatcher"] = dispatcher
    return dispatcher
