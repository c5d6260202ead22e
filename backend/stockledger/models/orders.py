from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z, to_iso_date


class Order(db.Model):
    """
    Supplier purchase order.

    LIFECYCLE:
    1. pending: created, items may be edited, order may be deleted
    2. completed: goods arrived, stock credited exactly once (terminal)
    3. cancelled: abandoned before arrival, no stock effect (terminal)

    Status only changes through the order service; completion flips the
    status in the same transaction as the purchase_receipt stock batch.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_expected", "status", "expected_arrival_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Supplier reference / PO number
    reference = db.Column(db.String(128), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    expected_arrival_date = db.Column(db.Date, nullable=True)
    arrival_date = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(120), nullable=True)
    completed_by = db.Column(db.String(120), nullable=True)
    cancelled_by = db.Column(db.String(120), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} reference={self.reference!r} status={self.status}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "reference": self.reference,
            "status": self.status,
            "total_cost_cents": self.total_cost_cents,
            "expected_arrival_date": to_iso_date(self.expected_arrival_date),
            "arrival_date": to_utc_z(self.arrival_date) if self.arrival_date else None,
            "notes": self.notes,
            "created_by": self.created_by,
            "completed_by": self.completed_by,
            "cancelled_by": self.cancelled_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    size_id = db.Column(db.Integer, db.ForeignKey("sizes.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    subtotal_cents = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")
    size = db.relationship("Size")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "position": self.position,
            "product_id": self.product_id,
            "size_id": self.size_id,
            "product_name": self.product.name if self.product else None,
            "size_name": self.size.name if self.size else None,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "subtotal_cents": self.subtotal_cents,
        }
