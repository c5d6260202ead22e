from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class Adjustment(db.Model):
    """
    Manual stock correction or customer return.

    kind is "adjustment" or "return" and becomes the history reason of every
    line. Each line carries its own free-text reason for the audit trail.
    """
    __tablename__ = "adjustments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(16), nullable=False, default="adjustment", index=True)
    actor = db.Column(db.String(120), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship(
        "AdjustmentLine",
        backref="adjustment",
        lazy=True,
        order_by="AdjustmentLine.position",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "kind": self.kind,
            "actor": self.actor,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at, precise=True),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class AdjustmentLine(db.Model):
    __tablename__ = "adjustment_lines"
    __table_args__ = (
        db.CheckConstraint("delta <> 0", name="ck_adjustment_lines_delta_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    adjustment_id = db.Column(db.Integer, db.ForeignKey("adjustments.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    size_id = db.Column(db.Integer, db.ForeignKey("sizes.id"), nullable=False)

    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "adjustment_id": self.adjustment_id,
            "position": self.position,
            "product_id": self.product_id,
            "size_id": self.size_id,
            "delta": self.delta,
            "reason": self.reason,
        }
