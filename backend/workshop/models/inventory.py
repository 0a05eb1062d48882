from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


ITEM_CATEGORIES = (
    "spare-part",
    "consumable",
    "accessory",
    "lubricant",
    "filter",
    "battery",
    "tyre",
    "brake",
    "electrical",
    "tool",
    "other",
)

ITEM_UNITS = ("piece", "litre", "kg", "metre", "set", "pair", "box")

TXN_PURCHASE = "purchase"
TXN_SALE = "sale"
TXN_RETURN = "return"
TXN_ADJUSTMENT = "adjustment"
TXN_DAMAGE = "damage"
TXN_TRANSFER = "transfer"
TRANSACTION_TYPES = (TXN_PURCHASE, TXN_SALE, TXN_RETURN, TXN_ADJUSTMENT, TXN_DAMAGE, TXN_TRANSFER)

REF_JOBCARD = "jobcard"
REF_PURCHASE = "purchase"
REF_MANUAL = "manual"
REFERENCE_KINDS = (REF_JOBCARD, REF_PURCHASE, REF_MANUAL)


class InventoryItem(db.Model):
    """
    One stock-keeping unit in the single workshop stock pool.

    current_stock is a cached projection of the ledger. It is only ever
    written by services.stock_service in the same unit of work that appends
    the matching InventoryTransaction.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.CheckConstraint("current_stock >= 0", name="ck_inventory_items_stock_non_negative"),
        db.Index("ix_inventory_items_category_active", "category", "is_active"),
        db.Index("ix_inventory_items_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(32), nullable=False, unique=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(32), nullable=False)
    brand = db.Column(db.String(128), nullable=True)
    part_number = db.Column(db.String(64), nullable=True)
    unit = db.Column(db.String(16), nullable=False, default="piece")

    current_stock = db.Column(db.Integer, nullable=False, default=0)
    min_stock = db.Column(db.Integer, nullable=False, default=5)
    max_stock = db.Column(db.Integer, nullable=False, default=100)

    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_restocked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} sku={self.sku!r} stock={self.current_stock}>"

    @property
    def is_low_stock(self) -> bool:
        return self.current_stock <= self.min_stock

    @property
    def is_out_of_stock(self) -> bool:
        return self.current_stock == 0

    @property
    def stock_status(self) -> str:
        if self.is_out_of_stock:
            return "out-of-stock"
        if self.is_low_stock:
            return "low-stock"
        return "in-stock"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "brand": self.brand,
            "part_number": self.part_number,
            "unit": self.unit,
            "current_stock": self.current_stock,
            "min_stock": self.min_stock,
            "max_stock": self.max_stock,
            "stock_status": self.stock_status,
            "cost_price_cents": self.cost_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "is_active": self.is_active,
            "last_restocked_at": to_utc_z(self.last_restocked_at),
            "last_used_at": to_utc_z(self.last_used_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryTransaction(db.Model):
    """
    Stock ledger entry. Write-once: never updated or deleted.

    quantity is the signed delta; previous_stock/new_stock are snapshots taken
    under the item row lock, so new_stock == previous_stock + quantity holds
    for every row and the per-item sum of deltas equals current_stock.

    The reference is a tagged pair (reference_kind, reference_id) plus an
    optional human number; it is a lookup key only, with no foreign key and
    no cascade.
    """
    __tablename__ = "inventory_transactions"
    __table_args__ = (
        db.Index("ix_inventory_transactions_item_created", "inventory_item_id", "created_at"),
        db.Index("ix_inventory_transactions_reference", "reference_kind", "reference_id"),
        db.CheckConstraint(
            "new_stock = previous_stock + quantity",
            name="ck_inventory_transactions_snapshot",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_number = db.Column(db.String(32), nullable=False, unique=True)
    inventory_item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    unit_price_cents = db.Column(db.Integer, nullable=True)
    total_amount_cents = db.Column(db.Integer, nullable=True)

    reference_kind = db.Column(db.String(16), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    reference_number = db.Column(db.String(64), nullable=True)

    supplier_name = db.Column(db.String(128), nullable=True)
    supplier_invoice_number = db.Column(db.String(64), nullable=True)

    performed_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    item = db.relationship("InventoryItem", backref=db.backref("transactions", lazy="dynamic"))

    def __repr__(self) -> str:
        return (
            f"<InventoryTransaction {self.transaction_number} item={self.inventory_item_id} "
            f"{self.type} {self.quantity:+d}>"
        )

    def reference_dict(self) -> dict | None:
        if not self.reference_kind:
            return None
        return {
            "kind": self.reference_kind,
            "id": self.reference_id,
            "number": self.reference_number,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_number": self.transaction_number,
            "inventory_item_id": self.inventory_item_id,
            "type": self.type,
            "quantity": self.quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "unit_price_cents": self.unit_price_cents,
            "total_amount_cents": self.total_amount_cents,
            "reference": self.reference_dict(),
            "supplier_name": self.supplier_name,
            "supplier_invoice_number": self.supplier_invoice_number,
            "performed_by_user_id": self.performed_by_user_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class LedgerImmutableError(RuntimeError):
    """Raised when code tries to modify or delete a persisted ledger entry."""


@event.listens_for(InventoryTransaction, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only")


@event.listens_for(InventoryTransaction, "before_delete")
def _reject_ledger_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only")
