# Overview: Stock engine; every stock change locks the item and appends one ledger entry atomically.

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable

from flask import current_app
from sqlalchemy import func

from ..errors import BatchFailure, ConflictError, InsufficientStock, NotFound
from ..extensions import db
from ..models import InventoryItem, InventoryTransaction
from ..models.inventory import (
    ITEM_CATEGORIES,
    ITEM_UNITS,
    REF_MANUAL,
    REF_PURCHASE,
    TXN_ADJUSTMENT,
    TXN_DAMAGE,
    TXN_PURCHASE,
    TXN_RETURN,
    TXN_SALE,
)
from ..time_utils import utcnow
from ..validation import (
    ValidationError,
    optional_str,
    parse_cents,
    parse_int,
    parse_quantity,
    require_choice,
    require_str,
)
from . import document_service, ledger_service, notification_service
from .concurrency import commit_unit, lock_for_update, run_with_retry
from .ledger_service import LedgerReference

"""
Stock engine invariants (authoritative)

- InventoryItem.current_stock is never negative; an operation that would make
  it negative is rejected, never clamped.
- current_stock is only written here, under a row lock, in the same unit of
  work that appends the ledger entry recording the change.
- Each operation writes exactly one ledger entry per item line it touches.
- Batch invoice deduction validates every line before writing anything and
  locks all rows in ascending id order, so it serializes against every other
  mutator of those items and never deadlocks against another batch.
- Low-stock alerts are outbox rows delivered after commit; delivery failure
  never undoes a stock change.
"""


@dataclass(frozen=True)
class StockChange:
    item_id: int
    previous_stock: int
    new_stock: int
    quantity: int
    transaction_id: int
    transaction_number: str

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "delta": self.quantity,
            "transaction_id": self.transaction_id,
            "transaction_number": self.transaction_number,
        }


@dataclass(frozen=True)
class StockLine:
    item_id: int
    quantity: int


def parse_lines(raw_lines) -> list[StockLine]:
    """Validate [{"item_id": .., "quantity": ..}, ...] request lines."""
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("lines must be a non-empty list", {"field": "lines"})
    lines = []
    for index, raw in enumerate(raw_lines):
        if not isinstance(raw, dict):
            raise ValidationError(f"lines[{index}] must be an object", {"index": index})
        lines.append(
            StockLine(
                item_id=parse_int(raw.get("item_id"), f"lines[{index}].item_id", minimum=1),
                quantity=parse_quantity(raw.get("quantity"), f"lines[{index}].quantity"),
            )
        )
    return lines


# =============================================================================
# Internal helpers (run inside the caller's unit of work; never commit)
# =============================================================================

def _get_item(item_id: int, *, lock: bool = False) -> InventoryItem:
    query = db.session.query(InventoryItem).filter_by(id=item_id)
    if lock:
        query = lock_for_update(query)
    item = query.first()
    if item is None:
        raise NotFound("Inventory item not found", {"item_id": item_id})
    return item


def _lock_items(item_ids: Iterable[int]) -> dict[int, InventoryItem]:
    ids = sorted(set(item_ids))
    rows = lock_for_update(
        db.session.query(InventoryItem)
        .filter(InventoryItem.id.in_(ids))
        .order_by(InventoryItem.id)
    ).all()
    return {row.id: row for row in rows}


def _queue_low_stock_alert(item: InventoryItem) -> None:
    out_of_stock = item.current_stock == 0
    notification_service.enqueue_for_admins(
        "stock_out" if out_of_stock else "stock_low",
        {
            "title": "Out of Stock Alert" if out_of_stock else "Low Stock Alert",
            "item_id": item.id,
            "sku": item.sku,
            "name": item.name,
            "current_stock": item.current_stock,
            "min_stock": item.min_stock,
        },
    )


def apply_delta(
    item: InventoryItem,
    *,
    quantity: int,
    txn_type: str,
    user_id: int | None = None,
    unit_price_cents: int | None = None,
    reference: LedgerReference | None = None,
    notes: str | None = None,
    supplier_name: str | None = None,
    supplier_invoice_number: str | None = None,
) -> StockChange:
    """
    Apply a signed delta to a locked item and append its ledger entry.

    The caller must hold the row lock and commit.
    """
    previous = item.current_stock
    new = previous + quantity
    if new < 0:
        raise InsufficientStock(
            f"Insufficient stock. Available: {previous}, Required: {-quantity}",
            {"item_id": item.id, "name": item.name, "available": previous, "required": -quantity},
        )

    now = utcnow()
    item.current_stock = new
    if quantity > 0 and txn_type == TXN_PURCHASE:
        item.last_restocked_at = now
    if quantity < 0:
        item.last_used_at = now

    entry = ledger_service.append_entry(
        item=item,
        txn_type=txn_type,
        quantity=quantity,
        previous_stock=previous,
        new_stock=new,
        unit_price_cents=unit_price_cents,
        reference=reference,
        performed_by_user_id=user_id,
        notes=notes,
        supplier_name=supplier_name,
        supplier_invoice_number=supplier_invoice_number,
        occurred_at=now,
    )

    if quantity < 0 and new <= item.min_stock:
        _queue_low_stock_alert(item)

    return StockChange(
        item_id=item.id,
        previous_stock=previous,
        new_stock=new,
        quantity=quantity,
        transaction_id=entry.id,
        transaction_number=entry.transaction_number,
    )


def deduct_for_invoice_in_unit(
    lines: list[StockLine],
    reference: LedgerReference,
    *,
    user_id: int | None = None,
) -> list[StockChange]:
    """
    All-or-nothing sale deduction inside the caller's unit of work.

    Requirements are aggregated per item before checking, so two lines for
    the same item cannot each pass on their own and jointly overdraw it.
    Raises BatchFailure listing every failing line; nothing has been written
    at that point.
    """
    items = _lock_items(line.item_id for line in lines)

    required: OrderedDict[int, int] = OrderedDict()
    for line in lines:
        required[line.item_id] = required.get(line.item_id, 0) + line.quantity

    failures = []
    for index, line in enumerate(lines):
        item = items.get(line.item_id)
        if item is None:
            failures.append({
                "index": index,
                "item_id": line.item_id,
                "name": None,
                "error": "Item not found",
            })
            continue
        if not item.is_active:
            failures.append({
                "index": index,
                "item_id": item.id,
                "name": item.name,
                "error": "Item is inactive",
            })
            continue
        needed = required[line.item_id]
        if needed > item.current_stock:
            failures.append({
                "index": index,
                "item_id": item.id,
                "name": item.name,
                "available": item.current_stock,
                "required": needed,
                "error": f"Insufficient stock. Available: {item.current_stock}, Required: {needed}",
            })

    if failures:
        raise BatchFailure(
            "Stock deduction failed for one or more items",
            {"failures": failures, "reference": reference.to_dict()},
        )

    note = f"Used in invoice {reference.number}" if reference.number else None
    changes = []
    for line in lines:
        item = items[line.item_id]
        changes.append(
            apply_delta(
                item,
                quantity=-line.quantity,
                txn_type=TXN_SALE,
                user_id=user_id,
                unit_price_cents=item.selling_price_cents,
                reference=reference,
                notes=note,
            )
        )
    return changes


def return_from_invoice_in_unit(
    lines: list[StockLine],
    reference: LedgerReference,
    *,
    reason: str | None = None,
    user_id: int | None = None,
) -> list[StockChange]:
    items = _lock_items(line.item_id for line in lines)
    missing = sorted({line.item_id for line in lines if line.item_id not in items})
    if missing:
        raise NotFound("Inventory item not found", {"item_ids": missing})

    note = reason or (f"Returned from invoice {reference.number}" if reference.number else "Returned from invoice")
    changes = []
    for line in lines:
        item = items[line.item_id]
        changes.append(
            apply_delta(
                item,
                quantity=line.quantity,
                txn_type=TXN_RETURN,
                user_id=user_id,
                unit_price_cents=item.selling_price_cents,
                reference=reference,
                notes=note,
            )
        )
    return changes


# =============================================================================
# Item management
# =============================================================================

def generate_sku(category: str) -> str:
    prefix = category.replace("-", "")[:3].upper()
    return document_service.next_document_number(f"sku:{prefix}", prefix, pad=6, daily=False)


def create_item(
    *,
    name: str,
    category: str,
    user_id: int | None = None,
    sku: str | None = None,
    barcode: str | None = None,
    unit: str = "piece",
    brand: str | None = None,
    part_number: str | None = None,
    description: str | None = None,
    min_stock: int = 5,
    max_stock: int = 100,
    cost_price_cents: int = 0,
    selling_price_cents: int = 0,
    opening_stock: int = 0,
) -> InventoryItem:
    """
    Create a stock item.

    An opening stock > 0 is recorded as a purchase ledger entry
    ("Initial stock entry") in the same transaction, so the ledger sum matches
    current_stock from the first row.
    """
    name = require_str(name, "name", max_length=255)
    category = require_choice(category, "category", ITEM_CATEGORIES)
    unit = require_choice(unit, "unit", ITEM_UNITS)
    sku = optional_str(sku, "sku", max_length=32)
    barcode = optional_str(barcode, "barcode", max_length=64)
    min_stock = parse_int(min_stock, "min_stock", minimum=0)
    max_stock = parse_int(max_stock, "max_stock", minimum=0)
    if max_stock < min_stock:
        raise ValidationError("max_stock must be >= min_stock", {"min_stock": min_stock, "max_stock": max_stock})
    cost_price_cents = parse_cents(cost_price_cents, "cost_price_cents")
    selling_price_cents = parse_cents(selling_price_cents, "selling_price_cents")
    opening_stock = parse_quantity(opening_stock, "opening_stock", allow_zero=True)

    def _op() -> InventoryItem:
        if sku and db.session.query(InventoryItem.id).filter_by(sku=sku).first():
            raise ConflictError("SKU already exists", {"sku": sku})
        if barcode and db.session.query(InventoryItem.id).filter_by(barcode=barcode).first():
            raise ConflictError("Barcode already exists", {"barcode": barcode})

        item = InventoryItem(
            sku=sku or generate_sku(category),
            barcode=barcode,
            name=name,
            description=description,
            category=category,
            brand=brand,
            part_number=part_number,
            unit=unit,
            current_stock=0,
            min_stock=min_stock,
            max_stock=max_stock,
            cost_price_cents=cost_price_cents,
            selling_price_cents=selling_price_cents,
            is_active=True,
        )
        db.session.add(item)
        db.session.flush()

        if opening_stock > 0:
            apply_delta(
                item,
                quantity=opening_stock,
                txn_type=TXN_PURCHASE,
                user_id=user_id,
                unit_price_cents=cost_price_cents,
                reference=LedgerReference(REF_MANUAL),
                notes="Initial stock entry",
            )
        return commit_unit(item)

    return run_with_retry(_op)


def get_item(item_id: int) -> InventoryItem:
    return _get_item(item_id)


def get_by_barcode(barcode: str) -> InventoryItem:
    """Active item with this barcode; inactive items are not returned."""
    barcode = require_str(barcode, "barcode", max_length=64)
    item = (
        db.session.query(InventoryItem)
        .filter(InventoryItem.barcode == barcode, InventoryItem.is_active.is_(True))
        .first()
    )
    if item is None:
        raise NotFound("Inventory item not found with this barcode", {"barcode": barcode})
    return item


_ITEM_TEXT_FIELDS = {
    "name": 255,
    "brand": 128,
    "part_number": 64,
    "description": None,
}


def _parse_item_changes(changes: dict) -> dict:
    if not isinstance(changes, dict) or not changes:
        raise ValidationError("No fields to update")
    if "current_stock" in changes:
        raise ValidationError(
            "current_stock cannot be edited; use add-stock, deduct-stock or adjust-stock",
            {"field": "current_stock"},
        )
    unknown = sorted(
        set(changes)
        - set(_ITEM_TEXT_FIELDS)
        - {"barcode", "category", "unit", "min_stock", "max_stock",
           "cost_price_cents", "selling_price_cents", "is_active"}
    )
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(unknown)}", {"fields": unknown})

    parsed = {}
    for field, max_length in _ITEM_TEXT_FIELDS.items():
        if field in changes:
            if field == "name":
                parsed[field] = require_str(changes[field], field, max_length=max_length)
            else:
                parsed[field] = optional_str(changes[field], field, max_length=max_length)
    if "barcode" in changes:
        parsed["barcode"] = optional_str(changes["barcode"], "barcode", max_length=64)
    if "category" in changes:
        parsed["category"] = require_choice(changes["category"], "category", ITEM_CATEGORIES)
    if "unit" in changes:
        parsed["unit"] = require_choice(changes["unit"], "unit", ITEM_UNITS)
    for field in ("min_stock", "max_stock"):
        if field in changes:
            parsed[field] = parse_int(changes[field], field, minimum=0)
    for field in ("cost_price_cents", "selling_price_cents"):
        if field in changes:
            parsed[field] = parse_cents(changes[field], field)
    if "is_active" in changes:
        if not isinstance(changes["is_active"], bool):
            raise ValidationError("is_active must be a boolean", {"field": "is_active"})
        parsed["is_active"] = changes["is_active"]
    return parsed


def update_item(item_id: int, changes: dict, *, user_id: int | None = None) -> InventoryItem:
    """
    Edit an item's catalogue fields.

    current_stock is never editable here: stock only moves through the
    ledger-writing operations. The SKU is fixed once assigned.
    """
    fields = _parse_item_changes(changes)

    def _op() -> InventoryItem:
        item = _get_item(item_id, lock=True)
        barcode = fields.get("barcode")
        if barcode and barcode != item.barcode:
            clash = (
                db.session.query(InventoryItem.id)
                .filter(InventoryItem.barcode == barcode, InventoryItem.id != item.id)
                .first()
            )
            if clash:
                raise ConflictError("Barcode already exists", {"barcode": barcode})

        min_stock = fields.get("min_stock", item.min_stock)
        max_stock = fields.get("max_stock", item.max_stock)
        if max_stock < min_stock:
            raise ValidationError(
                "max_stock must be >= min_stock", {"min_stock": min_stock, "max_stock": max_stock}
            )

        for field, value in fields.items():
            setattr(item, field, value)
        current_app.logger.info("Inventory item %s updated by user %s: %s", item.sku, user_id, sorted(fields))
        return commit_unit(item)

    return run_with_retry(_op)


def deactivate_item(item_id: int, *, user_id: int | None = None) -> InventoryItem:
    """Soft delete. The item and its ledger stay; it stops accepting invoice deductions."""
    def _op() -> InventoryItem:
        item = _get_item(item_id, lock=True)
        if item.is_active:
            item.is_active = False
            current_app.logger.info("Inventory item %s deactivated by user %s", item.sku, user_id)
        return commit_unit(item)

    return run_with_retry(_op)


# =============================================================================
# Single-item mutations
# =============================================================================

def add_stock(
    item_id: int,
    quantity: int,
    *,
    user_id: int | None = None,
    unit_price_cents: int | None = None,
    notes: str | None = None,
    supplier_name: str | None = None,
    supplier_invoice_number: str | None = None,
) -> StockChange:
    """Receive stock (purchase). Unit price defaults to the item's cost price."""
    quantity = parse_quantity(quantity)
    if unit_price_cents is not None:
        unit_price_cents = parse_cents(unit_price_cents, "unit_price_cents")

    def _op() -> StockChange:
        item = _get_item(item_id, lock=True)
        change = apply_delta(
            item,
            quantity=quantity,
            txn_type=TXN_PURCHASE,
            user_id=user_id,
            unit_price_cents=unit_price_cents if unit_price_cents is not None else item.cost_price_cents,
            reference=LedgerReference(REF_PURCHASE, number=supplier_invoice_number),
            notes=notes,
            supplier_name=supplier_name,
            supplier_invoice_number=supplier_invoice_number,
        )
        return commit_unit(change)

    return run_with_retry(_op)


def deduct_stock(
    item_id: int,
    quantity: int,
    *,
    reason: str | None = None,
    user_id: int | None = None,
    notes: str | None = None,
) -> StockChange:
    """Manual deduction: reason "damage" writes a damage entry, anything else an adjustment."""
    quantity = parse_quantity(quantity)
    txn_type = TXN_DAMAGE if reason == "damage" else TXN_ADJUSTMENT

    def _op() -> StockChange:
        item = _get_item(item_id, lock=True)
        change = apply_delta(
            item,
            quantity=-quantity,
            txn_type=txn_type,
            user_id=user_id,
            unit_price_cents=item.cost_price_cents,
            reference=LedgerReference(REF_MANUAL),
            notes=notes or reason,
        )
        return commit_unit(change)

    return run_with_retry(_op)


def adjust_stock_to(
    item_id: int,
    new_quantity: int,
    *,
    user_id: int | None = None,
    notes: str | None = None,
) -> StockChange:
    """Set an absolute stock level (recount). A zero delta still records an entry."""
    new_quantity = parse_quantity(new_quantity, "new_quantity", allow_zero=True)

    def _op() -> StockChange:
        item = _get_item(item_id, lock=True)
        change = apply_delta(
            item,
            quantity=new_quantity - item.current_stock,
            txn_type=TXN_ADJUSTMENT,
            user_id=user_id,
            reference=LedgerReference(REF_MANUAL),
            notes=notes or "Manual stock adjustment",
        )
        return commit_unit(change)

    return run_with_retry(_op)


# =============================================================================
# Invoice batches
# =============================================================================

def deduct_for_invoice(
    lines: list[StockLine],
    reference: LedgerReference,
    *,
    user_id: int | None = None,
) -> list[StockChange]:
    def _op() -> list[StockChange]:
        changes = deduct_for_invoice_in_unit(lines, reference, user_id=user_id)
        return commit_unit(changes)

    return run_with_retry(_op)


def return_from_invoice(
    lines: list[StockLine],
    reference: LedgerReference,
    *,
    reason: str | None = None,
    user_id: int | None = None,
) -> list[StockChange]:
    def _op() -> list[StockChange]:
        changes = return_from_invoice_in_unit(lines, reference, reason=reason, user_id=user_id)
        return commit_unit(changes)

    return run_with_retry(_op)


# =============================================================================
# Queries
# =============================================================================

def low_stock_items() -> dict:
    """Active items at or below min_stock, split into out-of-stock and low-stock."""
    rows = (
        db.session.query(InventoryItem)
        .filter(
            InventoryItem.is_active.is_(True),
            InventoryItem.current_stock <= InventoryItem.min_stock,
        )
        .order_by(InventoryItem.current_stock, InventoryItem.name)
        .all()
    )
    out_of_stock = [r for r in rows if r.current_stock == 0]
    low_stock = [r for r in rows if r.current_stock > 0]
    return {
        "out_of_stock": out_of_stock,
        "low_stock": low_stock,
        "total": len(rows),
    }


def stock_valuation() -> dict:
    cost, retail, units = (
        db.session.query(
            func.coalesce(func.sum(InventoryItem.current_stock * InventoryItem.cost_price_cents), 0),
            func.coalesce(func.sum(InventoryItem.current_stock * InventoryItem.selling_price_cents), 0),
            func.coalesce(func.sum(InventoryItem.current_stock), 0),
        )
        .filter(InventoryItem.is_active.is_(True))
        .one()
    )
    return {
        "cost_value_cents": int(cost),
        "retail_value_cents": int(retail),
        "total_units": int(units),
    }


def invoiced_quantities(reference_kind: str, reference_id: int) -> dict[int, int]:
    """Net units currently out on a reference (sales minus returns), per item."""
    rows = (
        db.session.query(
            InventoryTransaction.inventory_item_id,
            func.sum(InventoryTransaction.quantity),
        )
        .filter(
            InventoryTransaction.reference_kind == reference_kind,
            InventoryTransaction.reference_id == reference_id,
            InventoryTransaction.type.in_((TXN_SALE, TXN_RETURN)),
        )
        .group_by(InventoryTransaction.inventory_item_id)
        .all()
    )
    return {item_id: -int(total) for item_id, total in rows if total and total < 0}
