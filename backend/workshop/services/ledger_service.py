# Overview: Stock ledger store; the only writer and the query surface for inventory transactions.

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_

from ..errors import InvalidState, NotFound
from ..extensions import db
from ..models import InventoryItem, InventoryTransaction
from ..models.inventory import REFERENCE_KINDS, TRANSACTION_TYPES
from ..time_utils import parse_iso_datetime, to_utc_z, utcnow
from ..validation import ValidationError
from . import document_service

"""
Stock ledger invariants (authoritative)

- Append-only: entries are never updated or deleted (enforced by ORM guards).
- Entries are written in the same DB transaction as the InventoryItem.current_stock
  change they record; append_entry flushes but never commits.
- new_stock == previous_stock + quantity for every entry.
- Sum of quantity over an item's entries == InventoryItem.current_stock.
- Ordering is (created_at, id); id breaks ties.
"""

MAX_PAGE_SIZE = 500
DEFAULT_PAGE_SIZE = 100


@dataclass(frozen=True)
class LedgerReference:
    """Tagged reference from a ledger entry to the document that caused it."""
    kind: str
    id: int | None = None
    number: str | None = None

    def __post_init__(self):
        if self.kind not in REFERENCE_KINDS:
            raise ValidationError(
                f"reference kind must be one of: {', '.join(REFERENCE_KINDS)}",
                {"field": "reference.kind", "allowed": list(REFERENCE_KINDS)},
            )

    def to_dict(self) -> dict:
        return {"kind": self.kind, "id": self.id, "number": self.number}


def append_entry(
    *,
    item: InventoryItem,
    txn_type: str,
    quantity: int,
    previous_stock: int,
    new_stock: int,
    unit_price_cents: int | None = None,
    reference: LedgerReference | None = None,
    performed_by_user_id: int | None = None,
    notes: str | None = None,
    supplier_name: str | None = None,
    supplier_invoice_number: str | None = None,
    occurred_at: Optional[datetime] = None,
) -> InventoryTransaction:
    """
    Append one ledger entry for `item`.

    - No stock logic here: the caller has already locked the item and
      computed the snapshot.
    - Flushes to obtain an id; never commits.
    """
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type: {txn_type}", {"type": txn_type})
    if new_stock != previous_stock + quantity:
        raise InvalidState(
            "Ledger snapshot mismatch",
            {"previous_stock": previous_stock, "quantity": quantity, "new_stock": new_stock},
        )

    total_amount = None
    if unit_price_cents is not None:
        total_amount = abs(quantity) * unit_price_cents

    entry = InventoryTransaction(
        transaction_number=document_service.next_document_number(
            document_service.SCOPE_STOCK_TXN, "INV"
        ),
        inventory_item_id=item.id,
        type=txn_type,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        unit_price_cents=unit_price_cents,
        total_amount_cents=total_amount,
        reference_kind=reference.kind if reference else None,
        reference_id=reference.id if reference else None,
        reference_number=reference.number if reference else None,
        performed_by_user_id=performed_by_user_id,
        notes=notes,
        supplier_name=supplier_name,
        supplier_invoice_number=supplier_invoice_number,
        created_at=occurred_at or utcnow(),
    )
    db.session.add(entry)
    db.session.flush()
    return entry


# =============================================================================
# Queries
# =============================================================================

def parse_cursor(raw: str | None) -> tuple[datetime, int] | None:
    """Cursor format: <ISO-8601>|<id>, as returned in next_cursor."""
    if not raw:
        return None
    try:
        ts_raw, id_raw = raw.split("|", 1)
        ts = parse_iso_datetime(ts_raw)
        return ts, int(id_raw)
    except (ValueError, TypeError):
        raise ValidationError("cursor must be in format <ISO-8601>|<id>", {"field": "cursor"})


def format_cursor(entry: InventoryTransaction) -> str:
    return f"{to_utc_z(entry.created_at)}|{entry.id}"


def _filtered_query(
    *,
    item_id: int | None = None,
    txn_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    reference_kind: str | None = None,
    reference_id: int | None = None,
):
    q = db.session.query(InventoryTransaction)
    if item_id is not None:
        q = q.filter(InventoryTransaction.inventory_item_id == item_id)
    if txn_type:
        if txn_type not in TRANSACTION_TYPES:
            raise ValidationError(
                f"type must be one of: {', '.join(TRANSACTION_TYPES)}",
                {"field": "type", "allowed": list(TRANSACTION_TYPES)},
            )
        q = q.filter(InventoryTransaction.type == txn_type)
    if date_from is not None:
        q = q.filter(InventoryTransaction.created_at >= date_from)
    if date_to is not None:
        q = q.filter(InventoryTransaction.created_at <= date_to)
    if reference_kind:
        if reference_kind not in REFERENCE_KINDS:
            raise ValidationError(
                f"reference_kind must be one of: {', '.join(REFERENCE_KINDS)}",
                {"field": "reference_kind", "allowed": list(REFERENCE_KINDS)},
            )
        q = q.filter(InventoryTransaction.reference_kind == reference_kind)
    if reference_id is not None:
        q = q.filter(InventoryTransaction.reference_id == reference_id)
    return q


def list_entries(
    *,
    item_id: int | None = None,
    txn_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    reference_kind: str | None = None,
    reference_id: int | None = None,
    cursor: tuple[datetime, int] | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
) -> tuple[list[InventoryTransaction], str | None]:
    """
    Newest-first page of ledger entries.

    Returns (entries, next_cursor); next_cursor is None on the last page.
    """
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    q = _filtered_query(
        item_id=item_id,
        txn_type=txn_type,
        date_from=date_from,
        date_to=date_to,
        reference_kind=reference_kind,
        reference_id=reference_id,
    )
    if cursor is not None:
        cursor_dt, cursor_id = cursor
        q = q.filter(
            or_(
                InventoryTransaction.created_at < cursor_dt,
                and_(InventoryTransaction.created_at == cursor_dt, InventoryTransaction.id < cursor_id),
            )
        )

    rows = (
        q.order_by(InventoryTransaction.created_at.desc(), InventoryTransaction.id.desc())
        .limit(limit + 1)
        .all()
    )
    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_cursor = format_cursor(rows[-1])
    return rows, next_cursor


def entries_for_reference(kind: str, reference_id: int) -> list[InventoryTransaction]:
    return (
        _filtered_query(reference_kind=kind, reference_id=reference_id)
        .order_by(InventoryTransaction.id)
        .all()
    )


def ledger_sum(item_id: int) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(InventoryTransaction.quantity), 0))
        .filter(InventoryTransaction.inventory_item_id == item_id)
        .scalar()
    )
    return int(total or 0)


def verify_item_ledger(item_id: int) -> dict:
    """
    Recheck an item's ledger against its cached stock.

    consistent is True when every entry's snapshot chains onto the previous
    one and first.previous_stock + sum(deltas) == current_stock.
    """
    item = db.session.get(InventoryItem, item_id)
    if not item:
        raise NotFound("Inventory item not found", {"item_id": item_id})

    entries = (
        db.session.query(InventoryTransaction)
        .filter(InventoryTransaction.inventory_item_id == item_id)
        .order_by(InventoryTransaction.id)
        .all()
    )

    broken = []
    expected_previous = entries[0].previous_stock if entries else 0
    for entry in entries:
        if entry.previous_stock != expected_previous or entry.new_stock != entry.previous_stock + entry.quantity:
            broken.append(entry.transaction_number)
        expected_previous = entry.new_stock

    opening = entries[0].previous_stock if entries else 0
    delta_sum = sum(e.quantity for e in entries)
    return {
        "item_id": item.id,
        "sku": item.sku,
        "current_stock": item.current_stock,
        "opening_stock": opening,
        "ledger_sum": delta_sum,
        "entry_count": len(entries),
        "broken_entries": broken,
        "consistent": not broken and opening + delta_sum == item.current_stock,
    }


CSV_COLUMNS = (
    "transaction_number",
    "created_at",
    "sku",
    "item_name",
    "type",
    "quantity",
    "previous_stock",
    "new_stock",
    "unit_price_cents",
    "total_amount_cents",
    "reference_kind",
    "reference_id",
    "reference_number",
    "performed_by_user_id",
    "notes",
)


def export_csv(**filters) -> str:
    """Render the filtered ledger (oldest first) as CSV text."""
    rows = (
        _filtered_query(**filters)
        .join(InventoryItem, InventoryItem.id == InventoryTransaction.inventory_item_id)
        .add_columns(InventoryItem.sku, InventoryItem.name)
        .order_by(InventoryTransaction.created_at, InventoryTransaction.id)
        .all()
    )
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(CSV_COLUMNS)
    for entry, sku, name in rows:
        writer.writerow([
            entry.transaction_number,
            to_utc_z(entry.created_at),
            sku,
            name,
            entry.type,
            entry.quantity,
            entry.previous_stock,
            entry.new_stock,
            entry.unit_price_cents,
            entry.total_amount_cents,
            entry.reference_kind,
            entry.reference_id,
            entry.reference_number,
            entry.performed_by_user_id,
            entry.notes,
        ])
    return out.getvalue()
