# Overview: Pure billing math for job cards; no database access.

"""
Billing Calculator

All amounts are integer paise, tax rates are basis points (1800 = 18%).
Because every input is an exact integer, the only rounding step is the tax
term, which is rounded half-up to the nearest paisa. That is equivalent to
rounding subtotal, tax and grand total to 2 decimals at the outputs only,
and it means recomputing twice on the same items can never drift.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable


BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class BillingTotals:
    subtotal_cents: int
    discount_cents: int
    after_discount_cents: int
    tax_rate_bps: int
    tax_amount_cents: int
    grand_total_cents: int

    def to_dict(self) -> dict:
        return asdict(self)


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer division rounded half-up; both arguments must be non-negative."""
    return (numerator + denominator // 2) // denominator


def line_total_cents(quantity: int, unit_price_cents: int, discount_cents: int = 0) -> int:
    """Item total: max(0, quantity * unit price - discount)."""
    return max(0, quantity * unit_price_cents - max(0, discount_cents))


def compute_billing(
    items: Iterable,
    discount_cents: int = 0,
    tax_rate_bps: int = 0,
    *,
    only_approved: bool = False,
) -> BillingTotals:
    """
    Compute totals for a set of job items.

    `items` are JobItem rows or any objects exposing quantity,
    unit_price_cents, discount_cents and is_approved. Line totals are derived
    from those fields rather than read from a stored total, so a stale cached
    column can never leak into the result.

    only_approved previews the confirmed cost while approvals are pending.
    """
    subtotal = 0
    for item in items:
        if only_approved and not item.is_approved:
            continue
        subtotal += line_total_cents(item.quantity, item.unit_price_cents, item.discount_cents)

    discount = max(0, discount_cents or 0)
    after_discount = max(0, subtotal - discount)
    tax_rate_bps = max(0, tax_rate_bps or 0)
    tax_amount = round_half_up_div(after_discount * tax_rate_bps, BPS_DENOMINATOR)

    return BillingTotals(
        subtotal_cents=subtotal,
        discount_cents=discount,
        after_discount_cents=after_discount,
        tax_rate_bps=tax_rate_bps,
        tax_amount_cents=tax_amount,
        grand_total_cents=after_discount + tax_amount,
    )


def format_amount(cents: int) -> str:
    """212.40 style rendering for user-facing messages."""
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}{cents // 100}.{cents % 100:02d}"
