"""
Billing calculator tests.

Verifies:
- Totals for the reference job (2 x 100.00, 20.00 discount, 18% tax)
- Half-up rounding of the tax term only
- Recomputing never drifts
- Approved-only previews
"""

from types import SimpleNamespace

from workshop.services.billing_service import (
    compute_billing,
    format_amount,
    line_total_cents,
    round_half_up_div,
)


def _item(quantity, unit_price_cents, discount_cents=0, is_approved=True):
    return SimpleNamespace(
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        discount_cents=discount_cents,
        is_approved=is_approved,
    )


class TestComputeBilling:

    def test_reference_job_totals(self):
        totals = compute_billing([_item(2, 10000)], discount_cents=2000, tax_rate_bps=1800)

        assert totals.subtotal_cents == 20000
        assert totals.after_discount_cents == 18000
        assert totals.tax_amount_cents == 3240
        assert totals.grand_total_cents == 21240
        assert format_amount(totals.grand_total_cents) == "212.40"

    def test_item_discount_reduces_line_total(self):
        totals = compute_billing([_item(1, 50000, discount_cents=5000), _item(3, 1000)])
        assert totals.subtotal_cents == 45000 + 3000
        assert totals.tax_amount_cents == 0
        assert totals.grand_total_cents == 48000

    def test_discount_larger_than_subtotal_floors_at_zero(self):
        totals = compute_billing([_item(1, 1000)], discount_cents=5000, tax_rate_bps=1800)
        assert totals.after_discount_cents == 0
        assert totals.grand_total_cents == 0

    def test_tax_rounds_half_up_to_the_paisa(self):
        # 25 paise at 18% = 4.5 paise
        totals = compute_billing([_item(1, 25)], tax_rate_bps=1800)
        assert totals.tax_amount_cents == 5
        assert totals.grand_total_cents == 30

    def test_recompute_is_idempotent(self):
        items = [_item(3, 33333, discount_cents=7), _item(7, 1429)]
        first = compute_billing(items, discount_cents=1234, tax_rate_bps=1800)
        second = compute_billing(items, discount_cents=first.discount_cents, tax_rate_bps=first.tax_rate_bps)
        assert first == second

    def test_only_approved_skips_pending_items(self):
        items = [_item(1, 10000), _item(1, 5000, is_approved=False)]
        preview = compute_billing(items, tax_rate_bps=1800, only_approved=True)
        full = compute_billing(items, tax_rate_bps=1800)

        assert preview.subtotal_cents == 10000
        assert full.subtotal_cents == 15000

    def test_empty_items(self):
        totals = compute_billing([], discount_cents=0, tax_rate_bps=1800)
        assert totals.to_dict() == {
            "subtotal_cents": 0,
            "discount_cents": 0,
            "after_discount_cents": 0,
            "tax_rate_bps": 1800,
            "tax_amount_cents": 0,
            "grand_total_cents": 0,
        }


class TestHelpers:

    def test_line_total_never_negative(self):
        assert line_total_cents(1, 100, discount_cents=500) == 0
        assert line_total_cents(4, 250, discount_cents=100) == 900

    def test_round_half_up_div(self):
        assert round_half_up_div(4, 10) == 0
        assert round_half_up_div(5, 10) == 1
        assert round_half_up_div(15, 10) == 2

    def test_format_amount(self):
        assert format_amount(0) == "0.00"
        assert format_amount(5) == "0.05"
        assert format_amount(-21240) == "-212.40"
