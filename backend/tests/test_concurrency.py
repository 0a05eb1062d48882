"""
Concurrent stock mutation tests.

Runs real threads against a file-backed SQLite database, each worker in its
own app context and session, the way concurrent requests would.

Verifies:
- Racing deductions never overdraw an item; exactly one of them lands
- A batch invoice deduction racing an absolute recount leaves a chained ledger
- Losers of a race see InsufficientStock or BatchFailure, never a broken ledger
"""

import os
import threading

import pytest

from workshop import create_app
from workshop.errors import BatchFailure, InsufficientStock
from workshop.extensions import db
from workshop.models import InventoryItem, InventoryTransaction
from workshop.models.inventory import REF_JOBCARD
from workshop.services import ledger_service, stock_service
from workshop.services.ledger_service import LedgerReference
from workshop.services.stock_service import StockLine


WORKERS = 8


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """Separate app on a file database so threads share state through SQLite."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{os.path.join(tmp_path, 'concurrency.db')}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30, 'check_same_thread': False}},
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _create_item(app, name, opening_stock):
    with app.app_context():
        item = stock_service.create_item(
            name=name,
            category="brake",
            cost_price_cents=80000,
            selling_price_cents=120000,
            opening_stock=opening_stock,
        )
        return item.id


def _run_together(app, jobs):
    """Start every callable at once, each in its own thread and app context."""
    barrier = threading.Barrier(len(jobs))
    results = []
    lock = threading.Lock()

    def worker(job):
        with app.app_context():
            barrier.wait()
            try:
                outcome = ("ok", job())
            except (InsufficientStock, BatchFailure) as exc:
                outcome = ("rejected", exc)
            except Exception as exc:
                outcome = ("error", exc)
            finally:
                db.session.remove()
            with lock:
                results.append(outcome)

    threads = [threading.Thread(target=worker, args=(job,)) for job in jobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


def _check_ledger(app, item_id):
    with app.app_context():
        report = ledger_service.verify_item_ledger(item_id)
        entries = (
            db.session.query(InventoryTransaction)
            .filter_by(inventory_item_id=item_id)
            .order_by(InventoryTransaction.id)
            .all()
        )
        stock = db.session.get(InventoryItem, item_id).current_stock
        return report, entries, stock


# =============================================================================
# SINGLE-ITEM RACES
# =============================================================================


class TestRacingDeductions:

    def test_only_one_deduction_fits(self, file_app):
        item_id = _create_item(file_app, "Brake Pad Set", opening_stock=5)

        results = _run_together(
            file_app,
            [lambda: stock_service.deduct_stock(item_id, 3, notes="counter sale")] * WORKERS,
        )

        kinds = [kind for kind, _ in results]
        assert kinds.count("error") == 0, [r for r in results if r[0] == "error"]
        assert kinds.count("ok") == 1
        assert kinds.count("rejected") == WORKERS - 1

        report, entries, stock = _check_ledger(file_app, item_id)
        assert stock == 2
        assert report["consistent"] is True
        assert [(e.quantity, e.previous_stock, e.new_stock) for e in entries] == [(5, 0, 5), (-3, 5, 2)]


# =============================================================================
# BATCH VS RECOUNT
# =============================================================================


class TestBatchAgainstRecount:

    @pytest.mark.parametrize("round_no", range(3))
    def test_batch_and_recount_serialize(self, file_app, round_no):
        pads = _create_item(file_app, f"Brake Pad Set {round_no}", opening_stock=5)
        filters = _create_item(file_app, f"Oil Filter {round_no}", opening_stock=5)
        reference = LedgerReference(REF_JOBCARD, 1, "INV-RACE")

        results = _run_together(file_app, [
            lambda: stock_service.deduct_for_invoice([StockLine(pads, 3), StockLine(filters, 3)], reference),
            lambda: stock_service.adjust_stock_to(pads, 1, notes="recount"),
        ])

        assert [kind for kind, _ in results if kind == "error"] == []
        batch_won = any(kind == "ok" and isinstance(value, list) for kind, value in results)

        pads_report, pads_entries, pads_stock = _check_ledger(file_app, pads)
        filters_report, _, filters_stock = _check_ledger(file_app, filters)

        # the recount always lands, before or after the batch
        assert pads_stock == 1
        assert filters_stock == (2 if batch_won else 5)
        assert pads_report["consistent"] is True
        assert filters_report["consistent"] is True
        for previous, entry in zip(pads_entries, pads_entries[1:]):
            assert entry.previous_stock == previous.new_stock
