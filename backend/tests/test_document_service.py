"""
Document numbering tests.

Verifies:
- Daily counters render PREFIX + YYYYMMDD + padded number
- Counters are per scope and per day
- Non-daily scopes (SKUs) keep counting across days
"""

from datetime import date

from workshop.services import document_service
from workshop.services.stock_service import generate_sku
from workshop.time_utils import day_stamp


class TestNextDocumentNumber:

    def test_daily_counter_increments(self, db_session):
        day = day_stamp()
        first = document_service.next_document_number(document_service.SCOPE_JOB, "JOB")
        second = document_service.next_document_number(document_service.SCOPE_JOB, "JOB")

        assert first == f"JOB{day}0001"
        assert second == f"JOB{day}0002"

    def test_scopes_are_independent(self, db_session):
        document_service.next_document_number(document_service.SCOPE_JOB, "JOB")
        payment = document_service.next_document_number(document_service.SCOPE_PAYMENT, "PAY")
        assert payment.endswith("0001")

    def test_counter_restarts_each_day(self, db_session):
        jan = document_service.next_document_number(document_service.SCOPE_JOB, "JOB", on=date(2026, 1, 15))
        document_service.next_document_number(document_service.SCOPE_JOB, "JOB", on=date(2026, 1, 15))
        feb = document_service.next_document_number(document_service.SCOPE_JOB, "JOB", on=date(2026, 2, 1))

        assert jan == "JOB202601150001"
        assert feb == "JOB202602010001"

    def test_sku_sequence_is_not_daily(self, db_session):
        assert generate_sku("brake") == "BRA000001"
        assert generate_sku("brake") == "BRA000002"
        assert generate_sku("spare-part") == "SPA000001"

