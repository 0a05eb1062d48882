"""
Payment gateway and hosted checkout tests.

Verifies:
- HMAC signature over "<order_id>|<payment_id>", compared in constant time
- Order creation over httpx, with gateway failures mapped to GatewayError
- Checkout tokens: one pending payment, expiry, order match, signature match, balance re-check
"""

from datetime import timedelta

import httpx
import pytest

from workshop.errors import Expired, GatewayError, InvalidState, NotFound, OutOfRange, SignatureInvalid
from workshop.models import Payment
from workshop.services import gateway_service, payment_service
from workshop.services.gateway_service import GatewayClient, compute_signature
from workshop.time_utils import utcnow


GATEWAY_KEY_SECRET = "rzp_test_secret"


# =============================================================================
# CLIENT
# =============================================================================


class TestSignature:

    def test_compute_signature_is_hex_sha256(self):
        signature = compute_signature("order_1", "pay_1", "secret")
        assert len(signature) == 64
        assert signature == compute_signature("order_1", "pay_1", "secret")
        assert signature != compute_signature("order_1", "pay_2", "secret")

    def test_verify_signature(self):
        client = GatewayClient("key", "secret", "https://gateway.invalid/v1")
        good = compute_signature("order_1", "pay_1", "secret")
        assert client.verify_signature("order_1", "pay_1", good) is True
        assert client.verify_signature("order_1", "pay_1", good.upper()) is False

    @pytest.mark.parametrize("order_id,payment_id,signature", [
        ("", "pay_1", "abc"),
        ("order_1", "", "abc"),
        ("order_1", "pay_1", ""),
    ])
    def test_verify_fails_closed_on_missing_input(self, order_id, payment_id, signature):
        client = GatewayClient("key", "secret", "https://gateway.invalid/v1")
        assert client.verify_signature(order_id, payment_id, signature) is False

    def test_verify_fails_without_secret(self):
        client = GatewayClient("key", "", "https://gateway.invalid/v1")
        assert client.verify_signature("order_1", "pay_1", compute_signature("order_1", "pay_1", "")) is False


class TestCreateOrder:

    def _client(self):
        return GatewayClient("key", "secret", "https://gateway.invalid/v1/")

    def test_create_order(self, monkeypatch):
        calls = []

        def fake_post(url, json=None, auth=None, timeout=None):
            calls.append((url, json, auth))
            return httpx.Response(200, json={"id": "order_abc", "amount": json["amount"]},
                                  request=httpx.Request("POST", url))

        monkeypatch.setattr(gateway_service.httpx, "post", fake_post)
        order = self._client().create_order(21240, receipt="PAY202601010001")

        assert order["id"] == "order_abc"
        url, body, auth = calls[0]
        assert url == "https://gateway.invalid/v1/orders"
        assert body["currency"] == "INR"
        assert body["amount"] == 21240
        assert auth == ("key", "secret")

    def test_rejected_order(self, monkeypatch):
        def fake_post(url, **kwargs):
            return httpx.Response(400, json={"error": "bad amount"}, request=httpx.Request("POST", url))

        monkeypatch.setattr(gateway_service.httpx, "post", fake_post)
        with pytest.raises(GatewayError) as exc:
            self._client().create_order(100, receipt="r1")
        assert exc.value.details["status_code"] == 400

    def test_unreachable_gateway(self, monkeypatch):
        def fake_post(url, **kwargs):
            raise httpx.ConnectError("connection refused", request=httpx.Request("POST", url))

        monkeypatch.setattr(gateway_service.httpx, "post", fake_post)
        with pytest.raises(GatewayError):
            self._client().create_order(100, receipt="r1")

    def test_invalid_order_body(self, monkeypatch):
        def fake_post(url, **kwargs):
            return httpx.Response(200, json={"status": "created"}, request=httpx.Request("POST", url))

        monkeypatch.setattr(gateway_service.httpx, "post", fake_post)
        with pytest.raises(GatewayError):
            self._client().create_order(100, receipt="r1")

    def test_unconfigured_client(self):
        with pytest.raises(GatewayError):
            GatewayClient("", "", "https://gateway.invalid/v1").create_order(100, receipt="r1")


# =============================================================================
# HOSTED CHECKOUT
# =============================================================================


@pytest.fixture
def pending_payment(db_session, make_job, admin):
    job = make_job()
    return payment_service.record_payment(
        job_id=job.id,
        amount_cents=10000,
        payment_type="advance",
        payment_method="upi",
        status="pending",
        user_id=admin.id,
    )


class TestCheckout:

    def _verify(self, token, order_id, gateway_payment_id="pay_XYZ", signature=None, **kwargs):
        if signature is None:
            signature = compute_signature(order_id, gateway_payment_id, GATEWAY_KEY_SECRET)
        return payment_service.verify_checkout(
            token=token,
            order_id=order_id,
            gateway_payment_id=gateway_payment_id,
            signature=signature,
            **kwargs,
        )

    def test_checkout_completes_payment(self, db_session, gateway, pending_payment, sender):
        result = payment_service.create_checkout_order(pending_payment.id)
        order_id = result["order"]["id"]
        assert order_id == f"order_{pending_payment.payment_number}"
        assert result["order"]["amount"] == 10000

        payment = self._verify(result["checkout_token"], order_id)

        assert payment.status == "completed"
        assert payment.transaction_id == "pay_XYZ"
        assert payment.checkout_token_hash is None
        assert payment_service.balance_due(payment.job_card_id) == 11240
        assert "payment_received" in sender.kinds()

    def test_token_is_not_stored_in_plaintext(self, db_session, gateway, pending_payment):
        result = payment_service.create_checkout_order(pending_payment.id)
        stored = db_session.get(Payment, pending_payment.id)
        assert stored.checkout_token_hash
        assert stored.checkout_token_hash != result["checkout_token"]

    def test_expired_checkout(self, db_session, gateway, pending_payment):
        result = payment_service.create_checkout_order(pending_payment.id)

        with pytest.raises(Expired):
            self._verify(result["checkout_token"], result["order"]["id"], now=utcnow() + timedelta(hours=2))
        assert db_session.get(Payment, pending_payment.id).status == "pending"

    def test_order_mismatch(self, db_session, gateway, pending_payment):
        result = payment_service.create_checkout_order(pending_payment.id)
        with pytest.raises(SignatureInvalid):
            self._verify(result["checkout_token"], "order_other")

    def test_bad_signature(self, db_session, gateway, pending_payment):
        result = payment_service.create_checkout_order(pending_payment.id)
        with pytest.raises(SignatureInvalid):
            self._verify(result["checkout_token"], result["order"]["id"], signature="0" * 64)
        assert db_session.get(Payment, pending_payment.id).status == "pending"

    def test_unknown_token(self, db_session, gateway, pending_payment):
        with pytest.raises(NotFound):
            self._verify("not-a-token", "order_1")

    def test_token_cannot_be_reused(self, db_session, gateway, pending_payment):
        result = payment_service.create_checkout_order(pending_payment.id)
        self._verify(result["checkout_token"], result["order"]["id"])
        with pytest.raises(NotFound):
            self._verify(result["checkout_token"], result["order"]["id"])

    def test_checkout_requires_pending_payment(self, db_session, gateway, make_job, admin):
        job = make_job()
        payment = payment_service.record_payment(
            job_id=job.id, amount_cents=5000, payment_type="partial", payment_method="cash", user_id=admin.id,
        )
        with pytest.raises(InvalidState):
            payment_service.create_checkout_order(payment.id)

    def test_second_checkout_cannot_overpay(self, db_session, gateway, make_job, admin):
        job = make_job()
        payments = [
            payment_service.record_payment(
                job_id=job.id,
                amount_cents=21240,
                payment_type="full",
                payment_method="upi",
                status="pending",
                user_id=admin.id,
            )
            for _ in range(2)
        ]
        sessions = [payment_service.create_checkout_order(p.id) for p in payments]

        self._verify(sessions[0]["checkout_token"], sessions[0]["order"]["id"], gateway_payment_id="pay_A")
        with pytest.raises(OutOfRange) as exc:
            self._verify(sessions[1]["checkout_token"], sessions[1]["order"]["id"], gateway_payment_id="pay_B")

        assert exc.value.details["balance_due_cents"] == 0
        second = db_session.get(Payment, payments[1].id)
        assert second.status == "pending"
        assert second.checkout_token_hash is not None
        assert payment_service.payment_summary(job.id)["net_paid_cents"] == 21240
