# Overview: Payment gateway client (Razorpay-compatible orders API) and callback signature checks.

from __future__ import annotations

import hashlib
import hmac

import httpx
from flask import current_app

from ..errors import GatewayError


CLIENT_EXTENSION_KEY = "gateway_client"


def compute_signature(order_id: str, payment_id: str, secret: str) -> str:
    """Hex HMAC-SHA256 over "<order_id>|<payment_id>"."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class GatewayClient:
    """
    Thin client for the gateway's order API.

    The key secret only lives on this object (loaded from config at startup);
    it is never persisted.
    """

    def __init__(self, key_id: str, key_secret: str, base_url: str, timeout: float = 10.0):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> "GatewayClient":
        return cls(
            key_id=config.get("GATEWAY_KEY_ID", ""),
            key_secret=config.get("GATEWAY_KEY_SECRET", ""),
            base_url=config.get("GATEWAY_BASE_URL", "https://api.razorpay.com/v1"),
            timeout=config.get("GATEWAY_TIMEOUT_SECONDS", 10.0),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount_cents: int, receipt: str, notes: dict | None = None) -> dict:
        """
        Create a gateway order for `amount_cents` paise in INR.

        Returns the gateway's order JSON (at least {"id": ...}).
        """
        if not self.is_configured:
            raise GatewayError("Payment gateway is not configured")

        payload = {
            "amount": amount_cents,
            "currency": "INR",
            "receipt": receipt,
            "notes": notes or {},
        }
        try:
            response = httpx.post(
                f"{self.base_url}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GatewayError(
                "Payment gateway rejected the order",
                {"status_code": exc.response.status_code},
            )
        except httpx.HTTPError as exc:
            raise GatewayError("Payment gateway unreachable", {"reason": str(exc)})

        order = response.json()
        if not isinstance(order, dict) or not order.get("id"):
            raise GatewayError("Payment gateway returned an invalid order")
        return order

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Constant-time signature check. Fails closed on any missing input."""
        if not (self.key_secret and order_id and payment_id and signature):
            return False
        expected = compute_signature(order_id, payment_id, self.key_secret)
        return hmac.compare_digest(expected, signature)


def get_client() -> GatewayClient:
    client = current_app.extensions.get(CLIENT_EXTENSION_KEY)
    if client is None:
        client = GatewayClient.from_config(current_app.config)
        current_app.extensions[CLIENT_EXTENSION_KEY] = client
    return client
