# Overview: QPay v2 merchant API client; owns the OAuth token cache for one application.

"""
QPay Gateway Client

WHY: Invoice creation, payment checks and cancellation all need a valid
bearer token. The token (plus refresh token and expiry) lives on the client
instance created by the application factory, never in a module global.

TOKEN RULES:
- A cached token is reused while more than TOKEN_REFRESH_MARGIN remains.
- Otherwise refresh with the refresh token; if that fails, authenticate
  again with client credentials.
- Refresh is serialized by a lock so concurrent requests fetch one token.

ERRORS: Every transport failure, timeout or non-2xx answer surfaces as
ExternalServiceError. Nothing here retries a gateway call.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
import time
from decimal import Decimal
from typing import Callable, Optional

import httpx


logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN = 300  # seconds
DEFAULT_TOKEN_TTL = 3600  # seconds


class ExternalServiceError(Exception):
    """Payment gateway unreachable or rejected the call (502-class, retryable)."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class QPayClient:
    def __init__(
        self,
        *,
        base_url: str,
        client_id: str | None,
        client_secret: str | None,
        invoice_code: str | None,
        webhook_secret: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.invoice_code = invoice_code
        self.webhook_secret = webhook_secret
        self._clock = clock
        self._http = httpx.Client(base_url=f"{self.base_url}/v2", timeout=timeout, transport=transport)

        self._lock = threading.Lock()
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.expires_at: Optional[float] = None

        if not (client_id and client_secret and invoice_code):
            logger.warning(
                "QPay credentials not configured (QPAY_CLIENT_ID, QPAY_CLIENT_SECRET, QPAY_INVOICE_CODE); "
                "payment gateway calls will fail"
            )

    @classmethod
    def from_config(cls, config) -> "QPayClient":
        return cls(
            base_url=config["QPAY_BASE_URL"],
            client_id=config.get("QPAY_CLIENT_ID"),
            client_secret=config.get("QPAY_CLIENT_SECRET"),
            invoice_code=config.get("QPAY_INVOICE_CODE"),
            webhook_secret=config.get("QPAY_WEBHOOK_SECRET"),
            timeout=float(config.get("QPAY_TIMEOUT_SECONDS", 10)),
        )

    def close(self) -> None:
        self._http.close()

    # =========================================================================
    # TRANSPORT
    # =========================================================================

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ExternalServiceError(f"QPay {method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"QPay {method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or response.text
            except ValueError:
                detail = response.text
            logger.error("QPay %s %s returned %s: %s", method, path, response.status_code, detail)
            raise ExternalServiceError(
                f"QPay {method} {path} returned {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError(f"QPay {method} {path} returned invalid JSON") from exc

    def _authorized(self, method: str, path: str, **kwargs) -> dict:
        headers = {"Authorization": f"Bearer {self.get_access_token()}"}
        return self._request(method, path, headers=headers, **kwargs)

    # =========================================================================
    # TOKENS
    # =========================================================================

    def _store_token(self, data: dict) -> str:
        token = data.get("access_token")
        if not token:
            raise ExternalServiceError("QPay token response missing access_token")
        self.access_token = token
        self.refresh_token = data.get("refresh_token")
        self.expires_at = self._clock() + int(data.get("expires_in") or DEFAULT_TOKEN_TTL)
        return token

    def _token_is_fresh(self) -> bool:
        return bool(self.access_token and self.expires_at and self._clock() < self.expires_at - TOKEN_REFRESH_MARGIN)

    def _authenticate(self) -> str:
        if not (self.client_id and self.client_secret):
            raise ExternalServiceError("QPay credentials are not configured")
        data = self._request("POST", "/auth/token", json={}, auth=(self.client_id, self.client_secret))
        return self._store_token(data)

    def _refresh(self) -> str:
        data = self._request("POST", "/auth/refresh", json={"refresh_token": self.refresh_token})
        return self._store_token(data)

    def get_access_token(self) -> str:
        """Cached token, else refreshed, else newly authenticated."""
        with self._lock:
            if self._token_is_fresh():
                return self.access_token
            if self.refresh_token:
                try:
                    return self._refresh()
                except ExternalServiceError as exc:
                    logger.warning("QPay token refresh failed, re-authenticating: %s", exc)
                    self.refresh_token = None
            return self._authenticate()

    # =========================================================================
    # INVOICES
    # =========================================================================

    def create_invoice(
        self,
        *,
        sender_invoice_no: str,
        amount: Decimal,
        description: str,
        callback_url: str,
        receiver_code: str = "terminal",
    ) -> dict:
        data = self._authorized("POST", "/invoice", json={
            "invoice_code": self.invoice_code,
            "sender_invoice_no": sender_invoice_no,
            "invoice_receiver_code": receiver_code,
            "invoice_description": description,
            "amount": float(amount),
            "callback_url": callback_url,
        })
        if not data.get("invoice_id"):
            raise ExternalServiceError("QPay invoice response missing invoice_id")
        return {
            "invoice_id": data["invoice_id"],
            "qr_text": data.get("qr_text"),
            "qr_image": data.get("qr_image"),
            "qpay_shorturl": data.get("qpay_shorturl") or data.get("shorturl"),
            "urls": data.get("urls"),
        }

    def check_payment(self, invoice_id: str) -> dict:
        data = self._authorized("POST", "/payment/check", json={
            "object_type": "INVOICE",
            "object_id": invoice_id,
            "offset": {"page_number": 1, "page_limit": 100},
        })
        return {
            "count": int(data.get("count") or 0),
            "paid_amount": Decimal(str(data.get("paid_amount") or 0)),
            "rows": data.get("rows") or [],
        }

    def cancel_invoice(self, invoice_id: str) -> None:
        self._authorized("DELETE", f"/invoice/{invoice_id}")

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def verify_webhook_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """
        HMAC-SHA256 of the raw callback body, hex encoded.

        No signature header means the callback is unsigned and accepted.
        """
        if not signature:
            return True
        secret = self.webhook_secret or self.client_secret
        if not secret:
            logger.error("QPay webhook signature present but no secret configured")
            return False
        expected = hmac.new(secret.encode(), raw_body or b"", hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    @staticmethod
    def generate_invoice_no(order_id: int, kind: str = "order") -> str:
        return f"{kind.upper()}-{order_id}-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"
