"""
Client for the mobile-money aggregator (MTN Mobile Money / Orange Money).

The aggregator exposes a collect endpoint that pushes a payment prompt to
the payer's phone, a status endpoint, and signed webhooks.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import requests

from event_portal import config

PROVIDERS = ("mtn", "orange")

SUCCESSFUL = "SUCCESSFUL"
FAILED = "FAILED"
PENDING = "PENDING"

_SUCCESS_ALIASES = {"SUCCESSFUL", "SUCCESS", "SUCCEEDED", "COMPLETED"}
_FAILURE_ALIASES = {"FAILED", "FAILURE", "REJECTED", "DECLINED", "CANCELLED", "CANCELED", "EXPIRED"}


class PaymentProviderError(Exception):
    """The aggregator rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int = 502, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response or {}


def normalize_status(raw: Optional[str]) -> str:
    """
    Map the aggregator's vocabulary onto SUCCESSFUL / FAILED / PENDING.
    Unknown values count as PENDING.
    """
    value = (raw or "").strip().upper()
    if value in _SUCCESS_ALIASES:
        return SUCCESSFUL
    if value in _FAILURE_ALIASES:
        return FAILED
    return PENDING


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(payload, secret), signature.strip().lower())


class MobileMoneyClient:
    def __init__(self, base_url: str, api_key: Optional[str], currency: str = "XAF",
                 timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.currency = currency
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls) -> "MobileMoneyClient":
        return cls(
            base_url=config.PAYMENT_API_URL,
            api_key=config.PAYMENT_API_KEY,
            currency=config.PAYMENT_CURRENCY,
            timeout=config.PAYMENT_REQUEST_TIMEOUT,
        )

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise PaymentProviderError("Payment provider is not configured", status_code=503)
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _send(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logging.error(f"[Payments] Provider unreachable ({method} {path}): {e}")
            raise PaymentProviderError("Payment provider unreachable") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            message = body.get("message") or body.get("error") or f"Payment provider returned {resp.status_code}"
            logging.error(f"[Payments] Provider error ({method} {path}): {resp.status_code} {message}")
            raise PaymentProviderError(message, response=body)
        return body

    def request_payment(self, amount: int, provider: str, phone_number: str,
                        reference: str, description: str = "") -> Dict[str, Any]:
        """
        Push a collection request to the payer's phone.

        Args:
            amount (int): Amount in XAF.
            provider (str): "mtn" or "orange".
            phone_number (str): Payer number in E.164 format.
            reference (str): Our own reference, echoed back in webhooks.

        Returns:
            dict: {"transaction_id": str, "status": str, "message": str | None}
        """
        if provider not in PROVIDERS:
            raise PaymentProviderError(f"Unsupported provider: {provider}", status_code=400)

        body = self._send("POST", "/collect", json={
            "amount": amount,
            "currency": self.currency,
            "from": phone_number.lstrip("+"),
            "operator": provider.upper(),
            "external_reference": reference,
            "description": description,
        })

        transaction_id = body.get("reference") or body.get("transaction_id")
        if not transaction_id:
            raise PaymentProviderError("Payment provider did not return a transaction id", response=body)

        return {
            "transaction_id": str(transaction_id),
            "status": normalize_status(body.get("status")),
            "message": body.get("message"),
        }

    def get_status(self, transaction_id: str, provider: Optional[str] = None) -> Dict[str, Any]:
        """
        Ask the aggregator for the current state of a transaction.

        Returns:
            dict: {"status": SUCCESSFUL | FAILED | PENDING, "message": str | None}
        """
        params = {"operator": provider.upper()} if provider else None
        body = self._send("GET", f"/transaction/{transaction_id}", params=params)
        return {
            "status": normalize_status(body.get("status")),
            "message": body.get("message") or body.get("reason"),
        }
