"""
Registration wizard client.

Drives the three registration steps against the gateway:

    1. choose attendees  -> POST /api/registrations
    2. pay               -> POST /api/payments/create, then poll /api/payments/status
    3. confirmation

Polling starts immediately, then backs off exponentially from
PAYMENT_POLL_INTERVAL up to PAYMENT_POLL_MAX_INTERVAL, and gives up after
PAYMENT_POLL_MAX_ATTEMPTS checks or PAYMENT_POLL_TIMEOUT seconds.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import requests
from tenacity import (
    Retrying,
    RetryError,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from event_portal import config

STEP_ATTENDEES = 1
STEP_PAYMENT = 2
STEP_CONFIRMATION = 3

SUCCESSFUL = "SUCCESSFUL"
FAILED = "FAILED"
TERMINAL_STATUSES = (SUCCESSFUL, FAILED)


class PortalApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PaymentFailed(PortalApiError):
    """The provider reported FAILED."""


class PaymentTimeout(PortalApiError):
    """Polling stopped before the provider reported an outcome."""


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, requests.RequestException):
        return True
    return isinstance(error, PortalApiError) and (error.status_code or 0) >= 500


def _still_pending(result: Dict[str, Any]) -> bool:
    return result.get("status") not in TERMINAL_STATUSES


class RegistrationWizard:
    def __init__(self, base_url: str, token: str,
                 session: Optional[requests.Session] = None,
                 poll_interval: float = config.PAYMENT_POLL_INTERVAL,
                 max_interval: float = config.PAYMENT_POLL_MAX_INTERVAL,
                 max_attempts: int = config.PAYMENT_POLL_MAX_ATTEMPTS,
                 timeout: float = config.PAYMENT_POLL_TIMEOUT,
                 success_delay: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})
        self.poll_interval = poll_interval
        self.max_interval = max_interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.success_delay = success_delay
        self.sleep = sleep

        self.step = STEP_ATTENDEES
        self.registration: Optional[Dict[str, Any]] = None
        self.transaction_id: Optional[str] = None
        self.provider: Optional[str] = None
        self.status_message = ""

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        resp = self.session.request(method, f"{self.base_url}{path}", timeout=30, **kwargs)
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not resp.ok:
            raise PortalApiError(body.get("error") or body.get("message") or f"HTTP {resp.status_code}",
                                 status_code=resp.status_code)
        return body

    # --- STEP 1 ---
    def start(self, event_id: int, attendees: int) -> Dict[str, Any]:
        """
        Create the pending registration (seats are held from here on).
        """
        self.registration = self._request("POST", "/api/registrations",
                                          json={"eventId": event_id, "attendees": attendees})
        self.step = STEP_PAYMENT
        return self.registration

    # --- STEP 2 ---
    def pay(self, provider: str, phone_number: str) -> str:
        """
        Send the payment prompt to the payer's phone.

        Returns:
            str: The aggregator transaction id.
        """
        if self.step != STEP_PAYMENT or not self.registration:
            raise PortalApiError("Create a registration before paying")

        body = self._request("POST", "/api/payments/create", json={
            "registrationId": self.registration["id"],
            "amount": self.registration["total_price"],
            "provider": provider.lower(),
            "phoneNumber": phone_number,
        })
        if not body.get("success") or not body.get("transactionId"):
            raise PortalApiError(body.get("error") or "Payment failed")

        self.transaction_id = body["transactionId"]
        self.provider = provider.lower()
        self.status_message = "Payment request sent. Check your phone to approve."
        return self.transaction_id

    def check_status(self) -> Dict[str, Any]:
        result = self._request("GET", "/api/payments/status", params={
            "transactionId": self.transaction_id,
            "provider": self.provider,
        })
        if _still_pending(result):
            self.status_message = "Waiting for payment approval..."
        return result

    def wait_for_payment(self) -> Dict[str, Any]:
        """
        Poll until SUCCESSFUL or FAILED, within the attempt and time limits.

        Returns:
            dict: The final status response (SUCCESSFUL).

        Raises:
            PaymentFailed: The provider declined.
            PaymentTimeout: No outcome within those limits.
            PortalApiError: A non-retryable API error (4xx).
        """
        if not self.transaction_id:
            raise PortalApiError("No payment in progress")

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts) | stop_after_delay(self.timeout),
            wait=wait_exponential(multiplier=self.poll_interval, min=self.poll_interval, max=self.max_interval),
            retry=retry_if_result(_still_pending) | retry_if_exception(_is_transient),
            sleep=self.sleep,
        )
        try:
            result = retrying(self.check_status)
        except RetryError as e:
            attempts = e.last_attempt.attempt_number
            logging.warning(f"[Wizard] Gave up on transaction {self.transaction_id} after {attempts} checks")
            self.status_message = "Payment is taking too long. Check your registrations later."
            raise PaymentTimeout(self.status_message) from e

        if result["status"] == FAILED:
            self.status_message = result.get("message") or "Payment failed. Please try again."
            raise PaymentFailed(self.status_message)

        self.status_message = "Payment completed successfully!"
        # Let the success message show before moving on
        self.sleep(self.success_delay)
        self.step = STEP_CONFIRMATION
        return result

    def register(self, event_id: int, attendees: int, provider: str, phone_number: str) -> Dict[str, Any]:
        """
        Run the whole flow and return the confirmed registration.
        Free registrations come back confirmed and skip the payment step.
        """
        registration = self.start(event_id, attendees)
        if registration.get("status") == "confirmed" or registration.get("total_price") == 0:
            self.step = STEP_CONFIRMATION
            self.status_message = "Registration confirmed."
        else:
            self.pay(provider, phone_number)
            self.wait_for_payment()
        return self._request("GET", f"/api/registrations/{self.registration['id']}")
