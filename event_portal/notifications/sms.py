"""
SMS delivery through a Twilio-compatible REST API.

Outside production the service runs in sandbox mode: messages are logged
instead of sent.
"""

import logging
from typing import Any, Dict, Optional

import requests

from event_portal import config

TWILIO_API_URL = "https://api.twilio.com/2010-04-01"


class SMSError(Exception):
    """Raised when the SMS gateway refuses or cannot be reached."""


class SMSService:
    def __init__(self, account_sid: Optional[str], auth_token: Optional[str],
                 from_number: Optional[str], environment: str = "sandbox",
                 timeout: float = 10.0):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.environment = environment
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> "SMSService":
        return cls(
            account_sid=config.TWILIO_ACCOUNT_SID,
            auth_token=config.TWILIO_AUTH_TOKEN,
            from_number=config.TWILIO_FROM_NUMBER,
            environment="production" if config.is_production() else "sandbox",
        )

    def send_message(self, to: str, message: str) -> Dict[str, Any]:
        """
        Send a text message.

        Args:
            to (str): Destination in E.164 format.
            message (str): Body.

        Returns:
            dict: {"sid": str | None, "status": str}

        Raises:
            SMSError: Gateway not configured, unreachable, or it rejected the message.
        """
        if self.environment != "production":
            logging.info(f"[SMS] Sandbox message to {to}: {message}")
            return {"sid": None, "status": "sandbox"}

        if not (self.account_sid and self.auth_token and self.from_number):
            raise SMSError("SMS gateway is not configured")

        url = f"{TWILIO_API_URL}/Accounts/{self.account_sid}/Messages.json"
        try:
            resp = requests.post(
                url,
                data={"To": to, "From": self.from_number, "Body": message},
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise SMSError(f"SMS gateway unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            raise SMSError(body.get("message") or f"SMS gateway returned {resp.status_code}")

        logging.info(f"[SMS] Sent message {body.get('sid')} to {to}")
        return {"sid": body.get("sid"), "status": body.get("status", "queued")}
