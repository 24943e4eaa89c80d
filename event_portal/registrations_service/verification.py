"""
Verification codes for registrations.

A code is six digits, valid for VERIFICATION_CODE_TTL_MINUTES (15) after
it is issued, and can be used once.
"""

import hmac
import secrets
from datetime import datetime, timedelta, timezone, date
from typing import Any, Dict, Optional

from event_portal import config

CODE_LENGTH = 6


def code_ttl() -> timedelta:
    return timedelta(minutes=config.VERIFICATION_CODE_TTL_MINUTES)


def generate_code() -> str:
    """Six digit numeric code, never starting with 0."""
    return str(100000 + secrets.randbelow(900000))


def is_code_valid(record: Dict[str, Any], code: str, now: Optional[datetime] = None) -> bool:
    """
    Check a stored code record against user input.

    Fails when the code was already used, when `now` has reached `expires_at`,
    or when the digits don't match.
    """
    now = now or datetime.now(timezone.utc)
    if record.get("used_at"):
        return False
    if now >= record["expires_at"]:
        return False
    return hmac.compare_digest(str(record["code"]), str(code or "").strip())


def issue_code(cur, registration_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Persist a fresh code for the registration.

    Returns:
        dict: id, code, expires_at
    """
    now = now or datetime.now(timezone.utc)
    code = generate_code()
    expires_at = now + code_ttl()

    cur.execute(
        """
        INSERT INTO registration_verification_codes (registration_id, code, expires_at, created_at)
        VALUES (%s, %s, %s, %s)
        RETURNING id;
        """,
        (registration_id, code, expires_at, now),
    )
    code_id = cur.fetchone()["id"]
    return {"id": code_id, "code": code, "expires_at": expires_at}


def consume_code(cur, registration_id: int, code: str, now: Optional[datetime] = None) -> bool:
    """
    Validate `code` against the newest unused code of the registration and burn it.
    """
    now = now or datetime.now(timezone.utc)
    cur.execute(
        """
        SELECT id, code, expires_at, used_at
        FROM registration_verification_codes
        WHERE registration_id = %s AND used_at IS NULL
        ORDER BY created_at DESC, id DESC
        LIMIT 1
        FOR UPDATE;
        """,
        (registration_id,),
    )
    record = cur.fetchone()
    if not record or not is_code_valid(dict(record), code, now):
        return False

    cur.execute(
        "UPDATE registration_verification_codes SET used_at = %s WHERE id = %s;",
        (now, record["id"]),
    )
    return True


def build_sms_message(event_title: str, event_date: Any, code: str) -> str:
    if isinstance(event_date, str):
        event_date = date.fromisoformat(event_date[:10])
    formatted = f"{event_date.day}/{event_date.month}/{event_date.year}"
    minutes = config.VERIFICATION_CODE_TTL_MINUTES
    return (
        f"Your Event Portal verification code for {event_title} on {formatted} is: {code}. "
        f"This code will expire in {minutes} minutes."
    )
