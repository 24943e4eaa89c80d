"""
Registration lifecycle: seat accounting and the registration/payment state machine.

    CREATED --> PAYMENT_INITIATED --> PAYMENT_PENDING --> CONFIRMED
       |               |                    |
       |               +--------------------+--> FAILED
       +---------------+--------------------+--> CANCELLED

A registration row only carries (status, payment_status); the two payment
states are read from its latest `payments` row. A registration whose
total_price is 0 is written as CONFIRMED directly.

Every function here takes an open cursor so callers can compose them inside
one `with get_db() as conn` transaction. Seats are reserved with a single
conditional UPDATE at creation time and given back on failure, cancellation
or expiry, so `registered_attendees <= capacity` always holds.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

# Raw statuses reported by the mobile-money aggregator
PROVIDER_SUCCESSFUL = "SUCCESSFUL"
PROVIDER_FAILED = "FAILED"
PROVIDER_PENDING = "PENDING"
PROVIDER_INITIATED = "INITIATED"

VALID_STATUSES = ("pending", "confirmed", "cancelled")
VALID_PAYMENT_STATUSES = ("pending", "completed", "failed")

REGISTRATION_COLUMNS = """
    r.id, r.event_id, r.user_id, r.attendees, r.total_price, r.status, r.payment_status,
    r.created_at, r.updated_at
"""


class RegistrationState(str, Enum):
    CREATED = "CREATED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TRANSITIONS = {
    RegistrationState.CREATED: {
        RegistrationState.PAYMENT_INITIATED,
        RegistrationState.CANCELLED,
    },
    RegistrationState.PAYMENT_INITIATED: {
        RegistrationState.PAYMENT_PENDING,
        RegistrationState.CONFIRMED,
        RegistrationState.FAILED,
        RegistrationState.CANCELLED,
    },
    RegistrationState.PAYMENT_PENDING: {
        RegistrationState.PAYMENT_PENDING,
        RegistrationState.CONFIRMED,
        RegistrationState.FAILED,
        RegistrationState.CANCELLED,
    },
    RegistrationState.CONFIRMED: set(),
    RegistrationState.FAILED: set(),
    RegistrationState.CANCELLED: set(),
}


# --- ERRORS ---
class RegistrationError(Exception):
    """Base error; carries the HTTP status the route should answer with."""

    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class RegistrationNotFound(RegistrationError):
    status_code = 404


class PermissionDenied(RegistrationError):
    status_code = 403


class CapacityExceeded(RegistrationError):
    status_code = 409


class InvalidTransition(RegistrationError):
    status_code = 409


# --- STATE ---
def state_of(registration: Dict[str, Any], payment: Optional[Dict[str, Any]] = None) -> RegistrationState:
    """
    Derive the lifecycle state from a registration row and its latest payment.
    """
    if registration["status"] == "cancelled":
        return RegistrationState.CANCELLED
    if registration["status"] == "confirmed" or registration["payment_status"] == "completed":
        return RegistrationState.CONFIRMED
    if registration["payment_status"] == "failed":
        return RegistrationState.FAILED
    if not payment:
        return RegistrationState.CREATED
    if payment.get("provider_status") == PROVIDER_INITIATED:
        return RegistrationState.PAYMENT_INITIATED
    return RegistrationState.PAYMENT_PENDING


def ensure_transition(current: RegistrationState, target: RegistrationState) -> None:
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(
            f"Registration cannot move from {current.value} to {target.value}"
        )


def serialize_registration(row) -> Dict[str, Any]:
    registration = dict(row)
    for key in ("created_at", "updated_at", "event_date", "event_time"):
        if registration.get(key) is not None and hasattr(registration[key], "isoformat"):
            registration[key] = registration[key].isoformat()
    return registration


# --- CAPACITY ---
def reserve_seats(cur, event_id: int, attendees: int) -> Dict[str, Any]:
    """
    Atomically take `attendees` seats on an active event.

    The capacity check and the increment happen in one UPDATE, so two
    concurrent registrations for the last seat cannot both succeed.

    Returns:
        dict: id, price, capacity, registered_attendees after the reservation.

    Raises:
        RegistrationNotFound: Unknown event.
        CapacityExceeded: Event inactive or not enough seats left.
    """
    cur.execute(
        """
        UPDATE events
        SET registered_attendees = registered_attendees + %s,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = %s
          AND status = 'active'
          AND registered_attendees + %s <= capacity
        RETURNING id, price, capacity, registered_attendees;
        """,
        (attendees, event_id, attendees),
    )
    reserved = cur.fetchone()
    if reserved:
        return dict(reserved)

    # Work out why, for the error message only
    cur.execute(
        "SELECT status, capacity, registered_attendees FROM events WHERE id = %s;",
        (event_id,),
    )
    event = cur.fetchone()
    if not event:
        raise RegistrationNotFound("Event not found")
    if event["status"] != "active":
        raise CapacityExceeded(f"Event is {event['status']}")
    available = event["capacity"] - event["registered_attendees"]
    raise CapacityExceeded(f"Only {max(available, 0)} spots left")


def release_seats(cur, event_id: int, attendees: int) -> None:
    cur.execute(
        """
        UPDATE events
        SET registered_attendees = GREATEST(registered_attendees - %s, 0),
            updated_at = CURRENT_TIMESTAMP
        WHERE id = %s;
        """,
        (attendees, event_id),
    )


def available_spots(event: Dict[str, Any]) -> int:
    return max(event["capacity"] - (event.get("registered_attendees") or 0), 0)


# --- REGISTRATIONS ---
def parse_positive_int(value: Any, field: str) -> int:
    """
    Accept an int (or a digit string) of at least 1, e.g. ids and seat counts.

    Raises:
        RegistrationError: 400 with "<field> must be a positive integer".
    """
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise RegistrationError(f"{field} must be a positive integer")
    return value


def parse_attendees(value: Any) -> int:
    return parse_positive_int(value, "attendees")


def create_registration(cur, event_id: int, user_id: int, attendees: int) -> Dict[str, Any]:
    """
    Reserve seats and insert the registration.

    The amount due is fixed here (price * attendees) so later price edits do
    not change what the registration owes. Paid registrations start
    pending/pending; free ones are confirmed/completed immediately.

    Must run in the same transaction as the caller's commit so the seat
    reservation and the insert land together.
    """
    event = reserve_seats(cur, event_id, attendees)
    total_price = event["price"] * attendees
    if total_price == 0:
        status, payment_status = "confirmed", "completed"
    else:
        status, payment_status = "pending", "pending"

    cur.execute(
        """
        INSERT INTO event_registrations (event_id, user_id, attendees, total_price, status, payment_status)
        VALUES (%s, %s, %s, %s, %s, %s)
        RETURNING id, event_id, user_id, attendees, total_price, status, payment_status,
                  created_at, updated_at;
        """,
        (event_id, user_id, attendees, total_price, status, payment_status),
    )
    registration = serialize_registration(cur.fetchone())
    registration["available_spots"] = event["capacity"] - event["registered_attendees"]
    registration["state"] = state_of(registration).value

    logging.info(
        f"[Registrations] Registration {registration['id']} created for event {event_id} "
        f"({attendees} seats, {registration['available_spots']} left)"
    )
    return registration


def load_registration(cur, registration_id: int, for_update: bool = False) -> Dict[str, Any]:
    """
    Fetch a registration with its event's price/title and latest payment.
    """
    sql = f"""
        SELECT {REGISTRATION_COLUMNS},
               e.title AS event_title, e.price, e.event_date, e.event_time,
               e.organizer_id
        FROM event_registrations r
        JOIN events e ON e.id = r.event_id
        WHERE r.id = %s
    """
    if for_update:
        sql += " FOR UPDATE OF r"
    cur.execute(sql + ";", (registration_id,))
    row = cur.fetchone()
    if not row:
        raise RegistrationNotFound("Registration not found")
    registration = dict(row)

    cur.execute(
        """
        SELECT transaction_id, provider, amount, status, provider_status, message
        FROM payments
        WHERE registration_id = %s
        ORDER BY created_at DESC, id DESC
        LIMIT 1;
        """,
        (registration_id,),
    )
    payment = cur.fetchone()
    registration["payment"] = dict(payment) if payment else None
    registration["state"] = state_of(registration, registration["payment"]).value
    return registration


def record_payment_initiated(cur, registration: Dict[str, Any], transaction_id: str,
                             provider: str, phone_number: str, amount: int) -> None:
    """
    Store the aggregator's transaction id against the registration.
    """
    current = RegistrationState(registration["state"])
    ensure_transition(current, RegistrationState.PAYMENT_INITIATED)

    cur.execute(
        """
        INSERT INTO payments (registration_id, transaction_id, provider, phone_number, amount,
                              status, provider_status)
        VALUES (%s, %s, %s, %s, %s, 'pending', %s);
        """,
        (registration["id"], transaction_id, provider, phone_number, amount, PROVIDER_INITIATED),
    )


def apply_payment_outcome(cur, transaction_id: str, provider_status: str,
                          message: Optional[str] = None) -> Dict[str, Any]:
    """
    Mirror an aggregator status onto the payment and its registration.

    SUCCESSFUL: payment completed, registration confirmed/completed (one UPDATE,
    so a completed payment always means a confirmed registration).
    FAILED: payment failed, registration pending/failed, seats released.
    Anything else: remembered on the payment row, nothing else changes.

    Applying the same outcome twice is a no-op, so polling and the webhook can
    both report it.

    Returns:
        dict: registration_id, state, status (normalized aggregator status), changed.
    """
    cur.execute(
        """
        SELECT p.id, p.registration_id, p.status, p.provider_status,
               r.event_id, r.attendees, r.status AS registration_status,
               r.payment_status
        FROM payments p
        JOIN event_registrations r ON r.id = p.registration_id
        WHERE p.transaction_id = %s
        FOR UPDATE;
        """,
        (transaction_id,),
    )
    row = cur.fetchone()
    if not row:
        raise RegistrationNotFound("Payment not found")

    registration = {
        "status": row["registration_status"],
        "payment_status": row["payment_status"],
    }
    current = state_of(registration, {"provider_status": row["provider_status"]})
    status = (provider_status or PROVIDER_PENDING).upper()
    outcome = {"registration_id": row["registration_id"], "status": status, "changed": False}

    if row["status"] != "pending":
        # Already settled; report what was recorded
        outcome["status"] = PROVIDER_SUCCESSFUL if row["status"] == "completed" else PROVIDER_FAILED
        outcome["state"] = current.value
        return outcome

    if status == PROVIDER_SUCCESSFUL:
        cur.execute(
            """
            UPDATE payments SET status = 'completed', provider_status = %s, message = %s,
                                updated_at = CURRENT_TIMESTAMP
            WHERE id = %s;
            """,
            (status, message, row["id"]),
        )
        if current == RegistrationState.CANCELLED:
            # Money arrived after the seats were given back
            logging.warning(
                f"[Payments] Transaction {transaction_id} succeeded for cancelled "
                f"registration {row['registration_id']}; refund required"
            )
            outcome["state"] = current.value
        else:
            ensure_transition(current, RegistrationState.CONFIRMED)
            cur.execute(
                """
                UPDATE event_registrations
                SET status = 'confirmed', payment_status = 'completed',
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = %s;
                """,
                (row["registration_id"],),
            )
            outcome["state"] = RegistrationState.CONFIRMED.value
        outcome["changed"] = True

    elif status == PROVIDER_FAILED:
        cur.execute(
            """
            UPDATE payments SET status = 'failed', provider_status = %s, message = %s,
                                updated_at = CURRENT_TIMESTAMP
            WHERE id = %s;
            """,
            (status, message, row["id"]),
        )
        if current != RegistrationState.CANCELLED:
            ensure_transition(current, RegistrationState.FAILED)
            cur.execute(
                """
                UPDATE event_registrations
                SET payment_status = 'failed', updated_at = CURRENT_TIMESTAMP
                WHERE id = %s;
                """,
                (row["registration_id"],),
            )
            release_seats(cur, row["event_id"], row["attendees"])
            outcome["state"] = RegistrationState.FAILED.value
        else:
            outcome["state"] = current.value
        outcome["changed"] = True

    else:
        cur.execute(
            """
            UPDATE payments SET provider_status = %s, message = %s, updated_at = CURRENT_TIMESTAMP
            WHERE id = %s;
            """,
            (PROVIDER_PENDING, message, row["id"]),
        )
        outcome["status"] = PROVIDER_PENDING
        outcome["state"] = (
            current.value if current == RegistrationState.CANCELLED
            else RegistrationState.PAYMENT_PENDING.value
        )

    logging.info(
        f"[Payments] Transaction {transaction_id} -> {outcome['status']} "
        f"(registration {row['registration_id']} {outcome['state']})"
    )
    return outcome


def cancel_registration(cur, registration_id: int, user_id: int, role: Optional[str]) -> Dict[str, Any]:
    """
    Cancel a registration owned by `user_id` (or any, for admins) and give its seats back.

    Confirmed registrations are not cancellable here; refunds happen outside
    this system.
    """
    registration = load_registration(cur, registration_id, for_update=True)

    if registration["user_id"] != user_id and role != "admin":
        raise PermissionDenied("Not authorized to cancel this registration")

    current = RegistrationState(registration["state"])
    ensure_transition(current, RegistrationState.CANCELLED)

    cur.execute(
        """
        UPDATE event_registrations
        SET status = 'cancelled', updated_at = CURRENT_TIMESTAMP
        WHERE id = %s;
        """,
        (registration_id,),
    )
    release_seats(cur, registration["event_id"], registration["attendees"])

    logging.info(f"[Registrations] Registration {registration_id} cancelled by {user_id}")
    return {"id": registration_id, "status": "cancelled", "state": RegistrationState.CANCELLED.value}


def expire_stale_registrations(cur, older_than_minutes: int) -> int:
    """
    Cancel registrations stuck in pending/pending and release their seats.

    Returns:
        int: Number of registrations expired.
    """
    cur.execute(
        """
        WITH stale AS (
            UPDATE event_registrations
            SET status = 'cancelled', updated_at = CURRENT_TIMESTAMP
            WHERE status = 'pending'
              AND payment_status = 'pending'
              AND created_at < CURRENT_TIMESTAMP - make_interval(mins => %s)
            RETURNING id, event_id, attendees
        )
        SELECT event_id, SUM(attendees) AS seats, COUNT(*) AS expired
        FROM stale
        GROUP BY event_id;
        """,
        (older_than_minutes,),
    )
    expired = 0
    for row in cur.fetchall():
        release_seats(cur, row["event_id"], int(row["seats"]))
        expired += int(row["expired"])

    if expired:
        logging.info(f"[Registrations] Expired {expired} stale registrations")
    return expired
