import pytest
from datetime import datetime
from unittest.mock import MagicMock

from event_portal.registrations_service.lifecycle import (
    RegistrationState,
    RegistrationError,
    RegistrationNotFound,
    PermissionDenied,
    CapacityExceeded,
    InvalidTransition,
    state_of,
    ensure_transition,
    parse_attendees,
    available_spots,
    reserve_seats,
    create_registration,
    apply_payment_outcome,
    cancel_registration,
    expire_stale_registrations,
)
from conftest import executed_sql


class FakeEventsCursor:
    """
    Just enough of a cursor to run seat reservations against one in-memory event row.
    """

    def __init__(self, capacity, registered=0, status="active", price=5000):
        self.event = {"id": 1, "capacity": capacity, "registered_attendees": registered,
                      "status": status, "price": price}
        self.next_registration_id = 100
        self._result = None

    def execute(self, sql, params=()):
        sql = " ".join(sql.split())
        if sql.startswith("UPDATE events SET registered_attendees = registered_attendees +"):
            seats, event_id, _ = params
            e = self.event
            if event_id == e["id"] and e["status"] == "active" \
                    and e["registered_attendees"] + seats <= e["capacity"]:
                e["registered_attendees"] += seats
                self._result = dict(e)
            else:
                self._result = None
        elif sql.startswith("SELECT status, capacity, registered_attendees FROM events"):
            self._result = dict(self.event) if params[0] == self.event["id"] else None
        elif sql.startswith("INSERT INTO event_registrations"):
            event_id, user_id, attendees, total_price, status, payment_status = params
            self._result = {
                "id": self.next_registration_id, "event_id": event_id, "user_id": user_id,
                "attendees": attendees, "total_price": total_price,
                "status": status, "payment_status": payment_status,
                "created_at": datetime(2025, 3, 1, 9, 0), "updated_at": datetime(2025, 3, 1, 9, 0),
            }
            self.next_registration_id += 1
        else:
            raise AssertionError(f"unexpected SQL: {sql}")

    def fetchone(self):
        return self._result


def payment_row(**overrides):
    row = {
        "id": 7,
        "registration_id": 42,
        "status": "pending",
        "provider_status": "INITIATED",
        "event_id": 1,
        "attendees": 2,
        "registration_status": "pending",
        "payment_status": "pending",
    }
    row.update(overrides)
    return row


def registration_row(**overrides):
    row = {
        "id": 42, "event_id": 1, "user_id": 3, "attendees": 2, "total_price": 10000,
        "status": "pending", "payment_status": "pending",
        "created_at": datetime(2025, 3, 1, 9, 0), "updated_at": datetime(2025, 3, 1, 9, 0),
        "event_title": "Douala Tech Meetup", "price": 5000,
        "event_date": None, "event_time": None, "organizer_id": 9,
    }
    row.update(overrides)
    return row


# --- STATE ---
def test_state_of_created_without_payment():
    assert state_of({"status": "pending", "payment_status": "pending"}) == RegistrationState.CREATED


def test_state_of_payment_states():
    reg = {"status": "pending", "payment_status": "pending"}
    assert state_of(reg, {"provider_status": "INITIATED"}) == RegistrationState.PAYMENT_INITIATED
    assert state_of(reg, {"provider_status": "PENDING"}) == RegistrationState.PAYMENT_PENDING


def test_state_of_terminal_states():
    assert state_of({"status": "confirmed", "payment_status": "completed"}) == RegistrationState.CONFIRMED
    assert state_of({"status": "pending", "payment_status": "failed"}) == RegistrationState.FAILED
    assert state_of({"status": "cancelled", "payment_status": "pending"}) == RegistrationState.CANCELLED


def test_ensure_transition_rejects_leaving_confirmed():
    with pytest.raises(InvalidTransition):
        ensure_transition(RegistrationState.CONFIRMED, RegistrationState.CANCELLED)


def test_ensure_transition_requires_payment_before_confirmation():
    with pytest.raises(InvalidTransition):
        ensure_transition(RegistrationState.CREATED, RegistrationState.CONFIRMED)
    ensure_transition(RegistrationState.PAYMENT_PENDING, RegistrationState.CONFIRMED)


# --- ATTENDEES / CAPACITY ---
@pytest.mark.parametrize("value,expected", [(1, 1), (4, 4), ("3", 3)])
def test_parse_attendees_valid(value, expected):
    assert parse_attendees(value) == expected


@pytest.mark.parametrize("value", [0, -2, "abc", None, True, 1.5])
def test_parse_attendees_invalid(value):
    with pytest.raises(RegistrationError):
        parse_attendees(value)


def test_available_spots_never_negative():
    assert available_spots({"capacity": 10, "registered_attendees": 4}) == 6
    assert available_spots({"capacity": 10, "registered_attendees": None}) == 10
    assert available_spots({"capacity": 2, "registered_attendees": 5}) == 0


def test_last_seat_goes_to_one_registration_only():
    cur = FakeEventsCursor(capacity=1)

    first = create_registration(cur, 1, user_id=3, attendees=1)
    assert first["status"] == "pending"
    assert first["payment_status"] == "pending"
    assert first["available_spots"] == 0

    with pytest.raises(CapacityExceeded) as exc:
        create_registration(cur, 1, user_id=4, attendees=1)

    assert exc.value.status_code == 409
    assert cur.event["registered_attendees"] == 1


def test_create_registration_reports_total_price():
    cur = FakeEventsCursor(capacity=10, registered=2, price=2500)

    registration = create_registration(cur, 1, user_id=3, attendees=3)

    assert registration["total_price"] == 7500
    assert registration["available_spots"] == 5
    assert registration["created_at"] == "2025-03-01T09:00:00"


def test_create_registration_for_free_event_is_confirmed():
    cur = FakeEventsCursor(capacity=10, price=0)

    registration = create_registration(cur, 1, user_id=3, attendees=2)

    assert registration["total_price"] == 0
    assert registration["status"] == "confirmed"
    assert registration["payment_status"] == "completed"
    assert registration["state"] == "CONFIRMED"
    assert cur.event["registered_attendees"] == 2


def test_reserve_more_than_left_names_remaining_spots():
    cur = FakeEventsCursor(capacity=5, registered=3)
    with pytest.raises(CapacityExceeded, match="Only 2 spots left"):
        reserve_seats(cur, 1, 3)


def test_reserve_on_cancelled_event():
    cur = FakeEventsCursor(capacity=5, status="cancelled")
    with pytest.raises(CapacityExceeded, match="Event is cancelled"):
        reserve_seats(cur, 1, 1)


def test_reserve_unknown_event():
    cur = FakeEventsCursor(capacity=5)
    with pytest.raises(RegistrationNotFound):
        reserve_seats(cur, 99, 1)


# --- PAYMENT OUTCOMES ---
def test_successful_payment_confirms_registration_together():
    cur = MagicMock()
    cur.fetchone.return_value = payment_row()

    outcome = apply_payment_outcome(cur, "tx-1", "SUCCESSFUL", "Paid")

    assert outcome["state"] == "CONFIRMED"
    assert outcome["changed"] is True
    statements = executed_sql(cur)
    assert any("status = 'completed'" in s and "UPDATE payments" in s for s in statements)
    reg_update = [s for s in statements if "UPDATE event_registrations" in s]
    assert len(reg_update) == 1
    assert "status = 'confirmed'" in reg_update[0]
    assert "payment_status = 'completed'" in reg_update[0]


def test_failed_payment_releases_seats():
    cur = MagicMock()
    cur.fetchone.return_value = payment_row(provider_status="PENDING", attendees=3)

    outcome = apply_payment_outcome(cur, "tx-1", "FAILED", "Declined")

    assert outcome["state"] == "FAILED"
    statements = executed_sql(cur)
    assert any("payment_status = 'failed'" in s for s in statements)
    release = [c for c in cur.execute.call_args_list if "GREATEST" in c.args[0]]
    assert len(release) == 1
    assert release[0].args[1] == (3, 1)


def test_pending_outcome_only_touches_payment():
    cur = MagicMock()
    cur.fetchone.return_value = payment_row()

    outcome = apply_payment_outcome(cur, "tx-1", "pending")

    assert outcome["status"] == "PENDING"
    assert outcome["state"] == "PAYMENT_PENDING"
    assert outcome["changed"] is False
    assert not any("event_registrations" in s for s in executed_sql(cur)[1:])


def test_settled_payment_is_not_applied_twice():
    cur = MagicMock()
    cur.fetchone.return_value = payment_row(
        status="completed", provider_status="SUCCESSFUL",
        registration_status="confirmed", payment_status="completed",
    )

    outcome = apply_payment_outcome(cur, "tx-1", "FAILED")

    assert outcome["status"] == "SUCCESSFUL"
    assert outcome["state"] == "CONFIRMED"
    assert outcome["changed"] is False
    assert cur.execute.call_count == 1


def test_success_after_cancellation_keeps_registration_cancelled():
    cur = MagicMock()
    cur.fetchone.return_value = payment_row(registration_status="cancelled")

    outcome = apply_payment_outcome(cur, "tx-1", "SUCCESSFUL")

    assert outcome["state"] == "CANCELLED"
    assert not any("UPDATE event_registrations" in s for s in executed_sql(cur))


def test_outcome_for_unknown_transaction():
    cur = MagicMock()
    cur.fetchone.return_value = None
    with pytest.raises(RegistrationNotFound):
        apply_payment_outcome(cur, "nope", "SUCCESSFUL")


# --- CANCEL / EXPIRE ---
def test_cancel_releases_seats():
    cur = MagicMock()
    cur.fetchone.side_effect = [registration_row(), None]

    result = cancel_registration(cur, 42, user_id=3, role="user")

    assert result["status"] == "cancelled"
    release = [c for c in cur.execute.call_args_list if "GREATEST" in c.args[0]]
    assert release[0].args[1] == (2, 1)


def test_cancel_other_users_registration():
    cur = MagicMock()
    cur.fetchone.side_effect = [registration_row(), None]
    with pytest.raises(PermissionDenied):
        cancel_registration(cur, 42, user_id=8, role="user")


def test_admin_can_cancel_any_registration():
    cur = MagicMock()
    cur.fetchone.side_effect = [registration_row(), None]
    assert cancel_registration(cur, 42, user_id=8, role="admin")["state"] == "CANCELLED"


def test_cancel_confirmed_registration():
    cur = MagicMock()
    cur.fetchone.side_effect = [registration_row(status="confirmed", payment_status="completed"), None]
    with pytest.raises(InvalidTransition):
        cancel_registration(cur, 42, user_id=3, role="user")


def test_expire_stale_registrations_releases_per_event():
    cur = MagicMock()
    cur.fetchall.return_value = [
        {"event_id": 1, "seats": 3, "expired": 2},
        {"event_id": 2, "seats": 1, "expired": 1},
    ]

    assert expire_stale_registrations(cur, 60) == 3

    release = [c.args[1] for c in cur.execute.call_args_list if "GREATEST" in c.args[0]]
    assert release == [(3, 1), (1, 2)]
