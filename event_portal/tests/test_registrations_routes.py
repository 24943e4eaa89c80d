from datetime import datetime, date, timedelta, timezone
from unittest.mock import MagicMock

from event_portal.notifications.sms import SMSError


def created_row(**overrides):
    row = {
        "id": 42, "event_id": 1, "user_id": 3, "attendees": 2, "total_price": 10000,
        "status": "pending", "payment_status": "pending",
        "created_at": datetime(2025, 3, 1, 9, 0), "updated_at": datetime(2025, 3, 1, 9, 0),
    }
    row.update(overrides)
    return row


def loaded_row(**overrides):
    row = created_row(event_title="Douala Tech Meetup", price=5000,
                      event_date=date(2025, 7, 5), event_time=None, organizer_id=9)
    row.update(overrides)
    return row


def test_register_for_event_success(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        {"id": 1, "price": 5000, "capacity": 10, "registered_attendees": 4},
        created_row(),
    ]

    response = client.post("/api/registrations", json={"eventId": 1, "attendees": 2},
                           headers=auth_headers(3))

    assert response.status_code == 201
    data = response.get_json()
    assert data["id"] == 42
    assert data["status"] == "pending"
    assert data["payment_status"] == "pending"
    assert data["total_price"] == 10000
    assert data["available_spots"] == 6


def test_register_for_full_event(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        None,
        {"status": "active", "capacity": 1, "registered_attendees": 1},
    ]

    response = client.post("/api/registrations", json={"eventId": 1, "attendees": 1},
                           headers=auth_headers(4))

    assert response.status_code == 409
    assert response.get_json()["error"] == "Only 0 spots left"


def test_register_missing_fields(client, auth_headers):
    response = client.post("/api/registrations", json={"eventId": 1}, headers=auth_headers(3))
    assert response.status_code == 400
    assert response.get_json()["error"] == "Missing required fields"


def test_register_invalid_attendees(client, mock_db, auth_headers):
    response = client.post("/api/registrations", json={"eventId": 1, "attendees": 0},
                           headers=auth_headers(3))
    assert response.status_code == 400


def test_register_for_free_event_is_confirmed(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        {"id": 1, "price": 0, "capacity": 10, "registered_attendees": 2},
        created_row(total_price=0, status="confirmed", payment_status="completed"),
    ]

    response = client.post("/api/registrations", json={"eventId": 1, "attendees": 2},
                           headers=auth_headers(3))

    assert response.status_code == 201
    data = response.get_json()
    assert data["status"] == "confirmed"
    assert data["payment_status"] == "completed"
    assert data["state"] == "CONFIRMED"

    insert = [c for c in mock_cursor.execute.call_args_list if "INSERT INTO event_registrations" in c.args[0]]
    assert insert[0].args[1] == (1, 3, 2, 0, "confirmed", "completed")


def test_register_non_numeric_event_id(client, mock_db, auth_headers):
    response = client.post("/api/registrations", json={"eventId": "abc", "attendees": 1},
                           headers=auth_headers(3))

    assert response.status_code == 400
    assert response.get_json()["error"] == "eventId must be a positive integer"
    mock_db[1].execute.assert_not_called()


def test_register_requires_login(client):
    response = client.post("/api/registrations", json={"eventId": 1, "attendees": 1})
    assert response.status_code == 401


def test_register_database_error(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.execute.side_effect = Exception("connection reset")

    response = client.post("/api/registrations", json={"eventId": 1, "attendees": 1},
                           headers=auth_headers(3))

    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to create registration"


def test_my_registrations(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.return_value = {"total": 1}
    mock_cursor.fetchall.return_value = [loaded_row()]

    response = client.get("/api/registrations/me?status=pending&page=1&items_per_page=5",
                          headers=auth_headers(3))

    assert response.status_code == 200
    data = response.get_json()
    assert len(data["registrations"]) == 1
    assert data["registrations"][0]["event_date"] == "2025-07-05"
    assert data["pagination"] == {"total": 1, "page": 1, "limit": 5, "totalPages": 1}

    count_params = mock_cursor.execute.call_args_list[0].args[1]
    assert count_params == [3, "pending"]


def test_my_registrations_bad_filter(client, auth_headers):
    response = client.get("/api/registrations/me?status=paid", headers=auth_headers(3))
    assert response.status_code == 400


def test_get_registration_as_owner(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        loaded_row(),
        {"transaction_id": "tx-1", "provider": "mtn", "amount": 10000,
         "status": "pending", "provider_status": "PENDING", "message": None},
    ]

    response = client.get("/api/registrations/42", headers=auth_headers(3))

    assert response.status_code == 200
    data = response.get_json()
    assert data["state"] == "PAYMENT_PENDING"
    assert data["payment"]["transaction_id"] == "tx-1"


def test_get_registration_as_stranger(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [loaded_row(), None]

    response = client.get("/api/registrations/42", headers=auth_headers(77))
    assert response.status_code == 403


def test_get_registration_not_found(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.return_value = None

    response = client.get("/api/registrations/42", headers=auth_headers(3))
    assert response.status_code == 404


def test_cancel_registration(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [loaded_row(), None]

    response = client.post("/api/registrations/42/cancel", headers=auth_headers(3))

    assert response.status_code == 200
    assert response.get_json() == {"id": 42, "status": "cancelled", "state": "CANCELLED"}


def test_cancel_confirmed_registration(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [loaded_row(status="confirmed", payment_status="completed"), None]

    response = client.post("/api/registrations/42/cancel", headers=auth_headers(3))
    assert response.status_code == 409


def test_code_generator_sends_sms(client, mock_db, auth_headers, mocker):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        {"id": 42, "user_id": 3, "title": "Douala Tech Meetup",
         "event_date": date(2025, 7, 5), "phone": "+237670000000"},
        {"id": 11},
    ]
    sms = MagicMock()
    mocker.patch("event_portal.registrations_service.routes.get_sms_service", return_value=sms)

    response = client.post("/api/registrations/code-generator", json={"registrationId": 42},
                           headers=auth_headers(3))

    assert response.status_code == 200
    assert response.get_json() == {"success": True, "message": "Verification code sent", "code_id": 11}

    kwargs = sms.send_message.call_args.kwargs
    assert kwargs["to"] == "+237670000000"
    assert "Douala Tech Meetup on 5/7/2025" in kwargs["message"]


def test_code_generator_not_owner(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.return_value = {"id": 42, "user_id": 3, "title": "T",
                                         "event_date": date(2025, 7, 5), "phone": "+237670000000"}

    response = client.post("/api/registrations/code-generator", json={"registrationId": 42},
                           headers=auth_headers(8))
    assert response.status_code == 403


def test_code_generator_unknown_registration(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.return_value = None

    response = client.post("/api/registrations/code-generator", json={"registrationId": 42},
                           headers=auth_headers(3))
    assert response.status_code == 404


def test_code_generator_missing_phone(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.return_value = {"id": 42, "user_id": 3, "title": "T",
                                         "event_date": date(2025, 7, 5), "phone": None}

    response = client.post("/api/registrations/code-generator", json={"registrationId": 42},
                           headers=auth_headers(3))
    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to fetch user phone number"


def test_code_generator_sms_failure(client, mock_db, auth_headers, mocker):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        {"id": 42, "user_id": 3, "title": "T", "event_date": date(2025, 7, 5), "phone": "+237670000000"},
        {"id": 11},
    ]
    sms = MagicMock()
    sms.send_message.side_effect = SMSError("Invalid 'To' number")
    mocker.patch("event_portal.registrations_service.routes.get_sms_service", return_value=sms)

    response = client.post("/api/registrations/code-generator", json={"registrationId": 42},
                           headers=auth_headers(3))

    assert response.status_code == 500
    assert response.get_json()["details"] == "Invalid 'To' number"


def test_code_generator_requires_login(client):
    response = client.post("/api/registrations/code-generator", json={"registrationId": 42})
    assert response.status_code == 401


def test_code_generator_non_numeric_registration_id(client, mock_db, auth_headers):
    response = client.post("/api/registrations/code-generator", json={"registrationId": "42abc"},
                           headers=auth_headers(3))

    assert response.status_code == 400
    assert response.get_json()["error"] == "registrationId must be a positive integer"
    mock_db[1].execute.assert_not_called()


def test_verify_code_non_numeric_registration_id(client, mock_db, auth_headers):
    response = client.post("/api/registrations/verify-code",
                           json={"registrationId": {"id": 42}, "code": "482913"}, headers=auth_headers(3))

    assert response.status_code == 400
    assert response.get_json()["error"] == "registrationId must be a positive integer"


def test_verify_code_success(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        {"user_id": 3},
        {"id": 11, "code": "482913", "used_at": None,
         "expires_at": datetime.now(timezone.utc) + timedelta(minutes=10)},
    ]

    response = client.post("/api/registrations/verify-code",
                           json={"registrationId": 42, "code": "482913"}, headers=auth_headers(3))

    assert response.status_code == 200
    assert response.get_json() == {"success": True}


def test_verify_code_expired(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchone.side_effect = [
        {"user_id": 3},
        {"id": 11, "code": "482913", "used_at": None,
         "expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)},
    ]

    response = client.post("/api/registrations/verify-code",
                           json={"registrationId": 42, "code": "482913"}, headers=auth_headers(3))

    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": "Invalid or expired code"}


def test_expire_stale_requires_admin(client, auth_headers):
    response = client.post("/api/registrations/expire-stale", json={}, headers=auth_headers(3))
    assert response.status_code == 403


def test_expire_stale_as_admin(client, mock_db, auth_headers):
    mock_conn, mock_cursor = mock_db
    mock_cursor.fetchall.return_value = [{"event_id": 1, "seats": 2, "expired": 1}]

    response = client.post("/api/registrations/expire-stale", json={"older_than_minutes": 30},
                           headers=auth_headers(1, "admin"))

    assert response.status_code == 200
    assert response.get_json() == {"expired": 1}
    assert mock_cursor.execute.call_args_list[0].args[1] == (30,)
