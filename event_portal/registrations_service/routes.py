"""
Registrations service routes: create and cancel registrations, list a
user's registrations, and issue/check SMS verification codes.

Seat accounting and state changes live in `lifecycle`.
"""

import logging
from typing import Tuple, Dict, Any

from flask import Blueprint, request, jsonify, Response

from event_portal import config
from event_portal.database.db_connection import get_db
from event_portal.auth_service.utils import verify_token_from_request
from event_portal.notifications.sms import SMSService, SMSError
from event_portal.pagination import parse_pagination, pagination_meta
from event_portal.registrations_service import verification
from event_portal.registrations_service.lifecycle import (
    RegistrationError, VALID_STATUSES, VALID_PAYMENT_STATUSES,
    parse_attendees, parse_positive_int, create_registration, load_registration, cancel_registration,
    expire_stale_registrations, serialize_registration,
)

registrations_bp = Blueprint("registrations", __name__)


def get_sms_service() -> SMSService:
    return SMSService.from_config()


@registrations_bp.before_request
def before_request() -> None:
    logging.info(f"[Registrations] Incoming {request.method} {request.path}")


@registrations_bp.after_request
def after_request(response: Response) -> Response:
    logging.info(f"[Registrations] Response {response.status}")
    return response


@registrations_bp.route("", methods=["POST"])
def register_for_event() -> Tuple[Response, int]:
    """
    Create a pending registration and reserve its seats.

    Expects JSON:
        { "eventId": int, "attendees": int }

    Returns:
        201: Registration (total_price, available_spots, state). Paid events start
             pending/pending; free ones are confirmed/completed.
        400: Missing or invalid fields.
        401: Not authenticated.
        404: Event not found.
        409: Event not active or not enough spots left.
        500: Database error.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    event_id = data.get("eventId")
    if not event_id or data.get("attendees") is None:
        return jsonify({"error": "Missing required fields"}), 400

    try:
        event_id = parse_positive_int(event_id, "eventId")
        attendees = parse_attendees(data.get("attendees"))
        with get_db() as conn:
            with conn.cursor() as cur:
                registration = create_registration(cur, event_id, user_id, attendees)
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception as e:
        logging.error(f"Database error creating registration: {e}")
        return jsonify({"error": "Failed to create registration"}), 500

    return jsonify(registration), 201


@registrations_bp.route("/me", methods=["GET"])
def my_registrations() -> Tuple[Response, int]:
    """
    List the caller's registrations, newest first.

    Filters: ?status=, ?payment_status=; pagination: ?page=, ?items_per_page=
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    status = request.args.get("status")
    payment_status = request.args.get("payment_status")
    if status and status not in VALID_STATUSES:
        return jsonify({"error": f"status must be one of: {', '.join(VALID_STATUSES)}"}), 400
    if payment_status and payment_status not in VALID_PAYMENT_STATUSES:
        return jsonify({"error": f"payment_status must be one of: {', '.join(VALID_PAYMENT_STATUSES)}"}), 400

    page, limit, offset = parse_pagination(request.args)

    conditions = ["r.user_id = %s"]
    params: list = [user_id]
    if status:
        conditions.append("r.status = %s")
        params.append(status)
    if payment_status:
        conditions.append("r.payment_status = %s")
        params.append(payment_status)
    where = " AND ".join(conditions)

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM event_registrations r WHERE {where};", params)
                total = cur.fetchone()["total"]

                cur.execute(
                    f"""
                    SELECT r.id, r.event_id, r.user_id, r.attendees, r.total_price, r.status, r.payment_status,
                           r.created_at, r.updated_at,
                           e.title AS event_title, e.location, e.event_date, e.event_time, e.price
                    FROM event_registrations r
                    JOIN events e ON e.id = r.event_id
                    WHERE {where}
                    ORDER BY r.created_at DESC
                    LIMIT %s OFFSET %s;
                    """,
                    params + [limit, offset],
                )
                registrations = [serialize_registration(row) for row in cur.fetchall()]
    except Exception as e:
        logging.error(f"Database error listing registrations for {user_id}: {e}")
        return jsonify({"error": "Failed to retrieve registrations"}), 500

    return jsonify({
        "registrations": registrations,
        "pagination": pagination_meta(total, page, limit),
    }), 200


@registrations_bp.route("/<int:registration_id>", methods=["GET"])
def get_registration(registration_id: int) -> Tuple[Response, int]:
    """
    Get one registration with its lifecycle state and latest payment.
    Visible to its owner, the event organizer, and admins.
    """
    user_id, role, err, code = verify_token_from_request()
    if err:
        return err, code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                registration = load_registration(cur, registration_id)
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception as e:
        logging.error(f"Database error getting registration {registration_id}: {e}")
        return jsonify({"error": "Failed to retrieve registration"}), 500

    allowed = (
        registration["user_id"] == user_id
        or registration["organizer_id"] == user_id
        or role == "admin"
    )
    if not allowed:
        return jsonify({"error": "Permission denied"}), 403

    return jsonify(serialize_registration(registration)), 200


@registrations_bp.route("/<int:registration_id>/cancel", methods=["POST"])
def cancel(registration_id: int) -> Tuple[Response, int]:
    """
    Cancel a registration that has not been paid and release its seats.

    Returns:
        200: { "id": int, "status": "cancelled", "state": "CANCELLED" }
        403: Not the owner.
        404: Not found.
        409: Already confirmed, failed or cancelled.
    """
    user_id, role, err, code = verify_token_from_request()
    if err:
        return err, code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                result = cancel_registration(cur, registration_id, user_id, role)
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception as e:
        logging.error(f"Database error cancelling registration {registration_id}: {e}")
        return jsonify({"error": "Failed to cancel registration"}), 500

    return jsonify(result), 200


@registrations_bp.route("/code-generator", methods=["POST"])
def generate_verification_code() -> Tuple[Response, int]:
    """
    Issue a 6-digit verification code for a registration and text it to the owner.

    Expects JSON:
        { "registrationId": int }

    Returns:
        200: { "success": true, "message": "Verification code sent", "code_id": int }
        400: Missing registrationId.
        401: Not authenticated.
        403: Caller does not own the registration.
        404: Registration not found.
        500: Database error, missing phone number, or SMS failure.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    registration_id = data.get("registrationId")
    if not registration_id:
        return jsonify({"error": "Missing required fields"}), 400

    try:
        registration_id = parse_positive_int(registration_id, "registrationId")
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT r.id, r.user_id, e.title, e.event_date, p.phone
                    FROM event_registrations r
                    JOIN events e ON e.id = r.event_id
                    JOIN profiles p ON p.id = r.user_id
                    WHERE r.id = %s;
                    """,
                    (registration_id,),
                )
                registration = cur.fetchone()
                if not registration:
                    return jsonify({"error": "Registration not found"}), 404
                if registration["user_id"] != user_id:
                    return jsonify({"error": "Unauthorized - you do not own this registration"}), 403
                if not registration["phone"]:
                    return jsonify({"error": "Failed to fetch user phone number"}), 500

                issued = verification.issue_code(cur, registration_id)
    except Exception as e:
        logging.error(f"Database error generating code for registration {registration_id}: {e}")
        return jsonify({"error": "Failed to generate verification code"}), 500

    message = verification.build_sms_message(registration["title"], registration["event_date"], issued["code"])
    try:
        get_sms_service().send_message(to=registration["phone"], message=message)
    except SMSError as e:
        logging.error(f"[SMS] Failed to send code for registration {registration_id}: {e}")
        return jsonify({"error": "Failed to send verification code via SMS", "details": str(e)}), 500

    return jsonify({
        "success": True,
        "message": "Verification code sent",
        "code_id": issued["id"],
    }), 200


@registrations_bp.route("/verify-code", methods=["POST"])
def verify_code() -> Tuple[Response, int]:
    """
    Check (and burn) a verification code.

    Expects JSON:
        { "registrationId": int, "code": str }

    Returns:
        200: { "success": true }
        400: Missing fields, or code wrong, expired or already used.
        403: Caller does not own the registration.
        404: Registration not found.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    registration_id = data.get("registrationId")
    submitted = data.get("code")
    if not registration_id or not submitted:
        return jsonify({"error": "Missing required fields"}), 400

    try:
        registration_id = parse_positive_int(registration_id, "registrationId")
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT user_id FROM event_registrations WHERE id = %s;", (registration_id,))
                registration = cur.fetchone()
                if not registration:
                    return jsonify({"error": "Registration not found"}), 404
                if registration["user_id"] != user_id:
                    return jsonify({"error": "Unauthorized - you do not own this registration"}), 403

                valid = verification.consume_code(cur, registration_id, str(submitted))
    except Exception as e:
        logging.error(f"Database error verifying code for registration {registration_id}: {e}")
        return jsonify({"error": "Failed to verify code"}), 500

    if not valid:
        return jsonify({"success": False, "error": "Invalid or expired code"}), 400

    return jsonify({"success": True}), 200


@registrations_bp.route("/expire-stale", methods=["POST"])
def expire_stale() -> Tuple[Response, int]:
    """
    Admin-only: cancel abandoned pending/pending registrations and free their seats.

    Expects JSON (optional):
        { "older_than_minutes": int }   default STALE_REGISTRATION_MINUTES
    """
    _, _, err, code = verify_token_from_request(required_roles=["admin"])
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    minutes = data.get("older_than_minutes", config.STALE_REGISTRATION_MINUTES)
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
        return jsonify({"error": "older_than_minutes must be a positive integer"}), 400

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                expired = expire_stale_registrations(cur, minutes)
    except Exception as e:
        logging.error(f"Database error expiring registrations: {e}")
        return jsonify({"error": "Failed to expire registrations"}), 500

    return jsonify({"expired": expired}), 200
