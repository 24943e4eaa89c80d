"""
Payments service routes: initiate mobile-money payments, report their
status, and accept the aggregator's webhook.

Payment outcomes are written through `registrations_service.lifecycle`, so
the payment row and the registration always change together.
"""

import logging
from typing import Tuple, Dict, Any

from flask import Blueprint, request, jsonify, Response

from event_portal import config
from event_portal.database.db_connection import get_db
from event_portal.auth_service.utils import verify_token_from_request
from event_portal.notifications.phone import normalize_phone
from event_portal.payments_service.provider_client import (
    MobileMoneyClient, PaymentProviderError, PROVIDERS, PENDING,
    normalize_status, verify_webhook_signature,
)
from event_portal.registrations_service.lifecycle import (
    RegistrationError, RegistrationState, PROVIDER_SUCCESSFUL, PROVIDER_FAILED,
    ensure_transition, load_registration, record_payment_initiated, apply_payment_outcome,
    parse_positive_int,
)

payments_bp = Blueprint("payments", __name__)

SIGNATURE_HEADER = "X-Signature"


def get_provider_client() -> MobileMoneyClient:
    return MobileMoneyClient.from_config()


@payments_bp.before_request
def before_request() -> None:
    logging.info(f"[Payments] Incoming {request.method} {request.path}")


@payments_bp.after_request
def after_request(response: Response) -> Response:
    logging.info(f"[Payments] Response {response.status}")
    return response


@payments_bp.route("/create", methods=["POST"])
def create_payment() -> Tuple[Response, int]:
    """
    Start a mobile-money payment for a registration.

    Expects JSON:
        { "registrationId": int, "amount": int, "provider": "mtn" | "orange",
          "phoneNumber": str }

    The amount must equal the registration's total_price, fixed when it was
    created.

    Returns:
        200: { "success": true, "transactionId": str, "status": "PENDING" }
        400: Missing or invalid fields.
        401/403: Not authenticated / not the registration owner.
        404: Registration not found.
        409: Registration cannot take a payment in its current state.
        502: Payment provider error (provider message included).
        500: Database error.
    """
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    registration_id = data.get("registrationId")
    amount = data.get("amount")
    provider = (data.get("provider") or "").lower()
    phone_number = data.get("phoneNumber")

    if not registration_id or amount is None or not provider or not phone_number:
        return jsonify({"error": "Missing required fields"}), 400

    user_id, role, err, code = verify_token_from_request()
    if err:
        return err, code

    try:
        registration_id = parse_positive_int(registration_id, "registrationId")
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code

    if provider not in PROVIDERS:
        return jsonify({"error": f"provider must be one of: {', '.join(PROVIDERS)}"}), 400
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        return jsonify({"error": "amount must be a positive integer"}), 400

    phone = normalize_phone(phone_number)
    if not phone:
        return jsonify({"error": "Invalid phone number"}), 400

    # 1. Check the registration can take a payment (no lock held across the provider call)
    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                registration = load_registration(cur, registration_id)
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception as e:
        logging.error(f"Database error loading registration {registration_id}: {e}")
        return jsonify({"error": "Failed to load registration"}), 500

    if registration["user_id"] != user_id and role != "admin":
        return jsonify({"error": "Unauthorized - you do not own this registration"}), 403

    try:
        ensure_transition(RegistrationState(registration["state"]), RegistrationState.PAYMENT_INITIATED)
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code

    expected = registration["total_price"]
    if amount != expected:
        return jsonify({"error": f"Amount does not match registration total ({expected})"}), 400

    # 2. Ask the aggregator to prompt the payer
    try:
        result = get_provider_client().request_payment(
            amount=amount,
            provider=provider,
            phone_number=phone,
            reference=f"registration-{registration_id}",
            description=f"Event Portal: {registration['event_title']}",
        )
    except PaymentProviderError as e:
        return jsonify({"success": False, "error": e.message}), e.status_code

    transaction_id = result["transaction_id"]

    # 3. Record the transaction; the state is re-checked under lock
    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                locked = load_registration(cur, registration_id, for_update=True)
                record_payment_initiated(cur, locked, transaction_id, provider, phone, amount)
    except RegistrationError as e:
        logging.error(
            f"[Payments] Transaction {transaction_id} initiated but registration "
            f"{registration_id} changed meanwhile: {e.message}"
        )
        return jsonify({"success": False, "error": e.message}), e.status_code
    except Exception as e:
        logging.error(f"Database error recording transaction {transaction_id}: {e}")
        return jsonify({"success": False, "error": "Failed to record payment"}), 500

    logging.info(f"[Payments] Transaction {transaction_id} initiated for registration {registration_id}")
    return jsonify({"success": True, "transactionId": transaction_id, "status": PENDING}), 200


@payments_bp.route("/status", methods=["GET"])
def payment_status() -> Tuple[Response, int]:
    """
    Check a transaction with the aggregator and apply the result.

    Query:
        transactionId (str), provider ("mtn" | "orange")

    Returns:
        200: { "status": "SUCCESSFUL" | "FAILED" | "PENDING", "message": str,
               "registrationId": int, "state": str }
        400: Missing parameters.
        401/403: Not authenticated / not the owner.
        404: Unknown transaction.
        502: Provider error (the caller should simply ask again later).
    """
    transaction_id = request.args.get("transactionId")
    provider = (request.args.get("provider") or "").lower()

    if not transaction_id or not provider:
        return jsonify({"error": "Missing required fields"}), 400

    user_id, role, err, code = verify_token_from_request()
    if err:
        return err, code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT p.registration_id, p.provider, p.status, p.message, r.user_id
                    FROM payments p
                    JOIN event_registrations r ON r.id = p.registration_id
                    WHERE p.transaction_id = %s;
                    """,
                    (transaction_id,),
                )
                payment = cur.fetchone()
    except Exception as e:
        logging.error(f"Database error reading transaction {transaction_id}: {e}")
        return jsonify({"error": "Failed to check payment status"}), 500

    if not payment or payment["provider"] != provider:
        return jsonify({"error": "Payment not found"}), 404
    if payment["user_id"] != user_id and role != "admin":
        return jsonify({"error": "Permission denied"}), 403

    # Already settled (e.g. by the webhook): no need to ask the provider
    if payment["status"] != "pending":
        settled = PROVIDER_SUCCESSFUL if payment["status"] == "completed" else PROVIDER_FAILED
        return jsonify({
            "status": settled,
            "message": payment["message"] or _status_message(settled),
            "registrationId": payment["registration_id"],
        }), 200

    try:
        remote = get_provider_client().get_status(transaction_id, provider)
    except PaymentProviderError as e:
        return jsonify({"error": e.message}), e.status_code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                outcome = apply_payment_outcome(cur, transaction_id, remote["status"], remote.get("message"))
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception as e:
        logging.error(f"Database error applying status for {transaction_id}: {e}")
        return jsonify({"error": "Failed to update payment status"}), 500

    return jsonify({
        "status": outcome["status"],
        "message": remote.get("message") or _status_message(outcome["status"]),
        "registrationId": outcome["registration_id"],
        "state": outcome["state"],
    }), 200


@payments_bp.route("/webhook", methods=["POST"])
def payment_webhook() -> Tuple[Response, int]:
    """
    Aggregator callback; the authoritative source for payment outcomes.

    The raw body must be signed with HMAC-SHA256 (hex) using
    PAYMENT_WEBHOOK_SECRET, sent in the X-Signature header.

    Returns:
        200: { "status": "ok", "state": str }
        400: Malformed payload.
        401: Bad signature.
        404: Unknown transaction.
    """
    payload = request.get_data()
    if not verify_webhook_signature(payload, request.headers.get(SIGNATURE_HEADER), config.PAYMENT_WEBHOOK_SECRET):
        logging.warning("[Payments] Webhook rejected: invalid signature")
        return jsonify({"error": "invalid signature"}), 401

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    transaction_id = data.get("reference") or data.get("transaction_id")
    if not transaction_id or not data.get("status"):
        return jsonify({"error": "Missing required fields"}), 400

    status = normalize_status(data.get("status"))

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                outcome = apply_payment_outcome(cur, str(transaction_id), status, data.get("message"))
    except RegistrationError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception as e:
        logging.error(f"Database error applying webhook for {transaction_id}: {e}")
        return jsonify({"error": "Failed to process webhook"}), 500

    return jsonify({"status": "ok", "state": outcome["state"]}), 200


def _status_message(status: str) -> str:
    if status == PROVIDER_SUCCESSFUL:
        return "Payment completed successfully!"
    if status == PROVIDER_FAILED:
        return "Payment failed. Please try again."
    return "Waiting for payment approval..."
