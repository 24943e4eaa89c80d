"""
Authentication service route handlers.

Provides routes for:
- Account registration
- Login
- Profile retrieval (/me)
- Profile update (/me PUT)
- Notification and theme settings (/me/settings)
- Admin user listing
- Admin role assignment

All JWT logic is delegated to `auth_service.utils`.
"""

import logging
from typing import Tuple, Dict, Any

import psycopg2.errors
from argon2 import PasswordHasher
from argon2.exceptions import VerificationError, InvalidHashError
from flask import Blueprint, request, jsonify, Response

from event_portal.database.db_connection import get_db
from event_portal.auth_service.utils import create_token, verify_token_from_request, VALID_ROLES
from event_portal.notifications.phone import normalize_phone

auth_bp = Blueprint("auth", __name__)
ph = PasswordHasher()

PROFILE_COLUMNS = "id, email, full_name, phone, avatar_url, role, created_at, updated_at"
SETTINGS_COLUMNS = "email_notifications, sms_notifications, theme, updated_at"
VALID_THEMES = ("light", "dark", "system")


def _serialize_profile(row) -> Dict[str, Any]:
    profile = dict(row)
    profile.pop("password_hash", None)
    for key in ("created_at", "updated_at"):
        if profile.get(key):
            profile[key] = profile[key].isoformat()
    return profile


# --- REQUEST LOGGING ---
@auth_bp.before_request
def before_request() -> None:
    """
    Log every incoming request to the authentication service.
    Headers are left out since they carry bearer tokens.
    """
    logging.info(f"[Auth] Incoming {request.method} {request.path}")


@auth_bp.after_request
def after_request(response: Response) -> Response:
    logging.info(f"[Auth] Response {response.status}")
    return response


# --- REGISTER ---
@auth_bp.route("/register", methods=["POST"])
def register() -> Tuple[Response, int]:
    """
    Create a new account.

    Expects a JSON body with:
    - email (str): Unique email address.
    - password (str): Minimum 8 characters.
    - full_name (str)
    - phone (str): Mobile number used for SMS verification codes.

    Returns:
        201: JSON with user_id, role, and a new JWT token.
        400: Missing fields, invalid input, or email already exists.
        500: Server-side error (hashing or database).
    """
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    email: str = (data.get("email") or "").strip().lower()
    password: str = data.get("password", "")
    full_name: str = (data.get("full_name") or "").strip()
    phone: str = (data.get("phone") or "").strip()

    if not email or not password:
        return jsonify({"error": "Email and password required"}), 400
    if not full_name or not phone:
        return jsonify({"error": "Full name and phone number required"}), 400
    if len(password) < 8:
        return jsonify({"error": "Password must be at least 8 characters"}), 400

    phone = normalize_phone(phone)
    if not phone:
        return jsonify({"error": "Invalid phone number"}), 400

    try:
        pw_hash = ph.hash(password)
    except Exception as e:
        logging.error(f"Password hashing failed: {e}")
        return jsonify({"error": "Password hashing failed"}), 500

    sql = """
        INSERT INTO profiles (email, password_hash, full_name, phone)
        VALUES (%s, %s, %s, %s)
        RETURNING id, role;
    """

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (email, pw_hash, full_name, phone))
                user = cur.fetchone()
    except psycopg2.errors.UniqueViolation:
        return jsonify({"error": "Email already exists"}), 400
    except Exception as e:
        logging.error(f"Database error registering account: {e}")
        return jsonify({"error": "Registration failed"}), 500

    token = create_token(user["id"], user["role"])

    return jsonify({"user_id": user["id"], "role": user["role"], "token": token}), 201


# --- LOGIN ---
@auth_bp.route("/login", methods=["POST"])
def login() -> Tuple[Response, int]:
    """
    Authenticate a user and return a JWT.

    Returns:
        200: JSON with user_id, role, and JWT token.
        400: Missing credentials.
        401: Invalid credentials.
        500: Database error.
    """
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    email: str = (data.get("email") or "").strip().lower()
    password: str = data.get("password", "")

    if not email or not password:
        return jsonify({"error": "Email and password required"}), 400

    sql = "SELECT id, password_hash, role FROM profiles WHERE email = %s;"

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (email,))
                user = cur.fetchone()
    except Exception as e:
        logging.error(f"Database error during login: {e}")
        return jsonify({"error": "Login failed"}), 500

    if not user:
        return jsonify({"error": "Invalid credentials"}), 401

    try:
        ph.verify(user["password_hash"], password)
    except (VerificationError, InvalidHashError):
        return jsonify({"error": "Invalid credentials"}), 401

    token = create_token(user["id"], user["role"])

    return jsonify({
        "user_id": user["id"],
        "role": user["role"],
        "token": token
    }), 200


# --- GET CURRENT USER ---
@auth_bp.route("/me", methods=["GET"])
def get_current_user() -> Tuple[Response, int]:
    """
    Retrieve the current user's profile.

    Returns:
        200: Profile object.
        401: Authentication failure.
        404: Profile not found (deleted after token was issued).
        500: Database error.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    sql = f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = %s;"

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (user_id,))
                user = cur.fetchone()
    except Exception as e:
        logging.error(f"Database error reading profile {user_id}: {e}")
        return jsonify({"error": "Could not retrieve user"}), 500

    if not user:
        return jsonify({"error": "User not found"}), 404

    return jsonify(_serialize_profile(user)), 200


# --- UPDATE CURRENT USER ---
@auth_bp.route("/me", methods=["PUT"])
def update_current_user() -> Tuple[Response, int]:
    """
    Update full_name, phone or avatar_url of the current profile.

    Returns:
        200: Updated profile.
        400: No valid fields provided.
        401: Authentication failure.
        500: Update failed.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}

    allowed = ["full_name", "phone", "avatar_url"]
    fields = {k: v for k, v in data.items() if k in allowed}

    if not fields:
        return jsonify({"error": "No valid fields provided"}), 400

    if "phone" in fields:
        fields["phone"] = normalize_phone(fields["phone"])
        if not fields["phone"]:
            return jsonify({"error": "Invalid phone number"}), 400

    set_clause = ", ".join(f"{k} = %s" for k in fields)
    set_clause += ", updated_at = CURRENT_TIMESTAMP"

    values = list(fields.values()) + [user_id]

    sql = f"UPDATE profiles SET {set_clause} WHERE id = %s RETURNING {PROFILE_COLUMNS};"

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, values)
                updated_user = cur.fetchone()
    except Exception as e:
        logging.error(f"Database error updating profile {user_id}: {e}")
        return jsonify({"error": "Update failed"}), 500

    if not updated_user:
        return jsonify({"error": "User not found"}), 404

    return jsonify(_serialize_profile(updated_user)), 200


# --- SETTINGS ---
@auth_bp.route("/me/settings", methods=["GET"])
def get_settings() -> Tuple[Response, int]:
    """
    Retrieve the current user's notification and display settings.
    A row with the defaults is created on first read.

    Returns:
        200: { "email_notifications": bool, "sms_notifications": bool, "theme": str, "updated_at": str }
        401: Authentication failure.
        404: Profile not found.
        500: Database error.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "INSERT INTO user_settings (user_id) VALUES (%s) ON CONFLICT (user_id) DO NOTHING;",
                    (user_id,),
                )
                cur.execute(f"SELECT {SETTINGS_COLUMNS} FROM user_settings WHERE user_id = %s;", (user_id,))
                settings = cur.fetchone()
    except psycopg2.errors.ForeignKeyViolation:
        return jsonify({"error": "User not found"}), 404
    except Exception as e:
        logging.error(f"Database error reading settings for {user_id}: {e}")
        return jsonify({"error": "Could not retrieve settings"}), 500

    return jsonify(_serialize_profile(settings)), 200


@auth_bp.route("/me/settings", methods=["PUT"])
def update_settings() -> Tuple[Response, int]:
    """
    Update any of email_notifications, sms_notifications, theme.

    Returns:
        200: Updated settings.
        400: No valid fields, a non-boolean flag, or an unknown theme.
        401: Authentication failure.
        404: Profile not found.
        500: Update failed.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    fields = {k: v for k, v in data.items() if k in ("email_notifications", "sms_notifications", "theme")}

    if not fields:
        return jsonify({"error": "No valid fields provided"}), 400
    for key in ("email_notifications", "sms_notifications"):
        if key in fields and not isinstance(fields[key], bool):
            return jsonify({"error": f"{key} must be true or false"}), 400
    if "theme" in fields and fields["theme"] not in VALID_THEMES:
        return jsonify({"error": f"theme must be one of: {', '.join(VALID_THEMES)}"}), 400

    columns = ", ".join(fields)
    placeholders = ", ".join(["%s"] * len(fields))
    updates = ", ".join(f"{k} = EXCLUDED.{k}" for k in fields)

    sql = f"""
        INSERT INTO user_settings (user_id, {columns})
        VALUES (%s, {placeholders})
        ON CONFLICT (user_id) DO UPDATE SET {updates}, updated_at = CURRENT_TIMESTAMP
        RETURNING {SETTINGS_COLUMNS};
    """

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, [user_id] + list(fields.values()))
                settings = cur.fetchone()
    except psycopg2.errors.ForeignKeyViolation:
        return jsonify({"error": "User not found"}), 404
    except Exception as e:
        logging.error(f"Database error updating settings for {user_id}: {e}")
        return jsonify({"error": "Update failed"}), 500

    return jsonify(_serialize_profile(settings)), 200


# --- LIST USERS (ADMIN ONLY) ---
@auth_bp.route("/users", methods=["GET"])
def list_users() -> Tuple[Response, int]:
    """
    Admin-only endpoint to list all profiles.

    Returns:
        200: List of profile objects.
        401/403: Unauthorized (not an admin).
        500: Database error.
    """
    _, _, err, code = verify_token_from_request(required_roles=["admin"])
    if err:
        return err, code

    sql = f"SELECT {PROFILE_COLUMNS} FROM profiles ORDER BY id ASC;"

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql)
                users = [_serialize_profile(row) for row in cur.fetchall()]
    except Exception as e:
        logging.error(f"Error listing users: {e}")
        return jsonify({"error": "Failed to retrieve users"}), 500

    return jsonify(users), 200


# --- SET ROLE (ADMIN ONLY) ---
@auth_bp.route("/set-role", methods=["POST"])
def set_role() -> Tuple[Response, int]:
    """
    Admin-only endpoint to promote or demote a user.

    Expects JSON:
        { "user_id": int, "role": "user" | "admin" }
    """
    _, _, err, code = verify_token_from_request(required_roles=["admin"])
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    target_id = data.get("user_id")
    new_role = data.get("role")

    if not target_id or new_role not in VALID_ROLES:
        return jsonify({"error": "Invalid input"}), 400

    sql = "UPDATE profiles SET role = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s;"

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (new_role, target_id))
                if cur.rowcount == 0:
                    return jsonify({"error": "User not found"}), 404
    except Exception as e:
        logging.error(f"Database error setting role for {target_id}: {e}")
        return jsonify({"error": "Failed to update role"}), 500

    return jsonify({"status": "ok"}), 200
