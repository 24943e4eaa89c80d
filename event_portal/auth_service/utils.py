"""
Shared authentication helpers.
Provides token creation, verification, and role enforcement.

Roles are only ever read from a token this server signed; nothing the
client stores locally is trusted.
"""

from datetime import datetime, timedelta, timezone
from typing import Tuple, Optional

import jwt
from flask import jsonify, request, Response

from event_portal import config

JWT_SECRET = config.JWT_SECRET
TOKEN_EXPIRATION_MINUTES = config.TOKEN_EXPIRATION_MINUTES

VALID_ROLES = ("user", "admin")


def _secret() -> str:
    if not JWT_SECRET:
        raise RuntimeError("JWT_SECRET is missing. Set it in .env")
    return JWT_SECRET


# --- JWT CREATION ---
def create_token(user_id: int, role: str) -> str:
    """
    Generates a new JWT for a given user.

    Args:
        user_id (int): The unique ID of the profile.
        role (str): The role of the user (user, admin).

    Returns:
        str: Encoded JWT string.
    """
    now = datetime.now(timezone.utc)

    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": now + timedelta(minutes=TOKEN_EXPIRATION_MINUTES),
        "iat": now
    }

    return jwt.encode(payload, _secret(), algorithm="HS256")


def _decode(token: str) -> dict:
    payload = jwt.decode(token, _secret(), algorithms=["HS256"])
    payload["sub"] = int(payload["sub"])
    return payload


# --- JWT VALIDATION ---
def verify_token_from_request(required_roles: Optional[list] = None) -> Tuple[Optional[int], Optional[str], Optional[Response], Optional[int]]:
    """
    Verify the JWT in the Authorization header.

    Args:
        required_roles (list, optional): List of allowed roles.

    Returns:
        tuple: (user_id, role, error_response, status_code)
               If successful, error_response and status_code are None.
               If failed, user_id and role are None.
    """
    auth = request.headers.get("Authorization", "")

    if not auth.startswith("Bearer "):
        return None, None, jsonify({"error": "missing token"}), 401

    token = auth.split(" ", 1)[1]

    try:
        payload = _decode(token)
    except jwt.ExpiredSignatureError:
        return None, None, jsonify({"error": "token expired"}), 401
    except (jwt.InvalidTokenError, KeyError, ValueError):
        return None, None, jsonify({"error": "invalid token"}), 401

    user_id = payload.get("sub")
    role = payload.get("role")

    if required_roles and role not in required_roles:
        return None, None, jsonify({"error": "permission denied"}), 403

    return user_id, role, None, None


def optional_user_from_request() -> Tuple[Optional[int], Optional[str]]:
    """
    Identify the caller on public endpoints.

    Returns:
        tuple: (user_id, role), both None for anonymous or invalid tokens.
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None, None
    try:
        payload = _decode(auth.split(" ", 1)[1])
    except (jwt.InvalidTokenError, KeyError, ValueError):
        return None, None
    return payload.get("sub"), payload.get("role")
