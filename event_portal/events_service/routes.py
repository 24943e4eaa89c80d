"""
Events service routes: browse, create, update and delete events.
Every event read carries `available_spots` (capacity - registered_attendees).
"""

import logging
from datetime import date, time, datetime
from typing import Tuple, Dict, Any, Optional, List

from flask import Blueprint, request, jsonify, Response

from event_portal.database.db_connection import get_db
from event_portal.auth_service.utils import verify_token_from_request, optional_user_from_request
from event_portal.pagination import parse_pagination, pagination_meta
from event_portal.registrations_service.lifecycle import (
    VALID_STATUSES as VALID_REGISTRATION_STATUSES,
    VALID_PAYMENT_STATUSES, available_spots, serialize_registration,
)

events_bp = Blueprint("events", __name__)

# --- CONSTANTS FOR VALIDATION ---
TITLE_MAX_LENGTH = 200
VALID_STATUSES = ['active', 'cancelled', 'completed']
EDITABLE_FIELDS = [
    "title", "description", "location", "event_date", "event_time",
    "price", "capacity", "image_url", "category", "status",
]

EVENT_COLUMNS = """
    e.id, e.title, e.description, e.location, e.event_date, e.event_time,
    e.price, e.capacity, e.registered_attendees, e.image_url, e.category,
    e.organizer_id, e.status, e.created_at, e.updated_at,
    o.full_name AS organizer_name, o.avatar_url AS organizer_avatar_url
"""


def parse_date(val: Optional[str]) -> Optional[date]:
    """
    Parse a YYYY-MM-DD string (a full ISO datetime is cut to its date).
    """
    if not val:
        return None
    try:
        return date.fromisoformat(str(val)[:10])
    except ValueError:
        return None


def parse_time(val: Optional[str]) -> Optional[time]:
    """
    Parse HH:MM or HH:MM:SS.
    """
    if not val:
        return None
    try:
        return time.fromisoformat(str(val))
    except ValueError:
        return None


def serialize_event(row) -> Dict[str, Any]:
    event = dict(row)
    for key in ("event_date", "event_time", "created_at", "updated_at"):
        if isinstance(event.get(key), (date, time, datetime)):
            event[key] = event[key].isoformat()
    event["organizer"] = {
        "id": event.get("organizer_id"),
        "full_name": event.pop("organizer_name", None),
        "avatar_url": event.pop("organizer_avatar_url", None),
    }
    event["available_spots"] = available_spots(event)
    return event


def _non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_event_fields(data: Dict[str, Any]) -> Optional[str]:
    """
    Validate whichever editable fields are present.

    Returns:
        str: An error message, or None when everything present is valid.
    """
    if "title" in data:
        title = data.get("title")
        if title is not None and not isinstance(title, str):
            return "Title must be a string"
        if not title or not title.strip():
            return "Title cannot be empty"
        if len(title) > TITLE_MAX_LENGTH:
            return f"Title must be {TITLE_MAX_LENGTH} characters or less."
    if "location" in data:
        location = data.get("location")
        if location is not None and not isinstance(location, str):
            return "Location must be a string"
        if not location or not location.strip():
            return "Location cannot be empty"
    if "event_date" in data and not parse_date(data.get("event_date")):
        return "Invalid event_date format. Use YYYY-MM-DD."
    if "event_time" in data and not parse_time(data.get("event_time")):
        return "Invalid event_time format. Use HH:MM."
    if "price" in data and not _non_negative_int(data.get("price")):
        return "price must be a non-negative integer"
    if "capacity" in data and (not _non_negative_int(data.get("capacity")) or data.get("capacity") == 0):
        return "capacity must be a positive integer"
    if "status" in data and data.get("status") not in VALID_STATUSES:
        return f"status must be one of: {', '.join(VALID_STATUSES)}"
    return None


def build_event_filters(args, upcoming: bool = False) -> Tuple[List[str], List[Any], Optional[str]]:
    """
    Turn query-string filters into SQL conditions.

    Filters: location, category, min_price, max_price, from_date, to_date, status.
    Upcoming listings are forced to active events dated today or later.

    Returns:
        tuple: (conditions, params, error)
    """
    conditions: List[str] = []
    params: List[Any] = []

    if args.get("location"):
        conditions.append("e.location = %s")
        params.append(args["location"])
    if args.get("category"):
        conditions.append("e.category = %s")
        params.append(args["category"])

    for key, op in (("min_price", ">="), ("max_price", "<=")):
        if args.get(key) is not None and args.get(key) != "":
            try:
                value = int(args[key])
            except ValueError:
                return [], [], f"{key} must be an integer"
            if key == "min_price" and value <= 0:
                continue
            conditions.append(f"e.price {op} %s")
            params.append(value)

    for key, op in (("from_date", ">="), ("to_date", "<=")):
        if args.get(key):
            value = parse_date(args[key])
            if not value:
                return [], [], f"Invalid {key} format. Use YYYY-MM-DD."
            if key == "from_date" and upcoming and value <= date.today():
                continue
            conditions.append(f"e.event_date {op} %s")
            params.append(value)

    if upcoming:
        conditions.append("e.event_date >= %s")
        params.append(date.today())
        conditions.append("e.status = 'active'")
    elif args.get("status"):
        if args["status"] not in VALID_STATUSES:
            return [], [], f"status must be one of: {', '.join(VALID_STATUSES)}"
        conditions.append("e.status = %s")
        params.append(args["status"])

    return conditions, params, None


def _list_events(upcoming: bool) -> Tuple[Response, int]:
    conditions, params, error = build_event_filters(request.args, upcoming=upcoming)
    if error:
        return jsonify({"error": error}), 400

    page, limit, offset = parse_pagination(request.args)
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    order = "e.event_date ASC, e.event_time ASC" if upcoming else "e.created_at DESC"

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM events e {where};", params)
                total = cur.fetchone()["total"]

                cur.execute(
                    f"""
                    SELECT {EVENT_COLUMNS}
                    FROM events e
                    LEFT JOIN profiles o ON o.id = e.organizer_id
                    {where}
                    ORDER BY {order}
                    LIMIT %s OFFSET %s;
                    """,
                    params + [limit, offset],
                )
                events = [serialize_event(row) for row in cur.fetchall()]
    except Exception as e:
        logging.error(f"Database error listing events: {e}")
        return jsonify({"error": "Failed to retrieve events"}), 500

    return jsonify({"events": events, "pagination": pagination_meta(total, page, limit)}), 200


@events_bp.route("", methods=["GET"])
def list_events() -> Tuple[Response, int]:
    """
    Return events matching the filters, newest first.

    Query:
        location, category, min_price, max_price, from_date, to_date, status,
        page, items_per_page

    Returns:
        200: { "events": [...], "pagination": {total, page, limit, totalPages} }
        400: Bad filter value.
        500: Database error.
    """
    return _list_events(upcoming=False)


@events_bp.route("/upcoming", methods=["GET"])
def list_upcoming_events() -> Tuple[Response, int]:
    """
    Active events from today on, soonest first. Same filters as the full list
    except status.
    """
    return _list_events(upcoming=True)


@events_bp.route("/categories", methods=["GET"])
def list_categories() -> Tuple[Response, int]:
    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, name, description FROM event_categories ORDER BY name;")
                categories = [dict(row) for row in cur.fetchall()]
    except Exception as e:
        logging.error(f"Database error listing categories: {e}")
        return jsonify({"error": "Failed to retrieve categories"}), 500

    return jsonify(categories), 200


@events_bp.route("/<int:event_id>", methods=["GET"])
def get_event(event_id: int) -> Tuple[Response, int]:
    """
    Get a single event.

    Returns:
        200: { "event": {...}, "registrationCount": int,
               "userRegistration": {...} | null, "isOrganizer": bool }
        404: Event not found.
        500: Database error.
    """
    user_id, _ = optional_user_from_request()

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT {EVENT_COLUMNS}, c.description AS category_description
                    FROM events e
                    LEFT JOIN profiles o ON o.id = e.organizer_id
                    LEFT JOIN event_categories c ON c.name = e.category
                    WHERE e.id = %s;
                    """,
                    (event_id,),
                )
                event = cur.fetchone()
                if not event:
                    return jsonify({"error": "Event not found"}), 404

                cur.execute(
                    """
                    SELECT COUNT(*) AS confirmed FROM event_registrations
                    WHERE event_id = %s AND status = 'confirmed';
                    """,
                    (event_id,),
                )
                registration_count = cur.fetchone()["confirmed"]

                user_registration = None
                if user_id:
                    cur.execute(
                        """
                        SELECT id, event_id, user_id, attendees, total_price, status, payment_status,
                               created_at, updated_at
                        FROM event_registrations
                        WHERE event_id = %s AND user_id = %s AND status <> 'cancelled'
                        ORDER BY created_at DESC
                        LIMIT 1;
                        """,
                        (event_id, user_id),
                    )
                    row = cur.fetchone()
                    user_registration = serialize_registration(row) if row else None
    except Exception as e:
        logging.error(f"Database error getting event {event_id}: {e}")
        return jsonify({"error": "Failed to fetch event details"}), 500

    event_dict = serialize_event(event)
    return jsonify({
        "event": event_dict,
        "registrationCount": registration_count or 0,
        "userRegistration": user_registration,
        "isOrganizer": bool(user_id) and event_dict["organizer_id"] == user_id,
    }), 200


@events_bp.route("", methods=["POST"])
def create_event() -> Tuple[Response, int]:
    """
    Create an event; the caller becomes its organizer.

    Required: title, location, event_date, event_time, capacity.
    Optional: description, price (default 0), image_url, category.

    Returns:
        201: { "event": {...} }
        400: Validation error.
        401: Not authenticated.
        500: Server error.
    """
    user_id, _, err, code = verify_token_from_request()
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}

    required = ["title", "location", "event_date", "event_time", "capacity"]
    if any(data.get(k) in (None, "") for k in required):
        return jsonify({"error": f"{', '.join(required)} are required"}), 400

    data.setdefault("price", 0)
    data.pop("status", None)
    error = validate_event_fields(data)
    if error:
        return jsonify({"error": error}), 400

    sql = f"""
        WITH inserted AS (
            INSERT INTO events (
                title, description, location, event_date, event_time,
                price, capacity, image_url, category, organizer_id, status
            ) VALUES (
                %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, 'active'
            )
            RETURNING *
        )
        SELECT {EVENT_COLUMNS}
        FROM inserted e
        LEFT JOIN profiles o ON o.id = e.organizer_id;
    """

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, (
                    data["title"], data.get("description"), data["location"],
                    parse_date(data["event_date"]), parse_time(data["event_time"]),
                    data["price"], data["capacity"], data.get("image_url"),
                    data.get("category"), user_id,
                ))
                new_event = cur.fetchone()
    except Exception as e:
        logging.error(f"Database error creating event: {e}")
        return jsonify({"error": "Failed to create event"}), 500

    return jsonify({"event": serialize_event(new_event)}), 201


@events_bp.route("/<int:event_id>", methods=["PATCH"])
def update_event(event_id: int) -> Tuple[Response, int]:
    """
    Update an event.

    Permission: the event's organizer or an admin.
    Capacity cannot drop below the seats already taken.

    Returns:
        200: { "message": "Event updated successfully", "event": {...} }
        400: Validation error.
        401/403: Not authenticated / not allowed.
        404: Event not found.
    """
    user_id, role, err, code = verify_token_from_request()
    if err:
        return err, code

    data: Dict[str, Any] = request.get_json(silent=True) or {}
    fields = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}
    if not fields:
        return jsonify({"error": "No valid fields to update"}), 400

    error = validate_event_fields(fields)
    if error:
        return jsonify({"error": error}), 400

    if "event_date" in fields:
        fields["event_date"] = parse_date(fields["event_date"])
    if "event_time" in fields:
        fields["event_time"] = parse_time(fields["event_time"])

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT organizer_id, registered_attendees FROM events WHERE id = %s FOR UPDATE;",
                    (event_id,),
                )
                ev = cur.fetchone()
                if not ev:
                    return jsonify({"error": "Event not found"}), 404

                if ev["organizer_id"] != user_id and role != "admin":
                    return jsonify({"error": "Not authorized to update this event"}), 403

                if "capacity" in fields and fields["capacity"] < ev["registered_attendees"]:
                    return jsonify({
                        "error": f"capacity cannot be below the {ev['registered_attendees']} seats already taken"
                    }), 400

                set_clause = ", ".join(f"{k} = %s" for k in fields)
                set_clause += ", updated_at = CURRENT_TIMESTAMP"
                cur.execute(
                    f"""
                    WITH updated AS (
                        UPDATE events SET {set_clause} WHERE id = %s RETURNING *
                    )
                    SELECT {EVENT_COLUMNS}
                    FROM updated e
                    LEFT JOIN profiles o ON o.id = e.organizer_id;
                    """,
                    list(fields.values()) + [event_id],
                )
                updated = cur.fetchone()
    except Exception as e:
        logging.error(f"Database error updating event {event_id}: {e}")
        return jsonify({"error": "Failed to update event"}), 500

    return jsonify({"message": "Event updated successfully", "event": serialize_event(updated)}), 200


@events_bp.route("/<int:event_id>", methods=["DELETE"])
def delete_event(event_id: int) -> Tuple[Response, int]:
    """
    Delete an event if the caller is its organizer or an admin.
    """
    user_id, role, err, code = verify_token_from_request()
    if err:
        return err, code

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT organizer_id FROM events WHERE id = %s;", (event_id,))
                ev = cur.fetchone()
                if not ev:
                    return jsonify({"error": "Event not found"}), 404

                if ev["organizer_id"] != user_id and role != "admin":
                    return jsonify({"error": "Not authorized to delete this event"}), 403

                cur.execute("DELETE FROM events WHERE id = %s;", (event_id,))
                if cur.rowcount == 0:
                    return jsonify({"error": "Event not found or already deleted"}), 404
    except Exception as e:
        logging.error(f"Database error deleting event {event_id}: {e}")
        return jsonify({"error": "Failed to delete event"}), 500

    return jsonify({"message": "Event deleted successfully"}), 200


@events_bp.route("/<int:event_id>/registrations", methods=["GET"])
def get_event_registrations(event_id: int) -> Tuple[Response, int]:
    """
    Registrations for an event, with attendee name and phone.
    Restricted to the organizer and admins.

    Filters: ?status=, ?payment_status=; pagination: ?page=, ?items_per_page=
    """
    user_id, role, err, code = verify_token_from_request()
    if err:
        return err, code

    status = request.args.get("status")
    payment_status = request.args.get("payment_status")
    if status and status not in VALID_REGISTRATION_STATUSES:
        return jsonify({"error": "Invalid status filter"}), 400
    if payment_status and payment_status not in VALID_PAYMENT_STATUSES:
        return jsonify({"error": "Invalid payment_status filter"}), 400

    page, limit, offset = parse_pagination(request.args)

    conditions = ["r.event_id = %s"]
    params: List[Any] = [event_id]
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
                cur.execute("SELECT organizer_id FROM events WHERE id = %s;", (event_id,))
                event = cur.fetchone()
                if not event:
                    return jsonify({"error": "Event not found"}), 404
                if event["organizer_id"] != user_id and role != "admin":
                    return jsonify({"error": "Permission denied"}), 403

                cur.execute(f"SELECT COUNT(*) AS total FROM event_registrations r WHERE {where};", params)
                total = cur.fetchone()["total"]

                cur.execute(
                    f"""
                    SELECT r.id, r.event_id, r.user_id, r.attendees, r.total_price, r.status, r.payment_status,
                           r.created_at, r.updated_at,
                           p.full_name, p.phone, p.avatar_url
                    FROM event_registrations r
                    JOIN profiles p ON p.id = r.user_id
                    WHERE {where}
                    ORDER BY r.created_at DESC
                    LIMIT %s OFFSET %s;
                    """,
                    params + [limit, offset],
                )
                registrations = [serialize_registration(row) for row in cur.fetchall()]
    except Exception as e:
        logging.error(f"Database error listing registrations for event {event_id}: {e}")
        return jsonify({"error": "Failed to retrieve registrations"}), 500

    return jsonify({
        "registrations": registrations,
        "pagination": pagination_meta(total, page, limit),
    }), 200
