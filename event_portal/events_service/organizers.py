"""
Organizer directory: profiles that have created events, with their event counts.
"""

import logging
from typing import Tuple

from flask import Blueprint, request, jsonify, Response

from event_portal.database.db_connection import get_db
from event_portal.pagination import parse_pagination, pagination_meta

organizers_bp = Blueprint("organizers", __name__)


@organizers_bp.route("", methods=["GET"])
def list_organizers() -> Tuple[Response, int]:
    """
    List organizers, newest first.

    Query:
        search (str): case-insensitive match on full name.
        page (int), limit (int)

    Returns:
        200: { "organizers": [...], "pagination": {total, page, limit, totalPages} }
        500: Database error.
    """
    page, limit, offset = parse_pagination(request.args, size_key="limit")
    search = (request.args.get("search") or "").strip()

    where = "WHERE EXISTS (SELECT 1 FROM events e WHERE e.organizer_id = p.id)"
    params: list = []
    if search:
        where += " AND p.full_name ILIKE %s"
        params.append(f"%{search}%")

    try:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) AS total FROM profiles p {where};", params)
                total = cur.fetchone()["total"]

                cur.execute(
                    f"""
                    SELECT p.id, p.full_name, p.avatar_url, p.created_at,
                           (SELECT COUNT(*) FROM events e WHERE e.organizer_id = p.id) AS event_count
                    FROM profiles p
                    {where}
                    ORDER BY p.created_at DESC
                    LIMIT %s OFFSET %s;
                    """,
                    params + [limit, offset],
                )
                organizers = [dict(row) for row in cur.fetchall()]
                for o in organizers:
                    if o.get("created_at"):
                        o["created_at"] = o["created_at"].isoformat()
    except Exception as e:
        logging.error(f"Error fetching organizers: {e}")
        return jsonify({"error": "Failed to fetch organizers"}), 500

    return jsonify({"organizers": organizers, "pagination": pagination_meta(total, page, limit)}), 200
