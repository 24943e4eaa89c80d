"""
PostgreSQL connection helper.
Provides get_db() for use by services.
"""

import logging

import psycopg2
from psycopg2.extras import DictCursor

from event_portal import config


def get_db():
    """
    Returns a new psycopg2 connection with dictionary-based row access.

    Usage:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(...)

    The `with conn` block commits on success and rolls back on error,
    so a multi-statement block is one transaction.

    Returns:
        psycopg2.extensions.connection: A connection object with DictCursor factory.

    Raises:
        RuntimeError: If DATABASE_URL is not configured.
        psycopg2.Error: If connection fails.
    """
    if not config.DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not set. Please set the environment variable.")

    try:
        conn = psycopg2.connect(config.DATABASE_URL)
        # Rows come back as dictionaries (e.g., {"id": 1, "title": "..."})
        conn.cursor_factory = DictCursor
        return conn
    except Exception as e:
        logging.error(f"Error connecting to database: {e}")
        raise
