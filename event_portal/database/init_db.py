"""
Apply schema.sql and run a quick integrity check.

Creates the tables if needed, then performs a CRUD cycle on the
registration path (profile -> event -> registration -> payment) to make sure
foreign keys and the capacity / payment CHECK constraints behave. All test
rows are removed afterwards.

Usage:
    python -m event_portal.database.init_db
"""

import os
import sys
from datetime import date, time

from event_portal.database.db_connection import get_db

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "schema.sql")

TABLES = [
    "profiles",
    "user_settings",
    "event_categories",
    "events",
    "event_registrations",
    "payments",
    "registration_verification_codes",
]


def apply_schema(conn) -> None:
    with open(SCHEMA_PATH, encoding="utf-8") as f:
        ddl = f.read()
    with conn.cursor() as cur:
        cur.execute(ddl)
    conn.commit()


def main() -> int:
    print("--- Initialising Event Portal database ---")

    profile_id = None
    event_id = None
    conn = None
    ok = True

    try:
        conn = get_db()
        apply_schema(conn)
        print("Schema applied.")

        cur = conn.cursor()
        cur.execute("SELECT NOW();")
        print(f"Connected! Database server time: {cur.fetchone()[0]}")

        print("\nChecking tables...")
        for t in TABLES:
            cur.execute("SELECT to_regclass(%s);", (t,))
            found = cur.fetchone()[0]
            print(f" - {t}: {'Found' if found else 'MISSING'}")
            ok = ok and bool(found)

        print("\nInserting test data...")
        cur.execute("""
            INSERT INTO profiles (email, password_hash, full_name, phone)
            VALUES ('init-check@example.com', 'hashed_pw', 'Init Check', '+237670000000')
            RETURNING id;
        """)
        profile_id = cur.fetchone()[0]

        cur.execute("""
            INSERT INTO events (title, location, event_date, event_time, price, capacity, organizer_id)
            VALUES ('Init Check', 'Douala', %s, %s, 1000, 1, %s)
            RETURNING id;
        """, (date.today(), time(18, 0), profile_id))
        event_id = cur.fetchone()[0]

        # Seat reservation must refuse to overbook
        cur.execute("""
            UPDATE events SET registered_attendees = registered_attendees + 2
            WHERE id = %s AND registered_attendees + 2 <= capacity;
        """, (event_id,))
        if cur.rowcount != 0:
            raise Exception("Capacity guard did not hold.")

        cur.execute("""
            INSERT INTO event_registrations (event_id, user_id, attendees, total_price)
            VALUES (%s, %s, 1, 1000) RETURNING id, status, payment_status;
        """, (event_id, profile_id))
        reg = cur.fetchone()
        print(f"Registration {reg[0]} created as {reg[1]}/{reg[2]}")
        conn.commit()

        print("\nDatabase check PASSED." if ok else "\nDatabase check FAILED: missing tables.")

    except Exception as e:
        ok = False
        print("\nDatabase check FAILED:")
        print(f" Error: {e}")
        if conn:
            conn.rollback()

    finally:
        if conn:
            print("\nCleaning up test data...")
            try:
                with conn.cursor() as cur:
                    if event_id:
                        cur.execute("DELETE FROM events WHERE id = %s;", (event_id,))
                    if profile_id:
                        cur.execute("DELETE FROM profiles WHERE id = %s;", (profile_id,))
                conn.commit()
                print("Cleanup complete.")
            except Exception as cleanup_error:
                print(f"Cleanup FAILED. Database may contain leftover test data: {cleanup_error}")
                conn.rollback()
            finally:
                conn.close()

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
