import os

# Must be set before any event_portal module reads its configuration
os.environ["JWT_SECRET"] = "test_secret"
os.environ.setdefault("APP_ENV", "test")

import pytest
from unittest.mock import MagicMock

from event_portal.gateway.server import create_app
from event_portal.auth_service.utils import create_token

ROUTE_MODULES = [
    "event_portal.auth_service.routes",
    "event_portal.events_service.routes",
    "event_portal.events_service.organizers",
    "event_portal.registrations_service.routes",
    "event_portal.payments_service.routes",
]


@pytest.fixture
def app():
    app = create_app()
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def mock_db(mocker):
    """
    Mocks the database connection and cursor in every route module.
    """
    mock_conn = MagicMock()
    mock_cursor = MagicMock()

    # Context managers must not swallow exceptions
    mock_conn.__enter__.return_value = mock_conn
    mock_conn.__exit__.return_value = None
    mock_cursor.__enter__.return_value = mock_cursor
    mock_cursor.__exit__.return_value = None

    mock_conn.cursor.return_value = mock_cursor

    for module in ROUTE_MODULES:
        mocker.patch(f"{module}.get_db", return_value=mock_conn)

    return mock_conn, mock_cursor


@pytest.fixture
def auth_headers():
    def _headers(user_id: int = 1, role: str = "user"):
        return {"Authorization": f"Bearer {create_token(user_id, role)}"}
    return _headers


def executed_sql(mock_cursor):
    """All SQL strings passed to cursor.execute, in order."""
    return [c.args[0] for c in mock_cursor.execute.call_args_list]
