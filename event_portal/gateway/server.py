"""
API gateway: combines the auth, events, registrations and payments blueprints.
This is the local entrypoint for development.
"""

import logging

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from event_portal import config

# Basic console logging during API requests
logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(asctime)s - %(message)s")


def create_app() -> Flask:
    """
    Application factory for creating the Flask app.

    Returns:
        Flask: The configured Flask application.
    """
    app = Flask(__name__)

    CORS(app, resources={
        r"/api/*": {
            "origins": config.cors_origins(),
            "methods": ["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "Authorization"],
            "expose_headers": ["Content-Type", "Authorization"],
            "supports_credentials": True
        }
    })

    # --- REGISTER BLUEPRINTS ---
    from event_portal.auth_service.routes import auth_bp
    from event_portal.events_service.routes import events_bp
    from event_portal.events_service.organizers import organizers_bp
    from event_portal.registrations_service.routes import registrations_bp
    from event_portal.payments_service.routes import payments_bp

    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(events_bp, url_prefix="/api/events")
    app.register_blueprint(organizers_bp, url_prefix="/api/organizers")
    app.register_blueprint(registrations_bp, url_prefix="/api/registrations")
    app.register_blueprint(payments_bp, url_prefix="/api/payments")

    logging.info("All blueprints registered successfully.")

    # --- JSON ERRORS ---
    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(Exception)
    def unhandled_error(error: Exception):
        logging.exception(f"Unhandled error: {error}")
        return jsonify({"error": "An unexpected error occurred"}), 500

    # --- BASIC HEALTH CHECKPOINTS ---
    @app.route("/")
    def ping():
        """
        Root URL for simple 'online' check.
        """
        return jsonify({"status": "gateway_ok"}), 200

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="0.0.0.0", port=config.GATEWAY_PORT, debug=not config.is_production())
