from flask import Flask, jsonify
from flask_cors import CORS
import os
import logging

from extensions import limiter
from app_config import Config
from auth_routes import auth_bp
from errors import BookingError
from models import db
from routes import addresses_bp, bookings_bp, contractor_bp, admin_bp, pricing_bp
from scheduler import init_scheduler

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Production startup checks
# ---------------------------------------------------------------------------
_startup_logger = logging.getLogger("lawnly.startup")

_CRITICAL_ENV_VARS = [
    "JWT_SECRET",
    "SECRET_KEY",
    "DATABASE_URL",
]

_RECOMMENDED_ENV_VARS = [
    "STRIPE_SECRET_KEY",
    "RESEND_API_KEY",
    "CORS_ORIGINS",
]


def _check_environment():
    if os.environ.get("FLASK_ENV", "development") == "development":
        return
    missing_critical = [v for v in _CRITICAL_ENV_VARS if not os.environ.get(v)]
    missing_recommended = [v for v in _RECOMMENDED_ENV_VARS if not os.environ.get(v)]
    if missing_critical:
        _startup_logger.critical(
            "MISSING CRITICAL ENV VARS (app may not work correctly): %s",
            ", ".join(missing_critical),
        )
    if missing_recommended:
        _startup_logger.warning(
            "Missing recommended env vars: %s",
            ", ".join(missing_recommended),
        )
    if not os.environ.get("SENTRY_DSN"):
        _startup_logger.warning("SENTRY_DSN is not set -- error monitoring is disabled.")


def _init_sentry():
    """Sentry error monitoring (optional -- only active when SENTRY_DSN is set)."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.1,
    )


def _allowed_origins(app):
    origins = app.config.get("CORS_ORIGINS") or "*"
    if isinstance(origins, str):
        if origins.strip() == "*":
            if not app.config.get("DEBUG") and not app.config.get("TESTING"):
                _startup_logger.critical(
                    "CORS_ORIGINS is '*' in a non-development environment; set an explicit list."
                )
            return "*"
        return [o.strip() for o in origins.split(",") if o.strip()]
    return origins


def create_app(config_object=Config):
    """Application factory. ``gunicorn 'server:create_app()'``"""
    _check_environment()
    if not getattr(config_object, "TESTING", False):
        _init_sentry()

    app = Flask(__name__)
    app.config.from_object(config_object)

    # -----------------------------------------------------------------------
    # Extensions
    # -----------------------------------------------------------------------
    CORS(app, resources={r"/api/*": {"origins": _allowed_origins(app)}})
    db.init_app(app)
    limiter.init_app(app)

    # -----------------------------------------------------------------------
    # Error handlers
    # -----------------------------------------------------------------------
    @app.errorhandler(BookingError)
    def booking_error_handler(e):
        if e.status_code >= 500:
            logger.error("%s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(429)
    def ratelimit_handler(e):
        retry_after = e.get_headers().get("Retry-After") if hasattr(e, "get_headers") else None
        retry_after_seconds = int(retry_after) if retry_after else 60
        return jsonify({
            "error": "Too many requests. Please try again later.",
            "retry_after": retry_after_seconds,
        }), 429

    @app.errorhandler(404)
    def not_found_handler(e):
        return jsonify({"error": "Not found", "code": "NotFound"}), 404

    # -----------------------------------------------------------------------
    # Blueprints
    # -----------------------------------------------------------------------
    app.register_blueprint(auth_bp)
    app.register_blueprint(addresses_bp)
    app.register_blueprint(bookings_bp)
    app.register_blueprint(contractor_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(pricing_bp)

    @app.route("/api/health", methods=["GET"])
    @limiter.exempt
    def health_check():
        """Health check endpoint (exempt from rate limiting)"""
        return jsonify({"status": "healthy", "service": "Lawnly API"}), 200

    # -----------------------------------------------------------------------
    # Security headers
    # -----------------------------------------------------------------------
    @app.after_request
    def set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'"
        if not app.config.get("DEBUG") and not app.config.get("TESTING"):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    with app.app_context():
        db.create_all()

    # Background deadlines (auto-release, price-change expiry, ledger retries)
    app.extensions["lawnly_scheduler"] = init_scheduler(app)

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    application = create_app()
    application.run(host="0.0.0.0", port=application.config["PORT"], debug=application.config["DEBUG"])
