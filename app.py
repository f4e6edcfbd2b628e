import click
from flask import Flask, request, g, jsonify
from flask_migrate import Migrate

from config import Config
from errors import PortalError
from routes import health_bp, auth_bp, mfa_bp, registration_bp, admin_bp, security_bp
from services.passwords import send_expiry_reminders

from models import db
from utils.seed import seed_roles
from utils.auth_context import load_current_user
from security.csrf import require_csrf


CSRF_EXEMPT_PATHS = {
    "/auth/login",
    "/auth/login/code",
    "/auth/login/mfa",
    "/auth/login/password",
    "/register/code",
    "/register/verify",
    "/health",
}


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(mfa_bp)
    app.register_blueprint(registration_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(security_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Seed default roles at startup (safe & idempotent)
    with app.app_context():
        if app.config.get("CREATE_TABLES_ON_START"):
            db.create_all()
        seed_roles()

    @app.errorhandler(PortalError)
    def _portal_error(exc):
        if exc.status >= 500:
            app.logger.error("%s: %s", exc.code, exc.message)
        return jsonify(error=exc.message, code=exc.code, **exc.details), exc.status

    @app.before_request
    def _load_user():
        load_current_user()

    @app.before_request
    def _csrf_protect():
        # Only protect state-changing requests
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Exempt auth bootstrap endpoints
            if request.path in CSRF_EXEMPT_PATHS:
                return None

            # Only enforce CSRF if user is already authenticated (cookie session)
            if getattr(g, "user", None) is not None:
                require_csrf()

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    return app


def register_cli(app):
    @app.cli.command("send-expiry-reminders")
    def send_expiry_reminders_command():
        """Mail accounts whose password expires within the reminder window."""
        result = send_expiry_reminders()
        click.echo(f"{result['sent']} sent, {result['failed']} failed")


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
