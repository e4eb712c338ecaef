import atexit

from flask import Flask, g, jsonify, request
from config import Config
from routes import health_bp, auth_bp, two_factor_bp, sessions_bp, lockout_bp

from models import db
from flask_migrate import Migrate
from werkzeug.middleware.proxy_fix import ProxyFix
from security.errors import AuthError, LockedError, RateLimitedError
from security.two_factor import init_two_factor
from utils.audit import log_event
from utils.seed import grant_role, seed_roles
from utils.auth_context import add_session_headers, load_current_user
from utils.logger import get_logger, set_request_id
from utils.sweeper import PeriodicSweeper

logger = get_logger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    proxies = app.config.get("TRUSTED_PROXY_COUNT", 0)
    if proxies:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=proxies)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(two_factor_bp)
    app.register_blueprint(sessions_bp)
    app.register_blueprint(lockout_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    two_factor = init_two_factor(app)

    # Seed default roles at startup (safe & idempotent)
    with app.app_context():
        if app.config.get("TESTING"):
            db.create_all()
        seed_roles()

    @app.before_request
    def _bind_request():
        g.request_id = set_request_id(request.headers.get("X-Request-ID"))

    @app.before_request
    def _load_user():
        load_current_user()

    @app.errorhandler(AuthError)
    def _auth_error(exc: AuthError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.path, code=exc.error_code, error=exc.message)
        resp = jsonify(exc.to_dict())
        resp.status_code = exc.status_code
        if isinstance(exc, (LockedError, RateLimitedError)):
            resp.headers["Retry-After"] = str(exc.retry_after)
        return resp

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        rid = getattr(g, "request_id", None)
        if rid:
            resp.headers["X-Request-ID"] = rid
        return add_session_headers(resp)

    register_cli(app)

    if app.config.get("ENABLE_BACKGROUND_SWEEPS") and not app.config.get("TESTING"):
        start_sweepers(app, two_factor.challenge_store)

    return app


def start_sweepers(app, challenge_store):
    def _sweep_sessions():
        with app.app_context():
            swept = sweep_expired()
            prune_terminated(app.config["SESSION_RETENTION_DAYS"])
            return swept

    sweepers = [
        PeriodicSweeper("email-challenges", app.config["CHALLENGE_SWEEP_INTERVAL_SECONDS"],
                        challenge_store.sweep_expired),
        PeriodicSweeper("sessions", app.config["SESSION_SWEEP_INTERVAL_SECONDS"], _sweep_sessions),
    ]
    for sweeper in sweepers:
        sweeper.start()
    app.extensions["sweepers"] = sweepers
    atexit.register(stop_sweepers, sweepers)
    return sweepers


def stop_sweepers(sweepers):
    for sweeper in sweepers:
        sweeper.stop()

#-------------------------
import json

import click
from security import lockout
from security.credentials import create_account, find_account
from security.errors import AuthError
from security.session import prune_terminated, sweep_expired
from utils.settings import set_setting

def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = find_account(email)
        if not user:
            raise click.ClickException("User not found")

        if grant_role(user, "ADMIN"):
            db.session.commit()
            log_event("ROLE_GRANTED", user_id=user.id, metadata={"role": "ADMIN", "via": "cli"})
            click.echo(f"{user.email} promoted to ADMIN")
        else:
            click.echo(f"{user.email} is already ADMIN")

    @app.cli.command("create-user")
    @click.argument("email")
    @click.password_option()
    @click.option("--full-name", default=None)
    @click.option("--admin", is_flag=True, help="Also grant the ADMIN role.")
    def create_user(email, password, full_name, admin):
        """Create an account (password must satisfy the current policy)."""
        roles = ["USER", "ADMIN"] if admin else ["USER"]
        try:
            user = create_account(email, password, full_name=full_name, roles=roles)
        except AuthError as exc:
            raise click.ClickException(f"{exc.message} {exc.details or ''}".strip())
        click.echo(f"Created user {user.email} (id={user.id})")

    @app.cli.command("sweep-sessions")
    def sweep_sessions():
        """Terminate expired sessions and delete ones ended past the retention window."""
        click.echo(f"Swept {sweep_expired()} expired sessions")
        click.echo(f"Pruned {prune_terminated(app.config['SESSION_RETENTION_DAYS'])} old sessions")

    @app.cli.command("unlock-account")
    @click.argument("email")
    def unlock_account(email):
        """Clear the lockout of an account and its last failing IP."""
        user = find_account(email)
        if not user:
            raise click.ClickException("User not found")
        try:
            lockout.unlock_account(user.id, None)
        except AuthError as exc:
            raise click.ClickException(exc.message)
        click.echo(f"{user.email} unlocked")

    @app.cli.command("set-setting")
    @click.argument("key")
    @click.argument("value")
    def set_setting_cmd(key, value):
        """Store a system setting; VALUE is parsed as JSON when possible."""
        if key not in app.config["SYSTEM_SETTINGS_DEFAULTS"]:
            raise click.ClickException(f"Unknown setting: {key}")
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = value
        set_setting(key, parsed)
        click.echo(f"{key} = {json.dumps(parsed)}")

#-------------------------




if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
