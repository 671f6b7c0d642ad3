import os
import logging

import click
from flask import Flask, jsonify

from tierpay.config import config_by_name
from tierpay.extensions import db, migrate, login_manager, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from tierpay import models  # noqa: F401

    # --- Payment gateways + profile store (swappable in tests) ---
    from tierpay.services.gateway_service import init_gateways
    from tierpay.services.profile_service import init_profile_store
    init_gateways(app)
    init_profile_store(app)

    # --- Register blueprints ---
    from tierpay.blueprints.payments import payments_bp
    from tierpay.blueprints.webhooks import webhooks_bp
    from tierpay.blueprints.admin import admin_bp

    app.register_blueprint(payments_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)

    # --- Health check ---
    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200

    # --- Error handlers (JSON API) ---
    def _error(message, code, status):
        return jsonify({"success": False, "error": message, "errorCode": code}), status

    @app.errorhandler(400)
    def bad_request(e):
        return _error("Bad request", "VALIDATION_FAILED", 400)

    @app.errorhandler(403)
    def forbidden(e):
        return _error("Forbidden", "FORBIDDEN", 403)

    @app.errorhandler(404)
    def not_found(e):
        return _error("Not found", "NOT_FOUND", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error("Method not allowed", "VALIDATION_FAILED", 405)

    @app.errorhandler(429)
    def rate_limited(e):
        return _error("Too many requests. Please try again shortly.", "RATE_LIMITED", 429)

    @app.errorhandler(500)
    def server_error(e):
        return _error("Internal server error", "INTERNAL_ERROR", 500)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # API responses are never framed
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Payment state must never be served from a cache
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug and not app.testing:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("reconcile-payments")
    @click.option("--dry-run", is_flag=True, help="List stuck transactions without checking them.")
    @click.option("--limit", default=100, show_default=True, help="Max transactions per run.")
    def reconcile_payments(dry_run, limit):
        """Re-check transactions stuck in processing against their gateway.

        Usage:
            flask reconcile-payments
            flask reconcile-payments --dry-run
        """
        from tierpay.services.reconciliation_service import reconcile_stuck_transactions

        if dry_run:
            click.echo("[DRY RUN] No gateway calls or status changes.\n")

        summary = reconcile_stuck_transactions(dry_run=dry_run, limit=limit)

        click.echo("=" * 60)
        click.echo(f"  Checked:     {summary['checked']}")
        click.echo(f"  Completed:   {summary['completed']}")
        click.echo(f"  Failed:      {summary['failed']}")
        click.echo(f"  Timed out:   {summary['timed_out']}")
        click.echo(f"  Rescheduled: {summary['rescheduled']}")
        click.echo("=" * 60)
        for transaction_id in summary["transaction_ids"]:
            click.echo(f"  {transaction_id}")

    @app.cli.command("retry-tier-updates")
    def retry_tier_updates():
        """Re-apply tiers for completed payments whose tier write failed."""
        from tierpay.services.reconciliation_service import retry_tier_updates as _retry

        summary = _retry()
        click.echo(
            f"Checked {summary['checked']}, applied {summary['applied']}, "
            f"still failing {summary['failed']}"
        )

    @app.cli.command("verify-audit")
    @click.option("--transaction-id", default=None, help="Verify one transaction only.")
    def verify_audit(transaction_id):
        """Recompute the payment audit hash chain and report tampering."""
        from tierpay.services.audit_service import verify_chain

        problems = verify_chain(transaction_id)
        if not problems:
            click.echo("Audit trail intact.")
            return
        click.echo(f"Found {len(problems)} problem(s):")
        for problem in problems:
            click.echo(
                f"  tx {problem['transaction_id']} #{problem['sequence']}: "
                f"{problem['problem']}"
            )
        raise SystemExit(1)

    @app.cli.command("issue-token")
    @click.option("--user-id", required=True, help="Profile id to issue a token for.")
    def issue_token(user_id):
        """Issue a bearer token for a profile (development helper)."""
        from tierpay.models.profile import Profile
        from tierpay.services.auth_service import issue_auth_token

        profile = db.session.get(Profile, user_id)
        if profile is None:
            click.echo(f"ERROR: no profile with id {user_id}")
            raise SystemExit(1)
        click.echo(issue_auth_token(profile.id))
