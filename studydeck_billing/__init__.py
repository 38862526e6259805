import os
import logging

import click
from flask import Flask, jsonify
from werkzeug.security import generate_password_hash

from studydeck_billing.config import config_by_name
from studydeck_billing.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None, provider_gateway=None):
    """Application factory.

    `provider_gateway` lets tests (or other embedders) inject the payment
    provider gateway; otherwise one is built from config, once per app.
    """

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
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from studydeck_billing import models  # noqa: F401

    # --- Payment provider gateway (one per app) ---
    from studydeck_billing.services.provider_gateway import ProviderGateway
    app.extensions["provider_gateway"] = (
        provider_gateway or ProviderGateway.from_config(app.config)
    )

    # --- Entitlement middleware ---
    from studydeck_billing.middleware.entitlement import init_entitlement_middleware
    init_entitlement_middleware(app)

    # --- Register blueprints ---
    from studydeck_billing.blueprints.auth import auth_bp
    from studydeck_billing.blueprints.admin import admin_bp
    from studydeck_billing.blueprints.subscription import subscription_bp
    from studydeck_billing.blueprints.cron import cron_bp
    from studydeck_billing.blueprints.health import health_bp
    from studydeck_billing.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(subscription_bp)
    app.register_blueprint(cron_bp)
    app.register_blueprint(health_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF: raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)
    # Cron and health are called by machines with a shared secret / no session
    csrf.exempt(cron_bp)
    csrf.exempt(health_bp)
    # JSON subscription API uses the Origin/Referer allow-list instead
    csrf.exempt(subscription_bp)

    # --- Error handlers (JSON API) ---
    def _json_error(message, status):
        return jsonify({"error": message}), status

    @app.errorhandler(400)
    def bad_request(e):
        return _json_error("Bad request", 400)

    @app.errorhandler(401)
    def unauthorized(e):
        return _json_error("Unauthorized", 401)

    @app.errorhandler(403)
    def forbidden(e):
        return _json_error("Forbidden", 403)

    @app.errorhandler(404)
    def not_found(e):
        return _json_error("Not found", 404)

    @app.errorhandler(429)
    def too_many_requests(e):
        return _json_error("Too many requests", 429)

    @app.errorhandler(500)
    def server_error(e):
        return _json_error("Internal server error", 500)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Control referrer information
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Permissions Policy (restrict browser features)
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=(self)"
        )
        # JSON API: nothing should ever be framed or run scripts
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'; base-uri 'none';"
        )
        response.headers["Cache-Control"] = "no-store"
        # Strict Transport Security (only in production)
        if not app.debug:
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

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@studydeck.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    def seed_admin(email, password):
        """Create (or promote) an admin user with a free subscription record.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from studydeck_billing.models.user import User
        from studydeck_billing.services.subscription_store import get_record

        admin = User.query.filter_by(email=email).first()
        if admin:
            admin.is_admin = True
            click.echo(f"Admin user already exists: {email}")
        else:
            admin = User(
                email=email,
                password_hash=generate_password_hash(password),
                full_name="Admin",
                is_admin=True,
            )
            db.session.add(admin)
            db.session.flush()
            click.echo(f"Created admin user: {email}")

        get_record(admin.id)
        db.session.commit()

    @app.cli.command("sync-subscriptions")
    @click.option("--limit", type=int, default=None, help="Max records this run.")
    def sync_subscriptions(limit):
        """Reconcile local subscription records against Stripe.

        Usage:
            flask sync-subscriptions
            flask sync-subscriptions --limit 50
        """
        from studydeck_billing.services.reconciliation_service import run_subscription_sync

        summary = run_subscription_sync(limit=limit)
        if summary.get("skipped"):
            click.echo("Skipped: a sync started too recently.")
            return
        for result in summary["results"]:
            marker = "✓" if result["ok"] else "✗"
            click.echo(f"  {marker} {result['userId']}: {result['outcome']}")
        click.echo(
            f"Done: {summary['processed']} processed, {summary['synced']} synced, "
            f"{summary['changed']} changed, {summary['failed']} failed."
        )

    @app.cli.command("normalize-subscriptions")
    def normalize_subscriptions():
        """Move long-expired subscriptions to free."""
        from studydeck_billing.services.reconciliation_service import normalize_expired_subscriptions

        summary = normalize_expired_subscriptions()
        if summary.get("skipped"):
            click.echo("Skipped: normalization ran too recently.")
            return
        click.echo(f"Done: {summary['normalized']} normalized, {summary['failed']} failed.")

    @app.cli.command("send-subscription-reminders")
    @click.option("--dry-run", is_flag=True, help="Show what would be sent without actually sending.")
    def send_subscription_reminders(dry_run):
        """Send renewal / trial-ending reminders (3 and 7 days before period end).

        Usage:
            flask send-subscription-reminders
            flask send-subscription-reminders --dry-run
        """
        from studydeck_billing.services.reminder_service import process_reminders

        if dry_run:
            click.echo("[DRY RUN] No emails will actually be sent.\n")
        summary = process_reminders(dry_run=dry_run)
        if summary.get("skipped"):
            click.echo("Skipped: reminders ran too recently.")
            return
        for result in summary["results"]:
            verb = "WOULD SEND" if dry_run else "SENT"
            state = verb if result["sent"] else "already sent"
            click.echo(f"  {result['key']}: {state}")
        click.echo(
            f"{'[DRY RUN] ' if dry_run else ''}Done: {summary['sent']} reminder(s) "
            f"{'would be ' if dry_run else ''}sent."
        )

    @app.cli.command("reset-subscription")
    @click.option("--email", required=True, help="User email")
    @click.option("--reset-trial", is_flag=True, help="Also clear the trial-consumed marker.")
    def reset_subscription_cmd(email, reset_trial):
        """Reset a user's subscription record to free (row kept)."""
        from studydeck_billing.models.user import User
        from studydeck_billing.services.audit_service import record_audit
        from studydeck_billing.services.subscription_store import get_record, reset_subscription

        user = User.query.filter_by(email=email.lower().strip()).first()
        if user is None:
            click.echo(f"No user with email {email}")
            raise SystemExit(1)

        reset_subscription(get_record(user.id), reset_trial=reset_trial)
        db.session.commit()
        record_audit(
            "subscription.admin_reset",
            user_id=user.id,
            metadata={"source": "cli", "reset_trial": reset_trial},
        )
        click.echo(f"Reset subscription for {email}{' (trial reset)' if reset_trial else ''}.")

    @app.cli.command("replay-audit-queue")
    def replay_audit_queue():
        """Move queued audit entries from the fallback file into the database."""
        from studydeck_billing.services.audit_service import replay_fallback_queue

        replayed, remaining = replay_fallback_queue()
        click.echo(f"Replayed {replayed} audit entr{'y' if replayed == 1 else 'ies'}, {remaining} remaining.")
