from __future__ import annotations

import logging

import click
from flask import Flask, jsonify

from lifeline.core.auth import auth_bp
from lifeline.core.config import Config
from lifeline.core.extensions import db, login_manager, migrate
from lifeline.core.models import User, seed_demo_data
from lifeline.core.scheduler import init_scheduler
from lifeline.lines import lines_bp

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or Config)

    configure_logging(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(lines_bp)

    register_cli(app)
    register_error_handlers(app)
    init_scheduler(app)
    return app


def configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    package_logger = logging.getLogger("lifeline")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(401)
    def unauthorized(_error):
        return jsonify({"error": "No autenticado"}), 401

    @app.errorhandler(403)
    def forbidden(_error):
        return jsonify({"error": "Permiso denegado"}), 403

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Recurso no encontrado"}), 404


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed demo users and life lines."""
        if reset:
            db.drop_all()
            db.create_all()
        if not User.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing users found.")

    @app.cli.command("alerts-scan")
    @click.option("--manual", is_flag=True, help="Bypass the per-type throttle window.")
    def alerts_scan(manual: bool) -> None:
        """Generate expiration alerts."""
        from lifeline.lines.alerts import run_manual_alert_scan, run_scheduled_alert_scan

        result = run_manual_alert_scan() if manual else run_scheduled_alert_scan()
        if result.skipped:
            click.echo("Alert scan skipped: another scan is running.")
            return
        click.echo(f"evaluated={result.evaluated} generated={result.generated}")

    @app.cli.command("status-refresh")
    @click.option("--force", is_flag=True, help="Report every evaluated record, not only changes.")
    def status_refresh(force: bool) -> None:
        """Reconcile stored record status with the expiration date."""
        from lifeline.lines.services import refresh_record_statuses

        result = refresh_record_statuses(force=force)
        click.echo(
            f"evaluated={result.evaluated} updated={result.updated} skipped_terminal={result.skipped_terminal}"
        )
        for change in result.changes:
            click.echo(f"  {change['codigo']}: {change['old_status']} -> {change['new_status']}")

    @app.cli.command("auth-codes-cleanup")
    def auth_codes_cleanup() -> None:
        """Expire pending authorization codes past their deadline."""
        from lifeline.lines.authorization import cleanup_expired_codes

        click.echo(f"expired={cleanup_expired_codes()}")

    @app.cli.command("movements-purge")
    @click.option("--days", type=int, required=True, help="Delete movement entries older than this many days.")
    def movements_purge(days: int) -> None:
        """Retention purge of the movement log."""
        from lifeline.lines.movements import purge_movements_older_than

        try:
            deleted = purge_movements_older_than(days)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--days") from exc
        click.echo(f"deleted={deleted}")


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized_api():
    return jsonify({"error": "No autenticado"}), 401
