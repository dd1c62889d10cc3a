from __future__ import annotations

from typing import Any, Mapping, Optional

import click
from flask import Flask, jsonify
from werkzeug.middleware.proxy_fix import ProxyFix

from config import Config
from extensions import db, limiter, migrate
from routes.payment_routes import payments_bp
from utils.errors import register_error_handlers
from utils.settlement import reconcile_all_parents, recompute_parent_totals


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)

    # Load configuration from Config, then any explicit overrides (tests, scripts)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Trust reverse proxy headers for scheme/host when enabled
    if app.config.get("TRUST_PROXY", True):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)  # type: ignore[method-assign]

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    register_error_handlers(app)
    app.register_blueprint(payments_bp)

    @app.after_request
    def _set_security_headers(resp):
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
        resp.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        return resp

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "mobileMoneyEnv": app.config.get("MOBILE_MONEY_ENV")})

    @app.cli.command("reconcile-payers")
    @click.option("--parent-id", type=int, default=None, help="Repair a single parent account.")
    def reconcile_payers(parent_id: Optional[int]) -> None:
        """Recompute parent payment totals from completed payments."""
        rows = [recompute_parent_totals(parent_id)] if parent_id else reconcile_all_parents()
        for row in rows:
            click.echo(
                f"parent={row['parentId']} amount_paid={row['amountPaid']:.2f} "
                f"drift={row['drift']:+.2f} status={row['paymentStatus']}"
            )

    if app.config.get("AUTO_CREATE_TABLES"):
        with app.app_context():
            import models  # noqa: F401 - registers tables on db.metadata
            db.create_all()

    return app

