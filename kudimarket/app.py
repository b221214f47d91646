import logging

import click
from flask import Flask, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from kudimarket import __version__
from kudimarket.auth_mw import EXT_KEY as TOKENS_KEY
from kudimarket.auth_mw import TokenService
from kudimarket.config import Config
from kudimarket.db import db
from kudimarket.errors import KudiError
from kudimarket.routes import admin, auth, cart, delivery, orders, payment, products, seller
from kudimarket.services.accounts import create_admin_svc
from kudimarket.services.orders import sweep_timeouts
from kudimarket.services.payments import EXT_KEY as GATEWAY_KEY
from kudimarket.services.paystack import PaystackGateway
from kudimarket.utils.responses import err


def create_app(config=None, gateway=None) -> Flask:
    config = config or Config
    if isinstance(config, type):
        config = config()
    logging.basicConfig(
        level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config.validate()

    app = Flask(__name__)
    app.config.from_object(config)

    db.init_app(app)
    app.extensions[TOKENS_KEY] = TokenService.from_config(app.config)
    app.extensions[GATEWAY_KEY] = gateway or PaystackGateway.from_config(app.config)

    with app.app_context():
        db.create_all()

    for bp in (auth.bp, products.bp, cart.bp, orders.bp, seller.bp, delivery.bp,
               payment.bp, payment.webhooks_bp, admin.bp):
        app.register_blueprint(bp)

    _register_error_handlers(app)
    _register_cli(app)

    @app.get("/")
    def index():
        return {"service": "kudimarket", "status": "ok", "version": __version__}

    @app.get("/health")
    def health():
        return jsonify(ok=True), 200

    return app


def _register_error_handlers(app: Flask):
    @app.errorhandler(KudiError)
    def handle_kudi_error(e: KudiError):
        if e.status_code >= 500:
            current_app.logger.error("%s: %s %s", e.code, e.message, e.details)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(e: SQLAlchemyError):
        db.session.rollback()
        current_app.logger.exception("unhandled database error")
        return err("internal_error", 500, message="internal server error")

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return err(e.name.lower().replace(" ", "_"), e.code, message=e.description)


def _register_cli(app: Flask):
    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("database ready")

    @app.cli.command("create-admin")
    @click.option("--username", default="admin")
    @click.option("--email", required=True)
    @click.password_option()
    def create_admin(username, email, password):
        """Create an administrator account."""
        try:
            admin_user = create_admin_svc(username, email, password)
        except KudiError as e:
            raise click.ClickException(e.message)
        click.echo(f"admin {admin_user.username} created (id {admin_user.id})")

    @app.cli.command("sweep-orders")
    def sweep_orders():
        """Infer stale deliveries and auto-complete unconfirmed orders."""
        counts = sweep_timeouts(
            current_app.config["DELIVERY_INFERENCE_DAYS"],
            current_app.config["AUTO_CONFIRM_DAYS"],
        )
        click.echo(", ".join(f"{k}={v}" for k, v in counts.items()))
