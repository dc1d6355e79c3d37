"""
approvals/__init__.py

Flask application factory for the Staged-Approval Workflow service.

Requirements:
- JSON API only; every request authenticates with HTTP Basic credentials.
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev and tests.
- Role gates are enforced server-side on every route.

Shared services are built once here and stored in app.extensions:
- "retry_policy": resilience.RetryPolicy (DB units of work, idempotent ERP calls)
- "erp_token_cache": erp.TokenCache
- "erp_client": erp.MedadClient
- "erp_sync": erp.ExternalSyncAdapter
- "notifier": notifications.NotificationDispatcher
"""

from __future__ import annotations

from functools import partial

import click
import requests
from flask import Flask

from .erp import ExternalSyncAdapter, MedadClient, MedadSettings, TokenCache, request_token
from .errors import register_error_handlers
from .extensions import db, login_manager, migrate
from .logging_setup import setup_logging
from .models import ROLES, Client, User
from .notifications import NotificationDispatcher
from .resilience import RetryPolicy
from .security import load_user_from_request

# Blueprint imports kept inside create_app() where possible to reduce import side effects.


def init_services(app: Flask, session: requests.Session | None = None) -> None:
    """Build the shared services from config. Tests call this again with a stub session."""
    retry_policy = RetryPolicy(
        max_attempts=app.config.get("RETRY_MAX_ATTEMPTS", 3),
        base_delay=app.config.get("RETRY_BASE_DELAY", 1.0),
    )

    settings = MedadSettings.from_config(app.config)
    session = session or requests.Session()
    token_cache = TokenCache(partial(request_token, session, settings), margin=settings.token_refresh_margin)
    erp_client = MedadClient(settings, token_cache=token_cache, session=session, retry_policy=retry_policy)

    app.extensions["retry_policy"] = retry_policy
    app.extensions["erp_token_cache"] = token_cache
    app.extensions["erp_client"] = erp_client
    app.extensions["erp_sync"] = ExternalSyncAdapter(erp_client)
    app.extensions["notifier"] = NotificationDispatcher(enabled=app.config.get("NOTIFICATIONS_ENABLED", True))


def create_app(config_object: str = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    setup_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)

    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        if not user_id.isdigit():
            return None
        return db.session.get(User, int(user_id))

    login_manager.request_loader(load_user_from_request)

    register_error_handlers(app)
    init_services(app)

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.erp import erp_bp
    from .blueprints.orders import orders_bp, quotations_bp
    from .blueprints.payments import payments_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(quotations_bp)
    app.register_blueprint(erp_bp)

    # ----------------------------------------------------------------------
    # CLI
    # ----------------------------------------------------------------------
    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (quick start; use `flask db upgrade` with migrations)."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("create-user")
    @click.argument("username")
    @click.argument("role", type=click.Choice(ROLES))
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    @click.option("--display-name", default=None)
    @click.option("--salesman-id", default=None, help="Medad salesman id copied onto new orders.")
    @click.option("--warehouse-no", default=None, help="Medad warehouse copied onto new orders.")
    def create_user_command(username, role, password, display_name, salesman_id, warehouse_no):
        """Create an API user."""
        if User.query.filter_by(username=username).first():
            raise click.ClickException(f"User {username} already exists.")

        user = User(
            username=username,
            role=role,
            display_name=display_name,
            medad_salesman_id=salesman_id,
            warehouse_no=warehouse_no,
            is_active=True,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"User {username} ({role}) created.")

    @app.cli.command("create-client")
    @click.argument("client_name")
    @click.option("--company", default=None)
    @click.option("--phone", default=None)
    @click.option("--tax-number", default=None)
    @click.option("--medad-customer-id", default=None)
    @click.option("--warehouse-no", default=None)
    def create_client_command(client_name, company, phone, tax_number, medad_customer_id, warehouse_no):
        """Create a client, optionally linked to a Medad customer."""
        client = Client(
            client_name=client_name,
            company_name=company,
            phone_number=phone,
            tax_number=tax_number,
            medad_customer_id=medad_customer_id,
            medad_warehouse_no=warehouse_no,
        )
        db.session.add(client)
        db.session.commit()
        click.echo(f"Client {client.id} ({client_name}) created.")

    return app
