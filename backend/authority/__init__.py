"""
authority/__init__.py — Flask application factory.

Pattern: create_app(config_name) creates and returns a configured Flask app.
         Nothing is initialised at import time — this enables:
           - Multiple isolated test app instances
           - Clean separation between app creation and app startup
           - `flask sweep-grants` to run without starting the server

Responsibilities:
  1. Load configuration from config_by_name[config_name]
  2. Configure logging for the backend.* loggers
  3. Initialise SQLAlchemy via init_app()
  4. Build the GrantAuthority and its collaborators once, into
     app.extensions["grant_authority"]
  5. Register the OAuth blueprint under /api/v1/oauth
  6. Register global error handlers (AppError → JSON, Exception → 500)
  7. Register CLI commands (sweep-grants, revoke-principal, revoke-client)

Note on model imports:
  All model classes are imported inside create_app() so that SQLAlchemy's
  metadata is populated before Alembic inspects it. They are not used
  directly here — the import side-effect is sufficient.
"""

from __future__ import annotations

import json
import logging
import traceback

import click
from flask import Flask, jsonify, request
from marshmallow import ValidationError
from sqlalchemy.orm import sessionmaker
from werkzeug.exceptions import HTTPException

from backend.config import config_by_name, validate_production_config

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ── Application factory ────────────────────────────────────────────────────

def create_app(config_name: str = "development") -> Flask:
    """
    Creates and returns a configured Flask application instance.

    Args:
        config_name: One of "development", "testing", "production".
                     Resolved via config_by_name in config.py.
                     Defaults to "development".

    Returns:
        A fully configured Flask app ready to serve requests.
    """
    app = Flask(__name__)

    # ── Configuration ──────────────────────────────────────────────────────
    config_class = config_by_name.get(config_name, config_by_name["development"])
    app.config.from_object(config_class)

    if config_name == "production":
        validate_production_config(app)  # raises ValueError if misconfigured

    _configure_logging(app)

    # ── Extensions ─────────────────────────────────────────────────────────
    # Import here (not at module top) to avoid circular imports.
    from backend.authority.extensions import db
    db.init_app(app)

    # ── Model registration + authority ─────────────────────────────────────
    # Import all models so that SQLAlchemy's MetaData is populated.
    # The imports are intentionally unused by name — side effect is the point.
    with app.app_context():
        from backend.authority.models import (  # noqa: F401
            authorization_code,
            oauth_client,
            refresh_token,
            revoked_token,
            user,
        )
        app.extensions["grant_authority"] = _build_authority(app, db.engine)

    # ── Blueprints ─────────────────────────────────────────────────────────
    _register_blueprints(app)

    # ── Error handlers ─────────────────────────────────────────────────────
    _register_error_handlers(app)
    _register_cors(app)

    # ── CLI ────────────────────────────────────────────────────────────────
    _register_cli(app)

    return app


def _configure_logging(app: Flask) -> None:
    """
    Applies LOG_LEVEL to app.logger and to the backend.* service loggers.

    A stream handler is attached to the package logger only if nothing else
    (a deployment's logging config) has already done so.
    """
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    app.logger.setLevel(level)

    package_logger = logging.getLogger("backend")
    package_logger.setLevel(level)
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        package_logger.addHandler(handler)


def _build_authority(app: Flask, engine):
    """
    Wires the authority's collaborators from app config.

    The authority never sees app.config; it gets one frozen AuthorityConfig.
    Store, revocation table and directory share one sessionmaker bound to
    the Flask-SQLAlchemy engine, each opening its own short transactions.
    """
    from backend.authority.services.audit import LoggingAuditor
    from backend.authority.services.cache import MemoryCache, RedisCache
    from backend.authority.services.cached_store import CachedGrantStore
    from backend.authority.services.clock import SystemClock
    from backend.authority.services.directory import BcryptCredentialVerifier, SqlPrincipalDirectory
    from backend.authority.services.grant_authority import GrantAuthority
    from backend.authority.services.grant_store import SqlGrantStore
    from backend.authority.services.rate_guard import RateGuard
    from backend.authority.services.revocation import RevocationIndex, SqlRevocationStore
    from backend.authority.settings import AuthorityConfig

    config = AuthorityConfig.from_flask_config(app.config)
    clock = SystemClock()
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    timeout_ms = int(app.config["STORE_TIMEOUT_SECONDS"] * 1000)

    if app.config.get("REDIS_URL"):
        cache = RedisCache(
            app.config["REDIS_URL"],
            socket_timeout=app.config["CACHE_TIMEOUT_SECONDS"],
        )
    else:
        app.logger.info("REDIS_URL not set; using the in-process cache")
        cache = MemoryCache()

    durable = (
        None
        if config.revocation_cache_durable
        else SqlRevocationStore(session_factory, statement_timeout_ms=timeout_ms)
    )

    return GrantAuthority(
        config=config,
        store=CachedGrantStore(
            SqlGrantStore(session_factory, statement_timeout_ms=timeout_ms),
            cache,
            clock,
        ),
        revocations=RevocationIndex(
            cache,
            durable,
            clock,
            cache_is_durable=config.revocation_cache_durable,
            fail_closed_at=config.fail_closed_sensitivity,
        ),
        guard=RateGuard(
            cache,
            clock,
            window_seconds=config.rate_limit_window_seconds,
            max_attempts=config.rate_limit_max_attempts,
            max_concurrent=config.rate_limit_max_concurrent,
        ),
        verifier=BcryptCredentialVerifier(
            session_factory,
            rounds=app.config["BCRYPT_LOG_ROUNDS"],
            statement_timeout_ms=timeout_ms,
        ),
        directory=SqlPrincipalDirectory(session_factory, statement_timeout_ms=timeout_ms),
        clock=clock,
        auditor=LoggingAuditor(),
    )


def _register_blueprints(app: Flask) -> None:
    """
    Registers route blueprints under the /api/v1 prefix.

    The url_prefix is set here so route files only specify the path
    relative to their resource (e.g. "/token").
    """
    from backend.authority.routes.oauth import oauth_bp

    app.register_blueprint(oauth_bp, url_prefix="/api/v1/oauth")


def _register_error_handlers(app: Flask) -> None:
    """
    Registers global error handlers.

    Handlers:
      AppError        → structured JSON error envelope with the correct HTTP status
      ValidationError → marshmallow schema errors as invalid_request (400),
                        first offending field only
      HTTPException   → routing errors (404, 405, ...) in the same envelope
      Exception       → generic internal_error (500); full traceback logged

    Stack traces never leave the server.
    """
    from backend.authority.errors import AppError, ErrorCode

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        """
        Converts an AppError raised anywhere in the request lifecycle
        (middleware, service, route) into the standard error envelope.

        Routes never catch AppError — they let it propagate here.
        """
        response = jsonify(error.to_dict())
        if error.http_status == 401:
            response.headers["WWW-Authenticate"] = f'Bearer error="{error.code}"'
        return response, error.http_status

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """
        Converts marshmallow ValidationError into the standard error envelope.

        Marshmallow raises ValidationError with a messages dict keyed by field
        name. Only the first error is returned ("one error, not many").
        """
        messages = error.messages  # e.g. {"code": ["Missing data for required field."]}

        field = None
        message = "Invalid input."
        if isinstance(messages, dict):
            for field_name, field_errors in messages.items():
                field = field_name if field_name != "_schema" else None
                if isinstance(field_errors, list):
                    message = field_errors[0] if field_errors else "Invalid value."
                else:
                    message = str(field_errors)
                break
        elif isinstance(messages, list) and messages:
            message = messages[0]

        response_body = {
            "error": {
                "code": ErrorCode.INVALID_REQUEST,
                "message": message,
            }
        }
        if field is not None:
            response_body["error"]["field"] = field

        return jsonify(response_body), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({
            "error": {
                "code": ErrorCode.INVALID_REQUEST,
                "message": error.description,
            }
        }), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        """
        Catches all unhandled exceptions and returns a generic 500 response.

        The full traceback is logged to the application logger. Stack traces
        never leave the server in the response body.
        """
        app.logger.error(
            "Unhandled exception: %s\n%s",
            str(error),
            traceback.format_exc(),
        )
        return jsonify({
            "error": {
                "code": ErrorCode.INTERNAL_ERROR,
                "message": "An unexpected error occurred. Please try again later.",
            }
        }), 500


def _register_cors(app: Flask) -> None:
    """
    Adds CORS headers for browser-based local development.

    Enabled only when DEBUG or TESTING is true so a single-page client served
    from another local port can call the token endpoint.
    """

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allow_all = bool(app.config.get("DEBUG") or app.config.get("TESTING"))

        if allow_all:
            response.headers["Access-Control-Allow-Origin"] = origin if origin else "*"
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"

        return response


def _register_cli(app: Flask) -> None:
    """
    Maintenance commands. Each one goes through the same GrantAuthority the
    HTTP surface uses, so audit logging and cache invalidation still apply.
    """

    @app.cli.command("sweep-grants")
    def sweep_grants():
        """Delete expired authorization codes, refresh tokens and revocations."""
        report = app.extensions["grant_authority"].sweep_expired()
        click.echo(json.dumps(report.to_dict()))

    @app.cli.command("revoke-principal")
    @click.argument("principal_id")
    def revoke_principal(principal_id: str):
        """Revoke every live refresh token of a user (logout everywhere)."""
        count = app.extensions["grant_authority"].revoke_principal_tokens(principal_id)
        click.echo(f"Revoked {count} refresh token(s) for principal {principal_id}.")

    @app.cli.command("revoke-client")
    @click.argument("client_id")
    def revoke_client(client_id: str):
        """Revoke every live refresh token issued to a client."""
        count = app.extensions["grant_authority"].revoke_client_tokens(client_id)
        click.echo(f"Revoked {count} refresh token(s) for client {client_id}.")
