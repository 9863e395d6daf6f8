"""
Application Factory for selfnear

Implements the Flask application factory pattern with:
- Blueprint registration
- Security configuration (TLS, rate limiting)
- Attempt log and audit logger initialization
- JSON error handling
"""

import logging
from typing import Optional

from flask import Flask, jsonify, request

from selfnear import database
from selfnear.audit_logger import init_audit_logger
from selfnear.config import AppConfig, get_config, validate_config
from selfnear.errors import create_verification_error, VerificationErrorCode
from selfnear.security import init_security
from selfnear.services import Services, build_services

logger = logging.getLogger(__name__)


def create_app(config_override: Optional[AppConfig] = None, services: Optional[Services] = None) -> Flask:
    """
    Create and configure the Flask application using the factory pattern.

    Args:
        config_override: Optional configuration override for testing
        services: Optional pre-built collaborators; built from config when omitted

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    # Load configuration
    cfg = config_override or get_config()
    validate_config(cfg)
    app.config["APP_CONFIG"] = cfg
    app.secret_key = cfg.get("FLASK_SECRET_KEY")

    limiter = init_security(app, cfg)
    audit_logger = init_audit_logger()

    try:
        database.init_database(cfg["DATABASE_URL"])
        logger.info("✅ Attempt log initialized")
    except Exception as e:
        logger.error(f"❌ Attempt log initialization failed: {e}")
        raise

    app.extensions["selfnear"] = services or build_services(cfg, audit_logger)

    register_blueprints(app, limiter)
    register_error_handlers(app)

    logger.info("🚀 Application factory completed successfully")
    return app


def register_blueprints(app: Flask, limiter=None) -> None:
    """Register all application blueprints."""

    from selfnear.blueprints.admin import admin_bp
    from selfnear.blueprints.verification import VERIFY_RATE_LIMIT, verification_bp

    if limiter is not None:
        limiter.limit(VERIFY_RATE_LIMIT, methods=["POST"])(verification_bp)
        limiter.exempt(admin_bp)

    app.register_blueprint(verification_bp)
    app.register_blueprint(admin_bp)

    logger.info("✅ All blueprints registered")


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers."""

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify(create_verification_error(VerificationErrorCode.MISSING_FIELDS, str(e))), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "message": str(e)}), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(e):
        from selfnear.audit_logger import get_audit_logger
        from selfnear.blueprints.admin import rate_limit_counter

        rate_limit_counter.inc()
        get_audit_logger().log_rate_limit_exceeded(request.remote_addr or "-", request.path)
        return jsonify({"error": "rate_limit_exceeded", "message": str(e)}), 429

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Internal server error: {e}", exc_info=True)
        return jsonify(create_verification_error(VerificationErrorCode.INTERNAL_ERROR)), 500
