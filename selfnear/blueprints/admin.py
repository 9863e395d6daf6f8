"""
Admin Blueprint - Health Checks and Metrics

Provides monitoring endpoints for the verification service.
"""

import logging
import time
from typing import Any, Dict

from flask import Blueprint, Response, current_app, jsonify
from prometheus_client import CollectorRegistry, Counter, generate_latest

from selfnear import database

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)

# Prometheus metrics
registry = CollectorRegistry()
verification_counter = Counter(
    "selfnear_verifications_total",
    "Verification passes by flow and result",
    ["flow", "result"],
    registry=registry,
)
rate_limit_counter = Counter(
    "selfnear_rate_limited_total",
    "Requests rejected by the rate limiter",
    registry=registry,
)


@admin_bp.route("/health")
def health():
    """
    Health check endpoint.

    Returns:
        JSON health status with service information
    """
    cfg = current_app.config.get("APP_CONFIG", {})
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": time.time(),
        "service": cfg.get("APP_NAME", "selfnear"),
        "version": cfg.get("APP_VERSION"),
        "components": {},
    }

    if database.is_initialized():
        db_health = database.check_database_health()
        health_status["components"]["database"] = db_health
        if db_health["status"] != "healthy":
            health_status["status"] = "degraded"

    services = current_app.extensions.get("selfnear")
    health_status["components"]["contract"] = {
        "contractId": getattr(services.contract, "contract_id", None) if services else None,
        "writable": getattr(services.contract, "writable", True) if services else False,
    }

    return jsonify(health_status), 200


@admin_bp.route("/metrics/prometheus")
def metrics_prometheus():
    """
    Prometheus metrics endpoint.

    Returns:
        Prometheus text format metrics
    """
    metrics = generate_latest(registry)
    return Response(metrics, mimetype="text/plain; version=0.0.4")
