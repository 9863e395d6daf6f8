"""
Verification Blueprint - passport proof registration and re-verification.

The Self.xyz relayer posts proofs to ``POST /api/verify``; the front end polls
``GET /api/verify-status`` with the session id it embedded in the proof.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from flask import Blueprint, current_app, jsonify, request

from selfnear import database
from selfnear.audit_logger import get_audit_logger
from selfnear.blueprints.admin import verification_counter
from selfnear.errors import (
    VerificationError,
    VerificationErrorCode,
    create_verification_error,
    http_status_for,
    is_non_retryable,
)
from selfnear.models import VerificationOutcome, parse_verify_request

logger = logging.getLogger(__name__)

verification_bp = Blueprint("verification", __name__)

VERIFY_RATE_LIMIT = "10 per minute"
MAX_ATTEMPTS_PAGE = 50


def _services():
    return current_app.extensions["selfnear"]


def _error_response(code: VerificationErrorCode, details: Optional[str] = None, outcome: Optional[VerificationOutcome] = None):
    body = create_verification_error(code, details)
    if outcome is not None:
        body.update(outcome.to_dict())
        body["reason"] = outcome.error or body["reason"]
    else:
        body["steps"] = []
    body["retryable"] = not is_non_retryable(code)
    return jsonify(body), http_status_for(code)


def _record(outcome: VerificationOutcome, flow: str) -> None:
    verification_counter.labels(flow=flow, result="verified" if outcome.verified else "rejected").inc()
    if not database.is_initialized():
        return
    try:
        database.record_attempt(outcome, flow)
    except Exception as e:
        get_audit_logger().log_error("attempt_log", str(e), {"flow": flow, "account": outcome.account_id})


@verification_bp.route("/api/verify", methods=["POST"])
async def verify():
    """
    Register a passport verification from a Self.xyz proof submission.

    Expected JSON body:
        - attestationId: 1, 2 or 3
        - proof: Groth16 proof {a, b, c}
        - publicSignals: list of decimal strings
        - userContextData: hex-encoded context carrying the NEAR signature

    Returns:
        JSON outcome with the step trace; the HTTP status follows the error code
    """
    try:
        submission = parse_verify_request(request.get_json(silent=True))
    except VerificationError as exc:
        return _error_response(exc.code, exc.details)

    outcome = await _services().orchestrator.register(submission)
    _record(outcome, database.FLOW_REGISTER)

    if not outcome.verified:
        return _error_response(outcome.error_code or VerificationErrorCode.INTERNAL_ERROR, outcome=outcome)

    return jsonify({"status": "success", "result": True, **outcome.to_dict()}), 200


@verification_bp.route("/api/verify-stored", methods=["POST"])
async def verify_stored():
    """Re-verify the on-chain record for ``nearAccountId``."""

    body = request.get_json(silent=True) or {}
    account_id = body.get("nearAccountId") if isinstance(body, dict) else None
    if not isinstance(account_id, str) or not account_id:
        return _error_response(VerificationErrorCode.MISSING_FIELDS, "nearAccountId")

    outcome = await _services().orchestrator.verify_stored(account_id)
    _record(outcome, database.FLOW_VERIFY_STORED)

    if outcome.error_code is VerificationErrorCode.NOT_FOUND:
        return _error_response(VerificationErrorCode.NOT_FOUND, outcome=outcome)
    return jsonify(outcome.to_dict()), 200


@verification_bp.route("/api/verify-status", methods=["GET"])
async def verify_status():
    session_id = request.args.get("sessionId")
    if not session_id:
        return jsonify({"status": "error", "error": "Missing sessionId parameter"}), 400

    try:
        session = await _services().session_store.get(session_id)
    except Exception as e:
        logger.error(f"Failed to fetch session status: {e}")
        return jsonify({"status": "error", "error": "Failed to fetch session status"}), 500

    if not session:
        return jsonify({"status": "expired", "error": "Session not found or expired"}), 404

    return jsonify(
        {
            "status": session.get("status"),
            "accountId": session.get("accountId"),
            "error": session.get("error"),
            "errorCode": session.get("errorCode"),
        }
    ), 200


@verification_bp.route("/api/verify-attempts", methods=["GET"])
def verify_attempts():
    """Recent registration and re-verification passes for ``nearAccountId``, newest first."""

    account_id = request.args.get("nearAccountId")
    if not account_id:
        return jsonify({"status": "error", "error": "Missing nearAccountId parameter"}), 400

    limit = min(max(request.args.get("limit", 20, type=int), 1), MAX_ATTEMPTS_PAGE)

    if not database.is_initialized():
        return jsonify({"status": "error", "error": "Attempt log unavailable"}), 503

    try:
        attempts = database.recent_attempts(account_id, limit=limit)
    except Exception as e:
        logger.error(f"Failed to read attempt log: {e}")
        return jsonify({"status": "error", "error": "Failed to read attempt log"}), 500

    return jsonify({"nearAccountId": account_id, "attempts": attempts}), 200


@verification_bp.route("/api/verify", methods=["GET"])
def verify_info():
    cfg = current_app.config.get("APP_CONFIG", {})
    return jsonify(
        {
            "status": "ok",
            "message": "Self x NEAR verification API",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "disclosures": {
                "minimumAge": cfg.get("SELF_MINIMUM_AGE", 18),
                "ofac": bool(cfg.get("SELF_OFAC_ENABLED")),
            },
        }
    ), 200
