"""
Audit logging for selfnear.

Verification decisions are security events: every step transition, signature
check, nonce reservation and contract call is written to the ``audit``
logger as a pipe-delimited line, with ``log_event`` for structured JSON.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_logger = logging.getLogger("audit")
_audit_logger = None  # Will be initialized by init_audit_logger


def init_audit_logger():
    """Initialize the audit logger."""
    global _audit_logger

    _logger.setLevel(logging.INFO)

    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - AUDIT - %(levelname)s - %(message)s"))
        _logger.addHandler(handler)

    _audit_logger = AuditLogger()
    _logger.info("Audit logger initialized")
    return _audit_logger


def get_audit_logger():
    """Get the audit logger instance."""
    global _audit_logger

    if _audit_logger is None:
        init_audit_logger()
    return _audit_logger


def _short(value: Optional[str], length: int = 16) -> str:
    if not value:
        return "-"
    return value if len(value) <= length else f"{value[:length]}..."


class AuditLogger:
    """Audit logging interface for verification events."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _logger

    def log_event(self, event: str, **details: Any) -> None:
        """Generic structured audit event."""

        payload = {"event": event, **details, "timestamp": datetime.now(timezone.utc).isoformat()}
        self.logger.info(json.dumps(payload, default=str))

    def log_signature_verification(self, public_key: str, success: bool, error: Optional[str] = None):
        """Log NEP-413 signature verification."""
        status = "SUCCESS" if success else "FAILURE"
        msg = f"SIG_VERIFY | pubkey={_short(public_key, 24)} | type=nep413 | status={status}"
        if error:
            msg += f" | error={error}"
        self.logger.info(msg)

    def log_verification_step(
        self, account_id: Optional[str], step: str, status: str, message: Optional[str] = None
    ):
        """Log a single step transition in a verification pass."""
        msg = f"VERIFY_STEP | account={account_id or '-'} | step={step} | status={status}"
        if message:
            msg += f" | message={message}"
        if status == "error":
            self.logger.warning(msg)
        else:
            self.logger.info(msg)

    def log_verification_result(self, account_id: Optional[str], verified: bool, error_code: Optional[str] = None):
        """Log the final decision of a verification pass."""
        status = "VERIFIED" if verified else "REJECTED"
        msg = f"VERIFY_RESULT | account={account_id or '-'} | status={status}"
        if error_code:
            msg += f" | code={error_code}"
        self.logger.info(msg)

    def log_nonce_reservation(self, account_id: str, success: bool):
        """Log a signature nonce reservation."""
        status = "RESERVED" if success else "REPLAY"
        log = self.logger.info if success else self.logger.warning
        log(f"NONCE_RESERVE | account={account_id} | status={status}")

    def log_rpc_call(self, method: str, success: bool, error: Optional[str] = None):
        """Log NEAR RPC call."""
        status = "SUCCESS" if success else "FAILURE"
        msg = f"RPC_CALL | method={method} | status={status}"
        if error:
            msg += f" | error={error}"
        self.logger.info(msg)

    def log_session_updated(self, session_id: str, status: str):
        """Log a verification session status change."""
        self.logger.info(f"SESSION_UPDATED | session={_short(session_id, 8)} | status={status}")

    def log_security_event(self, event_type: str, severity: str, details: Dict[str, Any]):
        """Log security event."""
        self.logger.warning(f"SECURITY_EVENT | type={event_type} | severity={severity} | details={details}")

    def log_rate_limit_exceeded(self, ip_address: str, endpoint: str):
        """Log rate limit violation."""
        self.logger.warning(f"RATE_LIMIT_EXCEEDED | ip={ip_address} | endpoint={endpoint}")

    def log_error(self, error_type: str, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log application error."""
        msg = f"ERROR | type={error_type} | msg={error_msg}"
        if context:
            msg += f" | context={context}"
        self.logger.error(msg)
