"""Security helpers for configuring Flask in production."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from flask import Flask
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman
from werkzeug.middleware.proxy_fix import ProxyFix

logger = logging.getLogger(__name__)

limiter: Optional[Limiter] = None

# JSON API only: nothing is rendered, so nothing needs to load.
API_CSP = {
    "default-src": "'none'",
    "frame-ancestors": "'none'",
}


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in {"1", "true", "yes", "on"}


def _build_redis_uri(cfg: Mapping[str, Any]) -> str:
    if cfg.get("REDIS_URL"):
        return str(cfg["REDIS_URL"])

    host = cfg.get("REDIS_HOST") or "127.0.0.1"
    port = cfg.get("REDIS_PORT", 6379)
    db = cfg.get("REDIS_DB", 0)
    password = cfg.get("REDIS_PASSWORD")
    if password:
        return f"redis://:{password}@{host}:{port}/{db}"
    return f"redis://{host}:{port}/{db}"


def redis_configured(cfg: Mapping[str, Any]) -> bool:
    return bool(cfg.get("REDIS_URL") or cfg.get("REDIS_HOST"))


def configure_logging(cfg: Mapping[str, Any]) -> None:
    """One JSON object per line on stderr, tagged with the service name."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(cfg.get("LOG_LEVEL") or "INFO").upper(), logging.INFO))
    if any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        return

    service = cfg.get("APP_NAME") or "selfnear"
    stream = logging.StreamHandler()
    stream.setFormatter(
        logging.Formatter(
            "{\"ts\":\"%(asctime)s\",\"service\":\"" + service + "\",\"level\":\"%(levelname)s\","
            "\"logger\":\"%(name)s\",\"msg\":\"%(message)s\"}"
        )
    )
    root.addHandler(stream)


def init_security(app: Flask, cfg: Mapping[str, Any]) -> Optional[Limiter]:
    """Initialise standard security middleware and rate limiting."""
    global limiter

    # Respect reverse proxy headers for TLS detection and client IP extraction.
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)  # type: ignore[assignment]

    is_production = str(cfg.get("FLASK_ENV") or "development").strip().lower() == "production"
    force_https = _as_bool(cfg.get("FORCE_HTTPS"), is_production)
    if not force_https and is_production:
        logger.warning(
            "FORCE_HTTPS disabled while FLASK_ENV=production - ensure this is intentional before deploying."
        )

    Talisman(
        app,
        force_https=force_https,
        content_security_policy=API_CSP,
        session_cookie_secure=force_https,
        frame_options="DENY",
        referrer_policy="no-referrer",
    )

    limit_default = cfg.get("RATE_LIMIT_DEFAULT") or "100/hour"

    if not _as_bool(cfg.get("RATE_LIMIT_ENABLED"), True):
        limiter = None
    else:
        storage_uri = _build_redis_uri(cfg) if redis_configured(cfg) else "memory://"
        limiter = Limiter(
            key_func=get_remote_address,
            default_limits=[limit_default],
            storage_uri=storage_uri,
            strategy="fixed-window",
        )
        limiter.init_app(app)

    configure_logging(cfg)
    return limiter
