"""Configuration management for selfnear.

Centralises environment variable loading and validation logic while keeping the
public API intentionally simple.
"""

from __future__ import annotations

import os
import warnings
from typing import Any, Mapping, Optional, TypedDict

_TRUTHY_VALUES = {"1", "true", "yes", "on"}

NEAR_RPC_DEFAULTS = {
    "mainnet": "https://rpc.mainnet.near.org",
    "testnet": "https://rpc.testnet.near.org",
}


class AppConfig(TypedDict):
    """Typed representation of the application's configuration."""

    FLASK_ENV: str
    FLASK_SECRET_KEY: Optional[str]
    LOG_LEVEL: str
    SIGNING_MESSAGE: str
    SIGNING_RECIPIENT: Optional[str]
    SELF_VERIFIER_URL: Optional[str]
    SELF_VERIFIER_TIMEOUT: int
    SELF_OFAC_ENABLED: bool
    SELF_MINIMUM_AGE: int
    NEAR_NETWORK: str
    NEAR_RPC_URL: str
    NEAR_RPC_API_KEY: Optional[str]
    NEAR_CONTRACT_ID: Optional[str]
    NEAR_ACCOUNT_ID: Optional[str]
    NEAR_PRIVATE_KEY: Optional[str]
    RPC_MAX_ATTEMPTS: int
    RPC_INITIAL_WAIT_MS: int
    RPC_BACKOFF: float
    RPC_TIMEOUT: int
    MAX_SIGNATURE_AGE_SECONDS: int
    NONCE_TTL_SECONDS: int
    SESSION_TTL_SECONDS: int
    KEY_LIVENESS_CHECK: bool
    REDIS_HOST: Optional[str]
    REDIS_PORT: int
    REDIS_PASSWORD: Optional[str]
    REDIS_DB: int
    REDIS_URL: Optional[str]
    DATABASE_URL: str
    RATE_LIMIT_ENABLED: bool
    RATE_LIMIT_DEFAULT: str
    FORCE_HTTPS: bool
    APP_NAME: str
    APP_VERSION: str
    APP_HOST: str
    APP_PORT: int


def _get_env_bool(name: str, default: bool) -> bool:
    """Return an environment variable as a boolean."""

    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in _TRUTHY_VALUES


def _get_env_int(name: str, default: int) -> int:
    """Return an environment variable as an integer, raising on invalid input."""

    raw_value = os.getenv(name)
    if raw_value is None or raw_value == "":
        return default

    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer (got {raw_value!r})") from exc


def _get_env_float(name: str, default: float) -> float:
    raw_value = os.getenv(name)
    if raw_value is None or raw_value == "":
        return default

    try:
        return float(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number (got {raw_value!r})") from exc


def get_config() -> AppConfig:
    """Load application configuration from environment variables."""

    network = os.getenv("NEAR_NETWORK", "testnet").strip().lower()
    flask_env = os.getenv("FLASK_ENV", "development")

    return {
        # Flask Configuration
        "FLASK_ENV": flask_env,
        "FLASK_SECRET_KEY": os.getenv("FLASK_SECRET_KEY"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        # Signed challenge shown by the wallet
        "SIGNING_MESSAGE": os.getenv("SIGNING_MESSAGE", "Identify myself"),
        "SIGNING_RECIPIENT": os.getenv("SIGNING_RECIPIENT") or None,
        # Self.xyz proof verification
        "SELF_VERIFIER_URL": os.getenv("SELF_VERIFIER_URL") or None,
        "SELF_VERIFIER_TIMEOUT": _get_env_int("SELF_VERIFIER_TIMEOUT", 30),
        "SELF_OFAC_ENABLED": _get_env_bool("SELF_OFAC_ENABLED", False),
        "SELF_MINIMUM_AGE": _get_env_int("SELF_MINIMUM_AGE", 18),
        # NEAR Configuration
        "NEAR_NETWORK": network,
        "NEAR_RPC_URL": os.getenv("NEAR_RPC_URL") or NEAR_RPC_DEFAULTS.get(network, NEAR_RPC_DEFAULTS["testnet"]),
        "NEAR_RPC_API_KEY": os.getenv("NEAR_RPC_API_KEY") or None,
        "NEAR_CONTRACT_ID": os.getenv("NEAR_CONTRACT_ID") or None,
        "NEAR_ACCOUNT_ID": os.getenv("NEAR_ACCOUNT_ID") or None,
        "NEAR_PRIVATE_KEY": os.getenv("NEAR_PRIVATE_KEY") or None,
        # RPC retry policy
        "RPC_MAX_ATTEMPTS": _get_env_int("RPC_MAX_ATTEMPTS", 3),
        "RPC_INITIAL_WAIT_MS": _get_env_int("RPC_INITIAL_WAIT_MS", 500),
        "RPC_BACKOFF": _get_env_float("RPC_BACKOFF", 2.0),
        "RPC_TIMEOUT": _get_env_int("RPC_TIMEOUT", 10),
        # Replay protection
        "MAX_SIGNATURE_AGE_SECONDS": _get_env_int("MAX_SIGNATURE_AGE_SECONDS", 600),
        "NONCE_TTL_SECONDS": _get_env_int("NONCE_TTL_SECONDS", 86400),
        "SESSION_TTL_SECONDS": _get_env_int("SESSION_TTL_SECONDS", 300),
        "KEY_LIVENESS_CHECK": _get_env_bool("KEY_LIVENESS_CHECK", True),
        # Redis Configuration (REQUIRED for production)
        "REDIS_HOST": os.getenv("REDIS_HOST") or None,
        "REDIS_PORT": _get_env_int("REDIS_PORT", 6379),
        "REDIS_PASSWORD": os.getenv("REDIS_PASSWORD"),
        "REDIS_DB": _get_env_int("REDIS_DB", 0),
        "REDIS_URL": os.getenv("REDIS_URL") or os.getenv("REDIS_DSN"),
        # Database Configuration
        "DATABASE_URL": os.getenv("DATABASE_URL") or "sqlite:///selfnear.db",
        # Rate Limiting
        "RATE_LIMIT_ENABLED": _get_env_bool("RATE_LIMIT_ENABLED", True),
        "RATE_LIMIT_DEFAULT": os.getenv("RATE_LIMIT_DEFAULT", "100/hour"),
        "FORCE_HTTPS": _get_env_bool("FORCE_HTTPS", flask_env.lower() == "production"),
        # Application Settings
        "APP_NAME": os.getenv("APP_NAME", "selfnear"),
        "APP_VERSION": os.getenv("APP_VERSION", "0.1.0"),
        "APP_HOST": os.getenv("APP_HOST", "0.0.0.0"),
        "APP_PORT": _get_env_int("APP_PORT", 5000),
    }


def validate_config(config: Mapping[str, Any]) -> bool:
    """Validate critical configuration values.

    Args:
        config: Configuration mapping to validate.

    Returns:
        True if configuration is valid, raises ValueError otherwise.
    """

    # A signer without a key (or a key without a signer) can never write.
    if bool(config.get("NEAR_ACCOUNT_ID")) != bool(config.get("NEAR_PRIVATE_KEY")):
        raise ValueError("⚠️  NEAR_ACCOUNT_ID and NEAR_PRIVATE_KEY must be set together!")

    if config.get("NEAR_NETWORK") not in NEAR_RPC_DEFAULTS:
        raise ValueError(f"⚠️  NEAR_NETWORK must be one of {sorted(NEAR_RPC_DEFAULTS)}!")

    if config.get("FLASK_ENV") == "production":
        if not config.get("FLASK_SECRET_KEY"):
            raise ValueError("⚠️  FLASK_SECRET_KEY must be set for production!")

        if not config.get("NEAR_CONTRACT_ID"):
            raise ValueError("⚠️  NEAR_CONTRACT_ID must be set for production!")

        if not config.get("SELF_OFAC_ENABLED"):
            warnings.warn("⚠️  SELF_OFAC_ENABLED is off - sanctions screening is disabled!", stacklevel=2)

        # Warn if Redis password not set
        if not config.get("REDIS_PASSWORD"):
            warnings.warn("⚠️  REDIS_PASSWORD not set - Redis will be unprotected!", stacklevel=2)

    return True
