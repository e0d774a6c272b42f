"""
Configuration & Logging
=======================
Environment-driven settings for the subscription core.

Every knob has a safe default so the in-memory backend runs with an empty
environment. Production deployments set INTASEND_* and DATABASE_URL.
"""

import logging
import os

import structlog


# =============================================================================
# SETTINGS
# =============================================================================

def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    # IntaSend (M-Pesa STK push)
    INTASEND_BASE_URL: str = os.getenv("INTASEND_BASE_URL", "https://sandbox.intasend.com/api")
    INTASEND_SECRET_KEY: str = os.getenv("INTASEND_SECRET_KEY", "")
    INTASEND_PUBLISHABLE_KEY: str = os.getenv("INTASEND_PUBLISHABLE_KEY", "")
    GATEWAY_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15.0"))

    # Circuit breaker around the gateway
    CB_FAILURE_THRESHOLD: int = int(os.getenv("GATEWAY_CB_FAILURE_THRESHOLD", "5"))
    CB_RESET_TIMEOUT_SECONDS: float = float(os.getenv("GATEWAY_CB_RESET_TIMEOUT", "30.0"))

    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "KES")

    # Validity windows
    TRANSACTION_TTL_SECONDS: int = int(os.getenv("TRANSACTION_TTL_SECONDS", "900"))  # 15 minutes
    REGISTRATION_TTL_SECONDS: int = int(os.getenv("REGISTRATION_TTL_SECONDS", "600"))  # 10 minutes

    # Ledger optimistic locking
    LEDGER_MAX_RETRIES: int = int(os.getenv("LEDGER_MAX_RETRIES", "5"))
    LEDGER_RETRY_BASE_DELAY: float = float(os.getenv("LEDGER_RETRY_BASE_DELAY", "0.05"))

    # Callback durability
    CALLBACK_MAX_ATTEMPTS: int = int(os.getenv("CALLBACK_MAX_ATTEMPTS", "10"))
    CALLBACK_RETRY_DELAY_SECONDS: int = int(os.getenv("CALLBACK_RETRY_DELAY_SECONDS", "30"))
    SETTLEMENT_GRACE_SECONDS: int = int(os.getenv("SETTLEMENT_GRACE_SECONDS", "60"))

    # Shared secret IntaSend echoes back in every callback
    WEBHOOK_CHALLENGE: str = os.getenv("WEBHOOK_CHALLENGE", "")

    # Late SUCCESS after TIMED_OUT: compensate automatically or leave for support
    GRANT_LATE_SUCCESS: bool = _env_bool("GRANT_LATE_SUCCESS", "false")

    # Persistence
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory")  # memory | postgres

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


# =============================================================================
# STRUCTURED LOGGING SETUP
# =============================================================================

def configure_logging(level: str = None) -> None:
    """Configure structlog JSON output. Safe to call more than once."""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
