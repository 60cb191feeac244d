"""
Invoicing Core - Sentry Integration

Error tracking and performance monitoring with Sentry.
"""

import os
import logging
from typing import Optional, Dict, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "password", "token", "secret", "api_key", "api-key", "authorization", "cookie"
)


def init_sentry(
    dsn: Optional[str] = None,
    environment: str = "development",
    release: Optional[str] = None,
    sample_rate: float = 1.0,
    traces_sample_rate: float = 0.1,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN (from environment if not provided)
        environment: Environment name (production, staging, development)
        release: Release version
        sample_rate: Error sampling rate (0.0 to 1.0)
        traces_sample_rate: Performance tracing sample rate

    Returns:
        True if Sentry was initialized, False otherwise
    """
    dsn = dsn or os.environ.get("SENTRY_DSN", "")

    if not dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=release or os.environ.get("GIT_SHA", "unknown"),
        sample_rate=sample_rate,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR
            ),
        ],
        send_default_pii=False,
        before_send=filter_sensitive_data,
        ignore_errors=[
            ConnectionResetError,
            BrokenPipeError,
        ],
    )

    logger.info(f"Sentry initialized for environment: {environment}")
    return True


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "[REDACTED]" if any(s in str(key).lower() for s in SENSITIVE_KEYS) else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def filter_sensitive_data(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Redact credentials (the internal API key header among them) from Sentry events.
    """
    request = event.get("request")
    if request:
        for part in ("headers", "data"):
            if part in request:
                request[part] = _redact(request[part])

    if "extra" in event:
        event["extra"] = _redact(event["extra"])

    return event


def set_account_context(account_id: str, service: Optional[str] = None):
    """Tag events with the account a request acts for."""
    sentry_sdk.set_tag("account_id", account_id)
    if service:
        sentry_sdk.set_tag("service", service)
