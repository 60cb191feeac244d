"""
Internal Service Authentication and Account Scoping

The invoicing core sits behind the dashboard backend and the batch
scheduler; end-user sessions are handled by the external auth provider.
Callers authenticate with a shared API key and name the account (tenant)
they act for.

Headers:
    X-Internal-Api-Key: <api_key>
    X-Service-Name: <service_name> (optional, for logging)
    X-Account-Id: <account uuid> (required on account-scoped endpoints)
    X-User-Id: <user uuid> (optional, recorded as the actor)

Usage:
    @router.post("/reconciliation/match")
    async def run(account: AccountContext = Depends(get_account_context)):
        ...
"""

import secrets
import logging
from typing import Optional
from dataclasses import dataclass

from fastapi import Request, HTTPException, status, Depends, Header
from fastapi.security import APIKeyHeader

from config import get_settings
from logging_config import set_account_context as set_log_account
from sentry_integration import set_account_context as set_sentry_account
from utils.validation_errors import validate_required_uuid

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-Internal-Api-Key"
SERVICE_NAME_HEADER = "X-Service-Name"


@dataclass
class InternalService:
    """Represents an authenticated internal service"""
    name: str
    api_key_hash: str  # Last 8 chars of key for logging


@dataclass
class AccountContext:
    """The tenant a request acts for, plus who asked."""
    account_id: str
    service: InternalService
    user_id: Optional[str] = None

    @property
    def actor(self) -> str:
        return self.user_id or self.service.name


def validate_internal_key(api_key: str) -> bool:
    """Constant-time check of an API key against the configured keys."""
    if not api_key:
        return False

    valid_keys = get_settings().internal_api_keys
    if not valid_keys:
        logger.warning("No internal API keys configured")
        return False

    return any(secrets.compare_digest(api_key, valid_key) for valid_key in valid_keys)


api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


async def get_internal_service(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> InternalService:
    """
    FastAPI dependency to authenticate internal service requests.

    Raises:
        HTTPException: 401 if the key is missing or invalid
    """
    service_name = request.headers.get(SERVICE_NAME_HEADER, "unknown")

    if not api_key:
        logger.warning(f"Missing API key from service: {service_name}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not validate_internal_key(api_key):
        logger.warning(f"Invalid API key from service: {service_name}, key ending: ...{api_key[-8:]}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return InternalService(
        name=service_name,
        api_key_hash=f"...{api_key[-8:]}"
    )


async def get_account_context(
    service: InternalService = Depends(get_internal_service),
    x_account_id: Optional[str] = Header(None, alias="X-Account-Id"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> AccountContext:
    """Authenticate the caller and resolve the account it acts for."""
    account_id = validate_required_uuid(x_account_id, "X-Account-Id")
    set_log_account(account_id)
    set_sentry_account(account_id, service.name)
    return AccountContext(account_id=account_id, service=service, user_id=x_user_id)
