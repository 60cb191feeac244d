"""
Client Health Score API Router

Endpoints:
- GET /api/clients/{client_id}/health-score - Calculate a client's score
- POST /api/clients/{client_id}/health-score/refresh - Recalculate and cache on the client
- POST /api/clients/health-scores/refresh - Refresh every client of the account
- GET /api/account/health-score - Score across all of the account's invoices

Security:
- All endpoints require internal service key authentication
- All endpoints are scoped to the X-Account-Id account
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from middleware.internal_auth import AccountContext, get_account_context
from models.schemas import HealthScore
from services.health_score import HealthScoreService
from utils.errors import InvoicingError
from utils.validation_errors import raise_for_domain_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clients", tags=["Client Health"])

account_router = APIRouter(prefix="/account", tags=["Client Health"])


@router.get("/{client_id}/health-score", response_model=HealthScore)
async def get_client_health_score(
    client_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """Payment health of one client, from its invoices."""
    try:
        return await HealthScoreService(db).get_client_health_score(account.account_id, client_id)
    except InvoicingError as e:
        raise_for_domain_error(e)


@router.post("/{client_id}/health-score/refresh", response_model=HealthScore)
async def refresh_client_health_score(
    client_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """Recalculate a client's score and store it on the client record."""
    try:
        return await HealthScoreService(db).refresh_client_health_score(account.account_id, client_id)
    except InvoicingError as e:
        raise_for_domain_error(e)


@router.post("/health-scores/refresh")
async def refresh_all_client_health_scores(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Refresh cached scores for every client of the account.

    A client that fails is logged and counted; the rest are still refreshed.
    """
    try:
        return await HealthScoreService(db).refresh_all_client_health_scores(account.account_id)
    except InvoicingError as e:
        raise_for_domain_error(e)


@account_router.get("/health-score", response_model=HealthScore)
async def get_account_health_score(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    try:
        return await HealthScoreService(db).get_account_health_score(account.account_id)
    except InvoicingError as e:
        raise_for_domain_error(e)
