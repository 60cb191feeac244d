"""
Reconciliation API Endpoints

REST API for the payment reconciliation matcher:
- GET /api/reconciliation/status - Module status and active tolerances
- POST /api/reconciliation/match - Run (or preview) matching for the account
- POST /api/reconciliation/manual-match - Settle an invoice with a chosen deposit
"""

import logging
from typing import Optional, List
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.connection import get_db
from middleware.internal_auth import AccountContext, get_account_context
from reconciliation.matching_rules.payment_rules import PaymentMatchingRules
from reconciliation.services.reconciliation_service import ReconciliationService
from utils.errors import InvoicingError
from utils.validation_errors import raise_for_domain_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


# ==================== Request/Response Models ====================

class RunMatchingRequest(BaseModel):
    """Request to run reconciliation."""
    dry_run: bool = Field(default=False, description="Return selected matches without applying them")
    timeout_seconds: Optional[float] = Field(default=None, ge=0, description="Override the configured time budget")


class ManualMatchRequest(BaseModel):
    transaction_id: str = Field(..., description="Pending bank transaction ID")
    invoice_id: str = Field(..., description="Sent or overdue invoice ID")


class MatchDetail(BaseModel):
    transaction_id: str
    invoice_id: str
    amount: str
    amount_diff: str
    date_diff_days: int
    confidence: float
    status: str


class ReconciliationRunResponse(BaseModel):
    """Response for a reconciliation run."""
    run_id: str
    account_id: str
    dry_run: bool
    matches: int = Field(..., description="Number of matches applied")
    transactions_considered: int
    invoices_considered: int
    candidates_found: int
    skipped: int
    failed: int
    truncated: bool
    details: List[MatchDetail]


def build_rules() -> PaymentMatchingRules:
    settings = get_settings()
    return PaymentMatchingRules(
        amount_tolerance=settings.RECONCILIATION_AMOUNT_TOLERANCE,
        date_window_days=settings.RECONCILIATION_DATE_WINDOW_DAYS,
        max_candidates=settings.RECONCILIATION_MAX_CANDIDATES
    )


# ==================== Endpoints ====================

@router.get("/status", summary="Module status")
async def get_module_status():
    """Reconciliation module status and the tolerances in force."""
    settings = get_settings()
    return {
        "module": "reconciliation",
        "status": "operational",
        "matching": {
            "amount_tolerance": settings.RECONCILIATION_AMOUNT_TOLERANCE,
            "date_window_days": settings.RECONCILIATION_DATE_WINDOW_DAYS,
            "max_candidates": settings.RECONCILIATION_MAX_CANDIDATES,
            "timeout_seconds": settings.RECONCILIATION_TIMEOUT_SECONDS,
            "one_to_one": True
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/match", response_model=ReconciliationRunResponse, summary="Run reconciliation")
async def run_matching(
    request: Optional[RunMatchingRequest] = None,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Match pending bank transactions to open invoices for the account.

    This will:
    1. Load pending transactions and sent/overdue invoices
    2. Pair deposits and invoices with equal amounts due within the date window
    3. Keep each transaction and invoice in at most one match
    4. Mark matched transactions and settle their invoices as paid
    """
    request = request or RunMatchingRequest()
    settings = get_settings()

    service = ReconciliationService(
        db,
        rules=build_rules(),
        timeout_seconds=settings.RECONCILIATION_TIMEOUT_SECONDS
    )

    try:
        result = await service.run_matching(
            account.account_id,
            dry_run=request.dry_run,
            timeout_seconds=request.timeout_seconds
        )
    except InvoicingError as e:
        raise_for_domain_error(e)

    return ReconciliationRunResponse(
        run_id=result.run_id,
        account_id=result.account_id,
        dry_run=result.dry_run,
        matches=result.matches_applied,
        transactions_considered=result.transactions_considered,
        invoices_considered=result.invoices_considered,
        candidates_found=result.candidates_found,
        skipped=result.skipped,
        failed=result.failed,
        truncated=result.truncated,
        details=[MatchDetail(**m) for m in result.matches]
    )


@router.post("/manual-match", summary="Apply a manual match")
async def manual_match(
    request: ManualMatchRequest,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """Mark a pending deposit as paying a specific open invoice."""
    service = ReconciliationService(db)
    try:
        return await service.match_manually(
            account.account_id,
            request.transaction_id,
            request.invoice_id,
            actor=account.actor
        )
    except InvoicingError as e:
        raise_for_domain_error(e)
