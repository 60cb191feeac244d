from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from datetime import date
import logging

from database import get_db
from middleware.internal_auth import (
    AccountContext,
    get_account_context,
)
from models.enums import RecurringFrequency, RecurringState
from models.schemas import (
    GeneratedInvoiceResult,
    RecurringInvoiceTemplate,
    RecurringTemplateCreate,
    StateHistoryEntry,
    StateTransitionRequest,
)
from services.recurring_invoices import RecurringInvoiceService, advance_due_date
from utils.errors import InvoicingError
from utils.validation_errors import raise_for_domain_error

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/recurring", tags=["Recurring Invoices"])


# ==================== TEMPLATE MANAGEMENT ====================

@router.get("/templates", response_model=List[RecurringInvoiceTemplate])
async def list_recurring_templates(
    state: Optional[RecurringState] = Query(None, description="Filter by lifecycle state"),
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    List the account's recurring invoice templates, soonest due first.
    """
    try:
        return await RecurringInvoiceService(db).list_templates(account.account_id, state=state)
    except InvoicingError as e:
        raise_for_domain_error(e)


@router.get("/templates/{template_id}", response_model=RecurringInvoiceTemplate)
async def get_recurring_template(
    template_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    try:
        return await RecurringInvoiceService(db).get_template(account.account_id, template_id)
    except InvoicingError as e:
        raise_for_domain_error(e)


@router.post("/templates", response_model=RecurringInvoiceTemplate, status_code=status.HTTP_201_CREATED)
async def create_recurring_template(
    template_data: RecurringTemplateCreate,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a recurring invoice template.

    Templates start as draft (default) or active. Total is subtotal + tax.

    Rules example:
    - [{"condition": {"type": "month_in", "months": [12]}, "action": {"type": "skip"}}]
    - [{"action": {"type": "append_note", "text": "Payable within 14 days"}}]
    """
    try:
        return await RecurringInvoiceService(db).create_template(
            account.account_id,
            template_data,
            created_by=account.actor
        )
    except InvoicingError as e:
        raise_for_domain_error(e)


@router.delete("/templates/{template_id}")
async def delete_recurring_template(
    template_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Delete a recurring invoice template. Generated invoices are kept.
    """
    try:
        await RecurringInvoiceService(db).delete_template(
            account.account_id,
            template_id,
            deleted_by=account.actor
        )
    except InvoicingError as e:
        raise_for_domain_error(e)
    return {"success": True, "message": "Template deleted"}


# ==================== LIFECYCLE ====================

@router.post("/templates/{template_id}/state", response_model=RecurringInvoiceTemplate)
async def change_template_state(
    template_id: str,
    request: StateTransitionRequest,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Move a template through its lifecycle.

    Allowed: draft -> active, active -> paused, paused -> active,
    active/paused -> canceled. Anything else returns 409.
    """
    try:
        return await RecurringInvoiceService(db).transition(
            account.account_id,
            template_id,
            request.state,
            changed_by=account.actor
        )
    except InvoicingError as e:
        raise_for_domain_error(e)


@router.get("/templates/{template_id}/history", response_model=List[StateHistoryEntry])
async def get_template_history(
    template_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    try:
        return await RecurringInvoiceService(db).get_history(account.account_id, template_id)
    except InvoicingError as e:
        raise_for_domain_error(e)


# ==================== INVOICE GENERATION ====================

@router.post("/templates/{template_id}/generate", response_model=GeneratedInvoiceResult)
async def generate_invoice(
    template_id: str,
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Generate the invoice for the template's current period and advance
    its schedule. Each call generates again.
    """
    try:
        return await RecurringInvoiceService(db).generate_invoice(account.account_id, template_id)
    except InvoicingError as e:
        raise_for_domain_error(e)


@router.post("/process")
async def process_due_templates(
    account: AccountContext = Depends(get_account_context),
    db: AsyncSession = Depends(get_db)
):
    """
    Generate invoices for every active template of the account that has
    come due.

    Called by the scheduler once a day for each account.
    """
    logger.info(f"Recurring batch for account {account.account_id} triggered by {account.service.name}")
    try:
        return await RecurringInvoiceService(db).process_due_templates(account.account_id)
    except InvoicingError as e:
        raise_for_domain_error(e)


# ==================== UTILITIES ====================

@router.get("/preview")
async def preview_schedule(
    next_due_date: date = Query(..., description="First due date"),
    frequency: RecurringFrequency = Query(RecurringFrequency.monthly),
    count: int = Query(5, ge=1, le=24, description="Number of due dates to preview")
):
    """
    Preview upcoming due dates for a schedule before creating a template.
    """
    dates = [next_due_date]
    while len(dates) < count:
        dates.append(advance_due_date(dates[-1], frequency))
    return {
        "frequency": frequency.value,
        "due_dates": [d.isoformat() for d in dates]
    }
