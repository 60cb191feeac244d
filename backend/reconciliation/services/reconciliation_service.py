"""
Reconciliation Service

Core business logic for settling invoices from bank deposits:
- Loading pending transactions and open invoices for one account
- Finding and selecting candidate matches (see payment_rules)
- Applying matches with conditional updates
- Manual matching of a chosen transaction to a chosen invoice
- Audit logging

Matches are applied one at a time and each commits on its own. A match
whose transaction or invoice has already moved out of its expected status
(another run got there first) is rolled back and counted as skipped.
"""

import asyncio
import uuid
import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple, Type, TypeVar
from dataclasses import dataclass, field

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import BankTransactionDB, InvoiceDB
from models.enums import BankTransactionStatus, InvoiceStatus, OPEN_INVOICE_STATUSES
from models.schemas import BankTransaction, Invoice, Record
from reconciliation.matching_rules.payment_rules import (
    PaymentMatchingRules,
    payment_rules
)
from utils.errors import DataAccessError, InvalidStateError, ReconciliationTimeoutError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=Record)


@dataclass
class ReconciliationRunResult:
    """Result of a reconciliation run."""
    run_id: str
    account_id: str
    dry_run: bool
    transactions_considered: int
    invoices_considered: int
    candidates_found: int
    matches_applied: int
    skipped: int
    failed: int
    truncated: bool
    matches: List[Dict[str, Any]] = field(default_factory=list)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    RUN_TIMED_OUT = "reconciliation.run_timed_out"
    MATCH_APPLIED = "reconciliation.match_applied"
    MATCH_SKIPPED = "reconciliation.match_skipped"
    MATCH_FAILED = "reconciliation.match_failed"
    MANUAL_MATCH = "reconciliation.manual_match"


def log_reconciliation_event(
    event_type: str,
    account_id: str,
    details: Dict[str, Any],
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "account_id": account_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


class ReconciliationService:
    """
    Matches pending bank transactions against open invoices for an account.

    Usage:
        service = ReconciliationService(db_session)
        result = await service.run_matching(account_id)
    """

    def __init__(
        self,
        db: AsyncSession,
        rules: Optional[PaymentMatchingRules] = None,
        timeout_seconds: Optional[float] = None
    ):
        self.db = db
        self.rules = rules or payment_rules
        self.timeout_seconds = timeout_seconds

    async def run_matching(
        self,
        account_id: str,
        dry_run: bool = False,
        timeout_seconds: Optional[float] = None
    ) -> ReconciliationRunResult:
        """
        Run one reconciliation pass for an account.

        Args:
            account_id: Tenant whose records are reconciled
            dry_run: Select matches without writing anything
            timeout_seconds: Overrides the service default; 0 or None disables it

        Raises:
            DataAccessError: transactions or invoices could not be read
            ReconciliationTimeoutError: the run exceeded its time budget;
                matches committed before the timeout stay applied
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        run_id = str(uuid.uuid4())

        if not timeout:
            return await self._run(run_id, account_id, dry_run)

        try:
            return await asyncio.wait_for(self._run(run_id, account_id, dry_run), timeout=timeout)
        except asyncio.TimeoutError:
            # Cancellation can land between the two updates of a match
            await self._safe_rollback()
            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_TIMED_OUT,
                account_id,
                {"run_id": run_id, "timeout_seconds": timeout}
            )
            raise ReconciliationTimeoutError(
                f"Reconciliation run {run_id} exceeded {timeout}s",
                {"run_id": run_id, "timeout_seconds": timeout}
            )

    async def _run(self, run_id: str, account_id: str, dry_run: bool) -> ReconciliationRunResult:
        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            account_id,
            {"run_id": run_id, "dry_run": dry_run}
        )

        # Read phase: any failure here leaves the store untouched
        transactions = await self._get_pending_transactions(account_id)
        invoices = await self._get_open_invoices(account_id)

        search = self.rules.find_candidates(transactions, invoices)
        selected = self.rules.select_matches(search.candidates)

        result = ReconciliationRunResult(
            run_id=run_id,
            account_id=account_id,
            dry_run=dry_run,
            transactions_considered=search.transactions_considered,
            invoices_considered=search.invoices_considered,
            candidates_found=len(search.candidates),
            matches_applied=0,
            skipped=0,
            failed=0,
            truncated=search.truncated
        )

        if dry_run:
            result.matches = [dict(c.to_dict(), status="proposed") for c in selected]
            return result

        # Write phase
        for candidate in selected:
            try:
                applied = await self._apply_match(account_id, candidate.transaction_id, candidate.invoice_id)
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to apply match {candidate.transaction_id} -> {candidate.invoice_id}: {e}"
                )
                await self._safe_rollback()
                result.failed += 1
                result.matches.append(dict(candidate.to_dict(), status="failed"))
                log_reconciliation_event(
                    ReconciliationAuditEvent.MATCH_FAILED,
                    account_id,
                    dict(candidate.to_dict(), run_id=run_id, error=str(e))
                )
                continue

            if applied:
                result.matches_applied += 1
                result.matches.append(dict(candidate.to_dict(), status="applied"))
                log_reconciliation_event(
                    ReconciliationAuditEvent.MATCH_APPLIED,
                    account_id,
                    dict(candidate.to_dict(), run_id=run_id)
                )
            else:
                result.skipped += 1
                result.matches.append(dict(candidate.to_dict(), status="skipped"))
                log_reconciliation_event(
                    ReconciliationAuditEvent.MATCH_SKIPPED,
                    account_id,
                    dict(candidate.to_dict(), run_id=run_id)
                )

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_COMPLETED,
            account_id,
            {
                "run_id": run_id,
                "transactions": result.transactions_considered,
                "invoices": result.invoices_considered,
                "candidates": result.candidates_found,
                "applied": result.matches_applied,
                "skipped": result.skipped,
                "failed": result.failed,
                "truncated": result.truncated
            }
        )

        return result

    async def match_manually(
        self,
        account_id: str,
        transaction_id: str,
        invoice_id: str,
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Settle an invoice with a chosen deposit, skipping the tolerance test.

        Raises:
            InvalidStateError: the transaction is not pending or the invoice
                is not open (or either belongs to another account)
        """
        try:
            applied = await self._apply_match(account_id, transaction_id, invoice_id)
        except SQLAlchemyError as e:
            await self._safe_rollback()
            raise DataAccessError(f"Failed to apply manual match: {e}")

        if not applied:
            raise InvalidStateError(
                "Transaction must be pending and invoice must be sent or overdue",
                requested=BankTransactionStatus.matched.value
            )

        details = {"transaction_id": transaction_id, "invoice_id": invoice_id}
        log_reconciliation_event(
            ReconciliationAuditEvent.MANUAL_MATCH,
            account_id,
            details,
            actor=actor or "system"
        )
        return dict(details, status="applied")

    # ==================== STORE ACCESS ====================

    async def _apply_match(self, account_id: str, transaction_id: str, invoice_id: str) -> bool:
        """
        Move one transaction to matched and one invoice to paid.

        Both updates only fire from the expected pre-state; if either finds
        nothing to update the pair is rolled back and False is returned.
        """
        txn_result = await self.db.execute(
            update(BankTransactionDB)
            .where(
                BankTransactionDB.id == transaction_id,
                BankTransactionDB.account_id == account_id,
                BankTransactionDB.status == BankTransactionStatus.pending.value
            )
            .values(
                status=BankTransactionStatus.matched.value,
                matched_invoice_id=invoice_id
            )
            .execution_options(synchronize_session=False)
        )
        if txn_result.rowcount != 1:
            await self.db.rollback()
            return False

        inv_result = await self.db.execute(
            update(InvoiceDB)
            .where(
                InvoiceDB.id == invoice_id,
                InvoiceDB.account_id == account_id,
                InvoiceDB.status.in_(OPEN_INVOICE_STATUSES)
            )
            .values(status=InvoiceStatus.paid, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if inv_result.rowcount != 1:
            await self.db.rollback()
            return False

        await self.db.commit()
        return True

    async def _get_pending_transactions(self, account_id: str) -> List[BankTransaction]:
        query = (
            select(BankTransactionDB)
            .where(
                BankTransactionDB.account_id == account_id,
                BankTransactionDB.status == BankTransactionStatus.pending.value
            )
            .order_by(BankTransactionDB.date, BankTransactionDB.id)
        )
        return await self._read(query, BankTransaction, "bank transactions")

    async def _get_open_invoices(self, account_id: str) -> List[Invoice]:
        query = (
            select(InvoiceDB)
            .where(
                InvoiceDB.account_id == account_id,
                InvoiceDB.status.in_(OPEN_INVOICE_STATUSES)
            )
            .order_by(InvoiceDB.due_date, InvoiceDB.id)
        )
        return await self._read(query, Invoice, "invoices")

    async def _read(self, query, record_type: Type[RecordT], label: str) -> List[RecordT]:
        try:
            result = await self.db.execute(query)
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read {label}: {e}")
            raise DataAccessError(f"Failed to read {label}", {"error": str(e)})

        records, rejected = _to_records(rows, record_type)
        if rejected:
            logger.warning(f"Ignored {rejected} malformed {label} rows")
        return records

    async def _safe_rollback(self):
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")


def _to_records(rows, record_type: Type[RecordT]) -> Tuple[List[RecordT], int]:
    records = []
    rejected = 0
    for row in rows:
        try:
            records.append(record_type.model_validate(row))
        except PydanticValidationError as e:
            rejected += 1
            logger.warning(f"Rejected {record_type.__name__} {getattr(row, 'id', '?')}: {e}")
    return records, rejected
