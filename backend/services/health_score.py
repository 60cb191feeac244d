"""
Client Health Score

Scores how reliably a client (or a whole account) pays, from 0 to 100.

    score = max(50, 100 - 15 * overdue_count)
    score -= (1 - total_paid / total_invoiced) * 50     (ratio is 1 with nothing invoiced)
    clamp to [0, 100], round half up

Labels: >=80 excellent, >=60 good, >=40 fair, >=20 poor, otherwise critical.

An invoice counts as overdue when its status is ``overdue``, or when it is
``sent`` with a due date strictly before the day of calculation.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import ClientDB, InvoiceDB
from models.enums import HealthLabel, InvoiceStatus
from models.schemas import HealthScore, Invoice
from utils.errors import DataAccessError, InvoicingError, NotFoundError

logger = logging.getLogger(__name__)

OVERDUE_PENALTY = 15
OVERDUE_FLOOR = 50
PAYMENT_WEIGHT = 50

LABEL_THRESHOLDS = (
    (80, HealthLabel.excellent),
    (60, HealthLabel.good),
    (40, HealthLabel.fair),
    (20, HealthLabel.poor),
)


def label_for(score: int) -> HealthLabel:
    for threshold, label in LABEL_THRESHOLDS:
        if score >= threshold:
            return label
    return HealthLabel.critical


def is_overdue(invoice: Invoice, today: date) -> bool:
    if invoice.status == InvoiceStatus.overdue:
        return True
    return (
        invoice.status == InvoiceStatus.sent
        and invoice.due_date is not None
        and invoice.due_date < today
    )


def calculate_health_score(overdue_count: int, total_invoiced: Decimal, total_paid: Decimal) -> HealthScore:
    """Pure score calculation from pre-aggregated figures."""
    total_invoiced = Decimal(total_invoiced)
    total_paid = Decimal(total_paid)

    score = Decimal(max(OVERDUE_FLOOR, 100 - OVERDUE_PENALTY * overdue_count))
    ratio = total_paid / total_invoiced if total_invoiced > 0 else Decimal(1)
    score -= (1 - ratio) * PAYMENT_WEIGHT

    score = min(Decimal(100), max(Decimal(0), score))
    rounded = int(score.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return HealthScore(
        score=rounded,
        status=label_for(rounded),
        overdue_count=overdue_count,
        total_invoiced=total_invoiced,
        total_paid=total_paid,
        payment_ratio=float(ratio)
    )


def score_invoices(invoices: Iterable[Invoice], today: Optional[date] = None) -> HealthScore:
    """Aggregate a set of invoices and score them."""
    today = today or date.today()
    overdue_count = 0
    total_invoiced = Decimal(0)
    total_paid = Decimal(0)

    for invoice in invoices:
        total_invoiced += invoice.total
        if invoice.status == InvoiceStatus.paid:
            total_paid += invoice.total
        if is_overdue(invoice, today):
            overdue_count += 1

    return calculate_health_score(overdue_count, total_invoiced, total_paid)


class HealthScoreService:
    """
    Reads invoices from the store and keeps clients' cached scores current.

    Usage:
        service = HealthScoreService(db_session)
        score = await service.get_client_health_score(account_id, client_id)
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_client_health_score(
        self,
        account_id: str,
        client_id: str,
        today: Optional[date] = None
    ) -> HealthScore:
        invoices = await self._get_invoices(account_id, client_id)
        return score_invoices(invoices, today)

    async def get_account_health_score(self, account_id: str, today: Optional[date] = None) -> HealthScore:
        invoices = await self._get_invoices(account_id)
        return score_invoices(invoices, today)

    async def refresh_client_health_score(
        self,
        account_id: str,
        client_id: str,
        today: Optional[date] = None
    ) -> HealthScore:
        """
        Recalculate a client's score and store it on the client.

        Raises:
            NotFoundError: the client is not in the account
            DataAccessError: the store could not be read or written
        """
        health = await self.get_client_health_score(account_id, client_id, today)

        try:
            result = await self.db.execute(
                update(ClientDB)
                .where(ClientDB.id == client_id, ClientDB.account_id == account_id)
                .values(health_score=health.score, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await self.db.rollback()
                raise NotFoundError("Client", client_id)
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to store health score for client {client_id}: {e}")
            await self.db.rollback()
            raise DataAccessError(f"Failed to store health score for client {client_id}", {"error": str(e)})

        logger.info(f"Client {client_id} health score refreshed: {health.score} ({health.status.value})")
        return health

    async def refresh_all_client_health_scores(
        self,
        account_id: str,
        today: Optional[date] = None
    ) -> Dict[str, Any]:
        """Refresh every client of the account; one client failing does not stop the rest."""
        try:
            result = await self.db.execute(
                select(ClientDB.id).where(ClientDB.account_id == account_id).order_by(ClientDB.id)
            )
            client_ids = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to read clients for account {account_id}: {e}")
            raise DataAccessError("Failed to read clients", {"error": str(e)})

        results = {
            "account_id": account_id,
            "clients_checked": len(client_ids),
            "updated": 0,
            "errors": 0,
            "scores": {}
        }

        for client_id in client_ids:
            try:
                health = await self.refresh_client_health_score(account_id, client_id, today)
            except InvoicingError as e:
                logger.error(f"Error refreshing health score for client {client_id}: {e}")
                results["errors"] += 1
                continue
            results["updated"] += 1
            results["scores"][client_id] = health.score

        logger.info(
            f"Health scores refreshed for account {account_id}: "
            f"{results['updated']} updated, {results['errors']} errors"
        )
        return results

    async def _get_invoices(self, account_id: str, client_id: Optional[str] = None) -> List[Invoice]:
        query = select(InvoiceDB).where(InvoiceDB.account_id == account_id)
        if client_id is not None:
            query = query.where(InvoiceDB.client_id == client_id)

        try:
            result = await self.db.execute(query)
            rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read invoices for account {account_id}: {e}")
            raise DataAccessError("Failed to read invoices", {"error": str(e)})

        invoices = []
        for row in rows:
            try:
                invoices.append(Invoice.model_validate(row))
            except PydanticValidationError as e:
                logger.warning(f"Ignoring malformed invoice {getattr(row, 'id', '?')}: {e}")
        return invoices
