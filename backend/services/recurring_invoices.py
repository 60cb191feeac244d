"""
Recurring Invoice Lifecycle

Manages recurring invoice templates and the invoices generated from them.

Lifecycle:
    draft -> active
    active -> paused | canceled
    paused -> active | canceled
    canceled is terminal

``state`` is the only source of truth for the lifecycle. The stored
``is_active`` flag is written in step with it for older readers and is
never consulted.

Each generation creates one ``sent`` invoice due on the template's current
``next_due_date`` and advances that date by the template frequency:
- weekly: +7 days
- monthly: +1 month
- quarterly: +3 months
- annually: +1 year
Month-end dates clamp to the last day of the target month (Jan 31 -> Feb 29).
"""

import logging
from datetime import datetime, date, timezone
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, delete, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    ClientDB,
    InvoiceDB,
    InvoiceItemDB,
    RecurringInvoiceDB,
    RecurringInvoiceItemDB,
    RecurringInvoiceHistoryDB,
    generate_uuid,
)
from models.enums import InvoiceStatus, RecurringFrequency, RecurringState
from models.schemas import (
    GeneratedInvoiceResult,
    Invoice,
    LineItem,
    RecurringInvoiceTemplate,
    RecurringTemplateCreate,
    StateHistoryEntry,
)
from services.recurring_rules import InvoiceDraft, apply_rules, parse_rules
from utils.errors import (
    DataAccessError,
    InvalidStateError,
    InvoicingError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    RecurringState.draft: {RecurringState.active},
    RecurringState.active: {RecurringState.paused, RecurringState.canceled},
    RecurringState.paused: {RecurringState.active, RecurringState.canceled},
    RecurringState.canceled: set(),
}

CREATABLE_STATES = (RecurringState.draft, RecurringState.active)

FREQUENCY_STEPS = {
    RecurringFrequency.weekly: relativedelta(weeks=1),
    RecurringFrequency.monthly: relativedelta(months=1),
    RecurringFrequency.quarterly: relativedelta(months=3),
    RecurringFrequency.annually: relativedelta(years=1),
}


class RecurringEvent:
    """Log event types for recurring invoice operations."""
    TEMPLATE_CREATED = "recurring.template_created"
    TEMPLATE_DELETED = "recurring.template_deleted"
    STATE_CHANGED = "recurring.state_changed"
    INVOICE_GENERATED = "recurring.invoice_generated"
    PERIOD_SKIPPED = "recurring.period_skipped"
    BATCH_COMPLETED = "recurring.batch_completed"


def log_recurring_event(event_type: str, account_id: str, details: Dict[str, Any], actor: Optional[str] = None):
    logger.info(
        f"Recurring event: {event_type}",
        extra={
            "event": event_type,
            "account_id": account_id,
            "details": details,
            "actor": actor or "system",
        }
    )


def advance_due_date(current: date, frequency: RecurringFrequency) -> date:
    """Next due date one period after ``current``."""
    return current + FREQUENCY_STEPS[RecurringFrequency(frequency)]


def can_transition(current: RecurringState, requested: RecurringState) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


def _epoch_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _to_template(row: RecurringInvoiceDB, items=()) -> RecurringInvoiceTemplate:
    template = RecurringInvoiceTemplate.model_validate(row)
    template.items = [LineItem.model_validate(item) for item in items]
    return template


class RecurringInvoiceService:
    """
    Recurring template management and invoice generation for one session.

    Usage:
        service = RecurringInvoiceService(db_session)
        result = await service.generate_invoice(account_id, template_id)
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== TEMPLATES ====================

    async def create_template(
        self,
        account_id: str,
        data: RecurringTemplateCreate,
        created_by: Optional[str] = None
    ) -> RecurringInvoiceTemplate:
        """
        Create a template for one of the account's clients.

        Raises:
            ValidationError: bad initial state or malformed rules
            NotFoundError: the client is not in the account
        """
        if data.state not in CREATABLE_STATES:
            raise ValidationError(
                f"Templates start as draft or active, not {data.state.value}",
                field="state"
            )

        rules = parse_rules(data.rules)

        client_id = await self._scalar(
            select(ClientDB.id).where(ClientDB.id == data.client_id, ClientDB.account_id == account_id),
            "client"
        )
        if client_id is None:
            raise NotFoundError("Client", data.client_id)

        now = datetime.now(timezone.utc)
        template_id = generate_uuid()
        row = RecurringInvoiceDB(
            id=template_id,
            account_id=account_id,
            client_id=data.client_id,
            template_number=data.template_number,
            frequency=data.frequency,
            next_due_date=data.next_due_date,
            state=data.state,
            is_active=data.state == RecurringState.active,
            last_state_change_at=now,
            subtotal=data.subtotal,
            tax=data.tax,
            total=data.subtotal + data.tax,
            notes=data.notes,
            rules=[rule.model_dump(mode="json") for rule in rules] if data.rules is not None else None,
            created_at=now,
            updated_at=now
        )
        items = [
            RecurringInvoiceItemDB(
                id=generate_uuid(),
                recurring_invoice_id=template_id,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                amount=item.quantity * item.unit_price,
                position=position
            )
            for position, item in enumerate(data.items)
        ]

        self.db.add(row)
        for item in items:
            self.db.add(item)
        self.db.add(RecurringInvoiceHistoryDB(
            id=generate_uuid(),
            recurring_invoice_id=template_id,
            old_state=None,
            new_state=data.state,
            changed_at=now,
            changed_by=created_by
        ))

        template = _to_template(row, items)
        await self._commit("create recurring template")

        log_recurring_event(
            RecurringEvent.TEMPLATE_CREATED,
            account_id,
            {"template_id": template_id, "template_number": data.template_number, "state": data.state.value},
            actor=created_by
        )
        return template

    async def list_templates(
        self,
        account_id: str,
        state: Optional[RecurringState] = None
    ) -> List[RecurringInvoiceTemplate]:
        """List the account's templates, soonest due first."""
        query = select(RecurringInvoiceDB).where(RecurringInvoiceDB.account_id == account_id)
        if state is not None:
            query = query.where(RecurringInvoiceDB.state == state)
        query = query.order_by(RecurringInvoiceDB.next_due_date, RecurringInvoiceDB.id)

        rows = await self._all(query, "recurring templates")
        if not rows:
            return []

        item_rows = await self._all(
            select(RecurringInvoiceItemDB)
            .where(RecurringInvoiceItemDB.recurring_invoice_id.in_([row.id for row in rows]))
            .order_by(RecurringInvoiceItemDB.position),
            "recurring template items"
        )
        items_by_template: Dict[str, list] = {}
        for item in item_rows:
            items_by_template.setdefault(item.recurring_invoice_id, []).append(item)

        templates = []
        for row in rows:
            try:
                templates.append(_to_template(row, items_by_template.get(row.id, [])))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed recurring template {row.id}: {e}")
        return templates

    async def get_template(self, account_id: str, template_id: str) -> RecurringInvoiceTemplate:
        row = await self._load_template(account_id, template_id)
        items = await self._load_items(template_id)
        try:
            return _to_template(row, items)
        except PydanticValidationError as e:
            raise DataAccessError(f"Stored recurring template {template_id} is malformed", {"error": str(e)})

    async def delete_template(self, account_id: str, template_id: str, deleted_by: Optional[str] = None):
        """
        Delete a template and its items.

        Invoices already generated from it are left untouched.
        """
        result = await self._execute(
            delete(RecurringInvoiceDB)
            .where(RecurringInvoiceDB.id == template_id, RecurringInvoiceDB.account_id == account_id)
            .execution_options(synchronize_session=False),
            "delete recurring template"
        )
        if result.rowcount == 0:
            await self.db.rollback()
            raise NotFoundError("Recurring template", template_id)

        await self._commit("delete recurring template")
        log_recurring_event(
            RecurringEvent.TEMPLATE_DELETED,
            account_id,
            {"template_id": template_id},
            actor=deleted_by
        )

    async def get_history(self, account_id: str, template_id: str) -> List[StateHistoryEntry]:
        """State transition trail for a template, oldest first."""
        await self._load_template(account_id, template_id)
        rows = await self._all(
            select(RecurringInvoiceHistoryDB)
            .where(RecurringInvoiceHistoryDB.recurring_invoice_id == template_id)
            .order_by(RecurringInvoiceHistoryDB.changed_at),
            "recurring template history"
        )
        return [StateHistoryEntry.model_validate(row) for row in rows]

    # ==================== LIFECYCLE ====================

    async def transition(
        self,
        account_id: str,
        template_id: str,
        new_state: RecurringState,
        changed_by: Optional[str] = None
    ) -> RecurringInvoiceTemplate:
        """
        Move a template to ``new_state``.

        Raises:
            NotFoundError: no such template in the account
            InvalidStateError: the transition is not allowed, or the template
                changed state while this request was in flight
        """
        new_state = RecurringState(new_state)
        row = await self._load_template(account_id, template_id)
        current = RecurringState(row.state) if row.state is not None else RecurringState.draft

        if not can_transition(current, new_state):
            raise InvalidStateError(
                f"Cannot move recurring template from {current.value} to {new_state.value}",
                current_state=current.value,
                requested=new_state.value
            )

        state_guard = RecurringInvoiceDB.state == current
        if current == RecurringState.draft:
            state_guard = or_(state_guard, RecurringInvoiceDB.state.is_(None))

        now = datetime.now(timezone.utc)
        result = await self._execute(
            update(RecurringInvoiceDB)
            .where(
                RecurringInvoiceDB.id == template_id,
                RecurringInvoiceDB.account_id == account_id,
                state_guard
            )
            .values(
                state=new_state,
                is_active=new_state == RecurringState.active,
                last_state_change_at=now,
                updated_at=now
            )
            .execution_options(synchronize_session=False),
            "update recurring template state"
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidStateError(
                f"Recurring template {template_id} changed state concurrently",
                current_state=current.value,
                requested=new_state.value
            )

        self.db.add(RecurringInvoiceHistoryDB(
            id=generate_uuid(),
            recurring_invoice_id=template_id,
            old_state=current,
            new_state=new_state,
            changed_at=now,
            changed_by=changed_by
        ))

        template = _to_template(row).model_copy(update={"state": new_state, "last_state_change_at": now})
        await self._commit("update recurring template state")

        log_recurring_event(
            RecurringEvent.STATE_CHANGED,
            account_id,
            {"template_id": template_id, "old_state": current.value, "new_state": new_state.value},
            actor=changed_by
        )
        return template

    async def generate_invoice(
        self,
        account_id: str,
        template_id: str,
        now: Optional[datetime] = None,
        expected_due_date: Optional[date] = None
    ) -> GeneratedInvoiceResult:
        """
        Generate the invoice for the template's current period.

        Creates a ``sent`` invoice due on ``next_due_date`` (unless a skip
        rule matches), then advances ``next_due_date`` by one period and
        records today as ``last_generated_date``. Calling twice generates
        twice.

        ``expected_due_date`` pins the period being generated; if the template
        has already moved past it nothing is written.

        Raises:
            NotFoundError: no such template in the account
            InvalidStateError: the template is not active
            ValidationError: the stored rules are malformed
        """
        now = now or datetime.now(timezone.utc)
        today = now.date()

        row = await self._load_template(account_id, template_id)
        state = RecurringState(row.state) if row.state is not None else RecurringState.draft
        if state != RecurringState.active:
            raise InvalidStateError(
                f"Only active templates generate invoices; template is {state.value}",
                current_state=state.value,
                requested="generate"
            )
        if expected_due_date is not None and row.next_due_date != expected_due_date:
            raise InvalidStateError(
                f"Recurring template {template_id} is no longer due on {expected_due_date.isoformat()}",
                current_state=state.value,
                requested="generate"
            )

        template = _to_template(row)
        rules = parse_rules(template.rules)
        item_rows = await self._load_items(template_id)

        due_date = template.next_due_date
        next_due_date = advance_due_date(due_date, template.frequency)
        draft = apply_rules(rules, InvoiceDraft(
            due_date=due_date,
            subtotal=template.subtotal,
            tax=template.tax,
            notes=template.notes
        ))

        invoice = None
        if not draft.skip:
            invoice = self._add_invoice(template, draft, item_rows, today, now)

        result = await self._execute(
            update(RecurringInvoiceDB)
            .where(
                RecurringInvoiceDB.id == template_id,
                RecurringInvoiceDB.account_id == account_id,
                RecurringInvoiceDB.state == RecurringState.active,
                RecurringInvoiceDB.next_due_date == due_date
            )
            .values(next_due_date=next_due_date, last_generated_date=today, updated_at=now)
            .execution_options(synchronize_session=False),
            "advance recurring template"
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidStateError(
                f"Recurring template {template_id} changed while generating",
                current_state=state.value,
                requested="generate"
            )

        await self._commit("generate recurring invoice")

        if invoice is None:
            log_recurring_event(
                RecurringEvent.PERIOD_SKIPPED,
                account_id,
                {"template_id": template_id, "due_date": due_date.isoformat(), "rules": draft.applied}
            )
        else:
            log_recurring_event(
                RecurringEvent.INVOICE_GENERATED,
                account_id,
                {
                    "template_id": template_id,
                    "invoice_id": invoice.id,
                    "number": invoice.number,
                    "due_date": due_date.isoformat(),
                    "next_due_date": next_due_date.isoformat()
                }
            )

        return GeneratedInvoiceResult(
            template_id=template_id,
            invoice=invoice,
            skipped=draft.skip,
            due_date=due_date,
            next_due_date=next_due_date,
            applied_rules=draft.applied
        )

    def _add_invoice(
        self,
        template: RecurringInvoiceTemplate,
        draft: InvoiceDraft,
        item_rows,
        today: date,
        now: datetime
    ) -> Invoice:
        invoice_id = generate_uuid()
        row = InvoiceDB(
            id=invoice_id,
            account_id=template.account_id,
            client_id=template.client_id,
            number=f"{template.template_number}-{_epoch_millis(now)}",
            status=InvoiceStatus.sent,
            issue_date=today,
            due_date=draft.due_date,
            subtotal=draft.subtotal,
            tax=draft.tax,
            total=draft.total,
            notes=draft.notes,
            created_at=now,
            updated_at=now
        )
        self.db.add(row)

        items = []
        for item in item_rows:
            copy = InvoiceItemDB(
                id=generate_uuid(),
                invoice_id=invoice_id,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                amount=item.amount if item.amount is not None else item.quantity * item.unit_price,
                position=item.position
            )
            self.db.add(copy)
            items.append(LineItem.model_validate(copy))

        return Invoice.model_validate(row).model_copy(update={"items": items})

    async def process_due_templates(
        self,
        account_id: str,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Generate once for every active template of the account whose due
        date has arrived.

        Args:
            account_id: Account whose templates are processed
            now: Batch clock; defaults to the current UTC time

        Returns:
            Summary of checked templates, generated invoices and errors
        """
        now = now or datetime.now(timezone.utc)
        today = now.date()
        logger.info(f"Processing recurring invoices (account_id={account_id}, today={today})")

        query = (
            select(RecurringInvoiceDB.id, RecurringInvoiceDB.next_due_date)
            .where(
                RecurringInvoiceDB.account_id == account_id,
                RecurringInvoiceDB.state == RecurringState.active,
                RecurringInvoiceDB.next_due_date <= today
            )
            .order_by(RecurringInvoiceDB.next_due_date, RecurringInvoiceDB.id)
        )

        # Plain tuples: a failed generation rolls back and expires ORM rows
        result = await self._execute(query, "read due recurring templates")
        due = [(template_id, due_date) for template_id, due_date in result.all()]

        results = {
            "processed_at": now.isoformat(),
            "templates_checked": len(due),
            "invoices_generated": 0,
            "periods_skipped": 0,
            "errors": 0,
            "generated": [],
            "failed": []
        }

        for template_id, due_date in due:
            try:
                generated = await self.generate_invoice(
                    account_id, template_id, now=now, expected_due_date=due_date
                )
            except InvoicingError as e:
                logger.error(f"Error processing recurring template {template_id}: {e}")
                results["errors"] += 1
                results["failed"].append({"template_id": template_id, "error": str(e)})
                continue

            if generated.skipped:
                results["periods_skipped"] += 1
            else:
                results["invoices_generated"] += 1
            results["generated"].append({
                "template_id": generated.template_id,
                "invoice_id": generated.invoice.id if generated.invoice else None,
                "due_date": generated.due_date.isoformat(),
                "next_due_date": generated.next_due_date.isoformat(),
                "skipped": generated.skipped
            })

        log_recurring_event(
            RecurringEvent.BATCH_COMPLETED,
            account_id,
            {k: results[k] for k in ("templates_checked", "invoices_generated", "periods_skipped", "errors")}
        )
        return results

    # ==================== STORE ACCESS ====================

    async def _load_template(self, account_id: str, template_id: str) -> RecurringInvoiceDB:
        row = await self._scalar(
            select(RecurringInvoiceDB).where(
                RecurringInvoiceDB.id == template_id,
                RecurringInvoiceDB.account_id == account_id
            ).execution_options(populate_existing=True),
            "recurring template"
        )
        if row is None:
            raise NotFoundError("Recurring template", template_id)
        return row

    async def _load_items(self, template_id: str) -> List[RecurringInvoiceItemDB]:
        return await self._all(
            select(RecurringInvoiceItemDB)
            .where(RecurringInvoiceItemDB.recurring_invoice_id == template_id)
            .order_by(RecurringInvoiceItemDB.position),
            "recurring template items"
        )

    async def _execute(self, statement, action: str):
        try:
            return await self.db.execute(statement)
        except SQLAlchemyError as e:
            logger.error(f"Failed to {action}: {e}")
            await self._safe_rollback()
            raise DataAccessError(f"Failed to {action}", {"error": str(e)})

    async def _scalar(self, statement, label: str):
        result = await self._execute(statement, f"read {label}")
        return result.scalar_one_or_none()

    async def _all(self, statement, label: str) -> list:
        result = await self._execute(statement, f"read {label}")
        return list(result.scalars().all())

    async def _commit(self, action: str):
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to {action}: {e}")
            await self._safe_rollback()
            raise DataAccessError(f"Failed to {action}", {"error": str(e)})

    async def _safe_rollback(self):
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed: {e}")
