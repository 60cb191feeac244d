"""
Recurring Invoice Rules

Templates may carry a list of rules that adjust each generated invoice.
Each rule pairs a condition with an action:

    [
        {"condition": {"type": "month_in", "months": [12]},
         "action": {"type": "apply_discount", "percent": 10}},
        {"action": {"type": "append_note", "text": "Thank you for your business"}}
    ]

Conditions are evaluated against the due date being generated. A missing
condition always matches. Rules apply in list order; once a ``skip`` action
matches, no invoice is produced for that period (the schedule still advances).
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List, Optional

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from models.schemas import (
    RecurringRule,
    AlwaysCondition,
    MonthInCondition,
    AppendNoteAction,
    ApplyDiscountAction,
    SkipAction,
)
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

_rules_adapter = TypeAdapter(List[RecurringRule])


@dataclass
class InvoiceDraft:
    """Amounts and notes for one generated invoice, before it is stored."""
    due_date: date
    subtotal: Decimal
    tax: Decimal
    notes: Optional[str] = None
    skip: bool = False
    applied: List[str] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax


def parse_rules(raw: Any) -> List[RecurringRule]:
    """
    Validate a stored or submitted rules payload.

    Raises:
        ValidationError: the payload is not a list of well-formed rules
    """
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError(
            "Rules must be a list of {condition, action} objects",
            field="rules",
            details={"received": type(raw).__name__}
        )
    try:
        return _rules_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed recurring rules",
            field="rules",
            details={"errors": e.errors(include_url=False, include_context=False)}
        )


def condition_matches(rule: RecurringRule, due_date: date) -> bool:
    condition = rule.condition
    if isinstance(condition, AlwaysCondition):
        return True
    if isinstance(condition, MonthInCondition):
        return due_date.month in condition.months
    return False


def _describe(rule: RecurringRule) -> str:
    action = rule.action
    if isinstance(action, ApplyDiscountAction):
        return f"apply_discount:{action.percent}"
    return action.type


def apply_rules(rules: List[RecurringRule], draft: InvoiceDraft) -> InvoiceDraft:
    """Apply matching rules to a draft in order. Mutates and returns it."""
    for rule in rules:
        if not condition_matches(rule, draft.due_date):
            continue

        action = rule.action
        if isinstance(action, SkipAction):
            draft.skip = True
            draft.applied.append(_describe(rule))
            break

        if isinstance(action, AppendNoteAction):
            draft.notes = f"{draft.notes}\n{action.text}" if draft.notes else action.text
        elif isinstance(action, ApplyDiscountAction):
            factor = (Decimal("100") - action.percent) / Decimal("100")
            draft.subtotal = (draft.subtotal * factor).quantize(CENT, rounding=ROUND_HALF_UP)
            draft.tax = (draft.tax * factor).quantize(CENT, rounding=ROUND_HALF_UP)

        draft.applied.append(_describe(rule))

    if draft.applied:
        logger.debug(f"Rules applied for {draft.due_date}: {draft.applied}")
    return draft
