"""
Unit Tests for Recurring Invoice Rules and Schedules

Tests rule parsing, rule evaluation, due-date arithmetic and the
template state machine.

Run with: pytest tests/test_recurring_rules.py -v
"""

import pytest
from datetime import date
from decimal import Decimal

from models.enums import RecurringFrequency, RecurringState
from models.schemas import MonthInCondition, SkipAction
from services.recurring_invoices import ALLOWED_TRANSITIONS, advance_due_date, can_transition
from services.recurring_rules import InvoiceDraft, apply_rules, parse_rules
from utils.errors import ValidationError


def draft_for(due: date, subtotal="100.00", tax="10.00", notes=None) -> InvoiceDraft:
    return InvoiceDraft(due_date=due, subtotal=Decimal(subtotal), tax=Decimal(tax), notes=notes)


class TestParseRules:
    """Rule payload validation."""

    def test_none_means_no_rules(self):
        assert parse_rules(None) == []

    def test_condition_defaults_to_always(self):
        rules = parse_rules([{"action": {"type": "append_note", "text": "Thanks"}}])

        assert rules[0].condition.type == "always"

    def test_month_in_is_normalised(self):
        rules = parse_rules([
            {"condition": {"type": "month_in", "months": [12, 1, 12]}, "action": {"type": "skip"}}
        ])

        assert isinstance(rules[0].condition, MonthInCondition)
        assert rules[0].condition.months == [1, 12]
        assert isinstance(rules[0].action, SkipAction)

    def test_non_list_payload_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_rules({"action": {"type": "skip"}})

        assert exc_info.value.field == "rules"

    def test_unknown_action_rejected(self):
        with pytest.raises(ValidationError):
            parse_rules([{"action": {"type": "send_sms"}}])

    def test_month_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            parse_rules([{"condition": {"type": "month_in", "months": [13]}, "action": {"type": "skip"}}])

    def test_discount_over_hundred_percent_rejected(self):
        with pytest.raises(ValidationError):
            parse_rules([{"action": {"type": "apply_discount", "percent": 150}}])

    def test_unexpected_fields_rejected(self):
        with pytest.raises(ValidationError):
            parse_rules([{"action": {"type": "skip"}, "priority": 1}])


class TestApplyRules:
    """Rule evaluation against the due date being generated."""

    def test_no_rules_leaves_draft_unchanged(self):
        draft = apply_rules([], draft_for(date(2024, 5, 1)))

        assert draft.total == Decimal("110.00")
        assert draft.skip is False
        assert draft.applied == []

    def test_append_note_to_existing_notes(self):
        rules = parse_rules([{"action": {"type": "append_note", "text": "Payable in 14 days"}}])

        draft = apply_rules(rules, draft_for(date(2024, 5, 1), notes="Monthly retainer"))

        assert draft.notes == "Monthly retainer\nPayable in 14 days"

    def test_discount_scales_subtotal_and_tax(self):
        rules = parse_rules([{"action": {"type": "apply_discount", "percent": "10"}}])

        draft = apply_rules(rules, draft_for(date(2024, 5, 1)))

        assert draft.subtotal == Decimal("90.00")
        assert draft.tax == Decimal("9.00")
        assert draft.total == Decimal("99.00")

    def test_month_condition_only_matches_its_months(self):
        rules = parse_rules([
            {"condition": {"type": "month_in", "months": [12]}, "action": {"type": "apply_discount", "percent": 50}}
        ])

        june = apply_rules(rules, draft_for(date(2024, 6, 1)))
        december = apply_rules(rules, draft_for(date(2024, 12, 1)))

        assert june.total == Decimal("110.00")
        assert december.total == Decimal("55.00")

    def test_skip_stops_evaluation(self):
        rules = parse_rules([
            {"condition": {"type": "month_in", "months": [1]}, "action": {"type": "skip"}},
            {"action": {"type": "append_note", "text": "never added"}},
        ])

        draft = apply_rules(rules, draft_for(date(2025, 1, 15)))

        assert draft.skip is True
        assert draft.notes is None
        assert draft.applied == ["skip"]


class TestAdvanceDueDate:
    """Calendar arithmetic per frequency."""

    def test_weekly(self):
        assert advance_due_date(date(2024, 12, 28), RecurringFrequency.weekly) == date(2025, 1, 4)

    def test_monthly_clamps_to_month_end(self):
        assert advance_due_date(date(2024, 1, 31), RecurringFrequency.monthly) == date(2024, 2, 29)

    def test_monthly_non_leap_year(self):
        assert advance_due_date(date(2023, 1, 31), RecurringFrequency.monthly) == date(2023, 2, 28)

    def test_quarterly(self):
        assert advance_due_date(date(2024, 11, 30), RecurringFrequency.quarterly) == date(2025, 2, 28)

    def test_annually_from_leap_day(self):
        assert advance_due_date(date(2024, 2, 29), RecurringFrequency.annually) == date(2025, 2, 28)

    def test_accepts_stored_string_value(self):
        assert advance_due_date(date(2024, 3, 15), "monthly") == date(2024, 4, 15)


class TestStateMachine:
    """Template lifecycle transitions."""

    @pytest.mark.parametrize("current,requested", [
        (RecurringState.draft, RecurringState.active),
        (RecurringState.active, RecurringState.paused),
        (RecurringState.paused, RecurringState.active),
        (RecurringState.active, RecurringState.canceled),
        (RecurringState.paused, RecurringState.canceled),
    ])
    def test_allowed(self, current, requested):
        assert can_transition(current, requested) is True

    @pytest.mark.parametrize("current,requested", [
        (RecurringState.draft, RecurringState.paused),
        (RecurringState.draft, RecurringState.canceled),
        (RecurringState.active, RecurringState.draft),
        (RecurringState.paused, RecurringState.draft),
        (RecurringState.active, RecurringState.active),
    ])
    def test_rejected(self, current, requested):
        assert can_transition(current, requested) is False

    def test_canceled_is_terminal(self):
        assert ALLOWED_TRANSITIONS[RecurringState.canceled] == set()
        for state in RecurringState:
            assert can_transition(RecurringState.canceled, state) is False
