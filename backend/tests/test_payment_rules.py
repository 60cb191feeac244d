"""
Unit Tests for Payment Matching Rules

Tests candidate detection, confidence scoring, the candidate cap and
one-to-one selection.

Run with: pytest tests/test_payment_rules.py -v
"""

import pytest
from datetime import date
from decimal import Decimal

from models.enums import InvoiceStatus
from models.schemas import BankTransaction, Invoice
from reconciliation.matching_rules.payment_rules import PaymentMatchingRules, MatchCandidate

ACCOUNT = "11111111-1111-1111-1111-111111111111"


def make_txn(txn_id: str, amount: str, on: date) -> BankTransaction:
    return BankTransaction(
        id=txn_id,
        account_id=ACCOUNT,
        bank_account_id="bank-1",
        amount=Decimal(amount),
        date=on,
        status="pending"
    )


def make_invoice(inv_id: str, total: str, due: date = None, status=InvoiceStatus.sent) -> Invoice:
    return Invoice(
        id=inv_id,
        account_id=ACCOUNT,
        client_id="client-1",
        number=f"INV-{inv_id}",
        status=status,
        issue_date=date(2024, 3, 1),
        due_date=due,
        subtotal=Decimal(total),
        total=Decimal(total)
    )


@pytest.fixture
def rules():
    return PaymentMatchingRules()


class TestCandidateDetection:
    """Amount and date window tests."""

    def test_exact_amount_within_window(self, rules):
        txn = make_txn("t1", "150.00", date(2024, 3, 10))
        inv = make_invoice("i1", "150.00", date(2024, 3, 12))

        assert rules.is_candidate(txn, inv) is True

    def test_different_amount_is_not_candidate(self, rules):
        txn = make_txn("t1", "150.00", date(2024, 3, 10))
        inv = make_invoice("i1", "200.00", date(2024, 3, 10))

        assert rules.is_candidate(txn, inv) is False

    def test_one_cent_difference_is_outside_tolerance(self, rules):
        txn = make_txn("t1", "150.00", date(2024, 3, 10))
        inv = make_invoice("i1", "150.01", date(2024, 3, 10))

        assert rules.is_candidate(txn, inv) is False

    def test_exactly_seven_days_is_candidate(self, rules):
        txn = make_txn("t1", "99.95", date(2024, 3, 17))
        inv = make_invoice("i1", "99.95", date(2024, 3, 10))

        assert rules.is_candidate(txn, inv) is True

    def test_eight_days_is_not_candidate(self, rules):
        txn = make_txn("t1", "99.95", date(2024, 3, 2))
        inv = make_invoice("i1", "99.95", date(2024, 3, 10))

        assert rules.is_candidate(txn, inv) is False

    def test_invoice_without_due_date_never_matches(self, rules):
        txn = make_txn("t1", "150.00", date(2024, 3, 10))
        inv = make_invoice("i1", "150.00", None)

        assert rules.is_candidate(txn, inv) is False
        search = rules.find_candidates([txn], [inv])
        assert search.candidates == []
        assert search.invoices_considered == 0

    def test_custom_tolerances(self):
        rules = PaymentMatchingRules(amount_tolerance=0.5, date_window_days=2)
        txn = make_txn("t1", "150.00", date(2024, 3, 10))

        assert rules.is_candidate(txn, make_invoice("i1", "150.40", date(2024, 3, 12))) is True
        assert rules.is_candidate(txn, make_invoice("i2", "150.00", date(2024, 3, 13))) is False


class TestConfidence:
    """Confidence scoring."""

    def test_same_day_exact_amount_is_full_confidence(self, rules):
        assert rules.score(Decimal("0"), 0) == 1.0

    def test_each_day_costs_five_points(self, rules):
        assert rules.score(Decimal("0"), 2) == 0.9

    def test_confidence_never_below_floor(self, rules):
        assert rules.score(Decimal("0.009"), 10) == 0.5

    def test_candidates_carry_confidence(self, rules):
        search = rules.find_candidates(
            [make_txn("t1", "150.00", date(2024, 3, 10))],
            [make_invoice("i1", "150.00", date(2024, 3, 12))]
        )

        assert len(search.candidates) == 1
        assert search.candidates[0].confidence == 0.9
        assert search.candidates[0].date_diff_days == 2


class TestFindCandidates:
    """Windowed candidate search."""

    def test_only_invoices_in_window_are_paired(self, rules):
        txns = [make_txn("t1", "100.00", date(2024, 3, 10))]
        invoices = [
            make_invoice("early", "100.00", date(2024, 2, 1)),
            make_invoice("near", "100.00", date(2024, 3, 8)),
            make_invoice("late", "100.00", date(2024, 4, 30)),
        ]

        search = rules.find_candidates(txns, invoices)

        assert [c.invoice_id for c in search.candidates] == ["near"]
        assert search.transactions_considered == 1
        assert search.invoices_considered == 3
        assert search.truncated is False

    def test_candidate_cap_truncates_search(self):
        rules = PaymentMatchingRules(max_candidates=2)
        txns = [make_txn(f"t{i}", "10.00", date(2024, 3, 10)) for i in range(3)]
        invoices = [make_invoice("i1", "10.00", date(2024, 3, 10))]

        search = rules.find_candidates(txns, invoices)

        assert search.truncated is True
        assert len(search.candidates) == 2

    def test_capped_search_keeps_best_ranked_pairs(self):
        rules = PaymentMatchingRules(max_candidates=2)
        txns = [make_txn("t1", "10.00", date(2024, 3, 10))]
        invoices = [
            make_invoice("far", "10.00", date(2024, 3, 13)),
            make_invoice("same-day", "10.00", date(2024, 3, 10)),
            make_invoice("next-day", "10.00", date(2024, 3, 11)),
        ]

        search = rules.find_candidates(txns, invoices)

        assert search.truncated is True
        assert [c.invoice_id for c in search.candidates] == ["same-day", "next-day"]


class TestSelectMatches:
    """One-to-one selection."""

    def test_two_transactions_one_invoice_yields_one_match(self, rules):
        txns = [
            make_txn("t1", "100.00", date(2024, 3, 12)),
            make_txn("t2", "100.00", date(2024, 3, 10)),
        ]
        invoices = [make_invoice("i1", "100.00", date(2024, 3, 10))]

        selected = rules.select_matches(rules.find_candidates(txns, invoices).candidates)

        assert len(selected) == 1
        # Closest date wins
        assert selected[0].transaction_id == "t2"

    def test_one_transaction_two_invoices_yields_one_match(self, rules):
        txns = [make_txn("t1", "100.00", date(2024, 3, 10))]
        invoices = [
            make_invoice("i1", "100.00", date(2024, 3, 14)),
            make_invoice("i2", "100.00", date(2024, 3, 11)),
        ]

        selected = rules.select_matches(rules.find_candidates(txns, invoices).candidates)

        assert [(c.transaction_id, c.invoice_id) for c in selected] == [("t1", "i2")]

    def test_each_record_used_once(self, rules):
        txns = [make_txn(f"t{i}", "50.00", date(2024, 3, 10 + i)) for i in range(3)]
        invoices = [make_invoice(f"i{i}", "50.00", date(2024, 3, 10 + i)) for i in range(3)]

        selected = rules.select_matches(rules.find_candidates(txns, invoices).candidates)

        assert len(selected) == 3
        assert len({c.transaction_id for c in selected}) == 3
        assert len({c.invoice_id for c in selected}) == 3
        assert all(c.date_diff_days == 0 for c in selected)

    def test_selection_is_deterministic(self, rules):
        a = MatchCandidate("t1", "i1", Decimal("5"), Decimal("0"), 1, 0.95, sort_key=(Decimal("0"), 1, date(2024, 1, 1), "t1", "i1"))
        b = MatchCandidate("t1", "i2", Decimal("5"), Decimal("0"), 1, 0.95, sort_key=(Decimal("0"), 1, date(2024, 1, 1), "t1", "i2"))

        assert rules.select_matches([b, a]) == rules.select_matches([a, b]) == [a]
