"""
Payment Matching Rules

Pairs pending bank deposits with open invoices.

Primary Match Keys:
- amount: deposit amount equals invoice total within AMOUNT_TOLERANCE
- date: deposit date within DATE_WINDOW_DAYS of the invoice due date

Confidence Scoring:
- Same-day exact amount: 1.0
- Each day of distance costs 0.05, each cent of difference 0.1
- Floor of 0.5 (a pair that passes the tolerance test is always plausible)

Selection:
- Each transaction and each invoice is used at most once per run
- Ranked by smallest amount difference, then smallest date difference
"""

from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, List, Optional, Sequence, Tuple
import logging

from models.schemas import BankTransaction, Invoice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchCandidate:
    """A transaction/invoice pair that passed the amount and date test."""
    transaction_id: str
    invoice_id: str
    amount: Decimal
    amount_diff: Decimal
    date_diff_days: int
    confidence: float
    # Ordering key for deterministic selection
    sort_key: Tuple = field(compare=False, repr=False, default=())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "invoice_id": self.invoice_id,
            "amount": str(self.amount),
            "amount_diff": str(self.amount_diff),
            "date_diff_days": self.date_diff_days,
            "confidence": self.confidence
        }


@dataclass
class CandidateSearch:
    """Candidates found for one account, plus how much of the search ran."""
    candidates: List[MatchCandidate]
    transactions_considered: int
    invoices_considered: int
    truncated: bool = False


class PaymentMatchingRules:
    """
    Matching rules for bank deposits against outstanding invoices.

    The rules are pure: they take typed records and return candidates.
    Reading and writing the store is ReconciliationService's job.
    """

    AMOUNT_TOLERANCE = Decimal("0.01")
    DATE_WINDOW_DAYS = 7
    MAX_CANDIDATES = 5000

    MIN_CONFIDENCE = 0.5
    DAY_PENALTY = 0.05
    AMOUNT_PENALTY_PER_UNIT = 10.0

    def __init__(
        self,
        amount_tolerance: Optional[Decimal] = None,
        date_window_days: Optional[int] = None,
        max_candidates: Optional[int] = None
    ):
        if amount_tolerance is not None:
            self.AMOUNT_TOLERANCE = Decimal(str(amount_tolerance))
        if date_window_days is not None:
            self.DATE_WINDOW_DAYS = date_window_days
        if max_candidates is not None:
            self.MAX_CANDIDATES = max_candidates

    def is_candidate(self, transaction: BankTransaction, invoice: Invoice) -> bool:
        if invoice.due_date is None:
            return False
        amount_diff = abs(transaction.amount - invoice.total)
        date_diff = abs((transaction.date - invoice.due_date).days)
        return amount_diff < self.AMOUNT_TOLERANCE and date_diff <= self.DATE_WINDOW_DAYS

    def score(self, amount_diff: Decimal, date_diff_days: int) -> float:
        raw = 1.0 - self.DAY_PENALTY * date_diff_days - self.AMOUNT_PENALTY_PER_UNIT * float(amount_diff)
        return round(max(self.MIN_CONFIDENCE, raw), 4)

    def find_candidates(
        self,
        transactions: Sequence[BankTransaction],
        invoices: Sequence[Invoice]
    ) -> CandidateSearch:
        """
        Find every candidate pair.

        Invoices are indexed by due date so each transaction only looks at
        invoices inside its date window instead of the whole set. Once
        MAX_CANDIDATES is reached the scan stops (earliest transactions are
        scanned first) and the collected pairs are trimmed to the cap by
        rank.
        """
        dated = sorted(
            (inv for inv in invoices if inv.due_date is not None),
            key=lambda inv: (inv.due_date, inv.id)
        )
        due_dates = [inv.due_date for inv in dated]
        window = timedelta(days=self.DATE_WINDOW_DAYS)

        candidates: List[MatchCandidate] = []
        truncated = False

        for txn in sorted(transactions, key=lambda t: (t.date, t.id)):
            lo = bisect_left(due_dates, txn.date - window)
            hi = bisect_right(due_dates, txn.date + window)

            for inv in dated[lo:hi]:
                amount_diff = abs(txn.amount - inv.total)
                if amount_diff >= self.AMOUNT_TOLERANCE:
                    continue

                date_diff = abs((txn.date - inv.due_date).days)
                candidates.append(MatchCandidate(
                    transaction_id=txn.id,
                    invoice_id=inv.id,
                    amount=txn.amount,
                    amount_diff=amount_diff,
                    date_diff_days=date_diff,
                    confidence=self.score(amount_diff, date_diff),
                    sort_key=(amount_diff, date_diff, txn.date, txn.id, inv.id)
                ))

            if len(candidates) >= self.MAX_CANDIDATES:
                truncated = True
                logger.warning(
                    f"Candidate limit {self.MAX_CANDIDATES} reached after "
                    f"transaction {txn.id}; remaining transactions wait for the next run"
                )
                break

        if truncated:
            # The last transaction scanned can push past the cap
            candidates = sorted(candidates, key=lambda c: c.sort_key)[:self.MAX_CANDIDATES]

        return CandidateSearch(
            candidates=candidates,
            transactions_considered=len(transactions),
            invoices_considered=len(dated),
            truncated=truncated
        )

    def select_matches(self, candidates: Sequence[MatchCandidate]) -> List[MatchCandidate]:
        """
        Pick a one-to-one subset of candidates.

        Best-ranked pairs claim their transaction and invoice first; any
        later pair touching an already claimed record is dropped.
        """
        used_transactions = set()
        used_invoices = set()
        selected = []

        for candidate in sorted(candidates, key=lambda c: c.sort_key):
            if candidate.transaction_id in used_transactions:
                continue
            if candidate.invoice_id in used_invoices:
                continue
            used_transactions.add(candidate.transaction_id)
            used_invoices.add(candidate.invoice_id)
            selected.append(candidate)

        return selected


# Default rules instance
payment_rules = PaymentMatchingRules()
