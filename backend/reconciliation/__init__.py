"""
Reconciliation Engine Module

Settles invoices from bank deposits:
- Amount and due-date proximity matching
- One-to-one selection per run
- Conditional updates so overlapping runs cannot double-apply
- Manual matching
"""

from reconciliation.matching_rules.payment_rules import (
    PaymentMatchingRules,
    MatchCandidate,
    CandidateSearch,
    payment_rules
)
from reconciliation.services.reconciliation_service import (
    ReconciliationService,
    ReconciliationRunResult
)
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Matching Rules
    'PaymentMatchingRules',
    'MatchCandidate',
    'CandidateSearch',
    'payment_rules',
    # Service
    'ReconciliationService',
    'ReconciliationRunResult',
    # Router
    'reconciliation_router'
]
