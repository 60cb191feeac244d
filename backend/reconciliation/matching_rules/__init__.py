"""
Matching Rules Module
"""

from .payment_rules import PaymentMatchingRules, payment_rules, MatchCandidate, CandidateSearch

__all__ = ["PaymentMatchingRules", "payment_rules", "MatchCandidate", "CandidateSearch"]
