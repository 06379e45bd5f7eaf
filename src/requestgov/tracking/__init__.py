"""Execution ledger and failure classification."""

from requestgov.tracking.classifier import FailureCategory, classify_exception, classify_failure
from requestgov.tracking.ledger import ExecutionLedger, ExecutionMeta, GovernorStats

__all__ = [
    "ExecutionLedger",
    "ExecutionMeta",
    "FailureCategory",
    "GovernorStats",
    "classify_exception",
    "classify_failure",
]
