"""Tamper-evident, hash-chained audit trail."""

from resilience_core.audit.models import (
    AuditCategory,
    AuditEntry,
    AuditExport,
    AuditReport,
    AuditSearchCriteria,
    Decision,
    FinancialTransaction,
    IntegrityReport,
    TransactionType,
)
from resilience_core.audit.trail import AuditTrail, segment_name

__all__ = [
    "AuditCategory",
    "AuditEntry",
    "AuditExport",
    "AuditReport",
    "AuditSearchCriteria",
    "AuditTrail",
    "Decision",
    "FinancialTransaction",
    "IntegrityReport",
    "TransactionType",
    "segment_name",
]
