"""Shared error types for resilience_core."""


class ResilienceError(Exception):
    """Base exception for the resilience_core package."""


class RecoveryActionError(ResilienceError):
    """Raised when a single recovery action cannot be applied."""


class AuditError(ResilienceError):
    """Raised when the audit trail storage cannot be used."""
