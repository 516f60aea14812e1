from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_CAMEL_CASE = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuditCategory(StrEnum):
    """Audit entry categories."""

    FINANCIAL = "financial"
    DECISION = "decision"
    ENTITY = "entity"
    SYSTEM = "system"


class TransactionType(StrEnum):
    """Financial transaction kinds recorded by the audit trail."""

    REVENUE = "revenue"
    EXPENSE = "expense"
    FEE = "fee"
    ADJUSTMENT = "adjustment"


class AuditEntry(BaseModel):
    """One hash-chained audit record.

    The persisted form uses camelCase keys. ``hash`` is the SHA-256 hex digest of
    the canonical JSON encoding of every other field, ``previousHash``
    included.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    id: str
    timestamp: datetime
    action: str
    category: AuditCategory
    actor: str
    details: dict[str, Any] = Field(default_factory=dict)
    prior_state: dict[str, Any] | None = None
    new_state: dict[str, Any] | None = None
    hash: str = ""
    previous_hash: str = ""

    def canonical_bytes(self) -> bytes:
        """Return the deterministic encoding the digest is computed over."""
        payload = self.model_dump(mode="json", by_alias=True, exclude={"hash"})
        return json.dumps(
            payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class AuditSearchCriteria(BaseModel):
    """Conjunctive search filters.

    ``action`` matches as a substring of the entry action; ``text`` matches
    case-insensitively anywhere in the serialized entry.
    Naive ``start`` and ``end`` bounds are read as UTC.
    """

    model_config = _CAMEL_CASE

    start: datetime | None = None
    end: datetime | None = None
    category: AuditCategory | None = None
    action: str | None = None
    actor: str | None = None
    text: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def matches(self, entry: AuditEntry) -> bool:
        if self.start is not None and entry.timestamp < self.start:
            return False
        if self.end is not None and entry.timestamp > self.end:
            return False
        if self.category is not None and entry.category != self.category:
            return False
        if self.action is not None and self.action not in entry.action:
            return False
        if self.actor is not None and entry.actor != self.actor:
            return False
        if self.text is not None:
            searchable = entry.model_dump_json(by_alias=True).lower()
            if self.text.lower() not in searchable:
                return False
        return True


class AuditExport(BaseModel):
    """Serialized snapshot of the entries matching one search."""

    model_config = _CAMEL_CASE

    export_date: datetime
    criteria: AuditSearchCriteria
    entries_count: int
    entries: list[AuditEntry]


@dataclass(frozen=True)
class FinancialTransaction:
    """Money movement recorded under the ``financial`` category."""

    transaction_id: str
    type: TransactionType
    amount: float
    balance_before: float
    balance_after: float
    description: str = ""
    currency: str = "USD"
    entity_id: str | None = None


@dataclass(frozen=True)
class Decision:
    """Decision recorded under the ``decision`` category."""

    decision_id: str
    type: str
    reasoning: str
    confidence: float
    alternatives: tuple[str, ...] = ()
    outcome: str | None = None
    impact: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IntegrityReport:
    """Outcome of one hash-chain verification pass."""

    valid: bool
    errors: tuple[str, ...]
    entries_checked: int


@dataclass(frozen=True)
class AuditReport:
    """Counts and financial totals over a date range."""

    total_entries: int
    by_category: dict[str, int]
    by_action: dict[str, int]
    total_revenue: float
    total_expenses: float

    @property
    def net_change(self) -> float:
        return self.total_revenue - self.total_expenses
