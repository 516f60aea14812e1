from __future__ import annotations

import asyncio
import uuid
from collections import Counter, deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

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
from resilience_core.errors import AuditError
from resilience_core.logging import (
    LogSink,
    get_component_logger,
    log_error,
    log_exception,
    log_info,
)

SEGMENT_PREFIX = "audit-"
SEGMENT_SUFFIX = ".jsonl"
SYSTEM_ACTOR = "SYSTEM"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def segment_name(timestamp: datetime) -> str:
    """Return the monthly segment file name holding ``timestamp``."""
    stamp = f"{timestamp.year:04d}-{timestamp.month:02d}"
    return f"{SEGMENT_PREFIX}{stamp}{SEGMENT_SUFFIX}"


@dataclass(frozen=True)
class _SegmentRead:
    name: str
    entries: tuple[AuditEntry, ...]
    unparseable_lines: tuple[int, ...]


def _append_line(path: Path, line: str) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")


def _last_line(path: Path) -> str | None:
    if not path.exists():
        return None
    last: str | None = None
    with path.open(encoding="utf-8") as handle:
        for raw in handle:
            if raw.strip():
                last = raw
    return last


class AuditTrail:
    """Append-only, hash-chained audit log stored as monthly NDJSON segments.

    Every append runs under one lock so the chain has a total order; the file
    write itself happens in a worker thread. Reads scan the segment files and
    can run alongside appends. Each monthly segment starts its own chain.
    Integrity problems are reported, never repaired.
    """

    def __init__(
        self,
        audit_dir: Path | str,
        *,
        logger: LogSink | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
        default_actor: str = "AGENT",
        max_cached_entries: int = 1000,
    ) -> None:
        """Open (creating if needed) the audit directory and seed the chain.

        Args:
            audit_dir: Directory holding the ``audit-YYYY-MM.jsonl`` segments.
            logger: Structured log sink. Defaults to a structlog logger bound to
                the ``audit`` category.
            now_fn: Clock used to timestamp entries and pick segments.
            default_actor: Actor recorded for non-system entries.
            max_cached_entries: Size of the in-memory tail of recent entries.

        Raises:
            AuditError: If the directory cannot be created.
        """
        self._dir = Path(audit_dir).resolve()
        self._logger = (
            get_component_logger(__name__, "audit") if logger is None else logger
        )
        self._now = now_fn
        self._default_actor = default_actor
        self._recent: deque[AuditEntry] = deque(maxlen=max_cached_entries)
        self._lock = asyncio.Lock()
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise AuditError(f"audit directory unusable: {self._dir}") from exc

        active = self._dir / segment_name(now_fn())
        self._segment = active.name
        self._last_hash = self._load_last_hash(active)
        log_info(
            self._logger,
            "audit.initialized",
            directory=str(self._dir),
            segment=active.name,
        )

    @property
    def directory(self) -> Path:
        return self._dir

    @property
    def last_hash(self) -> str:
        return self._last_hash

    def _load_last_hash(self, path: Path) -> str:
        try:
            line = _last_line(path)
            if line is None:
                return ""
            return AuditEntry.model_validate_json(line).hash
        except (OSError, ValidationError, ValueError):
            log_exception(self._logger, "audit.seed.failed", segment=path.name)
            return ""

    async def _append(
        self,
        *,
        action: str,
        category: AuditCategory,
        actor: str,
        details: dict[str, Any],
        prior_state: dict[str, Any] | None = None,
        new_state: dict[str, Any] | None = None,
    ) -> AuditEntry:
        async with self._lock:
            timestamp = self._now()
            path = self._dir / segment_name(timestamp)
            if path.name != self._segment:
                self._segment = path.name
                self._last_hash = self._load_last_hash(path)
            draft = AuditEntry(
                id=f"audit_{uuid.uuid4().hex}",
                timestamp=timestamp,
                action=action,
                category=category,
                actor=actor,
                details=details,
                prior_state=prior_state,
                new_state=new_state,
                previous_hash=self._last_hash,
            )
            entry = draft.model_copy(update={"hash": draft.compute_hash()})
            await asyncio.to_thread(
                _append_line, path, entry.model_dump_json(by_alias=True)
            )
            self._last_hash = entry.hash
            self._recent.append(entry)

        log_info(
            self._logger,
            "audit.recorded",
            audit_category=str(category),
            action=action,
            actor=actor,
            id=entry.id,
        )
        return entry

    async def record_financial_transaction(
        self, transaction: FinancialTransaction
    ) -> AuditEntry:
        """Record a money movement with the balance before and after it."""
        kind = TransactionType(transaction.type)
        return await self._append(
            action=f"FINANCIAL_{kind.value.upper()}",
            category=AuditCategory.FINANCIAL,
            actor=self._default_actor,
            details={
                "transaction_id": transaction.transaction_id,
                "type": kind.value,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "description": transaction.description,
                "entity_id": transaction.entity_id,
            },
            prior_state={"balance": transaction.balance_before},
            new_state={"balance": transaction.balance_after},
        )

    async def record_decision(self, decision: Decision) -> AuditEntry:
        """Record a decision together with its outcome and impact."""
        return await self._append(
            action=f"DECISION_{decision.type.upper()}",
            category=AuditCategory.DECISION,
            actor=self._default_actor,
            details={
                "decision_id": decision.decision_id,
                "type": decision.type,
                "reasoning": decision.reasoning,
                "confidence": decision.confidence,
                "alternatives": list(decision.alternatives),
            },
            new_state={"outcome": decision.outcome, "impact": dict(decision.impact)},
        )

    async def record_entity_action(
        self,
        action: str,
        entity_id: str,
        details: dict[str, Any] | None = None,
        *,
        prior_state: dict[str, Any] | None = None,
        new_state: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> AuditEntry:
        """Record a lifecycle action applied to one managed entity."""
        return await self._append(
            action=f"ENTITY_{action.upper()}",
            category=AuditCategory.ENTITY,
            actor=self._default_actor if actor is None else actor,
            details={"entity_id": entity_id, **(details or {})},
            prior_state=prior_state,
            new_state=new_state,
        )

    async def record_system_event(
        self,
        event: str,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Record a process-level event such as recovery mode changes."""
        return await self._append(
            action=f"SYSTEM_{event.upper()}",
            category=AuditCategory.SYSTEM,
            actor=SYSTEM_ACTOR,
            details=dict(details or {}),
        )

    def recent_entries(self, limit: int | None = None) -> list[AuditEntry]:
        """Return the newest cached entries, oldest first."""
        entries = list(self._recent)
        if limit is None:
            return entries
        return entries[-limit:] if limit > 0 else []

    def _segment_paths(self) -> list[Path]:
        return sorted(self._dir.glob(f"{SEGMENT_PREFIX}*{SEGMENT_SUFFIX}"))

    def _read_segment(self, path: Path) -> _SegmentRead:
        entries: list[AuditEntry] = []
        unparseable: list[int] = []
        with path.open(encoding="utf-8") as handle:
            for line_number, raw in enumerate(handle, start=1):
                line = raw.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.model_validate_json(line))
                except ValidationError:
                    unparseable.append(line_number)
                    log_error(
                        self._logger,
                        "audit.entry.unparseable",
                        segment=path.name,
                        line=line_number,
                    )
        return _SegmentRead(path.name, tuple(entries), tuple(unparseable))

    def _read_all(self) -> list[_SegmentRead]:
        return [self._read_segment(path) for path in self._segment_paths()]

    def _iter_entries(self, segments: list[_SegmentRead]) -> Iterator[AuditEntry]:
        for segment in segments:
            yield from segment.entries

    async def search(
        self,
        criteria: AuditSearchCriteria | None = None,
    ) -> list[AuditEntry]:
        """Scan every segment and return entries matching all given filters."""
        resolved = AuditSearchCriteria() if criteria is None else criteria
        segments = await asyncio.to_thread(self._read_all)
        return [
            entry for entry in self._iter_entries(segments) if resolved.matches(entry)
        ]

    async def verify_integrity(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> IntegrityReport:
        """Recompute digests and check chain links within each segment.

        The first checked entry of every segment anchors the chain; each later
        entry must reference the hash of the entry before it.
        """
        window = AuditSearchCriteria(start=start, end=end)
        segments = await asyncio.to_thread(self._read_all)
        errors: list[str] = []
        checked = 0
        for segment in segments:
            errors.extend(
                f"Unparseable entry in {segment.name} at line {line_number}"
                for line_number in segment.unparseable_lines
            )
            previous_hash: str | None = None
            for entry in segment.entries:
                if not window.matches(entry):
                    continue
                checked += 1
                if previous_hash is not None and entry.previous_hash != previous_hash:
                    errors.append(f"Hash chain broken at entry {entry.id}")
                if entry.compute_hash() != entry.hash:
                    errors.append(f"Hash mismatch for entry {entry.id}")
                previous_hash = entry.hash

        report = IntegrityReport(
            valid=not errors,
            errors=tuple(errors),
            entries_checked=checked,
        )
        if not report.valid:
            log_error(
                self._logger,
                "audit.integrity.failed",
                entries_checked=checked,
                error_count=len(errors),
                first_error=errors[0],
            )
        return report

    async def generate_report(self, start: datetime, end: datetime) -> AuditReport:
        """Summarize entries between ``start`` and ``end`` inclusive."""
        entries = await self.search(AuditSearchCriteria(start=start, end=end))
        by_category: Counter[str] = Counter()
        by_action: Counter[str] = Counter()
        revenue = 0.0
        expenses = 0.0
        for entry in entries:
            by_category[entry.category.value] += 1
            by_action[entry.action] += 1
            if entry.category != AuditCategory.FINANCIAL:
                continue
            amount = float(entry.details.get("amount", 0.0) or 0.0)
            kind = entry.details.get("type")
            if kind == TransactionType.REVENUE:
                revenue += amount
            elif kind in (TransactionType.EXPENSE, TransactionType.FEE):
                expenses += amount
        return AuditReport(
            total_entries=len(entries),
            by_category=dict(by_category),
            by_action=dict(by_action),
            total_revenue=revenue,
            total_expenses=expenses,
        )

    async def export_trail(
        self,
        criteria: AuditSearchCriteria | None = None,
        output_path: Path | str | None = None,
    ) -> AuditExport:
        """Build a JSON-serializable snapshot, optionally writing it to a file."""
        resolved = AuditSearchCriteria() if criteria is None else criteria
        entries = await self.search(resolved)
        export = AuditExport(
            export_date=self._now(),
            criteria=resolved,
            entries_count=len(entries),
            entries=entries,
        )
        if output_path is not None:
            target = Path(output_path)
            await asyncio.to_thread(
                target.write_text,
                export.model_dump_json(by_alias=True, indent=2),
                encoding="utf-8",
            )
            log_info(
                self._logger,
                "audit.exported",
                path=str(target),
                entries_count=len(entries),
            )
        return export
