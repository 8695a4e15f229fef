from __future__ import annotations

import logging
from collections import Counter, deque
from collections.abc import Iterator
from pathlib import Path

from pydantic import ValidationError

from chainmind.domain.models import DecisionRecord, LedgerStats

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 1000


class DecisionLedger:
    """Bounded, insertion-ordered history of executed decisions.

    Records are evicted oldest-first when an append pushes the size past
    ``max_records``. When ``journal_path`` is set every append is also
    written as one JSON line.
    """

    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        *,
        journal_path: str | Path | None = None,
    ) -> None:
        if max_records < 1:
            raise ValueError("max_records must be >= 1")
        self.max_records = max_records
        self.journal_path = Path(journal_path) if journal_path else None
        self._records: deque[DecisionRecord] = deque()
        self._by_id: dict[str, DecisionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[DecisionRecord]:
        return iter(tuple(self._records))

    def append(self, record: DecisionRecord) -> None:
        self._insert(record)
        if self.journal_path is not None:
            try:
                self._write_journal(self.journal_path, record)
            except OSError as exc:
                # the in-memory window stays authoritative for this process
                logger.error(
                    "decision_journal_write_failed",
                    extra={
                        "extra": {
                            "decision_id": record.id,
                            "path": str(self.journal_path),
                            "error_type": type(exc).__name__,
                            "error": str(exc),
                        }
                    },
                )
        logger.info("decision_recorded", extra={"extra": {"decision_id": record.id}})

    @staticmethod
    def _write_journal(path: Path, record: DecisionRecord) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(record.model_dump_json())
            handle.write("\n")

    def _insert(self, record: DecisionRecord) -> None:
        self._records.append(record)
        self._by_id[record.id] = record
        while len(self._records) > self.max_records:
            evicted = self._records.popleft()
            if self._by_id.get(evicted.id) is evicted:
                del self._by_id[evicted.id]

    def recent(self, n: int) -> list[DecisionRecord]:
        if n <= 0:
            return []
        newest_first = reversed(self._records)
        return [record for _, record in zip(range(n), newest_first, strict=False)]

    def by_id(self, decision_id: str) -> DecisionRecord | None:
        return self._by_id.get(decision_id)

    def stats(self) -> LedgerStats:
        total = len(self._records)
        successes = sum(1 for record in self._records if record.execution_result.success)
        rate = round(successes / total * 100, 2) if total else 0.0
        counts = Counter(record.decision.action for record in self._records)
        return LedgerStats(
            total=total,
            successes=successes,
            success_rate_percent=rate,
            counts_by_action=dict(counts),
        )

    @classmethod
    def from_journal(
        cls,
        path: str | Path,
        max_records: int = DEFAULT_MAX_RECORDS,
        *,
        keep_journal: bool = False,
    ) -> DecisionLedger:
        """Rebuild the in-memory window from the tail of a JSONL journal."""
        journal = Path(path)
        ledger = cls(max_records, journal_path=journal if keep_journal else None)
        if not journal.exists():
            return ledger

        tail: deque[tuple[int, str]] = deque(maxlen=max_records)
        with journal.open(encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                if line.strip():
                    tail.append((line_no, line))

        for line_no, line in tail:
            try:
                record = DecisionRecord.model_validate_json(line)
            except ValidationError as exc:
                logger.warning(
                    "decision_journal_line_skipped",
                    extra={
                        "extra": {
                            "path": str(journal),
                            "line": line_no,
                            "errors": exc.error_count(),
                        }
                    },
                )
                continue
            ledger._insert(record)
        return ledger
