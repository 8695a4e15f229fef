from __future__ import annotations

from pathlib import Path

from hypothesis import given, settings
from hypothesis import strategies as st

from chainmind.domain.models import Decision, DecisionRecord, ExecutionResult, MarketSnapshot
from chainmind.services.decision_ledger import DecisionLedger


def test_ledger_evicts_oldest_beyond_capacity(make_record) -> None:
    ledger = DecisionLedger(max_records=1000)
    records = [make_record(i) for i in range(1001)]
    for record in records:
        ledger.append(record)

    assert len(ledger) == 1000
    assert ledger.by_id(records[0].id) is None
    assert ledger.by_id(records[1].id) is records[1]
    assert ledger.by_id(records[-1].id) is records[-1]


def test_recent_is_newest_first(make_record) -> None:
    ledger = DecisionLedger(max_records=10)
    for i in range(5):
        ledger.append(make_record(i))

    assert [r.id for r in ledger.recent(3)] == [make_record(i).id for i in (4, 3, 2)]
    assert len(ledger.recent(50)) == 5
    assert ledger.recent(0) == []
    assert ledger.recent(-1) == []


def test_iteration_is_oldest_first(make_record) -> None:
    ledger = DecisionLedger(max_records=3)
    for i in range(4):
        ledger.append(make_record(i))

    assert [r.id for r in ledger] == [make_record(i).id for i in (1, 2, 3)]


def test_stats_round_success_rate_and_count_actions(make_record) -> None:
    ledger = DecisionLedger()
    ledger.append(make_record(0, success=True, action="hold"))
    ledger.append(make_record(1, success=False, action="rebalance"))
    ledger.append(make_record(2, success=False, action="rebalance"))

    stats = ledger.stats()

    assert stats.total == 3
    assert stats.successes == 1
    assert stats.success_rate_percent == 33.33
    assert stats.counts_by_action == {"hold": 1, "rebalance": 2}


def test_stats_of_empty_ledger() -> None:
    stats = DecisionLedger().stats()
    assert stats.total == 0
    assert stats.success_rate_percent == 0.0
    assert stats.counts_by_action == {}


def test_journal_round_trip(make_record, tmp_path: Path) -> None:
    journal = tmp_path / "journal.jsonl"
    ledger = DecisionLedger(journal_path=journal)
    for i in range(3):
        ledger.append(make_record(i, success=i != 1, action="rebalance"))

    restored = DecisionLedger.from_journal(journal)

    assert [r.id for r in restored] == [r.id for r in ledger]
    assert restored.by_id(make_record(1).id).execution_result.error == "boom"
    assert restored.recent(1)[0].decision.from_chain == "ethereum"
    assert restored.recent(1)[0].market_context.successful()[0].token == "USDC"
    assert restored.journal_path is None


def test_journal_keeps_only_the_tail(make_record, tmp_path: Path) -> None:
    journal = tmp_path / "journal.jsonl"
    writer = DecisionLedger(journal_path=journal)
    for i in range(6):
        writer.append(make_record(i))

    restored = DecisionLedger.from_journal(journal, max_records=2, keep_journal=True)

    assert [r.id for r in restored] == [make_record(4).id, make_record(5).id]
    assert restored.journal_path == journal


def test_corrupt_journal_lines_are_skipped(make_record, tmp_path: Path, caplog) -> None:
    journal = tmp_path / "journal.jsonl"
    journal.write_text(
        make_record(0).model_dump_json() + "\n" + "{not json\n\n" + make_record(1).model_dump_json() + "\n",
        encoding="utf-8",
    )

    restored = DecisionLedger.from_journal(journal)

    assert len(restored) == 2
    assert "decision_journal_line_skipped" in caplog.text


def test_journal_write_failure_keeps_record_in_memory(make_record, tmp_path: Path, caplog) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    ledger = DecisionLedger(journal_path=blocker / "journal.jsonl")

    ledger.append(make_record(0))

    assert len(ledger) == 1
    assert ledger.by_id(make_record(0).id) is not None
    assert "decision_journal_write_failed" in caplog.text


def test_missing_journal_gives_empty_ledger(tmp_path: Path) -> None:
    assert len(DecisionLedger.from_journal(tmp_path / "absent.jsonl")) == 0


@settings(max_examples=40, deadline=None)
@given(capacity=st.integers(min_value=1, max_value=20), appends=st.integers(min_value=0, max_value=60))
def test_size_never_exceeds_capacity(capacity: int, appends: int) -> None:
    ledger = DecisionLedger(max_records=capacity)
    for i in range(appends):
        ledger.append(_record(i))

    assert len(ledger) == min(capacity, appends)
    if appends:
        assert ledger.recent(1)[0].id == _record(appends - 1).id


def _record(index: int) -> DecisionRecord:
    decision_id = f"decision_{index}"
    result = ExecutionResult(decision_id=decision_id, success=True)
    return DecisionRecord(
        id=decision_id,
        decision=Decision(action="hold", reason="r", confidence=0.9),
        market_context=MarketSnapshot(),
        execution_result=result,
        timestamp=result.timestamp,
    )
