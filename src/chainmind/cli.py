from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from chainmind.config import Settings
from chainmind.domain.errors import ConfigurationError, DecisionNotFoundError
from chainmind.logging_utils import setup_logging
from chainmind.observability import configure_instrumentation, flush_instrumentation
from chainmind.services.decision_ledger import DecisionLedger
from chainmind.services.runtime_factory import (
    Runtime,
    build_llm_client,
    build_oracle,
    build_runtime,
    emergency_stop_requested,
)
from chainmind.services.strategy_monitor import build_daily_report

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="chainmind",
        epilog=(
            "Configuration comes from environment variables or a .env file "
            "(DATA_API_KEY, LLM_API_KEY, ETHEREUM_RPC_URL, VAULT_ADDRESS, EXECUTOR_ADDRESS, ...)."
        ),
    )
    parser.add_argument("--env-file", default=None, help="Optional dotenv file to load")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one gated decision cycle")
    run_parser.add_argument("--loop", action="store_true", help="Run continuously")
    run_parser.add_argument(
        "--cycle-seconds",
        type=int,
        default=60,
        help="Sleep seconds between evaluations in --loop mode",
    )
    run_parser.add_argument(
        "--max-cycles",
        type=int,
        default=None,
        help="Maximum cycles (default: infinite in --loop mode; use -1 for infinite)",
    )
    run_parser.add_argument(
        "--market-refresh-seconds",
        type=int,
        default=60,
        help="Minimum seconds between market cache refreshes in --loop mode",
    )

    status_parser = subparsers.add_parser("status", help="Show ledger stats and gate state")
    status_parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    history_parser = subparsers.add_parser("history", help="Show recent decisions, newest first")
    history_parser.add_argument("--last", type=int, default=10, help="Number of decisions")

    explain_parser = subparsers.add_parser("explain", help="Explain a recorded decision")
    explain_parser.add_argument("decision_id", help="Decision id, e.g. decision_1700000000000_ab12cd34e")

    chat_parser = subparsers.add_parser("chat", help="Ask the strategist a free-form question")
    chat_parser.add_argument("message", help="Question to ask")
    chat_parser.add_argument(
        "--context-file",
        default=None,
        help="JSON file listing earlier messages as {role, content} objects",
    )

    subparsers.add_parser("report", help="Print the daily strategy report")

    stop_parser = subparsers.add_parser("emergency-stop", help="Engage or clear the emergency stop")
    stop_parser.add_argument("--clear", action="store_true", help="Remove the emergency stop")

    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args.env_file)
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )

    try:
        if args.command == "run":
            return run_command(
                settings=settings,
                loop_enabled=args.loop,
                cycle_seconds=args.cycle_seconds,
                max_cycles=args.max_cycles,
                market_refresh_seconds=args.market_refresh_seconds,
            )
        if args.command == "status":
            return run_status(settings=settings, json_output=args.json)
        if args.command == "history":
            return run_history(settings=settings, last=args.last)
        if args.command == "explain":
            return run_explain(settings=settings, decision_id=args.decision_id)
        if args.command == "chat":
            return run_chat(settings=settings, message=args.message, context_file=args.context_file)
        if args.command == "report":
            return run_report(settings=settings)
        if args.command == "emergency-stop":
            return run_emergency_stop(settings=settings, clear=args.clear)
    except ConfigurationError as exc:
        logger.error("configuration_error", extra={"extra": {"error": str(exc)}})
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "command_failed",
            extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
        )
        return 1
    finally:
        flush_instrumentation()

    parser.error(f"unknown command {args.command}")
    return 2


def _load_settings(env_file: str | None) -> Settings:
    if env_file in (None, ""):
        return Settings()
    return Settings(_env_file=env_file)


def _read_ledger(settings: Settings) -> DecisionLedger:
    if not settings.ledger_journal_path:
        return DecisionLedger(settings.ledger_max_records)
    return DecisionLedger.from_journal(settings.ledger_journal_path, settings.ledger_max_records)


def run_command(
    *,
    settings: Settings,
    loop_enabled: bool,
    cycle_seconds: int,
    max_cycles: int | None,
    market_refresh_seconds: int,
) -> int:
    if cycle_seconds < 0 or market_refresh_seconds < 0:
        print("cycle-seconds and market-refresh-seconds must be >= 0")
        return 2
    if max_cycles is not None and (max_cycles == 0 or max_cycles < -1):
        print("max-cycles must be >= 1, or -1 for infinite")
        return 2
    if max_cycles == -1:
        max_cycles = None

    runtime = build_runtime(settings)
    try:
        return asyncio.run(
            _run_runtime(
                runtime,
                loop_enabled=loop_enabled,
                cycle_seconds=cycle_seconds,
                max_cycles=max_cycles,
                market_refresh_seconds=market_refresh_seconds,
            )
        )
    except KeyboardInterrupt:
        logger.info("loop_runner_stopped", extra={"extra": {"reason": "keyboard_interrupt"}})
        print("run: interrupted, shutting down cleanly")
        return 0


async def _run_runtime(
    runtime: Runtime,
    *,
    loop_enabled: bool,
    cycle_seconds: int,
    max_cycles: int | None,
    market_refresh_seconds: int,
) -> int:
    monitor = runtime.monitor
    try:
        await monitor.start()
        if not loop_enabled:
            result = await monitor.evaluate_and_execute()
            print(result.model_dump_json() if result is not None else "null")
            return 0

        last_refresh = time.monotonic()

        async def _cycle() -> int:
            nonlocal last_refresh
            monitor.set_emergency_stop(emergency_stop_requested(runtime.settings))
            if time.monotonic() - last_refresh >= market_refresh_seconds:
                await monitor.refresh_market_data()
                last_refresh = time.monotonic()
            result = await monitor.evaluate_and_execute()
            if result is not None:
                print(result.model_dump_json(), flush=True)
            return 0

        return await run_with_optional_loop(
            command="run",
            cycle_fn=_cycle,
            cycle_seconds=cycle_seconds,
            max_cycles=max_cycles,
        )
    finally:
        await monitor.stop()
        await runtime.aclose()


async def run_with_optional_loop(
    *,
    command: str,
    cycle_fn: Callable[[], Awaitable[int]],
    cycle_seconds: int,
    max_cycles: int | None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    cycle = 0
    last_rc = 0
    logger.info(
        "loop_runner_started",
        extra={
            "extra": {"command": command, "cycle_seconds": cycle_seconds, "max_cycles": max_cycles}
        },
    )
    while True:
        cycle += 1
        try:
            last_rc = await cycle_fn()
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "loop_cycle_failed",
                extra={
                    "extra": {
                        "command": command,
                        "cycle": cycle,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            last_rc = 1

        if max_cycles is not None and cycle >= max_cycles:
            logger.info(
                "loop_runner_completed",
                extra={"extra": {"command": command, "cycles": cycle, "last_rc": last_rc}},
            )
            return last_rc
        await sleep(max(1, cycle_seconds))


def run_status(*, settings: Settings, json_output: bool) -> int:
    ledger = _read_ledger(settings)
    stats = ledger.stats()
    payload = {
        "ledger": stats.model_dump(),
        "emergency_stop": emergency_stop_requested(settings),
        "emergency_stop_file": settings.emergency_stop_file,
        "gate": {
            "max_gas_price_gwei": settings.max_gas_price_gwei,
            "monitored_networks": settings.gas_monitored_networks,
            "max_price_change_24h": settings.max_price_change_24h,
            "min_interval_seconds": settings.min_evaluation_interval_seconds,
        },
        "validator": {
            "min_confidence": settings.min_confidence,
            "min_transaction_amount": settings.min_transaction_amount,
        },
    }
    if json_output:
        print(json.dumps(payload, sort_keys=True))
        return 0

    print(f"decisions: {stats.total} (successes: {stats.successes}, rate: {stats.success_rate_percent}%)")
    for action, count in sorted(stats.counts_by_action.items()):
        print(f"  {action}: {count}")
    print(f"emergency stop: {'ON' if payload['emergency_stop'] else 'off'}")
    print(
        "gate: gas<={max_gas_price_gwei:g} gwei on {networks}, |24h change|<={max_price_change_24h:g}, "
        "interval>={min_interval_seconds}s".format(
            networks=",".join(settings.gas_monitored_networks) or "-",
            **payload["gate"],
        )
    )
    return 0


def run_history(*, settings: Settings, last: int) -> int:
    if last < 1:
        print("--last must be >= 1")
        return 2
    ledger = _read_ledger(settings)
    for record in ledger.recent(last):
        print(
            json.dumps(
                {
                    "id": record.id,
                    "timestamp": record.timestamp.isoformat(),
                    "action": record.decision.action,
                    "confidence": record.decision.confidence,
                    "success": record.execution_result.success,
                    "transaction_hash": record.execution_result.transaction_hash,
                    "error": record.execution_result.error,
                },
                sort_keys=True,
            )
        )
    return 0


def run_explain(*, settings: Settings, decision_id: str) -> int:
    ledger = _read_ledger(settings)
    record = ledger.by_id(decision_id)
    if record is None:
        print(str(DecisionNotFoundError(decision_id)), file=sys.stderr)
        return 1

    client = build_llm_client(settings)
    oracle = build_oracle(settings, client)

    async def _explain() -> str:
        try:
            return await oracle.explain_decision(record)
        finally:
            await client.close()

    print(asyncio.run(_explain()))
    return 0


def _load_chat_context(context_file: str | None) -> list[dict[str, str]]:
    if not context_file:
        return []
    raw = json.loads(Path(context_file).read_text(encoding="utf-8"))
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise ValueError("context file must hold a JSON list of message objects")
    return raw


def run_chat(*, settings: Settings, message: str, context_file: str | None) -> int:
    try:
        previous = _load_chat_context(context_file)
    except (OSError, ValueError) as exc:
        print(f"Invalid chat context: {exc}", file=sys.stderr)
        return 2

    client = build_llm_client(settings)
    oracle = build_oracle(settings, client)

    async def _chat() -> str:
        try:
            return await oracle.chat(message, previous)
        finally:
            await client.close()

    print(asyncio.run(_chat()))
    return 0


def run_report(*, settings: Settings) -> int:
    report = build_daily_report(_read_ledger(settings), None, datetime.now(UTC))
    print(report.model_dump_json(indent=2))
    return 0


def run_emergency_stop(*, settings: Settings, clear: bool) -> int:
    stop_file = Path(settings.emergency_stop_file)
    if clear:
        stop_file.unlink(missing_ok=True)
        logger.warning("emergency_stop_file_removed", extra={"extra": {"path": str(stop_file)}})
        print(f"emergency stop cleared ({stop_file})")
        if settings.emergency_stop:
            print("note: EMERGENCY_STOP=true is still set in the environment")
        return 0

    stop_file.parent.mkdir(parents=True, exist_ok=True)
    stop_file.write_text(datetime.now(UTC).isoformat() + "\n", encoding="utf-8")
    logger.warning("emergency_stop_file_written", extra={"extra": {"path": str(stop_file)}})
    print(f"emergency stop engaged ({stop_file})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
