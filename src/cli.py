#!/usr/bin/env python3
"""Command-line interface for the Event Ingestion Core.

Commands:
  - ingest status   : Print the status snapshot (sources, queue, scheduler, metrics)
  - ingest run      : Run one source, or every due source, right now
  - ingest serve    : Run the scheduler and the worker until interrupted
  - ingest sources  : List registered sources
  - ingest action   : Perform an administrative action

Typical usage:
  python -m src.cli status
  python -m src.cli run --source 6f1c...
  python -m src.cli action trigger-source -p source_id=6f1c... -p delay_minutes=5
  python -m src.cli action create-source -p name="City Hall" -p base_url=https://example.org
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

from src.configs.settings import get_settings
from src.ingestion.errors import ScrapingError, SourceNotFoundError
from src.ingestion.status import ScrapingControl, build_control
from src.monitoring.logging import setup_logging


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="ingest", description="Event Ingestion Core CLI")
    p.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    p.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("status", help="Print ingestion status")

    pr = sub.add_parser("run", help="Run ingestion now, bypassing the queue")
    pr.add_argument("--source", "-s", default=None, help="Source id (default: all due sources)")

    sub.add_parser("serve", help="Run scheduler and worker until interrupted")

    ps = sub.add_parser("sources", help="List sources")
    ps.add_argument("--active", action="store_true", help="Only active sources")

    pa = sub.add_parser("action", help="Perform an administrative action")
    pa.add_argument("name", help="Action name (e.g., trigger-source, pause-queue)")
    pa.add_argument(
        "--param",
        "-p",
        action="append",
        default=[],
        help="Action parameter as key=value (value parsed as JSON when possible)",
    )

    return p.parse_args(argv)


def _parse_params(pairs: list[str]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid parameter '{pair}', expected key=value")
        try:
            params[key] = json.loads(raw)
        except json.JSONDecodeError:
            params[key] = raw
    return params


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


async def _serve(control: ScrapingControl) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # not supported on this platform; Ctrl+C still raises KeyboardInterrupt
            pass

    await control.scheduler.start()
    print("Serving. Press Ctrl+C to stop.", file=sys.stderr)
    await stop.wait()


async def _run_command(args: argparse.Namespace) -> int:
    control = build_control()
    consume = args.cmd == "serve"
    await control.initialize(consume=consume)

    try:
        if args.cmd == "status":
            _print_json(await control.get_status())
            return 0

        if args.cmd == "sources":
            sources = (
                control.source_manager.get_active_sources()
                if args.active
                else control.source_manager.get_all_sources()
            )
            print(f"{'ID':<38} {'NAME':<28} {'TYPE':<8} {'ACTIVE':<7} {'ERRORS':<7} {'NEXT RUN'}")
            print("-" * 110)
            for s in sources:
                next_run = s.next_scrape_at.strftime("%Y-%m-%d %H:%M") if s.next_scrape_at else "-"
                print(
                    f"{s.id:<38} {s.name[:27]:<28} {s.source_type.value:<8} "
                    f"{str(s.is_active):<7} {s.error_count:<7} {next_run}"
                )
            return 0

        if args.cmd == "run":
            if args.source:
                if control.source_manager.get_source(args.source) is None:
                    raise SourceNotFoundError(args.source)
                result = await control.worker.scrape_source_direct(args.source)
                if result is None:
                    print(f"Source {args.source} was not run", file=sys.stderr)
                    return 1
                _print_json(result.model_dump(mode="json"))
                return 0 if result.status.value == "completed" else 2

            results = await control.service.scrape_all_sources()
            _print_json([r.model_dump(mode="json") for r in results])
            return 0 if all(r.status.value == "completed" for r in results) else 2

        if args.cmd == "serve":
            await _serve(control)
            return 0

        if args.cmd == "action":
            result = await control.perform_action(args.name, **_parse_params(args.param))
            _print_json(result)
            return 0

        return 1
    finally:
        await control.close()


def main(argv: list[str] | None = None) -> int:
    """Run the CLI with the given arguments."""
    args = _parse_args(argv)
    if not args.cmd:
        print("Error: Command required. Use --help for usage info.", file=sys.stderr)
        return 1

    settings = get_settings()
    setup_logging(
        level=args.log_level or settings.LOG_LEVEL,
        json_logs=args.json_logs or settings.JSON_LOGS,
    )

    try:
        return asyncio.run(_run_command(args))
    except KeyboardInterrupt:
        return 130
    except (ScrapingError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
