"""Entry point for running the Supervisor as a module.

Usage:
    python -m Supervisor scan [--send | --no-send]
    python -m Supervisor briefing [morning|evening] [--send | --no-send]
    python -m Supervisor health
    python -m Supervisor scan --config ops/config/daily_ops.json --remediation-config policy.json

Exit codes: 0 success, 1 failure, 2 another invocation holds the lock.
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

from Supervisor.config import SupervisorConfig
from Supervisor.exceptions import ScanLockError, SupervisorError
from Supervisor.rules import parse_ts
from Supervisor.supervisor import Supervisor


def _parse_now(raw: str) -> datetime:
    parsed = parse_ts(raw)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid ISO 8601 timestamp: {raw}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleet-supervisor",
        description="Supervisor: fleet health scan, alerts, remediation and briefings",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to the ops config JSON")
    parser.add_argument(
        "--remediation-config",
        type=Path,
        default=None,
        help="Path to the remediation policy JSON",
    )
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="Override the current time (ISO 8601)",
    )
    send = parser.add_mutually_exclusive_group()
    send.add_argument("--send", dest="send", action="store_const", const=True, default=None,
                      help="Hand alerts/briefings to the notification transport")
    send.add_argument("--no-send", dest="send", action="store_const", const=False,
                      help="Record alerts/briefings without sending")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("scan", help="Run one full scan (default)")
    briefing = sub.add_parser("briefing", help="Generate a briefing now")
    briefing.add_argument("type", nargs="?", default="morning", choices=["morning", "evening"])
    sub.add_parser("health", help="Print a read-only health summary")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "scan"

    try:
        supervisor = Supervisor(
            SupervisorConfig.from_env(),
            ops_config_path=args.config,
            remediation_config_path=args.remediation_config,
        )
        if command == "scan":
            result = supervisor.run_scan(now=args.now, send=args.send)
        elif command == "briefing":
            result = supervisor.run_briefing(args.type, now=args.now, send=args.send)
        else:
            result = supervisor.run_health()
    except ScanLockError as exc:
        print(f"Skipped: {exc}", file=sys.stderr)
        return 2
    except SupervisorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        print(f"Unexpected error: {exc!r}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
