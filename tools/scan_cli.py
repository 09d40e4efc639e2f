#!/usr/bin/env python3
"""Command-line front end for one-off scans.

Runs the orchestration core in-process: submits a job, prints its events
as they arrive, then prints the history entry and any findings. Ctrl-C
stops every running scan before exiting.

Usage:
    python -m tools.scan_cli scan 192.168.1.10 -p 22,80,443
    python -m tools.scan_cli scan 10.0.0.5 --preset vulnerability
    python -m tools.scan_cli discover 192.168.1.0/24 --full
    python -m tools.scan_cli rules --rules-file rules.yaml
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime

# Add parent to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.broadcaster import Event, EventType
from core.config import load_settings
from core.logging_config import configure_logging
from core.scan_service import ScanService
from core.types import InvalidRequest
from results.rules import load_rule_table

TERMINAL_EVENTS = {EventType.COMPLETE, EventType.ERROR, EventType.STOPPED}


def format_timestamp(ts_str: str | None) -> str:
    """Format ISO timestamp to readable format."""
    if ts_str is None:
        return "N/A"
    try:
        dt = datetime.fromisoformat(ts_str.replace("Z", "+00:00"))
        return dt.strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, AttributeError):
        return ts_str or "N/A"


def truncate(s: str, max_len: int = 50) -> str:
    """Truncate string to max length."""
    if not s:
        return ""
    if len(s) <= max_len:
        return s
    return s[: max_len - 3] + "..."


def format_event(event: Event) -> str | None:
    """One console line per event; None for events printed elsewhere."""
    payload = event.payload
    if event.type is EventType.STARTED:
        return f"[started]  {payload.get('command', '')}"
    if event.type is EventType.PROGRESS:
        return f"[progress] {payload.get('percent', 0)}%"
    if event.type is EventType.COMPLETE:
        return f"[complete] {payload.get('duration_seconds', 0):.2f}s"
    if event.type is EventType.ERROR:
        return f"[error]    {payload.get('error_kind')}: {truncate(payload.get('message', ''), 70)}"
    if event.type is EventType.STOPPED:
        return "[stopped]"
    return None


def print_findings(findings: list[dict], summary: dict[str, int]) -> None:
    """Print findings as a table followed by per-severity counts."""
    print("\n" + "=" * 80)
    print(f"Findings ({len(findings)})")
    print("=" * 80)

    if not findings:
        print("No risky services detected.")
        print()
        return

    print(f"{'Host':<20} {'Port':<6} {'Service':<14} {'Severity':<9} {'Issue':<29}")
    print("-" * 80)
    for f in findings:
        print(
            f"{truncate(f['host'], 20):<20} {f['port']:<6} {truncate(f['service'], 14):<14} "
            f"{f['severity']:<9} {truncate(f['issue'], 29):<29}"
        )
    print("-" * 80)
    print("  ".join(f"{sev}={count}" for sev, count in summary.items()))
    print()


async def follow_job(service: ScanService, start, show_result: bool = False) -> int:
    """
    Submit a job through ``start`` and print its events until it ends.

    The subscription is opened before submission so the started event is
    never missed.
    """
    subscription = service.subscribe()
    try:
        try:
            job_id = await start()
        except InvalidRequest as e:
            print(f"Error: {e}")
            return 2

        print(f"Job: {job_id}")
        exit_code = 1
        async for event in subscription:
            if event.job_id != job_id:
                continue
            if event.type is EventType.RESULT and show_result:
                print(json.dumps(event.payload.get("result"), indent=2, default=str))
            elif event.type is EventType.FINDINGS:
                print_findings(event.payload["findings"], event.payload["summary"])
            else:
                line = format_event(event)
                if line:
                    print(line)
            if event.type in TERMINAL_EVENTS:
                exit_code = 0 if event.type is EventType.COMPLETE else 1
                break
    finally:
        service.unsubscribe(subscription)

    entry = service.get_history_entry(job_id)
    if entry is not None:
        print(
            f"{entry.state.value}: {entry.summary} "
            f"(ended {format_timestamp(entry.ended_at)})"
        )
    return exit_code


async def cmd_scan(service: ScanService, args) -> int:
    """Run a port scan."""
    presets = {
        "quick": lambda: service.quick_scan(args.targets),
        "service": lambda: service.service_detection(args.targets, ports=args.ports),
        "vulnerability": lambda: service.vulnerability_scan(args.targets),
    }
    if args.preset:
        start = presets[args.preset]
    else:
        def start():
            return service.start_scan(
                args.targets,
                ports=args.ports,
                timeout=args.timeout,
                service_detection=args.service_detection,
                output_format=args.output,
            )

    return await follow_job(service, start, show_result=args.show_result)


async def cmd_discover(service: ScanService, args) -> int:
    """Discover hosts on a network."""
    return await follow_job(
        service,
        lambda: service.discover(args.network, quick_mode=not args.full),
        show_result=args.show_result,
    )


def cmd_rules(args) -> int:
    """Show the active vulnerability rule table."""
    rules = load_rule_table(args.rules_file)

    print("\n" + "=" * 80)
    print(f"Vulnerability Rules ({len(rules)})")
    print("=" * 80)
    print(f"{'Port':<6} {'Service':<14} {'Severity':<9} {'Issue':<49}")
    print("-" * 80)
    for rule in rules.values():
        print(
            f"{rule.port:<6} {truncate(rule.service, 14):<14} "
            f"{rule.severity.value:<9} {truncate(rule.issue, 49):<49}"
        )
    print()
    return 0


async def run(args, settings) -> int:
    service = ScanService.from_settings(settings)
    try:
        if args.command == "scan":
            return await cmd_scan(service, args)
        return await cmd_discover(service, args)
    finally:
        await service.shutdown()


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="R-Map scan CLI - run scans and print findings"
    )
    parser.add_argument(
        "--engine",
        default=None,
        help="Engine executable (default: from RMAP_PATH env or /usr/local/bin/rmap)",
    )
    parser.add_argument(
        "--log-level", default=None, help="Log level (default: from LOG_LEVEL env)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # scan command
    scan_parser = subparsers.add_parser("scan", help="Scan target hosts")
    scan_parser.add_argument("targets", nargs="+", help="Hosts, IPs or CIDR ranges")
    scan_parser.add_argument("-p", "--ports", default=None, help="Port spec (default: 1-1000)")
    scan_parser.add_argument(
        "-t", "--timeout", type=float, default=None, help="Connection timeout in seconds"
    )
    scan_parser.add_argument(
        "-A", "--service-detection", action="store_true", help="Enable service detection"
    )
    scan_parser.add_argument(
        "-o", "--output", default="json", choices=["json", "xml", "normal"],
        help="Engine output format (default: json)",
    )
    scan_parser.add_argument(
        "--preset", choices=["quick", "service", "vulnerability"],
        help="Use a predefined port set",
    )
    scan_parser.add_argument(
        "--show-result", action="store_true", help="Print the parsed scan result"
    )

    # discover command
    discover_parser = subparsers.add_parser("discover", help="Discover network hosts")
    discover_parser.add_argument("network", help="Network in CIDR notation")
    discover_parser.add_argument(
        "--full", action="store_true", help="Probe ports 1-1000 instead of common ports"
    )
    discover_parser.add_argument(
        "--show-result", action="store_true", help="Print the parsed scan result"
    )

    # rules command
    rules_parser = subparsers.add_parser("rules", help="Show vulnerability rules")
    rules_parser.add_argument(
        "--rules-file", default=None, help="YAML file overriding the built-in rules"
    )

    args = parser.parse_args()

    if args.command == "rules":
        return cmd_rules(args)

    environ = dict(os.environ)
    if args.engine:
        environ["RMAP_PATH"] = args.engine
    if args.log_level:
        environ["LOG_LEVEL"] = args.log_level
    settings = load_settings(environ=environ)
    configure_logging(log_level=settings.log_level)

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        print("\nInterrupted, running scans stopped.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
