#!/usr/bin/env python3
"""
RMBT CLI -- multi-connection throughput measurement from the terminal.

Usage::

    python rmbt_cli.py --host m01.example.net --token T   # rich dashboard
    python rmbt_cli.py --control-server https://c01.example.net/RMBTControlServer
    python rmbt_cli.py --simple                           # plain text
    python rmbt_cli.py --json                             # JSON to stdout
    python rmbt_cli.py -o result.json                     # save to file
    python rmbt_cli.py --threads 1 --duration 5 -v        # debug logging
    python rmbt_cli.py --set threads=5 --set host=m01.example.net  # store defaults
    python rmbt_cli.py --show-config                      # print stored defaults
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import ssl
import sys
from typing import Any, Dict, List, Optional, Tuple

from rich.logging import RichHandler
from rich.table import Table

from rmbt.config import DEFAULTS, config_path, get_config_value, load_config, set_config_value
from rmbt.constants import (
    MAX_DURATION,
    MAX_THREADS,
    MIN_DURATION,
    MIN_THREADS,
    NSECS,
)
from rmbt.control import ControlServerAPI
from rmbt.errors import RMBTError
from rmbt.orchestrator import TestOrchestrator
from rmbt.params import TestParameters
from ui.dashboard import (
    ProgressDisplay,
    console,
    print_final_results,
    print_header,
    print_ping_details,
    print_speed_result,
    print_test_parameters,
)
from ui.output import create_result_json, format_text_result, save_json


# ---------------------------------------------------------------------------
# Parameter validation
# ---------------------------------------------------------------------------

def _validate(duration: int, pretest_duration: float, threads: int) -> None:
    """Raise ``ValueError`` if any parameter is out of range."""
    if not MIN_DURATION <= duration <= MAX_DURATION:
        raise ValueError(f"Duration must be between {MIN_DURATION} and {MAX_DURATION} s")
    if pretest_duration <= 0:
        raise ValueError("Pretest duration must be positive")
    if not MIN_THREADS <= threads <= MAX_THREADS:
        raise ValueError(f"Threads must be between {MIN_THREADS} and {MAX_THREADS}")


def parse_config_assignment(text: str) -> Tuple[str, Any]:
    """Turn ``KEY=VALUE`` into a typed pair, using the default's type."""
    key, sep, raw = text.partition("=")
    key = key.strip()
    if not sep:
        raise ValueError(f"expected KEY=VALUE, got {text!r}")
    if key not in DEFAULTS:
        raise ValueError(f"unknown config key: {key}")

    default = DEFAULTS[key]
    raw = raw.strip()
    if isinstance(default, bool):
        if raw.lower() in ("1", "true", "yes", "on"):
            return key, True
        if raw.lower() in ("0", "false", "no", "off"):
            return key, False
        raise ValueError(f"{key} must be true or false")
    if isinstance(default, int):
        return key, int(raw)
    if isinstance(default, float):
        return key, float(raw)
    return key, raw


def update_config(assignments: List[str]) -> str:
    """Persist every ``KEY=VALUE`` pair.  Returns the config file path."""
    path = config_path()
    for key, value in (parse_config_assignment(a) for a in assignments):
        path = set_config_value(key, value)
    return path


def print_config() -> None:
    table = Table(title=config_path(), box=None)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key in DEFAULTS:
        value = get_config_value(key)
        table.add_row(key, "***" if key == "token" and value else repr(value))
    console.print(table)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def make_ssl_context(verify: bool) -> ssl.SSLContext:
    """TLS context for measurement servers, which often use private certificates."""
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


# ---------------------------------------------------------------------------
# Core test runner
# ---------------------------------------------------------------------------

async def _resolve_parameters(settings: Dict[str, Any]) -> TestParameters:
    overrides = {"pretest_duration": settings["pretest_duration"]}
    if settings["control_server"]:
        async with ControlServerAPI(settings["control_server"]) as api:
            return await api.request_test(num_threads=settings["threads"], **overrides)

    return TestParameters(
        host=settings["host"],
        port=settings["port"],
        token=settings["token"],
        duration=settings["duration"],
        threads=settings["threads"],
        encryption=settings["encryption"],
        **overrides,
    )


async def run_measurement(
    settings: Dict[str, Any],
    *,
    json_output: bool = False,
    output_file: Optional[str] = None,
    simple: bool = False,
    verify_tls: bool = False,
) -> Optional[dict]:
    """Execute the full measurement and return a JSON-serialisable dict."""

    show_ui = not json_output and not simple

    if show_ui:
        print_header()

    params = await _resolve_parameters(settings)
    params.validate()

    if show_ui:
        print_test_parameters(params)

    orchestrator = TestOrchestrator(
        params,
        ssl_context=make_ssl_context(verify_tls) if params.encryption else None,
        store_results=settings["store_results"],
        min_diff_time=int(settings["min_diff_time_ms"] * NSECS / 1000),
    )

    display = ProgressDisplay(orchestrator) if show_ui else None
    if display:
        display.start()
    try:
        total = await orchestrator.run()
    finally:
        if display:
            await display.stop()

    if show_ui:
        print_ping_details(total)
        print_speed_result(total, total.download, "Download Results", upload=False, color="green")
        print_speed_result(total, total.upload, "Upload Results", upload=True, color="blue")
        print_final_results(total, params)
    elif simple:
        print(format_text_result(params, total))

    result_json = create_result_json(params, total)

    if json_output:
        print(json.dumps(result_json, indent=2))

    if output_file:
        save_json(result_json, output_file)
        if not json_output:
            console.print(f"\n[green]Results saved to:[/green] {output_file}")

    return result_json


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser(config: Dict[str, Any]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="RMBT CLI -- multi-connection throughput measurement",
    )
    # Output modes
    parser.add_argument("--json", "-j", action="store_true", help="Output results as JSON")
    parser.add_argument("--output", "-o", type=str, metavar="FILE", help="Save results to JSON file")
    parser.add_argument("--simple", "-s", action="store_true", help="Simple output mode (no dashboard)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    # Configuration
    parser.add_argument(
        "--set", action="append", default=[], metavar="KEY=VALUE",
        help="Store a default in the config file and exit (repeatable)",
    )
    parser.add_argument("--show-config", action="store_true", help="Print the stored defaults and exit")

    # Server selection
    parser.add_argument("--host", default=config["host"], help="Measurement server host")
    parser.add_argument("--port", type=int, default=config["port"], help="Measurement server port")
    parser.add_argument("--token", default=config["token"], help="Test token")
    parser.add_argument("--tls", action="store_true", default=config["encryption"], help="Use TLS")
    parser.add_argument("--verify-tls", action="store_true", help="Verify the server certificate")
    parser.add_argument(
        "--control-server", default=config["control_server"], metavar="URL",
        help="Request test parameters from this control server",
    )

    # Test parameters
    parser.add_argument("--threads", type=int, default=config["threads"], metavar="N", help="Parallel connections")
    parser.add_argument("--duration", type=int, default=config["duration"], metavar="SECS", help="Seconds per timed phase")
    parser.add_argument(
        "--pretest-duration", type=float, default=config["pretest_duration"], metavar="SECS",
        help="Seconds per calibration loop",
    )
    return parser


def main() -> None:
    config = load_config()
    args = build_parser(config).parse_args()
    _setup_logging(args.verbose)

    if args.set or args.show_config:
        try:
            path = update_config(args.set)
        except (KeyError, ValueError, OSError) as exc:
            console.print(f"[red]Error: {exc}[/red]")
            sys.exit(1)
        if args.set:
            console.print(f"[green]Saved to:[/green] {path}")
        if args.show_config:
            print_config()
        return

    try:
        _validate(
            duration=args.duration,
            pretest_duration=args.pretest_duration,
            threads=args.threads,
        )
    except ValueError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        sys.exit(1)

    if not args.control_server and not args.host:
        console.print("[red]Error: --host or --control-server is required[/red]")
        sys.exit(1)

    settings = dict(config)
    settings.update(
        host=args.host,
        port=args.port,
        token=args.token,
        encryption=args.tls,
        control_server=args.control_server,
        threads=args.threads,
        duration=args.duration,
        pretest_duration=args.pretest_duration,
    )

    try:
        asyncio.run(
            run_measurement(
                settings,
                json_output=args.json,
                output_file=args.output,
                simple=args.simple,
                verify_tls=args.verify_tls,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Test cancelled by user[/yellow]")
        sys.exit(1)
    except (RMBTError, ValueError, OSError) as exc:
        console.print(f"\n[red]Error: {exc}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
