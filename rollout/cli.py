#!/usr/bin/env python3
"""
Command-line front end for firmware rollouts.

Usage:
    python -m rollout.cli probe 192.168.1.20 192.168.1.21
    python -m rollout.cli update --firmware fw.bin 192.168.1.20 192.168.1.21
    python -m rollout.cli update --firmware fw.bin --mock 10.0.0.1 10.0.0.2
"""

import argparse
import asyncio
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TaskID, TextColumn
from rich.table import Table

from .clients import BaseDeviceClient, HttpDeviceClient, MockDeviceClient
from .config import Config, get_config, load_config, set_config
from .device import DeviceStatus, FirmwareArtifact
from .errors import BatchError
from .orchestrator import BatchOrchestrator, BatchSnapshot

logger = logging.getLogger(__name__)
console = Console()

STATUS_STYLES = {
    DeviceStatus.CONNECTED: "green",
    DeviceStatus.SUCCEEDED: "bold green",
    DeviceStatus.UNREACHABLE: "red",
    DeviceStatus.FAILED: "bold red",
    DeviceStatus.SKIPPED: "yellow",
}


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging."""
    handlers = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
        ))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers,
    )


def resolve_config(args) -> Config:
    """Load config from ``--config`` (or defaults) and install it globally."""
    if args.config and Path(args.config).exists():
        config = load_config(args.config)
    elif args.config != "config.yaml":
        raise FileNotFoundError(f"Configuration file not found: {args.config}")
    else:
        config = Config()
    if args.timeout:
        config.probe.timeout = args.timeout
    set_config(config)
    return config


def build_client(args) -> BaseDeviceClient:
    config = get_config()
    if args.mock:
        return MockDeviceClient(delay=0.3)
    return HttpDeviceClient(api=config.device_api, update=config.update)


def build_orchestrator(args, client: BaseDeviceClient) -> BatchOrchestrator:
    orchestrator = BatchOrchestrator.from_config(get_config(), client)
    for address in args.addresses:
        orchestrator.add_device(address)
    return orchestrator


def status_table(snapshot: BatchSnapshot, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Address", style="cyan")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Message", style="dim")

    for entry in snapshot.devices.values():
        style = STATUS_STYLES.get(entry.status, "white")
        table.add_row(
            entry.address or "-",
            f"[{style}]{entry.status.value}[/{style}]",
            f"{entry.progress}%",
            entry.message,
        )
    return table


async def cmd_probe(args) -> int:
    """Probe devices and print a reachability table."""
    async with build_client(args) as client:
        orchestrator = build_orchestrator(args, client)
        console.print(f"[bold]Probing {len(args.addresses)} device(s)...[/bold]")
        verdicts = await orchestrator.probe_all()

    console.print(status_table(orchestrator.snapshot(), "Connectivity"))
    return 0 if all(v.connected for v in verdicts.values()) else 1


async def cmd_update(args) -> int:
    """Probe devices, then roll firmware out to them one at a time."""
    artifact = FirmwareArtifact.from_path(args.firmware)

    async with build_client(args) as client:
        orchestrator = build_orchestrator(args, client)
        orchestrator.set_artifact(artifact)

        if not args.skip_probe:
            console.print(f"[bold]Probing {len(args.addresses)} device(s)...[/bold]")
            await orchestrator.probe_all()
            console.print(status_table(orchestrator.snapshot(), "Connectivity"))

        try:
            stream = orchestrator.start_batch()
        except BatchError as e:
            console.print(f"[red]{e}[/red]")
            return 1

        loop = asyncio.get_running_loop()

        def cancel_handler():
            console.print("[yellow]Cancelling batch...[/yellow]")
            orchestrator.cancel_batch()

        loop.add_signal_handler(signal.SIGINT, cancel_handler)
        try:
            with Progress(
                TextColumn("[cyan]{task.fields[address]}"),
                BarColumn(),
                TextColumn("{task.percentage:>3.0f}%"),
                TextColumn("[dim]{task.description}"),
                console=console,
            ) as progress:
                tasks: Dict[str, TaskID] = {}
                async for snapshot in stream:
                    for device_id, entry in snapshot.devices.items():
                        if device_id not in tasks:
                            tasks[device_id] = progress.add_task(
                                entry.status.value, total=100, address=entry.address,
                            )
                        progress.update(
                            tasks[device_id],
                            completed=entry.progress,
                            description=f"{entry.status.value}: {entry.message}",
                        )
        finally:
            loop.remove_signal_handler(signal.SIGINT)

        final = await orchestrator.wait()

    console.print(status_table(final, f"Rollout of {artifact.filename}"))
    summary = final.summary()
    console.print(
        f"\n[bold]{summary.get('succeeded', 0)} succeeded, "
        f"{summary.get('failed', 0) + summary.get('unreachable', 0)} failed, "
        f"{summary.get('skipped', 0)} skipped[/bold]"
    )
    return 0 if summary.get("succeeded", 0) == len(final.devices) else 1


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Fleet firmware rollout",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", default="config.yaml",
                        help="Path to configuration file (default: config.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--mock", action="store_true", help="Use simulated devices")
    parser.add_argument("--timeout", type=float, help="Per-device probe timeout in seconds")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    probe_parser = subparsers.add_parser("probe", help="Check device reachability")
    probe_parser.add_argument("addresses", nargs="+", help="Device IPv4 addresses")

    update_parser = subparsers.add_parser("update", help="Roll out firmware")
    update_parser.add_argument("--firmware", "-f", required=True, help="Firmware file")
    update_parser.add_argument("--skip-probe", action="store_true",
                               help="Start without an initial probe (devices are still re-checked)")
    update_parser.add_argument("addresses", nargs="+", help="Device IPv4 addresses")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = resolve_config(args)
    except Exception as e:
        console.print(f"[red]Failed to load configuration: {e}[/red]")
        sys.exit(1)

    setup_logging("DEBUG" if args.verbose else config.logging.level, config.logging.file)

    commands = {
        "probe": cmd_probe,
        "update": cmd_update,
    }

    try:
        code = asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        if args.verbose:
            console.print_exception()
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
