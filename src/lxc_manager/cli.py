#!/usr/bin/env python3
"""
lxc-gpu-passthrough - Command Line Interface

Expose a Proxmox host's NVIDIA GPU to LXC containers, clean conflicting
driver installs out of them and verify the result.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from common.decorators import require_root
from common.exceptions import ConfigError, NotProxmoxHostError, PassthroughError
from common.logging_config import setup_logging
from hardware_detect.device_inventory import query_host_gpu, scan_host_devices
from hardware_detect.library_resolver import LibraryResolver

from .core.config_document import ConfigDocument
from .core.orchestrator import BatchContext, BatchOrchestrator, Operation, OutcomeStatus
from .core.pct_host import PctHost
from .core.settings import load_settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

STATUS_ICONS = {
    OutcomeStatus.SUCCEEDED: "✅",
    OutcomeStatus.FAILED: "❌",
    OutcomeStatus.SKIPPED: "⏭️ ",
}


def ensure_proxmox(settings) -> None:
    """Raise NotProxmoxHostError unless the Proxmox marker file exists."""
    if not Path(settings.proxmox_marker).exists():
        raise NotProxmoxHostError(str(settings.proxmox_marker))


def make_confirm(assume_yes: bool) -> Callable[[str], bool]:
    """Build the continue-after-failure prompt."""
    if assume_yes:
        return lambda prompt: True

    def confirm(prompt: str) -> bool:
        try:
            response = input(f"{prompt} [y/N] ")
        except EOFError:
            return False
        return response.strip().lower() == "y"

    return confirm


def print_batch(context: BatchContext) -> None:
    """Print one line per container, then the totals."""
    print()
    print(f"=== {context.operation.value.capitalize()} summary ===")
    for outcome in context.ordered_outcomes():
        icon = STATUS_ICONS[outcome.status]
        print(f"{icon} CT {outcome.ctid}: {outcome.message}")
        for warning in outcome.warnings:
            print(f"     ⚠️  {warning}")
    print()
    print(
        f"{context.count(OutcomeStatus.SUCCEEDED)} succeeded, "
        f"{context.count(OutcomeStatus.FAILED)} failed, "
        f"{context.count(OutcomeStatus.SKIPPED)} skipped"
    )


def batch_exit_code(context: BatchContext) -> int:
    if context.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if context.succeeded else EXIT_FAILED


def run_batch(args, operation: Operation) -> int:
    ensure_proxmox(args.settings_obj)
    orchestrator = BatchOrchestrator(
        PctHost(args.settings_obj),
        args.settings_obj,
        confirm=make_confirm(args.yes),
    )
    context = orchestrator.run(operation, args.ctids)
    if operation == Operation.DIAGNOSE:
        print_diagnoses(context)
    print_batch(context)
    return batch_exit_code(context)


def print_diagnoses(context: BatchContext) -> None:
    for ctid, report in context.diagnoses.items():
        print()
        print(f"=== CT {ctid} diagnosis ===")
        print(f"Status:           {report.status.value}")
        print(f"Managed block:    {'yes' if report.has_block else 'no'}")
        print(f"Cgroup rules:     {report.cgroup_rules}")
        print(f"Devices:          {', '.join(report.configured_devices) or 'none'}")
        print(f"Bind mounts:      {len(report.mounted_paths)}")
        if report.device_visible is not None:
            print(f"Device visible:   {'yes' if report.device_visible else 'no'}")
        if report.probe_passed is not None:
            print(f"Probe:            {'passed' if report.probe_passed else 'failed'}")
        if report.scan is not None:
            found = f"{report.scan.category.value} ({report.scan.evidence})" if report.scan.conflict else "none"
            print(f"Conflicts:        {found}")
        for issue in report.issues:
            print(f"  • {issue}")


def cmd_host(args):
    """Show the host device inventory and libraries."""
    settings = args.settings_obj
    print("=== Host GPU ===\n")

    gpu = query_host_gpu()
    if gpu:
        print(f"GPU:    {gpu.name}")
        print(f"Driver: {gpu.driver_version}")
    else:
        print("⚠️  nvidia-smi not available on the host")
    print()

    inventory = scan_host_devices(settings)
    print(f"Device nodes: {len(inventory)}")
    for device in inventory:
        optional = " (optional)" if device.optional else ""
        print(f"  • {device.path}  major {device.major}{optional}")
    print()

    resolver = LibraryResolver(settings)
    mappings = resolver.resolve(settings.required_libraries)
    print(f"Libraries: {len(mappings)}/{len(settings.required_libraries)}")
    for mapping in mappings:
        print(f"  • {mapping.name} -> {mapping.host_path}")
    for warning in resolver.warnings:
        print(f"  ⚠️  {warning}")

    return EXIT_FAILED if inventory.is_empty else EXIT_OK


def cmd_list(args):
    """List containers with live status."""
    settings = args.settings_obj
    ensure_proxmox(settings)
    host = PctHost(settings)

    records = host.list_containers()
    if not records:
        print("No containers found.")
        return EXIT_OK

    print(f"{'CTID':<8} {'STATUS':<10} {'GPU':<5} NAME")
    for record in records:
        try:
            document = ConfigDocument.parse(host.read_config(record.ctid), marker=settings.marker)
            gpu = "yes" if document.has_managed_block else "no"
        except (OSError, PassthroughError):
            gpu = "?"
        print(f"{record.ctid:<8} {record.status.value:<10} {gpu:<5} {record.name}")
    return EXIT_OK


@require_root
def cmd_configure(args):
    """Configure GPU passthrough."""
    return run_batch(args, Operation.CONFIGURE)


@require_root
def cmd_clean(args):
    """Remove passthrough and clean driver components."""
    return run_batch(args, Operation.CLEAN)


@require_root
def cmd_verify(args):
    """Verify GPU access."""
    return run_batch(args, Operation.VERIFY)


@require_root
def cmd_strip(args):
    """Remove the passthrough block only."""
    return run_batch(args, Operation.STRIP)


def cmd_diagnose(args):
    """Read-only diagnosis."""
    return run_batch(args, Operation.DIAGNOSE)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lxc-gpu-passthrough",
        description="NVIDIA GPU passthrough for Proxmox LXC containers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  lxc-gpu-passthrough host                 # Host devices and libraries
  lxc-gpu-passthrough list                 # Containers and their GPU state
  lxc-gpu-passthrough configure 101 102    # Configure and verify
  lxc-gpu-passthrough clean 101            # Remove passthrough and drivers
  lxc-gpu-passthrough verify 101           # Restart and test GPU access
  lxc-gpu-passthrough diagnose 101         # Read-only diagnosis
  lxc-gpu-passthrough strip 101            # Remove passthrough lines only
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--settings", type=Path, help="Settings file (JSON)")
    parser.add_argument("--log-file", type=Path, help="Also log to this file")
    parser.add_argument("--json-logs", action="store_true", help="JSON format for the log file")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    host_parser = subparsers.add_parser("host", help="Show host GPU inventory")
    host_parser.set_defaults(func=cmd_host)

    list_parser = subparsers.add_parser("list", help="List containers")
    list_parser.set_defaults(func=cmd_list)

    batch_commands = [
        ("configure", "Configure GPU passthrough", cmd_configure),
        ("clean", "Remove passthrough and clean driver components", cmd_clean),
        ("verify", "Restart containers and test GPU access", cmd_verify),
        ("diagnose", "Read-only diagnosis", cmd_diagnose),
        ("strip", "Remove passthrough configuration lines only", cmd_strip),
    ]
    for name, help_text, func in batch_commands:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("ctids", nargs="+", metavar="CTID", help="Container IDs")
        sub.add_argument("-y", "--yes", action="store_true",
                         help="Continue after a failed container without asking")
        sub.set_defaults(func=func)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, log_file=args.log_file, json_logs=args.json_logs)

    if args.command is None:
        parser.print_help()
        return EXIT_FAILED

    try:
        args.settings_obj = load_settings(args.settings)
    except ConfigError as e:
        print(f"❌ {e.message}", file=sys.stderr)
        return EXIT_FAILED

    try:
        return args.func(args)
    except PermissionError as e:
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_FAILED
    except PassthroughError as e:
        logger.debug(str(e))
        print(f"❌ {e.message}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
