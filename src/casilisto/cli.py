"""Command-line sync client for CasiListo.

Each command builds a sync orchestrator over the local state file and the
offline queue, runs one operation synchronously and exits.

Usage:
    python -m casilisto.main cli status
    python -m casilisto.main cli create-account
    python -m casilisto.main cli link ABC234
    python -m casilisto.main cli --format json devices
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .core.config import Config
from .core.connectivity import ConnectivityMonitor
from .core.local_store import LocalDataset, LocalStore
from .core.models import Device
from .core.offline_queue import OfflineQueue
from .core.orchestrator import SyncOrchestrator, status_label
from .core.scheduler import ManualScheduler
from .core.timestamp_utils import format_timestamp
from .core.transport import SyncTransport


def build_orchestrator(config: Config, server_url: Optional[str] = None) -> SyncOrchestrator:
    """Wire a synchronous orchestrator from config.

    Args:
        config: Config instance
        server_url: Override for the configured server URL

    Returns:
        SyncOrchestrator driven by a ManualScheduler (no background timers)
    """
    sync_config = config.get_sync_config()
    store = LocalStore(config.get_state_file())
    transport = SyncTransport(
        server_url or config.get_server_url(),
        timeout=float(sync_config["request_timeout_seconds"]),
    )
    return SyncOrchestrator(
        store=store,
        dataset=LocalDataset(store),
        transport=transport,
        scheduler=ManualScheduler(),
        queue=OfflineQueue(config.get_queue_file()),
        connectivity=ConnectivityMonitor(online=True, probe=transport.health),
        debounce_seconds=float(sync_config["debounce_seconds"]),
        poll_interval_seconds=float(sync_config["poll_interval_seconds"]),
        max_retries=int(sync_config["max_retries"]),
        retry_base_seconds=float(sync_config["retry_base_seconds"]),
    )


def format_device(device: Device, current_device_id: str, output_format: str = "text") -> str:
    """Format a device for display.

    Args:
        device: Device to format
        current_device_id: This installation's id (marked in text output)
        output_format: Output format (text or json)

    Returns:
        Formatted string
    """
    if output_format == "json":
        return json.dumps(device.to_wire(), ensure_ascii=False)
    marker = "*" if device.id == current_device_id else " "
    return f"{marker} {device.id}  {device.name}  (last seen {format_timestamp(device.last_seen)})"


def _fail(orchestrator: SyncOrchestrator, fallback: str) -> int:
    print(f"Error: {orchestrator.last_error or fallback}", file=sys.stderr)
    return 1


def _print_result(args: argparse.Namespace, result: Dict[str, Any], text: str) -> None:
    if args.format == "json":
        print(json.dumps(result, ensure_ascii=False))
    else:
        print(text)


def cmd_status(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Show device identity and sync state."""
    info = orchestrator.info
    status = {
        "deviceId": info.device_id,
        "deviceName": info.device_name,
        "code": info.user_code,
        "status": orchestrator.status.value,
        "lastSyncAt": info.last_sync_at,
        "serverUpdatedAt": info.server_updated_at,
        "pendingChanges": orchestrator.has_pending_changes,
        "queuedRequests": len(orchestrator.queue),
        "server": orchestrator.transport.base_url,
    }
    if args.format == "json":
        print(json.dumps(status, indent=2))
        return 0

    print(f"Device ID: {info.device_id}")
    print(f"Device Name: {info.device_name}")
    print(f"Account Code: {info.user_code or '(not linked)'}")
    print(f"Status: {status_label(orchestrator.status)}")
    print(f"Last Sync: {format_timestamp(info.last_sync_at)}")
    print(f"Pending Changes: {'yes' if orchestrator.has_pending_changes else 'no'}")
    print(f"Queued Requests: {status['queuedRequests']}")
    print(f"Server: {status['server']}")
    return 0


def cmd_create_account(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Create an account and link this device to it."""
    if orchestrator.is_linked:
        print(
            f"Error: Already linked to {orchestrator.info.user_code}. Run 'disconnect' first.",
            file=sys.stderr,
        )
        return 1
    if not orchestrator.create_account():
        return _fail(orchestrator, "Could not create account")
    code = orchestrator.info.user_code
    _print_result(args, {"code": code}, f"Created account {code}\nShare this code to link other devices.")
    return 0


def cmd_link(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Link this device to an existing account."""
    if not orchestrator.link_device(args.code):
        return _fail(orchestrator, "Could not link device")
    code = orchestrator.info.user_code
    _print_result(args, {"code": code, "linked": True}, f"Linked to account {code}")
    return 0


def _require_linked(orchestrator: SyncOrchestrator) -> bool:
    if orchestrator.is_linked:
        return True
    print("Error: Not linked to an account. Use 'create-account' or 'link CODE'.", file=sys.stderr)
    return False


def cmd_sync(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Deliver queued changes, push pending changes and pull."""
    if not _require_linked(orchestrator):
        return 1
    delivered = orchestrator.watcher.drain_now()
    ok = orchestrator.sync_now()
    result = {"success": ok, "delivered": delivered, "status": orchestrator.status.value}
    _print_result(args, result, f"{status_label(orchestrator.status)} ({delivered} queued delivered)")
    return 0 if ok else _fail(orchestrator, status_label(orchestrator.status))


def cmd_push(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Push the local dataset."""
    if not _require_linked(orchestrator):
        return 1
    ok = orchestrator.push()
    result = {"success": ok, "merged": orchestrator.last_merged, "status": orchestrator.status.value}
    if ok:
        text = "Pushed (merged with other devices)" if orchestrator.last_merged else "Pushed"
        _print_result(args, result, text)
        return 0
    if orchestrator.last_error:
        return _fail(orchestrator, "Push failed")
    _print_result(args, result, "Server unreachable, changes queued for later delivery")
    return 0


def cmd_pull(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Pull the canonical dataset."""
    if not _require_linked(orchestrator):
        return 1
    if not orchestrator.pull():
        return _fail(orchestrator, status_label(orchestrator.status))
    result = {"success": True, "serverUpdatedAt": orchestrator.info.server_updated_at}
    _print_result(args, result, f"Up to date ({format_timestamp(orchestrator.info.server_updated_at)})")
    return 0


def cmd_devices(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """List devices linked to the account."""
    if not _require_linked(orchestrator):
        return 1
    devices = orchestrator.fetch_devices()
    if devices is None:
        return _fail(orchestrator, "Could not list devices")
    if args.format == "json":
        print(json.dumps([d.to_wire() for d in devices], indent=2, ensure_ascii=False))
        return 0
    if not devices:
        print("No devices linked.")
        return 0
    for device in devices:
        print(format_device(device, orchestrator.info.device_id))
    return 0


def cmd_unlink(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Unlink a device from the account."""
    if not _require_linked(orchestrator):
        return 1
    if not orchestrator.unlink_device(args.device_id):
        if orchestrator.last_error:
            return _fail(orchestrator, "Could not unlink device")
        print(f"Error: Device {args.device_id} not found.", file=sys.stderr)
        return 1
    _print_result(args, {"unlinked": args.device_id}, f"Unlinked device {args.device_id}")
    return 0


def cmd_disconnect(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Forget the account on this device."""
    if not _require_linked(orchestrator):
        return 1
    orchestrator.disconnect()
    _print_result(args, {"disconnected": True}, "Disconnected. Local data was kept.")
    return 0


def cmd_rename_device(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Change this device's display name."""
    if not orchestrator.rename_device(args.name):
        return _fail(orchestrator, "Could not rename device")
    name = orchestrator.info.device_name
    _print_result(args, {"deviceName": name}, f"Device renamed to {name}")
    return 0


def cmd_queue_list(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """List undelivered requests."""
    entries = orchestrator.queue.entries()
    if args.format == "json":
        rows: List[Dict[str, Any]] = [
            {"id": e.id, "method": e.method, "url": e.url, "enqueuedAt": e.enqueued_at}
            for e in entries
        ]
        print(json.dumps(rows, indent=2))
        return 0
    if not entries:
        print("Queue is empty.")
        return 0
    for entry in entries:
        print(f"#{entry.id}  {entry.method} {entry.url}  (queued {format_timestamp(entry.enqueued_at)})")
    return 0


def cmd_queue_drain(orchestrator: SyncOrchestrator, args: argparse.Namespace) -> int:
    """Deliver queued requests now."""
    delivered = orchestrator.watcher.drain_now()
    remaining = len(orchestrator.queue)
    result = {"delivered": delivered, "remaining": remaining}
    _print_result(args, result, f"Delivered {delivered}, {remaining} remaining")
    return 0 if remaining == 0 else 1


COMMANDS = {
    "status": cmd_status,
    "create-account": cmd_create_account,
    "link": cmd_link,
    "sync": cmd_sync,
    "push": cmd_push,
    "pull": cmd_pull,
    "devices": cmd_devices,
    "unlink": cmd_unlink,
    "disconnect": cmd_disconnect,
    "rename-device": cmd_rename_device,
    "queue-list": cmd_queue_list,
    "queue-drain": cmd_queue_drain,
}


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and its nested subcommands.

    Args:
        subparsers: Parent subparsers object to add CLI parser to
    """
    cli_parser = subparsers.add_parser(
        "cli",
        help="Command-line sync client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)"
    )

    cli_parser.add_argument(
        "--server",
        type=str,
        default=None,
        help="Sync server URL (default: server_url from config)"
    )

    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    cli_subparsers.add_parser("status", help="Show sync status")
    cli_subparsers.add_parser("create-account", help="Create an account for this list")

    link_parser = cli_subparsers.add_parser("link", help="Link this device to an account")
    link_parser.add_argument("code", type=str, help="6-character account code")

    cli_subparsers.add_parser("sync", help="Push pending changes and pull")
    cli_subparsers.add_parser("push", help="Push the local list")
    cli_subparsers.add_parser("pull", help="Pull changes from other devices")
    cli_subparsers.add_parser("devices", help="List linked devices")

    unlink_parser = cli_subparsers.add_parser("unlink", help="Unlink a device")
    unlink_parser.add_argument("device_id", type=str, help="Device ID to unlink")

    cli_subparsers.add_parser("disconnect", help="Forget the account on this device")

    rename_parser = cli_subparsers.add_parser("rename-device", help="Rename this device")
    rename_parser.add_argument("name", type=str, help="New device name")

    cli_subparsers.add_parser("queue-list", help="List undelivered requests")
    cli_subparsers.add_parser("queue-drain", help="Deliver queued requests now")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "cli_command", None):
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    config = Config(config_dir=config_dir)
    orchestrator = build_orchestrator(config, getattr(args, "server", None))
    try:
        return COMMANDS[args.cli_command](orchestrator, args)
    finally:
        orchestrator.shutdown()
        orchestrator.queue.close()
