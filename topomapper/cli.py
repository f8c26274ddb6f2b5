"""Command line front end: manage networks and credentials, run scans, print topology.

State lives in one JSON file (``--state``, default ``topomapper.json``).
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Callable, Optional

from loguru import logger
from tabulate import tabulate

from topomapper.crawler import ScanManager
from topomapper.exceptions import NotFound, StoreError
from topomapper.models import Credential, Network, ScanStatus
from topomapper.settings import CrawlSettings
from topomapper.store import JsonFileStore
from topomapper.topology import walk

DEFAULT_STATE = "topomapper.json"


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Build argparse parser for the topomapper commands."""
    parser = argparse.ArgumentParser(
        prog="topomapper",
        description="SSH-based network topology discovery",
    )
    parser.add_argument(
        "--state",
        default=DEFAULT_STATE,
        help=f"State file (default: {DEFAULT_STATE})",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    network = sub.add_parser("network", help="Manage networks")
    network_sub = network.add_subparsers(dest="action", required=True)
    network_add = network_sub.add_parser("add", help="Add a network")
    network_add.add_argument("name")
    network_add.add_argument("root_ip")
    network_add.add_argument("--username", default="", help="Root device SSH username")
    network_add.add_argument("--password", default="", help="Root device SSH password")
    network_sub.add_parser("list", help="List networks")

    credential = sub.add_parser("credential", help="Manage credentials")
    credential_sub = credential.add_subparsers(dest="action", required=True)
    credential_add = credential_sub.add_parser("add", help="Add a credential")
    credential_add.add_argument("username")
    credential_add.add_argument("password")
    credential_add.add_argument("--network", help="Network id or name (default: global)")
    credential_sub.add_parser("list", help="List credentials")

    scan = sub.add_parser("scan", help="Scan a network and wait for the result")
    scan.add_argument("network")
    scan.add_argument("--workers", type=int, help="Concurrent device sessions (default: 4)")
    scan.add_argument("--no-mdns", action="store_true", help="Skip the mDNS sweep")
    scan.add_argument("--no-snmp", action="store_true", help="Skip SNMP enrichment")
    scan.add_argument(
        "--no-jump-host", action="store_true", help="Connect to every device directly, never through the root"
    )

    topology = sub.add_parser("topology", help="Print the stored topology")
    topology.add_argument("network")
    topology.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    test = sub.add_parser("test-credential", help="Try one credential against one device")
    test.add_argument("network")
    test.add_argument("ip")
    test.add_argument("username")
    test.add_argument("password")

    history = sub.add_parser("history", help="List recent scans of a network")
    history.add_argument("network")
    history.add_argument("--limit", type=int, default=20)

    logs = sub.add_parser("logs", help="Print the log of one scan")
    logs.add_argument("scan_id")

    return parser.parse_args(args)


def resolve_network(store: JsonFileStore, key: str) -> Network:
    """Find a network by id, then by name."""
    network = store.get(Network, key) or store.find_one(Network, name=key)
    if network is None:
        raise NotFound(f"Network {key!r} not found")
    return network


def topology_rows(manager: ScanManager, network_id: str) -> list[list[object]]:
    rows: list[list[object]] = []
    for depth, device in walk(manager.get_topology(network_id).devices):
        name = device.hostname or device.ip or device.mac
        rows.append(
            [
                "  " * depth + ("└ " if depth else "") + name,
                device.ip or "",
                device.mac,
                device.type or "",
                device.vendor or "",
                device.upstream_interface or "",
                "yes" if device.accessible else "no",
            ]
        )
    return rows


def _cmd_network(store: JsonFileStore, parsed: argparse.Namespace) -> None:
    if parsed.action == "add":
        network = store.upsert(
            Network(
                name=parsed.name,
                root_ip=parsed.root_ip,
                root_username=parsed.username,
                root_password=parsed.password,
            )
        )
        store.flush()
        print(network.id)
        return
    rows = [
        [n.id, n.name, n.root_ip, n.device_count, n.last_scanned_at or "", n.is_online]
        for n in store.list(Network)
    ]
    print(tabulate(rows, headers=["id", "name", "root", "devices", "last scan", "online"]))


def _cmd_credential(store: JsonFileStore, parsed: argparse.Namespace) -> None:
    if parsed.action == "add":
        network_id = resolve_network(store, parsed.network).id if parsed.network else None
        credential = store.upsert(Credential(username=parsed.username, password=parsed.password, network_id=network_id))
        store.flush()
        print(credential.id)
        return
    rows = [[c.id, c.username, c.network_id or "(global)", len(c.matched_devices)] for c in store.list(Credential)]
    print(tabulate(rows, headers=["id", "username", "network", "matched"]))


def _cmd_scan(manager: ScanManager, store: JsonFileStore, parsed: argparse.Namespace) -> int:
    network = resolve_network(store, parsed.network)
    overrides = {
        "workers": parsed.workers,
        "enable_mdns": False if parsed.no_mdns else None,
        "enable_snmp": False if parsed.no_snmp else None,
        "jump_host": False if parsed.no_jump_host else None,
    }
    settings = manager.settings.model_copy(update={k: v for k, v in overrides.items() if v is not None})
    try:
        scan = manager.run_scan(network.id, settings)
    except KeyboardInterrupt:
        manager.stop_scan(network.id)
        scan = manager.wait(network.id)  # type: ignore[assignment]
    store.flush()
    print(
        tabulate(
            [[scan.id, scan.status.value, scan.device_count, scan.error or ""]],
            headers=["scan", "status", "devices", "error"],
        )
    )
    return 0 if scan.status in (ScanStatus.COMPLETED, ScanStatus.STOPPED) else 1


def _cmd_topology(manager: ScanManager, store: JsonFileStore, parsed: argparse.Namespace) -> None:
    network = resolve_network(store, parsed.network)
    if parsed.json:
        print(json.dumps(manager.get_topology(network.id).model_dump(mode="json"), indent=2))
        return
    print(
        tabulate(
            topology_rows(manager, network.id),
            headers=["device", "ip", "mac", "type", "vendor", "parent port", "accessible"],
        )
    )


def _cmd_test_credential(manager: ScanManager, store: JsonFileStore, parsed: argparse.Namespace) -> int:
    network = resolve_network(store, parsed.network)
    result = manager.test_credential(network.id, parsed.ip, parsed.username, parsed.password)
    store.flush()
    if result.success:
        print(f"OK: {result.ip} ({result.hostname or 'unknown'}, driver {result.driver}, MAC {result.mac or '?'})")
        return 0
    print(f"FAILED: {result.ip}: {result.error}")
    return 1


def main(
    args: list[str] | None = None,
    manager_factory: Optional[Callable[[JsonFileStore], ScanManager]] = None,
) -> None:
    """Main entry point for the topomapper CLI."""
    parsed = parse_args(args)

    if not parsed.verbose:
        logger.remove()
        logger.add(sys.stderr, level="INFO")

    try:
        store = JsonFileStore(parsed.state)
    except StoreError as e:
        logger.error(str(e))
        sys.exit(1)
    if manager_factory is None:
        manager = ScanManager(store=store, settings=CrawlSettings.from_env())
    else:
        manager = manager_factory(store)

    code = 0
    try:
        if parsed.command == "network":
            _cmd_network(store, parsed)
        elif parsed.command == "credential":
            _cmd_credential(store, parsed)
        elif parsed.command == "scan":
            code = _cmd_scan(manager, store, parsed)
        elif parsed.command == "topology":
            _cmd_topology(manager, store, parsed)
        elif parsed.command == "test-credential":
            code = _cmd_test_credential(manager, store, parsed)
        elif parsed.command == "history":
            network = resolve_network(store, parsed.network)
            rows = [
                [s.id, s.started_at, s.completed_at or "", s.status.value, s.device_count, s.error or ""]
                for s in manager.scan_history(network.id, parsed.limit)
            ]
            print(tabulate(rows, headers=["scan", "started", "completed", "status", "devices", "error"]))
        elif parsed.command == "logs":
            for entry in manager.scan_logs(parsed.scan_id):
                print(f"{entry.timestamp:%H:%M:%S} {entry.level.value:<7} {entry.message}")
    except NotFound as e:
        logger.error(str(e))
        code = 1
    if code:
        sys.exit(code)
