"""Maintenance CLI for Courier.

Usage::

    python -m courier.cli licenses import legacy_licenses.json
    python -m courier.cli licenses list
    python -m courier.cli packages list
    python -m courier.cli grants prune
    python -m courier.cli operators add alice
    python -m courier.cli operators passwd alice
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path

from courier.auth import create_operator, find_operator_id, set_password
from courier.db import get_db, init_db
from courier.delivery.coordinator import DeliveryCoordinator
from courier.delivery.licenses import LicenseLedger
from courier.delivery.packages import PackageStore
from courier.devices.channel import ChannelBus
from courier.devices.presence import PresenceRegistry
from courier.errors import StorageError

logger = logging.getLogger(__name__)


def _import_licenses(path: Path) -> int:
    entries = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(entries, dict):
        # Keyed stores: {"KEY": {...}} or {"KEY": "..."}
        entries = [
            {**value, "key": key} if isinstance(value, dict) else key
            for key, value in entries.items()
        ]
    return LicenseLedger().import_entries(entries)


def _prompt_password() -> str:
    password = getpass.getpass("New password: ")
    if password != getpass.getpass("Repeat password: "):
        raise ValueError("Passwords do not match")
    return password


def _operators(command: str, username: str) -> None:
    conn = get_db()
    if command == "add":
        create_operator(conn, username, _prompt_password())
        print(f"Operator {username} created.")
        return
    op_id = find_operator_id(conn, username)
    if op_id is None:
        raise ValueError(f"No operator named {username!r}")
    set_password(conn, op_id, _prompt_password())
    print(f"Password updated for {username}.")


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(
        prog="python -m courier.cli",
        description="Courier license, package and grant maintenance",
    )
    sub = parser.add_subparsers(dest="area", required=True)

    lic = sub.add_parser("licenses", help="License records")
    lic_sub = lic.add_subparsers(dest="command", required=True)
    imp = lic_sub.add_parser("import", help="Import a legacy JSON license store")
    imp.add_argument("path", type=Path)
    lic_sub.add_parser("list", help="List license records")

    pkg = sub.add_parser("packages", help="Package catalogue")
    pkg.add_subparsers(dest="command", required=True).add_parser("list", help="List packages")

    grants = sub.add_parser("grants", help="Download grants")
    grants.add_subparsers(dest="command", required=True).add_parser("prune", help="Delete expired grants")

    ops = sub.add_parser("operators", help="Operator accounts")
    ops_sub = ops.add_subparsers(dest="command", required=True)
    for name, text in (("add", "Create an operator"), ("passwd", "Reset an operator password")):
        ops_sub.add_parser(name, help=text).add_argument("username")

    args = parser.parse_args(argv)

    try:
        init_db()
        if args.area == "licenses" and args.command == "import":
            print(f"Imported {_import_licenses(args.path)} license(s).")
        elif args.area == "licenses":
            for r in LicenseLedger().list_licenses():
                state = f"bound to {r.bound_device_id}" if r.activated else "unbound"
                print(f"  {r.key:24s} {state:32s} {r.assigned_package_ref or '-'}")
        elif args.area == "packages":
            for p in PackageStore().list_packages():
                print(f"  {p.id}  {p.name:24s} {p.kind}/{p.variant} v{p.version}  {p.size_bytes} bytes")
        elif args.area == "grants":
            coordinator = DeliveryCoordinator(
                PresenceRegistry(), ChannelBus(), LicenseLedger(), PackageStore()
            )
            print(f"Pruned {len(coordinator.prune_expired())} expired grant(s).")
        elif args.area == "operators":
            _operators(args.command, args.username)
    except (StorageError, OSError, ValueError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
