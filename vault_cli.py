"""Command line front-end for the KeyVault credential store."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

import db
from settings import load_sync_settings
from vaultsync import conflicts
from vaultsync.google_credentials import CredentialsFileInvalidError, summarize_service_account
from vaultsync.logging_config import configure_logging
from vaultsync.models import SyncOutcome, SyncResult
from vaultsync.vault import VaultService, build_vault

_FAILED_OUTCOMES = {SyncOutcome.FAILED, SyncOutcome.PERMISSION_DENIED}


def _open_vault() -> VaultService:
    db.initialize_database()
    return build_vault(load_sync_settings())


def _describe_account(credential_path: str) -> str:
    try:
        summary = summarize_service_account(Path(credential_path))
    except CredentialsFileInvalidError as exc:
        return f"unusable ({exc})"
    return f"{summary.client_email} (project {summary.project_id}, key {summary.key_id})"


def _collect_fields(args: argparse.Namespace) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for attribute, key in (
        ("site", "site_name"),
        ("username", "username"),
        ("secret", "encrypted_secret"),
        ("comments", "comments"),
    ):
        value = getattr(args, attribute, None)
        if value is not None:
            fields[key] = value
    return fields


def _print_result(result: SyncResult) -> None:
    print(f"Sync outcome  : {result.outcome.value}")
    counts = result.counts()
    print(
        "Uploaded {uploaded}, downloaded {downloaded}, updated locally {updated_local},"
        " updated remotely {updated_remote}, errors {errors}".format(**counts)
    )
    if result.drained or result.retained:
        print(f"Queue         : {result.drained} replayed, {result.retained} still pending")
    if result.quota is not None:
        quota = result.quota
        print(
            f"Cloud limit reached: {quota.current} stored + {quota.pending} pending"
            f" exceeds {quota.limit} by {quota.exceeded}",
            file=sys.stderr,
        )
    if result.message and result.outcome != SyncOutcome.COMPLETED:
        print(f"Detail        : {result.message}", file=sys.stderr)


def _sync_after_mutation(vault: VaultService, args: argparse.Namespace) -> None:
    if getattr(args, "no_sync", False) or not vault.sync_enabled:
        return
    result = asyncio.run(vault.sync_now())
    _print_result(result)


def command_add(args: argparse.Namespace) -> int:
    vault = _open_vault()
    try:
        record_id = vault.add(_collect_fields(args))
    except db.LocalStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Added credential {record_id}")
    _sync_after_mutation(vault, args)
    return 0


def command_edit(args: argparse.Namespace) -> int:
    fields = _collect_fields(args)
    if not fields:
        print("Error: nothing to change", file=sys.stderr)
        return 1
    vault = _open_vault()
    try:
        vault.edit(args.id, fields)
    except KeyError:
        print(f"Error: credential {args.id} not found", file=sys.stderr)
        return 1
    except db.LocalStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Updated credential {args.id}")
    _sync_after_mutation(vault, args)
    return 0


def command_delete(args: argparse.Namespace) -> int:
    vault = _open_vault()
    try:
        vault.delete(args.id)
    except KeyError:
        print(f"Error: credential {args.id} not found", file=sys.stderr)
        return 1
    except db.LocalStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Deleted credential {args.id}")
    _sync_after_mutation(vault, args)
    return 0


def command_list(args: argparse.Namespace) -> int:
    vault = _open_vault()
    try:
        records = vault.list()
    except db.LocalStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if not records:
        print("No credentials stored.")
        return 0
    for record in records:
        marker = "synced" if record.cloud_synced else "local"
        print(f"{record.id:>5}  {record.site_name:<30} {record.username:<25} {record.last_modified}  [{marker}]")
    return 0


def command_sync(args: argparse.Namespace) -> int:
    vault = _open_vault()
    result = asyncio.run(vault.sync_now())
    _print_result(result)
    return 1 if result.outcome in _FAILED_OUTCOMES else 0


def command_status(args: argparse.Namespace) -> int:
    db.initialize_database()
    settings = load_sync_settings()
    vault = build_vault(settings)
    status = vault.status()
    print(f"Cloud sync    : {'enabled' if vault.sync_enabled else 'disabled'}")
    if vault.sync_enabled:
        print(f"Account       : {_describe_account(settings.credential_path)}")
    print(f"Online        : {'yes' if status.is_online else 'no'}")
    print(f"Pending ops   : {status.pending_operations}")
    print(f"Syncing       : {'yes' if status.is_syncing else 'no'}")
    print(f"Last sync     : {status.last_sync_time or 'never'}")
    return 0


async def _watch(vault: VaultService, duration: Optional[float]) -> None:
    await vault.start()
    try:
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await vault.stop()


def command_watch(args: argparse.Namespace) -> int:
    vault = _open_vault()
    if not vault.sync_enabled:
        print("Error: cloud sync is disabled", file=sys.stderr)
        return 1
    print("Watching connectivity; press Ctrl+C to stop.")
    try:
        asyncio.run(_watch(vault, args.duration))
    except KeyboardInterrupt:
        pass
    if vault.coordinator is not None and vault.coordinator.last_result is not None:
        _print_result(vault.coordinator.last_result)
    return 0


def command_conflicts(args: argparse.Namespace) -> int:
    entries = conflicts.recent(args.limit)
    if not entries:
        print("No conflicts recorded in this session.")
        return 0
    for entry in entries:
        print(json.dumps(entry, ensure_ascii=False, sort_keys=True))
    return 0


def _add_field_arguments(parser: argparse.ArgumentParser, *, required_site: bool) -> None:
    parser.add_argument("--site", required=required_site, help="Site or service name")
    parser.add_argument("--username", help="Account user name")
    parser.add_argument("--secret", help="Encrypted secret (ciphertext)")
    parser.add_argument("--comments", help="Free-form notes")
    parser.add_argument("--no-sync", action="store_true", help="Only queue the change")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="KeyVault credential store")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to keyvault.log and stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help="Store a new credential")
    _add_field_arguments(add_parser, required_site=True)
    add_parser.set_defaults(func=command_add)

    edit_parser = subparsers.add_parser("edit", help="Change an existing credential")
    edit_parser.add_argument("id", type=int, help="Credential id")
    _add_field_arguments(edit_parser, required_site=False)
    edit_parser.set_defaults(func=command_edit)

    delete_parser = subparsers.add_parser("delete", help="Remove a credential")
    delete_parser.add_argument("id", type=int, help="Credential id")
    delete_parser.add_argument("--no-sync", action="store_true", help="Only queue the change")
    delete_parser.set_defaults(func=command_delete)

    list_parser = subparsers.add_parser("list", help="List stored credentials")
    list_parser.set_defaults(func=command_list)

    sync_parser = subparsers.add_parser("sync", help="Run one synchronisation cycle")
    sync_parser.set_defaults(func=command_sync)

    status_parser = subparsers.add_parser("status", help="Show synchronisation status")
    status_parser.set_defaults(func=command_status)

    watch_parser = subparsers.add_parser(
        "watch",
        help="Sync on startup and whenever the network comes back",
    )
    watch_parser.add_argument(
        "--duration",
        type=float,
        default=None,
        help="Stop after this many seconds instead of waiting for Ctrl+C",
    )
    watch_parser.set_defaults(func=command_watch)

    conflicts_parser = subparsers.add_parser("conflicts", help="Show recent conflict resolutions")
    conflicts_parser.add_argument("--limit", type=int, default=10, help="Number of entries")
    conflicts_parser.set_defaults(func=command_conflicts)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, console=args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
