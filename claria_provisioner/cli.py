"""Command line interface for the Claria provisioner."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from typing import Any, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .bootstrap import NewCredentials
from .config import ProvisionerConfig
from .core import (
    Provisioner,
    assume_role,
    bootstrap,
    classify,
    delete_access_key,
    export_plan_to_excel,
    export_scan_to_excel,
    list_access_keys,
    print_access_keys,
    print_bootstrap_result,
    print_plan,
    print_scan_results,
)
from .credentials import AssumedRole, CredentialSource, DefaultChain, NamedProfile, build_session
from .errors import ApplyStepError, ProvisionerError

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Return parsed command line arguments."""

    parser = argparse.ArgumentParser(description="Provision and reconcile the Claria AWS resources.")
    parser.add_argument("--profile", help="AWS CLI profile to use", default=None)
    parser.add_argument("--region", help="AWS region (defaults to CLARIA_REGION or AWS_REGION)", default=None)
    parser.add_argument("--system-name", dest="system_name", default=None, help="Resource name prefix")
    parser.add_argument(
        "--role-account",
        dest="role_account",
        default=None,
        help="Assume --role-name in this account before running the command",
    )
    parser.add_argument("--role-name", dest="role_name", default=None, help="Role to assume in --role-account")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("classify", help="Classify the current credentials")

    assume = subparsers.add_parser("assume-role", help="Assume a role in another account")
    assume.add_argument("account_id")
    assume.add_argument("role_name")

    boot = subparsers.add_parser("bootstrap", help="Create the scoped claria-admin identity")
    boot.add_argument(
        "--credentials-out",
        dest="credentials_out",
        default=None,
        help="Write the new access key as JSON to this path (mode 0600)",
    )

    subparsers.add_parser("list-keys", help="List access keys of the claria-admin user")
    delete_key = subparsers.add_parser("delete-key", help="Delete an access key of the claria-admin user")
    delete_key.add_argument("key_id")

    for name, help_text in (("scan", "Scan managed resources"), ("plan", "Show the reconciliation plan")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--json", dest="json_path", help="Optional path to export results as JSON")
        sub.add_argument("--excel", dest="excel_path", help="Optional path to export results as .xlsx")

    apply = subparsers.add_parser("apply", help="Apply the plan")
    apply.add_argument("--json", dest="json_path", help="Optional path to export the final plan as JSON")

    for name, help_text in (
        ("destroy", "Delete every managed resource that is not retained"),
        ("reset-state", "Forget persisted state without touching resources"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--yes", action="store_true", help="Confirm the operation")

    escalate = subparsers.add_parser("escalate", help="Update the managed policy using elevated credentials")
    escalate.add_argument("--elevated-profile", dest="elevated_profile", required=True)

    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    if not verbose:
        # botocore is chatty at INFO
        logging.getLogger("botocore").setLevel(logging.WARNING)


def _source(args: argparse.Namespace, config: ProvisionerConfig) -> CredentialSource:
    source: CredentialSource = NamedProfile(config.profile) if config.profile else DefaultChain()
    if args.role_account and args.role_name:
        source = AssumedRole(account_id=args.role_account, role_name=args.role_name, parent=source)
    return source


def _write_json(path: str, payload: Any) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str)
    print(f"Results exported to {path}")


def _credentials_writer(path: str):
    def write(credentials: NewCredentials) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(asdict(credentials), fh, indent=2)

    return write


def _export_excel(exporter, rows, path: str) -> None:
    try:
        written = exporter(rows, path)
    except RuntimeError as exc:
        print(f"Failed to export Excel report: {exc}", file=sys.stderr)
    else:
        print(f"Excel report written to {written}")


def _run(args: argparse.Namespace, config: ProvisionerConfig) -> int:
    source = _source(args, config)
    region = config.region

    if args.command == "classify":
        assessment = classify(region, source)
        print(f"Account:  {assessment.identity.account_id}")
        print(f"Identity: {assessment.identity.arn}")
        print(f"Class:    {assessment.credential_class.value}")
        print(f"Reason:   {assessment.reason}")
        return 0

    if args.command == "assume-role":
        result = assume_role(region, source, args.account_id, args.role_name)
        print(f"Assumed {result.assumed_role_arn}")
        print(f"Expires {result.expiration}")
        return 0

    if args.command == "bootstrap":
        assessment = classify(region, source)
        writer = _credentials_writer(args.credentials_out) if args.credentials_out else None
        result = bootstrap(region, config.system_name, source, assessment.credential_class, write_config=writer)
        print_bootstrap_result(result)
        if result.key_limit_exceeded:
            print("Run 'list-keys' and 'delete-key' to free a slot, then bootstrap again.", file=sys.stderr)
        return 0 if result.success else 1

    if args.command == "list-keys":
        print_access_keys(list_access_keys(region, source))
        return 0

    if args.command == "delete-key":
        delete_access_key(region, source, args.key_id)
        print(f"Deleted access key {args.key_id}")
        return 0

    if args.command in {"destroy", "reset-state"} and not args.yes:
        print(f"Error: '{args.command}' requires --yes", file=sys.stderr)
        return 1

    provisioner = Provisioner.from_source(region, config.system_name, source, scan_workers=config.scan_workers)

    if args.command == "scan":
        results = provisioner.scan()
        print_scan_results(results)
        if args.json_path:
            _write_json(args.json_path, [asdict(r) for r in results])
        if args.excel_path:
            _export_excel(export_scan_to_excel, results, args.excel_path)
        return 0

    if args.command == "plan":
        entries = provisioner.plan()
        print_plan(entries)
        if args.json_path:
            _write_json(args.json_path, [e.to_dict() for e in entries])
        if args.excel_path:
            _export_excel(export_plan_to_excel, entries, args.excel_path)
        return 0

    if args.command == "apply":
        try:
            result = provisioner.apply()
        except ApplyStepError as exc:
            applied = ", ".join(e.spec.resource_name for e in exc.result.applied) or "nothing"
            print(f"Error: {exc}", file=sys.stderr)
            print(f"Applied before the failure: {applied}", file=sys.stderr)
            return 1
        print(f"Applied {len(result.applied)} step(s).")
        print_plan(result.final_plan)
        if args.json_path:
            _write_json(args.json_path, [e.to_dict() for e in result.final_plan])
        return 0

    if args.command == "destroy":
        try:
            result = provisioner.destroy()
        except ApplyStepError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        print(f"Destroyed {len(result.applied)} resource(s).")
        return 0

    if args.command == "reset-state":
        provisioner.reset_state()
        print("Provisioner state cleared.")
        return 0

    if args.command == "escalate":
        elevated = build_session(region, NamedProfile(args.elevated_profile))
        print_plan(provisioner.escalate(elevated))
        return 0

    raise ValueError(f"Unknown command '{args.command}'")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point used by ``python -m claria_provisioner``."""

    args = parse_args(argv)
    _configure_logging(args.verbose)
    try:
        config = ProvisionerConfig.from_env().with_overrides(
            region=args.region,
            system_name=args.system_name,
            profile=args.profile,
        )
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    try:
        return _run(args, config)
    except (ProvisionerError, ClientError, BotoCoreError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


__all__ = ["main", "parse_args"]
