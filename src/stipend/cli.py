"""Stipend CLI — command-line interface for the stipend engine.

Usage:
    python -m stipend.cli status
    python -m stipend.cli add-recipient --id 0xabc... --amount 4000000000 --role "Regular Steward"
    python -m stipend.cli set-period --period 1 --due 2026-11-01T00:00:00Z
    python -m stipend.cli process-batch --period 1 --term 6 0xabc... 0xdef...
    python -m stipend.cli history --id 0xabc...

State lives in the data directory (events.jsonl, state.json). The
default rail is a local vault whose balances are saved in state.json
alongside the paid-bits, funded with the mint command. --rail erc20 pays on-chain using STIPEND_* settings
read from the environment or a .env file.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from stipend.compensation.payment_rail import PaymentRail, StablecoinVault
from stipend.config import ChainConfig, DEFAULT_CONFIG_DIR, StipendConfig
from stipend.persistence.event_log import EventLog
from stipend.persistence.state_store import StateStore
from stipend.service import ServiceResult, StipendService

ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DATA = ROOT / "data"
EVENTS_FILE = "events.jsonl"
STATE_FILE = "state.json"


def _parse_due(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        due = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an ISO 8601 timestamp: {value}")
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    return due


def _load_vault(data_dir: Path) -> StablecoinVault:
    """Rebuild the local vault from the balances saved with the state."""
    balances = StateStore(data_dir / STATE_FILE).load_rail_balances()
    return StablecoinVault(balances)


def _make_rail(args: argparse.Namespace) -> PaymentRail:
    if args.rail == "erc20":
        from stipend.chain.erc20_rail import ERC20Rail

        load_dotenv(args.env_file)
        return ERC20Rail(ChainConfig.from_env())
    return _load_vault(args.data)


def _make_service(args: argparse.Namespace, rail: PaymentRail) -> StipendService:
    """Create a StipendService with durable persistence."""
    args.data.mkdir(parents=True, exist_ok=True)
    config = StipendConfig.from_config_dir(args.config)
    return StipendService(
        config,
        rail,
        event_log=EventLog(storage_path=args.data / EVENTS_FILE),
        state_store=StateStore(storage_path=args.data / STATE_FILE),
    )


def _report(result: ServiceResult, message: str) -> int:
    if result.success:
        print(message)
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_add_recipient(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    result = service.add_recipient(args.caller, args.id, args.amount, args.role)
    return _report(result, f"Added recipient: {result.data.get('recipient_id')}")


def cmd_update_recipient(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    result = service.update_recipient(args.caller, args.id, args.amount, args.role)
    return _report(result, f"Updated recipient: {result.data.get('recipient_id')}")


def cmd_remove_recipient(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    result = service.remove_recipient(args.caller, args.id)
    return _report(result, f"Removed recipient: {result.data.get('recipient_id')}")


def cmd_set_period(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    result = service.set_period(args.caller, args.period, args.due)
    return _report(result, f"Period {args.period} due at {args.due.isoformat()}")


def cmd_pause(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    return _report(service.pause(args.caller), "Disbursement paused")


def cmd_unpause(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    return _report(service.unpause(args.caller), "Disbursement resumed")


def cmd_mint(args: argparse.Namespace) -> int:
    """Fund the local vault (vault rail only)."""
    if args.rail != "vault":
        print("Failed: mint is only available for the vault rail", file=sys.stderr)
        return 1
    rail = _make_rail(args)
    service = _make_service(args, rail)
    account = args.account or service.status()["funding_source"]
    result = service.fund_vault(args.caller, account, args.amount)
    return _report(
        result, f"Minted {args.amount} to {account} (balance {result.data.get('balance')})",
    )


def cmd_process_batch(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    result = service.process_batch(args.caller, args.period, args.ids, args.term)
    if result.success:
        print(json.dumps(result.data, indent=2))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_active(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    rows = [asdict(r) for r in service.active_recipients()]
    print(json.dumps(rows, indent=2))
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    rows = [asdict(h) for h in service.payment_history(args.id)]
    print(json.dumps(rows, indent=2, default=str))
    return 0


def cmd_period_status(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    result = service.period_status(args.period)
    if args.funding and result.success:
        funding = service.funding_status(args.period)
        if not funding.success:
            result = funding
        else:
            result = ServiceResult(
                success=True, data=dict(result.data, funding=funding.data),
            )
    if result.success:
        print(json.dumps(result.data, indent=2))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_audit(args: argparse.Namespace) -> int:
    service = _make_service(args, _make_rail(args))
    result = service.period_audit(args.period)
    if result.success:
        print(json.dumps(result.data, indent=2))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stipend",
        description="Stipend — recurring stablecoin stipend disbursement",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=DEFAULT_DATA,
        help="Path to data directory (default: data/)",
    )
    parser.add_argument(
        "--rail",
        choices=["vault", "erc20"],
        default="vault",
        help="Payment rail (default: vault)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=ROOT / ".env",
        help="Environment file with STIPEND_* chain settings (erc20 rail)",
    )
    parser.add_argument(
        "--caller",
        default="admin",
        help="Identity performing the operation (default: admin)",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show system status")

    p_add = sub.add_parser("add-recipient", help="Add or reactivate a recipient")
    p_add.add_argument("--id", required=True, help="Recipient identifier")
    p_add.add_argument("--amount", required=True, type=int, help="Monthly amount (base units)")
    p_add.add_argument("--role", default="", help="Role label")

    p_upd = sub.add_parser("update-recipient", help="Change amount and role")
    p_upd.add_argument("--id", required=True, help="Recipient identifier")
    p_upd.add_argument("--amount", required=True, type=int, help="Monthly amount (base units)")
    p_upd.add_argument("--role", default="", help="Role label")

    p_rm = sub.add_parser("remove-recipient", help="Deactivate a recipient")
    p_rm.add_argument("--id", required=True, help="Recipient identifier")

    p_per = sub.add_parser("set-period", help="Schedule a payment period")
    p_per.add_argument("--period", required=True, type=int, help="Period ID")
    p_per.add_argument("--due", required=True, type=_parse_due, help="Due time (ISO 8601)")

    sub.add_parser("pause", help="Pause disbursement")
    sub.add_parser("unpause", help="Resume disbursement")

    p_mint = sub.add_parser("mint", help="Fund the local vault")
    p_mint.add_argument("--amount", required=True, type=int, help="Amount (base units)")
    p_mint.add_argument("--account", help="Account to credit (default: funding source)")

    p_batch = sub.add_parser("process-batch", help="Pay a batch of recipients")
    p_batch.add_argument("--period", required=True, type=int, help="Period ID")
    p_batch.add_argument("--term", required=True, type=int, help="Term tag")
    p_batch.add_argument("ids", nargs="*", help="Candidate recipient identifiers")

    sub.add_parser("active", help="List active recipients")

    p_hist = sub.add_parser("history", help="Payment history for a recipient")
    p_hist.add_argument("--id", required=True, help="Recipient identifier")

    p_stat = sub.add_parser("period-status", help="Settlement status of a period")
    p_stat.add_argument("--period", required=True, type=int, help="Period ID")
    p_stat.add_argument("--funding", action="store_true", help="Include funding status")

    p_audit = sub.add_parser("audit", help="Audit events for a period")
    p_audit.add_argument("--period", required=True, type=int, help="Period ID")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "add-recipient": cmd_add_recipient,
        "update-recipient": cmd_update_recipient,
        "remove-recipient": cmd_remove_recipient,
        "set-period": cmd_set_period,
        "pause": cmd_pause,
        "unpause": cmd_unpause,
        "mint": cmd_mint,
        "process-batch": cmd_process_batch,
        "active": cmd_active,
        "history": cmd_history,
        "period-status": cmd_period_status,
        "audit": cmd_audit,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        return handler(args)
    except ValueError as e:
        # Configuration and chain settings errors
        print(f"Failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
