"""anchorledger CLI — record, anchor and audit contract payments.

Usage:
    python -m anchorledger.cli status
    python -m anchorledger.cli submit-payment --principal 1200 --interest 300 --due-date 2026-11-01
    python -m anchorledger.cli audit-package --output audit.json
    python -m anchorledger.cli verify-anchor --tx 0xabc...
    python -m anchorledger.cli anchor-contract --terms terms.json --credit credit.json --property-id prop_1
    python -m anchorledger.cli clear --yes

Settings come from LEDGER_* variables and signing keys from
TRUST_PARTNER_PRIVATE_KEY / SPV_PRIVATE_KEY, optionally via a .env file.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from anchorledger.config import LedgerConfig
from anchorledger.credentials import EnvSecretsProvider
from anchorledger.crypto.anchor import AnchorClient
from anchorledger.errors import LedgerError
from anchorledger.logging_config import setup_logging
from anchorledger.models.payment import Money
from anchorledger.persistence.store import JsonFileLedgerStore
from anchorledger.service import LedgerService

logger = logging.getLogger(__name__)


def _make_service(config: LedgerConfig) -> LedgerService:
    """Create a LedgerService with file persistence and a live chain client."""
    store = JsonFileLedgerStore(config.data_dir)
    client = AnchorClient.from_config(config, EnvSecretsProvider())
    return LedgerService(store, client, chain_id=config.chain_id)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False))


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config)
    _print_json(service.status())
    return 0


def cmd_submit_payment(args: argparse.Namespace) -> int:
    service = _make_service(args.config)
    amount = Money.of(args.principal, args.interest, currency=args.currency)
    result = service.submit_payment(amount, args.due_date, note_id=args.note_id)
    _print_json({
        "event": result.event.to_record(),
        "snapshot": result.snapshot.to_record(),
        "receipt": result.receipt.to_record(),
    })
    return 0


def cmd_audit_package(args: argparse.Namespace) -> int:
    service = _make_service(args.config)
    record = service.get_audit_package().to_record()
    if args.output:
        args.output.write_text(
            json.dumps(record, indent=2, sort_keys=True, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        print(f"Audit package written to {args.output}")
    else:
        _print_json(record)
    return 0


def cmd_verify_anchor(args: argparse.Namespace) -> int:
    """Compare an anchored ledger root with the current store."""
    service = _make_service(args.config)
    result = service.verify_ledger_anchor(args.tx)
    _print_json({
        "tx_id": result.tx_id,
        "anchored_root": result.anchored_root,
        "anchored_count": result.anchored_count,
        "computed_root": result.computed_root,
        "computed_count": result.computed_count,
        "verification": "MATCH" if result.matches else "MISMATCH",
    })
    return 0 if result.matches else 2


def cmd_anchor_contract(args: argparse.Namespace) -> int:
    service = _make_service(args.config)
    terms = json.loads(args.terms.read_text(encoding="utf-8"))
    credit = json.loads(args.credit.read_text(encoding="utf-8"))
    result = service.anchor_contract(
        terms, credit, property_id=args.property_id, contract_id=args.contract_id,
    )
    _print_json({
        "snapshot": result.snapshot.to_record(),
        "receipt": result.receipt.to_record(),
        "anchorPayload": result.anchor_payload,
    })
    return 0


def cmd_clear(args: argparse.Namespace) -> int:
    if not args.yes:
        print("Refusing to clear the ledger without --yes", file=sys.stderr)
        return 1
    service = _make_service(args.config)
    service.clear_ledger()
    print("Payment ledger cleared")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="anchorledger",
        description="Tamper-evident payment ledger anchored on an EVM chain",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file (default: search from the working directory)",
    )
    parser.add_argument(
        "--log-format",
        choices=["standard", "json"],
        default="standard",
    )

    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show contract and ledger status")

    # submit-payment
    p_pay = sub.add_parser("submit-payment", help="Record and anchor a payment")
    p_pay.add_argument("--principal", required=True, help="Principal portion (Decimal)")
    p_pay.add_argument("--interest", required=True, help="Interest portion (Decimal)")
    p_pay.add_argument("--currency", default="USD")
    p_pay.add_argument("--due-date", required=True, help="Scheduled due date (YYYY-MM-DD)")
    p_pay.add_argument("--note-id", help="Note identifier, if the loan is tokenized")

    # audit-package
    p_audit = sub.add_parser("audit-package", help="Export the verification artifact")
    p_audit.add_argument("--output", type=Path, help="Write to file instead of stdout")

    # verify-anchor
    p_verify = sub.add_parser("verify-anchor", help="Check an anchored root against the ledger")
    p_verify.add_argument("--tx", required=True, help="Anchoring transaction hash")

    # anchor-contract
    p_contract = sub.add_parser("anchor-contract", help="Anchor a new contract")
    p_contract.add_argument("--terms", type=Path, required=True, help="Contract terms JSON file")
    p_contract.add_argument("--credit", type=Path, required=True, help="Credit summary JSON file")
    p_contract.add_argument("--property-id", required=True)
    p_contract.add_argument("--contract-id", help="Contract ID (default: generated)")

    # clear
    p_clear = sub.add_parser("clear", help="Irreversibly delete all payment events")
    p_clear.add_argument("--yes", action="store_true", help="Confirm the wipe")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "submit-payment": cmd_submit_payment,
        "audit-package": cmd_audit_package,
        "verify-anchor": cmd_verify_anchor,
        "anchor-contract": cmd_anchor_contract,
        "clear": cmd_clear,
    }
    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    try:
        args.config = LedgerConfig.from_env(dotenv_path=args.env_file)
        setup_logging(args.config.log_level, args.log_format)
        return handler(args)
    except LedgerError as e:
        status = e.anchor_status.value
        tx = f" (tx {e.tx_id})" if e.tx_id else ""
        print(f"Failed [{type(e).__name__}, {status}]{tx}: {e}", file=sys.stderr)
        return 1
    except (ValueError, OSError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
