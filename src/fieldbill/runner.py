"""Operations entry point for billing runs.

Each command is one serial unit of work against one account, suitable for
a webhook handler, a cron entry, or a manual retry.
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime
from typing import Any

import structlog

from fieldbill.billing import BillingOrchestrator, StageResult
from fieldbill.config import configure_logging, get_settings
from fieldbill.ledger import LedgerStore
from fieldbill.reconciliation import InternalReconciler, SyncEngine
from fieldbill.suggestions import build_suggester

logger = structlog.get_logger(__name__)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _stage_payload(result: StageResult) -> dict[str, Any]:
    return {
        "success": result.success,
        "next_stage": result.next_stage.value if result.next_stage else None,
        "requires_approval": result.requires_approval,
        "error_code": result.error_code.value if result.error_code else None,
        "error": result.error,
        "data": result.data,
    }


def _timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise argparse.ArgumentTypeError(f"timestamp needs a UTC offset: {value}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fieldbill",
        description="Field services billing lifecycle and reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s init-db
  %(prog)s job-completed --account 1 --job 42
  %(prog)s payment --account 1 --invoice 7 --amount 5000 --method card
  %(prog)s overdue --account 1
  %(prog)s sync-payments --account 1 --since 2024-01-01T00:00:00+00:00
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create ledger tables")

    def account_command(name: str, help_text: str) -> argparse.ArgumentParser:
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--account", type=int, required=True, help="Account id")
        return cmd

    job = account_command("job-completed", "Generate the invoice for a completed job")
    job.add_argument("--job", type=int, required=True, help="Job id")

    payment = account_command("payment", "Record a captured payment")
    payment.add_argument("--invoice", type=int, required=True, help="Invoice id")
    payment.add_argument("--amount", type=int, required=True, help="Amount in minor units")
    payment.add_argument("--method", type=str, default="unknown", help="Payment method")

    dispute = account_command("dispute", "Flag an invoice as disputed")
    dispute.add_argument("--invoice", type=int, required=True, help="Invoice id")
    dispute.add_argument("--reason", type=str, required=True, help="Dispute reason")

    account_command("overdue", "Sweep sent invoices for overdue ones")
    account_command("reconcile", "Check invoice statuses against payments")
    account_command("sync-invoices", "Push unsynced invoices to accounting")
    sync_payments = account_command("sync-payments", "Pull payments from accounting")
    sync_payments.add_argument(
        "--since", type=_timestamp, default=None, help="ISO timestamp lower bound"
    )
    account_command("summary", "Print the billing dashboard summary")
    return parser


async def dispatch(args: argparse.Namespace, store: LedgerStore) -> Any:
    """Run one parsed command and return its JSON-ready result."""
    command = args.command

    if command == "job-completed":
        orchestrator = BillingOrchestrator(store, suggester=build_suggester())
        return _stage_payload(await orchestrator.handle_job_completed(args.account, args.job))
    if command == "payment":
        orchestrator = BillingOrchestrator(store)
        return _stage_payload(
            await orchestrator.handle_payment_received(
                args.account, args.invoice, args.amount, args.method
            )
        )
    if command == "dispute":
        orchestrator = BillingOrchestrator(store)
        return _stage_payload(
            await orchestrator.handle_dispute_detected(args.account, args.invoice, args.reason)
        )
    if command == "overdue":
        sweep = await BillingOrchestrator(store).check_overdue_invoices(args.account)
        return {
            "processed": sweep.processed,
            "overdue_count": sweep.overdue_count,
            "issue_ids": sweep.issue_ids,
        }
    if command == "reconcile":
        return InternalReconciler(store).reconcile_account(args.account).to_dict()
    if command == "sync-invoices":
        batch = await SyncEngine(store).sync_pending_invoices(args.account)
        return {
            "total": batch.total,
            "synced": batch.synced,
            "errored": batch.errored,
            "results": [vars(result) for result in batch.results],
        }
    if command == "sync-payments":
        result = await SyncEngine(store).sync_payments(args.account, since=args.since)
        return result.to_dict()
    if command == "summary":
        return BillingOrchestrator(store).get_billing_summary(args.account).to_dict()
    raise ValueError(f"Unknown command: {command}")


async def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Usage:
        python -m fieldbill.runner job-completed --account 1 --job 42
        python -m fieldbill.runner reconcile --account 1
    """
    configure_logging()
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "init-db":
        LedgerStore.from_url(settings.database_url, echo=settings.database_echo, create=True)
        logger.info("database_initialized", url=settings.database_url)
        return 0

    store = LedgerStore.from_url(settings.database_url, echo=settings.database_echo)
    logger.info("command_started", command=args.command, account_id=args.account)
    try:
        _emit(await dispatch(args, store))
    except KeyboardInterrupt:
        logger.info("command_interrupted", command=args.command)
        return 130
    except Exception as e:
        logger.exception("command_failed", command=args.command, error=str(e))
        return 1
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
