"""Maintenance jobs run against the configured database.

Usage:
    farmledger-maintenance corrections --tenant-id <tenant> [--limit N] [--dry-run]
    farmledger-maintenance consolidate --tenant-id <tenant> --posting-date 2026-12-31
"""

from __future__ import annotations

import argparse
import logging
import sys
import uuid
from collections.abc import Sequence
from datetime import date

from farmledger.business.corrections.service import accounting_correction_service
from farmledger.context import bind_actor
from farmledger.core.database import session_scope
from farmledger.main import bootstrap
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.errors import AccountingError


logger = logging.getLogger("farmledger.jobs")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="farmledger-maintenance", description="FarmLedger maintenance jobs")
    parser.add_argument("--tenant-id", required=True)
    parser.add_argument("--user-id", default="maintenance")
    commands = parser.add_subparsers(dest="command", required=True)

    corrections = commands.add_parser("corrections", help="repost settlement groups that hit legacy accounts")
    corrections.add_argument("--posting-group-id", type=uuid.UUID)
    corrections.add_argument("--limit", type=int)
    corrections.add_argument("--dry-run", action="store_true")

    consolidate = commands.add_parser("consolidate", help="move legacy party balances into party control accounts")
    consolidate.add_argument("--posting-date", type=date.fromisoformat, required=True)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    bootstrap()
    ctx = ActorContext(user_id=args.user_id, tenant_id=args.tenant_id)

    with bind_actor(ctx), session_scope() as session:
        try:
            if args.command == "corrections":
                result = accounting_correction_service.run_correction_batch(
                    session,
                    ctx,
                    tenant_id=args.tenant_id,
                    only_posting_group_id=args.posting_group_id,
                    limit=args.limit,
                    dry_run=args.dry_run,
                )
                print(result.model_dump_json(indent=2))
                return 1 if result.failures else 0

            correction = accounting_correction_service.consolidate_party_controls(
                session, ctx, tenant_id=args.tenant_id, posting_date=args.posting_date
            )
        except AccountingError as exc:
            logger.error("job.failed", extra={"kind": args.command, "reason": exc.code, "error": exc.message})
            return 2

        print(correction.model_dump_json(indent=2) if correction is not None else "nothing to consolidate")
        return 0


if __name__ == "__main__":
    sys.exit(main())
