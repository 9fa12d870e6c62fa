from __future__ import annotations

import argparse
import asyncio
import sys

from cloneguard.core.config import get_settings
from cloneguard.core.logging import configure_logging
from cloneguard.persistence.db import SessionLocal
from cloneguard.services.maintenance import purge_audit_records


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Purge clone audit records past retention")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help=f"Keep this many days (default {get_settings().audit_retention_days})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Only count what would be purged")
    parser.add_argument("--actor", default="CLONEGUARD_MAINTENANCE", help="Actor recorded in the audit trail")
    return parser


async def _run(retention_days: int | None, dry_run: bool, actor: str) -> int:
    async with SessionLocal() as session:
        result = await purge_audit_records(
            session,
            retention_days=retention_days,
            dry_run=dry_run,
            actor=actor,
            actor_role="admin",
        )
    prefix = "would_purge" if dry_run else "pruned"
    print(
        f"{prefix}_audit_records={result['audit_records']} "
        f"{prefix}_resolved_violations={result['resolved_violations']} "
        f"{prefix}_access_events={result['access_events']} cutoff={result['cutoff']}"
    )
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args.retention_days, args.dry_run, args.actor))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"prune_audit failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
