from __future__ import annotations

import argparse
import asyncio
import sys

from cloneguard.core.logging import configure_logging
from cloneguard.services.reaper import sweep


def _build_parser() -> argparse.ArgumentParser:
    # Dry run unless --execute is passed explicitly.
    parser = argparse.ArgumentParser(description="List or delete expired clones")
    parser.add_argument("--environment", default=None, help="Limit the sweep to one environment")
    parser.add_argument("--execute", action="store_true", help="Delete the expired clones")
    return parser


async def _run(environment: str | None, execute: bool) -> int:
    report = await sweep(environment=environment, dry_run=not execute)
    print(f"mode={report.mode} expired={len(report.expired)} deleted={len(report.deleted)} failed={len(report.failed)}")
    for clone in report.expired:
        print(f"  {clone['qualified_name']} owner={clone['owner']} expires_at={clone['expires_at']}")
    for failure in report.failed:
        print(f"  failed {failure['clone_name']}: {failure['error_code']} {failure['error']}", file=sys.stderr)
    return 1 if report.failed else 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args.environment, args.execute))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"cleanup_expired failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
