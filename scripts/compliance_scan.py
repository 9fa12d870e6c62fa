from __future__ import annotations

import argparse
import asyncio
import sys

from cloneguard.core.logging import configure_logging
from cloneguard.services.compliance import run_compliance_scan


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Check live clones against MAX_AGE policies")
    parser.add_argument("--environment", default=None, help="Limit the scan to one environment")
    parser.add_argument("--actor", default="CLONEGUARD_COMPLIANCE", help="Actor recorded in the audit trail")
    return parser


async def _run(environment: str | None, actor: str) -> int:
    result = await run_compliance_scan(actor=actor, actor_role="admin", environment=environment)
    print(
        f"compliant_clones={result['compliant_clones']} "
        f"non_compliant_clones={result['non_compliant_clones']} "
        f"violations_opened={result['violations_opened']}"
    )
    for item in result["violations"]:
        print(f"  {item['clone_name']} owner={item['clone_owner']} policy={item['policy_name']}: {item['violation']}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args.environment, args.actor))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"compliance_scan failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
