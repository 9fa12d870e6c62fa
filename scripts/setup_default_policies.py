from __future__ import annotations

import argparse
import asyncio
import sys

from cloneguard.core.logging import configure_logging
from cloneguard.persistence.db import SessionLocal
from cloneguard.services.policies import get_policy_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Install the default clone governance policies")
    parser.add_argument("--actor", default="CLONEGUARD_SETUP", help="Actor recorded in the audit trail")
    return parser


async def _run(actor: str) -> int:
    async with SessionLocal() as session:
        policies = await get_policy_store().setup_defaults(session, actor=actor, actor_role="admin")
    for policy in policies:
        print(f"{policy.name} type={policy.policy_type} action={policy.action} version={policy.version}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args.actor))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"setup_default_policies failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
