from __future__ import annotations

import argparse
import asyncio
import sys

from keyrotor.core.config import get_settings
from keyrotor.persistence.db import SessionLocal
from keyrotor.persistence.repos.encryption_config import get_target_configuration
from keyrotor.persistence.repos.keys import list_keys


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List encryption keys and their role in the target configuration")
    parser.add_argument("--component", default=None, help="Owning component (defaults to ENCRYPTION_COMPONENT)")
    return parser


async def _list_keys(args: argparse.Namespace) -> int:
    # Print key lifecycle metadata without exposing key material.
    component = args.component or get_settings().encryption_component
    async with SessionLocal() as session:
        keys = await list_keys(session, component=component)
        target, version = await get_target_configuration(session, component=component)

    writes = {ref.key_id for ref in target.write_keys()}
    referenced = target.referenced_key_ids()
    print(f"# component={component} target_version={version}")
    print("key_id\tmode\treason\tcreated_at\tmigrated_at\tmigrated_resources\trole\tmarked_for_deletion")
    for key in keys:
        role = "write" if key.key_id in writes else "read" if key.key_id in referenced else "-"
        print(
            "\t".join(
                [
                    str(key.key_id),
                    key.mode,
                    key.reason or "",
                    key.created_at.isoformat(),
                    key.migrated_at.isoformat() if key.migrated_at else "",
                    ",".join(sorted(str(resource) for resource in key.migrated_resources)),
                    role,
                    "yes" if key.marked_for_deletion else "no",
                ]
            )
        )
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_list_keys(args))


if __name__ == "__main__":
    sys.exit(main())
