from __future__ import annotations

import argparse
import asyncio
import sys

from keyrotor.core.logging import configure_logging
from keyrotor.persistence.db import create_schema
from keyrotor.workers.encryption_controllers import ControllerRunner, build_default_controllers


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the encryption key controllers")
    parser.add_argument("--create-schema", action="store_true", help="Create missing tables before starting")
    parser.add_argument("--once", action="store_true", help="Run each controller once and exit")
    return parser


async def _main(args: argparse.Namespace) -> int:
    # Boot the controller loops in a dedicated process so rotation continues without API traffic.
    configure_logging()
    if args.create_schema:
        await create_schema()
    runner = ControllerRunner(build_default_controllers())
    if args.once:
        for result in await runner.run_once():
            print(f"{result.controller}\t{result.status}\t{result.detail}")
        return 0
    await runner.run_forever()
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
