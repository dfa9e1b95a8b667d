from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from keyrotor.core.config import get_settings
from keyrotor.persistence.db import SessionLocal
from keyrotor.services.encryption.storage import load_encryption_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render the target EncryptionConfiguration for the next replica revision")
    parser.add_argument("--component", default=None, help="Owning component (defaults to ENCRYPTION_COMPONENT)")
    parser.add_argument("--output", default=None, help="Write to this file (mode 0600) instead of stdout")
    return parser


async def _render(args: argparse.Namespace) -> int:
    # The document embeds key material; keep it off shared terminals when possible.
    component = args.component or get_settings().encryption_component
    async with SessionLocal() as session:
        document = await load_encryption_config(session, component=component)
    rendered = json.dumps(document, indent=2, sort_keys=True)
    if args.output:
        path = Path(args.output)
        path.write_text(rendered + "\n", encoding="utf-8")
        path.chmod(0o600)
        return 0
    print(rendered)
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    return asyncio.run(_render(args))


if __name__ == "__main__":
    sys.exit(main())
