from __future__ import annotations

import uvicorn

from keyrotor.apps.api.main import create_app
from keyrotor.core.config import get_settings


def main() -> None:
    # Serve the encryption ops API with env-driven host and port.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.ops_api_host, port=settings.ops_api_port)


if __name__ == "__main__":
    main()
