"""
API service entrypoint.
Runs the FastAPI application via uvicorn. PORT overrides the configured port when set.

A single worker process: the subscriber registry lives in process memory
unless the redis bridge is enabled.
"""
from __future__ import annotations

import os

import uvicorn

from shared.config import get_settings


def main() -> None:
    """Start the API service."""
    settings = get_settings()
    port = int(os.environ.get("PORT", settings.api_port))

    uvicorn.run(
        "api.app:app",
        host=settings.api_host,
        port=port,
        workers=1,
        log_level=settings.log_level.lower(),
        access_log=False,  # We handle logging via middleware
        ws_ping_interval=30.0,
        ws_ping_timeout=10.0,
        timeout_keep_alive=30,
    )


if __name__ == "__main__":
    main()
