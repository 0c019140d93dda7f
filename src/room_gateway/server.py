"""Entrypoint for the room control gateway."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

if __package__ in (None, ""):
    sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # pragma: no cover

import uvicorn

from room_gateway import __version__
from room_gateway.config import load_settings
from room_gateway.logging_utils import configure_logging


def run_entrypoint() -> None:
    """Configure logging and serve the HTTP API with uvicorn."""
    settings = load_settings()
    configure_logging()
    from room_gateway.transport.http_server import create_http_app

    logging.info("Initializing room gateway v%s", __version__)
    if settings.logging.file:
        logging.info("Log file configured at: %s", settings.logging.file)

    app = create_http_app()
    # The gateway talks to devices over websockets but exposes none itself.
    uvicorn.run(
        app,
        host=settings.server.host,
        port=settings.server.port,
        ws="none",
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    run_entrypoint()
