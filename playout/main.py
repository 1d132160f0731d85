"""
Playout server entrypoint.

Resolves configuration, initialises logging and runs the FastAPI application
under uvicorn.  The OBS connection is never opened automatically; operators
connect from the UI.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from . import PlayoutConfig
from .api.server import create_app
from .settings import SettingsStore
from .utils.logging import configure_logging, parse_level

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app) -> AsyncIterator[None]:
    LOG.info("Playout lifespan starting")
    try:
        yield
    finally:
        LOG.info("Playout lifespan shutting down")


async def serve(config: PlayoutConfig, *, log_level: str = "info") -> None:
    """
    Run the control API inside an asyncio loop.

    Parameters
    ----------
    config:
        Process level configuration.
    log_level:
        Level passed on to uvicorn's own loggers.
    """

    import uvicorn

    settings = SettingsStore(config.settings_path)
    current = settings.load()

    app = create_app(config=config, settings=settings, lifespan=lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=log_level,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    LOG.info("OBS Playout server running on http://%s:%s", config.host, config.port)
    LOG.info("Media dir => %s", current.media_dir or "(not set)")
    await server.serve()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="OBS playout controller")
    parser.add_argument("--host", default=None, help="bind host for the API server")
    parser.add_argument("--port", type=int, default=None, help="bind port for the API server")
    parser.add_argument("--settings", type=Path, default=None, help="path of the YAML settings file")
    parser.add_argument("--log-level", default="info", help="logging level (debug, info, ...)")
    return parser.parse_args(argv)


def run(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(level=parse_level(args.log_level))

    config = PlayoutConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    if args.settings:
        config.settings_path = args.settings

    try:
        asyncio.run(serve(config, log_level=args.log_level.lower()))
    except KeyboardInterrupt:
        LOG.info("Playout server interrupted by user.")


if __name__ == "__main__":
    run()
