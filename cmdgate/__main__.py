"""Run the command gateway as an MCP server.

Usage:
    python -m cmdgate [--transport http|stdio] [--host HOST] [--port PORT]
                      [--env-file FILE] [--log-level LEVEL]

In HTTP mode the daemon outlives individual assistant conversations and keeps
tracking every session it spawned until it is shut down.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import signal
from pathlib import Path

import uvicorn

from cmdgate.config import Config
from cmdgate.dispatcher import CommandDispatcher
from cmdgate.server import create_server

log = logging.getLogger(__name__)


class _SuppressDisconnect(logging.Filter):
    """Downgrade the MCP SDK's traceback for clients that hang up early."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info and record.exc_info[1] is not None:
            if "ClosedResourceError" in str(record.exc_info[1]):
                record.levelno = logging.DEBUG
                record.levelname = "DEBUG"
                record.msg = "Client disconnected before response completed"
                record.args = None
                record.exc_info = None
                record.exc_text = None
        return True


async def _serve_http(dispatcher: CommandDispatcher) -> None:
    server = create_server(dispatcher)
    config = dispatcher.config

    uvi = uvicorn.Server(uvicorn.Config(
        server.streamable_http_app(),
        host=config.host,
        port=config.port,
        log_level="info",
    ))

    # _serve() skips uvicorn's capture_signals(), which would replace the
    # handlers installed below.
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    serve_task = asyncio.create_task(uvi._serve())
    await shutdown.wait()
    log.info("Signal received, shutting down")

    uvi.should_exit = True
    await serve_task


def main() -> None:
    parser = argparse.ArgumentParser(description="MCP command-execution gateway")
    parser.add_argument(
        "--transport", choices=("http", "stdio"), default="http",
        help="MCP transport (default: http)",
    )
    parser.add_argument("--host", help="Interface to bind in HTTP mode")
    parser.add_argument("--port", type=int, help="Port to listen on in HTTP mode")
    parser.add_argument("--env-file", type=Path, help="Load settings from this .env file")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [cmdgate] %(levelname)s %(message)s",
    )
    logging.getLogger("mcp.server.streamable_http_manager").addFilter(
        _SuppressDisconnect()
    )

    config = Config.from_env(args.env_file)
    overrides = {
        k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None
    }
    if overrides:
        config = dataclasses.replace(config, **overrides)
    dispatcher = CommandDispatcher(config)

    try:
        if args.transport == "stdio":
            create_server(dispatcher).run("stdio")
        else:
            log.info("Starting cmdgate on http://%s:%d/mcp", config.host, config.port)
            asyncio.run(_serve_http(dispatcher))
    finally:
        log.info("Stopping all sessions")
        stopped = dispatcher.sessions.stop_all()
        if stopped:
            log.info("Stopped %d session(s)", stopped)


if __name__ == "__main__":
    main()
