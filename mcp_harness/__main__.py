"""Run the harness as an MCP server.

Usage:
    python -m mcp_harness [--transport stdio|http] [--port PORT]
                          [--log-dir DIR] [--env-file FILE]

stdio is the default, for agents that launch the harness themselves.  In
http mode the harness stays up as a daemon on 127.0.0.1.  Either way every
deployed server is stopped when the harness exits.
"""

import argparse
import asyncio
import dataclasses
import logging
import signal
from pathlib import Path

import uvicorn

from mcp_harness.config import HarnessConfig
from mcp_harness.harness import Harness
from mcp_harness.server import create_server

log = logging.getLogger(__name__)


async def _run_stdio(harness: Harness) -> None:
    server = create_server(harness=harness)
    try:
        await server.run_stdio_async()
    finally:
        log.info("Stopping all deployed servers")
        await harness.shutdown()


async def _run_http(harness: Harness, port: int) -> None:
    server = create_server(harness=harness, port=port)
    uvi = uvicorn.Server(
        uvicorn.Config(
            server.streamable_http_app(),
            host="127.0.0.1",
            port=port,
            log_level="info",
        )
    )

    # Signals are handled on our loop; _serve() leaves them alone
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    serving = asyncio.create_task(uvi._serve(), name="uvicorn")
    stopping = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
        if stop.is_set():
            log.info("Signal received, shutting down")
        uvi.should_exit = True
        await serving
    finally:
        stopping.cancel()
        log.info("Stopping all deployed servers")
        await harness.shutdown()


class _ClientDisconnectFilter(logging.Filter):
    """Downgrade the SDK's traceback for HTTP clients that hang up early."""

    def filter(self, record: logging.LogRecord) -> bool:
        exc = record.exc_info[1] if record.exc_info else None
        seen = set()
        while exc is not None and id(exc) not in seen:
            seen.add(id(exc))
            if type(exc).__name__ == "ClosedResourceError":
                record.levelno = logging.DEBUG
                record.levelname = "DEBUG"
                record.msg = "Client disconnected before response completed"
                record.args = ()
                record.exc_info = None
                record.exc_text = None
                break
            exc = exc.__cause__ or exc.__context__
        return True


def main() -> None:
    parser = argparse.ArgumentParser(description="MCP server test harness")
    parser.add_argument(
        "--transport", choices=("stdio", "http"), default="stdio",
        help="How agents reach the harness (default: stdio)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Port for http mode (default: MCP_HARNESS_PORT or 8902)",
    )
    parser.add_argument(
        "--log-dir", default=None,
        help="Directory for server log files (default: MCP_HARNESS_LOG_DIR or ./logs)",
    )
    parser.add_argument(
        "--env-file", type=Path, default=None,
        help="dotenv file to load before reading MCP_HARNESS_* settings",
    )
    args = parser.parse_args()

    config = HarnessConfig.from_env(args.env_file)
    overrides = {}
    if args.port is not None:
        overrides["port"] = args.port
    if args.log_dir is not None:
        overrides["log_dir"] = args.log_dir
    if overrides:
        config = dataclasses.replace(config, **overrides)

    # stderr only: in stdio mode stdout carries the MCP frames
    logging.basicConfig(
        level=config.log_level_number,
        format="%(asctime)s [mcp-harness] %(levelname)s %(message)s",
    )

    logging.getLogger("mcp.server.streamable_http_manager").addFilter(
        _ClientDisconnectFilter()
    )

    harness = Harness(config)
    if args.transport == "http":
        log.info("Starting mcp-harness on http://127.0.0.1:%d/mcp", config.port)
        asyncio.run(_run_http(harness, config.port))
    else:
        log.info("Starting mcp-harness on stdio")
        asyncio.run(_run_stdio(harness))


if __name__ == "__main__":
    main()
