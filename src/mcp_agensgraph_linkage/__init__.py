import argparse
import asyncio
import logging

from . import server
from .utils import add_db_arguments, process_config

logger = logging.getLogger("mcp_agensgraph_linkage")
logger.setLevel(logging.INFO)


def main():
    """Main entry point for the package."""
    parser = argparse.ArgumentParser(description="AgensGraph Linkage MCP Server")
    add_db_arguments(parser)
    parser.add_argument("--namespace", default=None, help="Tool namespace prefix")
    parser.add_argument(
        "--transport", default=None, help="Transport type (stdio, sse, http)"
    )
    parser.add_argument(
        "--server-host", default=None, help="HTTP host (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--server-port", type=int, default=None, help="HTTP port (default: 8000)"
    )
    parser.add_argument(
        "--server-path", default=None, help="HTTP path (default: /mcp/)"
    )
    parser.add_argument(
        "--allow-origins",
        default=None,
        help="Comma-separated list of allowed CORS origins",
    )
    parser.add_argument(
        "--allowed-hosts",
        default=None,
        help="Comma-separated list of allowed hosts for DNS rebinding protection",
    )
    parser.add_argument(
        "--link-fanout",
        type=int,
        default=None,
        help="Maximum SAME_IP/SAME_DEVICE edges created per transaction (default: 50)",
    )

    args = parser.parse_args()

    config = process_config(args)
    asyncio.run(server.main(**config))


__all__ = ["main", "server"]
