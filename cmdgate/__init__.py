"""cmdgate: MCP gateway that runs CLI toolchain operations safely.

Mutating operations take a non-blocking lock on their target; long-running
ones are tracked as sessions whose output can be tailed and which can be
stopped after the request that started them has returned.

Run the daemon:
    python -m cmdgate
"""

from cmdgate.config import Config
from cmdgate.dispatcher import CommandDispatcher
from cmdgate.server import create_server

__all__ = ["CommandDispatcher", "Config", "create_server"]
