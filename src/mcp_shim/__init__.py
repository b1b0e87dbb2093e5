"""
MCP Shim

A stdio MCP server stand-in that forwards newline-delimited JSON-RPC requests
to a remote MCP proxy over HTTP, with path sanitation, rate limiting,
response caching and retries.
"""

__version__ = "0.1.0"
__author__ = "MCP Shim Contributors"

from mcp_shim.cache import ResponseCache
from mcp_shim.config import ShimConfig, load_config
from mcp_shim.forwarder import Forwarder
from mcp_shim.paths import PathSanitizer
from mcp_shim.rate_limit import RateLimiter
from mcp_shim.server import LineProcessor

__all__ = [
    "Forwarder",
    "LineProcessor",
    "PathSanitizer",
    "RateLimiter",
    "ResponseCache",
    "ShimConfig",
    "load_config",
]
