"""
Path sanitation for filesystem tool calls.

Path arguments are normalized and checked against the configured allow-list
before a request leaves the machine. A rejected argument marks the request
as a security violation; the forwarder answers it locally.
"""

import os
from typing import Any, Iterable, List, Optional

from mcp_shim.logging_config import get_logger
from mcp_shim.protocol import Request

logger = get_logger(__name__)


class PathSanitizer:
    """Validates filesystem path arguments against an allow-list of prefixes."""

    def __init__(self, allowed_paths: Iterable[str] = (), enabled: bool = True):
        """
        Initialize the sanitizer.

        Args:
            allowed_paths: Permitted path prefixes. Empty means any absolute path.
            enabled: When False, process_request passes every request through.
        """
        self.allowed_paths: List[str] = [os.path.normpath(p) for p in allowed_paths]
        self.enabled = enabled

    def is_allowed(self, normalized_path: str) -> bool:
        if not self.allowed_paths:
            return True
        for prefix in self.allowed_paths:
            if normalized_path == prefix:
                return True
            # "/" already ends with the separator
            boundary = prefix if prefix.endswith(os.sep) else prefix + os.sep
            if normalized_path.startswith(boundary):
                return True
        return False

    def sanitize(self, raw_path: Any) -> Optional[str]:
        """
        Normalize a path and check it against the allow-list.

        Args:
            raw_path: Path argument as received from the client

        Returns:
            The normalized absolute path, or None if the path is rejected
        """
        if not isinstance(raw_path, str) or not raw_path:
            logger.warning(f"Rejected invalid path argument: {raw_path!r}")
            return None

        normalized = os.path.normpath(raw_path)
        if not os.path.isabs(normalized):
            logger.warning(f"Rejected relative path: {raw_path}")
            return None

        if not self.is_allowed(normalized):
            logger.warning(f"Access to path outside allowed directories: {normalized}")
            return None

        return normalized

    def process_request(self, request: Request) -> Request:
        """
        Sanitize the path arguments of a filesystem ``tools/call`` request in place.

        Checks ``path``, then ``paths`` (all-or-nothing), then ``source`` and
        ``destination``. The first rejected field marks the request as a
        security violation and stops processing.

        Args:
            request: Parsed request

        Returns:
            The same request, with normalized paths or a violation marker
        """
        if not self.enabled or request.method != "tools/call":
            return request

        params = request.params
        if not isinstance(params, dict):
            return request
        args = params.get("arguments")
        if not isinstance(args, dict):
            return request

        if isinstance(args.get("path"), str):
            sanitized = self.sanitize(args["path"])
            if sanitized is None:
                logger.warning(f"Blocked access to path: {args['path']}")
                return request.mark_violation(f"Access denied to path: {args['path']}")
            args["path"] = sanitized

        if isinstance(args.get("paths"), list):
            sanitized_paths = []
            for p in args["paths"]:
                sanitized = self.sanitize(p)
                if sanitized is None:
                    logger.warning(
                        "Blocked access to one or more paths in: "
                        + ", ".join(str(item) for item in args["paths"])
                    )
                    return request.mark_violation("Access denied to one or more requested paths")
                sanitized_paths.append(sanitized)
            args["paths"] = sanitized_paths

        for key in ("source", "destination"):
            if isinstance(args.get(key), str):
                sanitized = self.sanitize(args[key])
                if sanitized is None:
                    return request.mark_violation(f"Access denied to {key} path")
                args[key] = sanitized

        return request
