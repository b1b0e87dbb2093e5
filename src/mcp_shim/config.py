"""
Configuration loading utilities with Pydantic validation.

The shim is configured once at startup from an optional YAML file and the
``MCP_*`` environment variables (environment wins). The resulting
:class:`ShimConfig` is frozen and handed explicitly to every component.
"""

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mcp_shim.logging_config import get_logger

logger = get_logger(__name__)

# Environment variable -> ShimConfig field
ENV_VARS: Dict[str, str] = {
    "MCP_PROXY_URL": "proxy_url",
    "MCP_SERVER_NAME": "server_name",
    "MCP_API_KEY": "api_key",
    "MCP_MAX_REQUEST_SIZE": "max_request_size",
    "MCP_RATE_LIMIT": "rate_limit_per_minute",
    "MCP_ALLOWED_PATHS": "allowed_paths",
    "MCP_CACHE": "cache_enabled",
    "MCP_CACHE_TTL_MS": "cache_ttl_ms",
    "MCP_CACHE_MAX_ENTRIES": "cache_max_entries",
    "MCP_TIMEOUT_MS": "timeout_ms",
    "MCP_MAX_RETRIES": "max_retries",
    "MCP_RETRY_INITIAL_DELAY_MS": "retry_initial_delay_ms",
    "MCP_RETRY_MAX_DELAY_MS": "retry_max_delay_ms",
    "MCP_LOG_LEVEL": "log_level",
    "MCP_LOG_FILE": "log_to_file",
    "MCP_LOG_FILE_PATH": "log_file",
    "MCP_LOG_MAX_SIZE": "log_max_size",
}

CONFIG_PATH_ENV = "MCP_SHIM_CONFIG"

FILESYSTEM_SERVER = "filesystem"

LOG_LEVELS = ("trace", "debug", "info", "warn", "warning", "error", "critical")


class ConfigError(ValueError):
    """Raised when the shim configuration cannot be loaded or validated."""


class ShimConfig(BaseModel):
    """
    Immutable runtime configuration for the shim.

    Attributes:
        proxy_url: Base URL of the remote MCP proxy (no trailing slash)
        server_name: Logical server name, appended to the proxy URL
        api_key: Bearer token sent to the proxy when non-empty
        allowed_paths: Normalized filesystem prefixes permitted for the filesystem server
    """

    proxy_url: str = Field(
        default="http://localhost:9876",
        description="Base URL of the remote MCP proxy",
        min_length=1,
    )
    server_name: str = Field(
        default=FILESYSTEM_SERVER,
        description="Logical name of the server being shimmed",
        min_length=1,
        max_length=100,
        pattern=r"^[a-zA-Z0-9._-]+$",
    )
    api_key: str = Field(default="", description="Bearer token for the proxy", repr=False)

    # Security
    max_request_size: int = Field(default=5 * 1024 * 1024, gt=0)
    rate_limit_per_minute: int = Field(default=60, gt=0)
    allowed_paths: List[str] = Field(default_factory=list)

    # Performance
    cache_enabled: bool = True
    cache_ttl_ms: int = Field(default=5 * 60 * 1000, ge=0)
    cache_max_entries: int = Field(default=1000, ge=0, description="0 means unbounded")
    timeout_ms: int = Field(default=30000, gt=0)

    # Retries
    max_retries: int = Field(default=3, ge=0)
    retry_initial_delay_ms: int = Field(default=100, ge=0)
    retry_max_delay_ms: int = Field(default=5000, ge=0)

    # Logging
    log_level: str = "info"
    log_to_file: bool = False
    log_file: Optional[str] = None
    log_max_size: int = Field(default=10 * 1024 * 1024, gt=0)

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "example": {
                "proxy_url": "https://mcp.example.com",
                "server_name": "filesystem",
                "allowed_paths": ["/home/user/projects", "/tmp"],
                "max_retries": 3,
            }
        },
    )

    @field_validator("proxy_url", "server_name", mode="before")
    @classmethod
    def strip_strings(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v: str) -> str:
        """Reject names that would step out of the proxy URL path."""
        if v in (".", ".."):
            raise ValueError(f"server_name must not be a relative path segment, got: {v}")
        return v

    @field_validator("proxy_url")
    @classmethod
    def validate_proxy_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"proxy_url must start with http:// or https://, got: {v}")
        return v.rstrip("/")

    @field_validator("allowed_paths", mode="before")
    @classmethod
    def split_allowed_paths(cls, v: Any) -> Any:
        """Accept a comma separated string as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return v.split(",")
        return v

    @field_validator("allowed_paths")
    @classmethod
    def normalize_allowed_paths(cls, v: List[str]) -> List[str]:
        return [os.path.normpath(p.strip()) for p in v if p.strip()]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got: {v}")
        return level

    @property
    def endpoint(self) -> str:
        """Full URL requests are POSTed to."""
        return f"{self.proxy_url}/{self.server_name}"

    @property
    def is_filesystem(self) -> bool:
        return self.server_name == FILESYSTEM_SERVER

    @property
    def log_file_path(self) -> str:
        if self.log_file:
            return self.log_file
        return str(Path(tempfile.gettempdir()) / f"mcp-shim-{self.server_name}.log")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def cache_ttl_seconds(self) -> float:
        return self.cache_ttl_ms / 1000.0

    def summary(self) -> Dict[str, Any]:
        """Loggable view of the configuration with the API key masked."""
        data = self.model_dump()
        data["api_key"] = "***" if self.api_key else ""
        return data


def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        logger.warning(f"Config file {config_path} not found. Using environment only.")
        return {}

    try:
        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        error_msg = f"YAML parsing error in {config_path}: {e}"
        logger.error(error_msg)
        raise ConfigError(error_msg) from e

    if raw_config is None:
        logger.info("Config file is empty. Using environment only.")
        return {}
    if not isinstance(raw_config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")
    return raw_config


def _read_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for env_name, field_name in ENV_VARS.items():
        value = environ.get(env_name)
        # Empty strings behave as unset
        if value is None or value.strip() == "":
            continue
        values[field_name] = value
    return values


def load_config(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ShimConfig:
    """
    Build the shim configuration from an optional YAML file and the environment.

    Args:
        config_path: YAML file whose keys are ShimConfig field names. Defaults
            to the path in ``MCP_SHIM_CONFIG`` when set.
        environ: Environment mapping. Defaults to ``os.environ``.

    Returns:
        Validated, frozen configuration

    Raises:
        ConfigError: If the file cannot be parsed or validation fails
    """
    if environ is None:
        environ = os.environ
    if config_path is None:
        config_path = environ.get(CONFIG_PATH_ENV) or None

    raw: Dict[str, Any] = {}
    if config_path:
        raw.update(_read_yaml(config_path))
    raw.update(_read_env(environ))

    try:
        config = ShimConfig.model_validate(raw)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            field_path = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"  {field_path}: {error['msg']}")
        error_message = "Configuration validation errors:\n" + "\n".join(errors)
        logger.error(error_message)
        raise ConfigError(error_message) from e

    logger.debug("Loaded configuration for server %s", config.server_name)
    return config
