"""
Pydantic models for transport configuration.

Configuration is loaded once (see loader.py) and handed to the resolver,
command builder and sessions explicitly.
"""

import tempfile
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


DEFAULT_CLI_PATH = "clickhouse"
DEFAULT_DOCKER_CLI_PATH = "docker"
DEFAULT_DOCKER_IMAGE = "clickhouse/clickhouse-server"


class ContainerPolicy(str, Enum):
    """How containers are used when no local client is available."""

    AUTO = "auto"  # Persistent if container_id is set, ephemeral otherwise
    PERSISTENT = "persistent"  # Always reuse (or create) container_id
    EPHEMERAL = "ephemeral"  # New container per execution, container_id ignored


class NodeEndpoint(BaseModel):
    """Server the client connects to."""

    host: str = Field(
        default="localhost",
        description="Server host name",
    )
    port: int = Field(
        default=9000,
        ge=1,
        le=65535,
        description="Native protocol port",
    )
    database: str = Field(
        default="",
        description="Default database (omitted when blank)",
    )
    user: str = Field(
        default="default",
        description="User name (omitted when blank)",
    )
    password: str = Field(
        default="",
        description="Password (omitted when blank)",
    )
    secure: bool = Field(
        default=False,
        description="Connect over TLS",
    )


class TransportSettings(BaseModel):
    """Execution environment settings."""

    cli_path: str = Field(
        default=DEFAULT_CLI_PATH,
        description="Local clickhouse binary",
    )
    docker_cli_path: str = Field(
        default=DEFAULT_DOCKER_CLI_PATH,
        description="Container runtime binary",
    )
    docker_image: str = Field(
        default=DEFAULT_DOCKER_IMAGE,
        description="Image providing the clickhouse binary",
    )
    container_id: Optional[str] = Field(
        default=None,
        description="Name of a persistent container to reuse",
    )
    container_policy: ContainerPolicy = Field(
        default=ContainerPolicy.AUTO,
        description="Persistent vs. ephemeral container usage",
    )
    container_cli_path: str = Field(
        default=DEFAULT_CLI_PATH,
        description="clickhouse binary inside the container",
    )
    work_directory: str = Field(
        default_factory=tempfile.gettempdir,
        description="Host directory for staged files (bind-mounted in containers)",
    )
    container_directory: str = Field(
        default="/tmp/",
        description="Mount point of work_directory inside the container",
    )
    config_file: Optional[str] = Field(
        default=None,
        description="clickhouse client config file",
    )
    use_config_file: bool = Field(
        default=False,
        description="Pass config_file instead of user/password when it exists",
    )
    use_profile_events: bool = Field(
        default=False,
        description="Ask the client to print profile events",
    )
    probe_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for availability probes",
    )
    io_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for staging input data",
    )
    read_buffer_size: int = Field(
        default=8192,
        ge=512,
        description="Chunk size when reading from the child",
    )
    write_buffer_size: int = Field(
        default=8192,
        ge=512,
        description="Chunk size when writing staged files",
    )
    max_error_size: int = Field(
        default=65536,
        ge=1024,
        description="Maximum diagnostic output kept from the child, in bytes",
    )

    @model_validator(mode="after")
    def validate_container_policy(self) -> "TransportSettings":
        """Ensure container_id is set when the policy requires it."""
        if self.container_policy == ContainerPolicy.PERSISTENT and not self.container_id:
            raise ValueError(
                "container_id is required when container_policy is 'persistent'"
            )
        return self

    @property
    def persistent_container(self) -> Optional[str]:
        """Container identity to reuse, or None for ephemeral containers."""
        if self.container_policy == ContainerPolicy.EPHEMERAL:
            return None
        return self.container_id or None


class RunnerSettings(BaseModel):
    """Settings for QueryRunner.execute."""

    max_output_size: int = Field(
        default=10 * 1024 * 1024,
        ge=1024,
        description="Maximum output collected in memory before truncation",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: Literal["debug", "info", "warning", "error"] = Field(
        default="info",
        description="Logging level",
    )
    file: Optional[str] = Field(
        default=None,
        description="Optional log file in addition to stderr",
    )


class CliTransportConfig(BaseModel):
    """
    Main configuration container.

    Loaded from YAML files and environment variables, then passed to the
    runner and sessions explicitly.
    """

    transport: TransportSettings = Field(default_factory=TransportSettings)
    node: NodeEndpoint = Field(default_factory=NodeEndpoint)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    # Allow extra fields to be ignored (forward compatibility)
    model_config = ConfigDict(extra="ignore")
