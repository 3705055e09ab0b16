"""
Configuration system for the command-line transport.

Exports:
    CliTransportConfig: Main configuration container
    load_config: Load configuration from YAML/env
"""

from chcli_transport.config.models import (
    CliTransportConfig,
    ContainerPolicy,
    LoggingSettings,
    NodeEndpoint,
    RunnerSettings,
    TransportSettings,
)
from chcli_transport.config.loader import load_config

__all__ = [
    "CliTransportConfig",
    "ContainerPolicy",
    "LoggingSettings",
    "NodeEndpoint",
    "RunnerSettings",
    "TransportSettings",
    "load_config",
]
