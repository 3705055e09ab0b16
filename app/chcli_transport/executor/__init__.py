"""
Command-line execution engine.

This module handles:
- Execution environment resolution (local client or container)
- Command assembly and external data staging
- Client process lifecycle and error capture
"""

from chcli_transport.executor.types import (
    ErrorKind,
    ExecutionRequest,
    ExternalTable,
    QueryResult,
    QueryStatus,
    SessionState,
    TransportMode,
    ExecutorError,
    ToolUnavailableError,
    ContainerStartError,
    ProcessStartError,
    NonZeroExitError,
    StagingError,
    ExecutionCancelledError,
)
from chcli_transport.executor.probe import check
from chcli_transport.executor.paths import PathTranslator
from chcli_transport.executor.staging import ExternalDataStager
from chcli_transport.executor.command import CommandBuilder, CommandLine
from chcli_transport.executor.resolver import (
    ExecutionEnvironment,
    TransportResolver,
)
from chcli_transport.executor.session import ProcessSession
from chcli_transport.executor.runner import (
    QueryRunner,
    create_runner,
)

__all__ = [
    # Types
    "ErrorKind",
    "ExecutionRequest",
    "ExternalTable",
    "QueryResult",
    "QueryStatus",
    "SessionState",
    "TransportMode",
    # Exceptions
    "ExecutorError",
    "ToolUnavailableError",
    "ContainerStartError",
    "ProcessStartError",
    "NonZeroExitError",
    "StagingError",
    "ExecutionCancelledError",
    # Components
    "check",
    "PathTranslator",
    "ExternalDataStager",
    "CommandBuilder",
    "CommandLine",
    "ExecutionEnvironment",
    "TransportResolver",
    "ProcessSession",
    # Runner
    "QueryRunner",
    "create_runner",
]
