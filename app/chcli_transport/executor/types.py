"""
Type definitions for command-line execution.

This module defines the data structures used throughout the executor.
"""

import asyncio
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union


# A byte source is either an open binary stream or the path of an existing file
ByteSource = Union[BinaryIO, str, os.PathLike]
ByteSink = Union[BinaryIO, str, os.PathLike]

DEFAULT_FORMAT = "TabSeparated"


class TransportMode(str, Enum):
    """Where the clickhouse client runs."""

    LOCAL = "local"
    PERSISTENT_CONTAINER = "persistent_container"
    EPHEMERAL_CONTAINER = "ephemeral_container"


class SessionState(str, Enum):
    """Lifecycle of a ProcessSession. Transitions only move forward."""

    CREATED = "created"
    STARTED = "started"
    DRAINING = "draining"
    FINISHED = "finished"
    TERMINATED = "terminated"


class ErrorKind(str, Enum):
    """Closed set of failure causes."""

    TOOL_UNAVAILABLE = "tool_unavailable"
    CONTAINER_START_FAILURE = "container_start_failure"
    PROCESS_START_FAILURE = "process_start_failure"
    NON_ZERO_EXIT = "non_zero_exit"
    CANCELLED = "cancelled"
    STAGING_FAILURE = "staging_failure"


class QueryStatus(str, Enum):
    """Status of a QueryResult."""

    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ExternalTable:
    """
    Temporary table shipped alongside the query.

    Attributes:
        name: Table name as seen by the query (client default when empty)
        structure: Column list, e.g. "id UInt64, name String"
        content: Open binary stream or path of an existing file
        format: Input format of the content (client default when None)
    """

    name: str
    structure: str
    content: ByteSource
    format: Optional[str] = None


@dataclass
class ExecutionRequest:
    """
    One statement to run through the command-line client.

    Attributes:
        statement: Query text, always passed as the last argument
        query_id: Optional query identifier
        settings: Server settings; only max_result_rows and
            result_overflow_mode are forwarded
        external_tables: External tables, in flag order
        input: Data for INSERT statements (stream or file path)
        output: Destination for the result (stream or file path)
        format: Output format
        compress: Ask the server to compress the response
    """

    statement: str
    query_id: Optional[str] = None
    settings: dict[str, Any] = field(default_factory=dict)
    external_tables: list[ExternalTable] = field(default_factory=list)
    input: Optional[ByteSource] = None
    output: Optional[ByteSink] = None
    format: str = DEFAULT_FORMAT
    compress: bool = False


def underlying_file(source: Any) -> Optional[Path]:
    """
    Return the regular file backing a source, if there is one.

    Paths are returned as-is (absolute); open file objects are resolved
    through their ``name`` attribute, but only while positioned at the
    start. In-memory and partially consumed streams return None.
    """
    if isinstance(source, (str, os.PathLike)):
        path = Path(source)
    else:
        name = getattr(source, "name", None)
        if not isinstance(name, (str, os.PathLike)):
            return None
        try:
            if source.tell() != 0:
                return None
        except (AttributeError, OSError, ValueError):
            return None
        path = Path(name)
    if not path.is_file():
        return None
    return path.absolute()


@dataclass
class QueryResult:
    """
    Result of QueryRunner.execute.

    Attributes:
        status: Execution status
        output: Result bytes (may be truncated, empty when written to a file)
        exit_code: Process exit code (None if the process never ran)
        command: The argument vector that was executed
        truncated: Whether output was truncated due to size limits
        error_kind: Tag of the failure, if any
        error_message: Human-readable error message
    """

    status: QueryStatus
    output: bytes
    exit_code: Optional[int]
    command: list[str] = field(default_factory=list)
    truncated: bool = False
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        """Check if the query executed successfully."""
        return self.status == QueryStatus.SUCCESS

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "output": self.output.decode("utf-8", errors="replace"),
            "exit_code": self.exit_code,
            "command": self.command,
            "truncated": self.truncated,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
        }


class ExecutorError(Exception):
    """Base exception for executor errors."""

    kind: ErrorKind


class ToolUnavailableError(ExecutorError):
    """Neither a local client nor a usable container runtime/image was found."""

    kind = ErrorKind.TOOL_UNAVAILABLE


class ContainerStartError(ExecutorError):
    """A persistent container could not be reused or created."""

    kind = ErrorKind.CONTAINER_START_FAILURE

    def __init__(self, message: str, container_id: str):
        super().__init__(message)
        self.container_id = container_id


class ProcessStartError(ExecutorError):
    """The operating system refused to spawn the client."""

    kind = ErrorKind.PROCESS_START_FAILURE


class NonZeroExitError(ExecutorError):
    """The client exited with a non-zero status."""

    kind = ErrorKind.NON_ZERO_EXIT

    def __init__(self, message: str, exit_code: int):
        super().__init__(message)
        self.exit_code = exit_code


class StagingError(ExecutorError):
    """External content could not be made reachable by the client."""

    kind = ErrorKind.STAGING_FAILURE


class ExecutionCancelledError(ExecutorError, asyncio.CancelledError):
    """
    Raised when a wait is cancelled.

    Also an asyncio.CancelledError, so the surrounding task still ends
    up cancelled.
    """

    kind = ErrorKind.CANCELLED
