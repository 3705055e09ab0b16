"""
Query execution façade.

This module wires configuration, resolver and sessions together:
- Session creation sharing one resolver (and its cached environment)
- One-shot execution collecting output in memory
- Output size limiting (excess is drained and dropped, not buffered)
- Failures reported as tagged QueryResults instead of exceptions
"""

from typing import Optional

from chcli_transport.config import CliTransportConfig, NodeEndpoint, load_config
from chcli_transport.executor.resolver import TransportResolver
from chcli_transport.executor.session import ProcessSession
from chcli_transport.executor.types import (
    ExecutionCancelledError,
    ExecutionRequest,
    ExecutorError,
    QueryResult,
    QueryStatus,
)
from chcli_transport.utils.logging import get_logger

logger = get_logger(__name__)


class QueryRunner:
    """
    Executes statements through the clickhouse command-line client.

    This class is the main entry point for callers. It:
    1. Resolves the execution environment once per runner
    2. Opens a ProcessSession per statement
    3. Collects output up to a size limit
    4. Returns structured results
    """

    def __init__(self, config: CliTransportConfig):
        """
        Initialize the runner.

        Args:
            config: Transport, node and runner configuration
        """
        self.config = config
        self.resolver = TransportResolver(config.transport)

    def open_session(
        self,
        request: ExecutionRequest,
        node: Optional[NodeEndpoint] = None,
    ) -> ProcessSession:
        """
        Create a session for a request; use it with ``async with``.

        Args:
            request: Statement and its parameters
            node: Server override, defaults to the configured node
        """
        return ProcessSession(
            request,
            node or self.config.node,
            self.config.transport,
            resolver=self.resolver,
        )

    async def execute(
        self,
        request: ExecutionRequest,
        node: Optional[NodeEndpoint] = None,
    ) -> QueryResult:
        """
        Run a statement to completion.

        Output is collected in memory unless the request names its own
        output destination, in which case it is written there.

        Args:
            request: Statement and its parameters
            node: Server override, defaults to the configured node

        Returns:
            QueryResult; failures carry an error_kind instead of raising

        Raises:
            ExecutionCancelledError: If the surrounding task is cancelled
        """
        max_size = self.config.runner.max_output_size
        session = self.open_session(request, node)
        output = bytearray()
        truncated = False

        try:
            async with session:
                stream = await session.get_result_stream()
                while True:
                    chunk = await stream.read(self.config.transport.read_buffer_size)
                    if not chunk:
                        break
                    # Keep reading past the limit so the child never blocks
                    remaining = max_size - len(output)
                    if len(chunk) > remaining:
                        truncated = True
                    output += chunk[: max(remaining, 0)]
                error = await session.get_error()
        except ExecutionCancelledError:
            raise
        except ExecutorError as e:
            logger.debug(f"Execution failed ({e.kind.value}): {e}")
            return QueryResult(
                status=QueryStatus.ERROR,
                output=bytes(output),
                exit_code=session.returncode,
                command=session.command.redacted() if session.command else [],
                truncated=truncated,
                error_kind=e.kind,
                error_message=str(e),
            )

        if error is not None:
            return QueryResult(
                status=QueryStatus.ERROR,
                output=bytes(output),
                exit_code=error.exit_code,
                command=session.command.redacted(),
                truncated=truncated,
                error_kind=error.kind,
                error_message=str(error),
            )

        return QueryResult(
            status=QueryStatus.SUCCESS,
            output=bytes(output),
            exit_code=session.returncode,
            command=session.command.redacted(),
            truncated=truncated,
        )


def create_runner(config: Optional[CliTransportConfig] = None) -> QueryRunner:
    """
    Factory function to create a QueryRunner.

    Args:
        config: Configuration; loaded from the default locations if None

    Returns:
        Configured QueryRunner instance
    """
    return QueryRunner(config or load_config())
