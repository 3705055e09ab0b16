"""
Argument vector assembly for ``clickhouse client``.

Flag order matters: later flags override earlier ones and the query must
always come last.
"""

import numbers
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from chcli_transport.config.models import NodeEndpoint, TransportSettings
from chcli_transport.executor.staging import ExternalDataStager
from chcli_transport.executor.types import ExecutionRequest, ExternalTable, underlying_file
from chcli_transport.utils.logging import get_logger

if TYPE_CHECKING:
    from chcli_transport.executor.resolver import ExecutionEnvironment

logger = get_logger(__name__)

CLIENT_OPTION = "client"
QUERY_FLAG = "--query="

# Settings translated into dedicated client flags
MAX_RESULT_ROWS = "max_result_rows"
RESULT_OVERFLOW_MODE = "result_overflow_mode"


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


@dataclass
class CommandLine:
    """
    A fully built client invocation.

    Attributes:
        args: Argument vector, starting with the executable
        staged_files: Files created under the work directory for this
            command; the owner removes them when the process is done
    """

    args: list[str]
    staged_files: list[Path] = field(default_factory=list)

    def redacted(self) -> list[str]:
        """Argument vector with the password hidden, for logging."""
        return [
            "--password=***" if arg.startswith("--password=") else arg
            for arg in self.args
        ]


class CommandBuilder:
    """
    Builds the client argument vector for one ExecutionRequest.

    External tables whose content is not reachable from the execution
    environment are staged into the work directory first.
    """

    def __init__(self, settings: TransportSettings, stager: ExternalDataStager):
        self.settings = settings
        self.stager = stager

    def build(
        self,
        environment: "ExecutionEnvironment",
        node: NodeEndpoint,
        request: ExecutionRequest,
    ) -> CommandLine:
        """
        Build the command for a request.

        Args:
            environment: Resolved execution environment (prefix and mount)
            node: Server to connect to
            request: Statement and its parameters

        Returns:
            CommandLine with the argument vector and any staged files

        Raises:
            StagingError: If external table content cannot be staged
        """
        command = CommandLine(args=list(environment.command_prefix))
        args = command.args
        args.append(CLIENT_OPTION)

        if node.secure:
            args.append("--secure")
        args.append(f"--compression={1 if request.compress else 0}")
        args.append(f"--host={node.host}")
        args.append(f"--port={node.port}")
        if not _is_blank(node.database):
            args.append(f"--database={node.database}")

        args.extend(self._auth_flags(node))
        args.append(f"--format={request.format}")

        if not _is_blank(request.query_id):
            args.append(f"--query_id={request.query_id}")

        try:
            for table in request.external_tables:
                args.extend(self._external_table_flags(environment, table, command))
        except Exception:
            for path in command.staged_files:
                self.stager.release(path)
            raise

        args.extend(self._settings_flags(request.settings))

        if self.settings.use_profile_events:
            args.append("--print-profile-events")
            args.append("--profile-events-delay-ms=-1")

        args.append(QUERY_FLAG + request.statement)

        logger.debug(f"Built command: {command.redacted()}")
        return command

    def _auth_flags(self, node: NodeEndpoint) -> list[str]:
        """Config file when enabled and present, otherwise user/password."""
        config_file = self.settings.config_file
        if (
            self.settings.use_config_file
            and not _is_blank(config_file)
            and os.path.exists(config_file)
        ):
            return [f"--config-file={config_file}"]

        flags = []
        if not _is_blank(node.user):
            flags.append(f"--user={node.user}")
        if not _is_blank(node.password):
            flags.append(f"--password={node.password}")
        return flags

    def _external_table_flags(
        self,
        environment: "ExecutionEnvironment",
        table: ExternalTable,
        command: CommandLine,
    ) -> list[str]:
        flags = ["--external", f"--file={self._external_file_path(environment, table, command)}"]
        if table.name:
            flags.append(f"--name={table.name}")
        if table.format is not None:
            flags.append(f"--format={table.format}")
        flags.append(f"--structure={table.structure}")
        return flags

    def _external_file_path(
        self,
        environment: "ExecutionEnvironment",
        table: ExternalTable,
        command: CommandLine,
    ) -> str:
        """Path of the table content as seen by the client."""
        translator = environment.translator
        source = underlying_file(table.content)

        if source is not None:
            if environment.is_local:
                return str(source)
            if translator.contains(source):
                return translator.host_to_container(source)

        staged = self.stager.stage(table.content)
        command.staged_files.append(staged)
        return translator.host_to_container(staged)

    @staticmethod
    def _settings_flags(settings: dict[str, Any]) -> list[str]:
        flags = []

        max_rows = settings.get(MAX_RESULT_ROWS)
        if isinstance(max_rows, numbers.Real) and not isinstance(max_rows, bool):
            if int(max_rows) > 0:
                flags.append(f"--limit={int(max_rows)}")

        overflow_mode = settings.get(RESULT_OVERFLOW_MODE)
        if overflow_mode is not None:
            flags.append(f"--{RESULT_OVERFLOW_MODE}={overflow_mode}")

        return flags
