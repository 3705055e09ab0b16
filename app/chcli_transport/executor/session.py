"""
One clickhouse client process and its streams.

A ProcessSession owns exactly one child process for its whole lifetime:
it resolves where to run, builds the command, wires stdin/stdout to files
or pipes, and exposes the result stream and the (memoized) error.

Typical use::

    async with ProcessSession(request, node, settings) as session:
        stream = await session.get_result_stream()
        data = await stream.read()
        error = await session.get_error()

The result stream must be consumed before ``get_error`` is awaited,
otherwise a child with a large result blocks on a full stdout pipe.
"""

import asyncio
import os
import threading
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

from chcli_transport.config.models import NodeEndpoint, TransportSettings
from chcli_transport.executor.command import CommandBuilder, CommandLine
from chcli_transport.executor.resolver import ExecutionEnvironment, TransportResolver
from chcli_transport.executor.staging import ExternalDataStager
from chcli_transport.executor.types import (
    ExecutionCancelledError,
    ExecutionRequest,
    NonZeroExitError,
    ProcessStartError,
    SessionState,
    StagingError,
    underlying_file,
)
from chcli_transport.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_STATE_ORDER = {
    SessionState.CREATED: 0,
    SessionState.STARTED: 1,
    SessionState.DRAINING: 2,
    SessionState.FINISHED: 3,
}
_FINAL_STATES = {SessionState.FINISHED, SessionState.TERMINATED}


def diagnostic_error(text: str, exit_code: int) -> Optional[NonZeroExitError]:
    """
    Turn the child's stderr and exit code into an error, or None.

    The first line of stderr is the client's banner/progress output and
    is dropped. Output of a successful run is only logged.
    """
    if exit_code == 0:
        if text.strip():
            for line in text.splitlines():
                logger.debug(line)
        return None

    message = text.strip()
    if not message:
        return NonZeroExitError(f"Command exited with code {exit_code}", exit_code)

    index = message.find("\n")
    if index > 0:
        message = message[index + 1:]
    return NonZeroExitError(message, exit_code)


def _exhausted_stream() -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_eof()
    return reader


class ProcessSession:
    """
    Lifecycle of a single client execution.

    States: created -> started -> draining -> finished, with terminated
    reachable from any state before finished through ``close()`` or
    cancellation. Not safe for concurrent use by several callers.
    """

    def __init__(
        self,
        request: ExecutionRequest,
        node: NodeEndpoint,
        settings: TransportSettings,
        resolver: Optional[TransportResolver] = None,
    ):
        self.request = request
        self.node = node
        self.settings = settings
        self.resolver = resolver or TransportResolver(settings)
        self.stager = ExternalDataStager(
            self.resolver.host_dir,
            buffer_size=settings.write_buffer_size,
            timeout=settings.io_timeout,
        )
        self.builder = CommandBuilder(settings, self.stager)

        self.state = SessionState.CREATED
        self.environment: Optional[ExecutionEnvironment] = None
        self.command: Optional[CommandLine] = None
        self.process: Optional[asyncio.subprocess.Process] = None

        self._staged: list[Path] = []
        self._stderr = bytearray()
        self._stderr_task: Optional[asyncio.Future] = None
        self._error_task: Optional[asyncio.Future] = None

    async def __aenter__(self) -> "ProcessSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process is not None else None

    def _advance(self, state: SessionState) -> None:
        """Move forward; terminal states never change."""
        if self.state in _FINAL_STATES:
            return
        if state == SessionState.TERMINATED or _STATE_ORDER[state] > _STATE_ORDER[self.state]:
            logger.debug(f"Session {self.state.value} -> {state.value}")
            self.state = state

    def _require_process(self) -> asyncio.subprocess.Process:
        if self.process is None:
            raise RuntimeError(f"Session has no process (state: {self.state.value})")
        return self.process

    async def start(self) -> "ProcessSession":
        """
        Resolve the environment, build the command and spawn the client.

        Raises:
            ToolUnavailableError, ContainerStartError: From resolution
            StagingError: If external tables or input data cannot be staged
            ProcessStartError: If the OS fails to spawn the process
            ExecutionCancelledError: If cancelled while starting
            RuntimeError: If the session was already started or closed
        """
        if self.state != SessionState.CREATED:
            raise RuntimeError(
                f"Session is {self.state.value}; a session runs a single process"
            )

        try:
            self.stager.ensure_work_dir()
            self.environment = await self.resolver.resolve()
            input_path = await self._prepare_command()
            await self._spawn(input_path)
        except ExecutionCancelledError:
            await self.close()
            raise
        except asyncio.CancelledError as e:
            await self.close()
            raise ExecutionCancelledError("Cancelled while starting the client") from e
        except BaseException:
            await self.close()
            raise

        self._advance(SessionState.STARTED)
        return self

    async def _prepare_command(self) -> Optional[Path]:
        """
        Build the command while staging non-file input in the background.

        Returns:
            Path stdin should be redirected from, or None for no input
        """
        request = self.request
        input_path = underlying_file(request.input) if request.input is not None else None
        if input_path is None and isinstance(request.input, (str, os.PathLike)):
            raise StagingError(f"Input file does not exist: {os.fspath(request.input)}")

        cancel = threading.Event()
        staging = None
        if request.input is not None and input_path is None:
            staging = self._stage_input(request.input, cancel)

        try:
            self.command = await asyncio.to_thread(
                self.builder.build, self.environment, self.node, request
            )
            self._staged.extend(self.command.staged_files)
            if staging is not None:
                try:
                    input_path = await asyncio.wait_for(
                        asyncio.shield(staging), timeout=self.settings.io_timeout
                    )
                except asyncio.TimeoutError as e:
                    raise StagingError(
                        f"Timed out after {self.settings.io_timeout}s staging input data"
                    ) from e
                self._staged.append(input_path)
        except BaseException:
            if staging is not None:
                cancel.set()
                self._abandon(staging)
            raise

        return input_path

    def _stage_input(self, source: Any, cancel: threading.Event) -> asyncio.Future:
        """
        Copy an input stream into the work directory on a daemon thread.

        A read from a pipe or socket can block forever; the thread is
        never joined, so neither the event loop nor the interpreter waits
        for it. A result that arrives after the session gave up on it is
        released on delivery.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def work() -> None:
            path, error = None, None
            try:
                path = self.stager.stage_stream(source, cancel)
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(self._deliver, future, path, error)
            except RuntimeError:
                # Event loop already closed
                if path is not None:
                    self.stager.release(path)

        threading.Thread(target=work, name="chcli-stage-input", daemon=True).start()
        return future

    def _deliver(
        self,
        future: asyncio.Future,
        path: Optional[Path],
        error: Optional[Exception],
    ) -> None:
        if future.done():
            if path is not None:
                self.stager.release(path)
        elif error is not None:
            future.set_exception(error)
        else:
            future.set_result(path)

    def _abandon(self, staging: asyncio.Future) -> None:
        """Drop input staging whose result nobody will use."""
        if not staging.done():
            staging.cancel()
        elif not staging.cancelled():
            if staging.exception() is None:
                self.stager.release(staging.result())

    async def _spawn(self, input_path: Optional[Path]) -> None:
        args = self.command.args
        output = self.request.output
        handles: list[Any] = []

        stdin: Any = asyncio.subprocess.PIPE
        stdout: Any = asyncio.subprocess.PIPE
        try:
            if input_path is not None:
                stdin = open(input_path, "rb")
                handles.append(stdin)

            if isinstance(output, (str, os.PathLike)):
                stdout = open(output, "wb")
                handles.append(stdout)
            elif output is not None and underlying_file(output) is not None and hasattr(output, "fileno"):
                output.flush()
                stdout = output

            cwd = self.resolver.host_dir
            logger.debug(f"Starting {self.command.redacted()}")
            self.process = await asyncio.create_subprocess_exec(
                *args,
                stdin=stdin,
                stdout=stdout,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd if os.path.isdir(cwd) else None,
            )
        except OSError as e:
            raise ProcessStartError(f"Failed to start {args[0]}: {e}") from e
        finally:
            # The child holds its own descriptors now
            for handle in handles:
                handle.close()

        if self.process.stdin is not None:
            self.process.stdin.close()
        self._stderr_task = asyncio.ensure_future(self._read_stderr(self.process.stderr))

    async def _read_stderr(self, reader: asyncio.StreamReader) -> None:
        """Collect stderr into a bounded buffer for as long as the child writes it."""
        limit = self.settings.max_error_size
        while True:
            chunk = await reader.read(self.settings.read_buffer_size)
            if not chunk:
                break
            # Keep draining past the limit so the child never blocks on stderr
            if len(self._stderr) < limit:
                self._stderr += chunk[: limit - len(self._stderr)]

    async def _guard(self, awaitable: Awaitable[T], action: str) -> T:
        """Await, killing the child and reporting cancellation if interrupted."""
        try:
            return await awaitable
        except ExecutionCancelledError:
            await self._terminate()
            raise
        except asyncio.CancelledError as e:
            await self._terminate()
            raise ExecutionCancelledError(f"Cancelled while {action}") from e

    async def get_result_stream(self) -> asyncio.StreamReader:
        """
        Return the stream carrying the query result.

        When the request has an output stream that is not a real file,
        the child's stdout is drained into it first and an exhausted
        stream is returned. When stdout was redirected to a file, the
        returned stream is exhausted as well.
        """
        process = self._require_process()
        if process.stdout is None:
            return _exhausted_stream()

        self._advance(SessionState.DRAINING)
        destination = self.request.output
        if destination is None:
            return process.stdout

        await self._guard(self._drain(process.stdout, destination), "draining output")
        return _exhausted_stream()

    async def _drain(self, reader: asyncio.StreamReader, destination: Any) -> None:
        size = self.settings.read_buffer_size
        while True:
            chunk = await reader.read(size)
            if not chunk:
                break
            destination.write(chunk)
        if hasattr(destination, "flush"):
            destination.flush()

    async def get_error(self) -> Optional[NonZeroExitError]:
        """
        Wait for the child to exit and return its error, if any.

        Computed once; later calls return the same result without touching
        the child again. The error is returned, not raised.
        """
        self._require_process()
        if self._error_task is None:
            self._error_task = asyncio.ensure_future(self._collect_error())
        return await self._guard(
            asyncio.shield(self._error_task), "waiting for the client to exit"
        )

    async def _collect_error(self) -> Optional[NonZeroExitError]:
        process = self.process
        self._advance(SessionState.DRAINING)

        await asyncio.shield(self._stderr_task)
        exit_code = await process.wait()
        self._advance(SessionState.FINISHED)
        return diagnostic_error(self._stderr.decode("utf-8", errors="replace"), exit_code)

    async def _terminate(self) -> None:
        """Kill the child if it is still running, then reap it."""
        process = self.process
        if process is None:
            self._advance(SessionState.TERMINATED)
            return

        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            self._advance(SessionState.TERMINATED)
            logger.debug(f"Killed client process {process.pid}")
        else:
            self._advance(SessionState.FINISHED)
        await self._reap(process)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        """
        Wait for exit once both pipes are at EOF.

        ``Process.wait()`` only returns after the pipe transports close,
        and a transport paused on a full buffer never closes, so unread
        result bytes are discarded here.
        """
        if process.stdout is not None:
            try:
                while await process.stdout.read(self.settings.read_buffer_size):
                    pass
            except RuntimeError as e:
                # Another task is reading the result stream and will drain it
                logger.debug(f"Result stream left to its reader: {e}")
        if self._stderr_task is not None:
            await asyncio.shield(self._stderr_task)
        await process.wait()

    async def close(self) -> None:
        """
        Kill the child if alive and remove staged files.

        No graceful shutdown is attempted. Safe to call more than once.
        """
        try:
            await self._terminate()
        finally:
            staged, self._staged = self._staged, []
            for path in staged:
                self.stager.release(path)
