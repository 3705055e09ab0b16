#!/usr/bin/env python3
"""
Functional tests for ProcessSession.

These tests verify:
1. Result streaming, stdin redirection and output redirection
2. Error extraction from stderr and exit codes
3. Lifecycle: termination, cancellation and cleanup of staged files
4. Container modes, driven through a fake docker CLI
"""

import asyncio
import io
import os
import threading
from pathlib import Path

import pytest
import yaml

from chcli_transport.config import NodeEndpoint, TransportSettings
from chcli_transport.executor import (
    ExecutionCancelledError,
    ExecutionRequest,
    ExternalTable,
    NonZeroExitError,
    ProcessSession,
    SessionState,
    StagingError,
    ToolUnavailableError,
    TransportMode,
)
from chcli_transport.executor.session import diagnostic_error

# Load test data
TEST_DATA_PATH = Path(__file__).parent / "test_data.yaml"
with open(TEST_DATA_PATH) as f:
    TEST_DATA = yaml.safe_load(f)


@pytest.fixture
def settings(fake_clickhouse, work_dir) -> TransportSettings:
    return TransportSettings(
        cli_path=str(fake_clickhouse),
        docker_cli_path=str(work_dir / "no-docker"),
        work_directory=str(work_dir),
        probe_timeout=5,
        io_timeout=5,
    )


def session_for(settings, statement, **request_args) -> ProcessSession:
    request = ExecutionRequest(statement=statement, **request_args)
    return ProcessSession(request, NodeEndpoint(), settings)


async def run_to_end(session: ProcessSession):
    """Read the whole result, then the error."""
    stream = await session.get_result_stream()
    data = await stream.read()
    return data, await session.get_error()


# =============================================================================
# Error extraction
# =============================================================================
class TestDiagnosticError:
    """Stderr and exit code handling."""

    @pytest.mark.parametrize(
        "test_case",
        TEST_DATA["diagnostic_tests"],
        ids=lambda tc: tc["name"],
    )
    def test_diagnostic_error(self, test_case: dict):
        error = diagnostic_error(test_case["stderr"], test_case["exit_code"])

        if test_case["expected"] is None:
            assert error is None
        else:
            assert isinstance(error, NonZeroExitError)
            assert str(error) == test_case["expected"]
            assert error.exit_code == test_case["exit_code"]


# =============================================================================
# Streams
# =============================================================================
class TestStreams:
    """Result stream, input and output redirection."""

    @pytest.mark.asyncio
    async def test_result_stream(self, settings):
        async with session_for(settings, "SELECT 1") as session:
            data, error = await run_to_end(session)

            assert session.environment.mode == TransportMode.LOCAL
            assert session.state == SessionState.FINISHED

        assert data == b"SELECT 1\n"
        assert error is None
        assert session.returncode == 0

    @pytest.mark.asyncio
    async def test_query_passed_last(self, settings):
        async with session_for(settings, "args", query_id="q-7") as session:
            data, _ = await run_to_end(session)

        args = data.decode().splitlines()
        assert args[0] == "client"
        assert "--query_id=q-7" in args
        assert args[-1] == "--query=args"

    @pytest.mark.asyncio
    async def test_input_from_file(self, settings, tmp_path):
        data_file = tmp_path / "rows.csv"
        data_file.write_bytes(b"1,a\n2,b\n")

        async with session_for(settings, "echo-input", input=str(data_file)) as session:
            data, error = await run_to_end(session)
            assert session._staged == []

        assert data == b"1,a\n2,b\n"
        assert error is None

    @pytest.mark.asyncio
    async def test_input_from_stream_is_staged(self, settings, work_dir):
        payload = b"x\n" * 50_000

        async with session_for(settings, "echo-input", input=io.BytesIO(payload)) as session:
            staged = list(session._staged)
            assert len(staged) == 1
            assert staged[0].parent == work_dir.resolve()
            data, _ = await run_to_end(session)

        assert data == payload
        assert not staged[0].exists()

    @pytest.mark.asyncio
    async def test_partially_read_input_sends_the_rest(self, settings, tmp_path):
        data_file = tmp_path / "rows.csv"
        data_file.write_bytes(b"header\n1,a\n2,b\n")

        with open(data_file, "rb") as f:
            f.readline()
            async with session_for(settings, "echo-input", input=f) as session:
                data, _ = await run_to_end(session)
                assert len(session._staged) == 1

        assert data == b"1,a\n2,b\n"

    @pytest.mark.asyncio
    async def test_large_stderr_does_not_block_result(self, settings):
        async with session_for(settings, "stderr-flood") as session:
            data, error = await asyncio.wait_for(run_to_end(session), timeout=10)

        assert data == b"done\n"
        assert error is None
        assert len(session._stderr) == settings.max_error_size

    @pytest.mark.asyncio
    async def test_missing_input_file(self, settings, tmp_path):
        session = session_for(settings, "echo-input", input=str(tmp_path / "absent.csv"))

        with pytest.raises(StagingError):
            await session.start()

        assert session.process is None
        assert session.state == SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_output_to_file_path(self, settings, tmp_path):
        target = tmp_path / "result.tsv"

        async with session_for(settings, "SELECT 2", output=str(target)) as session:
            data, error = await run_to_end(session)

        assert data == b""
        assert error is None
        assert target.read_bytes() == b"SELECT 2\n"

    @pytest.mark.asyncio
    async def test_output_to_open_file(self, settings, tmp_path):
        target = tmp_path / "result.tsv"

        with open(target, "wb") as f:
            async with session_for(settings, "SELECT 3", output=f) as session:
                data, _ = await run_to_end(session)

        assert data == b""
        assert target.read_bytes() == b"SELECT 3\n"

    @pytest.mark.asyncio
    async def test_output_drained_into_stream(self, settings):
        sink = io.BytesIO()

        async with session_for(settings, "big", output=sink) as session:
            data, error = await run_to_end(session)

        assert data == b""
        assert error is None
        assert len(sink.getvalue()) == 1_000_000
        assert not sink.closed

    @pytest.mark.asyncio
    async def test_external_table_staged_and_removed(self, settings, work_dir):
        table = ExternalTable(name="t", structure="x UInt8", content=io.BytesIO(b"1\n"))

        async with session_for(settings, "args", external_tables=[table]) as session:
            data, _ = await run_to_end(session)
            staged = session._staged[0]
            assert f"--file={os.path.realpath(staged)}" in data.decode().splitlines()

        assert list(work_dir.iterdir()) == []


# =============================================================================
# Errors
# =============================================================================
class TestErrors:
    """Exit status and stderr reporting."""

    @pytest.mark.asyncio
    async def test_failure_drops_first_stderr_line(self, settings):
        async with session_for(settings, "fail") as session:
            _, error = await run_to_end(session)

        assert isinstance(error, NonZeroExitError)
        assert str(error) == "Error: syntax error"
        assert error.exit_code == 2

    @pytest.mark.asyncio
    async def test_stderr_of_successful_run_is_not_an_error(self, settings):
        async with session_for(settings, "noisy") as session:
            data, error = await run_to_end(session)

        assert data == b"ok\n"
        assert error is None

    @pytest.mark.asyncio
    async def test_silent_failure(self, settings):
        async with session_for(settings, "silent-fail") as session:
            _, error = await run_to_end(session)

        assert str(error) == "Command exited with code 3"

    @pytest.mark.asyncio
    async def test_error_is_memoized(self, settings):
        async with session_for(settings, "fail") as session:
            first = await session.get_error()
            second = await session.get_error()

        assert first is second

    @pytest.mark.asyncio
    async def test_no_tool(self, settings, tmp_path):
        settings.cli_path = str(tmp_path / "no-clickhouse")
        session = session_for(settings, "SELECT 1")

        with pytest.raises(ToolUnavailableError):
            await session.start()


# =============================================================================
# Lifecycle
# =============================================================================
class TestLifecycle:
    """Start, close and cancellation."""

    @pytest.mark.asyncio
    async def test_single_start(self, settings):
        async with session_for(settings, "SELECT 1") as session:
            with pytest.raises(RuntimeError):
                await session.start()

    @pytest.mark.asyncio
    async def test_close_kills_running_child(self, settings):
        session = session_for(settings, "sleep")
        await session.start()
        stream = await session.get_result_stream()
        assert await stream.readline() == b"started\n"

        await session.close()

        assert session.state == SessionState.TERMINATED
        assert session.returncode is not None and session.returncode != 0

        await session.close()
        assert session.state == SessionState.TERMINATED

    @pytest.mark.asyncio
    async def test_close_after_finish_keeps_state(self, settings):
        async with session_for(settings, "SELECT 1") as session:
            await run_to_end(session)

        assert session.state == SessionState.FINISHED

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_error(self, settings):
        session = session_for(settings, "sleep")
        await session.start()
        stream = await session.get_result_stream()
        await stream.readline()

        task = asyncio.ensure_future(session.get_error())
        await asyncio.sleep(0.2)
        task.cancel()

        # ExecutionCancelledError is a CancelledError; the task ends cancelled
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.state == SessionState.TERMINATED
        assert session.returncode is not None
        await session.close()

    @pytest.mark.asyncio
    async def test_cancel_raises_execution_cancelled(self, settings):
        session = session_for(settings, "sleep")
        await session.start()
        caught = []

        async def wait_for_error():
            try:
                await session.get_error()
            except ExecutionCancelledError as e:
                caught.append(e)
                raise

        task = asyncio.ensure_future(wait_for_error())
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(caught) == 1
        assert caught[0].kind.value == "cancelled"
        await session.close()

    @pytest.mark.asyncio
    async def test_close_with_unread_stderr(self, settings):
        """A child that filled stderr and keeps running is killed and reaped."""
        session = session_for(settings, "stderr-hang")
        await session.start()
        await asyncio.sleep(0.5)

        await asyncio.wait_for(session.close(), timeout=10)

        assert session.state == SessionState.TERMINATED
        assert session.returncode is not None

    @pytest.mark.asyncio
    async def test_close_with_unread_result(self, settings):
        session = session_for(settings, "big")
        await session.start()
        await asyncio.sleep(0.2)

        await asyncio.wait_for(session.close(), timeout=10)

        assert session.returncode is not None

    def test_input_staging_timeout_does_not_block_shutdown(self, settings):
        """An input stream stuck in read() neither hangs start() nor the loop shutdown."""
        settings.io_timeout = 1
        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, "rb")
        errors = []

        async def start():
            session = session_for(settings, "echo-input", input=reader)
            try:
                await session.start()
            except StagingError as e:
                errors.append(e)

        loop_thread = threading.Thread(target=asyncio.run, args=(start(),), daemon=True)
        try:
            loop_thread.start()
            loop_thread.join(timeout=15)

            assert not loop_thread.is_alive()
            assert len(errors) == 1
            assert "Timed out" in str(errors[0])
        finally:
            os.close(write_fd)


# =============================================================================
# Container modes
# =============================================================================
class TestContainerModes:
    """Commands run through the docker CLI when no local client exists."""

    @pytest.fixture
    def container_settings(self, settings, fake_docker, tmp_path) -> TransportSettings:
        docker, _, _ = fake_docker
        settings.cli_path = str(tmp_path / "no-clickhouse")
        settings.docker_cli_path = str(docker)
        settings.container_directory = "/data"
        return settings

    @pytest.mark.asyncio
    async def test_ephemeral_container(self, container_settings, fake_docker, work_dir):
        _, log, _ = fake_docker

        async with session_for(container_settings, "SELECT 1") as session:
            _, error = await run_to_end(session)
            assert session.environment.mode == TransportMode.EPHEMERAL_CONTAINER

        assert error is None
        last = log.read_text().splitlines()[-1]
        host = str(work_dir.resolve())
        assert last.startswith(f"run --rm -i -v {host}:/data clickhouse/clickhouse-server clickhouse client ")
        assert last.endswith("--query=SELECT 1")

    @pytest.mark.asyncio
    async def test_persistent_container_started_and_used(
        self, container_settings, fake_docker
    ):
        _, log, state = fake_docker
        container_settings.container_id = "ch-session-test"

        async with session_for(container_settings, "SELECT 1") as session:
            await run_to_end(session)
            assert session.environment.mode == TransportMode.PERSISTENT_CONTAINER

        assert (state / "ch-session-test").exists()
        calls = log.read_text().splitlines()
        assert sum(1 for call in calls if call.startswith("run ")) == 1
        assert calls[-1].startswith("exec -i ch-session-test clickhouse client ")
        assert calls[-1].endswith("--query=SELECT 1")

    @pytest.mark.asyncio
    async def test_external_file_translated(self, container_settings, fake_docker, work_dir):
        _, log, _ = fake_docker
        data = work_dir / "t.csv"
        data.write_text("1\n")
        table = ExternalTable(name="t", structure="x UInt8", content=data)

        async with session_for(container_settings, "SELECT 1", external_tables=[table]) as session:
            await run_to_end(session)

        assert "--file=/data/t.csv" in log.read_text().splitlines()[-1]
