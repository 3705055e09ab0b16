"""
Bounded-time availability checks.

Used to find out whether a local client, the container runtime, an image
or a persistent container can actually run the clickhouse client.
"""

import asyncio

from chcli_transport.utils.logging import get_logger

logger = get_logger(__name__)


async def check(timeout: float, command: str, *args: str) -> bool:
    """
    Run a command and report whether it exits with status 0 in time.

    The child's stdin is closed right away and its output discarded.
    Failures of any kind (missing binary, non-zero exit, timeout) yield
    False; on timeout the child is killed and reaped before returning.

    Args:
        timeout: Seconds to wait for the command to exit
        command: Executable to run
        *args: Arguments

    Returns:
        True if the command exited with status 0 within the timeout
    """
    if not command or not command.strip():
        raise ValueError("Non-blank command is required")

    argv = [command, *args]
    process = None
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        process.stdin.close()

        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Timed out after {timeout}s waiting for {argv}")
            return False

        if exit_code != 0:
            logger.debug(f"Command {argv} exited with code {exit_code}")
        return exit_code == 0
    except Exception as e:
        logger.debug(f"Failed to check command {argv}: {e}")
        return False
    finally:
        if process is not None and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
