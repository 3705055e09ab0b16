"""
Execution environment discovery.

Decides whether the client runs locally or inside a container, and for
containers whether a persistent one is reused or a fresh one is started
per execution.
"""

import asyncio
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from chcli_transport.config.models import TransportSettings
from chcli_transport.executor import probe
from chcli_transport.executor.paths import (
    PathTranslator,
    normalize_container_directory,
    normalize_directory,
)
from chcli_transport.executor.types import (
    ContainerStartError,
    ToolUnavailableError,
    TransportMode,
)
from chcli_transport.utils.logging import get_logger

logger = get_logger(__name__)

VERSION_ARG = "--version"
CLIENT_OPTION = "client"

LOCK_POLL_INTERVAL = 0.05

# One lock per persistent container identity, shared by every resolver,
# event loop and thread in the process
_container_locks: dict[str, threading.Lock] = {}
_container_locks_guard = threading.Lock()


@asynccontextmanager
async def _container_lock(container_id: str) -> AsyncIterator[None]:
    """
    Hold the process-wide lock for a container identity.

    Waiting polls instead of blocking, so a cancelled waiter never ends
    up owning the lock and no event loop is tied to it.
    """
    with _container_locks_guard:
        lock = _container_locks.setdefault(container_id, threading.Lock())
    while not lock.acquire(blocking=False):
        await asyncio.sleep(LOCK_POLL_INTERVAL)
    try:
        yield
    finally:
        lock.release()


@dataclass(frozen=True)
class ExecutionEnvironment:
    """
    A resolved place to run the client.

    Attributes:
        mode: Local process, persistent or ephemeral container
        command_prefix: Arguments preceding "client", e.g.
            ("clickhouse",) or ("docker", "exec", "-i", "ch", "clickhouse")
        host_dir: Normalized host work directory
        container_dir: Its path inside the container (same as host_dir locally)
        container_id: Persistent container identity, if any
    """

    mode: TransportMode
    command_prefix: tuple[str, ...]
    host_dir: str
    container_dir: str
    container_id: Optional[str] = None

    @property
    def is_local(self) -> bool:
        return self.mode == TransportMode.LOCAL

    @property
    def translator(self) -> PathTranslator:
        return PathTranslator(self.host_dir, self.container_dir)


def mount_spec(host_dir: str, container_dir: str) -> str:
    """Bind mount argument for ``-v``."""
    host = host_dir.rstrip("/\\") or host_dir
    container = container_dir.rstrip("/") or container_dir
    return f"{host}:{container}"


class TransportResolver:
    """
    Resolves the ExecutionEnvironment for a TransportSettings.

    Local and ephemeral-container results are cached; persistent
    containers are probed on every resolve since they can go away.
    """

    def __init__(self, settings: TransportSettings):
        self.settings = settings
        self.host_dir = normalize_directory(settings.work_directory)
        self.container_dir = normalize_container_directory(settings.container_directory)
        self._cached: Optional[ExecutionEnvironment] = None

    async def resolve(self, refresh: bool = False) -> ExecutionEnvironment:
        """
        Find a usable execution environment.

        Args:
            refresh: Ignore any cached result

        Returns:
            ExecutionEnvironment

        Raises:
            ToolUnavailableError: No local client and no usable container runtime/image
            ContainerStartError: A persistent container could not be reused or created
        """
        if refresh:
            self._cached = None
        if self._cached is not None:
            return self._cached

        timeout = self.settings.probe_timeout
        cli = self.settings.cli_path

        if await probe.check(timeout, cli, CLIENT_OPTION, VERSION_ARG):
            logger.debug(f"Using local client {cli}")
            self._cached = ExecutionEnvironment(
                mode=TransportMode.LOCAL,
                command_prefix=(cli,),
                host_dir=self.host_dir,
                container_dir=self.host_dir,
            )
            return self._cached

        docker = self.settings.docker_cli_path
        if not await probe.check(timeout, docker, VERSION_ARG):
            raise ToolUnavailableError(
                f"Neither {cli} nor container runtime {docker} is available"
            )

        container_id = self.settings.persistent_container
        if container_id:
            return await self._persistent(docker, container_id)

        self._cached = await self._ephemeral(docker)
        return self._cached

    def _container_probe_args(self, container_id: str) -> tuple[str, ...]:
        return (
            "exec", "-i", container_id,
            self.settings.container_cli_path, CLIENT_OPTION, VERSION_ARG,
        )

    async def _persistent(self, docker: str, container_id: str) -> ExecutionEnvironment:
        """Reuse the named container, starting it first if needed."""
        timeout = self.settings.probe_timeout
        probe_args = self._container_probe_args(container_id)

        if not await probe.check(timeout, docker, *probe_args):
            async with _container_lock(container_id):
                # Another caller may have created it while we waited
                if not await probe.check(timeout, docker, *probe_args):
                    await self._start_container(docker, container_id)

        return ExecutionEnvironment(
            mode=TransportMode.PERSISTENT_CONTAINER,
            command_prefix=(
                docker, "exec", "-i", container_id, self.settings.container_cli_path,
            ),
            host_dir=self.host_dir,
            container_dir=self.container_dir,
            container_id=container_id,
        )

    async def _start_container(self, docker: str, container_id: str) -> None:
        timeout = self.settings.probe_timeout
        image = self.settings.docker_image
        logger.info(f"Starting container {container_id} from {image}")

        started = await probe.check(
            timeout, docker,
            "run", "--rm", "--name", container_id,
            "-v", mount_spec(self.host_dir, self.container_dir),
            "-d", image, "tail", "-f", "/dev/null",
        )
        if not started or not await probe.check(
            timeout, docker, *self._container_probe_args(container_id)
        ):
            raise ContainerStartError(
                f"Failed to start new container: {container_id}", container_id
            )

    async def _ephemeral(self, docker: str) -> ExecutionEnvironment:
        """Validate the image once; each execution then runs its own container."""
        image = self.settings.docker_image
        if not await probe.check(
            self.settings.probe_timeout, docker,
            "run", "--rm", image,
            self.settings.container_cli_path, CLIENT_OPTION, VERSION_ARG,
        ):
            raise ToolUnavailableError(f"Invalid clickhouse container image: {image}")

        logger.debug(f"Using ephemeral containers from {image}")
        return ExecutionEnvironment(
            mode=TransportMode.EPHEMERAL_CONTAINER,
            command_prefix=(
                docker, "run", "--rm", "-i",
                "-v", mount_spec(self.host_dir, self.container_dir),
                image, self.settings.container_cli_path,
            ),
            host_dir=self.host_dir,
            container_dir=self.container_dir,
        )
