"""
Host/container path mapping for the work directory bind mount.
"""

import os
import posixpath
from pathlib import Path
from typing import Union

from chcli_transport.executor.types import StagingError


def normalize_directory(path: Union[str, os.PathLike]) -> str:
    """Return an absolute host directory path ending with a separator."""
    directory = os.path.realpath(os.path.expanduser(os.fspath(path)))
    return directory if directory.endswith(os.sep) else directory + os.sep


def normalize_container_directory(path: str) -> str:
    """Return a POSIX container directory path ending with '/'."""
    directory = posixpath.normpath(path or "/tmp")
    return directory if directory.endswith("/") else directory + "/"


class PathTranslator:
    """
    Maps paths under ``host_dir`` to ``container_dir`` and back.

    The mapping is a plain prefix substitution, so it is only valid for
    paths below the mount root. For local execution both directories are
    the same and translation is the identity.
    """

    def __init__(self, host_dir: Union[str, os.PathLike], container_dir: str):
        self.host_dir = normalize_directory(host_dir)
        if container_dir == os.fspath(host_dir) or container_dir == self.host_dir:
            self.container_dir = self.host_dir
        else:
            self.container_dir = normalize_container_directory(container_dir)

    @property
    def is_identity(self) -> bool:
        """True when host and container see the same paths."""
        return self.host_dir == self.container_dir

    def contains(self, path: Union[str, os.PathLike]) -> bool:
        """Check whether a host path lies under the mount root."""
        return os.path.realpath(os.fspath(path)).startswith(self.host_dir)

    def host_to_container(self, path: Union[str, os.PathLike]) -> str:
        """
        Translate a host path under the mount root to the container path.

        Raises:
            StagingError: If the path is outside the mount root
        """
        resolved = os.path.realpath(os.fspath(path))
        if not resolved.startswith(self.host_dir):
            raise StagingError(f"Path {resolved} is not under {self.host_dir}")
        if self.is_identity:
            return resolved

        relative = Path(resolved[len(self.host_dir):]).as_posix()
        return self.container_dir + relative

    def container_to_host(self, path: str) -> str:
        """
        Translate a container path under the mount point to the host path.

        Raises:
            StagingError: If the path is outside the mount point
        """
        if self.is_identity:
            return self.host_to_container(path)

        normalized = posixpath.normpath(path)
        if not (normalized + "/").startswith(self.container_dir) or normalized + "/" == self.container_dir:
            raise StagingError(f"Path {path} is not under {self.container_dir}")

        relative = normalized[len(self.container_dir):]
        return os.path.join(self.host_dir, *relative.split("/"))
