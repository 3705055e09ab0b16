"""
Staging of external content into the work directory.

Anything the client has to read by path (external tables, input data)
must be reachable from where the client runs. Files are hard-linked
into the work directory when possible and copied otherwise; streams are
copied chunk by chunk.
"""

import atexit
import errno
import os
import threading
import time
import uuid
from pathlib import Path
from typing import Any, BinaryIO, Optional, Union

from chcli_transport.executor.types import ByteSource, StagingError, underlying_file
from chcli_transport.utils.logging import get_logger

logger = get_logger(__name__)

STAGED_FILE_PREFIX = "chc_"

# errno values meaning "hard links are not possible here", not "the source is bad"
LINK_FALLBACK_ERRNOS = {
    errno.EXDEV,
    errno.EPERM,
    errno.EMLINK,
    errno.ENOTSUP,
    errno.EOPNOTSUPP,
}

_pending_removal: set[str] = set()
_pending_lock = threading.Lock()


def _remove_pending() -> None:
    """Best-effort removal of staged files still present at exit."""
    with _pending_lock:
        paths = list(_pending_removal)
        _pending_removal.clear()
    for path in paths:
        try:
            os.unlink(path)
        except OSError:
            pass


atexit.register(_remove_pending)


class ExternalDataStager:
    """
    Materializes external content as uniquely named files under host_dir.

    Callers own the staged files and should ``release`` them once the
    client is done; anything left behind is removed at interpreter exit.
    """

    def __init__(
        self,
        host_dir: Union[str, os.PathLike],
        buffer_size: int = 8192,
        timeout: Optional[float] = 30.0,
    ):
        """
        Args:
            host_dir: Work directory staged files are created in
            buffer_size: Copy chunk size in bytes
            timeout: Deadline in seconds for a single copy (None for no limit)
        """
        self.host_dir = Path(host_dir)
        self.buffer_size = buffer_size
        self.timeout = timeout

    def ensure_work_dir(self) -> Path:
        """
        Create the work directory if needed and check it is writable.

        Raises:
            StagingError: If the directory cannot be created or written
        """
        try:
            self.host_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StagingError(f"Cannot create work directory {self.host_dir}: {e}") from e
        if not os.access(self.host_dir, os.W_OK | os.R_OK):
            raise StagingError(f"Work directory {self.host_dir} is not read/writable")
        return self.host_dir

    def new_path(self, suffix: str = "") -> Path:
        """Return a fresh, unused path under the work directory."""
        return self.host_dir / f"{STAGED_FILE_PREFIX}{uuid.uuid4()}{suffix}"

    def stage(self, source: ByteSource, cancel: Optional[threading.Event] = None) -> Path:
        """
        Stage a file or stream, choosing link or copy as appropriate.

        Returns:
            Path of the staged file under host_dir
        """
        path = underlying_file(source)
        if path is not None:
            return self.stage_file(path, cancel)
        if isinstance(source, (str, os.PathLike)):
            raise StagingError(f"Source file does not exist: {os.fspath(source)}")
        return self.stage_stream(source, cancel)

    def stage_file(self, source: Union[str, os.PathLike], cancel: Optional[threading.Event] = None) -> Path:
        """
        Make an existing file available under host_dir.

        Tries a hard link first and falls back to copying when the
        filesystem or platform does not allow one.
        """
        self.ensure_work_dir()
        source = Path(source)
        target = self.new_path(source.suffix)

        try:
            os.link(source, target)
            self._track(target)
            logger.debug(f"Linked {source} to {target}")
            return target
        except (AttributeError, NotImplementedError) as e:
            logger.debug(f"Hard links unsupported, copying {source}: {e}")
        except OSError as e:
            if e.errno not in LINK_FALLBACK_ERRNOS:
                raise StagingError(f"Failed to link {source} to {target}: {e}") from e
            logger.debug(f"Cannot link {source} ({e.strerror}), copying instead")

        try:
            with open(source, "rb") as f:
                return self._copy(f, target, cancel)
        except OSError as e:
            raise StagingError(f"Failed to read {source}: {e}") from e

    def stage_stream(self, stream: BinaryIO, cancel: Optional[threading.Event] = None) -> Path:
        """Copy a binary stream into a new file under host_dir."""
        self.ensure_work_dir()
        return self._copy(stream, self.new_path(), cancel)

    def release(self, path: Union[str, os.PathLike]) -> None:
        """Remove a staged file now."""
        path = os.fspath(path)
        with _pending_lock:
            _pending_removal.discard(path)
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove staged file {path}: {e}")

    def _track(self, path: Path) -> None:
        with _pending_lock:
            _pending_removal.add(os.fspath(path))

    def _copy(self, stream: Any, target: Path, cancel: Optional[threading.Event]) -> Path:
        """Bounded-buffer copy honouring the deadline and the cancel event."""
        deadline = time.monotonic() + self.timeout if self.timeout else None
        self._track(target)
        try:
            with open(target, "xb") as out:
                while True:
                    if cancel is not None and cancel.is_set():
                        raise StagingError(f"Staging to {target} was cancelled")
                    if deadline is not None and time.monotonic() > deadline:
                        raise StagingError(
                            f"Staging to {target} timed out after {self.timeout}s"
                        )
                    chunk = stream.read(self.buffer_size)
                    if not chunk:
                        break
                    out.write(chunk)
        except StagingError:
            self.release(target)
            raise
        except OSError as e:
            self.release(target)
            raise StagingError(f"Failed to write {target}: {e}") from e

        logger.debug(f"Copied {self._describe(stream)} to {target}")
        return target

    @staticmethod
    def _describe(stream: Any) -> str:
        name = getattr(stream, "name", None)
        return str(name) if name is not None else type(stream).__name__

