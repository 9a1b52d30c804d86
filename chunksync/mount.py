"""
Remote share mounting collaborator.

MountManager hands out local mount points for remote roots. Concurrent
requests for distinct roots get distinct points, repeated requests for the
same root share one mount, and a failed mount gives its point back.
"""
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from .paths import join_path, normalize_path, path_key
from .utils.retries import with_retry


# Configure logger
logger = logging.getLogger(__name__)

DEFAULT_MOUNT_POINTS = [f"{letter}:" for letter in "ZYXWVUTSRQPONM"]

MOUNT_RETRIES = 2


class MountError(RuntimeError):
    """Raised when a remote root cannot be mounted."""


class MountBackend(ABC):
    """Performs the actual attach/detach of a remote root."""

    @abstractmethod
    def mount(self, remote_path: str, local_point: str) -> None:
        """Attach remote_path at local_point. Raises OSError on failure."""

    @abstractmethod
    def unmount(self, local_point: str) -> None:
        """Detach whatever is mounted at local_point."""


class NetUseBackend(MountBackend):
    """Maps shares to drive letters with `net use`."""

    def mount(self, remote_path: str, local_point: str) -> None:
        result = subprocess.run(
            ["net", "use", local_point, remote_path, "/persistent:no"],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise OSError(f"net use {local_point} {remote_path} failed: {result.stderr.strip()}")

    def unmount(self, local_point: str) -> None:
        result = subprocess.run(
            ["net", "use", local_point, "/delete", "/y"],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            raise OSError(f"net use {local_point} /delete failed: {result.stderr.strip()}")


@dataclass
class MountHandle:
    """A mounted remote root."""
    remote_root: str
    local_point: str


class MountManager:
    """Allocates mount points and tracks mounts by remote root."""

    def __init__(self, backend: MountBackend, mount_points: Optional[Iterable[str]] = None):
        self.backend = backend
        self._free: List[str] = list(mount_points if mount_points is not None else DEFAULT_MOUNT_POINTS)
        self._mounts: Dict[str, MountHandle] = {}
        self._refcounts: Dict[str, int] = {}
        self._pending: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @staticmethod
    def share_root(unc_path: str) -> str:
        """Return the \\\\server\\share part of a UNC path."""
        parts = [p for p in normalize_path(unc_path, "\\").split("\\") if p]
        if len(parts) < 2:
            raise MountError(f"Not a UNC share path: {unc_path}")
        return "\\\\" + "\\".join(parts[:2])

    def mount(self, unc_path: str) -> Tuple[str, MountHandle]:
        """
        Mount the share holding unc_path.

        Args:
            unc_path: UNC path, possibly below the share root

        Returns:
            Tuple of (local path equivalent to unc_path, handle)

        Raises:
            MountError: If no mount point is free or the backend fails
        """
        root = self.share_root(unc_path)
        key = path_key(root)

        while True:
            with self._lock:
                handle = self._mounts.get(key)
                if handle is not None:
                    self._refcounts[key] += 1
                    return self._local_equivalent(unc_path, handle), handle
                waiter = self._pending.get(key)
                if waiter is None:
                    if not self._free:
                        raise MountError(f"No free mount point for {root}")
                    point = self._free.pop(0)
                    self._pending[key] = threading.Event()
                    break
            # Another caller is mounting the same root
            waiter.wait()

        try:
            self._attach(root, point)
        except OSError as e:
            with self._lock:
                self._free.insert(0, point)
                self._pending.pop(key).set()
            logger.error(f"Failed to mount {root} at {point}: {e}")
            raise MountError(f"Failed to mount {root}: {e}") from e

        handle = MountHandle(remote_root=root, local_point=point)
        with self._lock:
            self._mounts[key] = handle
            self._refcounts[key] = 1
            self._pending.pop(key).set()

        logger.info(f"Mounted {root} at {point}")
        return self._local_equivalent(unc_path, handle), handle

    def unmount(self, handle: MountHandle) -> None:
        """Release one reference to a mount, detaching it on the last one."""
        key = path_key(handle.remote_root)
        with self._lock:
            if key not in self._mounts:
                logger.warning(f"Unmount requested for unknown mount {handle.remote_root}")
                return
            self._refcounts[key] -= 1
            if self._refcounts[key] > 0:
                return
            del self._mounts[key]
            del self._refcounts[key]

        try:
            self.backend.unmount(handle.local_point)
            logger.info(f"Unmounted {handle.remote_root} from {handle.local_point}")
        except OSError as e:
            logger.warning(f"Failed to unmount {handle.local_point}: {e}")
        finally:
            with self._lock:
                self._free.append(handle.local_point)

    @with_retry(max_retries=MOUNT_RETRIES, exceptions=(OSError,))
    def _attach(self, root: str, point: str) -> None:
        self.backend.mount(root, point)

    @staticmethod
    def _local_equivalent(unc_path: str, handle: MountHandle) -> str:
        normalized = normalize_path(unc_path, "\\")
        remainder = normalized[len(handle.remote_root):].strip("\\")
        if not remainder:
            return handle.local_point + "\\"
        return join_path(handle.local_point, remainder, sep="\\")

    @property
    def active_mounts(self) -> List[MountHandle]:
        with self._lock:
            return list(self._mounts.values())
