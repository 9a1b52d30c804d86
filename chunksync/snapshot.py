"""
Snapshot provisioning collaborator.
A provider exposes a point-in-time view of a source so a profile copies a
consistent tree.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Tuple


logger = logging.getLogger(__name__)


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be created or released."""


class SnapshotProvider(ABC):
    """Contract for snapshot provisioning."""

    @abstractmethod
    def begin_snapshot(self, source_path: str) -> Tuple[str, Any]:
        """
        Create a snapshot of the volume holding source_path.

        Returns:
            Tuple of (effective source path inside the snapshot, handle)

        Raises:
            SnapshotError: If provisioning fails
        """

    @abstractmethod
    def end_snapshot(self, handle: Any) -> None:
        """Release a snapshot created by begin_snapshot."""


class NullSnapshotProvider(SnapshotProvider):
    """Copies the live tree; used when snapshots are unavailable."""

    def begin_snapshot(self, source_path: str) -> Tuple[str, Any]:
        logger.debug(f"Snapshots disabled, using live path {source_path}")
        return source_path, None

    def end_snapshot(self, handle: Any) -> None:
        return None
