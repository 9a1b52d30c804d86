"""
Checkpoint persistence.
Records which chunks of each profile finished so an interrupted run can
resume without copying them again.
"""
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple

from .models import Chunk


logger = logging.getLogger(__name__)

ChunkKey = Tuple[str, bool]


@dataclass
class Checkpoint:
    """Completed chunk keys per profile name."""
    profiles: Dict[str, Set[ChunkKey]] = field(default_factory=dict)
    saved_at: Optional[str] = None

    def completed_for(self, profile_name: str) -> Set[ChunkKey]:
        return self.profiles.setdefault(profile_name, set())

    def contains(self, profile_name: str, chunk: Chunk) -> bool:
        return chunk.key in self.profiles.get(profile_name, set())

    def record(self, profile_name: str, chunk: Chunk) -> None:
        self.completed_for(profile_name).add(chunk.key)

    def __len__(self) -> int:
        return sum(len(keys) for keys in self.profiles.values())


def save_checkpoint(path: Path, checkpoint: Checkpoint) -> Path:
    """
    Write a checkpoint to disk.

    The file is written to a temporary sibling and renamed so a crash never
    leaves a truncated checkpoint behind.

    Args:
        path: Checkpoint file
        checkpoint: Completed chunks per profile

    Returns:
        The checkpoint path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    checkpoint.saved_at = datetime.now().isoformat()
    data = {
        "profiles": {
            name: sorted([source, files_only] for source, files_only in keys)
            for name, keys in checkpoint.profiles.items()
        },
        "saved_at": checkpoint.saved_at,
    }

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".checkpoint-", suffix=".json")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return path


def _keys_from(entries: Iterable) -> Set[ChunkKey]:
    return {(str(source).lower(), bool(files_only)) for source, files_only in entries}


def load_checkpoint(path: Path) -> Checkpoint:
    """
    Read a checkpoint file.

    Returns:
        The checkpoint, or an empty one if the file is missing or unreadable
    """
    path = Path(path)
    if not path.exists():
        return Checkpoint()

    try:
        with open(path, "r") as f:
            data = json.load(f)
        profiles = {name: _keys_from(entries) for name, entries in data.get("profiles", {}).items()}
        return Checkpoint(profiles=profiles, saved_at=data.get("saved_at"))
    except (OSError, ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Ignoring unreadable checkpoint {path}: {e}")
        return Checkpoint()


def clear_checkpoint(path: Path) -> None:
    """Remove a checkpoint once its run finished."""
    path = Path(path)
    if path.exists():
        path.unlink()
        logger.debug(f"Removed checkpoint {path}")
