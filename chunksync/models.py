"""
Models for the chunked replication service.
Contains the directory tree, chunk and orchestration state definitions.
"""
import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional


class ChunkStatus(Enum):
    """Lifecycle state of a chunk."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    SKIPPED = "skipped"


class Phase(Enum):
    """Run-wide orchestration phase."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    STOPPED = "stopped"


class DirectoryNode:
    """Represents one directory with direct and cumulative size/file counts."""

    def __init__(self, path: str, name: Optional[str] = None):
        self.path: str = path
        self.name: str = name if name is not None else path
        self.direct_size: int = 0
        self.direct_file_count: int = 0
        self.total_size: int = 0
        self.total_file_count: int = 0
        # Keyed by lower-cased directory name
        self.children: Dict[str, "DirectoryNode"] = {}

    def add_child(self, child: "DirectoryNode") -> "DirectoryNode":
        """Attach a child, returning the existing node if the name is taken."""
        key = child.name.lower()
        existing = self.children.get(key)
        if existing is not None:
            return existing
        self.children[key] = child
        return child

    def get_child(self, name: str) -> Optional["DirectoryNode"]:
        return self.children.get(name.lower())

    def add_file(self, size: int) -> None:
        self.direct_size += size
        self.direct_file_count += 1

    def __repr__(self) -> str:
        return (
            f"DirectoryNode({self.path!r}, total_size={self.total_size}, "
            f"total_files={self.total_file_count}, children={len(self.children)})"
        )


_chunk_ids = itertools.count(1)


def next_chunk_id() -> int:
    """Return the next process-wide chunk id."""
    return next(_chunk_ids)


@dataclass
class Chunk:
    """One unit of copy work dispatched as a single copy-tool invocation."""
    source_path: str
    destination_path: str
    estimated_size: int = 0
    estimated_files: int = 0
    is_files_only: bool = False
    extra_args: List[str] = field(default_factory=list)
    status: ChunkStatus = ChunkStatus.PENDING
    retry_count: int = 0
    last_exit_code: Optional[int] = None
    last_error_message: Optional[str] = None
    chunk_id: int = field(default_factory=next_chunk_id)

    @property
    def key(self) -> tuple:
        """Identity of the chunk's work, independent of its id."""
        return (self.source_path.lower(), self.is_files_only)

    def clear_error(self) -> None:
        self.last_exit_code = None
        self.last_error_message = None

    def describe(self) -> str:
        suffix = " (files only)" if self.is_files_only else ""
        return f"#{self.chunk_id} {self.source_path}{suffix}"


@dataclass(frozen=True)
class CopySummary:
    """Parsed copy-tool summary for one finished job."""
    bytes_copied: int = 0
    files_copied: int = 0
    files_skipped: int = 0
    files_failed: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    """Per-file retry settings passed through to the copy tool."""
    file_retries: int = 2
    wait_seconds: int = 5


@dataclass
class JobHandle:
    """A running copy-tool invocation for one chunk."""
    chunk: Chunk
    pid: int
    process: Any = None
    log_path: Optional[str] = None
    throttle_ms: int = 0
    started_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ProfileResult:
    """Outcome of one finished profile."""
    name: str
    total_chunks: int
    completed: int
    failed: int
    skipped: int
    bytes_copied: int
    files_copied: int
    duration_seconds: float
    failed_chunks: tuple = ()
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.failed == 0 and self.error is None


class AtomicCounter:
    """Integer counter safe for concurrent increments and reads."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0

    @property
    def value(self) -> int:
        return self._value


@dataclass(frozen=True)
class StateSnapshot:
    """Copy-on-read view of the orchestration state for observers."""
    phase: Phase
    profile_name: Optional[str]
    profile_index: int
    profile_count: int
    total_chunks: int
    completed_count: int
    pending: int
    active: List[Chunk]
    failed: List[Chunk]
    skipped: int
    total_bytes: int
    bytes_complete: int
    files_copied: int
    progress_percent: int
    eta_seconds: Optional[float]


class OrchestrationState:
    """
    Run-wide aggregate shared by the tick (sole mutator) and observers.

    Queues are deques, so observers may copy them while the tick appends and
    pops. Counters are lock-guarded.
    """

    def __init__(self):
        self.pending_queue: Deque[Chunk] = deque()
        self.active_jobs: Dict[int, JobHandle] = {}
        self.failed_queue: Deque[Chunk] = deque()
        self.completed_queue: Deque[Chunk] = deque()
        self.skipped_queue: Deque[Chunk] = deque()
        self.total_chunks: int = 0
        self.total_bytes: int = 0
        self.bytes_complete = AtomicCounter()
        self.completed_count = AtomicCounter()
        self.files_copied = AtomicCounter()
        self.files_skipped = AtomicCounter()
        self.files_failed = AtomicCounter()
        self.current_profile: Any = None
        self.profiles: List[Any] = []
        self.profile_index: int = 0
        self.start_time: Optional[datetime] = None
        self.profile_start_time: Optional[datetime] = None
        self.phase: Phase = Phase.IDLE
        self.profile_results: List[ProfileResult] = []

    def reset_for_new_profile(self) -> None:
        """Clear per-profile queues and counters."""
        self.pending_queue.clear()
        self.active_jobs.clear()
        self.failed_queue.clear()
        self.completed_queue.clear()
        self.skipped_queue.clear()
        self.total_chunks = 0
        self.total_bytes = 0
        self.bytes_complete.reset()
        self.completed_count.reset()
        self.files_copied.reset()
        self.files_skipped.reset()
        self.files_failed.reset()
        self.current_profile = None
        self.profile_start_time = None

    def reset(self) -> None:
        """Clear everything for a new run."""
        self.reset_for_new_profile()
        self.profiles = []
        self.profile_index = 0
        self.start_time = None
        self.phase = Phase.IDLE
        self.profile_results = []

    def active_chunks(self) -> List[Chunk]:
        return [job.chunk for job in list(self.active_jobs.values())]
