"""
Copy tool collaborator.

Defines the contract the orchestrator uses to run one chunk and the
robocopy-based implementation that launches one process per chunk.
"""
import logging
import re
import subprocess
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import COPY_LOG_DIR, COPY_TOOL_EXECUTABLE, RECURSIVE_ARGS
from .models import Chunk, CopySummary, JobHandle, RetryPolicy


# Configure logger
logger = logging.getLogger(__name__)

_UNIT_MULTIPLIERS = {
    "k": 1024,
    "m": 1024 ** 2,
    "g": 1024 ** 3,
    "t": 1024 ** 4,
}

_SUMMARY_LINE_RE = re.compile(r"^\s*(Dirs|Files|Bytes)\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_VALUE_RE = re.compile(r"(\d+(?:\.\d+)?)(?:\s*([kmgt])\b)?", re.IGNORECASE)


class CopyLaunchError(RuntimeError):
    """Raised when a copy process cannot be started at all."""


class CopyTool(ABC):
    """Contract for running one chunk with an external bulk-copy tool."""

    @abstractmethod
    def start(self, chunk: Chunk, retry_policy: RetryPolicy, throttle_ms: int) -> JobHandle:
        """Start copying a chunk. Raises CopyLaunchError if nothing could be launched."""

    @abstractmethod
    def poll(self, handle: JobHandle) -> Tuple[bool, Optional[int]]:
        """Return (exited, exit_code); exit_code is None while running."""

    @abstractmethod
    def parse_summary(self, handle: JobHandle) -> CopySummary:
        """Return the copy summary, zeros when it is missing or unreadable."""

    @abstractmethod
    def terminate(self, handle: JobHandle) -> None:
        """Kill a running job."""


def _parse_values(text: str) -> List[int]:
    values = []
    for number, unit in _VALUE_RE.findall(text):
        multiplier = _UNIT_MULTIPLIERS.get(unit.lower(), 1) if unit else 1
        values.append(int(float(number) * multiplier))
    return values


def parse_summary_text(text: str) -> CopySummary:
    """
    Parse the summary table a copy-tool log ends with.

    Columns are Total, Copied, Skipped, Mismatch, FAILED, Extras.

    Args:
        text: Log contents

    Returns:
        CopySummary, zeros for anything not found
    """
    rows = {}
    for label, values in _SUMMARY_LINE_RE.findall(text):
        parsed = _parse_values(values)
        if len(parsed) >= 5:
            # Later tables (e.g. after a retry) win
            rows[label.lower()] = parsed

    files = rows.get("files", [0] * 6)
    data = rows.get("bytes", [0] * 6)
    return CopySummary(
        bytes_copied=data[1],
        files_copied=files[1],
        files_skipped=files[2],
        files_failed=files[4],
    )


class RobocopyTool(CopyTool):
    """Runs each chunk as a separate robocopy process."""

    def __init__(
        self,
        executable: str = COPY_TOOL_EXECUTABLE,
        log_dir: Path = COPY_LOG_DIR,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        """
        Initialize the runner.

        Args:
            executable: Copy tool executable name or path
            log_dir: Directory for per-job log files
            popen: Process factory, replaceable for testing
        """
        self.executable = executable
        self.log_dir = Path(log_dir)
        self._popen = popen

    def build_arguments(
        self,
        chunk: Chunk,
        retry_policy: RetryPolicy,
        throttle_ms: int,
        log_path: Optional[Path] = None,
    ) -> List[str]:
        """Build the command line for one chunk."""
        args = [self.executable, chunk.source_path, chunk.destination_path]
        args.extend(chunk.extra_args if chunk.is_files_only else RECURSIVE_ARGS)
        if not chunk.is_files_only:
            args.extend(a for a in chunk.extra_args if a not in args)
        args.append(f"/R:{retry_policy.file_retries}")
        args.append(f"/W:{retry_policy.wait_seconds}")
        if throttle_ms > 0:
            args.append(f"/IPG:{throttle_ms}")
        args.extend(["/BYTES", "/NP"])
        if log_path is not None:
            args.append(f"/LOG:{log_path}")
        return args

    def start(self, chunk: Chunk, retry_policy: RetryPolicy, throttle_ms: int) -> JobHandle:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CopyLaunchError(f"Cannot create job log directory {self.log_dir}: {e}") from e

        log_path = self.log_dir / f"chunk_{chunk.chunk_id}_{uuid.uuid4().hex[:8]}.log"
        args = self.build_arguments(chunk, retry_policy, throttle_ms, log_path)
        logger.debug(f"Launching: {' '.join(args)}")

        try:
            process = self._popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise CopyLaunchError(f"Failed to launch {self.executable} for {chunk.source_path}: {e}") from e

        return JobHandle(
            chunk=chunk,
            pid=process.pid,
            process=process,
            log_path=str(log_path),
            throttle_ms=throttle_ms,
        )

    def poll(self, handle: JobHandle) -> Tuple[bool, Optional[int]]:
        exit_code = handle.process.poll()
        return exit_code is not None, exit_code

    def parse_summary(self, handle: JobHandle) -> CopySummary:
        if not handle.log_path:
            return CopySummary()
        try:
            with open(handle.log_path, "r", errors="replace") as f:
                return parse_summary_text(f.read())
        except OSError as e:
            logger.debug(f"No summary for chunk {handle.chunk.chunk_id}: {e}")
            return CopySummary()

    def terminate(self, handle: JobHandle) -> None:
        process = handle.process
        if process.poll() is not None:
            return
        try:
            process.kill()
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {handle.pid} did not exit after kill")
        except OSError as e:
            logger.warning(f"Failed to kill process {handle.pid}: {e}")

    def list_directory(self, root_path: str) -> str:
        """
        Produce a size listing of a tree without copying anything.

        Returns:
            Listing text suitable for tree.build_tree
        """
        args = [
            self.executable, root_path, "NULL",
            "/L", "/E", "/BYTES", "/NJH", "/NJS", "/NP", "/NC", "/R:0", "/W:0",
        ]
        try:
            result = subprocess.run(args, capture_output=True, text=True, errors="replace")
        except OSError as e:
            raise CopyLaunchError(f"Failed to launch {self.executable} listing for {root_path}: {e}") from e

        if result.returncode >= 8:
            raise RuntimeError(f"Listing {root_path} failed with exit code {result.returncode}")
        return result.stdout
