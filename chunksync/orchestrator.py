"""
Job orchestrator.

Dispatches chunks to a bounded pool of copy-tool processes, classifies their
completions, retries or fails them and aggregates progress across the
profiles of a run. All mutation happens in tick(); observers read
snapshot().
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

from .checkpoint import Checkpoint, clear_checkpoint, load_checkpoint, save_checkpoint
from .config import (
    BANDWIDTH_LIMIT_MBPS,
    COPY_TOOL_FILE_RETRIES,
    COPY_TOOL_RETRY_WAIT,
    MAX_CONCURRENT_JOBS,
    MAX_ETA_SECONDS,
    MAX_RETRIES,
    MISMATCH_SEVERITY,
    ProfileConfig,
    RunConfig,
)
from .copy_tool import CopyLaunchError, CopyTool
from . import events
from .events import EventEmitter
from .exit_codes import ExitCodeResult, Severity, classify_exit_code, parse_severity
from .models import (
    Chunk,
    ChunkStatus,
    CopySummary,
    OrchestrationState,
    Phase,
    ProfileResult,
    RetryPolicy,
    StateSnapshot,
)
from .mount import MountError, MountManager
from .partition import ChunkConstraints, ChunkingError, MODE_FLAT, plan_chunks
from .paths import is_unc_path
from .snapshot import SnapshotError, SnapshotProvider
from .throttle import compute_throttle
from .tree import DirectoryProfiler


# Configure logger
logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "stopped by user"

Planner = Callable[[ProfileConfig, str], List[Chunk]]
FailureHandler = Callable[["JobOrchestrator", List[Chunk]], None]


@dataclass
class OrchestratorSettings:
    """Run-wide knobs for dispatch and completion handling."""
    max_concurrent_jobs: int = MAX_CONCURRENT_JOBS
    max_retries: int = MAX_RETRIES
    bandwidth_limit_mbps: float = BANDWIDTH_LIMIT_MBPS
    mismatch_severity: Severity = field(default_factory=lambda: parse_severity(MISMATCH_SEVERITY))
    retry_policy: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(COPY_TOOL_FILE_RETRIES, COPY_TOOL_RETRY_WAIT)
    )
    checkpoint_path: Optional[Path] = None

    def __post_init__(self):
        self.mismatch_severity = parse_severity(self.mismatch_severity)
        if self.mismatch_severity == Severity.FATAL:
            raise ValueError("mismatch_severity cannot be fatal")
        if self.max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")

    @classmethod
    def from_run_config(cls, run_config: RunConfig) -> "OrchestratorSettings":
        return cls(
            max_concurrent_jobs=run_config.max_concurrent_jobs,
            max_retries=run_config.max_retries,
            bandwidth_limit_mbps=run_config.bandwidth_limit_mbps,
            mismatch_severity=run_config.mismatch_severity,
            retry_policy=RetryPolicy(run_config.file_retries, run_config.retry_wait),
            checkpoint_path=run_config.checkpoint_path,
        )


def constraints_for_profile(profile: ProfileConfig) -> ChunkConstraints:
    """Chunk limits for a profile; flat mode pins the depth to the root."""
    return ChunkConstraints(
        max_size_bytes=profile.max_size_bytes,
        max_files=profile.max_files,
        max_depth=0 if profile.mode == MODE_FLAT else profile.max_depth,
        min_size_bytes=profile.min_size_bytes,
    )


class _ProfileContext:
    """Collaborator handles held while a profile runs."""

    def __init__(self, source: str):
        self.source = source
        self.effective_source = source
        self.mount_handle: Any = None
        self.snapshot_handle: Any = None


class JobOrchestrator:
    """Runs the chunks of one or more profiles through a copy tool."""

    def __init__(
        self,
        copy_tool: CopyTool,
        settings: Optional[OrchestratorSettings] = None,
        planner: Optional[Planner] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
        mount_manager: Optional[MountManager] = None,
        emitter: Optional[EventEmitter] = None,
        failure_handler: Optional[FailureHandler] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the orchestrator.

        Args:
            copy_tool: Collaborator launching and polling copy processes
            settings: Concurrency, retry and bandwidth settings
            planner: Produces the chunks of a profile from its effective source;
                defaults to profiling the filesystem and partitioning
            snapshot_provider: Used for profiles with use_snapshot set
            mount_manager: Used to mount UNC sources before planning
            emitter: Receives orchestration events
            failure_handler: Called with the failed chunks before a profile
                with failures is closed; may call retry() or skip()
            clock: Time source
        """
        self.copy_tool = copy_tool
        self.settings = settings or OrchestratorSettings()
        self.profiler = DirectoryProfiler()
        self.planner = planner or self._default_planner
        self.snapshot_provider = snapshot_provider
        self.mount_manager = mount_manager
        self.events = emitter or EventEmitter()
        self.failure_handler = failure_handler
        self._clock = clock

        self.state = OrchestrationState()
        self._context: Optional[_ProfileContext] = None
        self._checkpoint = Checkpoint()
        self._stop_handled = False
        self._profile_recorded = False

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start(self, profiles: List[ProfileConfig]) -> None:
        """
        Begin a run over the given profiles.

        Args:
            profiles: Profiles to replicate, in order
        """
        if self.state.phase == Phase.RUNNING:
            raise RuntimeError("A run is already in progress")

        self.state.reset()
        self.profiler.clear()
        self._stop_handled = False
        self._checkpoint = (
            load_checkpoint(self.settings.checkpoint_path)
            if self.settings.checkpoint_path else Checkpoint()
        )

        self.state.profiles = list(profiles)
        self.state.start_time = self._clock()
        self.state.phase = Phase.RUNNING
        self.state.profile_index = -1
        logger.info(f"Starting run with {len(self.state.profiles)} profile(s)")

        self._advance_profile()

    def stop(self) -> None:
        """Request cancellation; the next tick kills running jobs."""
        if self.state.phase != Phase.RUNNING:
            logger.debug(f"Stop ignored in phase {self.state.phase.value}")
            return
        logger.warning("Stop requested, running jobs will be terminated")
        self.state.phase = Phase.STOPPED

    @property
    def is_finished(self) -> bool:
        if self.state.phase == Phase.COMPLETE:
            return True
        return self.state.phase == Phase.STOPPED and self._stop_handled

    def run_succeeded(self) -> bool:
        """False if the run was stopped or any chunk ended failed."""
        if self.state.phase == Phase.STOPPED:
            return False
        if self.state.failed_queue:
            return False
        return all(result.succeeded for result in self.state.profile_results)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Run one poll/classify/dispatch cycle."""
        if self.state.phase == Phase.STOPPED:
            self._handle_stop()
            return
        if self.state.phase != Phase.RUNNING:
            return

        self._process_completions()
        self._dispatch()

        if not self.state.pending_queue and not self.state.active_jobs:
            self._finish_profile()

    def _dispatch(self) -> None:
        state = self.state
        while len(state.active_jobs) < self.settings.max_concurrent_jobs and state.pending_queue:
            chunk = state.pending_queue.popleft()
            throttle_ms = compute_throttle(
                self.settings.bandwidth_limit_mbps,
                len(state.active_jobs),
                pending_start=True,
            )

            try:
                handle = self.copy_tool.start(chunk, self.settings.retry_policy, throttle_ms)
            except CopyLaunchError as e:
                logger.error(f"Launch failed for chunk {chunk.describe()}: {e}")
                self._mark_failed(chunk, None, f"launch failed: {e}")
                state.completed_count.increment()
                continue

            chunk.status = ChunkStatus.RUNNING
            state.active_jobs[handle.pid] = handle
            logger.debug(
                f"Started chunk {chunk.describe()} as pid {handle.pid}"
                + (f" (IPG {throttle_ms} ms)" if throttle_ms else "")
            )
            self.events.emit(events.CHUNK_STARTED, chunk=chunk, pid=handle.pid, throttle_ms=throttle_ms)

    def _process_completions(self) -> None:
        for pid, handle in list(self.state.active_jobs.items()):
            exited, exit_code = self.copy_tool.poll(handle)
            if not exited:
                continue

            summary = self.copy_tool.parse_summary(handle)
            result = classify_exit_code(exit_code, self.settings.mismatch_severity)
            del self.state.active_jobs[pid]
            self._handle_completion(handle.chunk, result, summary)
            self.state.completed_count.increment()

    def _handle_completion(self, chunk: Chunk, result: ExitCodeResult, summary: CopySummary) -> None:
        state = self.state

        if result.should_retry and chunk.retry_count < self.settings.max_retries:
            chunk.retry_count += 1
            chunk.clear_error()
            chunk.status = ChunkStatus.PENDING
            state.pending_queue.append(chunk)
            logger.warning(
                f"Chunk {chunk.describe()} exited {result.exit_code} ({result.message}), "
                f"retry {chunk.retry_count}/{self.settings.max_retries}"
            )
            self.events.emit(events.CHUNK_RETRY, chunk=chunk, result=result)
            return

        if result.is_failure:
            self._mark_failed(chunk, result.exit_code, result.message)
            return

        chunk.status = ChunkStatus.COMPLETE
        state.completed_queue.append(chunk)
        state.bytes_complete.increment(summary.bytes_copied)
        state.files_copied.increment(summary.files_copied)
        state.files_skipped.increment(summary.files_skipped)
        state.files_failed.increment(summary.files_failed)
        if result.severity == Severity.WARNING:
            logger.warning(f"Chunk {chunk.describe()} finished with warnings: {result.message}")
        else:
            logger.info(f"Chunk {chunk.describe()} complete: {result.message}")
        self.events.emit(events.CHUNK_COMPLETE, chunk=chunk, result=result, summary=summary)
        self._record_checkpoint(chunk)

    def _mark_failed(self, chunk: Chunk, exit_code: Optional[int], message: str) -> None:
        chunk.status = ChunkStatus.FAILED
        chunk.last_exit_code = exit_code
        chunk.last_error_message = message
        self.state.failed_queue.append(chunk)
        logger.error(f"Chunk {chunk.describe()} failed: {message}")
        self.events.emit(events.CHUNK_FAILED, chunk=chunk, exit_code=exit_code, message=message)

    def _handle_stop(self) -> None:
        if self._stop_handled:
            return

        for pid, handle in list(self.state.active_jobs.items()):
            try:
                self.copy_tool.terminate(handle)
            except OSError as e:
                logger.error(f"Failed to terminate pid {pid}: {e}")
            del self.state.active_jobs[pid]
            self._mark_failed(handle.chunk, None, STOPPED_MESSAGE)
            self.state.completed_count.increment()

        if self.state.current_profile is not None and not self._profile_recorded:
            self._record_profile_result(error=STOPPED_MESSAGE)
        self._release_collaborators()
        self._stop_handled = True
        logger.warning(f"Run stopped, {len(self.state.pending_queue)} chunk(s) left pending")
        self.events.emit(events.RUN_STOPPED, results=list(self.state.profile_results))

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def _advance_profile(self) -> None:
        if self.state.phase != Phase.RUNNING:
            return
        index = self.state.profile_index + 1
        while index < len(self.state.profiles):
            if self._start_profile(index):
                return
            index += 1
        self._complete_run()

    def _start_profile(self, index: int) -> bool:
        state = self.state
        state.reset_for_new_profile()
        profile = state.profiles[index]
        state.profile_index = index
        state.current_profile = profile
        state.profile_start_time = self._clock()
        self._profile_recorded = False

        logger.info(f"Profile {index + 1}/{len(state.profiles)} '{profile.name}': {profile.source} -> {profile.destination}")
        self._context = _ProfileContext(profile.source)
        source = self._prepare_source(profile)

        try:
            chunks = self.planner(profile, source)
        except (ChunkingError, OSError) as e:
            logger.error(f"Cannot plan profile '{profile.name}': {e}")
            self._record_profile_result(error=str(e))
            self._release_collaborators()
            return False

        resumed = [c for c in chunks if self._checkpoint.contains(profile.name, c)]
        if resumed:
            logger.info(f"Skipping {len(resumed)} chunk(s) completed in a previous run")
            chunks = [c for c in chunks if not self._checkpoint.contains(profile.name, c)]

        state.pending_queue.extend(chunks)
        state.total_chunks = len(chunks)
        state.total_bytes = sum(c.estimated_size for c in chunks)
        self.events.emit(events.PROFILE_STARTED, profile=profile, chunks=len(chunks), total_bytes=state.total_bytes)
        return True

    def _prepare_source(self, profile: ProfileConfig) -> str:
        """Mount and snapshot the source where configured; failures degrade to the original path."""
        context = self._context
        source = profile.source

        if self.mount_manager is not None and is_unc_path(source):
            try:
                source, context.mount_handle = self.mount_manager.mount(source)
            except MountError as e:
                self._degraded(profile, f"mount failed, using {source}: {e}")

        if profile.use_snapshot and self.snapshot_provider is not None:
            try:
                source, context.snapshot_handle = self.snapshot_provider.begin_snapshot(source)
            except SnapshotError as e:
                self._degraded(profile, f"snapshot failed, copying live data: {e}")

        context.effective_source = source
        return source

    def _degraded(self, profile: ProfileConfig, message: str) -> None:
        logger.warning(f"Profile '{profile.name}': {message}")
        self.events.emit(events.DEGRADED, profile=profile, message=message)

    def _release_collaborators(self) -> None:
        context = self._context
        if context is None:
            return
        if context.snapshot_handle is not None:
            try:
                self.snapshot_provider.end_snapshot(context.snapshot_handle)
            except SnapshotError as e:
                logger.warning(f"Failed to release snapshot: {e}")
        if context.mount_handle is not None:
            try:
                self.mount_manager.unmount(context.mount_handle)
            except MountError as e:
                logger.warning(f"Failed to unmount {context.mount_handle}: {e}")
        self._context = None

    def _finish_profile(self) -> None:
        state = self.state
        if state.failed_queue and self.failure_handler is not None:
            self.failure_handler(self, list(state.failed_queue))
            if state.phase != Phase.RUNNING or state.pending_queue:
                # Stopped, or retries were requested and the profile keeps running
                return

        result = self._record_profile_result()
        state.failed_queue.clear()
        self._release_collaborators()
        logger.info(
            f"Profile '{result.name}' finished: {result.completed} complete, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        self.events.emit(events.PROFILE_COMPLETE, result=result)
        self._advance_profile()

    def _record_profile_result(self, error: Optional[str] = None) -> ProfileResult:
        state = self.state
        started = state.profile_start_time or self._clock()
        profile = state.current_profile
        result = ProfileResult(
            name=profile.name if profile is not None else "",
            total_chunks=state.total_chunks,
            completed=len(state.completed_queue),
            failed=len(state.failed_queue),
            skipped=len(state.skipped_queue),
            bytes_copied=state.bytes_complete.value,
            files_copied=state.files_copied.value,
            duration_seconds=(self._clock() - started).total_seconds(),
            failed_chunks=tuple(state.failed_queue),
            error=error,
        )
        state.profile_results.append(result)
        self._profile_recorded = True
        return result

    def _complete_run(self) -> None:
        self.state.phase = Phase.COMPLETE
        succeeded = self.run_succeeded()
        logger.info(f"Run complete ({'success' if succeeded else 'with failures'})")
        if succeeded and self.settings.checkpoint_path:
            clear_checkpoint(self.settings.checkpoint_path)
        self.events.emit(events.RUN_COMPLETE, results=list(self.state.profile_results), succeeded=succeeded)

    def _record_checkpoint(self, chunk: Chunk) -> None:
        if not self.settings.checkpoint_path or self.state.current_profile is None:
            return
        self._checkpoint.record(self.state.current_profile.name, chunk)
        try:
            save_checkpoint(self.settings.checkpoint_path, self._checkpoint)
        except OSError as e:
            logger.warning(f"Failed to save checkpoint: {e}")

    def _default_planner(self, profile: ProfileConfig, source: str) -> List[Chunk]:
        return plan_chunks(
            source,
            profile.destination,
            constraints_for_profile(profile),
            profiler=self.profiler,
        )

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def _take_failed(self, chunk_id: int) -> Optional[Chunk]:
        for chunk in list(self.state.failed_queue):
            if chunk.chunk_id == chunk_id:
                self.state.failed_queue.remove(chunk)
                return chunk
        return None

    def retry(self, chunk_id: int) -> bool:
        """
        Requeue a failed chunk with a fresh retry budget.

        Returns:
            True if the chunk was found in the failed queue
        """
        chunk = self._take_failed(chunk_id)
        if chunk is None:
            logger.warning(f"Retry: chunk {chunk_id} not found in failed queue")
            return False

        chunk.retry_count = 0
        chunk.clear_error()
        chunk.status = ChunkStatus.PENDING
        self.state.pending_queue.append(chunk)
        logger.info(f"Chunk {chunk.describe()} queued for retry")
        self.events.emit(events.CHUNK_RETRY, chunk=chunk, result=None)
        return True

    def skip(self, chunk_id: int) -> bool:
        """
        Give up on a failed chunk.

        Returns:
            True if the chunk was found in the failed queue
        """
        chunk = self._take_failed(chunk_id)
        if chunk is None:
            logger.warning(f"Skip: chunk {chunk_id} not found in failed queue")
            return False

        chunk.status = ChunkStatus.SKIPPED
        self.state.skipped_queue.append(chunk)
        logger.info(f"Chunk {chunk.describe()} skipped")
        self.events.emit(events.CHUNK_SKIPPED, chunk=chunk)
        return True

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def profile_progress_percent(self) -> int:
        total = self.state.total_chunks
        if total <= 0:
            return 0
        percent = (100 * self.state.completed_count.value) // total
        return max(0, min(100, percent))

    def eta_seconds(self) -> Optional[float]:
        """Estimated seconds left in the current profile, None when unknown."""
        state = self.state
        total = state.total_bytes
        done = state.bytes_complete.value
        if total <= 0 or state.start_time is None or done == 0:
            return None
        if done >= total:
            return 0.0

        started = state.profile_start_time or state.start_time
        elapsed = (self._clock() - started).total_seconds()
        if elapsed <= 0:
            return None

        remaining = (total - done) / (done / elapsed)
        return min(remaining, float(MAX_ETA_SECONDS))

    def snapshot(self) -> StateSnapshot:
        """Copy-on-read view for observers."""
        state = self.state
        profile = state.current_profile
        return StateSnapshot(
            phase=state.phase,
            profile_name=profile.name if profile is not None else None,
            profile_index=state.profile_index,
            profile_count=len(state.profiles),
            total_chunks=state.total_chunks,
            completed_count=state.completed_count.value,
            pending=len(state.pending_queue),
            active=state.active_chunks(),
            failed=list(state.failed_queue),
            skipped=len(state.skipped_queue),
            total_bytes=state.total_bytes,
            bytes_complete=state.bytes_complete.value,
            files_copied=state.files_copied.value,
            progress_percent=self.profile_progress_percent(),
            eta_seconds=self.eta_seconds(),
        )
