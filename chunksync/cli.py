"""
CLI entry point for the chunked replication service.
`plan` shows how a tree would be split, `run` replicates one or more profiles.
"""
import logging
import re
import sys
from pathlib import Path
from typing import List, Optional

import click

from .config import (
    COPY_TOOL_EXECUTABLE,
    DEFAULT_CHECKPOINT,
    DEFAULT_MAX_CHUNK_FILES,
    DEFAULT_MAX_CHUNK_SIZE,
    DEFAULT_MIN_CHUNK_SIZE,
    LOG_FILE,
    VALID_MISMATCH_SEVERITIES,
    VALID_MODES,
    ProfileConfig,
    RunConfig,
    load_run_config,
    validate_run_config,
)
from .copy_tool import RobocopyTool
from .models import Chunk, StateSnapshot
from .mount import MountManager, NetUseBackend
from .orchestrator import JobOrchestrator, OrchestratorSettings, constraints_for_profile
from .partition import ChunkingError, plan_chunks, summarize_chunks
from .scheduler import ReplicationScheduler
from .snapshot import NullSnapshotProvider
from .tree import build_tree
from .utils.prompt import display_progress, format_bytes, prompt_choice, prompt_yes_no


logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?i?b?)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}


class SizeParam(click.ParamType):
    """Byte sizes such as 500MB, 10G or 1048576."""
    name = "size"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        match = _SIZE_RE.match(str(value))
        if not match:
            self.fail(f"{value!r} is not a size (e.g. 500MB, 10GB)", param, ctx)
        unit = (match.group(2) or "").lower()[:1]
        return int(float(match.group(1)) * _SIZE_UNITS[unit])


SIZE = SizeParam()


def setup_logging(log_level: str, log_file: Optional[Path] = None) -> None:
    """Configure logging to a file and stdout at the specified level."""
    level = getattr(logging, log_level.upper(), logging.INFO)
    log_file = log_file or LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ],
        force=True,
    )
    logger.debug(f"Logging initialized at level {log_level}")


def _describe_chunk(chunk: Chunk) -> str:
    kind = "files" if chunk.is_files_only else "tree "
    return (
        f"{chunk.chunk_id:>5}  {kind}  {format_bytes(chunk.estimated_size):>10}  "
        f"{chunk.estimated_files:>8}  {chunk.source_path} -> {chunk.destination_path}"
    )


def interactive_failure_handler(orchestrator: JobOrchestrator, failed: List[Chunk]) -> None:
    """Ask what to do with each failed chunk before a profile closes."""
    actions = ["Retry", "Skip", "Leave failed"]
    for chunk in failed:
        choice = prompt_choice(
            f"\nChunk {chunk.describe()} failed: {chunk.last_error_message}",
            actions,
        )
        if choice == "Retry":
            orchestrator.retry(chunk.chunk_id)
        elif choice == "Skip":
            orchestrator.skip(chunk.chunk_id)


def _show_progress(snapshot: StateSnapshot) -> None:
    if snapshot.total_chunks == 0:
        return
    display_progress(
        min(snapshot.completed_count, snapshot.total_chunks),
        snapshot.total_chunks,
        message=f"[{snapshot.profile_name}]",
        bytes_done=snapshot.bytes_complete,
        eta_seconds=snapshot.eta_seconds,
    )


@click.group()
@click.option('--log-level',
              type=click.Choice(['debug', 'info', 'warning', 'error', 'critical']),
              default='info', show_default=True,
              help='Set the logging level')
@click.option('--log-file', type=click.Path(dir_okay=False, path_type=Path),
              help='Log file (default: ~/.chunksync/logs/chunksync.log)')
def main(log_level: str, log_file: Optional[Path]) -> None:
    """Chunked directory replication driven by an external copy tool."""
    setup_logging(log_level, log_file)


@main.command()
@click.argument('source')
@click.argument('dest')
@click.option('--mode', type=click.Choice(VALID_MODES), default='smart', show_default=True)
@click.option('--max-size', type=SIZE, default=DEFAULT_MAX_CHUNK_SIZE, help='Largest chunk (e.g. 10GB)')
@click.option('--max-files', type=int, default=DEFAULT_MAX_CHUNK_FILES, show_default=True)
@click.option('--max-depth', type=int, default=-1, show_default=True, help='-1 for unlimited')
@click.option('--min-size', type=SIZE, default=DEFAULT_MIN_CHUNK_SIZE, help='Never split below this size')
@click.option('--listing', type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Use a saved copy-tool listing instead of scanning SOURCE')
@click.option('--copy-tool-listing', is_flag=True,
              help='Ask the copy tool for a listing instead of scanning SOURCE')
@click.option('--executable', default=None, help='Copy tool executable')
def plan(source, dest, mode, max_size, max_files, max_depth, min_size, listing, copy_tool_listing, executable):
    """Show how SOURCE would be split into chunks."""
    profile = ProfileConfig(
        name="plan", source=source, destination=dest, mode=mode,
        max_size_bytes=max_size, max_files=max_files,
        max_depth=max_depth, min_size_bytes=min_size,
    )

    try:
        tree = None
        if listing:
            tree = build_tree(source, listing.read_text(errors="replace"))
        elif copy_tool_listing:
            tool = RobocopyTool(executable=executable or COPY_TOOL_EXECUTABLE)
            tree = build_tree(source, tool.list_directory(source))
        chunks = plan_chunks(source, dest, constraints_for_profile(profile), tree=tree)
    except (ChunkingError, FileNotFoundError, RuntimeError) as e:
        raise click.ClickException(str(e))

    for chunk in chunks:
        click.echo(_describe_chunk(chunk))

    summary = summarize_chunks(chunks)
    click.echo(
        f"\n{summary['chunks']} chunk(s), {summary['files_only']} files-only, "
        f"{format_bytes(summary['bytes'])}, {summary['files']} files"
    )


@main.command()
@click.argument('source', required=False)
@click.argument('dest', required=False)
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='JSON run file with profiles and settings')
@click.option('--mode', type=click.Choice(VALID_MODES), default='smart', show_default=True)
@click.option('--max-size', type=SIZE, default=DEFAULT_MAX_CHUNK_SIZE)
@click.option('--max-files', type=int, default=DEFAULT_MAX_CHUNK_FILES)
@click.option('--min-size', type=SIZE, default=DEFAULT_MIN_CHUNK_SIZE)
@click.option('--jobs', type=int, help='Concurrent copy processes')
@click.option('--bandwidth', type=float, help='Bandwidth limit in Mbps, 0 for unlimited')
@click.option('--retries', type=int, help='Automatic retries per chunk')
@click.option('--mismatch-severity', type=click.Choice(VALID_MISMATCH_SEVERITIES),
              help='How mismatched files are treated')
@click.option('--checkpoint', type=click.Path(dir_okay=False, path_type=Path),
              help='Record completed chunks here and resume from it')
@click.option('--resume', is_flag=True,
              help='Use the default checkpoint file (~/.chunksync/data/checkpoint.json)')
@click.option('--interactive/--no-interactive', default=False,
              help='Ask whether to retry or skip failed chunks')
@click.option('--executable', default=None, help='Copy tool executable')
def run(source, dest, config_path, mode, max_size, max_files, min_size, jobs, bandwidth,
        retries, mismatch_severity, checkpoint, resume, interactive, executable):
    """Replicate SOURCE to DEST, or every profile of a --config run file."""
    if config_path is not None:
        try:
            run_config = load_run_config(config_path)
        except (ValueError, FileNotFoundError) as e:
            raise click.ClickException(str(e))
    elif source and dest:
        run_config = RunConfig(profiles=[ProfileConfig(
            name="default", source=source, destination=dest, mode=mode,
            max_size_bytes=max_size, max_files=max_files, min_size_bytes=min_size,
        )])
    else:
        raise click.UsageError("Give SOURCE and DEST, or --config")

    if jobs is not None:
        run_config.max_concurrent_jobs = jobs
    if bandwidth is not None:
        run_config.bandwidth_limit_mbps = bandwidth
    if retries is not None:
        run_config.max_retries = retries
    if mismatch_severity is not None:
        run_config.mismatch_severity = mismatch_severity
    if checkpoint is not None:
        run_config.checkpoint_path = checkpoint
    elif resume and run_config.checkpoint_path is None:
        run_config.checkpoint_path = DEFAULT_CHECKPOINT

    try:
        validate_run_config(run_config)
    except ValueError as e:
        raise click.UsageError(str(e))

    copy_tool = RobocopyTool(executable=executable or COPY_TOOL_EXECUTABLE)
    orchestrator = JobOrchestrator(
        copy_tool,
        settings=OrchestratorSettings.from_run_config(run_config),
        snapshot_provider=NullSnapshotProvider(),
        mount_manager=MountManager(NetUseBackend()) if sys.platform == "win32" else None,
        failure_handler=interactive_failure_handler if interactive else None,
    )
    scheduler = ReplicationScheduler(orchestrator, interval=run_config.tick_interval)

    try:
        orchestrator.start(run_config.enabled_profiles)
        try:
            succeeded = scheduler.run_until_complete(on_tick=_show_progress)
        except KeyboardInterrupt:
            click.echo("\nStopping, terminating running copy jobs...")
            scheduler.stop()
            succeeded = scheduler.run_until_complete()
    except Exception as e:
        logger.exception("Error during replication")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    _report(orchestrator)

    if not succeeded and not interactive and _has_failures(orchestrator):
        if sys.stdin.isatty() and prompt_yes_no("Show failed chunks?"):
            for result in orchestrator.state.profile_results:
                for chunk in result.failed_chunks:
                    click.echo(f"  {chunk.describe()}: {chunk.last_error_message}")

    sys.exit(0 if succeeded else 1)


def _has_failures(orchestrator: JobOrchestrator) -> bool:
    return any(result.failed for result in orchestrator.state.profile_results)


def _report(orchestrator: JobOrchestrator) -> None:
    click.echo("")
    for result in orchestrator.state.profile_results:
        status = "OK" if result.succeeded else "FAILED"
        line = (
            f"{status:<7}{result.name}: {result.completed}/{result.total_chunks} chunks, "
            f"{result.failed} failed, {result.skipped} skipped, "
            f"{format_bytes(result.bytes_copied)} in {result.duration_seconds:.0f}s"
        )
        if result.error:
            line += f" ({result.error})"
        click.echo(line)


if __name__ == "__main__":
    main()
