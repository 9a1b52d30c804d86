"""
Chunk partitioner.

Splits a profiled directory tree into copy units that respect size, file-count
and depth limits. The result covers every byte and file of the tree exactly
once: regular chunks never nest, and a directory that gets subdivided keeps
its own files in a separate non-recursive chunk.
"""
import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import (
    DEFAULT_MAX_CHUNK_FILES,
    DEFAULT_MAX_CHUNK_SIZE,
    DEFAULT_MIN_CHUNK_SIZE,
    FILES_ONLY_ARGS,
)
from .models import Chunk, DirectoryNode
from .paths import map_destination
from .tree import DirectoryProfiler, scan_directory


# Configure logger
logger = logging.getLogger(__name__)

UNLIMITED_DEPTH = -1

MODE_FLAT = "flat"
MODE_SMART = "smart"

# Preset depth limits
PRESET_DEPTHS = {
    MODE_FLAT: 0,
    MODE_SMART: UNLIMITED_DEPTH,
}


class ChunkingError(ValueError):
    """Raised when a partition request is invalid."""


@dataclass(frozen=True)
class ChunkConstraints:
    """Limits applied when splitting a tree into chunks."""
    max_size_bytes: int = DEFAULT_MAX_CHUNK_SIZE
    max_files: int = DEFAULT_MAX_CHUNK_FILES
    max_depth: int = UNLIMITED_DEPTH
    min_size_bytes: int = DEFAULT_MIN_CHUNK_SIZE


def constraints_for_mode(
    mode: str,
    max_size_bytes: int = DEFAULT_MAX_CHUNK_SIZE,
    max_files: int = DEFAULT_MAX_CHUNK_FILES,
    min_size_bytes: int = DEFAULT_MIN_CHUNK_SIZE,
) -> ChunkConstraints:
    """
    Build constraints for a named preset.

    "flat" stops at the root level, "smart" recurses as deep as the
    thresholds require.
    """
    mode = mode.lower()
    if mode not in PRESET_DEPTHS:
        raise ChunkingError(f"Unknown chunking mode: {mode}")
    return ChunkConstraints(
        max_size_bytes=max_size_bytes,
        max_files=max_files,
        max_depth=PRESET_DEPTHS[mode],
        min_size_bytes=min_size_bytes,
    )


def validate_constraints(constraints: ChunkConstraints) -> None:
    """Raise ChunkingError if the limits are inconsistent."""
    if constraints.max_size_bytes <= 0:
        raise ChunkingError(f"max_size_bytes must be positive, got {constraints.max_size_bytes}")
    if constraints.max_files <= 0:
        raise ChunkingError(f"max_files must be positive, got {constraints.max_files}")
    if constraints.max_depth < UNLIMITED_DEPTH:
        raise ChunkingError(f"max_depth must be -1 or greater, got {constraints.max_depth}")
    if constraints.max_size_bytes <= constraints.min_size_bytes:
        raise ChunkingError(
            f"max_size_bytes ({constraints.max_size_bytes}) must be greater than "
            f"min_size_bytes ({constraints.min_size_bytes})"
        )


def validate_request(
    source_path: str,
    dest_root: str,
    constraints: ChunkConstraints,
    path_exists: Callable[[str], bool] = os.path.exists,
) -> None:
    """
    Validate a partition request before any work is done.

    Args:
        source_path: Root of the tree to partition
        dest_root: Destination root the chunks map onto
        constraints: Chunk limits
        path_exists: Existence check for source_path

    Raises:
        ChunkingError: If any input is invalid
    """
    if not source_path or not source_path.strip():
        raise ChunkingError("Source path is empty")
    if not dest_root or not dest_root.strip():
        raise ChunkingError("Destination root is empty")
    if not path_exists(source_path):
        raise ChunkingError(f"Source path does not exist: {source_path}")
    validate_constraints(constraints)


def _fits(node: DirectoryNode, constraints: ChunkConstraints, depth: int) -> bool:
    if node.total_size <= constraints.min_size_bytes:
        return True
    if node.total_size <= constraints.max_size_bytes and node.total_file_count <= constraints.max_files:
        return True
    if depth == constraints.max_depth:
        return True
    # Nothing left to subdivide
    return not node.children


def partition(
    node: DirectoryNode,
    dest_root: str,
    constraints: ChunkConstraints,
    source_root: Optional[str] = None,
) -> List[Chunk]:
    """
    Partition a tree into chunks.

    Args:
        node: Root of the (aggregated) tree to split
        dest_root: Destination root for the tree's root path
        constraints: Chunk limits
        source_root: Path that maps onto dest_root; defaults to node.path

    Returns:
        Chunks in depth-first order, all PENDING
    """
    validate_constraints(constraints)
    if source_root is None:
        source_root = node.path

    chunks: List[Chunk] = []
    # (node, depth, files_only_marker)
    stack = [(node, 0, False)]

    while stack:
        current, depth, files_only = stack.pop()
        destination = map_destination(current.path, source_root, dest_root)

        if files_only:
            chunks.append(Chunk(
                source_path=current.path,
                destination_path=destination,
                estimated_size=current.direct_size,
                estimated_files=current.direct_file_count,
                is_files_only=True,
                extra_args=list(FILES_ONLY_ARGS),
            ))
            continue

        if _fits(current, constraints, depth):
            chunks.append(Chunk(
                source_path=current.path,
                destination_path=destination,
                estimated_size=current.total_size,
                estimated_files=current.total_file_count,
            ))
            continue

        logger.debug(
            f"Subdividing {current.path} at depth {depth} "
            f"({current.total_size} bytes, {current.total_file_count} files)"
        )
        # Pushed first so it is emitted after the children
        if current.direct_file_count > 0:
            stack.append((current, depth, True))
        for child in reversed(list(current.children.values())):
            stack.append((child, depth + 1, False))

    return chunks


def plan_chunks(
    source_path: str,
    dest_root: str,
    constraints: ChunkConstraints,
    tree: Optional[DirectoryNode] = None,
    profiler: Optional[DirectoryProfiler] = None,
) -> List[Chunk]:
    """
    Validate a request, obtain a tree and partition it.

    The tree is taken from the argument, then the profiler, then a fresh
    filesystem scan.
    """
    validate_request(
        source_path,
        dest_root,
        constraints,
        path_exists=(lambda _: True) if tree is not None else os.path.exists,
    )

    if tree is None:
        tree = profiler.get_tree(source_path) if profiler is not None else scan_directory(source_path)

    chunks = partition(tree, dest_root, constraints, source_root=tree.path)
    summary = summarize_chunks(chunks)
    logger.info(
        f"Partitioned {source_path} into {summary['chunks']} chunk(s) "
        f"({summary['files_only']} files-only, {summary['bytes']} bytes, {summary['files']} files)"
    )
    return chunks


def summarize_chunks(chunks: List[Chunk]) -> dict:
    """Counts and totals for a chunk list."""
    return {
        "chunks": len(chunks),
        "files_only": sum(1 for c in chunks if c.is_files_only),
        "bytes": sum(c.estimated_size for c in chunks),
        "files": sum(c.estimated_files for c in chunks),
    }
