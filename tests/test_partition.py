"""
Unit tests for partition.py
"""
import random

import pytest

from chunksync.models import ChunkStatus
from chunksync.partition import (
    ChunkConstraints,
    ChunkingError,
    constraints_for_mode,
    partition,
    plan_chunks,
    summarize_chunks,
    validate_request,
)
from chunksync.paths import is_same_or_descendant
from tests.fixtures.trees import GB, MB, node, tree


def assert_partition_invariants(root, chunks):
    """Coverage, no-overlap and no-duplicate checks."""
    assert sum(c.estimated_size for c in chunks) == root.total_size
    assert sum(c.estimated_files for c in chunks) == root.total_file_count

    regular = [c for c in chunks if not c.is_files_only]
    for a in regular:
        for b in regular:
            if a is not b:
                assert not is_same_or_descendant(a.source_path, b.source_path), (a.source_path, b.source_path)

    keys = [(c.source_path.lower(), c.is_files_only) for c in chunks]
    assert len(keys) == len(set(keys))


@pytest.fixture
def two_child_tree():
    """Root without direct files and two leaf children of 8GB and 5GB."""
    return tree(node("C:\\Root", 0, 0, [
        node("C:\\Root\\A", 8 * GB, 10000),
        node("C:\\Root\\B", 5 * GB, 5000),
    ]))


@pytest.fixture
def files_at_root_tree():
    """Root with 100 direct files and one 5GB child holding two grandchildren."""
    return tree(node("C:\\Root", 100 * MB, 100, [
        node("C:\\Root\\Big", 0, 0, [
            node("C:\\Root\\Big\\G1", int(2.5 * GB), 1000),
            node("C:\\Root\\Big\\G2", int(2.5 * GB), 1000),
        ]),
    ]))


def test_whole_tree_fits_in_one_chunk(two_child_tree):
    """Test a tree within the limits becomes a single chunk."""
    constraints = ChunkConstraints(max_size_bytes=15 * GB, max_files=100000, min_size_bytes=100 * MB)

    chunks = partition(two_child_tree, "E:\\Backup", constraints)

    assert len(chunks) == 1
    assert chunks[0].source_path == "C:\\Root"
    assert chunks[0].destination_path == "E:\\Backup"
    assert chunks[0].estimated_size == 13 * GB
    assert chunks[0].estimated_files == 15000
    assert not chunks[0].is_files_only


def test_oversized_root_splits_per_child(two_child_tree):
    """Test a too-large root splits into one chunk per child, no files-only chunk."""
    constraints = ChunkConstraints(max_size_bytes=6 * GB, max_files=100000, min_size_bytes=100 * MB)

    chunks = partition(two_child_tree, "E:\\Backup", constraints)

    assert [c.source_path for c in chunks] == ["C:\\Root\\A", "C:\\Root\\B"]
    assert [c.estimated_size for c in chunks] == [8 * GB, 5 * GB]
    assert [c.destination_path for c in chunks] == ["E:\\Backup\\A", "E:\\Backup\\B"]
    assert not any(c.is_files_only for c in chunks)
    assert_partition_invariants(two_child_tree, chunks)


def test_subdivided_root_keeps_its_files(files_at_root_tree):
    """Test root files get one files-only chunk next to the grandchildren chunks."""
    constraints = ChunkConstraints(max_size_bytes=3 * GB, max_files=100000, min_size_bytes=100 * MB)

    chunks = partition(files_at_root_tree, "E:\\Backup", constraints)

    files_only = [c for c in chunks if c.is_files_only]
    regular = [c for c in chunks if not c.is_files_only]
    assert len(files_only) == 1
    assert files_only[0].source_path == "C:\\Root"
    assert files_only[0].estimated_files == 100
    assert files_only[0].estimated_size == 100 * MB
    assert files_only[0].extra_args == ["/LEV:1"]
    assert [c.source_path for c in regular] == ["C:\\Root\\Big\\G1", "C:\\Root\\Big\\G2"]
    assert regular[0].destination_path == "E:\\Backup\\Big\\G1"
    assert sum(c.estimated_size for c in chunks) == files_at_root_tree.total_size
    assert_partition_invariants(files_at_root_tree, chunks)


def test_files_only_chunk_emitted_after_children(files_at_root_tree):
    """Test depth-first order: children first, then the directory's own files."""
    constraints = ChunkConstraints(max_size_bytes=3 * GB, max_files=100000, min_size_bytes=MB)
    chunks = partition(files_at_root_tree, "E:\\Backup", constraints)
    assert chunks[-1].is_files_only


def test_min_size_keeps_small_trees_whole():
    """Test a tree below the minimum size is never split, even with many files."""
    root = tree(node("/data", 10, 500, [node("/data/a", 10, 500)]))
    constraints = ChunkConstraints(max_size_bytes=1000, max_files=10, min_size_bytes=100)

    chunks = partition(root, "/backup", constraints)

    assert len(chunks) == 1
    assert chunks[0].estimated_files == 1000


def test_file_count_limit_forces_split():
    """Test exceeding max_files alone splits a directory."""
    root = tree(node("/data", 0, 0, [node("/data/a", 10, 600), node("/data/b", 10, 600)]))
    constraints = ChunkConstraints(max_size_bytes=10 * GB, max_files=1000, min_size_bytes=0)

    chunks = partition(root, "/backup", constraints)

    assert [c.source_path for c in chunks] == ["/data/a", "/data/b"]
    assert [c.destination_path for c in chunks] == ["/backup/a", "/backup/b"]


def test_max_depth_stops_recursion(files_at_root_tree):
    """Test nodes at max_depth are emitted whole even when too large."""
    constraints = ChunkConstraints(max_size_bytes=GB, max_files=100000, max_depth=1, min_size_bytes=MB)

    chunks = partition(files_at_root_tree, "E:\\Backup", constraints)

    regular = [c for c in chunks if not c.is_files_only]
    assert [c.source_path for c in regular] == ["C:\\Root\\Big"]
    assert regular[0].estimated_size == 5 * GB
    assert_partition_invariants(files_at_root_tree, chunks)


def test_flat_preset_emits_root_only(files_at_root_tree):
    """Test the flat preset never recurses below the root."""
    constraints = constraints_for_mode("flat", max_size_bytes=GB, min_size_bytes=MB)
    assert constraints.max_depth == 0

    chunks = partition(files_at_root_tree, "E:\\Backup", constraints)

    assert len(chunks) == 1
    assert chunks[0].source_path == "C:\\Root"


def test_smart_preset_is_unlimited():
    """Test the smart preset has no depth limit."""
    assert constraints_for_mode("SMART").max_depth == -1
    with pytest.raises(ChunkingError):
        constraints_for_mode("deep")


def test_leaf_larger_than_limit_is_single_chunk():
    """Test a directory without subdirectories is emitted whole."""
    root = tree(node("/data", 50 * GB, 10))
    chunks = partition(root, "/backup", ChunkConstraints(max_size_bytes=GB, min_size_bytes=MB))
    assert len(chunks) == 1
    assert not chunks[0].is_files_only


def test_chunks_are_pending_with_increasing_ids(files_at_root_tree):
    """Test new chunks start pending with unique increasing ids."""
    chunks = partition(files_at_root_tree, "E:\\Backup", ChunkConstraints(max_size_bytes=3 * GB, min_size_bytes=MB))
    ids = [c.chunk_id for c in chunks]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)
    assert all(c.status == ChunkStatus.PENDING and c.retry_count == 0 for c in chunks)


def _random_tree(rng, path, depth):
    children = []
    if depth < 4:
        for i in range(rng.randint(0, 3)):
            children.append(_random_tree(rng, f"{path}\\d{i}", depth + 1))
    files = rng.choice([0, 0, rng.randint(1, 50)])
    size = files * rng.randint(1, 4 * MB)
    return node(path, size, files, children)


def test_partition_invariants_on_random_trees():
    """Test coverage, no-overlap and no-duplicate hold across random trees."""
    rng = random.Random(1234)
    for _ in range(200):
        root = tree(_random_tree(rng, "C:\\Src", 0))
        min_size = rng.choice([0, MB, 10 * MB])
        constraints = ChunkConstraints(
            max_size_bytes=min_size + rng.randint(1, 200 * MB),
            max_files=rng.randint(1, 200),
            max_depth=rng.choice([-1, -1, 0, 1, 2]),
            min_size_bytes=min_size,
        )

        chunks = partition(root, "D:\\Dst", constraints)

        assert_partition_invariants(root, chunks)
        files_only_sources = [c.source_path for c in chunks if c.is_files_only]
        assert len(files_only_sources) == len(set(files_only_sources))


@pytest.mark.parametrize("kwargs", [
    {"max_size_bytes": 0},
    {"max_size_bytes": -5},
    {"max_files": 0},
    {"max_depth": -2},
    {"max_size_bytes": 100, "min_size_bytes": 100},
    {"max_size_bytes": 100, "min_size_bytes": 200},
])
def test_invalid_constraints_rejected(kwargs, two_child_tree):
    """Test inconsistent limits are rejected before partitioning."""
    constraints = ChunkConstraints(**{"min_size_bytes": 0, **kwargs})
    with pytest.raises(ChunkingError):
        partition(two_child_tree, "E:\\Backup", constraints)


def test_validate_request_rejects_bad_paths(tmp_path):
    """Test empty and missing paths are rejected."""
    constraints = ChunkConstraints()
    with pytest.raises(ChunkingError, match="Source path is empty"):
        validate_request("", "/dest", constraints)
    with pytest.raises(ChunkingError, match="Destination root is empty"):
        validate_request(str(tmp_path), "  ", constraints)
    with pytest.raises(ChunkingError, match="does not exist"):
        validate_request(str(tmp_path / "missing"), "/dest", constraints)

    validate_request(str(tmp_path), "/dest", constraints)


def test_chunking_error_is_value_error():
    """Test callers can catch partitioning errors as ValueError."""
    assert issubclass(ChunkingError, ValueError)


def test_plan_chunks_scans_filesystem(tmp_path):
    """Test planning straight from a directory on disk."""
    for name in ("a", "b"):
        sub = tmp_path / name
        sub.mkdir()
        (sub / "data.bin").write_bytes(b"x" * 100)
    (tmp_path / "top.txt").write_bytes(b"x" * 10)

    constraints = ChunkConstraints(max_size_bytes=150, max_files=100, min_size_bytes=0)
    chunks = plan_chunks(str(tmp_path), "/backup", constraints)

    summary = summarize_chunks(chunks)
    assert summary == {"chunks": 3, "files_only": 1, "bytes": 210, "files": 3}
    assert {c.destination_path for c in chunks if not c.is_files_only} == {"/backup/a", "/backup/b"}


def test_plan_chunks_with_prebuilt_tree(files_at_root_tree):
    """Test a prebuilt tree skips the filesystem existence check."""
    constraints = ChunkConstraints(max_size_bytes=3 * GB, min_size_bytes=MB)
    chunks = plan_chunks("C:\\Root", "E:\\Backup", constraints, tree=files_at_root_tree)
    assert len(chunks) == 3


def test_plan_chunks_validates_first(two_child_tree):
    """Test invalid requests fail before any partitioning."""
    with pytest.raises(ChunkingError):
        plan_chunks("C:\\Root", "", ChunkConstraints(), tree=two_child_tree)
