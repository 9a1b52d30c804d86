"""
Directory tree model built from copy-tool listings or the filesystem.
"""
import logging
import os
import re
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Union

from .models import DirectoryNode
from .paths import (
    detect_separator,
    is_absolute_path,
    is_same_or_descendant,
    join_path,
    normalize_path,
    parent_path,
    path_key,
)


# Configure logger
logger = logging.getLogger(__name__)

# "<tag> <number> <path>" with the tag optional, e.g.
#   "    New File        1024    report.pdf"
#   "  New Dir          3    C:\Data\sub\"
_LISTING_RE = re.compile(
    r"^\s*(?:(?P<tag>[A-Za-z*][A-Za-z* ]*?)\s+)?(?P<size>\d+)\s+(?P<path>\S.*?)\s*$"
)


class _TreeBuilder:
    """Creates nodes on demand, keyed by case-insensitive absolute path."""

    def __init__(self, root_path: str):
        self.sep = detect_separator(root_path)
        self.root = DirectoryNode(normalize_path(root_path, self.sep))
        self.index: Dict[str, DirectoryNode] = {path_key(self.root.path): self.root}

    def ensure(self, abs_path: str) -> Optional[DirectoryNode]:
        """Return the node for abs_path, creating it and any missing parents."""
        abs_path = normalize_path(abs_path, self.sep)
        if not is_same_or_descendant(abs_path, self.root.path):
            return None

        missing: List[str] = []
        current = abs_path
        while path_key(current) not in self.index:
            missing.append(current)
            current = parent_path(current, self.sep)
            if current is None:
                return None

        node = self.index[path_key(current)]
        for path in reversed(missing):
            name = path.rsplit(self.sep, 1)[-1]
            node = node.add_child(DirectoryNode(path, name))
            self.index[path_key(path)] = node
        return node

    def resolve(self, path: str, base: DirectoryNode) -> str:
        """Absolute paths stay as they are, relative ones join onto base."""
        if is_absolute_path(path):
            return normalize_path(path, self.sep)
        return join_path(base.path, path, sep=self.sep)


def parse_listing_line(line: str) -> Optional[dict]:
    """
    Parse one listing line.

    Returns:
        Dict with "is_dir", "size" and "path" keys, or None if unparseable
    """
    match = _LISTING_RE.match(line)
    if not match:
        return None

    path = match.group("path")
    tag = (match.group("tag") or "").lower()
    is_dir = "dir" in tag or path.endswith(("\\", "/"))
    return {
        "is_dir": is_dir,
        "size": int(match.group("size")),
        "path": path,
    }


def build_tree(root_path: str, listing: Union[str, Iterable[str]]) -> DirectoryNode:
    """
    Build a DirectoryNode tree from a line-oriented copy-tool listing.

    Directory entries set the current directory for the file entries that
    follow them. Directory paths may be absolute or relative to the root;
    file paths may be bare names, relative paths or absolute paths.

    Args:
        root_path: Root of the listed tree
        listing: Listing text or an iterable of lines

    Returns:
        Root node with totals aggregated
    """
    if isinstance(listing, str):
        listing = listing.splitlines()

    builder = _TreeBuilder(root_path)
    current = builder.root
    skipped = 0

    for line in listing:
        if not line.strip():
            continue

        entry = parse_listing_line(line)
        if entry is None:
            skipped += 1
            logger.debug(f"Skipping unparseable listing line: {line!r}")
            continue

        if entry["is_dir"]:
            node = builder.ensure(builder.resolve(entry["path"], builder.root))
            if node is None:
                skipped += 1
                logger.debug(f"Skipping directory outside {builder.root.path}: {entry['path']}")
                continue
            current = node
            continue

        file_path = builder.resolve(entry["path"], current)
        parent = parent_path(file_path, builder.sep)
        node = builder.ensure(parent) if parent is not None else None
        if node is None:
            skipped += 1
            logger.debug(f"Skipping file outside {builder.root.path}: {entry['path']}")
            continue
        node.add_file(entry["size"])

    if skipped:
        logger.info(f"Skipped {skipped} listing line(s) while profiling {builder.root.path}")

    aggregate_totals(builder.root)
    return builder.root


def iter_nodes(root: DirectoryNode) -> Iterator[DirectoryNode]:
    """Yield every node below and including root, pre-order."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(list(node.children.values())))


def aggregate_totals(root: DirectoryNode) -> None:
    """Compute total_size/total_file_count for every node in one post-order pass."""
    stack = [(root, False)]
    while stack:
        node, visited = stack.pop()
        if not visited:
            stack.append((node, True))
            stack.extend((child, False) for child in node.children.values())
            continue
        node.total_size = node.direct_size + sum(c.total_size for c in node.children.values())
        node.total_file_count = node.direct_file_count + sum(
            c.total_file_count for c in node.children.values()
        )


def scan_directory(root_path: str) -> DirectoryNode:
    """
    Profile a directory tree straight from the filesystem.

    Symlinked directories are not followed. Directories that cannot be read
    are logged and left empty.

    Args:
        root_path: Directory to profile

    Returns:
        Root node with totals aggregated
    """
    if not os.path.isdir(root_path):
        raise FileNotFoundError(f"Source directory not found: {root_path}")

    sep = os.sep
    root = DirectoryNode(normalize_path(root_path, sep))
    stack = [root]

    while stack:
        node = stack.pop()
        try:
            with os.scandir(node.path) as entries:
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            child = node.add_child(
                                DirectoryNode(join_path(node.path, entry.name, sep=sep), entry.name)
                            )
                            stack.append(child)
                        elif entry.is_file(follow_symlinks=False):
                            node.add_file(entry.stat(follow_symlinks=False).st_size)
                    except OSError as e:
                        logger.warning(f"Cannot stat {entry.path}: {e}")
        except OSError as e:
            logger.warning(f"Cannot read directory {node.path}: {e}")

    aggregate_totals(root)
    return root


class DirectoryProfiler:
    """Caches profiled trees by case-insensitive root path."""

    def __init__(self, scanner=scan_directory):
        self._scanner = scanner
        self._cache: Dict[str, DirectoryNode] = {}
        self._lock = threading.Lock()

    def get_tree(self, root_path: str) -> DirectoryNode:
        key = path_key(root_path)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached profile for {root_path}")
            return cached

        tree = self._scanner(root_path)
        with self._lock:
            self._cache[key] = tree
        return tree

    def invalidate(self, root_path: str) -> None:
        with self._lock:
            self._cache.pop(path_key(root_path), None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
