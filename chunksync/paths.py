"""
Path helpers for mapping source paths onto destination roots.

Paths are handled as strings rather than pathlib objects because sources may
be Windows drive paths or UNC shares while the process runs elsewhere. Case is
preserved in every returned path, comparisons are case-insensitive.
"""
import os
import re
from typing import Optional


_DRIVE_RE = re.compile(r"^[A-Za-z]:(?:[\\/]|$)")
_BARE_DRIVE_RE = re.compile(r"^[A-Za-z]:$")


def is_unc_path(path: str) -> bool:
    """True for \\\\server\\share style paths."""
    return path.startswith("\\\\") or path.startswith("//")


def is_drive_path(path: str) -> bool:
    return bool(_DRIVE_RE.match(path))


def is_absolute_path(path: str) -> bool:
    """True for drive, UNC and rooted paths in either separator style."""
    return is_drive_path(path) or is_unc_path(path) or path.startswith(("/", "\\"))


def detect_separator(path: str) -> str:
    """Pick the separator a path is written with, falling back to os.sep."""
    if "\\" in path or is_drive_path(path) or is_unc_path(path):
        return "\\"
    if "/" in path:
        return "/"
    return os.sep


def normalize_path(path: str, sep: Optional[str] = None) -> str:
    """
    Normalize a path string.

    Forward slashes become the separator, trailing separators are stripped and
    case is preserved. A bare root ("/" or "\\") is returned unchanged and a
    drive root keeps its separator ("E:\\"); a bare "E:" names the current
    directory on that drive, not its root.

    Args:
        path: Path to normalize
        sep: Separator to use; detected from the path when omitted

    Returns:
        Normalized path string
    """
    if sep is None:
        sep = detect_separator(path)
    if sep != "/":
        path = path.replace("/", sep)
    stripped = path.rstrip(sep)
    if not stripped:
        return sep if path else path
    if stripped != path and _BARE_DRIVE_RE.match(stripped):
        return stripped + sep
    return stripped


def path_key(path: str) -> str:
    """Case-folded comparison key with unified separators."""
    unified = path.replace("\\", "/")
    stripped = unified.rstrip("/")
    return (stripped or unified).lower()


def _prefix_of(key: str) -> str:
    return key if key.endswith("/") else key + "/"


def is_same_or_descendant(path: str, ancestor: str) -> bool:
    """True when path equals ancestor or lives below it (case-insensitive)."""
    path_k = path_key(path)
    ancestor_k = path_key(ancestor)
    return path_k == ancestor_k or path_k.startswith(_prefix_of(ancestor_k))


def join_path(base: str, *parts: str, sep: Optional[str] = None) -> str:
    """Join parts onto base using base's separator style."""
    if sep is None:
        sep = detect_separator(base)
    result = base
    for part in parts:
        part = part.replace("/", sep).replace("\\", sep).strip(sep)
        if not part:
            continue
        result = result + part if result.endswith(sep) else f"{result}{sep}{part}"
    return result


def parent_path(path: str, sep: Optional[str] = None) -> Optional[str]:
    """Return the parent of a normalized path, or None at a root."""
    if sep is None:
        sep = detect_separator(path)
    path = normalize_path(path, sep)
    if _BARE_DRIVE_RE.match(path.rstrip(sep)):
        return None
    idx = path.rfind(sep)
    if idx <= 0:
        return sep if idx == 0 and path != sep else None
    if is_unc_path(path) and path[:idx].count(sep) < 3:
        # \\server\share has no parent we can copy from
        return None
    if _BARE_DRIVE_RE.match(path[:idx]):
        return path[:idx + 1]
    return path[:idx]


def relative_path(path: str, root: str) -> str:
    """Return path relative to root, stripping root case-insensitively."""
    if not is_same_or_descendant(path, root):
        raise ValueError(f"{path} is not under {root}")
    norm_path = normalize_path(path)
    norm_root = normalize_path(root)
    if path_key(norm_path) == path_key(norm_root):
        return ""
    if norm_root in ("/", "\\"):
        return norm_path.lstrip("/\\")
    return norm_path[len(norm_root):].lstrip("/\\")


def map_destination(source_path: str, source_root: str, dest_root: str) -> str:
    """
    Map a source path to its counterpart under the destination root.

    Args:
        source_path: Path below (or equal to) source_root
        source_root: Root of the source tree
        dest_root: Root of the destination tree

    Returns:
        dest_root joined with source_path's path relative to source_root
    """
    dest = normalize_path(dest_root)
    remainder = relative_path(source_path, source_root)
    if not remainder:
        return dest
    return join_path(dest, remainder)
