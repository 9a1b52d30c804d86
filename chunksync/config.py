"""
Configuration settings for the chunked replication service.
Holds run defaults and loads profile definitions from JSON run files.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

# Base directories
BASE_DIR = Path.home() / ".chunksync"
DATA_DIR = BASE_DIR / "data"
LOG_DIR = BASE_DIR / "logs"

# Default files
LOG_FILE = LOG_DIR / "chunksync.log"
DEFAULT_CHECKPOINT = DATA_DIR / "checkpoint.json"
COPY_LOG_DIR = LOG_DIR / "jobs"

# Chunking thresholds
GB = 1024 ** 3
MB = 1024 ** 2
DEFAULT_MAX_CHUNK_SIZE = 10 * GB
DEFAULT_MAX_CHUNK_FILES = 50000
DEFAULT_MAX_DEPTH = -1  # -1 = unlimited
DEFAULT_MIN_CHUNK_SIZE = 100 * MB

# Copy tool directives
COPY_TOOL_EXECUTABLE = "robocopy"
RECURSIVE_ARGS = ["/E"]
FILES_ONLY_ARGS = ["/LEV:1"]

# Orchestration settings
MAX_CONCURRENT_JOBS = 4
MAX_RETRIES = 3
RETRY_BACKOFF_FACTOR = 2  # For exponential backoff
TICK_INTERVAL = 0.5  # Seconds between scheduler ticks
BANDWIDTH_LIMIT_MBPS = 0  # 0 = unlimited
MISMATCH_SEVERITY = "warning"

# Per-file retry policy handed to the copy tool (/R and /W)
COPY_TOOL_FILE_RETRIES = 2
COPY_TOOL_RETRY_WAIT = 5

# Bandwidth pacing
PACKET_SIZE_BYTES = 512000
MIN_THROTTLE_MS = 1
MAX_THROTTLE_MS = 10000

# ETA cap (30 days)
MAX_ETA_SECONDS = 30 * 24 * 60 * 60

VALID_MODES = ("smart", "flat")
VALID_MISMATCH_SEVERITIES = ("success", "warning", "error")


@dataclass
class ProfileConfig:
    """One configured source -> destination replication task."""
    name: str
    source: str
    destination: str
    mode: str = "smart"
    max_size_bytes: int = DEFAULT_MAX_CHUNK_SIZE
    max_files: int = DEFAULT_MAX_CHUNK_FILES
    max_depth: int = DEFAULT_MAX_DEPTH
    min_size_bytes: int = DEFAULT_MIN_CHUNK_SIZE
    use_snapshot: bool = False
    enabled: bool = True


@dataclass
class RunConfig:
    """Run-wide settings plus the ordered list of profiles."""
    profiles: List[ProfileConfig] = field(default_factory=list)
    max_concurrent_jobs: int = MAX_CONCURRENT_JOBS
    max_retries: int = MAX_RETRIES
    bandwidth_limit_mbps: float = BANDWIDTH_LIMIT_MBPS
    mismatch_severity: str = MISMATCH_SEVERITY
    file_retries: int = COPY_TOOL_FILE_RETRIES
    retry_wait: int = COPY_TOOL_RETRY_WAIT
    tick_interval: float = TICK_INTERVAL
    checkpoint_path: Optional[Path] = None

    @property
    def enabled_profiles(self) -> List[ProfileConfig]:
        return [p for p in self.profiles if p.enabled]


def _profile_from_dict(raw: Dict[str, Any], index: int) -> ProfileConfig:
    """
    Build a ProfileConfig from one JSON object.

    Args:
        raw: Parsed JSON object for the profile
        index: Position in the profile list, used for default names and errors

    Returns:
        Validated ProfileConfig
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Profile #{index + 1} must be an object")

    for key in ("source", "destination"):
        if not raw.get(key):
            raise ValueError(f"Profile #{index + 1} is missing '{key}'")

    profile = ProfileConfig(
        name=raw.get("name") or f"profile-{index + 1}",
        source=raw["source"],
        destination=raw["destination"],
        mode=str(raw.get("mode", "smart")).lower(),
        max_size_bytes=int(raw.get("max_size_bytes", DEFAULT_MAX_CHUNK_SIZE)),
        max_files=int(raw.get("max_files", DEFAULT_MAX_CHUNK_FILES)),
        max_depth=int(raw.get("max_depth", DEFAULT_MAX_DEPTH)),
        min_size_bytes=int(raw.get("min_size_bytes", DEFAULT_MIN_CHUNK_SIZE)),
        use_snapshot=bool(raw.get("use_snapshot", False)),
        enabled=bool(raw.get("enabled", True)),
    )

    if profile.mode not in VALID_MODES:
        raise ValueError(f"Profile '{profile.name}': unknown mode '{profile.mode}'")

    return profile


def load_run_config(path: Path) -> RunConfig:
    """
    Load a run file describing profiles and run-wide settings.

    Args:
        path: Path to the JSON run file

    Returns:
        Parsed RunConfig
    """
    if not path.exists():
        raise FileNotFoundError(f"Run configuration not found: {path}")

    with open(path, "r") as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Run configuration {path} must be a JSON object")

    profiles = [_profile_from_dict(p, i) for i, p in enumerate(raw.get("profiles", []))]
    if not profiles:
        raise ValueError(f"Run configuration {path} defines no profiles")

    settings = raw.get("settings", {})
    run_config = RunConfig(
        profiles=profiles,
        max_concurrent_jobs=int(settings.get("max_concurrent_jobs", MAX_CONCURRENT_JOBS)),
        max_retries=int(settings.get("max_retries", MAX_RETRIES)),
        bandwidth_limit_mbps=float(settings.get("bandwidth_limit_mbps", BANDWIDTH_LIMIT_MBPS)),
        mismatch_severity=str(settings.get("mismatch_severity", MISMATCH_SEVERITY)).lower(),
        file_retries=int(settings.get("file_retries", COPY_TOOL_FILE_RETRIES)),
        retry_wait=int(settings.get("retry_wait", COPY_TOOL_RETRY_WAIT)),
        tick_interval=float(settings.get("tick_interval", TICK_INTERVAL)),
    )
    if settings.get("checkpoint_path"):
        run_config.checkpoint_path = Path(settings["checkpoint_path"])

    validate_run_config(run_config)
    logger.debug(f"Loaded {len(profiles)} profile(s) from {path}")
    return run_config


def validate_run_config(run_config: RunConfig) -> None:
    """Raise ValueError when run-wide settings are out of range."""
    if run_config.max_concurrent_jobs < 1:
        raise ValueError("max_concurrent_jobs must be at least 1")
    if run_config.max_retries < 0:
        raise ValueError("max_retries cannot be negative")
    if run_config.mismatch_severity not in VALID_MISMATCH_SEVERITIES:
        raise ValueError(f"Unknown mismatch_severity '{run_config.mismatch_severity}'")
    if run_config.tick_interval <= 0:
        raise ValueError("tick_interval must be positive")
