"""
Bandwidth throttle calculation.
Splits a global bandwidth limit across concurrent copy jobs as an
inter-packet gap in milliseconds.
"""
import math

from .config import MAX_THROTTLE_MS, MIN_THROTTLE_MS, PACKET_SIZE_BYTES


def compute_throttle(limit_mbps: float, active_jobs: int, pending_start: bool = False) -> int:
    """
    Compute the per-job pacing value for a bandwidth limit.

    Args:
        limit_mbps: Global limit in megabits per second; <= 0 disables throttling
        active_jobs: Number of jobs currently running
        pending_start: True when the value is for a job about to be started

    Returns:
        Inter-packet gap in milliseconds, 0 for no throttling
    """
    if limit_mbps <= 0:
        return 0

    effective_jobs = max(1, active_jobs + (1 if pending_start else 0))
    per_job_bytes_per_sec = (limit_mbps * 1_000_000 / 8) / effective_jobs
    value = math.ceil(PACKET_SIZE_BYTES / per_job_bytes_per_sec * 1000)
    return max(MIN_THROTTLE_MS, min(MAX_THROTTLE_MS, value))
