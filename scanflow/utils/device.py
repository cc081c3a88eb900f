"""
Device capability heuristics.

Hardware is probed once by ``detect_device_profile``; everything that tunes
itself to the device takes a ``DeviceProfile`` so it can be tested with a
fabricated one.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

MIN_WORKERS = 2
MAX_WORKERS = 4
LOW_RESOURCE_CORES = 4
LOW_RESOURCE_MEMORY_GB = 4.0


@dataclass(frozen=True)
class DeviceProfile:
    """CPU and memory signals for the current machine."""
    cpu_cores: int
    memory_gb: float


@dataclass(frozen=True)
class TuningParameters:
    """Parameters derived from a device profile."""
    worker_count: int
    low_resource: bool


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def detect_device_profile() -> DeviceProfile:
    """Probe CPU core count and total memory."""
    cores = psutil.cpu_count(logical=True) or 2
    memory_gb = psutil.virtual_memory().total / (1024 ** 3)
    profile = DeviceProfile(cpu_cores=cores, memory_gb=round(memory_gb, 2))
    logger.debug(f"Detected device profile: {profile}")
    return profile


def memory_tier_baseline(memory_gb: float) -> int:
    if memory_gb <= 2:
        return 2
    if memory_gb <= 4:
        return 3
    return 4


def tuning_for(profile: DeviceProfile) -> TuningParameters:
    """
    Map a device profile to pool size and enhancement path.

    Args:
        profile: CPU/memory signals

    Returns:
        TuningParameters with worker_count in [2, 4] and the low-resource flag
    """
    baseline = memory_tier_baseline(profile.memory_gb)
    worker_count = int(clamp(min(profile.cpu_cores, baseline), MIN_WORKERS, MAX_WORKERS))
    low_resource = (
        profile.cpu_cores <= LOW_RESOURCE_CORES
        or profile.memory_gb <= LOW_RESOURCE_MEMORY_GB
    )
    return TuningParameters(worker_count=worker_count, low_resource=low_resource)


def resolve_tuning(profile: Optional[DeviceProfile] = None) -> TuningParameters:
    return tuning_for(profile if profile is not None else detect_device_profile())
