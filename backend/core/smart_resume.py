"""
Smart Resume - rewind policy applied when playback resumes after a pause

The longer the listener was away, the further back narration restarts:

    elapsed < short threshold (5 min)      -> no rewind
    short <= elapsed < long (24 h)         -> short rewind
    long  <= elapsed < reset (48 h)        -> long rewind
    elapsed >= reset threshold             -> back to section start

Providers that cannot seek within an utterance rewind by whole items;
time-addressable providers rewind by seconds on the virtual timeline.
The result is always clamped to the start of the section.

All functions here are pure; the orchestrator applies the result.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from config import (
    SMART_RESUME_SHORT_PAUSE_SECONDS,
    SMART_RESUME_LONG_PAUSE_SECONDS,
    SMART_RESUME_RESET_PAUSE_SECONDS,
    SMART_RESUME_LOCAL_SHORT_ITEMS,
    SMART_RESUME_LOCAL_LONG_ITEMS,
    SMART_RESUME_CLOUD_SHORT_SECONDS,
    SMART_RESUME_CLOUD_LONG_SECONDS,
)


@dataclass(frozen=True)
class SmartResumePolicy:
    """Thresholds (seconds) and rewind amounts."""
    short_pause: float = SMART_RESUME_SHORT_PAUSE_SECONDS
    long_pause: float = SMART_RESUME_LONG_PAUSE_SECONDS
    reset_pause: float = SMART_RESUME_RESET_PAUSE_SECONDS
    short_items: int = SMART_RESUME_LOCAL_SHORT_ITEMS
    long_items: int = SMART_RESUME_LOCAL_LONG_ITEMS
    short_seconds: float = SMART_RESUME_CLOUD_SHORT_SECONDS
    long_seconds: float = SMART_RESUME_CLOUD_LONG_SECONDS


DEFAULT_POLICY = SmartResumePolicy()


@dataclass(frozen=True)
class ResumeTarget:
    """
    Where to resume. `rewound` is False when the index is unchanged.

    `seconds` is the time rewind requested for time-addressable providers;
    when the target stays inside the paused item the provider seeks within it.
    """
    index: int
    rewound: bool
    reset_to_start: bool = False
    seconds: float = 0.0


def compute_item_rewind(elapsed: float, policy: SmartResumePolicy = DEFAULT_POLICY) -> Optional[int]:
    """
    Items to step back for a provider without time addressing.

    Returns:
        Number of items, or None meaning "restart the section"
    """
    if elapsed < policy.short_pause:
        return 0
    if elapsed >= policy.reset_pause:
        return None
    if elapsed >= policy.long_pause:
        return policy.long_items
    return policy.short_items


def compute_time_rewind(elapsed: float, policy: SmartResumePolicy = DEFAULT_POLICY) -> Optional[float]:
    """
    Seconds to step back for a time-addressable provider.

    Returns:
        Seconds, or None meaning "restart the section"
    """
    if elapsed < policy.short_pause:
        return 0.0
    if elapsed >= policy.reset_pause:
        return None
    if elapsed >= policy.long_pause:
        return policy.long_seconds
    return policy.short_seconds


def apply_smart_resume(
    current_index: int,
    elapsed: Optional[float],
    time_addressable: bool,
    position_seconds: float = 0.0,
    index_at_time: Optional[Callable[[float], Optional[int]]] = None,
    enabled: bool = True,
    policy: SmartResumePolicy = DEFAULT_POLICY
) -> ResumeTarget:
    """
    Compute the resume index.

    Args:
        current_index: Index playback was paused at
        elapsed: Seconds since the pause (None = no pause recorded)
        time_addressable: Provider reports continuous time
        position_seconds: Virtual-timeline position at the pause
        index_at_time: Timeline lookup (seconds -> index), required when
                       time_addressable is True
        enabled: User preference; disabled means no rewind
        policy: Thresholds and amounts

    Returns:
        ResumeTarget with an index clamped to >= 0
    """
    if not enabled or elapsed is None or elapsed < 0:
        return ResumeTarget(index=current_index, rewound=False)

    if time_addressable:
        seconds = compute_time_rewind(elapsed, policy)
        if seconds is None:
            return ResumeTarget(index=0, rewound=current_index != 0, reset_to_start=True)
        if seconds <= 0 or index_at_time is None:
            return ResumeTarget(index=current_index, rewound=False)

        target_index = index_at_time(max(0.0, position_seconds - seconds))
        if target_index is None:
            return ResumeTarget(index=current_index, rewound=False, seconds=seconds)
        target_index = max(0, min(target_index, current_index))
        return ResumeTarget(index=target_index, rewound=target_index != current_index, seconds=seconds)

    items = compute_item_rewind(elapsed, policy)
    if items is None:
        return ResumeTarget(index=0, rewound=current_index != 0, reset_to_start=True)
    target_index = max(0, current_index - items)
    return ResumeTarget(index=target_index, rewound=target_index != current_index)
