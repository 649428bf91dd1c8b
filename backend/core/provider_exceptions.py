"""
Speech Provider Exception Classes

Shared exception types for speech provider failures.
Used by all provider variants (local, cloud, preview) and the playback orchestrator.
"""

# Error strings reported by platform synthesizers when an utterance is cut
# short by our own stop()/restart calls.
BENIGN_ERROR_CODES = frozenset({"interrupted", "canceled", "cancelled", "aborted"})


class ProviderInterruptedError(Exception):
    """
    Utterance was cancelled by the orchestrator itself (stop, restart, voice change).

    NOT an error - swallowed silently, never reported to subscribers.
    """
    pass


class ProviderSynthesisError(Exception):
    """
    Synthesis failed (network, quota, invalid voice, engine 5xx).

    Retryable WITH fallback - swap to the local provider and retry the item.
    """
    pass


class ProviderPlaybackError(Exception):
    """
    Synthesized audio could not be decoded or played.

    Retryable WITH fallback - swap to the local provider and retry the item.
    """
    pass


class VoiceDownloadError(Exception):
    """
    Voice asset could not be fetched or installed.

    NOT retryable automatically - user must retry the download.
    """
    pass


class PlatformCapabilityError(Exception):
    """
    Platform refused a capability playback depends on (e.g. background audio).

    NOT retryable - playback halts rather than continuing in a state
    the user cannot see or control.
    """
    pass


class ContentLoadError(Exception):
    """
    A section failed to produce a narratable queue.

    Handled by substituting a synthetic announcement item.
    """
    pass


def is_benign_interruption(error: object) -> bool:
    """
    Check whether a provider error payload is a self-inflicted cancellation.

    Args:
        error: Exception instance or raw error string from a platform synthesizer

    Returns:
        True if the error should be ignored
    """
    if isinstance(error, ProviderInterruptedError):
        return True
    if isinstance(error, str):
        return error.strip().lower() in BENIGN_ERROR_CODES
    return False
