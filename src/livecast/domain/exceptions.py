"""Stream service exceptions.

The orchestrator decides the recovery tier from which of these it sees and
where it came from; components only raise or report them.
"""

TRANSIENT_PAGE_ERROR_SIGNATURES = (
    "Execution context was destroyed",
    "Navigating frame was detached",
    "Target closed",
    "Session closed",
    "has been closed",
)


class LivecastError(Exception):
    """Base exception for the stream service."""

    pass


class ConfigurationError(LivecastError):
    """Configuration is unusable; never retried automatically."""

    pass


class StreamerStateError(LivecastError):
    """Operation is not valid in the orchestrator's current state."""

    pass


class CaptureError(LivecastError):
    """Browser launch, navigation or page health failure."""

    pass


class PipelineError(LivecastError):
    """Encoder spawn or I/O failure."""

    pass


class HealthCheckError(LivecastError):
    """Deep health check or watchdog found the stream stalled."""

    pass


class SceneError(LivecastError):
    """Scene name is unknown or a scene switch did not happen."""

    pass


class AudioSourceError(LivecastError):
    """Remote audio URL could not be resolved."""

    pass


def is_transient_page_error(error: BaseException) -> bool:
    """Check if an error only means a navigation interrupted the call."""
    message = str(error)
    return any(signature in message for signature in TRANSIENT_PAGE_ERROR_SIGNATURES)
