"""Browser-to-RTMP live stream orchestrator."""

__version__ = "0.1.0"
