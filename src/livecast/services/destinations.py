"""Outbound ingest targets read from the environment."""

import logging

from ..config import Settings
from ..domain.models import Destination, DestinationSet

logger = logging.getLogger(__name__)

# (display name, settings prefix) in publish order
DESTINATION_FIELDS = (
    ("Kick", "rtmp_kick"),
    ("YouTube", "rtmp_youtube"),
    ("Twitter", "rtmp_twitter"),
    ("PumpFun", "rtmp_pumpfun"),
)


def load_destinations(settings: Settings) -> DestinationSet:
    """Build the destination set from settings.

    A destination is enabled only when both its ingest URL and its stream key
    are configured. An empty set is returned as-is; refusing to stream without
    destinations is the orchestrator's decision.

    Args:
        settings: Application settings

    Returns:
        Ordered destinations
    """
    destinations = []
    for name, prefix in DESTINATION_FIELDS:
        url = getattr(settings, f"{prefix}_url", "").strip()
        key = getattr(settings, f"{prefix}_key", "").strip()
        if url and key:
            destinations.append(Destination(name=name, url=url, key=key))
        elif url or key:
            logger.warning(f"Destination {name} is missing its URL or key, skipping")

    if destinations:
        logger.info(f"Loaded destinations: {', '.join(d.name for d in destinations)}")
    else:
        logger.warning("No destinations configured")

    return DestinationSet(destinations=tuple(destinations))


def redact(text: str, destinations: DestinationSet) -> str:
    """Replace every stream key in text with a placeholder."""
    for destination in destinations.destinations:
        if destination.key:
            text = text.replace(destination.key, "***")
    return text
