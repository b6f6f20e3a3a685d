"""Audio stream gateway: cache coordination and the fetch/transcode pipeline."""

from .coordinator import CacheCoordinator, ClaimOutcome, JobRegistry
from .fork import StreamBroadcast, Subscriber, fork
from .origin import OriginFetch, OriginFetcher
from .transcoder import EncodeSession, Transcoder

__version__ = "1.0.0"

__all__ = [
    "CacheCoordinator",
    "ClaimOutcome",
    "JobRegistry",
    "StreamBroadcast",
    "Subscriber",
    "fork",
    "OriginFetch",
    "OriginFetcher",
    "EncodeSession",
    "Transcoder",
]
