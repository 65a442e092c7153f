"""Core functionality for animestream."""

from .models import (
    VideoSource,
    SubtitleTrack,
    ResolvedSources,
    Episode,
    AnimeInfo,
    EpisodePage,
    PlaybackUIState,
    quality_rank,
    rank_sources,
    select_subtitle,
    find_episode,
    paginate_episodes,
)
from .errors import (
    PlaybackError,
    CapabilityError,
    TransientStreamError,
    NetworkFatalError,
    MediaFatalError,
    UnrecoverableFatalError,
    PlaybackFailure,
    PlaybackStartError,
    AutoplayBlockedError,
    FullscreenError,
    SourceResolutionError,
)
from .proxy import ProxyRewriter
from .media import MediaOutput, BaseMediaOutput, MediaEvent, MediaEventType
from .hls_client import HlsClient, HlsConfig, HlsEvent
from .engine import PlaybackEngine, PlaybackSession, PlaybackState
from .resolver import ConsumetClient
from .watch import WatchController, WatchContext

__all__ = [
    "VideoSource",
    "SubtitleTrack",
    "ResolvedSources",
    "Episode",
    "AnimeInfo",
    "EpisodePage",
    "PlaybackUIState",
    "quality_rank",
    "rank_sources",
    "select_subtitle",
    "find_episode",
    "paginate_episodes",
    "PlaybackError",
    "CapabilityError",
    "TransientStreamError",
    "NetworkFatalError",
    "MediaFatalError",
    "UnrecoverableFatalError",
    "PlaybackFailure",
    "PlaybackStartError",
    "AutoplayBlockedError",
    "FullscreenError",
    "SourceResolutionError",
    "ProxyRewriter",
    "MediaOutput",
    "BaseMediaOutput",
    "MediaEvent",
    "MediaEventType",
    "HlsClient",
    "HlsConfig",
    "HlsEvent",
    "PlaybackEngine",
    "PlaybackSession",
    "PlaybackState",
    "ConsumetClient",
    "WatchController",
    "WatchContext",
]
