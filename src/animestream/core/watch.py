"""Watch page logic: turn an episode id into inputs for the playback engine."""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .engine import PlaybackEngine
from .errors import SourceResolutionError
from .models import (
    AnimeInfo,
    EpisodePage,
    VideoSource,
    find_episode,
    paginate_episodes,
    rank_sources,
    select_subtitle,
)
from .proxy import ProxyRewriter
from .resolver import ConsumetClient

logger = logging.getLogger(__name__)


@dataclass
class WatchContext:
    """Everything the player needs for one episode."""
    anime_id: str
    episode_id: str
    title: str
    stream_url: str
    fallback_url: str
    subtitle_url: Optional[str] = None
    sources: List[VideoSource] = field(default_factory=list)
    anime: Optional[AnimeInfo] = None
    episode_number: Optional[int] = None
    using_fallback: bool = False


class WatchController:
    """Resolves episodes and hands the result to a PlaybackEngine."""

    def __init__(self, resolver: ConsumetClient, rewriter: ProxyRewriter,
                 fallback_stream_url: str, episodes_per_page: int = 100):
        self.resolver = resolver
        self.rewriter = rewriter
        self.fallback_stream_url = fallback_stream_url
        self.episodes_per_page = episodes_per_page
        self._request_ids = itertools.count(1)
        self._latest_request = 0
        self._lock = threading.Lock()

    def begin_request(self) -> int:
        """Token for a new prepare(); only the most recent token is current."""
        with self._lock:
            self._latest_request = next(self._request_ids)
            return self._latest_request

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._latest_request

    def prepare(self, anime_id: str, episode_id: str) -> WatchContext:
        """Resolve everything for an episode. Blocking; run off the UI thread."""
        fallback = self.rewriter.rewrite(self.fallback_stream_url)

        anime = None
        episode_number = None
        try:
            anime = self.resolver.get_anime_info(anime_id)
            episode = find_episode(anime.episodes, episode_id)
            if episode:
                episode_number = episode.number
        except SourceResolutionError as e:
            logger.warning(f"Error loading episode info: {e}")

        anime_title = anime.title if anime and anime.title else "Anime"
        title = f"{anime_title} - Episode {episode_number if episode_number is not None else ''}".rstrip()

        context = WatchContext(
            anime_id=anime_id,
            episode_id=episode_id,
            title=title,
            stream_url=fallback,
            fallback_url=fallback,
            anime=anime,
            episode_number=episode_number,
            using_fallback=True,
        )

        try:
            resolved = self.resolver.resolve_sources(episode_id)
        except SourceResolutionError as e:
            logger.error(f"Error fetching episode sources: {e}")
            logger.info("Continuing with fallback stream")
            return context

        if resolved.sources:
            proxied = [
                VideoSource(url=self.rewriter.rewrite(s.url), quality=s.quality, is_segmented=s.is_segmented)
                for s in resolved.sources
            ]
            context.sources = rank_sources(proxied)
            context.stream_url = context.sources[0].url
            context.using_fallback = False
            logger.info(f"Available sources: {[s.quality for s in context.sources]}")
        else:
            logger.info("No sources found in API response, using fallback")

        subtitle = select_subtitle(resolved.subtitles)
        if subtitle:
            logger.info(f"Using English subtitle: {subtitle.url}")
            context.subtitle_url = subtitle.url
        return context

    def start(self, engine: PlaybackEngine, context: WatchContext, autoplay: bool = True,
              on_error: Optional[Callable[[Exception], None]] = None,
              on_notice: Optional[Callable[[str, str], None]] = None) -> None:
        """Load a prepared episode into ``engine``. Call on the UI thread."""
        engine.set_sources(context.sources)
        engine.load(
            src=context.stream_url,
            fallback_url=context.fallback_url,
            subtitle_url=context.subtitle_url,
            title=context.title,
            autoplay=autoplay,
            on_error=on_error,
            on_notice=on_notice,
        )

    def page(self, context: WatchContext, page: int) -> EpisodePage:
        episodes = context.anime.episodes if context.anime else []
        return paginate_episodes(episodes, page, self.episodes_per_page)

    def page_of_current(self, context: WatchContext) -> int:
        """Index of the page holding the episode being watched."""
        episodes = context.anime.episodes if context.anime else []
        for i, ep in enumerate(episodes):
            if ep.id == context.episode_id:
                return i // self.episodes_per_page
        return 0
