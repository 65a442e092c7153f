"""Anime metadata and stream source lookup against a Consumet-style API."""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import SourceResolutionError
from .models import AnimeInfo, Episode, ResolvedSources, SubtitleTrack, VideoSource

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api-consumet-nu.vercel.app"


class ConsumetClient:
    """Handles interaction with the Consumet API to resolve episodes and sources."""

    def __init__(self, base_url: str = DEFAULT_API_BASE_URL, provider: str = "zoro",
                 session: Optional[requests.Session] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.timeout = timeout

        if session is None:
            session = requests.Session()
            retries = Retry(total=3, backoff_factor=1, status_forcelist=[500, 502, 503, 504])
            session.mount('https://', HTTPAdapter(max_retries=retries))
            session.mount('http://', HTTPAdapter(max_retries=retries))
        self.session = session

    def _get_json(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.info(f"Fetching {url}")
        try:
            response = self.session.get(url, params={"provider": self.provider}, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise SourceResolutionError(f"Request to {url} failed: {e}") from e
        except ValueError as e:
            raise SourceResolutionError(f"Invalid JSON from {url}: {e}") from e
        if not isinstance(data, dict):
            raise SourceResolutionError(f"Unexpected response from {url}")
        return data

    def get_anime_info(self, anime_id: str) -> AnimeInfo:
        """Fetch title, artwork and the episode list for an anime."""
        data = self._get_json(f"/meta/anilist/info/{quote(str(anime_id), safe='')}")

        title = data.get("title")
        if isinstance(title, dict):
            title = title.get("english") or title.get("romaji") or title.get("native")

        episodes: List[Episode] = []
        raw_episodes = data.get("episodes")
        if isinstance(raw_episodes, list):
            for e in raw_episodes:
                if not isinstance(e, dict) or e.get("id") is None:
                    continue
                try:
                    number = int(e.get("number") or 0)
                except (TypeError, ValueError):
                    number = 0
                episodes.append(Episode(id=str(e["id"]), number=number, title=e.get("title")))

        return AnimeInfo(
            id=str(data.get("id", anime_id)),
            title=title or "Anime",
            episodes=episodes,
            image=data.get("image"),
            type=data.get("type"),
            status=data.get("status"),
        )

    def resolve_sources(self, episode_id: str) -> ResolvedSources:
        """Fetch playable sources and subtitles for an episode.

        Raises:
            SourceResolutionError: The API could not be reached or answered garbage.
        """
        # Episode ids may contain slashes; keep them in the path
        data = self._get_json(f"/meta/anilist/watch/{quote(episode_id, safe='/')}")

        sources = []
        for s in data.get("sources") or []:
            if not isinstance(s, dict) or not s.get("url"):
                continue
            sources.append(VideoSource(
                url=s["url"],
                quality=str(s.get("quality") or "default"),
                is_segmented=bool(s.get("isM3U8", True)),
            ))

        subtitles = []
        for s in data.get("subtitles") or []:
            if not isinstance(s, dict) or not s.get("url"):
                continue
            subtitles.append(SubtitleTrack(url=s["url"], language=str(s.get("lang") or "")))

        logger.info(f"Resolved {len(sources)} sources and {len(subtitles)} subtitles for {episode_id}")
        return ResolvedSources(sources=sources, subtitles=subtitles)
