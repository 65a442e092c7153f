"""Data models for episodes, stream sources and playback state."""

import math
import re
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class VideoSource:
    """One playable rendition of an episode."""
    url: str
    quality: str     # e.g., "1080p", "default", "backup"
    is_segmented: bool = True


@dataclass(frozen=True)
class SubtitleTrack:
    """A subtitle file offered for an episode."""
    url: str
    language: str    # free-form, e.g., "English (US)"


@dataclass
class ResolvedSources:
    """Candidate sources and subtitles for a single episode."""
    sources: List[VideoSource] = field(default_factory=list)
    subtitles: List[SubtitleTrack] = field(default_factory=list)


@dataclass(frozen=True)
class Episode:
    """A single entry in an anime's episode list."""
    id: str
    number: int
    title: Optional[str] = None


@dataclass
class AnimeInfo:
    """Metadata for an anime and its episodes."""
    id: str
    title: str
    episodes: List[Episode] = field(default_factory=list)
    image: Optional[str] = None
    type: Optional[str] = None
    status: Optional[str] = None


@dataclass
class EpisodePage:
    """One page of an episode list."""
    page: int
    total_pages: int
    episodes: List[Episode]
    first_position: int   # 1-based, 0 when empty
    last_position: int
    total: int

    @property
    def has_previous(self) -> bool:
        return self.page > 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages - 1


@dataclass(frozen=True)
class PlaybackUIState:
    """Read-only mirror of the media output, rebuilt from its events."""
    current_time: float = 0.0
    duration: float = 0.0
    is_playing: bool = False
    volume: float = 1.0
    is_muted: bool = False
    is_fullscreen: bool = False
    error_message: Optional[str] = None


_QUALITY_RE = re.compile(r"^\s*(\d+)")


def quality_rank(label: str) -> int:
    """Numeric rank of a quality label like "720p"; 0 if it has no leading number."""
    if not label:
        return 0
    match = _QUALITY_RE.match(label.strip().removesuffix("p"))
    return int(match.group(1)) if match else 0


def rank_sources(sources: List[VideoSource]) -> List[VideoSource]:
    """Sort sources best quality first. Equal ranks keep their input order."""
    return sorted(sources, key=lambda s: quality_rank(s.quality), reverse=True)


def select_subtitle(tracks: List[SubtitleTrack]) -> Optional[SubtitleTrack]:
    """Pick the first English track, if any."""
    for track in tracks:
        if "english" in (track.language or "").lower():
            return track
    return None


_TRAILING_NUMBER_RE = re.compile(r"(\d+)(?!.*\d)")


def find_episode(episodes: List[Episode], episode_id: str) -> Optional[Episode]:
    """Find an episode by id, falling back to the last number in the id."""
    for ep in episodes:
        if ep.id == episode_id:
            return ep
    if not episode_id:
        return None
    match = _TRAILING_NUMBER_RE.search(episode_id)
    if not match:
        return None
    number = int(match.group(1))
    for ep in episodes:
        if ep.number == number:
            return ep
    return None


def paginate_episodes(episodes: List[Episode], page: int, per_page: int = 100) -> EpisodePage:
    """Slice an episode list into a page; out-of-range pages are clamped."""
    if per_page <= 0:
        raise ValueError("per_page must be positive")
    total = len(episodes)
    total_pages = max(1, math.ceil(total / per_page))
    page = min(max(page, 0), total_pages - 1)
    start = page * per_page
    chunk = episodes[start:start + per_page]
    return EpisodePage(
        page=page,
        total_pages=total_pages,
        episodes=chunk,
        first_position=start + 1 if chunk else 0,
        last_position=start + len(chunk),
        total=total,
    )
