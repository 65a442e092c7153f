"""Capability interface for the native media output the engine drives."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List

logger = logging.getLogger(__name__)

HLS_MIME_TYPE = "application/vnd.apple.mpegurl"


class MediaEventType(str, Enum):
    TIME_UPDATE = "timeupdate"
    DURATION_CHANGE = "durationchange"
    PLAY = "play"
    PAUSE = "pause"
    VOLUME_CHANGE = "volumechange"
    FULLSCREEN_CHANGE = "fullscreenchange"
    LOADED_METADATA = "loadedmetadata"
    ERROR = "error"


@dataclass(frozen=True)
class MediaEvent:
    type: MediaEventType
    message: str = ""


MediaListener = Callable[[MediaEvent], None]


class MediaOutput(ABC):
    """A video surface with native playback state and controls.

    State is read from properties; changes are announced as MediaEvents
    to subscribed listeners. Implementations must deliver events on the
    thread that owns the player.
    """

    # --- native state ---

    @property
    @abstractmethod
    def current_time(self) -> float:
        """Playback position in seconds."""

    @property
    @abstractmethod
    def duration(self) -> float:
        """Media duration in seconds (0 when unknown)."""

    @property
    @abstractmethod
    def volume(self) -> float:
        """Volume in [0, 1]."""

    @property
    @abstractmethod
    def muted(self) -> bool:
        """Mute flag."""

    @property
    @abstractmethod
    def paused(self) -> bool:
        """True unless playing."""

    @property
    @abstractmethod
    def is_fullscreen(self) -> bool:
        """True while presented fullscreen."""

    # --- controls ---

    @abstractmethod
    def play(self) -> None:
        """Start playback.

        Raises:
            AutoplayBlockedError: Playback needs a user gesture first.
            PlaybackStartError: Playback could not start for another reason.
        """

    @abstractmethod
    def pause(self) -> None:
        """Pause playback."""

    @abstractmethod
    def seek(self, seconds: float) -> None:
        """Jump to ``seconds``."""

    @abstractmethod
    def set_volume(self, volume: float) -> None:
        """Set volume in [0, 1]."""

    @abstractmethod
    def set_muted(self, muted: bool) -> None:
        """Set the mute flag."""

    @abstractmethod
    def request_fullscreen(self) -> None:
        """Enter fullscreen. Raises FullscreenError when refused."""

    @abstractmethod
    def exit_fullscreen(self) -> None:
        """Leave fullscreen."""

    # --- native streaming ---

    @abstractmethod
    def can_play_type(self, mime_type: str) -> bool:
        """True if the output can play ``mime_type`` from a URL by itself."""

    @abstractmethod
    def set_source(self, url: str) -> None:
        """Hand a URL to the native pipeline."""

    # --- buffered streaming ---

    def supports_buffered_playback(self) -> bool:
        """True if segments can be pushed in with append_buffer()."""
        return False

    def open_buffer(self) -> None:
        raise NotImplementedError("Buffered playback not supported")

    def append_buffer(self, data: bytes, duration: float) -> None:
        raise NotImplementedError("Buffered playback not supported")

    @property
    def buffered_end(self) -> float:
        """End of buffered media, in seconds."""
        return 0.0

    def end_of_stream(self) -> None:
        raise NotImplementedError("Buffered playback not supported")

    def close_buffer(self) -> None:
        """Release the buffer. Safe to call when none is open."""

    # --- subtitles ---

    @abstractmethod
    def add_subtitle(self, url: str, label: str, language: str) -> None:
        """Attach a subtitle track and make it the default."""

    @abstractmethod
    def clear_subtitles(self) -> None:
        """Remove all attached subtitle tracks."""

    # --- events ---

    @abstractmethod
    def subscribe(self, listener: MediaListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""


class BaseMediaOutput(MediaOutput):
    """Listener bookkeeping shared by concrete outputs."""

    def __init__(self):
        self._listeners: List[MediaListener] = []

    def subscribe(self, listener: MediaListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _fire(self, event_type: MediaEventType, message: str = "") -> None:
        event = MediaEvent(event_type, message)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Media listener failed on %s", event_type.value)
