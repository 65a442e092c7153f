"""Shared pytest fixtures for animestream tests."""

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple
from unittest.mock import Mock

import pytest
import requests

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from animestream.core import BaseMediaOutput, HlsEvent, MediaEventType, ProxyRewriter  # noqa: E402
from animestream.core.errors import AutoplayBlockedError, FullscreenError  # noqa: E402

PROXY_BASE = "https://proxy.test/proxy?url="


class FakeMediaOutput(BaseMediaOutput):
    """In-memory media output that records every call made on it."""

    def __init__(self, buffered: bool = True, native: bool = False):
        super().__init__()
        self.buffered = buffered
        self.native = native
        self._time = 0.0
        self._duration = 0.0
        self._volume = 1.0
        self._muted = False
        self._paused = True
        self._fullscreen = False
        self._buffered_end = 0.0

        self.play_error = None
        self.fullscreen_error = None
        self.open_error = None
        self.append_error = None
        self.play_calls = 0
        self.seeks: List[float] = []
        self.sources: List[str] = []
        self.subtitles: List[Tuple[str, str, str]] = []
        self.subtitle_clears = 0
        self.appended: List[Tuple[bytes, float]] = []
        self.buffer_opens = 0
        self.buffer_closes = 0
        self.eos = False

    def emit(self, event_type: MediaEventType, message: str = "") -> None:
        self._fire(event_type, message)

    @property
    def current_time(self):
        return self._time

    @property
    def duration(self):
        return self._duration

    @property
    def volume(self):
        return self._volume

    @property
    def muted(self):
        return self._muted

    @property
    def paused(self):
        return self._paused

    @property
    def is_fullscreen(self):
        return self._fullscreen

    def play(self):
        self.play_calls += 1
        if self.play_error is not None:
            raise self.play_error
        self._paused = False
        self._fire(MediaEventType.PLAY)

    def pause(self):
        self._paused = True
        self._fire(MediaEventType.PAUSE)

    def seek(self, seconds):
        self.seeks.append(seconds)
        self._time = seconds

    def set_volume(self, volume):
        self._volume = volume
        self._fire(MediaEventType.VOLUME_CHANGE)

    def set_muted(self, muted):
        self._muted = muted
        self._fire(MediaEventType.VOLUME_CHANGE)

    def request_fullscreen(self):
        if self.fullscreen_error is not None:
            raise self.fullscreen_error
        self._fullscreen = True
        self._fire(MediaEventType.FULLSCREEN_CHANGE)

    def exit_fullscreen(self):
        self._fullscreen = False
        self._fire(MediaEventType.FULLSCREEN_CHANGE)

    def can_play_type(self, mime_type):
        return self.native

    def set_source(self, url):
        self.sources.append(url)

    def supports_buffered_playback(self):
        return self.buffered

    def open_buffer(self):
        self.buffer_opens += 1
        if self.open_error is not None:
            raise self.open_error
        self._buffered_end = 0.0
        self.eos = False

    def append_buffer(self, data, duration):
        if self.append_error is not None:
            raise self.append_error
        self.appended.append((data, duration))
        self._buffered_end += duration

    @property
    def buffered_end(self):
        return self._buffered_end

    def end_of_stream(self):
        self.eos = True

    def close_buffer(self):
        self.buffer_closes += 1

    def add_subtitle(self, url, label, language):
        self.subtitles.append((url, label, language))

    def clear_subtitles(self):
        self.subtitles.clear()
        self.subtitle_clears += 1


class FakeHlsClient:
    """Stand-in for HlsClient driven by the test.

    ``emit`` calls handlers even after destroy() so tests can simulate
    callbacks that arrive late.
    """

    instances: List["FakeHlsClient"] = []

    def __init__(self, config=None, dispatcher=None):
        self.config = config
        self.dispatcher = dispatcher
        self.handlers: Dict[HlsEvent, List[Callable]] = {}
        self.media = None
        self.loaded: List[str] = []
        self.start_loads = 0
        self.stop_loads = 0
        self.recovers = 0
        self.seeks: List[float] = []
        self.destroyed = False
        type(self).instances.append(self)

    @staticmethod
    def is_supported(media):
        return media.supports_buffered_playback()

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def emit(self, event: HlsEvent, data: Any = None) -> None:
        for handler in list(self.handlers.get(event, [])):
            handler(event, data)

    def attach_media(self, media):
        self.media = media
        self.emit(HlsEvent.MEDIA_ATTACHED, {"media": media})

    def load_source(self, url):
        self.loaded.append(url)

    def start_load(self):
        self.start_loads += 1

    def stop_load(self):
        self.stop_loads += 1

    def recover_media_error(self):
        self.recovers += 1

    def seek_to(self, position):
        self.seeks.append(position)

    def destroy(self):
        self.destroyed = True


@pytest.fixture
def media() -> FakeMediaOutput:
    """Media output with buffered playback support."""
    return FakeMediaOutput()


@pytest.fixture
def client_factory():
    """A FakeHlsClient subclass with its own instance list."""
    class Factory(FakeHlsClient):
        instances = []
    return Factory


@pytest.fixture
def rewriter() -> ProxyRewriter:
    return ProxyRewriter(PROXY_BASE)


@pytest.fixture
def make_session():
    """Build a mock requests.Session answering from a url -> body map.

    Values may be str, bytes, an exception instance, or a callable
    returning one of those.
    """
    def factory(routes: Dict[str, Any]) -> Mock:
        session = Mock()

        def get(url, timeout=None, **kwargs):
            body = routes.get(url)
            if callable(body):
                body = body()
            if body is None:
                raise requests.ConnectionError(f"no route for {url}")
            if isinstance(body, Exception):
                raise body
            content = body.encode("utf-8") if isinstance(body, str) else body
            response = Mock()
            response.content = content
            response.text = content.decode("latin-1")
            response.raise_for_status = Mock()
            return response

        session.get.side_effect = get
        return session

    return factory


@pytest.fixture
def autoplay_blocked() -> AutoplayBlockedError:
    return AutoplayBlockedError("play() needs a user gesture")


@pytest.fixture
def fullscreen_refused() -> FullscreenError:
    return FullscreenError("No window to take fullscreen")


@pytest.fixture
def make_media():
    """Factory for media outputs with chosen capabilities."""
    return FakeMediaOutput
