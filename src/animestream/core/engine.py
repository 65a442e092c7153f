"""Playback engine: owns the streaming session bound to one media output.

The engine loads a stream through the CORS proxy, recovers from client
errors (retry, in-place media recovery, one switch to a fallback URL),
mirrors native media events into a PlaybackUIState and exposes the
imperative player controls.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional

from .dispatch import Dispatcher, ImmediateDispatcher
from .errors import (
    AutoplayBlockedError,
    CapabilityError,
    ErrorData,
    FullscreenError,
    MediaFatalError,
    NetworkFatalError,
    PlaybackError,
    PlaybackFailure,
    PlaybackStartError,
    TransientStreamError,
    UnrecoverableFatalError,
    classify_error,
)
from .hls_client import HlsClient, HlsConfig, HlsEvent
from .media import HLS_MIME_TYPE, MediaEvent, MediaEventType, MediaOutput
from .models import PlaybackUIState, VideoSource
from .proxy import ProxyRewriter

logger = logging.getLogger(__name__)

NO_SOURCE_MESSAGE = "No video source provided."
UNSUPPORTED_MESSAGE = "This player does not support HLS playback."
FAILED_MESSAGE = "Failed to load video. Please try again later."


class PlaybackState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    PLAYING = "playing"
    PAUSED = "paused"
    FAILED = "failed"


class SessionEvent(str, Enum):
    LOAD = "load"
    READY = "ready"
    PLAY = "play"
    PAUSE = "pause"
    FAIL = "fail"
    DESTROY = "destroy"


def transition(state: PlaybackState, event: SessionEvent) -> PlaybackState:
    """Next session state. FAILED is absorbing."""
    if state is PlaybackState.FAILED:
        return state
    if event is SessionEvent.FAIL:
        return PlaybackState.FAILED
    if event is SessionEvent.DESTROY:
        return PlaybackState.IDLE
    if event is SessionEvent.LOAD:
        return PlaybackState.LOADING
    if state is PlaybackState.IDLE:
        return state
    if event is SessionEvent.READY:
        return PlaybackState.PAUSED if state is PlaybackState.LOADING else state
    if event is SessionEvent.PLAY:
        return PlaybackState.PLAYING
    if event is SessionEvent.PAUSE:
        return PlaybackState.PAUSED
    return state


@dataclass(eq=False)
class PlaybackSession:
    """Binding of one streaming client (or the native pipeline) to the media output."""
    active_source_url: str
    is_using_fallback: bool = False
    last_error: Optional[PlaybackError] = None
    state: PlaybackState = PlaybackState.IDLE
    client: Optional[HlsClient] = None
    native: bool = False
    destroyed: bool = False
    error_reported: bool = False
    unsubscribe: Optional[Callable[[], None]] = field(default=None, repr=False)

    def apply(self, event: SessionEvent) -> PlaybackState:
        self.state = transition(self.state, event)
        return self.state

    def teardown(self) -> None:
        """Detach listeners and destroy the client. Idempotent."""
        if self.destroyed:
            return
        self.destroyed = True
        if self.unsubscribe is not None:
            self.unsubscribe()
            self.unsubscribe = None
        if self.client is not None:
            self.client.destroy()
            self.client = None
        self.apply(SessionEvent.DESTROY)


@dataclass
class PlaybackOptions:
    """Caller inputs for the current load."""
    src: Optional[str] = None
    fallback_url: Optional[str] = None
    subtitle_url: Optional[str] = None
    title: str = "Video"
    autoplay: bool = True
    on_error: Optional[Callable[[Exception], None]] = None
    on_notice: Optional[Callable[[str, str], None]] = None


class PlaybackEngine:
    """Drives a MediaOutput with an HLS client and a recovery policy."""

    def __init__(self, media: MediaOutput, rewriter: Optional[ProxyRewriter] = None,
                 client_factory=HlsClient, dispatcher: Optional[Dispatcher] = None,
                 hls_config: Optional[HlsConfig] = None, prefer_native: bool = False,
                 debug: bool = False):
        self.media: Optional[MediaOutput] = media
        self.rewriter = rewriter or ProxyRewriter()
        self.client_factory = client_factory
        self.dispatcher = dispatcher or ImmediateDispatcher()
        self.hls_config = hls_config or HlsConfig()
        self.prefer_native = prefer_native
        self.debug = debug

        self.session: Optional[PlaybackSession] = None
        self.sources: List[VideoSource] = []
        self.options = PlaybackOptions()
        self.ui_state = PlaybackUIState()
        self.observers: List[Callable[[PlaybackUIState], None]] = []

    @property
    def state(self) -> PlaybackState:
        return self.session.state if self.session else PlaybackState.IDLE

    # --- observers ---

    def add_observer(self, callback: Callable[[PlaybackUIState], None]) -> None:
        self.observers.append(callback)
        callback(self.ui_state)

    def remove_observer(self, callback: Callable[[PlaybackUIState], None]) -> None:
        if callback in self.observers:
            self.observers.remove(callback)

    def _notify(self) -> None:
        for cb in list(self.observers):
            try:
                cb(self.ui_state)
            except Exception:
                logger.exception("Playback observer failed")

    def _set_state(self, **changes) -> None:
        new_state = replace(self.ui_state, **changes)
        if new_state != self.ui_state:
            self.ui_state = new_state
            self._notify()

    def _log_debug(self, message: str) -> None:
        if self.debug:
            logger.debug(message)

    def _notice(self, title: str, message: str) -> None:
        logger.info(f"{title}: {message}")
        if self.options.on_notice:
            self.options.on_notice(title, message)

    # --- lifecycle ---

    def set_sources(self, sources: List[VideoSource]) -> None:
        """Store the resolved candidate list used by switch_quality()."""
        self.sources = list(sources)

    def load(self, src: Optional[str] = None, fallback_url: Optional[str] = None,
             subtitle_url: Optional[str] = None, title: str = "Video", autoplay: bool = True,
             on_error: Optional[Callable[[Exception], None]] = None,
             on_notice: Optional[Callable[[str, str], None]] = None) -> None:
        """Start playback for a new set of inputs, replacing any current session."""
        self.options = PlaybackOptions(src, fallback_url, subtitle_url, title, autoplay, on_error, on_notice)
        self._teardown_session()
        self._set_state(error_message=None)
        media = self.media
        if media is None:
            return

        media.clear_subtitles()
        if subtitle_url:
            self._log_debug(f"Adding subtitle track: {subtitle_url}")
            media.add_subtitle(subtitle_url, "English", "en")

        if src:
            self._log_debug(f"Using provided source: {src}")
            stream_url = self.rewriter.rewrite(src)
            on_fallback = bool(fallback_url) and stream_url == self.rewriter.rewrite(fallback_url)
            self.initialize(stream_url, using_fallback=on_fallback)
        elif fallback_url:
            self._log_debug(f"Using fallback source: {fallback_url}")
            self.initialize(self.rewriter.rewrite(fallback_url), using_fallback=True)
        else:
            self._log_debug("No video source provided")
            self._set_state(error_message=NO_SOURCE_MESSAGE)

    def initialize(self, stream_url: str, using_fallback: bool = False) -> None:
        """Tear down the current session and start a new one on ``stream_url``."""
        self._log_debug(f"Initializing HLS with URL: {stream_url}")
        self._teardown_session()
        media = self.media
        if media is None:
            return

        session = PlaybackSession(active_source_url=stream_url, is_using_fallback=using_fallback)
        self.session = session
        session.apply(SessionEvent.LOAD)
        session.unsubscribe = media.subscribe(lambda event: self._on_media_event(session, event))
        if self.ui_state.error_message:
            self._set_state(error_message=None)

        library = self.client_factory.is_supported(media)
        native = media.can_play_type(HLS_MIME_TYPE)
        if library and not (self.prefer_native and native):
            self._start_client(session, stream_url)
        elif native:
            self._start_native(session, stream_url)
        else:
            self._log_debug("HLS not supported by this media output")
            self._fail(session, CapabilityError("HLS not supported"), UNSUPPORTED_MESSAGE)

    def _start_client(self, session: PlaybackSession, stream_url: str) -> None:
        config = replace(self.hls_config, request_hook=self.rewriter.rewrite,
                         resolve_base=self.rewriter.unwrap)
        client = self.client_factory(config=config, dispatcher=self.dispatcher)
        session.client = client

        client.on(HlsEvent.MEDIA_ATTACHED, lambda _, data: self._on_media_attached(session))
        client.on(HlsEvent.MANIFEST_PARSED, lambda _, data: self._on_ready(session))
        client.on(HlsEvent.ERROR, lambda _, data: self._on_client_error(session, data))
        client.attach_media(self.media)

    def _start_native(self, session: PlaybackSession, stream_url: str) -> None:
        self._log_debug("Using native HLS support")
        session.native = True
        self.media.set_source(stream_url)

    def _teardown_session(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            session.teardown()

    def reload(self) -> None:
        """Start over with the last inputs (the retry affordance after a failure)."""
        opts = self.options
        self.load(opts.src, opts.fallback_url, opts.subtitle_url, opts.title,
                  opts.autoplay, opts.on_error, opts.on_notice)

    def destroy(self) -> None:
        """Unmount: drop the session and release the media output."""
        self._teardown_session()
        self.media = None

    # --- client and media events ---

    def _on_media_attached(self, session: PlaybackSession) -> None:
        if session.destroyed:
            return
        self._log_debug("HLS media attached")
        session.client.load_source(self.rewriter.rewrite(session.active_source_url))

    def _on_ready(self, session: PlaybackSession) -> None:
        if session.destroyed:
            return
        self._log_debug("HLS manifest parsed")
        session.apply(SessionEvent.READY)
        if self.options.autoplay:
            self._attempt_autoplay()

    def _attempt_autoplay(self) -> None:
        try:
            self.media.play()
        except AutoplayBlockedError as e:
            self._log_debug(f"Autoplay prevented: {e}")
            self._notice("Autoplay Blocked", "Please click play to start the video")
        except PlaybackStartError as e:
            self._log_debug(f"Autoplay failed to start: {e}")

    def _on_client_error(self, session: PlaybackSession, data: ErrorData) -> None:
        if session.destroyed:
            return
        self._log_debug(f"HLS error: {data.describe()}")
        self._handle_error(session, classify_error(data))

    def _handle_error(self, session: PlaybackSession, error: PlaybackError) -> None:
        if session.destroyed or session.state is PlaybackState.FAILED:
            return
        if isinstance(error, TransientStreamError):
            self._log_debug(f"Non-fatal HLS error: {error}")
            return
        if session.client is not None and isinstance(error, NetworkFatalError):
            self._log_debug("Network error, trying to recover...")
            session.client.start_load()
            return
        if session.client is not None and isinstance(error, MediaFatalError):
            self._log_debug("Media error, trying to recover...")
            session.client.recover_media_error()
            return
        self._fallback_or_fail(session, error)

    def _fallback_or_fail(self, session: PlaybackSession, error: PlaybackError) -> None:
        session.last_error = error
        fallback = self.options.fallback_url
        if fallback:
            proxied = self.rewriter.rewrite(fallback)
            if proxied != session.active_source_url:
                self._log_debug("Switching to fallback stream")
                self.initialize(proxied, using_fallback=True)
                return
        failure = PlaybackFailure(f"HLS fatal error: {error}", error.data)
        self._fail(session, failure, FAILED_MESSAGE)

    def _fail(self, session: PlaybackSession, error: PlaybackError, message: str) -> None:
        session.last_error = error
        session.apply(SessionEvent.FAIL)
        if session.client is not None:
            session.client.stop_load()
        logger.error(f"Playback failed on {session.active_source_url}: {error}")
        self._set_state(error_message=message)
        if session.error_reported:
            return
        session.error_reported = True
        if self.options.on_error:
            self.options.on_error(error)

    def _on_media_event(self, session: PlaybackSession, event: MediaEvent) -> None:
        if session.destroyed or self.media is None:
            return
        media = self.media
        kind = event.type
        if kind is MediaEventType.TIME_UPDATE:
            self._set_state(current_time=media.current_time)
        elif kind is MediaEventType.DURATION_CHANGE:
            self._set_state(duration=media.duration or 0.0)
        elif kind is MediaEventType.PLAY:
            session.apply(SessionEvent.PLAY)
            self._set_state(is_playing=True)
        elif kind is MediaEventType.PAUSE:
            session.apply(SessionEvent.PAUSE)
            self._set_state(is_playing=False)
        elif kind is MediaEventType.VOLUME_CHANGE:
            self._set_state(volume=media.volume, is_muted=media.muted)
        elif kind is MediaEventType.FULLSCREEN_CHANGE:
            self._set_state(is_fullscreen=media.is_fullscreen)
        elif kind is MediaEventType.LOADED_METADATA:
            if session.native:
                self._on_ready(session)
        elif kind is MediaEventType.ERROR:
            self._log_debug(f"Video error: {event.message}")
            if session.native:
                self._handle_error(session, UnrecoverableFatalError(f"Video error: {event.message}"))
            else:
                self._handle_error(session, MediaFatalError(f"Video error: {event.message}"))

    # --- controls ---

    def toggle_play(self) -> None:
        media = self.media
        if media is None:
            return
        if self.ui_state.is_playing:
            media.pause()
            return
        try:
            media.play()
        except PlaybackStartError as e:
            self._log_debug(f"Play prevented: {e}")

    def seek(self, seconds: float) -> None:
        media = self.media
        if media is None:
            return
        position = max(0.0, float(seconds))
        media.seek(position)
        session = self.session
        if session is not None and session.client is not None:
            session.client.seek_to(position)

    def set_volume(self, volume: float) -> None:
        media = self.media
        if media is None:
            return
        volume = min(1.0, max(0.0, float(volume)))
        media.set_volume(volume)
        if volume == 0:
            media.set_muted(True)
        elif media.muted:
            media.set_muted(False)

    def toggle_mute(self) -> None:
        media = self.media
        if media is None:
            return
        media.set_muted(not media.muted)

    def toggle_fullscreen(self) -> None:
        media = self.media
        if media is None:
            return
        try:
            if media.is_fullscreen:
                media.exit_fullscreen()
            else:
                media.request_fullscreen()
        except FullscreenError as e:
            self._log_debug(f"Fullscreen request failed: {e}")

    def switch_quality(self, quality: str) -> bool:
        """Re-initialize on the already-resolved source labelled ``quality``."""
        source = next((s for s in self.sources if s.quality == quality), None)
        if source is None:
            logger.warning(f"No source with quality {quality!r}")
            return False
        self.options.src = source.url
        self.initialize(self.rewriter.rewrite(source.url))
        self._notice("Quality Changed", f"Switched to {quality} quality")
        return True
