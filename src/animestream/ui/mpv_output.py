"""MediaOutput backed by libmpv, embedded into a Tk frame."""

import logging
import queue
from typing import Callable, List, Optional, Tuple

import mpv

from ..core.dispatch import Dispatcher, ImmediateDispatcher
from ..core.errors import FullscreenError
from ..core.media import HLS_MIME_TYPE, BaseMediaOutput, MediaEventType

logger = logging.getLogger(__name__)

_MPV_LOG_LEVELS = {
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
}


def _mpv_log(level, prefix, text) -> None:
    logger.log(_MPV_LOG_LEVELS.get(level, logging.DEBUG), f"[mpv:{prefix}] {str(text).rstrip()}")


class MpvMediaOutput(BaseMediaOutput):
    """Plays through mpv: native HLS via its demuxer, buffered via a python:// stream.

    mpv reports property changes on its own thread; they are re-fired
    as MediaEvents through ``dispatcher`` so listeners run on the Tk thread.
    """

    def __init__(self, wid: Optional[int] = None, dispatcher: Optional[Dispatcher] = None,
                 volume: float = 1.0):
        super().__init__()
        self._dispatcher = dispatcher or ImmediateDispatcher()
        options = dict(
            log_handler=_mpv_log,
            loglevel="warn",
            hwdec="auto",
            keep_open="yes",
            input_default_bindings=False,
            osc=False,
            pause=True,
            volume=int(round(volume * 100)),
        )
        if wid is not None:
            options["wid"] = str(int(wid))
        self._mpv = mpv.MPV(**options)

        self._fullscreen = False
        self._fullscreen_handler: Optional[Callable[[bool], None]] = None
        self._subtitles: List[Tuple[str, str, str]] = []
        self._buffer: Optional[queue.Queue] = None
        self._reader = None
        self._stream_seq = 0
        self._buffered_end = 0.0

        self._mpv.observe_property("time-pos", self._on_property)
        self._mpv.observe_property("duration", self._on_property)
        self._mpv.observe_property("pause", self._on_property)
        self._mpv.observe_property("volume", self._on_property)
        self._mpv.observe_property("mute", self._on_property)
        self._mpv.event_callback("file-loaded")(self._on_file_loaded)
        self._mpv.event_callback("end-file")(self._on_end_file)

    # --- mpv callbacks (mpv thread) ---

    def _post(self, event_type: MediaEventType, message: str = "") -> None:
        self._dispatcher.call_soon(self._fire, event_type, message)

    def _on_property(self, name, value):
        if name == "time-pos":
            self._post(MediaEventType.TIME_UPDATE)
        elif name == "duration":
            self._post(MediaEventType.DURATION_CHANGE)
        elif name == "pause":
            self._post(MediaEventType.PAUSE if value else MediaEventType.PLAY)
        elif name in ("volume", "mute"):
            self._post(MediaEventType.VOLUME_CHANGE)

    def _on_file_loaded(self, _event):
        self._dispatcher.call_soon(self._apply_subtitles)
        self._post(MediaEventType.LOADED_METADATA)

    def _on_end_file(self, event):
        data = getattr(event, "data", None)
        reason = getattr(data, "reason", None)
        if reason == getattr(mpv.MpvEventEndFile, "ERROR", 4):
            code = getattr(data, "error", "")
            self._post(MediaEventType.ERROR, f"mpv could not play the stream ({code})")

    # --- state ---

    @property
    def current_time(self) -> float:
        return float(self._mpv.time_pos or 0.0)

    @property
    def duration(self) -> float:
        return float(self._mpv.duration or 0.0)

    @property
    def volume(self) -> float:
        return float(self._mpv.volume or 0.0) / 100.0

    @property
    def muted(self) -> bool:
        return bool(self._mpv.mute)

    @property
    def paused(self) -> bool:
        return bool(self._mpv.pause)

    @property
    def is_fullscreen(self) -> bool:
        return self._fullscreen

    # --- controls ---

    def play(self) -> None:
        self._mpv.pause = False

    def pause(self) -> None:
        self._mpv.pause = True

    def seek(self, seconds: float) -> None:
        self._mpv.seek(seconds, reference="absolute")

    def set_volume(self, volume: float) -> None:
        self._mpv.volume = volume * 100.0

    def set_muted(self, muted: bool) -> None:
        self._mpv.mute = bool(muted)

    def set_fullscreen_handler(self, handler: Callable[[bool], None]) -> None:
        """The embedding window owns fullscreen; it flips its toplevel in ``handler``."""
        self._fullscreen_handler = handler

    def _set_fullscreen(self, flag: bool) -> None:
        if self._fullscreen_handler is None:
            raise FullscreenError("No window to take fullscreen")
        self._fullscreen_handler(flag)
        self._fullscreen = flag
        self._fire(MediaEventType.FULLSCREEN_CHANGE)

    def request_fullscreen(self) -> None:
        self._set_fullscreen(True)

    def exit_fullscreen(self) -> None:
        self._set_fullscreen(False)

    # --- native streaming ---

    def can_play_type(self, mime_type: str) -> bool:
        return mime_type == HLS_MIME_TYPE

    def set_source(self, url: str) -> None:
        self.close_buffer()
        # Playback starts only when the engine calls play()
        self._mpv.pause = True
        self._mpv.play(url)

    # --- buffered streaming ---

    def supports_buffered_playback(self) -> bool:
        return True

    def open_buffer(self) -> None:
        self.close_buffer()
        self._stream_seq += 1
        name = f"animestream{self._stream_seq}"
        chunks = queue.Queue()

        def reader():
            while True:
                chunk = chunks.get()
                if chunk is None:
                    return
                yield chunk

        self._buffer = chunks
        self._buffered_end = 0.0
        self._reader = self._mpv.python_stream(name)(reader)
        self._mpv.pause = True
        self._mpv.play(f"python://{name}")

    def append_buffer(self, data: bytes, duration: float) -> None:
        if self._buffer is None:
            raise RuntimeError("Media buffer is not open")
        self._buffer.put(data)
        self._buffered_end += duration

    @property
    def buffered_end(self) -> float:
        return self._buffered_end

    def end_of_stream(self) -> None:
        if self._buffer is not None:
            self._buffer.put(None)

    def close_buffer(self) -> None:
        chunks, self._buffer = self._buffer, None
        if chunks is None:
            return
        chunks.put(None)
        unregister = getattr(self._reader, "unregister", None)
        if unregister:
            unregister()
        self._reader = None
        self._mpv.command("stop")

    # --- subtitles ---

    def add_subtitle(self, url: str, label: str, language: str) -> None:
        # mpv only accepts sub-add once a file is loaded
        self._subtitles.append((url, label, language))

    def clear_subtitles(self) -> None:
        self._subtitles.clear()
        for track in self._mpv.track_list or []:
            if track.get("type") == "sub" and track.get("external"):
                self._mpv.command("sub-remove", track["id"])

    def _apply_subtitles(self) -> None:
        for url, label, language in self._subtitles:
            try:
                self._mpv.sub_add(url, "select", label, language)
            except Exception as e:
                logger.warning(f"Could not add subtitle {url}: {e}")

    def close(self) -> None:
        self.close_buffer()
        self._listeners.clear()
        self._mpv.terminate()
