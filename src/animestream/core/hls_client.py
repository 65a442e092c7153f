"""HLS streaming client that feeds segments into a buffered media output."""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import m3u8
import requests
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .dispatch import Dispatcher, ImmediateDispatcher, run_in_thread
from .errors import ErrorData, ErrorDetails, ErrorType
from .media import MediaOutput

logger = logging.getLogger(__name__)


class HlsEvent(str, Enum):
    MEDIA_ATTACHED = "hlsMediaAttached"
    MANIFEST_LOADING = "hlsManifestLoading"
    MANIFEST_PARSED = "hlsManifestParsed"
    LEVEL_LOADED = "hlsLevelLoaded"
    FRAG_LOADED = "hlsFragLoaded"
    BUFFER_EOS = "hlsBufferEos"
    ERROR = "hlsError"
    DESTROYING = "hlsDestroying"


EventHandler = Callable[[HlsEvent, Any], None]


@dataclass
class HlsConfig:
    """Loader settings.

    ``request_hook`` sees every outgoing URL (manifest, level, segment,
    key) and returns the URL to actually fetch. ``resolve_base`` maps a
    playlist URL to the base used for its relative URIs.
    """
    request_hook: Optional[Callable[[str], str]] = None
    resolve_base: Callable[[str], str] = lambda url: url
    max_buffer_length: float = 30.0
    manifest_load_max_retry: int = 3
    frag_load_max_retry: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 30.0
    buffer_poll_interval: float = 0.25
    timeout: float = 20.0
    start_level: int = -1
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Level:
    """One rendition listed in a master playlist."""
    url: str
    bandwidth: int = 0
    resolution: Optional[Tuple[int, int]] = None

    @property
    def height(self) -> int:
        return self.resolution[1] if self.resolution else 0


@dataclass(frozen=True)
class SegmentKey:
    method: str
    url: Optional[str]
    iv: Optional[bytes]


@dataclass(frozen=True)
class Fragment:
    sn: int
    url: str
    start: float
    duration: float
    key: Optional[SegmentKey] = None
    init_url: Optional[str] = None


def _parse_iv(iv: Optional[str]) -> Optional[bytes]:
    if not iv:
        return None
    text = iv[2:] if iv.lower().startswith("0x") else iv
    return bytes.fromhex(text.zfill(32))


class HlsClient:
    """Loads an HLS stream through ``config.request_hook`` and appends it to a media output.

    Network work runs on ``runner`` (a daemon thread per load by default);
    events are handed back through ``dispatcher`` and dropped once the
    client has been destroyed.
    """

    def __init__(self, config: Optional[HlsConfig] = None,
                 dispatcher: Optional[Dispatcher] = None,
                 runner: Optional[Callable[[Callable[[], None]], None]] = None,
                 session: Optional[requests.Session] = None):
        self.config = config or HlsConfig()
        self._dispatcher = dispatcher or ImmediateDispatcher()
        self._runner = runner or run_in_thread
        self._owns_session = session is None
        self.session = session or requests.Session()
        if self.config.headers:
            self.session.headers.update(self.config.headers)

        self._handlers: Dict[HlsEvent, List[EventHandler]] = {}
        self._media: Optional[MediaOutput] = None
        self._url: Optional[str] = None
        self._destroyed = False
        self._load_id = 0
        self._wake = threading.Event()

        self.levels: Optional[List[Level]] = None
        self.current_level = -1
        self._fragments: Optional[List[Fragment]] = None
        self._frag_index = 0
        self._init_loaded: Optional[str] = None
        self._keys: Dict[str, bytes] = {}
        self._buffer_offset = 0.0
        self._fatal_streak = 0

    @staticmethod
    def is_supported(media: MediaOutput) -> bool:
        """True when ``media`` accepts pushed segments."""
        try:
            return bool(media.supports_buffered_playback())
        except Exception:
            return False

    @property
    def url(self) -> Optional[str]:
        return self._url

    @property
    def media(self) -> Optional[MediaOutput]:
        return self._media

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    # --- subscriptions ---

    def on(self, event: HlsEvent, handler: EventHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: HlsEvent, handler: EventHandler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: HlsEvent, data: Any = None) -> None:
        self._dispatcher.call_soon(self._deliver, event, data)

    def _deliver(self, event: HlsEvent, data: Any) -> None:
        if self._destroyed:
            return
        for handler in list(self._handlers.get(event, [])):
            handler(event, data)

    def _emit_error(self, error_type: ErrorType, details: ErrorDetails, fatal: bool,
                    url: Optional[str] = None, reason: Optional[str] = None,
                    response_code: Optional[int] = None) -> None:
        self._emit(HlsEvent.ERROR, ErrorData(error_type, details, fatal, url, reason, response_code))

    # --- lifecycle ---

    def attach_media(self, media: MediaOutput) -> None:
        if self._destroyed:
            return
        self._media = media
        try:
            media.open_buffer()
        except Exception as e:
            logger.error(f"Could not open media buffer: {e}")
            self._emit_error(ErrorType.OTHER_ERROR, ErrorDetails.MEDIA_ATTACH_ERROR, True, reason=str(e))
            return
        self._emit(HlsEvent.MEDIA_ATTACHED, {"media": media})

    def detach_media(self) -> None:
        self._cancel_load()
        media, self._media = self._media, None
        if media is not None:
            try:
                media.close_buffer()
            except Exception as e:
                logger.warning(f"Closing media buffer failed: {e}")

    def load_source(self, url: str) -> None:
        if self._destroyed:
            return
        self._url = url
        self.levels = None
        self.current_level = -1
        self._fragments = None
        self._frag_index = 0
        self._init_loaded = None
        self._buffer_offset = 0.0
        self._fatal_streak = 0
        self.start_load()

    def start_load(self) -> None:
        """(Re)start the loader from where it stopped."""
        if self._destroyed or not self._url:
            return
        load_id = self._cancel_load()
        self._wake.clear()
        self._runner(lambda: self._run(load_id))

    def stop_load(self) -> None:
        self._cancel_load()

    def recover_media_error(self) -> None:
        """Reopen the media buffer and resume at the current playback position."""
        if self._destroyed or self._media is None:
            return
        self._reload_from(self._media.current_time)

    def seek_to(self, position: float) -> None:
        """Refill the buffer from ``position`` unless that part is already buffered."""
        if self._destroyed or self._media is None or not self._fragments:
            return
        if self._buffer_offset <= position < self._buffer_offset + self._media.buffered_end:
            return
        logger.debug(f"Seek to {position:.1f}s is outside the buffer, reloading")
        self._reload_from(position)

    def _reload_from(self, position: float) -> None:
        self._cancel_load()
        media = self._media
        try:
            media.close_buffer()
            media.open_buffer()
        except Exception as e:
            logger.error(f"Media recovery failed: {e}")
            self._emit_error(ErrorType.OTHER_ERROR, ErrorDetails.MEDIA_ATTACH_ERROR, True, reason=str(e))
            return
        self._init_loaded = None
        self._frag_index = self._fragment_at(position)
        self._buffer_offset = self._fragments[self._frag_index].start if self._fragments else 0.0
        self.start_load()

    def destroy(self) -> None:
        if self._destroyed:
            return
        for handler in list(self._handlers.get(HlsEvent.DESTROYING, [])):
            handler(HlsEvent.DESTROYING, None)
        self._destroyed = True
        self._handlers.clear()
        self.detach_media()
        self._keys.clear()
        self._fragments = None
        if self._owns_session:
            self.session.close()

    def _cancel_load(self) -> int:
        self._load_id += 1
        self._wake.set()
        return self._load_id

    def _active(self, load_id: int) -> bool:
        return not self._destroyed and load_id == self._load_id and self._media is not None

    # --- loader ---

    def _fetch(self, url: str) -> requests.Response:
        target = self.config.request_hook(url) if self.config.request_hook else url
        if target != url:
            logger.debug(f"Proxying URL: {url} -> {target}")
        response = self.session.get(target, timeout=self.config.timeout)
        response.raise_for_status()
        return response

    def _restart_delay(self) -> float:
        """Backoff before a load that follows fatal network errors; doubles per failure."""
        if self._fatal_streak == 0:
            return 0.0
        return min(self.config.retry_delay * 2 ** (self._fatal_streak - 1), self.config.max_retry_delay)

    def _run(self, load_id: int) -> None:
        delay = self._restart_delay()
        if delay > 0:
            logger.debug(f"Restarting loader in {delay:.1f}s")
            self._wake.wait(delay)
        if not self._active(load_id):
            return
        try:
            if self.levels is None and not self._load_manifest(load_id):
                return
            if self._fragments is None and not self._load_level(load_id):
                return
            self._load_fragments(load_id)
        except Exception as e:
            logger.error(f"HLS loader crashed: {e}", exc_info=True)
            if self._active(load_id):
                self._emit_error(ErrorType.OTHER_ERROR, ErrorDetails.MANIFEST_PARSING_ERROR, True,
                                 url=self._url, reason=str(e))

    def _parse_playlist(self, text: str, url: str, details: ErrorDetails) -> Optional[m3u8.M3U8]:
        if not text.lstrip().startswith("#EXTM3U"):
            self._emit_error(ErrorType.OTHER_ERROR, details, True, url=url, reason="Missing #EXTM3U header")
            return None
        try:
            return m3u8.loads(text, uri=self.config.resolve_base(url))
        except Exception as e:
            self._emit_error(ErrorType.OTHER_ERROR, details, True, url=url, reason=str(e))
            return None

    def _load_manifest(self, load_id: int) -> bool:
        url = self._url
        self._emit(HlsEvent.MANIFEST_LOADING, {"url": url})
        response = self._request_with_retry(load_id, url, ErrorDetails.MANIFEST_LOAD_ERROR,
                                            self.config.manifest_load_max_retry)
        if response is None or not self._active(load_id):
            return False

        playlist = self._parse_playlist(response.text, url, ErrorDetails.MANIFEST_PARSING_ERROR)
        if playlist is None:
            return False

        if playlist.is_variant:
            levels = [
                Level(url=p.absolute_uri,
                      bandwidth=p.stream_info.bandwidth or 0,
                      resolution=p.stream_info.resolution)
                for p in playlist.playlists
            ]
            if not levels:
                self._emit_error(ErrorType.OTHER_ERROR, ErrorDetails.MANIFEST_INCOMPATIBLE, True,
                                 url=url, reason="Master playlist lists no variants")
                return False
            self.levels = levels
            self.current_level = self._pick_level(levels)
            self._emit(HlsEvent.MANIFEST_PARSED, {"levels": levels, "first_level": self.current_level})
            return True

        if not playlist.segments:
            self._emit_error(ErrorType.OTHER_ERROR, ErrorDetails.MANIFEST_INCOMPATIBLE, True,
                             url=url, reason="Playlist has no segments")
            return False
        self.levels = [Level(url=url)]
        self.current_level = 0
        self._emit(HlsEvent.MANIFEST_PARSED, {"levels": self.levels, "first_level": 0})
        self._set_fragments(playlist)
        return True

    def _pick_level(self, levels: List[Level]) -> int:
        if 0 <= self.config.start_level < len(levels):
            return self.config.start_level
        return max(range(len(levels)), key=lambda i: (levels[i].bandwidth, levels[i].height))

    def _load_level(self, load_id: int) -> bool:
        level = self.levels[self.current_level]
        response = self._request_with_retry(load_id, level.url, ErrorDetails.LEVEL_LOAD_ERROR,
                                            self.config.manifest_load_max_retry)
        if response is None or not self._active(load_id):
            return False

        playlist = self._parse_playlist(response.text, level.url, ErrorDetails.MANIFEST_PARSING_ERROR)
        if playlist is None:
            return False
        if not playlist.segments:
            self._emit_error(ErrorType.OTHER_ERROR, ErrorDetails.MANIFEST_INCOMPATIBLE, True,
                             url=level.url, reason="Level playlist has no segments")
            return False
        self._set_fragments(playlist)
        return True

    def _set_fragments(self, playlist: m3u8.M3U8) -> None:
        fragments = []
        start = 0.0
        first_sn = playlist.media_sequence or 0
        for i, seg in enumerate(playlist.segments):
            key = None
            if seg.key is not None and seg.key.method and seg.key.method.upper() != "NONE":
                key = SegmentKey(
                    method=seg.key.method.upper(),
                    url=seg.key.absolute_uri if seg.key.uri else None,
                    iv=_parse_iv(seg.key.iv),
                )
            init_url = None
            if getattr(seg, "init_section", None) is not None and seg.init_section.uri:
                init_url = seg.init_section.absolute_uri
            duration = float(seg.duration or 0)
            fragments.append(Fragment(sn=first_sn + i, url=seg.absolute_uri, start=start,
                                      duration=duration, key=key, init_url=init_url))
            start += duration
        self._fragments = fragments
        self._frag_index = 0
        self._emit(HlsEvent.LEVEL_LOADED, {
            "level": self.current_level,
            "fragments": len(fragments),
            "total_duration": start,
        })

    def _fragment_at(self, position: float) -> int:
        fragments = self._fragments or []
        for i, frag in enumerate(fragments):
            if frag.start <= position < frag.start + frag.duration:
                return i
        if fragments and position >= fragments[-1].start:
            return len(fragments) - 1
        return 0

    def _load_fragments(self, load_id: int) -> None:
        fragments = self._fragments
        while self._active(load_id) and self._frag_index < len(fragments):
            frag = fragments[self._frag_index]
            if not self._wait_for_buffer_room(load_id):
                return

            if frag.init_url and frag.init_url != self._init_loaded:
                init = self._load_with_retry(load_id, frag.init_url, ErrorDetails.FRAG_LOAD_ERROR)
                if init is None or not self._append(load_id, init, 0.0):
                    return
                self._init_loaded = frag.init_url

            data = self._load_with_retry(load_id, frag.url, ErrorDetails.FRAG_LOAD_ERROR)
            if data is None:
                return
            if frag.key is not None:
                data = self._decrypt(load_id, frag, data)
                if data is None:
                    return
            if not self._append(load_id, data, frag.duration):
                return
            self._frag_index += 1
            self._emit(HlsEvent.FRAG_LOADED, {"sn": frag.sn, "start": frag.start, "duration": frag.duration})

        if self._active(load_id) and self._frag_index >= len(fragments):
            try:
                self._media.end_of_stream()
            except Exception as e:
                logger.warning(f"end_of_stream failed: {e}")
            self._emit(HlsEvent.BUFFER_EOS)

    def _wait_for_buffer_room(self, load_id: int) -> bool:
        while self._active(load_id):
            media = self._media
            ahead = self._buffer_offset + media.buffered_end - media.current_time
            if ahead < self.config.max_buffer_length:
                return True
            self._wake.wait(self.config.buffer_poll_interval)
        return False

    def _load_with_retry(self, load_id: int, url: str, details: ErrorDetails) -> Optional[bytes]:
        response = self._request_with_retry(load_id, url, details, self.config.frag_load_max_retry)
        return response.content if response is not None else None

    def _request_with_retry(self, load_id: int, url: str, details: ErrorDetails,
                            max_retry: int) -> Optional[requests.Response]:
        """Fetch ``url``; failed attempts are non-fatal errors until the last one."""
        attempts = max_retry + 1
        for attempt in range(1, attempts + 1):
            if not self._active(load_id):
                return None
            try:
                response = self._fetch(url)
            except requests.RequestException as e:
                if not self._active(load_id):
                    return None
                fatal = attempt == attempts
                if fatal:
                    self._fatal_streak += 1
                self._emit_error(ErrorType.NETWORK_ERROR, details, fatal,
                                 url=url, reason=str(e), response_code=_status_of(e))
                if fatal:
                    return None
                self._wake.wait(self.config.retry_delay * attempt)
                continue
            self._fatal_streak = 0
            return response
        return None

    def _append(self, load_id: int, data: bytes, duration: float) -> bool:
        if not self._active(load_id):
            return False
        try:
            self._media.append_buffer(data, duration)
        except Exception as e:
            self._emit_error(ErrorType.MEDIA_ERROR, ErrorDetails.BUFFER_APPEND_ERROR, True, reason=str(e))
            return False
        return True

    def _decrypt(self, load_id: int, frag: Fragment, data: bytes) -> Optional[bytes]:
        key = frag.key
        if key.method != "AES-128" or not key.url:
            self._emit_error(ErrorType.OTHER_ERROR, ErrorDetails.MANIFEST_INCOMPATIBLE, True,
                             url=frag.url, reason=f"Unsupported encryption method {key.method}")
            return None

        secret = self._keys.get(key.url)
        if secret is None:
            secret = self._load_with_retry(load_id, key.url, ErrorDetails.KEY_LOAD_ERROR)
            if secret is None:
                return None
            self._keys[key.url] = secret

        iv = key.iv or frag.sn.to_bytes(16, "big")
        try:
            decryptor = Cipher(algorithms.AES(secret), modes.CBC(iv)).decryptor()
            padded = decryptor.update(data) + decryptor.finalize()
            unpadder = padding.PKCS7(128).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            self._emit_error(ErrorType.MEDIA_ERROR, ErrorDetails.FRAG_DECRYPT_ERROR, True,
                             url=frag.url, reason=str(e))
            return None


def _status_of(exc: requests.RequestException) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)
