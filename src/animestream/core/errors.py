"""Playback error taxonomy and the streaming client's error records."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorType(str, Enum):
    NETWORK_ERROR = "networkError"
    MEDIA_ERROR = "mediaError"
    OTHER_ERROR = "otherError"


class ErrorDetails(str, Enum):
    MANIFEST_LOAD_ERROR = "manifestLoadError"
    MANIFEST_PARSING_ERROR = "manifestParsingError"
    MANIFEST_INCOMPATIBLE = "manifestIncompatibleCodecsError"
    LEVEL_LOAD_ERROR = "levelLoadError"
    FRAG_LOAD_ERROR = "fragLoadError"
    KEY_LOAD_ERROR = "keyLoadError"
    FRAG_DECRYPT_ERROR = "fragDecryptError"
    BUFFER_APPEND_ERROR = "bufferAppendError"
    MEDIA_ATTACH_ERROR = "mediaAttachError"
    MEDIA_OUTPUT_ERROR = "mediaOutputError"


@dataclass(frozen=True)
class ErrorData:
    """An entry on the streaming client's error stream."""
    type: ErrorType
    details: ErrorDetails
    fatal: bool
    url: Optional[str] = None
    reason: Optional[str] = None
    response_code: Optional[int] = None

    def describe(self) -> str:
        text = f"{self.type.value}/{self.details.value}"
        if self.response_code:
            text += f" (HTTP {self.response_code})"
        if self.reason:
            text += f": {self.reason}"
        return text


class PlaybackError(Exception):
    """Base class for errors raised or reported by the playback engine."""

    def __init__(self, message: str, data: Optional[ErrorData] = None):
        super().__init__(message)
        self.data = data


class CapabilityError(PlaybackError):
    """Neither native HLS nor the streaming client can drive the media output."""


class TransientStreamError(PlaybackError):
    """Non-fatal client error; the client continues on its own."""


class NetworkFatalError(PlaybackError):
    """Fatal network error; retried by restarting the client's loader."""


class MediaFatalError(PlaybackError):
    """Fatal media error; recovered in place."""


class UnrecoverableFatalError(PlaybackError):
    """Fatal error that only a different stream URL can fix."""


class PlaybackFailure(PlaybackError):
    """Terminal failure after fallback was exhausted."""


class PlaybackStartError(Exception):
    """The media output refused to start playback."""


class AutoplayBlockedError(PlaybackStartError):
    """Playback was started without a user gesture and the output refused it."""


class FullscreenError(Exception):
    """The media output could not enter or leave fullscreen."""


class SourceResolutionError(Exception):
    """The metadata API could not provide sources for an episode."""


def classify_error(data: ErrorData) -> PlaybackError:
    """Map a client error record onto the playback error taxonomy."""
    message = f"HLS {'fatal' if data.fatal else 'non-fatal'} error: {data.describe()}"
    if not data.fatal:
        return TransientStreamError(message, data)
    if data.type is ErrorType.NETWORK_ERROR:
        return NetworkFatalError(message, data)
    if data.type is ErrorType.MEDIA_ERROR:
        return MediaFatalError(message, data)
    return UnrecoverableFatalError(message, data)
