"""Configuration management."""

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_STREAM_URL = (
    "https://ef.netmagcdn.com:2228/hls-playback/"
    "2f219e7a538f6b41763b2d81888f622d7d999109e4aabe2bf5ebc28de54bf1dd958dfbf6e445f1c6c88acf7779775503"
    "c4b0719ce97cec2e5731318a6003ea8a022f782127e4287da2f3917712e14a3b19dd5fcf47922975af8fd214e5d48ce1"
    "1d1ed7c8611c8abf5324e5c767234b0c542b5d0ad5860297029d86704a4c106d082f5eb8864f1701f63fb4746e94d8a4"
    "/master.m3u8"
)

DEFAULTS = {
    "api_base_url": "https://api-consumet-nu.vercel.app",
    "provider": "zoro",
    "proxy_base": "https://hls.ciphertv.dev/proxy?url=",
    "local_api_prefix": "/api/",
    "fallback_stream_url": DEFAULT_FALLBACK_STREAM_URL,
    "autoplay": True,
    "debug": False,
    "episodes_per_page": 100,
    "volume": 1.0,
}


class Config:
    """Manages application configuration."""

    def __init__(self, config_file: Path = None):
        if config_file is None:
            # Use user's home directory for config
            config_file = Path.home() / "animestream_settings.json"
        self.file = config_file
        self.data = dict(DEFAULTS)
        self.load()

    def load(self):
        """Load configuration from file."""
        if self.file.exists():
            try:
                with open(self.file, 'r', encoding='utf-8') as f:
                    self.data.update(json.load(f))
            except (OSError, ValueError) as e:
                logger.warning(f"Ignoring unreadable config {self.file}: {e}")

    def save(self):
        """Save configuration to file."""
        try:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.file, 'w', encoding='utf-8') as f:
                json.dump(self.data, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save config {self.file}: {e}")

    @property
    def api_base_url(self) -> str:
        """Metadata API base; the ANIMESTREAM_API_BASE_URL env var wins."""
        url = os.environ.get("ANIMESTREAM_API_BASE_URL") or self.data.get("api_base_url") or DEFAULTS["api_base_url"]
        return url.rstrip("/")

    @property
    def provider(self) -> str:
        return self.data.get("provider") or DEFAULTS["provider"]

    @property
    def proxy_base(self) -> str:
        return self.data.get("proxy_base") or DEFAULTS["proxy_base"]

    @property
    def local_api_prefix(self) -> str:
        return self.data.get("local_api_prefix", DEFAULTS["local_api_prefix"])

    @property
    def fallback_stream_url(self) -> str:
        return self.data.get("fallback_stream_url") or DEFAULTS["fallback_stream_url"]

    @property
    def autoplay(self) -> bool:
        return bool(self.data.get("autoplay", True))

    @property
    def debug(self) -> bool:
        return bool(self.data.get("debug", False))

    @property
    def episodes_per_page(self) -> int:
        try:
            value = int(self.data.get("episodes_per_page", 100))
        except (TypeError, ValueError):
            return 100
        return value if value > 0 else 100

    @property
    def volume(self) -> float:
        """Get the last used volume."""
        try:
            return min(1.0, max(0.0, float(self.data.get("volume", 1.0))))
        except (TypeError, ValueError):
            return 1.0

    def set_volume(self, volume: float):
        """Remember the volume for the next session."""
        self.data["volume"] = round(min(1.0, max(0.0, float(volume))), 2)
        self.save()
