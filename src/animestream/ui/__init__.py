"""UI components for animestream."""

from .player_window import PlayerWindow
from .controls import PlayerControls
from .mpv_output import MpvMediaOutput

__all__ = ["PlayerWindow", "PlayerControls", "MpvMediaOutput"]
