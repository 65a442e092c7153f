"""Player control bar bound to a PlaybackEngine."""

import customtkinter as ctk

from ..core import PlaybackEngine, PlaybackUIState
from .components import COLORS, format_time


class PlayerControls(ctk.CTkFrame):
    """View widget for a PlaybackEngine's UI state."""

    def __init__(self, parent, engine: PlaybackEngine, title: str = "Video"):
        super().__init__(parent)
        self.engine = engine
        self._seeking = False
        self._state = engine.ui_state
        self.setup_ui(title)

        # Subscribe to engine updates
        self.engine.add_observer(self.on_state_update)

    def destroy(self):
        # Unsubscribe before destroying
        self.engine.remove_observer(self.on_state_update)
        super().destroy()

    def setup_ui(self, title: str):
        self.configure(fg_color=COLORS["surface_dark"], corner_radius=0)

        self.lbl_title = ctk.CTkLabel(
            self, text=title, font=("Helvetica", 13, "bold"),
            text_color=COLORS["text_primary"], anchor="w"
        )
        self.lbl_title.pack(fill="x", padx=16, pady=(8, 0))

        # Progress row
        progress = ctk.CTkFrame(self, fg_color="transparent")
        progress.pack(fill="x", padx=16, pady=(4, 0))

        self.lbl_position = ctk.CTkLabel(
            progress, text="0:00", width=48, font=("Courier", 12),
            text_color=COLORS["text_primary"]
        )
        self.lbl_position.pack(side="left")

        self.seek_slider = ctk.CTkSlider(
            progress, from_=0, to=100, number_of_steps=None,
            button_color=COLORS["primary"], button_hover_color=COLORS["primary_hover"],
            progress_color=COLORS["primary"], command=self._on_seek_drag
        )
        self.seek_slider.set(0)
        self.seek_slider.pack(side="left", fill="x", expand=True, padx=8)
        self.seek_slider.bind("<ButtonPress-1>", lambda _e: self._begin_seek())
        self.seek_slider.bind("<ButtonRelease-1>", lambda _e: self._end_seek())

        self.lbl_duration = ctk.CTkLabel(
            progress, text="0:00", width=48, font=("Courier", 12),
            text_color=COLORS["text_primary"]
        )
        self.lbl_duration.pack(side="left")

        # Buttons row
        buttons = ctk.CTkFrame(self, fg_color="transparent")
        buttons.pack(fill="x", padx=12, pady=(2, 8))

        self.btn_play = ctk.CTkButton(
            buttons, text="▶", command=self.engine.toggle_play, width=40, height=36,
            fg_color="transparent", hover_color=COLORS["chip_hover"], corner_radius=18,
            font=("Helvetica", 16)
        )
        self.btn_play.pack(side="left", padx=4)

        self.btn_mute = ctk.CTkButton(
            buttons, text="🔊", command=self.engine.toggle_mute, width=40, height=36,
            fg_color="transparent", hover_color=COLORS["chip_hover"], corner_radius=18,
            font=("Helvetica", 14)
        )
        self.btn_mute.pack(side="left", padx=4)

        self.volume_slider = ctk.CTkSlider(
            buttons, from_=0, to=1, number_of_steps=100, width=100,
            button_color=COLORS["primary"], progress_color=COLORS["primary"],
            command=lambda v: self.engine.set_volume(float(v))
        )
        self.volume_slider.set(self._state.volume)
        self.volume_slider.pack(side="left", padx=(0, 12))

        self.lbl_clock = ctk.CTkLabel(
            buttons, text="0:00 / 0:00", font=("Courier", 12),
            fg_color="#000000", corner_radius=4, text_color=COLORS["text_primary"]
        )
        self.lbl_clock.pack(side="left", padx=4)

        self.btn_fullscreen = ctk.CTkButton(
            buttons, text="⛶", command=self.engine.toggle_fullscreen, width=40, height=36,
            fg_color="transparent", hover_color=COLORS["chip_hover"], corner_radius=18,
            font=("Helvetica", 16)
        )
        self.btn_fullscreen.pack(side="right", padx=4)

    def set_title(self, title: str):
        self.lbl_title.configure(text=title)

    def _begin_seek(self):
        self._seeking = True

    def _end_seek(self):
        self._seeking = False
        self.engine.seek(self.seek_slider.get())

    def _on_seek_drag(self, value):
        self.lbl_position.configure(text=format_time(float(value)))

    def on_state_update(self, state: PlaybackUIState):
        """Update UI based on engine state."""
        self._state = state
        # Use after() to ensure thread safety with Tkinter
        self.after(0, self._update_ui_safe)

    def _update_ui_safe(self):
        if not self.winfo_exists():
            return
        state = self._state

        duration = state.duration if state.duration > 0 else 100
        self.seek_slider.configure(to=duration)
        if not self._seeking:
            self.seek_slider.set(min(state.current_time, duration))
            self.lbl_position.configure(text=format_time(state.current_time))
        self.lbl_duration.configure(text=format_time(state.duration))
        self.lbl_clock.configure(text=f"{format_time(state.current_time)} / {format_time(state.duration)}")

        self.btn_play.configure(text="⏸" if state.is_playing else "▶")
        self.btn_mute.configure(text="🔇" if state.is_muted or state.volume == 0 else "🔊")
        self.volume_slider.set(0 if state.is_muted else state.volume)
        self.btn_fullscreen.configure(text="🗗" if state.is_fullscreen else "⛶")
