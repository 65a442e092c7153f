"""Watch window: video surface, controls, quality selector and episode list."""

import logging
import threading
import tkinter as tk
from io import BytesIO
from typing import Optional

import customtkinter as ctk
import requests
from customtkinter import CTkImage
from PIL import Image

from ..core import (
    ConsumetClient,
    PlaybackEngine,
    PlaybackUIState,
    ProxyRewriter,
    WatchContext,
    WatchController,
)
from ..utils import Config, log_error
from ..version import __version__
from .components import COLORS
from .controls import PlayerControls
from .mpv_output import MpvMediaOutput

logger = logging.getLogger(__name__)

# Configure CustomTkinter theme
ctk.set_appearance_mode("dark")
ctk.set_default_color_theme("blue")

TOAST_MS = 3500
EPISODE_COLUMNS = 10


class TkDispatcher:
    """Runs callbacks on the Tk main loop."""

    def __init__(self, widget: tk.Misc):
        self.widget = widget

    def call_soon(self, fn, *args) -> None:
        self.widget.after(0, fn, *args)


class PlayerWindow(ctk.CTk):
    """Main application window for animestream."""

    def __init__(self, anime_id: str, episode_id: str, config: Optional[Config] = None,
                 debug: bool = False):
        super().__init__()
        self.title(f"animestream v{__version__}")
        self.geometry("1100x860")
        self.configure(fg_color=COLORS["background_dark"])

        self.config_store = config or Config()
        self.anime_id = anime_id
        self.episode_id = episode_id
        self.context: Optional[WatchContext] = None
        self.episode_page = 0
        self.dispatcher = TkDispatcher(self)

        self.font_h2 = ctk.CTkFont(family="Helvetica", size=18, weight="bold")
        self.font_body = ctk.CTkFont(family="Helvetica", size=14)
        self.font_small = ctk.CTkFont(family="Helvetica", size=12)

        self.grid_columnconfigure(0, weight=1)
        self.grid_rowconfigure(1, weight=1)
        self.create_header()
        self.create_stage()

        rewriter = ProxyRewriter(self.config_store.proxy_base, self.config_store.local_api_prefix)
        self.controller = WatchController(
            ConsumetClient(self.config_store.api_base_url, self.config_store.provider),
            rewriter,
            self.config_store.fallback_stream_url,
            self.config_store.episodes_per_page,
        )

        # mpv needs the native window id of the video frame
        self.update_idletasks()
        self.media = MpvMediaOutput(
            wid=self.video_frame.winfo_id(),
            dispatcher=self.dispatcher,
            volume=self.config_store.volume,
        )
        self.media.set_fullscreen_handler(self._set_fullscreen)
        self.engine = PlaybackEngine(
            self.media, rewriter, dispatcher=self.dispatcher, debug=debug or self.config_store.debug
        )

        self.controls = PlayerControls(self.stage, self.engine)
        self.controls.grid(row=1, column=0, sticky="ew")
        self.create_details()

        self.engine.add_observer(self.on_playback_state)
        self.bind_keys()
        self.protocol("WM_DELETE_WINDOW", self.on_close)

        self.open_episode(episode_id)

    # --- layout ---

    def create_header(self):
        header = ctk.CTkFrame(self, fg_color=COLORS["surface_dark"], corner_radius=0, height=56)
        header.grid(row=0, column=0, sticky="ew")
        header.grid_propagate(False)

        self.lbl_header_title = ctk.CTkLabel(
            header, text="Loading episode...", font=self.font_h2, text_color=COLORS["text_primary"]
        )
        self.lbl_header_title.pack(side="left", padx=20)
        self.lbl_header_subtitle = ctk.CTkLabel(
            header, text="", font=self.font_small, text_color=COLORS["text_secondary"]
        )
        self.lbl_header_subtitle.pack(side="left")

    def create_stage(self):
        self.stage = ctk.CTkFrame(self, fg_color=COLORS["video_bg"], corner_radius=0)
        self.stage.grid(row=1, column=0, sticky="nsew")
        self.stage.grid_columnconfigure(0, weight=1)
        self.stage.grid_rowconfigure(0, weight=1)

        # Plain Tk frame: mpv renders straight into its native window
        self.video_frame = tk.Frame(self.stage, bg=COLORS["video_bg"], height=480)
        self.video_frame.grid(row=0, column=0, sticky="nsew")
        self.video_frame.bind("<Button-1>", lambda _e: self.engine.toggle_play())
        self.video_frame.bind("<Double-Button-1>", lambda _e: self.engine.toggle_fullscreen())

        self.error_overlay = ctk.CTkFrame(self.stage, fg_color=COLORS["surface_dark"], corner_radius=16)
        self.lbl_error = ctk.CTkLabel(
            self.error_overlay, text="", font=self.font_h2, text_color=COLORS["text_primary"]
        )
        self.lbl_error.pack(padx=32, pady=(24, 4))
        ctk.CTkLabel(
            self.error_overlay, text="There was an issue playing this video",
            font=self.font_small, text_color=COLORS["text_secondary"]
        ).pack(padx=32)
        ctk.CTkButton(
            self.error_overlay, text="Reload Player", command=self.reload_player,
            fg_color=COLORS["primary"], hover_color=COLORS["primary_hover"], corner_radius=10
        ).pack(pady=(16, 24))

        self.toast = ctk.CTkLabel(
            self.stage, text="", font=self.font_body, fg_color=COLORS["chip"],
            text_color=COLORS["text_primary"], corner_radius=10
        )
        self._toast_job = None

    def create_details(self):
        details = ctk.CTkScrollableFrame(self, fg_color="transparent", height=260)
        details.grid(row=2, column=0, sticky="ew", padx=20, pady=16)
        details.grid_columnconfigure(1, weight=1)

        self.lbl_cover = ctk.CTkLabel(details, text="", width=96, height=136,
                                      fg_color=COLORS["chip"], corner_radius=8)
        self.lbl_cover.grid(row=0, column=0, rowspan=3, sticky="n", padx=(0, 16))

        self.quality_frame = ctk.CTkFrame(details, fg_color="transparent")
        self.quality_frame.grid(row=0, column=1, sticky="w")

        self.lbl_info = ctk.CTkLabel(details, text="", font=self.font_small,
                                     text_color=COLORS["text_secondary"])
        self.lbl_info.grid(row=1, column=1, sticky="w", pady=(8, 8))

        self.episodes_frame = ctk.CTkFrame(details, fg_color="transparent")
        self.episodes_frame.grid(row=2, column=1, sticky="ew")

    def bind_keys(self):
        self.bind("<space>", lambda _e: self.engine.toggle_play())
        self.bind("<f>", lambda _e: self.engine.toggle_fullscreen())
        self.bind("<m>", lambda _e: self.engine.toggle_mute())
        self.bind("<Left>", lambda _e: self.engine.seek(self.engine.ui_state.current_time - 10))
        self.bind("<Right>", lambda _e: self.engine.seek(self.engine.ui_state.current_time + 10))
        self.bind("<Escape>", lambda _e: self._exit_fullscreen())

    # --- episode loading ---

    def open_episode(self, episode_id: str):
        """Resolve an episode in the background and start playback."""
        self.episode_id = episode_id
        self.show_loading()
        token = self.controller.begin_request()
        threading.Thread(target=self._prepare_worker, args=(episode_id, token), daemon=True).start()

    def _prepare_worker(self, episode_id: str, token: int):
        """Worker thread for resolving the episode."""
        try:
            context = self.controller.prepare(self.anime_id, episode_id)
            self.after(0, lambda: self._apply_if_current(token, self.handle_prepared, context))
        except Exception as e:
            logger.error(f"Failed to prepare episode {episode_id}: {e}", exc_info=True)
            log_error(f"Failed to prepare episode {episode_id}", e)
            self.after(0, lambda: self._apply_if_current(
                token, self.show_error, "Failed to load episode data."))
        finally:
            self.after(0, lambda: self._apply_if_current(token, self.hide_loading))

    def _apply_if_current(self, token: int, fn, *args):
        # A newer episode was requested while this one was resolving
        if not self.controller.is_current(token):
            logger.debug(f"Dropping stale episode request {token}")
            return
        fn(*args)

    def handle_prepared(self, context: WatchContext):
        self.context = context
        self.lbl_header_title.configure(text=context.title)
        self.lbl_header_subtitle.configure(text=context.anime.title if context.anime else "")
        self.controls.set_title(context.title)
        self.render_qualities()
        self.render_info()
        self.episode_page = self.controller.page_of_current(context)
        self.render_episodes()
        if context.anime and context.anime.image:
            threading.Thread(target=self._load_cover, args=(context.anime.image,), daemon=True).start()

        self.controller.start(
            self.engine, context,
            autoplay=self.config_store.autoplay,
            on_error=self.on_playback_error,
            on_notice=self.show_toast,
        )

    def render_qualities(self):
        for widget in self.quality_frame.winfo_children():
            widget.destroy()
        if not self.context or not self.context.sources:
            return
        ctk.CTkLabel(self.quality_frame, text="Video Quality", font=self.font_small,
                     text_color=COLORS["text_secondary"]).pack(side="left", padx=(0, 8))
        for source in self.context.sources:
            ctk.CTkButton(
                self.quality_frame, text=source.quality, width=64, height=28,
                fg_color=COLORS["chip"], hover_color=COLORS["chip_hover"], corner_radius=14,
                font=self.font_small,
                command=lambda q=source.quality: self.engine.switch_quality(q)
            ).pack(side="left", padx=3)

    def render_info(self):
        anime = self.context.anime if self.context else None
        parts = []
        if anime and anime.type:
            parts.append(anime.type)
        if anime and anime.status:
            parts.append(anime.status)
        if self.context and self.context.episode_number is not None:
            parts.append(f"Episode {self.context.episode_number}")
        self.lbl_info.configure(text="  •  ".join(parts))

    def render_episodes(self):
        for widget in self.episodes_frame.winfo_children():
            widget.destroy()
        if not self.context:
            return
        page = self.controller.page(self.context, self.episode_page)
        if not page.episodes:
            return

        if page.total_pages > 1:
            nav = ctk.CTkFrame(self.episodes_frame, fg_color="transparent")
            nav.grid(row=0, column=0, columnspan=EPISODE_COLUMNS, sticky="ew", pady=(0, 8))
            ctk.CTkButton(
                nav, text="‹ Previous", width=96, fg_color=COLORS["chip"], corner_radius=14,
                state="normal" if page.has_previous else "disabled",
                command=lambda: self.change_page(-1)
            ).pack(side="left")
            ctk.CTkLabel(
                nav, font=self.font_small, text_color=COLORS["text_secondary"],
                text=(f"Page {page.page + 1} of {page.total_pages}   "
                      f"Episodes {page.first_position}-{page.last_position} of {page.total}")
            ).pack(side="left", expand=True)
            ctk.CTkButton(
                nav, text="Next ›", width=96, fg_color=COLORS["chip"], corner_radius=14,
                state="normal" if page.has_next else "disabled",
                command=lambda: self.change_page(1)
            ).pack(side="right")

        for idx, episode in enumerate(page.episodes):
            current = episode.id == self.context.episode_id
            ctk.CTkButton(
                self.episodes_frame, text=f"EP {episode.number}", width=64, height=32,
                fg_color=COLORS["primary"] if current else COLORS["chip"],
                hover_color=COLORS["primary_hover"] if current else COLORS["chip_hover"],
                corner_radius=16, font=self.font_small,
                command=lambda ep=episode.id: self.open_episode(ep)
            ).grid(row=1 + idx // EPISODE_COLUMNS, column=idx % EPISODE_COLUMNS, padx=3, pady=3)

    def change_page(self, delta: int):
        self.episode_page += delta
        self.render_episodes()

    def _load_cover(self, url: str):
        try:
            resp = requests.get(url, timeout=10)
            resp.raise_for_status()
            pil_img = Image.open(BytesIO(resp.content))
            pil_img = pil_img.resize((96, 136), Image.Resampling.LANCZOS)
            ctk_img = CTkImage(light_image=pil_img, dark_image=pil_img, size=(96, 136))
            self.after(0, lambda: self.lbl_cover.configure(image=ctk_img))
        except (requests.RequestException, OSError) as e:
            logger.warning(f"Cover image unavailable: {e}")

    # --- playback feedback ---

    def on_playback_state(self, state: PlaybackUIState):
        if state.error_message:
            self.show_error(state.error_message)
        else:
            self.hide_error()

    def on_playback_error(self, error: Exception):
        logger.error(f"Video player error: {error}")
        log_error(f"Video player error: {error}")

    def show_error(self, message: str):
        self.lbl_error.configure(text=message)
        self.error_overlay.place(relx=0.5, rely=0.45, anchor="center")
        self.error_overlay.lift()

    def hide_error(self):
        self.error_overlay.place_forget()

    def reload_player(self):
        self.hide_error()
        if self.context is None:
            self.open_episode(self.episode_id)
        else:
            self.engine.reload()

    def show_toast(self, title: str, message: str):
        self.toast.configure(text=f"  {title}: {message}  ")
        self.toast.place(relx=0.5, rely=0.05, anchor="n")
        self.toast.lift()
        if self._toast_job:
            self.after_cancel(self._toast_job)
        self._toast_job = self.after(TOAST_MS, self.toast.place_forget)

    def show_loading(self):
        """Show loading overlay."""
        if not hasattr(self, "loading_overlay"):
            self.loading_overlay = ctk.CTkFrame(self.stage, fg_color=COLORS["surface_dark"], corner_radius=16)
            ctk.CTkLabel(self.loading_overlay, text="⏳", font=("Helvetica", 48),
                         text_color=COLORS["text_primary"]).pack(pady=20, padx=40)
            ctk.CTkLabel(self.loading_overlay, text="Loading episode...", font=self.font_h2,
                         text_color=COLORS["text_primary"]).pack(pady=(0, 20), padx=40)
        self.loading_overlay.place(relx=0.5, rely=0.45, anchor="center")
        self.loading_overlay.lift()

    def hide_loading(self):
        """Hide loading overlay."""
        if hasattr(self, "loading_overlay") and self.loading_overlay.winfo_exists():
            self.loading_overlay.place_forget()

    # --- window ---

    def _set_fullscreen(self, flag: bool):
        self.attributes("-fullscreen", flag)

    def _exit_fullscreen(self):
        if self.engine.ui_state.is_fullscreen:
            self.engine.toggle_fullscreen()

    def on_close(self):
        self.config_store.set_volume(self.engine.ui_state.volume)
        self.engine.destroy()
        self.media.close()
        self.destroy()
