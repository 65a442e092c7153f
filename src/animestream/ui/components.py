"""Shared UI constants and helpers."""

import math

# Color theme for the player
COLORS = {
    "primary": "#8b5cf6",
    "primary_hover": "#7c3aed",
    "background_dark": "#030712",
    "surface_dark": "#111827",
    "border": "#1f2937",
    "text_primary": "#ffffff",
    "text_secondary": "#9ca3af",
    "video_bg": "#000000",
    "chip": "#1f2937",
    "chip_hover": "#374151",
    "accent_green": "#22c55e",
    "accent_blue": "#3b82f6",
    "accent_error": "#ef4444",
}


def format_time(seconds: float) -> str:
    """Format a position like a player clock (M:SS or H:MM:SS)."""
    if not seconds or seconds <= 0 or math.isnan(seconds) or math.isinf(seconds):
        return "0:00"

    total_seconds = int(float(seconds))
    if total_seconds < 3600:
        minutes = total_seconds // 60
        secs = total_seconds % 60
        return f"{minutes}:{secs:02d}"
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    secs = total_seconds % 60
    return f"{hours}:{minutes:02d}:{secs:02d}"
