"""Render short vertical videos from clips, overlays and audio with ffmpeg."""

__version__ = "0.1.0"
