"""Media encoding adapters."""

from .encoder import QUALITY_PRESETS, EncodeOptions, Encoder, FFmpegEncoder, build_command

__all__ = [
    "EncodeOptions",
    "Encoder",
    "FFmpegEncoder",
    "QUALITY_PRESETS",
    "build_command",
]
