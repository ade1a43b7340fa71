"""Converters turn a claimed job's input into its web-friendly output."""

from .image import convert_image
from .video import convert_video, should_remux

__all__ = ["convert_image", "convert_video", "should_remux"]
