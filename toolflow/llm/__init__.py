"""Text-generation collaborators."""

from .base import TextGenerator, extract_json, stream_or_suggest, supports_streaming
from .http import HttpTextGenerator

__all__ = [
    "TextGenerator",
    "HttpTextGenerator",
    "extract_json",
    "stream_or_suggest",
    "supports_streaming",
]
