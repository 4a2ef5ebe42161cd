"""FastAPI application exposing StoryMap editing and playback endpoints."""

from .app import create_app
from .settings import StoryMapSettings

__all__ = ["create_app", "StoryMapSettings"]
