"""Configuration for Doc Vector Search."""

from .settings import ProjectConfig

__all__ = ["ProjectConfig"]
