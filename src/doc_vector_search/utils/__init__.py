"""Utility modules for Doc Vector Search."""

from .logging import setup_logging

__all__ = ["setup_logging"]
