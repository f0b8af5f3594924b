"""In-process metrics for the chat backend."""

from . import metrics
from .registry import registry

__all__ = ["metrics", "registry"]
