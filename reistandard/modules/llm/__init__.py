"""Notification content resolution."""

from reistandard.modules.llm.generator import (
    CompletionError,
    ContentError,
    ContentGenerator,
    StorageCorruptionError,
)

__all__ = ["CompletionError", "ContentError", "ContentGenerator", "StorageCorruptionError"]
