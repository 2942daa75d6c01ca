"""
toolgate providers module.

This module provides the completion API client used for summarization and
tool ranking.
"""

from toolgate.providers.base import CompletionClient, CompletionError, CompletionResponse

__all__ = ["CompletionClient", "CompletionError", "CompletionResponse"]
