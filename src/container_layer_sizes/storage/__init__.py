"""Persistence of image histories."""

from .history import HistoryStore

__all__ = ["HistoryStore"]
