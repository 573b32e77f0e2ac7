"""aiohttp applications of the analyzer and storage services."""

from .analyzer import create_app as create_analyzer_app
from .storage import create_app as create_storage_app

__all__ = ["create_analyzer_app", "create_storage_app"]
