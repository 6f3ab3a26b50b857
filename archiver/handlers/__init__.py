"""Download handlers and the registry that routes URLs to them.

- DownloadHandler: protocol every handler implements
- HandlerRegistry: origin -> handler class, built-ins plus directory plugins
- FileSetHandler: base class for handlers fetching a list of files
"""

from archiver.handlers.base import (
    DownloadHandler,
    DownloadResult,
    download_handler,
    handler_origin,
    is_handler_class,
)
from archiver.handlers.files import FileSetHandler
from archiver.handlers.registry import HandlerRegistry, PluginError

__all__ = [
    "DownloadHandler",
    "DownloadResult",
    "FileSetHandler",
    "HandlerRegistry",
    "PluginError",
    "download_handler",
    "handler_origin",
    "is_handler_class",
]
