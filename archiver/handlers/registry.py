"""Origin-keyed registry routing queue URLs to download handlers."""

from __future__ import annotations

import importlib.util
import inspect
import logging
import sys
from collections.abc import Iterable
from pathlib import Path
from types import ModuleType

from archiver.handlers.base import DownloadHandler, handler_origin, is_handler_class
from archiver.utils.settings import resolve_dotted_path
from archiver.utils.url import extract_origin, normalize_origin

logger = logging.getLogger(__name__)

PLUGIN_NAMESPACE = "archiver_plugins"
PLUGIN_ENTRY_POINT = "register"


class PluginError(RuntimeError):
    """A plugin could not be loaded; it is skipped and startup continues."""


class HandlerRegistry:
    """Maps origins (`scheme://host`) to handler classes.

    Responsibilities:
      - Register built-in handler classes (classes or dotted paths)
      - Load plugins from a directory; each plugin exposes `register(registry)`
        and registers its handlers explicitly
      - Resolve a URL to a fresh handler instance, or None on a miss

    Routing Logic:
      1. The URL is reduced to its lower-cased `scheme://host`
      2. The origin is looked up; the last registration for an origin wins
      3. A miss returns None, which the worker records as a failed download

    The registry is frozen once `initialize()` returns.

    Example plugin (``Plugins/manga.py``):

      @download_handler("https://manga.example")
      class MangaHandler:
          async def download(self, url, destination_root, max_threads):
              ...

      def register(registry):
          registry.register_type(MangaHandler)
    """

    __slots__ = ("_handlers", "_frozen", "_plugins")

    def __init__(self) -> None:
        self._handlers: dict[str, type] = {}
        self._frozen = False
        self._plugins: dict[str, ModuleType] = {}

    # Registration

    def register(self, origin: str, handler_cls: type) -> None:
        """Register `handler_cls` for `origin`, replacing any earlier registration.

        Raises:
            RuntimeError: if the registry is frozen
            TypeError: if `handler_cls` is not a class implementing DownloadHandler
            InvalidUrl: if `origin` is not an absolute `scheme://host`
        """
        if self._frozen:
            raise RuntimeError("Cannot register handlers: registry is initialized")

        if not inspect.isclass(handler_cls):
            raise TypeError(f"Handler for {origin!r} must be a class, got {type(handler_cls)!r}")
        if not is_handler_class(handler_cls):
            raise TypeError(
                f"Handler {handler_cls.__qualname__} does not implement DownloadHandler "
                "(missing download())"
            )

        key = normalize_origin(origin)
        previous = self._handlers.get(key)
        if previous is not None and previous is not handler_cls:
            logger.debug(
                "Handler for %s replaced: %s -> %s",
                key,
                _describe(previous),
                _describe(handler_cls),
            )
        self._handlers[key] = handler_cls

    def register_type(self, handler_cls: type) -> None:
        """Register a class carrying its own origin (see `@download_handler`)."""
        origin = handler_origin(handler_cls)
        if origin is None:
            raise TypeError(
                f"{getattr(handler_cls, '__qualname__', handler_cls)!r} declares no origin; "
                "decorate it with @download_handler(...)"
            )
        self.register(origin, handler_cls)

    def initialize(
        self,
        plugin_directory: str | Path | None = None,
        builtins: Iterable[type | str] = (),
    ) -> None:
        """Build the registry: built-ins first, then plugins, then freeze.

        Plugins load after built-ins so a plugin can shadow a built-in origin.
        Broken built-ins and plugins are logged and skipped.
        """
        if self._frozen:
            raise RuntimeError("HandlerRegistry is already initialized")

        for token in builtins:
            try:
                handler_cls = resolve_dotted_path(token, token_name="HANDLERS")
                self.register_type(handler_cls)  # type: ignore[arg-type]
            except Exception:
                logger.exception("Skipping built-in handler %r", token)

        if plugin_directory is not None:
            self.load_plugins(plugin_directory)

        self._frozen = True
        logger.info("Loaded %d handlers: %s", len(self._handlers), self.summary())

    # Plugins

    def load_plugins(self, plugin_directory: str | Path) -> int:
        """Load every plugin in `plugin_directory`; return how many loaded.

        A plugin is a `*.py` file or a package directory with `__init__.py`.
        Plugins load in name order. A missing directory is not an error.
        """
        directory = Path(plugin_directory)
        if not directory.is_dir():
            logger.info("Plugin directory %s not found, no plugins loaded", directory)
            return 0

        loaded = 0
        for path in sorted(directory.iterdir(), key=lambda p: p.name):
            if path.name.startswith(("_", ".")):
                continue
            if path.is_file() and path.suffix == ".py":
                entry = path
            elif path.is_dir() and (path / "__init__.py").is_file():
                entry = path / "__init__.py"
            else:
                continue

            snapshot = dict(self._handlers)
            try:
                self._load_plugin(path.stem if path.is_file() else path.name, entry)
            except Exception:
                # Drop anything the plugin registered before it failed
                self._handlers = snapshot
                logger.exception("Skipping plugin %s", path)
                continue
            loaded += 1

        logger.debug("Loaded %d plugins from %s", loaded, directory)
        return loaded

    def _load_plugin(self, name: str, entry: Path) -> None:
        module_name = f"{PLUGIN_NAMESPACE}.{name}"
        search = [str(entry.parent)] if entry.name == "__init__.py" else None
        spec = importlib.util.spec_from_file_location(
            module_name, entry, submodule_search_locations=search
        )
        if spec is None or spec.loader is None:
            raise PluginError(f"Cannot load plugin from {entry}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
            hook = getattr(module, PLUGIN_ENTRY_POINT, None)
            if not callable(hook):
                raise PluginError(f"Plugin {entry} has no callable {PLUGIN_ENTRY_POINT}(registry)")
            hook(self)
        except BaseException:
            sys.modules.pop(module_name, None)
            raise

        self._plugins[name] = module
        logger.debug("Loaded plugin %s from %s", name, entry)

    # Resolution

    def lookup(self, url: str) -> type | None:
        """Return the handler class registered for the origin of `url`."""
        return self._handlers.get(extract_origin(url))

    def resolve(self, url: str) -> DownloadHandler | None:
        """Return a new handler instance for `url`, or None when no handler applies.

        Raises:
            InvalidUrl: if `url` is empty or not absolute
        """
        handler_cls = self.lookup(url)
        if handler_cls is None:
            return None
        try:
            return handler_cls()
        except Exception:
            logger.exception("Failed to construct handler %s for %s", _describe(handler_cls), url)
            return None

    # Introspection

    def origins(self) -> list[str]:
        return sorted(self._handlers)

    def describe(self) -> dict[str, str]:
        """Return origin -> `module.Class` for every registration, sorted by origin."""
        return {origin: _describe(self._handlers[origin]) for origin in self.origins()}

    def summary(self) -> str:
        return ", ".join(f"{o} -> {c}" for o, c in self.describe().items()) or "(none)"

    @property
    def plugins(self) -> list[str]:
        return list(self._plugins)

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, origin: object) -> bool:
        if not isinstance(origin, str):
            return False
        try:
            return normalize_origin(origin) in self._handlers
        except ValueError:
            return False


def _describe(handler_cls: type) -> str:
    return f"{handler_cls.__module__}.{handler_cls.__qualname__}"


__all__ = ["HandlerRegistry", "PluginError", "PLUGIN_NAMESPACE"]
