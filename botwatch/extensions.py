"""
botwatch extension/plugin system.

Lets external packages react to session events (forward errors to a pager,
mirror mentions somewhere else) without touching the supervisor.

Usage (in an external package's pyproject.toml):
    [project.entry-points."botwatch.extensions"]
    pager = "mypkg.hooks:register_all"

The entry point is called with the session's ExtensionRegistry:
    def register_all(registry):
        registry.register("event.classified", my_handler)

Events emitted by the supervisor:
    event.classified   one classified line (event dict + "category")
    health.hang        {"timeSinceActivity": seconds, "activityCount": n}
    session.report     report dict + {"paths": {"json": ..., "markdown": ...}}

Each SessionSupervisor owns its own registry, so handlers registered on one
session never see another session's events.
"""
from __future__ import annotations

import importlib.metadata
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger("botwatch.extensions")

ENTRY_POINT_GROUP = "botwatch.extensions"


class ExtensionRegistry:
    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}
        self._loaded = False

    def register(self, event: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        """Register a handler for a named event."""
        self._handlers.setdefault(event, []).append(handler)
        logger.debug(f"Registered handler {handler.__name__!r} for event {event!r}")

    def unregister(self, event: str, handler: Callable) -> None:
        """Remove a specific handler for an event."""
        if event in self._handlers:
            try:
                self._handlers[event].remove(handler)
            except ValueError:
                pass

    def emit(self, event: str, payload: Dict[str, Any] | None = None) -> None:
        """
        Fire an event. All registered handlers are called synchronously on the
        event loop thread. Handler exceptions are logged, never propagated.
        """
        if payload is None:
            payload = {}
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception as exc:
                logger.warning(
                    f"Extension handler {handler.__name__!r} raised on event {event!r}: {exc}"
                )

    def load_plugins(self) -> None:
        """
        Auto-discover plugins via entry points. Runs once per registry.

        The entry point value must be a callable that takes the registry and
        calls register() on it for each event it handles.
        """
        if self._loaded:
            return
        self._loaded = True

        try:
            eps = importlib.metadata.entry_points(group=ENTRY_POINT_GROUP)
        except Exception as exc:
            logger.debug(f"Entry point discovery failed: {exc}")
            return

        for ep in eps:
            try:
                fn = ep.load()
                fn(self)
                logger.info(f"Loaded botwatch extension plugin: {ep.name!r}")
            except Exception as exc:
                logger.warning(f"Failed to load extension plugin {ep.name!r}: {exc}")

    def registered_events(self) -> List[str]:
        """Return list of events that have at least one handler registered."""
        return [k for k, v in self._handlers.items() if v]

    def handler_count(self, event: str) -> int:
        """Return number of handlers registered for an event."""
        return len(self._handlers.get(event, []))
