"""Handler registry keyed by ``(step_type, slug)``."""

from __future__ import annotations

import importlib
import logging
import threading
from importlib.metadata import entry_points
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..constants import HANDLER_ENTRY_POINT_GROUP
from ..errors import HandlerNotFoundError
from .models import HandlerDescriptor

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """
    Open registry mapping a step type and handler slug to a descriptor.

    Handlers register at import time (``register_handler`` decorator), from
    configured modules, or from the ``contentflow.handlers`` entry-point
    group. Modules and entry points are loaded lazily on the first lookup.

    Usage:
        registry = HandlerRegistry()
        registry.register("fetch", "rss", HandlerDescriptor(...))
        descriptor = registry.resolve("fetch", "rss")
    """

    def __init__(
        self,
        modules: Optional[Iterable[str]] = None,
        load_entry_points: bool = False,
    ) -> None:
        self._handlers: Dict[Tuple[str, str], HandlerDescriptor] = {}
        self._lock = threading.RLock()
        self._pending_modules: List[str] = list(modules or [])
        self._load_entry_points = load_entry_points
        self._loaded = False

    def register(self, step_type: str, slug: str, descriptor: HandlerDescriptor) -> None:
        """Register ``descriptor`` under ``(step_type, slug)``; last one wins."""
        if descriptor.step_type != step_type or descriptor.slug != slug:
            raise ValueError(
                f"Descriptor ({descriptor.step_type}, {descriptor.slug}) registered "
                f"under mismatched key ({step_type}, {slug})"
            )
        key = (step_type, slug)
        with self._lock:
            previous = self._handlers.pop(key, None)
            if previous is not None and previous != descriptor:
                logger.warning(
                    f"Handler {step_type}/{slug} re-registered with a different descriptor; "
                    f"{previous.implementation!r} replaced by {descriptor.implementation!r}"
                )
            self._handlers[key] = descriptor

    def resolve(self, step_type: str, slug: str) -> HandlerDescriptor:
        """Return the descriptor for ``(step_type, slug)``.

        Raises:
            HandlerNotFoundError: If nothing is registered for the pair.
        """
        self._ensure_loaded()
        with self._lock:
            descriptor = self._handlers.get((step_type, slug))
            if descriptor is None:
                registered = [s for (t, s) in self._handlers if t == step_type]
                raise HandlerNotFoundError(step_type, slug, registered)
            return descriptor

    def has(self, step_type: str, slug: str) -> bool:
        self._ensure_loaded()
        with self._lock:
            return (step_type, slug) in self._handlers

    def list_handlers(self, step_type: Optional[str] = None) -> List[HandlerDescriptor]:
        """Descriptors in registration order, optionally filtered by step type."""
        self._ensure_loaded()
        with self._lock:
            return [
                d
                for (t, _), d in self._handlers.items()
                if step_type is None or t == step_type
            ]

    def add_modules(self, modules: Iterable[str]) -> None:
        """Queue extra modules to import on the next lookup."""
        with self._lock:
            self._pending_modules.extend(modules)
            self._loaded = False

    # ------------------------------------------------------------------
    def _ensure_loaded(self) -> None:
        with self._lock:
            if self._loaded:
                return
            modules, self._pending_modules = self._pending_modules, []
            for module_name in modules:
                logger.debug(f"Importing handler module {module_name}")
                importlib.import_module(module_name)
            if self._load_entry_points:
                self._load_entry_points = False
                for ep in entry_points(group=HANDLER_ENTRY_POINT_GROUP):
                    target = ep.load()
                    if callable(target):
                        target(self)
                    logger.debug(f"Loaded handler entry point {ep.name}")
            self._loaded = True

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()


# Process-wide registry used by the ``register_handler`` decorator.
REGISTRY = HandlerRegistry(load_entry_points=True)


def register_handler(
    step_type: str,
    slug: str,
    label: Optional[str] = None,
    settings_schema: Any = None,
    requires_auth: bool = False,
    requires_tool_result: bool = False,
    registry: Optional[HandlerRegistry] = None,
) -> Callable[[Any], Any]:
    """Class decorator adding a handler to ``registry`` (default ``REGISTRY``)."""

    def decorator(implementation: Any) -> Any:
        target = registry or REGISTRY
        target.register(
            step_type,
            slug,
            HandlerDescriptor(
                step_type=step_type,
                slug=slug,
                label=label,
                settings_schema=settings_schema,
                requires_auth=requires_auth,
                requires_tool_result=requires_tool_result,
                implementation=implementation,
            ),
        )
        return implementation

    return decorator


__all__ = [
    "HandlerDescriptor",
    "HandlerRegistry",
    "REGISTRY",
    "register_handler",
]
