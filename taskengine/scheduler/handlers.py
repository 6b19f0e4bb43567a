"""Handler registry: statically addressable task handlers.

Persisted tasks cannot carry closures across a restart, so they store a
``(module, function)`` pair instead. This registry maps those pairs to
callables and resolves them again at load time.
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING, Any

from taskengine.scheduler.errors import HandlerResolutionError
from taskengine.scheduler.models import HandlerRef

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class HandlerRegistry:
    """Catalog of named handlers.

    Register at import time, either as a decorator::

        @handlers.register
        async def rotate_presence(context: dict) -> None:
            ...

    or with an explicit name::

        handlers.register(backup_db, module="jobs", function="nightly_backup")

    Handlers that are plain module-level functions resolve through
    ``importlib`` even when they were never registered.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}

    def register(
        self,
        fn: Callable[..., Any] | None = None,
        *,
        module: str | None = None,
        function: str | None = None,
    ) -> Callable:
        """Register *fn* under ``module:function`` (defaults from the callable)."""

        def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
            if not callable(f):
                msg = f"Task handler must be callable, got {type(f).__name__}"
                raise TypeError(msg)
            ref = HandlerRef(
                module or f.__module__,
                function or getattr(f, "__qualname__", type(f).__name__),
            )
            existing = self._handlers.get(ref.key)
            if existing is not None and existing is not f:
                msg = f"Handler '{ref.key}' is already registered"
                raise ValueError(msg)
            self._handlers[ref.key] = f
            logger.debug("Registered task handler %s", ref.key)
            return f

        if fn is not None:
            return decorator(fn)
        return decorator

    def unregister(self, ref: HandlerRef) -> bool:
        """Remove a registration. Returns True if it existed."""
        return self._handlers.pop(ref.key, None) is not None

    @property
    def names(self) -> list[str]:
        """All registered handler keys."""
        return list(self._handlers.keys())

    # -- Lookup ----------------------------------------------------------------

    def reference_for(self, fn: Callable[..., Any]) -> HandlerRef | None:
        """Return the static address of *fn*, or None if it has none.

        Registered handlers use their registration key. Otherwise the
        callable's own module and qualified name are used, provided they
        resolve back to the very same object (lambdas, closures and bound
        methods do not).
        """
        for key, registered in self._handlers.items():
            if registered is fn:
                return HandlerRef.parse(key)

        module = getattr(fn, "__module__", None)
        qualname = getattr(fn, "__qualname__", None)
        if not module or not qualname or "<" in qualname:
            return None
        ref = HandlerRef(module, qualname)
        try:
            resolved = self._import(ref)
        except HandlerResolutionError:
            return None
        return ref if resolved is fn else None

    def resolve(self, module: str, function: str) -> Callable[..., Any]:
        """Return the callable addressed by *module* and *function*.

        Raises ``HandlerResolutionError`` if it cannot be found.
        """
        ref = HandlerRef(module, function)
        registered = self._handlers.get(ref.key)
        if registered is not None:
            return registered
        return self._import(ref)

    def resolve_name(self, name: str) -> tuple[Callable[..., Any], HandlerRef]:
        """Resolve a ``"module:function"`` string to its callable and address."""
        try:
            ref = HandlerRef.parse(name)
        except ValueError as exc:
            raise HandlerResolutionError(str(exc)) from exc
        return self.resolve(*ref), ref

    @staticmethod
    def _import(ref: HandlerRef) -> Callable[..., Any]:
        try:
            target: Any = importlib.import_module(ref.module)
            for attr in ref.function.split("."):
                target = getattr(target, attr)
        except (ImportError, AttributeError) as exc:
            msg = f"Cannot resolve handler {ref.key}: {exc}"
            raise HandlerResolutionError(msg) from exc
        if not callable(target):
            msg = f"Handler {ref.key} is not callable"
            raise HandlerResolutionError(msg)
        return target


# Default registry. Register persisted task handlers here at startup.
handlers = HandlerRegistry()
