"""
Extension hooks for the jukebox.

Handlers are registered per (component, event) pair and invoked in
registration order. A handler may return ``HookSignal.STOP`` to keep the
remaining handlers for that event from running; any other return value is
collected and handed back to the caller.

Handler failures are logged and never propagate: playback must continue no
matter what an extension does.
"""

import enum
import importlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

HookHandler = Callable[[str, str, Dict[str, Any]], Any]


class HookSignal(enum.Enum):
    """Short-circuit signal returned by handlers and by fire_event()."""
    CONTINUE = 1
    STOP = 2


@dataclass
class HookResult:
    """Values collected from one fire_event() call."""
    results: List[Any] = field(default_factory=list)
    signal: HookSignal = HookSignal.CONTINUE

    @property
    def stopped(self) -> bool:
        return self.signal is HookSignal.STOP


def resolve_handler(target: str) -> HookHandler:
    """
    Import a handler given as ``module:function``.

    Raises:
        ValueError: If target is malformed or does not name a callable
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid hook target: {target!r} (expected module:function)")

    module = importlib.import_module(module_name)
    handler = getattr(module, attr, None)
    if not callable(handler):
        raise ValueError(f"Hook target {target!r} is not callable")
    return handler


class HookRegistry:
    """Registered-handler table: (component, event) -> ordered handlers."""

    def __init__(self):
        self._handlers: Dict[Tuple[str, str], List[HookHandler]] = {}
        self._lock = threading.Lock()

    def register(self, component: str, event: str, handler: HookHandler) -> None:
        with self._lock:
            self._handlers.setdefault((component, event), []).append(handler)
        logger.debug(f"[HOOKS] Registered {getattr(handler, '__name__', handler)!s} for {component}.{event}")

    def handlers_for(self, component: str, event: str) -> List[HookHandler]:
        with self._lock:
            return list(self._handlers.get((component, event), []))

    def load_specs(self, specs: Iterable[Tuple[str, str, str]]) -> None:
        """
        Register handlers from configuration.

        A handler that cannot be imported is logged and skipped; the rest of
        the table still loads.
        """
        for component, event, target in specs:
            try:
                handler = resolve_handler(target)
            except (ImportError, ValueError) as e:
                logger.error(f"[HOOKS] Could not load {target} for {component}.{event}: {e}")
                continue
            self.register(component, event, handler)

    def fire_event(self, component: str, event: str, params: Optional[Dict[str, Any]] = None) -> HookResult:
        """
        Invoke every handler registered for (component, event).

        Args:
            component: Component name, e.g. "player"
            event: Event name, e.g. "song_start"
            params: Event parameters passed to each handler

        Returns:
            HookResult with the handlers' return values in order and the
            short-circuit signal
        """
        params = dict(params or {})
        outcome = HookResult()

        for handler in self.handlers_for(component, event):
            try:
                value = handler(component, event, params)
            except Exception as e:
                logger.warning(
                    f"[HOOKS] Handler {getattr(handler, '__name__', handler)!s} "
                    f"failed on {component}.{event}: {e}",
                    exc_info=True,
                )
                continue

            if value is HookSignal.STOP:
                outcome.signal = HookSignal.STOP
                logger.debug(f"[HOOKS] {component}.{event} stopped by {getattr(handler, '__name__', handler)!s}")
                break
            if value is not None and value is not HookSignal.CONTINUE:
                outcome.results.append(value)

        return outcome


def create_hook_registry(specs: Iterable[Tuple[str, str, str]] = ()) -> HookRegistry:
    """Build a registry populated from configuration specs."""
    registry = HookRegistry()
    registry.load_specs(specs)
    return registry
