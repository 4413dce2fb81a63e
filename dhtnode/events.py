import asyncio
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)


class EventEmitter:
    """Minimal in-process event emitter shared by a transport stack."""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[..., Any]]] = {}
        self._once_fired: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def on(self, event_name: str, callback: Callable[..., Any]) -> None:
        self._subscribers.setdefault(event_name, []).append(callback)

    def off(self, event_name: str, callback: Callable[..., Any]) -> None:
        if event_name in self._subscribers:
            self._subscribers[event_name] = [
                cb for cb in self._subscribers[event_name] if cb != callback
            ]

    def emit(self, event_name: str, *args: Any) -> None:
        for cb in list(self._subscribers.get(event_name, [])):
            try:
                result = cb(*args)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception:
                # one broken listener must not starve the others
                logger.exception(f"[EVENTS] Listener for '{event_name}' failed")

    def emit_once(self, event_name: str, *args: Any) -> bool:
        """Emit an event only the first time it is requested."""
        if event_name in self._once_fired:
            return False
        self._once_fired.add(event_name)
        self.emit(event_name, *args)
        return True
