"""
Events - Change notifications for index observers.

Observers (cache invalidation, UI refresh) subscribe explicitly and get an
IndexChangeEvent after a share index has been replaced. Delivery is
fire-and-forget: a failing observer is logged and never affects the
update that produced the event.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Set, Union

from .models import IndexChangeEvent


logger = logging.getLogger(__name__)

Observer = Callable[[IndexChangeEvent], Union[None, Awaitable[None]]]


class ChangeNotifier:
    """Explicit observer list for IndexChangeEvents."""

    def __init__(self):
        self._observers: List[Observer] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """
        Register an observer (plain function or coroutine function).

        Returns:
            A callable that unsubscribes the observer
        """
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: IndexChangeEvent):
        """Deliver an event to every observer without waiting on them."""
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_observer_done)
            except Exception as e:
                logger.error(f"Index observer failed for share {event.share_id}: {e}")

    def _on_observer_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async index observer failed: {task.exception()}")

    @property
    def observer_count(self) -> int:
        return len(self._observers)
