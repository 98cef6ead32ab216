from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .models import StorageHealthSnapshot


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StorageEvent:
    kind: str  # write | remove | clear
    key: Optional[str] = None
    success: bool = True


Listener = Callable[[StorageEvent], None]


class Subscription:
    """Handle returned by `DraftSession.subscribe`; releases the listener on close."""

    def __init__(self, session: "DraftSession", listener: Listener) -> None:
        self._session = session
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if self._active:
            self._session._release(self._listener)
            self._active = False

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@dataclass
class DraftSession:
    """
    Mutable state shared by the components of one wizard instance.

    Created per facade and passed explicitly; nothing here is process-wide.
    """

    entity_id: str
    url: Optional[str] = None
    last_health: Optional[StorageHealthSnapshot] = None
    _listeners: List[Listener] = field(default_factory=list)
    _subscriptions: List[Subscription] = field(default_factory=list)

    def subscribe(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)
        sub = Subscription(self, listener)
        self._subscriptions.append(sub)
        return sub

    def _release(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def publish(self, event: StorageEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("storage event listener failed for %s", event.kind)

    def close(self) -> None:
        for sub in list(self._subscriptions):
            sub.close()
        self._subscriptions.clear()
        self._listeners.clear()
