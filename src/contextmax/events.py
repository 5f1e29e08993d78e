"""Event types and an in-process state store for observers of the workspace.

The repository and ranker are plain synchronous/async code; observers (a UI,
an MCP session, tests) subscribe here and are notified after a change has
been committed.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger

# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------


class GraphChange(StrEnum):
    CREATED = "created"
    DELETED = "deleted"
    RENAMED = "renamed"
    UPDATED = "updated"
    FILES = "files"
    USES = "uses"
    LOADED = "loaded"
    PRUNED = "pruned"


@dataclass(frozen=True)
class GraphChanged:
    """The context-set graph or the file manifest was mutated."""

    change: GraphChange
    set_names: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SearchCompleted:
    """A search finished and was not superseded by a newer query."""

    query: str
    generation: int
    result_count: int
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class EmbedProgress:
    """Progress of a batch embedding run (0-100)."""

    done: int
    total: int
    percent: int
    path: str = ""


Event = GraphChanged | SearchCompleted | EmbedProgress


def event_to_dict(event: Event) -> dict[str, Any]:
    return {"type": type(event).__name__, **asdict(event)}


# ---------------------------------------------------------------------------
# StateStore
# ---------------------------------------------------------------------------

Subscriber = Callable[[Event], None]


class StateStore:
    """Synchronous publish/subscribe container.

    Subscribers are called in subscription order.  A failing subscriber is
    logged and does not prevent delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[Subscriber, tuple[type, ...] | None]] = []
        self._last: dict[type, Event] = {}

    def subscribe(self, callback: Subscriber, *event_types: type) -> Callable[[], None]:
        """Register *callback*, optionally filtered to *event_types*.

        Returns a function that unsubscribes it.
        """
        entry = (callback, event_types or None)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        self._last[type(event)] = event
        for callback, types in list(self._subscribers):
            if types is not None and not isinstance(event, types):
                continue
            try:
                callback(event)
            except Exception:
                logger.opt(exception=True).warning("Subscriber {!r} failed on {}", callback, type(event).__name__)

    def last(self, event_type: type) -> Event | None:
        """Most recently published event of *event_type*, if any."""
        return self._last.get(event_type)
