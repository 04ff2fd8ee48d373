"""Collaborator interfaces the engine depends on.

The engine talks to its environment only through these protocols: a keyed
progress store and a user-interface signal surface. Every registration on
the surface returns an unsubscribe callable so that the detector can own
its listeners as a flat list of handles.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

Unsubscribe = Callable[[], None]


class ProgressStoreError(Exception):
    """Raised by a progress store when an operation fails."""


class InvalidSelectorError(ValueError):
    """Raised by a surface for a malformed targeting expression."""


@dataclass
class UIEvent:
    """An interaction event delivered by the surface.

    Attributes:
        type: Event name, e.g. ``"click"`` or ``"keydown"``.
        target: Surface-specific element the event was dispatched on.
        key: Key name for keyboard events.
        ctrl_key: Whether the control modifier was held.
        detail: Extra event payload.
    """

    type: str
    target: Any = None
    key: str | None = None
    ctrl_key: bool = False
    detail: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ProgressStore(Protocol):
    """Keyed record store for tutorial progress rows.

    Implementations raise :class:`ProgressStoreError` on failure. A missing
    row is not a failure: :meth:`get` returns None.
    """

    async def insert(self, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a new row keyed by ``record["user_id"]`` and return it."""
        ...

    async def get(self, user_id: str) -> dict[str, Any] | None:
        """Return the row for ``user_id`` or None."""
        ...

    async def update(self, user_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial update and return the resulting row."""
        ...

    async def append_event(self, event: dict[str, Any]) -> None:
        """Append an analytics event."""
        ...


@runtime_checkable
class UISurface(Protocol):
    """The interaction capabilities the detector relies on."""

    def add_event_listener(self, event_type: str, handler: Callable[[UIEvent], None]) -> Unsubscribe:
        """Listen for interaction events anywhere under the root region."""
        ...

    def matches(self, target: Any, selector: str) -> bool:
        """Whether ``target`` itself matches ``selector``."""
        ...

    def closest(self, target: Any, selector: str) -> Any | None:
        """Nearest ancestor-or-self of ``target`` matching ``selector``."""
        ...

    def observe(self, region: str | None, callback: Callable[[], None]) -> Unsubscribe:
        """Call ``callback`` whenever content under ``region`` changes."""
        ...

    def query_all(self, selector: str, region: str | None = None) -> list[Any]:
        """Elements currently matching ``selector`` under ``region``."""
        ...

    def add_signal_listener(
        self, name: str, handler: Callable[[dict[str, Any]], None]
    ) -> Unsubscribe:
        """Listen on a named out-of-band signal channel."""
        ...
