"""HTML-backed user-interface surface.

``HtmlSurface`` keeps a parsed document and lets a host (or a test) drive
it: dispatch interaction events at elements, emit named signals, and
mutate regions of the document. It implements
:class:`~tutorflow.ports.UISurface` with CSS selectors evaluated by
BeautifulSoup.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import soupsieve
from bs4 import BeautifulSoup, Tag

from .ports import InvalidSelectorError, UIEvent, Unsubscribe

logger = logging.getLogger(__name__)

EMPTY_DOCUMENT = "<html><body></body></html>"


class HtmlSurface:
    """A document plus listener registries.

    Args:
        html: Initial document markup.
    """

    def __init__(self, html: str = EMPTY_DOCUMENT) -> None:
        self.soup = BeautifulSoup(html, "html.parser")
        self._listeners: defaultdict[str, list[Callable[[UIEvent], None]]] = defaultdict(list)
        self._signals: defaultdict[str, list[Callable[[dict[str, Any]], None]]] = defaultdict(list)
        self._observers: list[tuple[str | None, Callable[[], None]]] = []

    # -- UISurface -----------------------------------------------------------

    def add_event_listener(self, event_type: str, handler: Callable[[UIEvent], None]) -> Unsubscribe:
        return _register(self._listeners[event_type], handler)

    def add_signal_listener(
        self, name: str, handler: Callable[[dict[str, Any]], None]
    ) -> Unsubscribe:
        return _register(self._signals[name], handler)

    def observe(self, region: str | None, callback: Callable[[], None]) -> Unsubscribe:
        if region is not None:
            self._select_one(region)
        return _register(self._observers, (region, callback))

    def matches(self, target: Any, selector: str) -> bool:
        if not isinstance(target, Tag):
            return False
        try:
            return bool(target.css.match(selector))
        except soupsieve.SelectorSyntaxError as e:
            raise InvalidSelectorError(f"Invalid selector {selector!r}: {e}") from e

    def closest(self, target: Any, selector: str) -> Tag | None:
        if not isinstance(target, Tag):
            return None
        try:
            return target.css.closest(selector)
        except soupsieve.SelectorSyntaxError as e:
            raise InvalidSelectorError(f"Invalid selector {selector!r}: {e}") from e

    def query_all(self, selector: str, region: str | None = None) -> list[Tag]:
        root = self.soup if region is None else self._select_one(region)
        if root is None:
            return []
        try:
            return list(root.select(selector))
        except soupsieve.SelectorSyntaxError as e:
            raise InvalidSelectorError(f"Invalid selector {selector!r}: {e}") from e

    # -- driving -------------------------------------------------------------

    def find(self, selector: str) -> Tag | None:
        """First element matching ``selector``, or None."""
        return self._select_one(selector)

    def dispatch(
        self,
        event_type: str,
        target: Tag | str | None,
        key: str | None = None,
        ctrl_key: bool = False,
        detail: dict[str, Any] | None = None,
    ) -> UIEvent:
        """Deliver an interaction event to every listener of ``event_type``.

        Args:
            event_type: Event name such as ``"click"``.
            target: Element, or a selector resolved with :meth:`find`.
            key: Key name for keyboard events.
            ctrl_key: Whether the control modifier is held.
            detail: Extra payload.

        Returns:
            The delivered event.
        """
        if isinstance(target, str):
            target = self.find(target)
        event = UIEvent(
            type=event_type, target=target, key=key, ctrl_key=ctrl_key, detail=detail or {}
        )
        for handler in list(self._listeners.get(event_type, ())):
            handler(event)
        return event

    def emit_signal(self, name: str, detail: dict[str, Any] | None = None) -> None:
        for handler in list(self._signals.get(name, ())):
            handler(detail or {})

    def append_html(self, parent_selector: str, html: str) -> list[Tag]:
        """Append markup under the first element matching ``parent_selector``.

        Observers whose region contains the mutated element are notified.

        Raises:
            LookupError: If no element matches ``parent_selector``.
        """
        parent = self._select_one(parent_selector)
        if parent is None:
            raise LookupError(f"No element matches {parent_selector!r}")
        fragment = BeautifulSoup(html, "html.parser")
        added = [child for child in list(fragment.contents)]
        for child in added:
            parent.append(child)
        self._notify(parent)
        return [node for node in added if isinstance(node, Tag)]

    def remove(self, selector: str) -> int:
        """Remove every element matching ``selector`` and notify observers."""
        nodes = self.query_all(selector)
        parents = [node.parent for node in nodes if node.parent is not None]
        for node in nodes:
            node.decompose()
        for parent in parents:
            self._notify(parent)
        return len(nodes)

    # -- internals -----------------------------------------------------------

    def _select_one(self, selector: str) -> Tag | None:
        try:
            return self.soup.select_one(selector)
        except soupsieve.SelectorSyntaxError as e:
            raise InvalidSelectorError(f"Invalid selector {selector!r}: {e}") from e

    def _notify(self, mutated: Tag) -> None:
        for region, callback in list(self._observers):
            if region is None:
                callback()
                continue
            try:
                root = self._select_one(region)
            except InvalidSelectorError:
                continue
            if root is None:
                continue
            if root is mutated or any(p is root for p in mutated.parents):
                callback()


def _register(registry: list, entry: Any) -> Unsubscribe:
    registry.append(entry)

    def unsubscribe() -> None:
        try:
            registry.remove(entry)
        except ValueError:
            logger.debug("Listener already removed")

    return unsubscribe
