"""Caption formatting and the single caption target."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from scenecaption.ml.image_classifier import Classification

DEFAULT_TOP_N = 2
CLASSIFICATION_HEADER = "Classification:\n"
FAILURE_HEADER = "Unable to classify facial expression.\n"
UNKNOWN_FAILURE_DESCRIPTION = "No classifications were returned."

CaptionListener = Callable[[str], None]


def format_classifications(results: Sequence[Classification], top_n: int = DEFAULT_TOP_N) -> str:
    """Render the first `top_n` results, keeping the order they arrived in."""
    lines = [f"  ({result.confidence:.2f}) {result.label}" for result in results[:top_n]]
    return CLASSIFICATION_HEADER + "\n".join(lines)


def format_failure(description: str | None) -> str:
    return FAILURE_HEADER + (description or UNKNOWN_FAILURE_DESCRIPTION)


class CaptionBoard:
    """Holds exactly one current caption.

    The first write binds the board to the calling thread (the event loop
    thread); later writes from any other thread raise RuntimeError. Listeners
    are invoked synchronously on every write.
    """

    def __init__(self, initial: str = "") -> None:
        self._text = initial
        self._owner: int | None = None
        self._listeners: list[CaptionListener] = []

    @property
    def text(self) -> str:
        return self._text

    def set(self, text: str) -> None:
        current = threading.get_ident()
        if self._owner is None:
            self._owner = current
        elif self._owner != current:
            raise RuntimeError("Caption must be written from the thread that owns it")

        self._text = text
        for listener in self._listeners:
            listener(text)

    def subscribe(self, listener: CaptionListener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
