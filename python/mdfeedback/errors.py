"""
Exception classes for the mdfeedback package.

Core editing operations never raise these to their callers: the engine catches
them and reports the edit as unhandled. They exist so the span store can signal
bad input precisely to the layer that decides what a no-op looks like.
"""


class FeedbackError(Exception):
    """Base exception for all mdfeedback errors."""

    pass


class InvalidPositionError(FeedbackError, ValueError):
    """Raised when a position or range falls outside the document.

    Attributes:
        position: The offending position (or range start)
        size: The size of the position space at the time of the call
    """

    def __init__(self, position: int, size: int, end: int | None = None) -> None:
        self.position = position
        self.end = end
        self.size = size
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.end is None:
            return f"Position {self.position} is outside the document (size {self.size})"
        return f"Range [{self.position}, {self.end}) is outside the document (size {self.size})"
