"""Text selection value type and the validity gate for modify/analyze."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from scribe.config import MAX_SELECTION_LENGTH, MIN_SELECTION_LENGTH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextSelection:
    """A selected range of the document. Replaced wholesale, never mutated."""

    start: int
    end: int
    text: str

    @classmethod
    def of(cls, text: str, start: int = 0) -> TextSelection:
        return cls(start=start, end=start + len(text), text=text)

    def is_consistent(self) -> bool:
        """start <= end and the text spans exactly that range."""
        return 0 <= self.start <= self.end and len(self.text) == self.end - self.start

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "text": self.text}


class SelectionValidator:
    """Pure predicate over a selection: non-empty and within length bounds.

    Lengths are measured on the trimmed text. A selection whose range does
    not match its text is rejected.
    """

    def __init__(
        self,
        min_length: int = MIN_SELECTION_LENGTH,
        max_length: int = MAX_SELECTION_LENGTH,
    ):
        self.min_length = min_length
        self.max_length = max_length

    def is_valid(self, selection: TextSelection | None) -> bool:
        if selection is None:
            return False
        if not selection.is_consistent():
            logger.warning(
                "Inconsistent selection %d..%d for %d chars of text",
                selection.start,
                selection.end,
                len(selection.text),
            )
            return False
        return self.is_valid_text(selection.text)

    def is_valid_text(self, text: str | None) -> bool:
        return self.reason(text) is None

    def reason(self, text: str | None) -> str | None:
        """Why `text` is not a usable selection, or None if it is."""
        if text is None:
            return "No text selected"
        trimmed = text.strip()
        if not trimmed:
            return "Selected text cannot be empty"
        if len(trimmed) < self.min_length:
            return f"Selected text is too short (minimum {self.min_length} characters)"
        if len(trimmed) > self.max_length:
            return f"Selected text is too long (maximum {self.max_length} characters)"
        return None
