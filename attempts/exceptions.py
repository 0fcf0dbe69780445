"""Error taxonomy for attempt operations."""

from __future__ import annotations


class AttemptError(Exception):
    """Base class for errors raised by attempt operations."""


class ConfigurationMismatch(AttemptError):
    """Raised when a quiz is configured so that an attempt cannot be started."""


class InsufficientItemPool(AttemptError):
    """Raised when a random slot has no eligible item left to choose from."""

    def __init__(self, category: str, slot: int | None = None) -> None:
        self.category = category
        self.slot = slot
        where = f" for slot {slot}" if slot is not None else ""
        super().__init__(f"Not enough items left in category {category!r}{where}.")


class OutOfSequence(AttemptError):
    """Signalled by the item usage when responses do not match its sequence checks."""


class SubmissionOutOfSequence(AttemptError):
    """The submitted page was stale relative to the stored attempt; reload and retry."""

    def __init__(self, attempt_id: int | None, page: int | None = None) -> None:
        self.attempt_id = attempt_id
        self.page = page
        super().__init__(
            "This page was submitted out of sequence. Reload the attempt and try again."
        )


class ResponseProcessingError(AttemptError):
    """Wraps an unexpected failure while the item usage processed responses."""


class InvalidAttemptOperation(AttemptError):
    """Raised when an operation is not legal in the attempt's current state."""


class LayoutError(AssertionError):
    """Layout or slot-numbering invariant broken; indicates a bug, not a runtime condition."""
