"""Interfaces of the services an attempt depends on but does not own.

The item usage (per-item response state and marks), access rules, random item
selection and grade aggregation all live outside this app. Attempt services
only talk to them through the protocols below.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)


class ItemState(str, enum.Enum):
    UNSTARTED = "unstarted"
    TODO = "todo"
    INVALID = "invalid"
    COMPLETE = "complete"
    FINISHED = "finished"
    GAVE_UP = "gaveup"
    GRADED_WRONG = "gradedwrong"
    GRADED_PARTIAL = "gradedpartial"
    GRADED_RIGHT = "gradedright"
    NEEDS_GRADING = "needsgrading"

    @property
    def is_finished(self) -> bool:
        return self in _FINISHED_STATES


_FINISHED_STATES = frozenset(
    {
        ItemState.FINISHED,
        ItemState.GAVE_UP,
        ItemState.GRADED_WRONG,
        ItemState.GRADED_PARTIAL,
        ItemState.GRADED_RIGHT,
        ItemState.NEEDS_GRADING,
    }
)


class VariantStrategy(Protocol):
    def choose_variant(self, slot: int, item_id: int, num_variants: int, seed: str) -> int:
        ...


@runtime_checkable
class ItemUsage(Protocol):
    """All item attempts belonging to one quiz attempt."""

    usage_id: str

    def slots(self) -> list[int]:
        ...

    def add_item(self, item_id: int, max_mark: Decimal) -> int:
        ...

    def add_item_in_place_of_other(self, slot: int, item_id: int) -> int:
        """Put a fresh item in ``slot`` and move the old one to a new slot, which is returned."""

    def item_id(self, slot: int) -> int:
        ...

    def item_length(self, slot: int) -> int:
        ...

    def num_variants(self, slot: int) -> int:
        ...

    def variant_seed(self, slot: int) -> str:
        ...

    def max_mark(self, slot: int) -> Decimal:
        ...

    def set_max_mark(self, slot: int, mark: Decimal) -> None:
        ...

    def start_items(self, variant_strategy: VariantStrategy, now: datetime) -> None:
        ...

    def start_item(self, slot: int, variant: int, now: datetime) -> None:
        ...

    def start_item_based_on(self, slot: int, old_usage: "ItemUsage", old_slot: int, now: datetime) -> None:
        ...

    def process_actions(self, now: datetime, responses: Mapping[int, Any] | None) -> None:
        """Apply submitted responses; raises ``OutOfSequence`` on stale input."""

    def process_autosaves(self, now: datetime, responses: Mapping[int, Any] | None) -> None:
        ...

    def finish_all(self, now: datetime) -> None:
        ...

    def total_mark(self) -> Decimal | None:
        ...

    def item_state(self, slot: int) -> ItemState:
        ...

    def can_item_finish_mid_attempt(self, slot: int) -> bool:
        ...


class ItemUsageStore(Protocol):
    def create(self, owner: str) -> ItemUsage:
        ...

    def load(self, usage_id: str) -> ItemUsage:
        ...

    def save(self, usage: ItemUsage) -> None:
        """Persist the usage; atomic from the caller's point of view."""

    def delete(self, usage_id: str) -> None:
        ...

    def variant_usage_counts(self, usage_ids: Sequence[str], item_id: int) -> dict[int, int]:
        """How often each variant of ``item_id`` was used across the given usages."""


class AccessManager(Protocol):
    def end_time(self, attempt) -> datetime | None:
        ...

    def prevent_access(self) -> list[str]:
        ...

    def prevent_new_attempt(self, attempt_count: int, last_attempt) -> list[str]:
        ...

    def is_finished(self, attempt_count: int, last_attempt) -> bool:
        ...

    def current_attempt_finished(self) -> None:
        ...


class ItemSelector(Protocol):
    """Chooses concrete items for random slots, avoiding ones the user has seen recently."""

    def next_item_id(self, category: str, include_subcategories: bool, tag_ids: Iterable[int]) -> int | None:
        ...

    def is_item_available(
        self,
        category: str,
        include_subcategories: bool,
        item_id: int,
        tag_ids: Iterable[int],
    ) -> bool:
        ...


class GradeAggregator(Protocol):
    def attempt_finished(self, quiz, user_id: int) -> None:
        ...


class LoggingGradeAggregator:
    """Default aggregator: the gradebook lives elsewhere, so only record the event."""

    def attempt_finished(self, quiz, user_id: int) -> None:
        logger.info("Attempt finished for quiz=%s user=%s; best grade needs recomputing", quiz.pk, user_id)
