"""Read-only navigation helpers over an attempt's stored layout."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Mapping, Sequence

from . import layout as layout_engine
from .collaborators import ItemState, ItemUsage
from .exceptions import LayoutError
from .layout import SectionSpec
from .models import Quiz, QuizAttempt

ALL_PAGES = "all"


@dataclass(frozen=True)
class SlotSpec:
    slot: int
    page: int = 1
    item_id: int | None = None
    max_mark: Decimal = Decimal("1")
    require_previous: bool = False
    random_category: str = ""
    random_include_subcategories: bool = False
    random_tag_ids: tuple[int, ...] = ()

    @property
    def is_random(self) -> bool:
        return self.item_id is None


@dataclass(frozen=True)
class QuizStructure:
    """A snapshot of a quiz with its sections resolved into slot ranges."""

    quiz: Quiz
    sections: tuple[SectionSpec, ...]
    slots: Mapping[int, SlotSpec] = field(default_factory=dict)

    @property
    def slot_count(self) -> int:
        return len(self.slots)

    @property
    def page_hints(self) -> dict[int, int]:
        return {number: spec.page for number, spec in self.slots.items()}

    def section_of(self, slot: int) -> SectionSpec:
        return layout_engine.section_for_slot(self.sections, slot)

    def compute_layout(self, **kwargs) -> list[int]:
        return layout_engine.compute_layout(
            self.sections,
            self.page_hints,
            self.quiz.items_per_page_limit,
            **kwargs,
        )


def build_quiz_structure(quiz: Quiz, sections: Sequence[object], slots: Sequence[object]) -> QuizStructure:
    slot_specs: dict[int, SlotSpec] = {}
    for row in slots:
        number = int(row.slot)
        slot_specs[number] = SlotSpec(
            slot=number,
            page=int(getattr(row, "page", 1) or 1),
            item_id=getattr(row, "item_id", None),
            max_mark=Decimal(str(getattr(row, "max_mark", 1))),
            require_previous=bool(getattr(row, "require_previous", False)),
            random_category=str(getattr(row, "random_category", "") or ""),
            random_include_subcategories=bool(getattr(row, "random_include_subcategories", False)),
            random_tag_ids=tuple(int(tag) for tag in getattr(row, "random_tag_ids", None) or ()),
        )
    if sorted(slot_specs) != list(range(1, len(slot_specs) + 1)):
        raise LayoutError(f"Slots of quiz {quiz.pk} are not numbered 1..{len(slot_specs)}.")
    resolved = layout_engine.resolve_sections(sections, len(slot_specs))
    return QuizStructure(quiz=quiz, sections=tuple(resolved), slots=slot_specs)


def load_quiz_structure(quiz: Quiz) -> QuizStructure:
    return build_quiz_structure(quiz, list(quiz.sections.all()), list(quiz.slots.all()))


class AttemptView:
    """Pages, numbering and navigation rules for one attempt."""

    def __init__(self, attempt: QuizAttempt, structure: QuizStructure, usage: ItemUsage) -> None:
        self.attempt = attempt
        self.structure = structure
        self.usage = usage
        self.pages = layout_engine.split_pages(attempt.layout or [])
        self._first_in_section = layout_engine.first_in_section(self.pages, structure.sections)
        self._numbers = layout_engine.number_items(self.pages, usage.item_length)
        self._page_of = layout_engine.page_index(self.pages)

    @property
    def quiz(self) -> Quiz:
        return self.structure.quiz

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def is_finished(self) -> bool:
        return self.attempt.is_finished

    def slots_for_page(self, page: int | str = ALL_PAGES) -> list[int]:
        if page == ALL_PAGES:
            return [slot for slots in self.pages for slot in slots]
        return list(self.pages[int(page)])

    def active_slots(self, page: int | str = ALL_PAGES) -> list[int]:
        return [slot for slot in self.slots_for_page(page) if not self.is_blocked_by_previous(slot)]

    def page_of_slot(self, slot: int) -> int:
        return self._page_of[self.original_slot(slot)]

    def is_last_page(self, page: int) -> bool:
        return page == self.page_count - 1

    def clamp_page_number(self, page: int) -> int:
        if page < 0 or not self.pages:
            return 0
        return min(page, self.page_count - 1)

    def display_number(self, slot: int) -> int | str:
        return self._numbers[self.original_slot(slot)]

    def heading_before(self, slot: int) -> str | None:
        if not self._first_in_section.get(slot):
            return None
        return self.structure.section_of(slot).heading

    def item_state(self, slot: int) -> ItemState:
        return self.usage.item_state(slot)

    def is_blocked_by_previous(self, slot: int) -> bool:
        """Whether the slot stays hidden until the item before it is finished.

        Only applies in free navigation with both sections unshuffled, and only
        when the previous item can actually finish before the attempt does.
        """
        spec = self.structure.slots.get(slot)
        if slot <= 1 or spec is None or not spec.require_previous:
            return False
        if self.structure.section_of(slot).shuffle or self.structure.section_of(slot - 1).shuffle:
            return False
        if self.quiz.is_sequential:
            return False
        if self.usage.item_state(slot - 1).is_finished:
            return False
        return self.usage.can_item_finish_mid_attempt(slot - 1)

    def original_slot(self, slot: int) -> int:
        return self.attempt.original_slot(slot)

    def all_slots_originally_in(self, slot: int) -> list[int]:
        """Every slot that has held the item of ``slot``: earlier redone copies first, then the live one."""
        replaced = [other for other in self.usage.slots() if other != slot and self.original_slot(other) == slot]
        return sorted(replaced) + [slot]

    def can_item_be_redone_now(self, slot: int) -> bool:
        return (
            self.quiz.can_redo_items
            and not self.is_finished
            and self.usage.item_state(slot).is_finished
        )

    def check_page_access(self, page: int) -> bool:
        """Sequential navigation never goes back to an earlier page."""
        current = self.attempt.current_page
        if current != page and self.quiz.is_sequential and current > page:
            return False
        return True

    def can_navigate_to(self, page: int) -> bool:
        return 0 <= page < self.page_count and self.check_page_access(page)
