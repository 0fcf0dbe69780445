"""Page layout and numbering for quiz attempts.

A layout is a flat list of slot numbers in which ``PAGE_BREAK`` (0) separates
pages. It is computed once when an attempt starts and stored on the attempt.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Sequence

from .exceptions import LayoutError

logger = logging.getLogger(__name__)

PAGE_BREAK = 0
INFO_MARKER = "i"


@dataclass(frozen=True)
class SectionSpec:
    first_slot: int
    last_slot: int
    heading: str | None = None
    shuffle: bool = False

    @property
    def slots(self) -> range:
        return range(self.first_slot, self.last_slot + 1)

    @property
    def is_empty(self) -> bool:
        return self.last_slot < self.first_slot

    def __contains__(self, slot: object) -> bool:
        return isinstance(slot, int) and self.first_slot <= slot <= self.last_slot


def resolve_sections(sections: Iterable[object], slot_count: int) -> list[SectionSpec]:
    """Turn section rows (anything with first_slot/heading/shuffle_items) into resolved ranges.

    ``last_slot`` is the next section's ``first_slot - 1``, or ``slot_count`` for
    the final section. The sections must start at slot 1 and be strictly ordered.
    """
    rows = sorted(sections, key=lambda row: int(getattr(row, "first_slot")))
    if not rows:
        if slot_count:
            raise LayoutError(f"{slot_count} slots but no sections to hold them.")
        return []
    if int(getattr(rows[0], "first_slot")) != 1:
        raise LayoutError("The first section must start at slot 1.")

    resolved: list[SectionSpec] = []
    for index, row in enumerate(rows):
        first_slot = int(getattr(row, "first_slot"))
        if index + 1 < len(rows):
            last_slot = int(getattr(rows[index + 1], "first_slot")) - 1
        else:
            last_slot = slot_count
        if index + 1 < len(rows) and last_slot < first_slot:
            raise LayoutError(f"Two sections start at slot {first_slot}.")
        resolved.append(
            SectionSpec(
                first_slot=first_slot,
                last_slot=last_slot,
                heading=getattr(row, "heading", None) or None,
                shuffle=bool(getattr(row, "shuffle_items", getattr(row, "shuffle", False))),
            )
        )
    return resolved


def section_for_slot(sections: Sequence[SectionSpec], slot: int) -> SectionSpec:
    for section in sections:
        if slot in section:
            return section
    raise LayoutError(f"Slot {slot} does not belong to any section.")


def compute_layout(
    sections: Sequence[SectionSpec],
    page_hints: Mapping[int, int],
    items_per_page: int | None,
    *,
    rng: random.Random | None = None,
    seed: int | None = None,
) -> list[int]:
    """Lay out the slots of every section onto pages.

    Shuffled sections are permuted with ``rng`` (or ``random.Random(seed)``) and
    packed ``items_per_page`` to a page; ``None`` or 0 puts the whole section on
    one page. Other sections keep static order and start a new page wherever the
    static page hint changes or the page already holds ``items_per_page`` slots.
    Each section ends with a page break.
    """
    if rng is None:
        rng = random.Random(seed)
    per_page = items_per_page or 0

    layout: list[int] = []
    for section in sections:
        if section.is_empty:
            continue

        if section.shuffle:
            slots = list(section.slots)
            rng.shuffle(slots)
            on_this_page = 0
            for slot in slots:
                if on_this_page and on_this_page == per_page:
                    layout.append(PAGE_BREAK)
                    on_this_page = 0
                layout.append(slot)
                on_this_page += 1
        else:
            current_page = page_hints.get(section.first_slot)
            on_this_page = 0
            for slot in section.slots:
                page = page_hints.get(slot)
                page_full = bool(per_page) and on_this_page == per_page
                if on_this_page and (page_full or (current_page is not None and page != current_page)):
                    layout.append(PAGE_BREAK)
                    on_this_page = 0
                layout.append(slot)
                on_this_page += 1
                current_page = page

        layout.append(PAGE_BREAK)
    return layout


def split_pages(layout: Sequence[int]) -> list[list[int]]:
    """Break a flat layout into pages, dropping empty pages (normally the trailing one)."""
    pages: list[list[int]] = []
    current: list[int] = []
    for entry in layout:
        slot = int(entry)
        if slot == PAGE_BREAK:
            if current:
                pages.append(current)
            current = []
            continue
        current.append(slot)
    if current:
        pages.append(current)
    return pages


def layout_slots(layout: Sequence[int]) -> list[int]:
    return [int(entry) for entry in layout if int(entry) != PAGE_BREAK]


def check_layout(layout: Sequence[int], slot_count: int) -> None:
    """Fail loudly unless the layout holds each of the slots 1..slot_count exactly once."""
    slots = layout_slots(layout)
    if sorted(slots) != list(range(1, slot_count + 1)):
        raise LayoutError(f"Layout {list(layout)!r} does not cover slots 1..{slot_count} exactly once.")


def first_in_section(pages: Sequence[Sequence[int]], sections: Sequence[SectionSpec]) -> dict[int, bool]:
    """Mark the first slot of each section as met when reading the (possibly shuffled) layout."""
    unseen = list(sections)
    flags: dict[int, bool] = {}
    for page in pages:
        for slot in page:
            section = section_for_slot(sections, slot)
            if section in unseen:
                flags[slot] = True
                unseen.remove(section)
            else:
                flags[slot] = False
    return flags


def remap_layout_for_build_on_last(old_layout: Sequence[int], old_to_new: Mapping[int, int]) -> list[int]:
    new_layout: list[int] = []
    for entry in old_layout:
        old_slot = int(entry)
        if old_slot == PAGE_BREAK:
            new_layout.append(PAGE_BREAK)
            continue
        if old_slot not in old_to_new:
            raise LayoutError(f"Slot {old_slot} of the previous attempt was not carried over.")
        new_layout.append(old_to_new[old_slot])
    return new_layout


def number_items(
    pages: Sequence[Sequence[int]],
    length_of: Callable[[int], int],
) -> dict[int, int | str]:
    """Give each slot its display number; zero-length items get ``INFO_MARKER``."""
    numbers: dict[int, int | str] = {}
    number = 1
    for page in pages:
        for slot in page:
            length = length_of(slot)
            if length:
                numbers[slot] = number
                number += length
            else:
                numbers[slot] = INFO_MARKER
    return numbers


def page_index(pages: Sequence[Sequence[int]]) -> dict[int, int]:
    return {slot: page for page, slots in enumerate(pages) for slot in slots}


def repaginate(slots: Sequence[int], items_per_page: int | None) -> dict[int, int]:
    """Recompute static page hints (1-based) for slots in order, ``items_per_page`` to a page."""
    hints: dict[int, int] = {}
    page = 1
    on_this_page = 0
    for slot in slots:
        if items_per_page and on_this_page >= items_per_page:
            page += 1
            on_this_page = 0
        hints[slot] = page
        on_this_page += 1
    return hints
