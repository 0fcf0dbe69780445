"""Navigation panel for the attempt and review pages.

The two panels differ only in how a slot links to its page and in the controls
shown after the buttons, so both are supplied by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Union

from django.utils.http import urlencode

from .attempt_view import AttemptView
from .collaborators import ItemState

SlotUrl = Callable[[int, int], Union[str, None]]
EndControls = Callable[[AttemptView], list]

_STATE_CLASSES = {
    ItemState.UNSTARTED: "notyetanswered",
    ItemState.TODO: "notyetanswered",
    ItemState.INVALID: "invalidanswer",
    ItemState.COMPLETE: "answersaved",
    ItemState.FINISHED: "complete",
    ItemState.GAVE_UP: "notanswered",
    ItemState.NEEDS_GRADING: "requiresgrading",
}

_CORRECTNESS_CLASSES = {
    ItemState.GRADED_WRONG: "incorrect",
    ItemState.GRADED_PARTIAL: "partiallycorrect",
    ItemState.GRADED_RIGHT: "correct",
}


@dataclass(frozen=True)
class NavSectionHeading:
    heading: str


@dataclass(frozen=True)
class NavItemButton:
    slot: int
    number: int | str
    state_class: str
    page: int
    is_current_page: bool
    url: str | None


@dataclass(frozen=True)
class NavigationPanel:
    entries: list[NavSectionHeading | NavItemButton]
    end_controls: list[Any]

    @property
    def buttons(self) -> list[NavItemButton]:
        return [entry for entry in self.entries if isinstance(entry, NavItemButton)]


def state_class(state: ItemState, *, show_correctness: bool = False) -> str:
    if state in _CORRECTNESS_CLASSES:
        return _CORRECTNESS_CLASSES[state] if show_correctness else "complete"
    return _STATE_CLASSES.get(state, "notyetanswered")


def build_navigation_panel(
    view: AttemptView,
    *,
    page: int,
    slot_url: SlotUrl,
    end_controls: EndControls | None = None,
    show_all: bool = False,
    show_correctness: bool = False,
) -> NavigationPanel:
    entries: list[NavSectionHeading | NavItemButton] = []
    for slot in view.slots_for_page():
        heading = view.heading_before(slot)
        if heading:
            entries.append(NavSectionHeading(heading=heading))

        slot_page = view.page_of_slot(slot)
        if view.is_blocked_by_previous(slot):
            css_class = "blocked"
            url = None
        else:
            css_class = state_class(view.item_state(slot), show_correctness=show_correctness)
            url = slot_url(slot, slot_page)
        entries.append(
            NavItemButton(
                slot=slot,
                number=view.display_number(slot),
                state_class=css_class,
                page=slot_page,
                is_current_page=show_all or slot_page == page,
                url=url,
            )
        )

    controls = end_controls(view) if end_controls is not None else []
    return NavigationPanel(entries=entries, end_controls=controls)


def attempt_slot_url(view: AttemptView, base_url: str) -> SlotUrl:
    """Links for the live attempt; pages the learner may not return to get no link."""

    def _url(slot: int, page: int) -> str | None:
        if not view.can_navigate_to(page):
            return None
        query = {"attempt": view.attempt.pk, "page": page}
        return f"{base_url}?{urlencode(query)}#slot{slot}"

    return _url


def review_slot_url(view: AttemptView, base_url: str, *, show_all: bool = False) -> SlotUrl:
    def _url(slot: int, page: int) -> str | None:
        query: dict[str, Any] = {"attempt": view.attempt.pk}
        if show_all:
            query["showall"] = 1
        else:
            query["page"] = page
        return f"{base_url}?{urlencode(query)}#slot{slot}"

    return _url
