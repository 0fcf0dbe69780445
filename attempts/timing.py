"""Deadline arithmetic shared by the access manager and the open-attempt sweep."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable


@dataclass(frozen=True)
class EffectiveTiming:
    """Close time and time limit for one user after overrides; ``None`` means unlimited."""

    time_close: datetime | None
    time_limit: timedelta | None


_UNLIMITED = object()


def _limit_from_seconds(seconds: int | None) -> timedelta | None:
    if not seconds:
        return None
    return timedelta(seconds=int(seconds))


def _override_close(override) -> object:
    if override.time_close_unlimited:
        return _UNLIMITED
    return override.time_close


def _override_limit(override) -> object:
    if override.time_limit_seconds is None:
        return None
    if override.time_limit_seconds == 0:
        return _UNLIMITED
    return timedelta(seconds=int(override.time_limit_seconds))


def _most_lenient(values: Iterable[object]) -> object:
    present = [value for value in values if value is not None]
    if not present:
        return None
    if any(value is _UNLIMITED for value in present):
        return _UNLIMITED
    return max(present)


def effective_timing(quiz, user_override=None, group_overrides: Iterable[object] = ()) -> EffectiveTiming:
    """Apply overrides to the quiz's close time and time limit.

    A value set on the user's own override wins. Otherwise the most lenient
    group override wins, with an explicit unlimited beating any finite value.
    Settings no override touches fall back to the quiz.
    """
    group_overrides = list(group_overrides)

    close: object = None
    if user_override is not None:
        close = _override_close(user_override)
    if close is None:
        close = _most_lenient(_override_close(item) for item in group_overrides)
    if close is None:
        close = quiz.time_close

    limit: object = None
    if user_override is not None:
        limit = _override_limit(user_override)
    if limit is None:
        limit = _most_lenient(_override_limit(item) for item in group_overrides)
    if limit is None:
        limit = _limit_from_seconds(quiz.time_limit_seconds)

    return EffectiveTiming(
        time_close=None if close is _UNLIMITED else close,
        time_limit=None if limit is _UNLIMITED else limit,
    )


def attempt_deadline(time_start: datetime, timing: EffectiveTiming) -> datetime | None:
    """The moment an attempt started at ``time_start`` runs out of time, or None."""
    if timing.time_limit is None:
        return timing.time_close
    due = time_start + timing.time_limit
    if timing.time_close is not None:
        due = min(due, timing.time_close)
    return due


def attempt_time_check_state(
    *,
    time_start: datetime,
    state: str,
    timing: EffectiveTiming,
    grace_period: timedelta,
    is_preview: bool = False,
) -> datetime | None:
    """When the state machine should next look at an open attempt."""
    if is_preview:
        return None
    deadline = attempt_deadline(time_start, timing)
    if deadline is None:
        return None
    if state == "overdue":
        return deadline + grace_period
    return deadline
