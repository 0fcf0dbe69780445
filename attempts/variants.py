"""Variant selection strategies used when items are started."""

from __future__ import annotations

import random
from typing import Mapping, Sequence

from .collaborators import ItemUsageStore, VariantStrategy


class LeastUsedVariantStrategy:
    """Prefer the variant of each item this user has seen least often in earlier attempts."""

    def __init__(
        self,
        usage_store: ItemUsageStore,
        previous_usage_ids: Sequence[str],
        rng: random.Random | None = None,
    ) -> None:
        self.usage_store = usage_store
        self.previous_usage_ids = list(previous_usage_ids)
        self.rng = rng or random.Random()
        self._selected: dict[str, int] = {}

    def choose_variant(self, slot: int, item_id: int, num_variants: int, seed: str) -> int:
        if num_variants <= 1:
            return 1
        # Items sharing a seed share their variant within one attempt.
        if seed in self._selected:
            return self._selected[seed]

        counts = {}
        if self.previous_usage_ids:
            counts = self.usage_store.variant_usage_counts(self.previous_usage_ids, item_id)
        least = min(counts.get(variant, 0) for variant in range(1, num_variants + 1))
        candidates = [
            variant for variant in range(1, num_variants + 1) if counts.get(variant, 0) == least
        ]
        variant = self.rng.choice(candidates)
        self._selected[seed] = variant
        return variant


class ForcedVariantStrategy:
    """Use fixed variants for some slots, deferring to another strategy for the rest."""

    def __init__(self, forced_by_slot: Mapping[int, int], fallback: VariantStrategy) -> None:
        self.forced_by_slot = dict(forced_by_slot)
        self.fallback = fallback

    def choose_variant(self, slot: int, item_id: int, num_variants: int, seed: str) -> int:
        if slot in self.forced_by_slot:
            return self.forced_by_slot[slot]
        return self.fallback.choose_variant(slot, item_id, num_variants, seed)
