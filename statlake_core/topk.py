"""Bounded frequency counter used for every top-K breakdown.

Counts are kept in first-seen order (plain ``dict`` insertion order), which is
also the tie-break when finalizing. ``None`` is a regular key standing for
"direct" traffic (no referrer).
"""
from __future__ import annotations

from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple

Pair = Tuple[Optional[Hashable], int]

# share of the total a direct count needs to claim a slot below the cut
DIRECT_MIN_SHARE = 0.01


class TopKAccumulator:
    """Running counts per dimension value with merge and top-K finalization.

    ``max_entries`` bounds memory during live accumulation: once exceeded, the
    lowest counts are pruned (first-seen order among survivors is preserved)
    and their total is kept in ``pruned``.
    """

    __slots__ = ("counts", "max_entries", "pruned", "keep_null")

    def __init__(self, max_entries: Optional[int] = None, keep_null: bool = True):
        self.counts: Dict[Any, int] = {}
        self.max_entries = max_entries
        self.pruned = 0
        self.keep_null = keep_null

    def __len__(self) -> int:
        return len(self.counts)

    def __contains__(self, value) -> bool:
        return value in self.counts

    def __repr__(self) -> str:
        return f"TopKAccumulator({len(self.counts)} values, total={self.total()})"

    def observe(self, value, n: int = 1) -> None:
        if n <= 0:
            return
        counts = self.counts
        counts[value] = counts.get(value, 0) + n
        if self.max_entries is not None and len(counts) > self.max_entries:
            self._prune(self.max_entries)

    def _prune(self, keep: int) -> None:
        # Never prune the direct pseudo-entry: it is reported separately.
        ranked = self._ranked()
        survivors = {v for v, _ in ranked[:keep]}
        if self.keep_null and None in self.counts:
            survivors.add(None)
        dropped = 0
        kept: Dict[Any, int] = {}
        for value, count in self.counts.items():
            if value in survivors:
                kept[value] = count
            else:
                dropped += count
        self.counts = kept
        self.pruned += dropped

    def _ranked(self) -> List[Pair]:
        # sorted() is stable, so equal counts keep first-seen order
        return sorted(self.counts.items(), key=lambda item: -item[1])

    def total(self) -> int:
        return sum(self.counts.values()) + self.pruned

    def merge(self, other: "TopKAccumulator") -> "TopKAccumulator":
        """Return a new accumulator with counts summed per key."""
        bound = self.max_entries
        if other.max_entries is not None:
            bound = other.max_entries if bound is None else max(bound, other.max_entries)
        merged = TopKAccumulator(max_entries=None, keep_null=self.keep_null and other.keep_null)
        merged.counts = dict(self.counts)
        for value, count in other.counts.items():
            merged.counts[value] = merged.counts.get(value, 0) + count
        merged.pruned = self.pruned + other.pruned
        merged.max_entries = bound
        if bound is not None and len(merged.counts) > bound:
            merged._prune(bound)
        return merged

    def update(self, pairs: Iterable[Pair]) -> "TopKAccumulator":
        """Add ``(value, count)`` pairs in place; returns self."""
        for value, count in pairs:
            self.observe(value, int(count))
        return self

    def finalize(self, k: int) -> List[Pair]:
        """Top ``k`` values by count, ties broken by first-seen order.

        A direct (``None``) count that ranks below the cut replaces the last
        slot when it is material: at least ``DIRECT_MIN_SHARE`` of the total.
        The leader is never displaced, so ``k == 1`` is a plain cut.
        """
        if k <= 0:
            return []
        ranked = self._ranked()
        top = ranked[:k]
        direct = self.counts.get(None, 0) if self.keep_null else 0
        if k > 1 and direct > 0 and all(v is not None for v, _ in top):
            if direct >= DIRECT_MIN_SHARE * self.total():
                top = top[:k - 1] + [(None, direct)]
        return top

    @classmethod
    def from_pairs(cls, pairs: Iterable[Pair], max_entries: Optional[int] = None) -> "TopKAccumulator":
        return cls(max_entries=max_entries).update(pairs)


def to_json_list(pairs: Iterable[Pair]) -> List[Dict[str, Any]]:
    return [{"value": value, "count": int(count)} for value, count in pairs]


def from_json_list(data: Optional[Iterable[Dict[str, Any]]]) -> List[Pair]:
    """Decode a stored breakdown; tolerates the legacy ``url``/``referrer`` keys."""
    out: List[Pair] = []
    for item in data or []:
        if "value" in item:
            value = item["value"]
        else:
            value = item.get("url", item.get("page_url", item.get("referrer")))
        out.append((value, int(item.get("count", 0))))
    return out


def merge_pairs(lists: Iterable[Iterable[Pair]], k: int) -> List[Pair]:
    """Merge several finalized lists into one top-``k`` list."""
    acc = TopKAccumulator()
    for pairs in lists:
        acc.update(pairs)
    return acc.finalize(k)
