"""Descriptive statistics for a single assessment."""

from __future__ import annotations

import math
import statistics
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Sequence


@dataclass
class SummaryStatistics:
    mean: float = 0
    median: float = 0
    mode: Optional[List[float]] = None
    std_dev: float = 0
    highest: float = 0
    lowest: float = 0
    range: float = 0
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['stdDev'] = data.pop('std_dev')
        data['mode'] = data['mode'] or []
        return data


def summarize(scores: Sequence[float]) -> SummaryStatistics:
    """Mean, median, modes (all tied values, first-seen order) and population std dev."""

    if not scores:
        return SummaryStatistics(mode=[])
    counts = Counter(scores)
    top = max(counts.values())
    highest, lowest = max(scores), min(scores)
    return SummaryStatistics(
        mean=statistics.fmean(scores),
        median=statistics.median(scores),
        mode=[score for score, freq in counts.items() if freq == top],
        std_dev=statistics.pstdev(scores),
        highest=highest,
        lowest=lowest,
        range=highest - lowest,
        count=len(scores),
    )


def score_frequency(scores: Sequence[float], max_marks: float,
                    bin_size: int = 10) -> List[Dict[str, Any]]:
    """Histogram over fixed-width bins labelled ``"0-9"``, ``"11-19"``, ...

    The last bin runs up to and including ``max_marks``.
    """

    bins: Counter = Counter()
    starts: Dict[str, int] = {}
    for score in scores:
        start = int(math.floor(score / bin_size) * bin_size)
        if score >= max_marks and start > 0:
            start -= bin_size
        end = max_marks if start + bin_size >= max_marks else start + bin_size - 1
        label = f"{0 if start == 0 else start + 1}-{end:g}"
        bins[label] += 1
        starts[label] = start
    return [{'range': label, 'count': bins[label]}
            for label in sorted(bins, key=lambda lbl: starts[lbl])]


def rank_marks(rows: List[Dict[str, Any]], score_key: str = 'score') -> List[Dict[str, Any]]:
    """Sort by score descending and assign competition ranks (1, 2, 2, 4).

    Rows without a score go last and share the rank after the scored rows.
    """

    def sort_value(row: Dict[str, Any]) -> float:
        score: Optional[float] = row.get(score_key)
        return -math.inf if score is None else score

    ranked = sorted(rows, key=sort_value, reverse=True)
    rank, last = 0, object()
    for index, row in enumerate(ranked):
        if row.get(score_key) != last:
            rank = index + 1
            last = row.get(score_key)
        row['rank'] = rank
    return ranked
