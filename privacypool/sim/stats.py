from collections import Counter
from typing import Hashable, Sequence

import numpy as np
import pandas

from privacypool.pool import Event


def rank_correlation(submitted: Sequence[Hashable], applied: Sequence[Hashable]) -> float:
    """
    Correlation between the rank at which each item was submitted and the rank
    at which it was applied. Close to 0 when the applied order carries no
    information about the submission order.
    """
    assert sorted(submitted) == sorted(applied)
    if len(submitted) < 2:
        return 0.0
    applied_rank = {key: rank for rank, key in enumerate(applied)}
    ranks = np.array([applied_rank[key] for key in submitted], dtype=float)
    return float(np.corrcoef(np.arange(len(submitted), dtype=float), ranks)[0, 1])


class EventStats:
    def __init__(self):
        self.events: list[Event] = []

    def on_event(self, event: Event):
        self.events.append(event)

    def analyze(self):
        counts: Counter[str] = Counter(e.kind.value for e in self.events)
        df = pandas.DataFrame.from_dict(counts, orient="index").reset_index()
        df.columns = ["event", "count"]
        print("==========================================")
        print(" Applied Transitions")
        print("==========================================")
        print(f"{df}\n")


class ShuffleStats:
    def __init__(self):
        self.correlations: list[float] = []

    def register(self, submitted: Sequence[Hashable], applied: Sequence[Hashable]):
        self.correlations.append(rank_correlation(submitted, applied))

    def analyze(self):
        series = pandas.Series(self.correlations, dtype=float)
        print("==========================================")
        print(" Submission vs. Execution Rank Correlation")
        print("==========================================")
        print(f"{series.describe()}\n")
