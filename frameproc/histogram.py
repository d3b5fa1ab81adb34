"""Histograms with quantile and inter-quantile mean queries."""

from __future__ import annotations

import math
from itertools import accumulate
from typing import Iterable


class Histogram:
    """A histogram stored as cumulative frequencies."""

    def __init__(self, counts: Iterable[int]):
        counts = list(counts)
        if not counts:
            raise ValueError("histogram needs at least one bin")
        self._cumulative = list(accumulate(counts, initial=0))

    def bins(self) -> int:
        return len(self._cumulative) - 1

    def total(self) -> int:
        return self._cumulative[-1]

    def cumulative_freq(self, bin: float) -> int:
        """Cumulative frequency up to a (fractional) point within the bins."""
        if bin <= 0:
            return 0
        if bin >= self.bins():
            return self.total()
        cum = self._cumulative
        b = int(bin)
        return int(cum[b] + (bin - b) * (cum[b + 1] - cum[b]))

    def quantile(self, q: float, first: int = -1, last: int = -1) -> float:
        """Return the fractional bin at quantile q, optionally searching only first..last."""
        cum = self._cumulative
        if first == -1:
            first = 0
        if last == -1:
            last = len(cum) - 2
        if first > last:
            raise ValueError("first bin must not exceed last bin")
        items = int(q * self.total())
        while first < last:
            middle = (first + last) // 2
            if cum[middle + 1] > items:
                last = middle
            else:
                first = middle + 1
        if not cum[first] <= items <= cum[last + 1]:
            raise ValueError("quantile lies outside the given bin range")
        if cum[first + 1] == cum[first]:
            frac = 0.0
        else:
            frac = (items - cum[first]) / (cum[first + 1] - cum[first])
        return first + frac

    def inter_quantile_mean(self, q_lo: float, q_hi: float) -> float:
        """Return the mean bin value (at bin mid-points) between two quantiles."""
        if not q_hi > q_lo:
            raise ValueError("q_hi must be greater than q_lo")
        cum = self._cumulative
        p_lo = self.quantile(q_lo)
        p_hi = self.quantile(q_hi, int(p_lo))
        sum_bin_freq = 0.0
        cumul_freq = 0.0
        p_next = math.floor(p_lo) + 1.0
        while p_next <= math.ceil(p_hi):
            bin_ = math.floor(p_lo)
            freq = (cum[bin_ + 1] - cum[bin_]) * (min(p_next, p_hi) - p_lo)
            sum_bin_freq += bin_ * freq
            cumul_freq += freq
            p_lo = p_next
            p_next += 1.0
        if cumul_freq == 0:
            return math.nan
        return sum_bin_freq / cumul_freq + 0.5