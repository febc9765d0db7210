""" Caller-owned timing of the sections of a training run"""
from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager


class Timer:
    """Accumulates wall-clock time and call counts per named section

        Create one per training run and pass it to :func:`ml_sddp.sddp.train` as ``timer`` to inspect it afterwards:

        >>> timer = Timer()
        >>> with timer.section("forward_pass"):
        ...     pass
        >>> timer.counts["forward_pass"]
        1
    """
    def __init__(self) -> None:
        self.totals: dict[str, float] = defaultdict(float)
        self.counts: dict[str, int] = defaultdict(int)

    def __repr__(self) -> str:
        return f"Timer(sections={list(self.totals)})"

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.totals[name] += time.perf_counter() - start
            self.counts[name] += 1

    def reset(self) -> None:
        self.totals.clear()
        self.counts.clear()

    def summary(self) -> str:
        """ Return a table of the total time, the number of calls and the time per call of each section"""
        width = max((len(name) for name in self.totals), default=7)
        lines = [f"{'section' : <{width}} | {'total (s)' : >10} | {'calls' : >8} | {'per call (s)' : >12}"]
        lines.append("-" * len(lines[0]))
        for name, total in sorted(self.totals.items(), key=lambda item: -item[1]):
            count = self.counts[name]
            lines.append(f"{name : <{width}} | {total : >10.4f} | {count : >8d} | {total / max(count, 1) : >12.6f}")
        return "\n".join(lines)
