"""tomo_align.reduction

Fork-join accumulation of a scalar cost and a gradient vector.

Work items are split into contiguous chunks, one per worker thread. Every
worker owns its ``Accumulator``; nothing is shared while the workers run.
The partial results are merged on the calling thread in chunk order, so a
given thread count always sums in the same order.
"""

from __future__ import annotations

import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

import numpy as np

T = TypeVar("T")


@dataclass
class Accumulator:
    cost: float
    gradient: np.ndarray

    @classmethod
    def zeros(cls, size: int) -> "Accumulator":
        return cls(0.0, np.zeros(size, dtype=np.float64))

    def merge(self, other: "Accumulator") -> "Accumulator":
        return Accumulator(self.cost + other.cost, self.gradient + other.gradient)


def _run_chunk(
    items: Sequence[T], work: Callable[[T, Accumulator], None], size: int
) -> Accumulator:
    acc = Accumulator.zeros(size)
    for item in items:
        work(item, acc)
    return acc


def parallel_reduce(
    items: Sequence[T],
    work: Callable[[T, Accumulator], None],
    size: int,
    num_threads: int = 1,
    executor: Optional[ThreadPoolExecutor] = None,
) -> Accumulator:
    """Apply ``work(item, acc)`` to every item and sum the accumulators.

    Parameters
    ----------
    items : sequence
        Independent work items (e.g. particle indices).
    work : callable
        Adds the contribution of one item into the accumulator it is given.
    size : int
        Gradient length.
    num_threads : int
        Worker count; 1 runs inline on the calling thread.
    executor : ThreadPoolExecutor, optional
        Long-lived pool with at least ``num_threads`` workers, reused across
        calls. Without one, a pool is created for this call only.
    """
    workers = max(1, min(int(num_threads), len(items)))
    if workers == 1:
        return _run_chunk(items, work, size)

    bounds = np.linspace(0, len(items), workers + 1).astype(int)
    chunks = [items[lo:hi] for lo, hi in zip(bounds[:-1], bounds[1:])]

    def run(chunk: Sequence[T]) -> Accumulator:
        return _run_chunk(chunk, work, size)

    if executor is not None:
        partials = list(executor.map(run, chunks))
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            partials = list(pool.map(run, chunks))

    return functools.reduce(Accumulator.merge, partials)
