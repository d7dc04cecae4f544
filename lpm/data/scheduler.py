from __future__ import annotations

import dataclasses
import random
from typing import List, Sequence

from .dataset import Sample


class DataScheduler:
    """Multiplex several tagged datasets according to a per-epoch iteration schedule.

    Over one scheduler epoch exactly `schedule[i]` batches are drawn from source i. The
    interleave order is a deterministic function of (seed, epoch, schedule):
    - in_order: all batches of source 0, then source 1, ...
    - uniform: proportional round-robin, each step picks the source that is furthest
      behind its quota (ties go to the lower index)
    - random: the in-order plan shuffled with a per-epoch seed

    Each source keeps its own cursor across epochs and is reshuffled whenever it wraps
    around, unless `no_resample` is set. Callers must not draw more than
    `iterations_per_epoch` batches per epoch; the scheduler simply rolls over.
    """

    ORDERS = ("in_order", "uniform", "random")

    def __init__(
        self,
        datasets: Sequence,
        data_types: Sequence[str],
        schedule: Sequence[int],
        start_epoch: int = 1,
        *,
        seed: int = 0,
        order: str = "uniform",
        no_resample: bool = False,
    ) -> None:
        if not (len(datasets) == len(data_types) == len(schedule)):
            raise ValueError(
                f"datasets ({len(datasets)}), data_types ({len(data_types)}) and schedule "
                f"({len(schedule)}) must have the same length"
            )
        if order not in self.ORDERS:
            raise ValueError(f"Unknown scheduler order '{order}', expected one of {self.ORDERS}")
        self.datasets = list(datasets)
        self.data_types = list(data_types)
        self.seed = int(seed)
        self.order = order
        self.no_resample = no_resample
        self._schedule = self._validate_schedule(schedule)
        self._epoch = int(start_epoch) - 1
        self._plan: List[int] = []
        self._pos = 0
        self._cursors = [0] * len(self.datasets)
        self._source_epochs = [int(start_epoch)] * len(self.datasets)
        if not no_resample:
            for i in range(len(self.datasets)):
                self._reshuffle(i)

    def _validate_schedule(self, schedule: Sequence[int]) -> List[int]:
        if len(schedule) != len(self.datasets):
            raise ValueError(f"Schedule {list(schedule)} does not match {len(self.datasets)} datasets")
        values = [int(s) for s in schedule]
        if any(v < 0 for v in values):
            raise ValueError(f"Schedule entries must be non-negative, got {values}")
        return values

    @property
    def schedule(self) -> List[int]:
        return list(self._schedule)

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def iterations_per_epoch(self) -> int:
        return sum(self._schedule)

    def set_schedule(self, schedule: Sequence[int]) -> None:
        """Replace the per-epoch counts; the next `get()` starts a fresh epoch plan."""
        self._schedule = self._validate_schedule(schedule)
        self._plan = []
        self._pos = 0

    def state_dict(self) -> dict:
        """Per-source cursors and pass counts; restoring them at an epoch boundary makes a
        resumed run draw the same batches as an uninterrupted one."""
        return {
            "epoch": self._epoch,
            "cursors": list(self._cursors),
            "source_epochs": list(self._source_epochs),
        }

    def load_state_dict(self, state: dict) -> None:
        cursors = [int(c) for c in state["cursors"]]
        source_epochs = [int(e) for e in state["source_epochs"]]
        if len(cursors) != len(self.datasets) or len(source_epochs) != len(self.datasets):
            raise ValueError(f"Scheduler state for {len(cursors)} sources, have {len(self.datasets)} datasets")
        self._epoch = int(state["epoch"])
        self._cursors = [c % ds.size() if ds.size() else 0 for c, ds in zip(cursors, self.datasets)]
        self._source_epochs = source_epochs
        self._plan = []
        self._pos = 0
        if not self.no_resample:
            for i in range(len(self.datasets)):
                self._reshuffle(i)

    def _reshuffle(self, i: int) -> None:
        self.datasets[i].shuffle(self.seed + self._source_epochs[i])

    def build_plan(self, epoch: int) -> List[int]:
        counts = self._schedule
        if self.order == "uniform":
            drawn = [0] * len(counts)
            plan: List[int] = []
            for _ in range(sum(counts)):
                pick = min(
                    (j for j in range(len(counts)) if drawn[j] < counts[j]),
                    key=lambda j: ((drawn[j] + 0.5) / counts[j], j),
                )
                drawn[pick] += 1
                plan.append(pick)
            return plan
        plan = [i for i, count in enumerate(counts) for _ in range(count)]
        if self.order == "random":
            random.Random(self.seed * 1_000_003 + epoch).shuffle(plan)
        return plan

    def get(self) -> Sample:
        if self._pos >= len(self._plan):
            self._epoch += 1
            self._plan = self.build_plan(self._epoch)
            self._pos = 0
            if not self._plan:
                raise RuntimeError(f"Empty data schedule {self._schedule}; nothing to draw")
        src = self._plan[self._pos]
        self._pos += 1

        ds = self.datasets[src]
        if ds.size() == 0:
            raise RuntimeError(f"Data source '{self.data_types[src]}' is scheduled but empty")
        sample = ds.get(self._cursors[src])
        self._cursors[src] += 1
        if self._cursors[src] >= ds.size():
            self._cursors[src] = 0
            self._source_epochs[src] += 1
            if not self.no_resample:
                self._reshuffle(src)
        if sample.data_type != self.data_types[src]:
            sample = dataclasses.replace(sample, data_type=self.data_types[src])
        return sample
