import random

import pytest
import torch

from lpm.data.dataset import PAIRED, UNPAIRED, Sample
from lpm.data.scheduler import DataScheduler


class DummyDataset:
    def __init__(self, name: str, n: int, data_type: str):
        self.name = name
        self.n = n
        self.data_type = data_type
        self.shuffles = []

    def size(self):
        return self.n

    def shuffle(self, seed):
        self.shuffles.append(seed)

    def get(self, idx):
        return Sample(
            inputs=torch.zeros(1, 2, 3),
            targets=torch.zeros(1, 1, dtype=torch.long),
            data_type=self.data_type,
            sample_ids=[f"{self.name}{idx}"],
            global_batch_idx=idx,
        )


def _scheduler(schedule, order="uniform", seed=0, no_resample=True, sizes=(10, 10)):
    datasets = [DummyDataset("A", sizes[0], PAIRED), DummyDataset("B", sizes[1], UNPAIRED)]
    return DataScheduler(datasets, [PAIRED, UNPAIRED], schedule, seed=seed, order=order, no_resample=no_resample)


def _draw_types(sched, n):
    return [sched.get().data_type for _ in range(n)]


def test_uniform_three_to_one():
    sched = _scheduler([3, 1])
    assert _draw_types(sched, 4) == [PAIRED, PAIRED, UNPAIRED, PAIRED]


@pytest.mark.parametrize("order", ["in_order", "uniform", "random"])
def test_epoch_counts_match_schedule(order):
    sched = _scheduler([3, 1], order=order, seed=5)
    for _ in range(3):
        types = _draw_types(sched, 4)
        assert types.count(PAIRED) == 3
        assert types.count(UNPAIRED) == 1


def test_in_order_plan():
    sched = _scheduler([2, 2], order="in_order")
    assert sched.build_plan(1) == [0, 0, 1, 1]


def test_random_plan_is_deterministic():
    a = _scheduler([5, 3], order="random", seed=7)
    b = _scheduler([5, 3], order="random", seed=7)
    assert a.build_plan(2) == b.build_plan(2)


def test_zero_entry_never_draws_that_source():
    sched = _scheduler([4, 0])
    assert set(_draw_types(sched, 8)) == {PAIRED}


def test_set_schedule_restarts_plan():
    sched = _scheduler([1, 0])
    sched.get()
    sched.set_schedule([0, 2])
    assert sched.iterations_per_epoch == 2
    assert _draw_types(sched, 2) == [UNPAIRED, UNPAIRED]


def test_cursor_wraps_and_reshuffles():
    sched = _scheduler([2, 0], no_resample=False, seed=3, sizes=(2, 1))
    first = sched.datasets[0].shuffles[:]
    ids = [sched.get().sample_ids[0] for _ in range(3)]
    assert ids == ["A0", "A1", "A0"]
    assert len(sched.datasets[0].shuffles) == len(first) + 1


def test_no_resample_never_shuffles():
    sched = _scheduler([2, 0], no_resample=True, sizes=(2, 1))
    for _ in range(5):
        sched.get()
    assert sched.datasets[0].shuffles == []


def test_scheduled_empty_source_raises():
    sched = _scheduler([0, 1], sizes=(2, 0))
    with pytest.raises(RuntimeError):
        sched.get()


def test_invalid_schedule_rejected():
    with pytest.raises(ValueError):
        _scheduler([1, -1])
    with pytest.raises(ValueError):
        _scheduler([1])
    with pytest.raises(ValueError):
        _scheduler([1, 1], order="bogus")


class ShuffledDataset(DummyDataset):
    """Batch order depends on the last shuffle seed."""

    def __init__(self, name: str, n: int, data_type: str):
        super().__init__(name, n, data_type)
        self.order = list(range(n))

    def shuffle(self, seed):
        super().shuffle(seed)
        self.order = list(range(self.n))
        random.Random(seed).shuffle(self.order)

    def get(self, idx):
        return super().get(self.order[idx])


def _shuffled_scheduler(start_epoch=1):
    datasets = [ShuffledDataset("A", 4, PAIRED), ShuffledDataset("B", 3, UNPAIRED)]
    return DataScheduler(datasets, [PAIRED, UNPAIRED], [2, 1], start_epoch, seed=11, no_resample=False)


def _draw_ids(sched, n):
    return [sched.get().sample_ids[0] for _ in range(n)]


@pytest.mark.parametrize("stop_epoch", [1, 2, 3])
def test_resume_reproduces_uninterrupted_draws(stop_epoch):
    uninterrupted = _shuffled_scheduler()
    _draw_ids(uninterrupted, 3 * stop_epoch)
    expected = _draw_ids(uninterrupted, 3 * 4)

    first = _shuffled_scheduler()
    _draw_ids(first, 3 * stop_epoch)
    state = first.state_dict()
    assert state["epoch"] == stop_epoch

    resumed = _shuffled_scheduler(start_epoch=stop_epoch + 1)
    resumed.load_state_dict(state)
    assert _draw_ids(resumed, 3 * 4) == expected


def test_load_state_dict_rejects_mismatched_sources():
    sched = _scheduler([1, 1])
    with pytest.raises(ValueError):
        sched.load_state_dict({"epoch": 1, "cursors": [0], "source_epochs": [1]})
