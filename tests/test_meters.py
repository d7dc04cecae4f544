import time
import types

import pytest
import torch

from lpm.training import meters as M
from lpm.training.evaluation import eval_output, get_train_eval_ids, run_eval
from lpm.data.dictionary import TARGET_PAD, Dictionary


def test_average_value_meter_accepts_tensors_lists_and_scalars():
    meter = M.AverageValueMeter()
    meter.add(torch.tensor([1.0, 3.0]))
    meter.add([5.0])
    meter.add(7)
    mean, var, count = meter.value()
    assert count == 4
    assert mean == pytest.approx(4.0)
    assert var == pytest.approx(5.0)


def test_empty_meter_value():
    assert M.AverageValueMeter().value() == [0.0, 0.0, 0.0]


def test_edit_distance_meter_breakdown():
    meter = M.EditDistanceMeter()
    meter.add(["a", "x", "c", "d"], ["a", "b", "c"])
    rate, n, dels, ins, subs = meter.value()
    assert n == 3
    assert meter.errors == 2
    assert rate == pytest.approx(200.0 / 3)
    assert ins == pytest.approx(100.0 / 3)
    assert subs == pytest.approx(100.0 / 3)
    assert dels == 0.0


def test_time_meter_units():
    meter = M.TimeMeter(unit=True)
    meter.resume()
    time.sleep(0.01)
    meter.stop_and_inc_unit(2)
    assert not meter.running
    assert meter.units == 2
    assert meter.value() == pytest.approx(meter.elapsed / 2)
    meter.reset()
    assert meter.value() == 0.0


def test_train_meters_layout():
    meters = M.SSLTrainMeters()
    assert set(meters.train.losses) == set(M.LOSS_KEYS)
    assert set(meters.timer) == set(M.TIMER_KEYS)
    assert meters.timer[M.RUNTIME].unit is False
    meters.timer[M.FWD_TIMER].resume()
    M.stop_time_meters(meters)
    assert not meters.timer[M.FWD_TIMER].running


def test_speech_stat_meter():
    stats = M.SpeechStatMeter()
    stats.add(torch.zeros(2, 5, 3), torch.tensor([[1, 2, TARGET_PAD], [1, 2, 3]]))
    value = stats.value()
    assert value["input_frames"] == 10
    assert value["target_tokens"] == 5
    assert value["max_target_tokens"] == 3


def test_memory_trace_stages():
    trace = M.MemoryTrace()
    trace.update("0-start")
    trace.update("6-bwd")
    assert list(trace.stages) == ["0-start", "6-bwd"]
    assert trace.format(buffers=False).startswith("0-start=")
    with pytest.raises(KeyError):
        trace.update("7-unknown")
    trace.reset()
    assert trace.stages == {}


def test_train_eval_ids_are_deterministic():
    a = get_train_eval_ids(200, 10.0, seed=3)
    assert len(a) == 20
    assert a == get_train_eval_ids(200, 10.0, seed=3)
    assert get_train_eval_ids(200, 0.0, seed=3) == set()
    assert get_train_eval_ids(0, 50.0, seed=3) == set()


class GreedyStub:
    """decode() returns fixed paths; forward() a constant loss per item."""

    def __init__(self, paths):
        self.paths = paths
        self.training = True

    def decode(self, output):
        return self.paths

    def __call__(self, output, target):
        return torch.ones(output.size(0))

    def train(self):
        self.training = True

    def eval(self):
        self.training = False


def test_eval_output_scores_tokens_and_words():
    d = Dictionary(["|", "a", "b"])
    target = torch.tensor([[1, 0, 2, TARGET_PAD]])
    meters = M.SSLDatasetMeters()
    eval_output(torch.zeros(1, 2, 2), target, meters, d, GreedyStub([[1, 0, 1]]))
    assert meters.edits.errors == 1
    assert meters.word_edits.n == 2
    assert meters.word_edits.errors == 1


def test_run_eval_restores_train_mode():
    class OneBatch:
        def size(self):
            return 1

        def get(self, idx):
            return types.SimpleNamespace(inputs=torch.zeros(1, 2, 2), targets=torch.tensor([[1, 2]]))

    d = Dictionary(["|", "a", "b"])
    model = torch.nn.Identity()
    crit = GreedyStub([[1, 2]])
    meters = M.SSLTrainMeters()
    results = run_eval(model, crit, None, {"dev": OneBatch()}, meters, d, verbose=False)
    assert results == {"dev": 0.0}
    assert meters.valid["dev"].losses[M.ASR].mean == 1.0
    assert model.training
    assert crit.training
