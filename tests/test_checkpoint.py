import json

import pytest
import torch
import torch.nn as nn

from lpm.config import TrainingConfig
from lpm.training.checkpoint import latest_snapshot, load_snapshot, restore_modules, save_snapshot
from lpm.training.entrypoint_utils import load_reload_state, parse_valid_sets, resolve_reload
from lpm.training.log_helper import LogHelper
from lpm.training.meters import SSLDatasetMeters, SSLTrainMeters


def _config(tmp_path, **kwargs):
    values = dict(train="train.jsonl", valid="dev:dev.jsonl", run_path=str(tmp_path), run_idx=1)
    values.update(kwargs)
    return TrainingConfig(**values)


def _modules():
    model = nn.Linear(3, 2)
    criterion = nn.Linear(2, 2)
    optimizer = torch.optim.Adam(list(model.parameters()) + list(criterion.parameters()), lr=1e-3)
    return model, criterion, optimizer


def test_snapshot_round_trip(tmp_path):
    cfg = _config(tmp_path, start_epoch=3, start_iter=30)
    model, criterion, optimizer = _modules()
    path = save_snapshot(tmp_path / "001_model_last.pt", cfg, model, criterion, optimizer)
    snap = load_snapshot(path)
    assert snap["config"]["start_epoch"] == 3
    assert snap["lm_critic"] is None

    other_model, other_crit, other_opt = _modules()
    restore_modules(snap, other_model, other_crit, optimizer=other_opt)
    assert torch.equal(other_model.weight, model.weight)
    assert torch.equal(other_crit.bias, criterion.bias)
    assert not list(tmp_path.glob("*.tmp.*"))


def test_load_snapshot_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_snapshot(tmp_path / "missing.pt")
    torch.save({"model": {}}, tmp_path / "broken.pt")
    with pytest.raises(ValueError):
        load_snapshot(tmp_path / "broken.pt")


def test_latest_snapshot_prefers_highest_run_index(tmp_path):
    cfg = _config(tmp_path)
    model, criterion, optimizer = _modules()
    for idx in (2, 10, 1):
        save_snapshot(tmp_path / f"{idx:03d}_model_last.pt", cfg, model, criterion, optimizer)
    assert latest_snapshot(tmp_path).name == "010_model_last.pt"
    with pytest.raises(FileNotFoundError):
        latest_snapshot(tmp_path / "empty")


def test_continue_uses_saved_config_and_next_run_index(tmp_path):
    cfg = _config(tmp_path, run_idx=4, start_epoch=2, start_iter=20, lr=0.5)
    model, criterion, optimizer = _modules()
    save_snapshot(tmp_path / "004_model_last.pt", cfg, model, criterion, optimizer)
    snapshot, values = load_reload_state("continue", str(tmp_path))
    assert snapshot is not None
    assert values["run_idx"] == 5
    assert values["start_epoch"] == 2
    assert values["lr"] == 0.5


def test_fork_restarts_counters(tmp_path):
    cfg = _config(tmp_path, start_epoch=2, start_iter=20)
    model, criterion, optimizer = _modules()
    path = save_snapshot(tmp_path / "001_model_last.pt", cfg, model, criterion, optimizer)
    snapshot, values = load_reload_state("fork", str(path))
    assert values == {"start_epoch": 0, "start_iter": 0}
    assert "model" in snapshot


def test_reload_validation(tmp_path):
    assert resolve_reload("train", None) is None
    with pytest.raises(ValueError):
        resolve_reload("resume", None)
    with pytest.raises(ValueError):
        resolve_reload("continue", None)
    with pytest.raises(FileNotFoundError):
        resolve_reload("fork", str(tmp_path / "nope.pt"))


def test_parse_valid_sets():
    assert parse_valid_sets("dev:/a.jsonl, /b.jsonl,") == [("dev", "/a.jsonl"), ("/b.jsonl", "/b.jsonl")]


def test_log_helper_writes_run_files(tmp_path):
    cfg = _config(tmp_path, start_epoch=1, start_iter=7)
    model, criterion, optimizer = _modules()
    meters = SSLTrainMeters()
    meters.valid["dev"] = SSLDatasetMeters()
    meters.valid["dev"].edits.add([1, 2], [1, 3])

    helper = LogHelper(cfg.run_idx, cfg.run_path, is_master=True, log_on_epoch=True)
    helper.save_config(cfg)
    helper.write_header(meters)
    helper.log_and_save_model(meters, cfg, model, criterion, None, optimizer, {"lr": 0.1, "lmcrit-t": 1.0})

    assert json.loads((tmp_path / "001_config.json").read_text())["train"] == "train.jsonl"
    perf = (tmp_path / "001_perf").read_text().splitlines()
    assert perf[0].startswith("# date time epoch nupdates lr lmcrit-t")
    assert len(perf) == 2
    assert "nupdates: 7" in (tmp_path / "001_log").read_text()
    assert (tmp_path / "001_model_last.pt").is_file()
    assert (tmp_path / "001_model_dev.pt").is_file()
    assert helper.best_valid_ter["dev"] == pytest.approx(50.0)


def test_log_helper_only_writes_on_main_rank(tmp_path):
    cfg = _config(tmp_path / "run")
    model, criterion, optimizer = _modules()
    helper = LogHelper(cfg.run_idx, cfg.run_path, is_master=False, log_on_epoch=True)
    helper.save_config(cfg)
    helper.log_and_save_model(SSLTrainMeters(), cfg, model, criterion, None, optimizer, {})
    assert not (tmp_path / "run").exists()


class FixedStateScheduler:
    def state_dict(self):
        return {"epoch": 2, "cursors": [1, 0], "source_epochs": [3, 2]}


def test_snapshot_keeps_scheduler_state(tmp_path):
    cfg = _config(tmp_path, start_epoch=2, start_iter=6)
    model, criterion, optimizer = _modules()
    helper = LogHelper(cfg.run_idx, cfg.run_path, is_master=True, log_on_epoch=True)
    helper.log_and_save_model(
        SSLTrainMeters(), cfg, model, criterion, None, optimizer, {"lr": 0.1}, scheduler=FixedStateScheduler()
    )
    snap = load_snapshot(tmp_path / "001_model_last.pt")
    assert snap["scheduler"] == {"epoch": 2, "cursors": [1, 0], "source_epochs": [3, 2]}
    assert "nupdates: 6" in (tmp_path / "001_log").read_text()

    plain = load_snapshot(save_snapshot(tmp_path / "002_model_last.pt", cfg, model, criterion, optimizer))
    assert plain["scheduler"] is None
