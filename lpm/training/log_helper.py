from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .checkpoint import config_to_dict, save_snapshot
from .meters import (
    ASR,
    BEAM_FWD_TIMER,
    BEAM_TIMER,
    BWD_TIMER,
    CRIT_FWD_TIMER,
    FWD_TIMER,
    LM_CRIT_FWD_TIMER,
    LOSS_KEYS,
    OPTIM_TIMER,
    RUNTIME,
    SAMPLE_TIMER,
    TIMER,
    SSLTrainMeters,
)

DEFAULT_EXTRA_FIELDS = ("lr", "lmcrit-t")
_MS_TIMERS = (
    (TIMER, "bch"),
    (SAMPLE_TIMER, "smp"),
    (FWD_TIMER, "fwd"),
    (CRIT_FWD_TIMER, "crit-fwd"),
    (BEAM_TIMER, "beam"),
    (BEAM_FWD_TIMER, "beam-fwd"),
    (LM_CRIT_FWD_TIMER, "lmcrit-fwd"),
    (BWD_TIMER, "bwd"),
    (OPTIM_TIMER, "optim"),
)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "-", name)


def format_duration(seconds: float) -> str:
    seconds = int(seconds)
    return f"{seconds // 3600:02d}:{(seconds % 3600) // 60:02d}:{seconds % 60:02d}"


class LogHelper:
    """Writes run files under `run_path` and snapshots the model on the main rank.

    Files: <run_idx>_config.json, <run_idx>_log (status lines), <run_idx>_perf
    (whitespace-separated table), <run_idx>_model_last.pt and
    <run_idx>_model_<valid>.pt for the best token error rate of each validation set.
    """

    def __init__(
        self,
        run_idx: int,
        run_path: str,
        is_master: bool,
        log_on_epoch: bool,
        logger=None,
        extra_fields: Sequence[str] = DEFAULT_EXTRA_FIELDS,
    ) -> None:
        self.run_idx = int(run_idx)
        self.run_path = Path(run_path)
        self.is_master = is_master
        self.log_on_epoch = log_on_epoch
        self.logger = logger
        self.extra_fields = tuple(extra_fields)
        self.best_valid_ter: Dict[str, float] = {}
        if self.is_master:
            self.run_path.mkdir(parents=True, exist_ok=True)

    def run_file(self, name: str) -> Path:
        return self.run_path / f"{self.run_idx:03d}_{name}"

    def save_config(self, config) -> None:
        if not self.is_master:
            return
        payload = config_to_dict(config)
        self.run_file("config.json").write_text(json.dumps(payload, indent=2, sort_keys=True, default=str))

    def _columns(self, meters: SSLTrainMeters) -> List[str]:
        cols = ["date", "time", "epoch", "nupdates", *self.extra_fields, "runtime"]
        cols += [f"{label}(ms)" for _, label in _MS_TIMERS]
        cols += [f"train-{key}" for key in LOSS_KEYS]
        cols += ["train-TER", "train-WER"]
        for name in sorted(meters.valid):
            cols += [f"{name}-loss", f"{name}-TER", f"{name}-WER"]
        cols += ["avg-isz", "avg-tsz", "max-tsz", "thrpt(smp/s)"]
        return cols

    def write_header(self, meters: SSLTrainMeters) -> None:
        if not self.is_master:
            return
        with open(self.run_file("perf"), "a", encoding="utf-8") as f:
            f.write("# " + " ".join(self._columns(meters)) + "\n")

    def _values(
        self, meters: SSLTrainMeters, epoch: int, iteration: int, extra: Mapping[str, float]
    ) -> List[Tuple[str, str, Optional[float]]]:
        """(column, formatted value, numeric value for metric sinks)"""
        now = datetime.now()
        rows: List[Tuple[str, str, Optional[float]]] = [
            ("date", now.strftime("%Y-%m-%d"), None),
            ("time", now.strftime("%H:%M:%S"), None),
            ("epoch", str(epoch), float(epoch)),
            ("nupdates", str(iteration), float(iteration)),
        ]
        for key in self.extra_fields:
            value = float(extra.get(key, 0.0))
            rows.append((key, f"{value:.6g}", value))
        runtime = meters.timer[RUNTIME].value()
        rows.append(("runtime", format_duration(runtime), runtime))
        for key, label in _MS_TIMERS:
            ms = meters.timer[key].value() * 1000.0
            rows.append((f"timer/{label}", f"{ms:.2f}", ms))
        for key in LOSS_KEYS:
            mean = meters.train.losses[key].mean
            rows.append((f"train/{key}", f"{mean:.5f}", mean))
        rows.append(("train/TER", f"{meters.train.edits.error_rate():.2f}", meters.train.edits.error_rate()))
        rows.append(("train/WER", f"{meters.train.word_edits.error_rate():.2f}", meters.train.word_edits.error_rate()))
        for name in sorted(meters.valid):
            m = meters.valid[name]
            rows.append((f"valid/{name}/loss", f"{m.losses[ASR].mean:.5f}", m.losses[ASR].mean))
            rows.append((f"valid/{name}/TER", f"{m.edits.error_rate():.2f}", m.edits.error_rate()))
            rows.append((f"valid/{name}/WER", f"{m.word_edits.error_rate():.2f}", m.word_edits.error_rate()))
        stats = meters.stats.value()
        samples = stats["samples"]
        rows.append(("avg-isz", f"{stats['input_frames'] / max(samples, 1.0):.1f}", None))
        rows.append(("avg-tsz", f"{stats['target_tokens'] / max(samples, 1.0):.1f}", None))
        rows.append(("max-tsz", f"{stats['max_target_tokens']:.0f}", None))
        throughput = samples / runtime if runtime > 0 else 0.0
        rows.append(("thrpt", f"{throughput:.2f}", throughput))
        return rows

    def format_status(self, rows: Sequence[Tuple[str, str, Optional[float]]]) -> str:
        return " | ".join(f"{col}: {text}" for col, text, _ in rows)

    def log_and_save_model(
        self,
        meters: SSLTrainMeters,
        config,
        model,
        criterion,
        lm_critic,
        optimizer,
        extra_fields: Mapping[str, float],
        scheduler=None,
    ) -> None:
        if not self.is_master:
            return
        epoch = int(getattr(config, "start_epoch", 0))
        iteration = int(getattr(config, "start_iter", 0))
        rows = self._values(meters, epoch, iteration, extra_fields)

        status = self.format_status(rows)
        print(f"[epoch] {status}", flush=True)
        with open(self.run_file("log"), "a", encoding="utf-8") as f:
            f.write(status + "\n")
        with open(self.run_file("perf"), "a", encoding="utf-8") as f:
            f.write(" ".join(text for _, text, _ in rows) + "\n")

        if self.logger is not None:
            scalars = {col if "/" in col else f"train/{col}": value for col, _, value in rows if value is not None}
            self.logger.log(scalars, step=iteration)
            self.logger.flush()

        last = save_snapshot(
            self.run_file("model_last.pt"), config, model, criterion, optimizer, lm_critic, scheduler
        )
        print(f"[ckpt] Saved {last}", flush=True)
        for name in sorted(meters.valid):
            ter = meters.valid[name].edits.error_rate()
            if name not in self.best_valid_ter or ter < self.best_valid_ter[name]:
                self.best_valid_ter[name] = ter
                best = save_snapshot(
                    self.run_file(f"model_{_safe_name(name)}.pt"),
                    config,
                    model,
                    criterion,
                    optimizer,
                    lm_critic,
                    scheduler,
                )
                print(f"[ckpt] New best {name} TER={ter:.2f}: saved {best}", flush=True)
