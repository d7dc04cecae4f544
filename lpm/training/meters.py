from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import kaldialign
import torch

# loss meter keys
ASR = "ASR"
LM = "LM"
FULL_MODEL = "FullModel"
LEN = "Len"
NUM_HYPOS = "NumHypos"
LM_ENT = "LMEnt"
LM_SCORE = "LMScore"
S2S_ENT = "S2SEnt"
LOSS_KEYS = (ASR, LM, FULL_MODEL, LEN, NUM_HYPOS, LM_ENT, LM_SCORE, S2S_ENT)

# timer keys
TIMER = "Timer"
RUNTIME = "Runtime"
SAMPLE_TIMER = "Sample"
FWD_TIMER = "Fwd"
CRIT_FWD_TIMER = "CritFwd"
BEAM_TIMER = "Beam"
BEAM_FWD_TIMER = "BeamFwd"
LM_CRIT_FWD_TIMER = "LMCritFwd"
BWD_TIMER = "Bwd"
OPTIM_TIMER = "Optim"
TIMER_KEYS = (
    TIMER,
    RUNTIME,
    SAMPLE_TIMER,
    FWD_TIMER,
    CRIT_FWD_TIMER,
    BEAM_TIMER,
    BEAM_FWD_TIMER,
    LM_CRIT_FWD_TIMER,
    BWD_TIMER,
    OPTIM_TIMER,
)

EDIT_ALIGN_EPS = "*"


def device_sync() -> None:
    """Wait for queued device work so timers measure it; no-op on CPU."""
    if torch.cuda.is_available():
        torch.cuda.synchronize()


class AverageValueMeter:
    """Running mean/variance of every value added (tensors contribute each element)."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.count = 0
        self.total = 0.0
        self.total_sq = 0.0

    def add(self, value) -> None:
        if isinstance(value, torch.Tensor):
            values = value.detach().float().reshape(-1).cpu().tolist()
        elif isinstance(value, (list, tuple)):
            values = [float(v) for v in value]
        else:
            values = [float(value)]
        for v in values:
            self.count += 1
            self.total += v
            self.total_sq += v * v

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def value(self) -> List[float]:
        """[mean, variance, count]"""
        if not self.count:
            return [0.0, 0.0, 0.0]
        mean = self.mean
        var = max(self.total_sq / self.count - mean * mean, 0.0)
        return [mean, var, float(self.count)]


class EditDistanceMeter:
    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.n = 0
        self.insertions = 0
        self.deletions = 0
        self.substitutions = 0

    def add(self, hyp: Sequence, ref: Sequence) -> None:
        ali = kaldialign.align(list(ref), list(hyp), EDIT_ALIGN_EPS)
        for ref_tok, hyp_tok in ali:
            if ref_tok == EDIT_ALIGN_EPS:
                self.insertions += 1
            elif hyp_tok == EDIT_ALIGN_EPS:
                self.deletions += 1
            elif ref_tok != hyp_tok:
                self.substitutions += 1
        self.n += len(ref)

    @property
    def errors(self) -> int:
        return self.insertions + self.deletions + self.substitutions

    def error_rate(self) -> float:
        return 100.0 * self.errors / self.n if self.n else 0.0

    def value(self) -> List[float]:
        """[error rate, reference count, deletion rate, insertion rate, substitution rate]"""
        if not self.n:
            return [0.0, 0.0, 0.0, 0.0, 0.0]
        scale = 100.0 / self.n
        return [
            self.error_rate(),
            float(self.n),
            self.deletions * scale,
            self.insertions * scale,
            self.substitutions * scale,
        ]


class TimeMeter:
    """Accumulates wall time between resume()/stop(); with `unit` reports time per unit."""

    def __init__(self, unit: bool = False) -> None:
        self.unit = unit
        self.reset()

    def reset(self) -> None:
        self.elapsed = 0.0
        self.units = 0
        self._start: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._start is not None

    def resume(self) -> None:
        if self._start is None:
            self._start = time.perf_counter()

    def stop(self) -> None:
        if self._start is not None:
            self.elapsed += time.perf_counter() - self._start
            self._start = None

    def inc_unit(self, n: int = 1) -> None:
        self.units += n

    def stop_and_inc_unit(self, n: int = 1) -> None:
        self.stop()
        self.inc_unit(n)

    def value(self) -> float:
        total = self.elapsed
        if self._start is not None:
            total += time.perf_counter() - self._start
        if self.unit:
            return total / self.units if self.units else 0.0
        return total


class SpeechStatMeter:
    """Input/target volume seen since the last reset."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.input_frames = 0
        self.target_tokens = 0
        self.max_input_frames = 0
        self.max_target_tokens = 0
        self.samples = 0
        self.batches = 0

    def add(self, inputs: torch.Tensor, targets: torch.Tensor, pad: int = -1) -> None:
        batch, frames = int(inputs.size(0)), int(inputs.size(1))
        target_lens = targets.ne(pad).sum(dim=1)
        self.input_frames += batch * frames
        self.target_tokens += int(target_lens.sum().item())
        self.max_input_frames = max(self.max_input_frames, frames)
        self.max_target_tokens = max(self.max_target_tokens, int(target_lens.max().item()) if batch else 0)
        self.samples += batch
        self.batches += 1

    def value(self) -> Dict[str, float]:
        return {
            "input_frames": float(self.input_frames),
            "target_tokens": float(self.target_tokens),
            "max_input_frames": float(self.max_input_frames),
            "max_target_tokens": float(self.max_target_tokens),
            "samples": float(self.samples),
            "batches": float(self.batches),
        }


@dataclass
class SSLDatasetMeters:
    edits: EditDistanceMeter = field(default_factory=EditDistanceMeter)
    word_edits: EditDistanceMeter = field(default_factory=EditDistanceMeter)
    losses: Dict[str, AverageValueMeter] = field(
        default_factory=lambda: {key: AverageValueMeter() for key in LOSS_KEYS}
    )

    def reset(self) -> None:
        self.edits.reset()
        self.word_edits.reset()
        for meter in self.losses.values():
            meter.reset()


@dataclass
class SSLTrainMeters:
    train: SSLDatasetMeters = field(default_factory=SSLDatasetMeters)
    valid: Dict[str, SSLDatasetMeters] = field(default_factory=dict)
    timer: Dict[str, TimeMeter] = field(
        default_factory=lambda: {key: TimeMeter(unit=key != RUNTIME) for key in TIMER_KEYS}
    )
    stats: SpeechStatMeter = field(default_factory=SpeechStatMeter)


def reset_dataset_meters(meters: SSLDatasetMeters) -> None:
    meters.reset()


def reset_time_stat_meters(meters: SSLTrainMeters) -> None:
    for timer in meters.timer.values():
        timer.reset()
    meters.stats.reset()


def stop_time_meters(meters: SSLTrainMeters) -> None:
    for timer in meters.timer.values():
        timer.stop()


MEMORY_STAGES = ("0-start", "1-encfwd", "2a-decfwd", "2b-decbs", "3-lmfwd", "4-bmfwd", "5-zgrad", "6-bwd")


class MemoryTrace:
    """Device memory snapshot per pipeline stage of the current iteration."""

    def __init__(self, device=None) -> None:
        self.device = device
        self.stages: Dict[str, List[int]] = {}

    def reset(self) -> None:
        self.stages = {}

    def _snapshot(self) -> List[int]:
        if not torch.cuda.is_available():
            return [0, 0, 0, 0]
        stats = torch.cuda.memory_stats(self.device)
        return [
            int(stats.get("allocated_bytes.all.current", 0)),
            int(stats.get("allocation.all.current", 0)),
            int(stats.get("reserved_bytes.all.current", 0)),
            int(stats.get("segment.all.current", 0)),
        ]

    def update(self, stage: str) -> None:
        if stage not in MEMORY_STAGES:
            raise KeyError(f"Unknown memory stage '{stage}'")
        self.stages[stage] = self._snapshot()

    def format(self, buffers: bool = True) -> str:
        parts = []
        for stage in MEMORY_STAGES:
            if stage not in self.stages:
                continue
            alloc, blocks, reserved, segments = self.stages[stage]
            text = f"{stage}={alloc / 2**20:.1f}MB"
            if buffers:
                text += f"({blocks}/{reserved / 2**20:.1f}MB/{segments})"
            parts.append(text)
        return " ".join(parts)
