"""
Metric sinks for LPM training runs.

Scalars of one run go to Weights & Biases and/or TensorBoard through a single
`RunLogger`. A sink turns itself off when its library is missing, when the process is
not rank 0, or (W&B) when the environment disables it, so callers never branch on it.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, cast

# Optional imports
try:
    import wandb
    WANDB_AVAILABLE = True
except ImportError:
    WANDB_AVAILABLE = False
    wandb = cast(Any, None)

try:
    from torch.utils.tensorboard.writer import SummaryWriter
    TENSORBOARD_AVAILABLE = True
except ImportError:
    TENSORBOARD_AVAILABLE = False
    SummaryWriter = cast(Any, None)


STEP_METRIC = "train/iteration"
STEP_BOUND_PREFIXES: Sequence[str] = ("train/*", "valid/*", "timer/*")

# Hyper-parameters worth filtering runs by in the W&B UI
_RUN_CONFIG_KEYS = (
    "pm_type",
    "pm_loss",
    "lm_model",
    "lm_weight",
    "lm_temperature",
    "use_uniform_lm",
    "shuffle_lm_prob",
    "beam_size",
    "batch_size",
    "unpaired_batch_size",
    "paired_iter",
    "audio_iter",
    "audio_warmup_epochs",
    "pretrain_window",
    "hyp_len_ratio_lb",
    "hyp_len_ratio_ub",
    "epochs",
    "net_optim",
    "lr",
    "ddp_world_size",
)


def _wandb_switched_off() -> bool:
    mode = os.getenv("WANDB_MODE", "online").lower()
    return mode in ("offline", "disabled") or os.getenv("WANDB_DISABLED", "").lower() in ("true", "1")


def _on_rank0() -> bool:
    return os.getenv("RANK", "0") == "0" and os.getenv("LOCAL_RANK", "0") == "0"


class WandBSink:
    """One W&B run. Payloads logged for the same step are merged and committed once."""

    def __init__(
        self,
        project: str,
        name: str,
        entity: Optional[str] = None,
        run_config: Optional[Dict[str, Any]] = None,
        tags: Optional[Sequence[str]] = None,
        enabled: bool = True,
    ):
        self.run = None
        self._step: Optional[int] = None
        self._payload: Dict[str, Any] = {}
        self.enabled = enabled and WANDB_AVAILABLE and _on_rank0() and not _wandb_switched_off()
        if not self.enabled:
            reason = "not installed" if not WANDB_AVAILABLE else "disabled"
            print(f"[wandb] W&B {reason}; metrics stay local", flush=True)
            return
        try:
            if os.getenv("WANDB_API_KEY"):
                wandb.login(key=os.getenv("WANDB_API_KEY"))
            self.run = wandb.init(
                project=os.getenv("WANDB_PROJECT", project),
                entity=os.getenv("WANDB_ENTITY", entity or "") or None,
                name=name,
                group=os.getenv("WANDB_GROUP"),
                job_type="train",
                config=run_config or {},
                tags=list(tags or []),
                id=os.getenv("WANDB_RUN_ID"),
                resume=os.getenv("WANDB_RESUME", "allow"),
                settings=wandb.Settings(start_method=os.getenv("WANDB_START_METHOD", "thread")),
                reinit=True,
            )
            wandb.define_metric(STEP_METRIC)
            for prefix in STEP_BOUND_PREFIXES:
                wandb.define_metric(prefix, step_metric=STEP_METRIC)
            print(f"[wandb] run {self.run.get_url()}", flush=True)
        except Exception as e:
            print(f"[wandb] Failed to initialize W&B: {e}", flush=True)
            self.enabled = False
            self.run = None

    def add(self, metrics: Dict[str, Any], step: int) -> None:
        if not self.enabled:
            return
        if self._step is not None and step != self._step:
            self.commit()
        self._step = step
        self._payload.update(metrics)

    def commit(self) -> None:
        if not self.enabled or self._step is None or not self._payload:
            return
        payload = {STEP_METRIC: self._step, **self._payload}
        try:
            self.run.log(payload, step=self._step)
        except Exception as e:
            print(f"[wandb] Error logging step {self._step}: {e}", flush=True)
        self._payload = {}
        self._step = None

    def finish(self) -> None:
        self.commit()
        if self.enabled and self.run is not None:
            try:
                self.run.finish()
            except Exception as e:
                print(f"[wandb] Error finishing W&B run: {e}", flush=True)


class TensorBoardSink:
    def __init__(self, log_dir: str):
        self.log_dir = Path(log_dir)
        self.writer = None
        if not TENSORBOARD_AVAILABLE:
            print("[tb] TensorBoard not available", flush=True)
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.writer = SummaryWriter(log_dir=str(self.log_dir))
        print(f"[tb] Writing events to {self.log_dir}", flush=True)

    @property
    def enabled(self) -> bool:
        return self.writer is not None

    def add(self, metrics: Dict[str, float], step: int) -> None:
        if self.writer is None:
            return
        for name, value in metrics.items():
            self.writer.add_scalar(name, value, step)

    def flush(self) -> None:
        if self.writer is not None:
            self.writer.flush()

    def close(self) -> None:
        if self.writer is not None:
            self.writer.close()


class RunLogger:
    """Fan scalars out to the configured sinks under one monotonic iteration counter."""

    def __init__(self, wandb_sink: Optional[WandBSink] = None, tensorboard_sink: Optional[TensorBoardSink] = None):
        self.wandb_sink = wandb_sink
        self.tensorboard_sink = tensorboard_sink
        self.step = 0

    def _monotonic(self, step: Optional[int]) -> int:
        if step is None:
            return self.step
        if step < self.step:
            print(f"[logger] step {step} is behind {self.step}; logging at {self.step}", flush=True)
            return self.step
        self.step = int(step)
        return self.step

    def log(self, metrics: Dict[str, float], step: Optional[int] = None) -> None:
        step = self._monotonic(step)
        if self.wandb_sink is not None:
            self.wandb_sink.add(metrics, step)
        if self.tensorboard_sink is not None:
            self.tensorboard_sink.add(metrics, step)

    def log_scalar(self, name: str, value: float, step: Optional[int] = None) -> None:
        self.log({name: value}, step)

    def flush(self) -> None:
        if self.wandb_sink is not None:
            self.wandb_sink.commit()
        if self.tensorboard_sink is not None:
            self.tensorboard_sink.flush()

    def finish(self) -> None:
        if self.wandb_sink is not None:
            self.wandb_sink.finish()
        if self.tensorboard_sink is not None:
            self.tensorboard_sink.close()


def default_experiment_name(config) -> str:
    stamp = datetime.now().strftime("%Y%m%d_%H%M")
    job_id = os.getenv("SLURM_JOB_ID", "local")
    name = f"lpm-{config.pm_type}-{stamp}_{job_id}_run{config.run_idx}"
    if config.pm_type == "lpm":
        name += f"_{config.pm_loss}_w{config.lm_weight:g}"
        if getattr(config, "use_uniform_lm", False):
            name += "_uniformlm"
    return name


def run_tags(config) -> list:
    tags = [config.pm_type, f"pm_loss={config.pm_loss}"]
    if getattr(config, "use_uniform_lm", False):
        tags.append("uniform_lm")
    if getattr(config, "shuffle_lm_prob", False):
        tags.append("shuffled_lm")
    if getattr(config, "pretrain_window", 0) > 0:
        tags.append(f"pretrain={config.pretrain_window}")
    return tags


def create_run_logger(config, experiment_name: str, tensorboard_dir: Optional[str] = None) -> RunLogger:
    """W&B sink (unless disabled by config or environment) plus TensorBoard under `tensorboard_dir`."""
    run_config = {key: getattr(config, key, None) for key in _RUN_CONFIG_KEYS}
    run_config["job_id"] = os.getenv("SLURM_JOB_ID", "local")
    wandb_sink = WandBSink(
        project=getattr(config, "wandb_project", "local-prior-matching"),
        name=experiment_name,
        entity=getattr(config, "wandb_entity", None),
        run_config=run_config,
        tags=run_tags(config),
        enabled=getattr(config, "wandb_enabled", True),
    )
    tensorboard_sink = TensorBoardSink(str(Path(tensorboard_dir) / experiment_name)) if tensorboard_dir else None
    return RunLogger(wandb_sink, tensorboard_sink)
