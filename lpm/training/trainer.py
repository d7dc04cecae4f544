from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import torch
import torch.nn as nn

from ..config import TrainingConfig, TrainingMetrics
from ..data.dataset import Sample
from ..data.dictionary import Dictionary
from ..data.scheduler import DataScheduler
from ..errors import check_finite
from ..matching.hypotheses import path_length_range
from ..matching.loss_selector import LossResult, LossSelector
from . import meters as M
from .distributed import GradientReducer
from .evaluation import eval_output, run_eval
from .log_helper import LogHelper
from .optim import get_lr, lr_at_epoch, scale_gradients, set_lr


@dataclass
class TrainingContext:
    """Everything one training run mutates, owned by the trainer for the run's lifetime."""

    config: TrainingConfig
    model: nn.Module
    criterion: nn.Module
    lm_critic: Optional[object]
    optimizer: torch.optim.Optimizer
    scheduler: DataScheduler
    loss_selector: LossSelector
    reducer: GradientReducer
    log_helper: LogHelper
    dictionary: Dictionary
    meters: M.SSLTrainMeters = field(default_factory=M.SSLTrainMeters)
    trace: M.MemoryTrace = field(default_factory=M.MemoryTrace)
    valid_sets: Dict[str, object] = field(default_factory=dict)
    train_eval_ids: Set[int] = field(default_factory=set)
    device: torch.device = field(default_factory=lambda: torch.device("cpu"))
    start_epoch: int = 0
    start_iter: int = 0
    iters_per_epoch: int = 0
    is_main_rank: bool = True
    logger: Optional[object] = None

    def __post_init__(self) -> None:
        if self.iters_per_epoch == 0:
            self.iters_per_epoch = self.scheduler.iterations_per_epoch

    @property
    def params(self) -> List[nn.Parameter]:
        return list(self.model.parameters()) + list(self.criterion.parameters())


class LPMTrainer:
    """Epoch/iteration loop of local prior matching training.

    Each iteration: fetch a batch, compute its loss (supervised, oracle or prior
    matching), backward, reduce gradients across workers, divide them by the nominal
    batch size of the batch's source, clip, step. Gradient reduction runs on every
    iteration of every worker, including iterations whose batch was filtered empty.
    """

    def __init__(self, ctx: TrainingContext):
        self.ctx = ctx
        self.config = ctx.config
        self.debug = bool(getattr(ctx.config, "debug", False))

    def _log(self, message: str) -> None:
        if self.ctx.is_main_rank:
            print(message, flush=True)

    def _log_iter(self, message: str) -> None:
        if self.debug or self.ctx.is_main_rank:
            print(message, flush=True)

    def nominal_batch_size(self, sample: Sample) -> int:
        return int(self.config.batch_size if sample.is_paired else self.config.unpaired_batch_size)

    def lm_temperature_at(self, epoch: int) -> float:
        step = max(int(self.config.lm_temp_step_size), 1)
        return float(self.config.lm_temperature) * float(self.config.gamma) ** (epoch // step)

    def apply_audio_warmup(self, epoch: int) -> None:
        """Ramp the unpaired-audio share linearly over the warm-up epochs after pretraining."""
        cfg = self.config
        if cfg.audio_warmup_epochs <= 0:
            return
        since = epoch - cfg.pretrain_window
        if epoch > cfg.pretrain_window and since <= cfg.audio_warmup_epochs:
            unpaired_iter = since * cfg.audio_iter // cfg.audio_warmup_epochs
            self.ctx.scheduler.set_schedule([cfg.paired_iter, unpaired_iter])
            self.ctx.iters_per_epoch = cfg.paired_iter + unpaired_iter
            self._log(f"[epoch] audio warm-up: schedule=({cfg.paired_iter}, {unpaired_iter})")

    def _resume_timers(self) -> None:
        timers = self.ctx.meters.timer
        timers[M.SAMPLE_TIMER].resume()
        timers[M.RUNTIME].resume()
        timers[M.TIMER].resume()

    def train_step(self, sample: Sample, epoch: int, schedule_iter: int, lm_temperature: float = 1.0) -> LossResult:
        ctx = self.ctx
        meters = ctx.meters
        timers = meters.timer
        bs = self.nominal_batch_size(sample)

        timers[M.TIMER].inc_unit()
        timers[M.SAMPLE_TIMER].stop_and_inc_unit()
        meters.stats.add(sample.inputs, sample.targets)
        check_finite(sample.inputs, "Sample has NaN values", where="sample")
        check_finite(sample.targets, "Sample has NaN values", where="sample")

        self._log_iter(
            f"[epoch] [ Epoch {epoch} ] Iter={schedule_iter} isPairedData={sample.is_paired} "
            f"Inp-T={sample.inputs.size(1)} Out-U={sample.targets.size(1)}"
        )
        if self.debug:
            print(f"[debug] ##### BEGIN utterances {sample.sample_ids}", flush=True)

        ctx.trace.reset()
        ctx.trace.update("0-start")

        timers[M.FWD_TIMER].resume()
        output = ctx.model(sample.inputs.to(ctx.device))
        M.device_sync()
        ctx.trace.update("1-encfwd")

        result = ctx.loss_selector.compute(output, sample, meters, ctx.trace, lm_temperature)
        loss = result.loss

        M.device_sync()
        timers[M.FWD_TIMER].stop_and_inc_unit()
        meters.train.losses[M.FULL_MODEL].add(loss)

        if sample.is_paired and sample.global_batch_idx in ctx.train_eval_ids:
            eval_output(output, sample.targets, meters.train, ctx.dictionary, ctx.criterion)

        timers[M.BWD_TIMER].resume()
        ctx.optimizer.zero_grad(set_to_none=True)
        if ctx.lm_critic is not None:
            ctx.lm_critic.zero_grad()
        ctx.trace.update("5-zgrad")

        loss.sum().backward()
        # collective: reached on every branch, including the empty-batch one
        ctx.reducer.finalize()
        ctx.trace.update("6-bwd")

        M.device_sync()
        timers[M.BWD_TIMER].stop_and_inc_unit()
        timers[M.OPTIM_TIMER].resume()

        # nominal batch size: workers may filter different numbers of items
        params = ctx.params
        scale_gradients(params, bs)
        if self.config.max_grad_norm > 0:
            torch.nn.utils.clip_grad_norm_(params, self.config.max_grad_norm)
        ctx.optimizer.step()

        M.device_sync()
        timers[M.OPTIM_TIMER].stop_and_inc_unit()
        timers[M.SAMPLE_TIMER].resume()

        min_len, max_len = path_length_range(result.paths)
        self._log_iter(
            f"[epoch] [ Epoch {epoch} ] Iter={schedule_iter} isPairedData={sample.is_paired} "
            f"AvgLoss={loss.detach().float().mean().item():.5f} "
            f"MinLen={'-' if min_len is None else min_len} MaxLen={'-' if max_len is None else max_len} "
            f"Mem: {ctx.trace.format()}"
        )
        return result

    def _should_report(self, cur_iter: int, schedule_iter: int) -> bool:
        report_iters = int(self.config.report_iters)
        log_on_epoch = report_iters == 0
        if log_on_epoch:
            return schedule_iter == self.ctx.iters_per_epoch
        return cur_iter % report_iters == 0

    def _report(self, epoch: int, cur_iter: int, lm_temperature: float) -> None:
        ctx = self.ctx
        M.stop_time_meters(ctx.meters)
        run_eval(
            ctx.model,
            ctx.criterion,
            ctx.lm_critic,
            ctx.valid_sets,
            ctx.meters,
            ctx.dictionary,
            device=ctx.device,
            verbose=ctx.is_main_rank,
        )
        self.config.start_epoch = epoch
        self.config.start_iter = cur_iter
        ctx.log_helper.log_and_save_model(
            ctx.meters,
            self.config,
            ctx.model,
            ctx.criterion,
            ctx.lm_critic,
            ctx.optimizer,
            {"lr": get_lr(ctx.optimizer), "lmcrit-t": lm_temperature},
            scheduler=ctx.scheduler,
        )
        M.reset_dataset_meters(ctx.meters.train)
        M.reset_time_stat_meters(ctx.meters)
        ctx.model.train()
        ctx.criterion.train()
        self._resume_timers()

    def run_epoch_block(self, n_epochs: int) -> None:
        """Train from the context's current epoch up to (and including) epoch `n_epochs`."""
        ctx = self.ctx
        cfg = self.config
        cur_epoch = ctx.start_epoch
        cur_iter = ctx.start_iter
        ctx.model.train()
        ctx.criterion.train()
        if ctx.lm_critic is not None:
            ctx.lm_critic.eval()

        while cur_epoch < n_epochs:
            lr = lr_at_epoch(cfg.lr, cfg.gamma, cfg.step_size, cur_epoch)
            set_lr(ctx.optimizer, lr)
            lm_temperature = self.lm_temperature_at(cur_epoch)

            cur_epoch += 1
            M.device_sync()
            self._resume_timers()
            self._log(f"[epoch] Epoch {cur_epoch} started!")
            self._log(f"[epoch]   Learning rate = {lr}")

            self.apply_audio_warmup(cur_epoch)

            schedule_iter = 0
            while schedule_iter < ctx.iters_per_epoch:
                sample = ctx.scheduler.get()
                cur_iter += 1
                schedule_iter += 1
                result = self.train_step(sample, cur_epoch, schedule_iter, lm_temperature)

                if ctx.logger is not None:
                    metrics = TrainingMetrics(
                        loss=float(result.loss.detach().float().mean().item()),
                        data_type=sample.data_type,
                        epoch=cur_epoch,
                        iteration=cur_iter,
                        num_hypos=len(result.paths),
                    )
                    ctx.logger.log(metrics.to_dict(), step=cur_iter)

                if self._should_report(cur_iter, schedule_iter):
                    self._report(cur_epoch, cur_iter, lm_temperature)
            M.device_sync()

        ctx.start_epoch = cur_epoch
        ctx.start_iter = cur_iter

    def train(self) -> None:
        """Optional paired-only pretraining, then the paired + unpaired schedule."""
        ctx = self.ctx
        cfg = self.config
        if cfg.pretrain_window - ctx.start_epoch > 0:
            paired_size = ctx.scheduler.datasets[0].size()
            ctx.iters_per_epoch = paired_size
            ctx.scheduler.set_schedule([paired_size, 0])
            self.run_epoch_block(cfg.pretrain_window)
            ctx.criterion.clear_window()
            ctx.iters_per_epoch = cfg.paired_iter + cfg.audio_iter
            ctx.scheduler.set_schedule([cfg.paired_iter, cfg.audio_iter])
            self._log("[lpm] Finished pretraining")

        self.run_epoch_block(cfg.epochs)
        self._log("[lpm] Finished training")
