import argparse
import os
import random
import sys
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch

from lpm.config import TrainingConfig
from lpm.data.dataset import PAIRED, UNPAIRED
from lpm.data.dictionary import load_dictionary
from lpm.data.scheduler import DataScheduler
from lpm.errors import FatalNumericalError
from lpm.logging.wandb_utils import create_run_logger, default_experiment_name
from lpm.matching.loss_selector import LossSelector
from lpm.models.encoder import build_acoustic_model, num_total_params
from lpm.models.loader import build_lm_critic
from lpm.models.seq2seq import build_seq2seq
from lpm.training.checkpoint import restore_modules
from lpm.training.distributed import (
    GradientReducer,
    all_reduce_parameters,
    destroy_distributed,
    distributed_barrier,
    setup_distributed_context,
)
from lpm.training.entrypoint_utils import (
    CONTINUE_MODE,
    RUN_MODES,
    build_train_datasets,
    build_valid_datasets,
    load_reload_state,
    resolve_device,
)
from lpm.training.evaluation import get_train_eval_ids
from lpm.training.log_helper import LogHelper
from lpm.training.meters import SSLDatasetMeters, SSLTrainMeters, MemoryTrace, reset_time_stat_meters
from lpm.training.optim import build_optimizer
from lpm.training.trainer import LPMTrainer, TrainingContext

NUMERICAL_ERROR_EXIT_CODE = int(os.environ.get("NUMERICAL_ERROR_EXIT_CODE", "65"))


def _cli_str_to_bool(value) -> bool:
    """argparse helper that accepts boolean-ish strings like true/false or 1/0."""
    if isinstance(value, bool):
        return value
    if value is None:
        raise argparse.ArgumentTypeError("expected a boolean value")
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: {value!r}")


def build_arg_parser() -> argparse.ArgumentParser:
    # Only flags given on the command line end up in the namespace, so that they can
    # override a saved config in continue mode.
    parser = argparse.ArgumentParser(
        description="Local prior matching training for seq2seq ASR",
        argument_default=argparse.SUPPRESS,
    )
    parser.add_argument("mode", choices=RUN_MODES, help="train | continue <run_dir> | fork <model.pt>")
    parser.add_argument("reload_path", nargs="?", default=None, help="Run directory (continue) or snapshot (fork)")

    data = parser.add_argument_group("data")
    data.add_argument("--train", help="Paired training manifest (JSONL)")
    data.add_argument("--train_audio", help="Unpaired audio manifest (JSONL)")
    data.add_argument("--valid", help="Comma-separated validation manifests, 'path' or 'name:path'")
    data.add_argument("--tokens")
    data.add_argument("--tokens_dir")
    data.add_argument("--word_separator")
    data.add_argument("--num_features", type=int)
    data.add_argument("--batch_size", type=int)
    data.add_argument("--unpaired_batch_size", type=int)
    data.add_argument("--paired_iter", type=int, help="Paired batches per epoch")
    data.add_argument("--audio_iter", type=int, help="Unpaired batches per epoch")
    data.add_argument("--audio_warmup_epochs", type=int)
    data.add_argument("--pretrain_window", type=int, help="Paired-only epochs before prior matching")
    data.add_argument("--scheduler_order", choices=["in_order", "uniform", "random"])
    data.add_argument("--no_resample", type=_cli_str_to_bool, nargs="?", const=True)
    data.add_argument("--pct_train_eval", type=float)

    model = parser.add_argument_group("model")
    model.add_argument("--encoder_hidden", type=int)
    model.add_argument("--encoder_layers", type=int)
    model.add_argument("--decoder_hidden", type=int)
    model.add_argument("--attention_window_std", type=float)
    model.add_argument("--max_decoder_output_len", type=int)
    model.add_argument("--beam_size", type=int)
    model.add_argument("--label_smoothing", type=float)

    pm = parser.add_argument_group("prior matching")
    pm.add_argument("--lm_model", help="HF causal LM used as the prior")
    pm.add_argument("--lm_temperature", type=float)
    pm.add_argument("--lm_temp_step_size", type=int)
    pm.add_argument("--use_uniform_lm", type=_cli_str_to_bool, nargs="?", const=True)
    pm.add_argument("--shuffle_lm_prob", type=_cli_str_to_bool, nargs="?", const=True)
    pm.add_argument("--lm_weight", type=float)
    pm.add_argument("--pm_type", choices=["oracle", "lpm"])
    pm.add_argument("--pm_loss", help="ce | kl | reverse_kl")
    pm.add_argument("--adv_margin", type=float)
    pm.add_argument("--lm_length_norm", type=_cli_str_to_bool, nargs="?", const=True)
    pm.add_argument("--s2s_length_norm", type=_cli_str_to_bool, nargs="?", const=True)
    pm.add_argument("--hyp_len_ratio_lb", type=float)
    pm.add_argument("--hyp_len_ratio_ub", type=float)

    optim = parser.add_argument_group("optimisation")
    optim.add_argument("--epochs", type=int)
    optim.add_argument("--net_optim", choices=["sgd", "adam", "adamw", "adagrad", "rmsprop"])
    optim.add_argument("--lr", type=float)
    optim.add_argument("--momentum", type=float)
    optim.add_argument("--weight_decay", type=float)
    optim.add_argument("--gamma", type=float)
    optim.add_argument("--step_size", type=int)
    optim.add_argument("--max_grad_norm", type=float)
    optim.add_argument("--seed", type=int)
    optim.add_argument("--deterministic", type=_cli_str_to_bool, nargs="?", const=True)
    optim.add_argument("--debug", type=_cli_str_to_bool, nargs="?", const=True)

    run = parser.add_argument_group("run")
    run.add_argument("--run_path")
    run.add_argument("--run_idx", type=int)
    run.add_argument("--report_iters", type=int, help="0 logs once per epoch")
    run.add_argument("--tensorboard_dir")
    run.add_argument("--wandb_project")
    run.add_argument("--wandb_entity")
    run.add_argument("--wandb_enabled", type=_cli_str_to_bool, nargs="?", const=True)
    return parser


def parse_args_to_config(argv: Optional[List[str]] = None) -> Tuple[str, Optional[str], TrainingConfig, Optional[Dict[str, Any]]]:
    """Parse the command line; in continue mode the saved config is the base for the flags."""
    args = vars(build_arg_parser().parse_args(argv))
    mode = args.pop("mode")
    reload_path = args.pop("reload_path", None)
    snapshot, base = load_reload_state(mode, reload_path)
    values = {**base, **args} if mode == CONTINUE_MODE else {**args, **base}
    return mode, reload_path, TrainingConfig(**values), snapshot


class LPMEntrypoint:
    """Coordinate one training run: build, restore, train, clean up."""

    def __init__(
        self,
        config: TrainingConfig,
        mode: str = "train",
        reload_path: Optional[str] = None,
        snapshot: Optional[Dict[str, Any]] = None,
    ):
        self.config = config
        self.mode = mode
        self.reload_path = reload_path
        self.snapshot = snapshot
        self.ddp_ctx = setup_distributed_context(config)
        self.ddp_world_size = self.ddp_ctx.world_size
        self.ddp_rank = self.ddp_ctx.rank
        self.is_main_rank = self.ddp_ctx.is_main_rank
        self.seed_offset = int(self.config.seed) + self.ddp_rank
        self.device = resolve_device(self.ddp_ctx.local_rank)
        self.experiment_name = default_experiment_name(config)

        self.dictionary = None
        self.model = None
        self.criterion = None
        self.lm_critic = None
        self.optimizer = None
        self.run_logger = None
        self.trainer: Optional[LPMTrainer] = None

    def run(self) -> None:
        self._log_launch()
        self._seed_everything()
        self._configure_deterministic_mode()
        self._configure_cuda_backend()
        self._load_dictionary()
        self._build_models()
        self._build_optimizer()
        self._initialize_logger()
        self.trainer = self._build_trainer()
        try:
            self.trainer.train()
        except FatalNumericalError as exc:
            print(f"[fatal] rank {self.ddp_rank}: {exc} (at {exc.where})", flush=True)
            self._finalize()
            sys.exit(NUMERICAL_ERROR_EXIT_CODE)
        self._post_training()
        self._finalize()

    def _log_launch(self) -> None:
        print("[launch] python", " ".join(sys.argv), flush=True)
        if self.is_main_rank:
            print("=" * 80)
            print(f"LPM TRAINING CONFIGURATION (mode={self.mode})")
            print("=" * 80)
            for key, value in sorted(self.config.model_dump().items()):
                print(f"  {key:30s} = {value}")
            print("=" * 80, flush=True)

    def _seed_everything(self) -> None:
        random.seed(self.seed_offset)
        np.random.seed(self.seed_offset)
        torch.manual_seed(self.seed_offset)
        if torch.cuda.is_available():
            torch.cuda.manual_seed_all(self.seed_offset)

    def _configure_deterministic_mode(self) -> None:
        if getattr(self.config, "deterministic", False):
            os.environ.setdefault("CUBLAS_WORKSPACE_CONFIG", ":4096:8")
            torch.use_deterministic_algorithms(True)

    def _configure_cuda_backend(self) -> None:
        if not torch.cuda.is_available():
            return
        torch.cuda.empty_cache()
        if getattr(self.config, "deterministic", False):
            torch.backends.cudnn.benchmark = False
            torch.backends.cudnn.deterministic = True
        else:
            torch.backends.cudnn.benchmark = True

    def _load_dictionary(self) -> None:
        cfg = self.config
        self.dictionary = load_dictionary(cfg.tokens_dir, cfg.tokens, cfg.word_separator)
        if self.is_main_rank:
            print(f"[lpm] Number of classes (network): {len(self.dictionary)}", flush=True)

    def _build_models(self) -> None:
        cfg = self.config
        self.model = build_acoustic_model(cfg).to(self.device)
        self.criterion = build_seq2seq(cfg, len(self.dictionary), self.dictionary.eos_index).to(self.device)
        if cfg.start_epoch >= cfg.pretrain_window:
            self.criterion.clear_window()
        # fork rebuilds the LM critic; continue restores it from the snapshot
        self.lm_critic = build_lm_critic(cfg, self.dictionary, self.device)
        if self.snapshot is not None:
            restore_modules(
                self.snapshot,
                self.model,
                self.criterion,
                lm_critic=self.lm_critic if self.mode == CONTINUE_MODE else None,
            )
            print(f"[lpm] Restored model and criterion ({self.mode} from {self.reload_path})", flush=True)
        if self.is_main_rank:
            print(f"[lpm] [Network] {self.model.pretty_string()}", flush=True)
            print(f"[lpm] [Network Params: {num_total_params(self.model)}]", flush=True)
            print(f"[lpm] [Criterion] {self.criterion.pretty_string()}", flush=True)
            print(f"[lpm] [Criterion Params: {num_total_params(self.criterion)}]", flush=True)
            if self.lm_critic is not None:
                print(f"[lpm] [LMCritic] {self.lm_critic.pretty_string()}", flush=True)
                print(f"[lpm] [LMCritic Params: {num_total_params(self.lm_critic.lm)}]", flush=True)

    def _build_optimizer(self) -> None:
        cfg = self.config
        params = list(self.model.parameters()) + list(self.criterion.parameters())
        self.optimizer = build_optimizer(params, cfg.net_optim, cfg.lr, cfg.momentum, cfg.weight_decay)
        if self.mode == CONTINUE_MODE and self.snapshot is not None and self.snapshot.get("optimizer"):
            self.optimizer.load_state_dict(self.snapshot["optimizer"])
        if self.is_main_rank:
            print(f"[lpm] [Optimizer] {type(self.optimizer).__name__}(lr={cfg.lr})", flush=True)

    def _initialize_logger(self) -> None:
        # W&B + TensorBoard on the main rank only
        self.run_logger = None
        if self.is_main_rank:
            self.run_logger = create_run_logger(
                self.config,
                self.experiment_name,
                tensorboard_dir=self.config.tensorboard_dir,
            )

    def _build_trainer(self) -> LPMTrainer:
        cfg = self.config
        rank, world = self.ddp_rank, self.ddp_world_size

        paired_ds, unpaired_ds = build_train_datasets(cfg, self.dictionary, rank, world)
        if cfg.no_resample:
            if self.is_main_rank:
                print("[lpm] Shuffling trainset", flush=True)
            paired_ds.shuffle(cfg.seed)
            unpaired_ds.shuffle(cfg.seed)
        valid_sets = build_valid_datasets(cfg, self.dictionary, rank, world)
        train_eval_ids = get_train_eval_ids(paired_ds.num_global_batches, cfg.pct_train_eval, cfg.seed)

        scheduler = DataScheduler(
            [paired_ds, unpaired_ds],
            [PAIRED, UNPAIRED],
            [cfg.paired_iter, cfg.audio_iter],
            cfg.start_epoch + 1,
            seed=cfg.seed,
            order=cfg.scheduler_order,
            no_resample=cfg.no_resample,
        )
        if self.mode == CONTINUE_MODE and self.snapshot is not None and self.snapshot.get("scheduler"):
            scheduler.load_state_dict(self.snapshot["scheduler"])
            if self.is_main_rank:
                print(f"[lpm] Restored data scheduler state {self.snapshot['scheduler']}", flush=True)

        meters = SSLTrainMeters()
        for name in valid_sets:
            meters.valid[name] = SSLDatasetMeters()
        reset_time_stat_meters(meters)
        meters.train.reset()

        log_helper = LogHelper(
            cfg.run_idx,
            cfg.run_path,
            self.is_main_rank,
            log_on_epoch=cfg.report_iters == 0,
            logger=self.run_logger,
        )
        log_helper.save_config(cfg)
        log_helper.write_header(meters)

        reducer = GradientReducer(scale=1.0 / world, world_size=world)
        reducer.register(self.model, self.criterion)
        all_reduce_parameters(self.model)
        all_reduce_parameters(self.criterion)

        ctx = TrainingContext(
            config=cfg,
            model=self.model,
            criterion=self.criterion,
            lm_critic=self.lm_critic,
            optimizer=self.optimizer,
            scheduler=scheduler,
            loss_selector=LossSelector.from_config(cfg, self.criterion, self.lm_critic, self.dictionary),
            reducer=reducer,
            log_helper=log_helper,
            dictionary=self.dictionary,
            meters=meters,
            trace=MemoryTrace(self.device if self.device.type == "cuda" else None),
            valid_sets=valid_sets,
            train_eval_ids=train_eval_ids,
            device=self.device,
            start_epoch=cfg.start_epoch,
            start_iter=cfg.start_iter,
            iters_per_epoch=cfg.paired_iter + cfg.audio_iter,
            is_main_rank=self.is_main_rank,
            logger=self.run_logger,
        )
        return LPMTrainer(ctx)

    def _post_training(self) -> None:
        if self.ddp_world_size > 1:
            distributed_barrier()
        if self.is_main_rank and self.run_logger:
            self.run_logger.finish()

    def _finalize(self) -> None:
        if self.ddp_world_size > 1:
            destroy_distributed()


def main():
    mode, reload_path, config, snapshot = parse_args_to_config()
    runner = LPMEntrypoint(config, mode=mode, reload_path=reload_path, snapshot=snapshot)
    runner.run()


if __name__ == "__main__":
    main()
