"""Metric sinks (W&B, TensorBoard) for training runs."""

from .wandb_utils import (
    RunLogger,
    TensorBoardSink,
    WandBSink,
    create_run_logger,
    default_experiment_name,
)

__all__ = [
    "RunLogger",
    "TensorBoardSink",
    "WandBSink",
    "create_run_logger",
    "default_experiment_name",
]
