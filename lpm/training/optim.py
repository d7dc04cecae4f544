from __future__ import annotations

from typing import Iterable

import torch


def build_optimizer(
    params: Iterable[torch.nn.Parameter],
    name: str,
    lr: float,
    momentum: float = 0.0,
    weight_decay: float = 0.0,
) -> torch.optim.Optimizer:
    params = [p for p in params if p.requires_grad]
    name = name.lower()
    if name == "sgd":
        return torch.optim.SGD(params, lr=lr, momentum=momentum, weight_decay=weight_decay)
    if name == "adam":
        return torch.optim.Adam(params, lr=lr, weight_decay=weight_decay)
    if name == "adamw":
        return torch.optim.AdamW(params, lr=lr, weight_decay=weight_decay)
    if name == "adagrad":
        return torch.optim.Adagrad(params, lr=lr, weight_decay=weight_decay)
    if name == "rmsprop":
        return torch.optim.RMSprop(params, lr=lr, momentum=momentum, weight_decay=weight_decay)
    raise ValueError(f"Unknown optimizer '{name}'")


def lr_at_epoch(base_lr: float, gamma: float, step_size: int, epoch: int) -> float:
    """Step decay: base_lr * gamma ** (epoch // step_size)."""
    return base_lr * gamma ** (epoch // max(int(step_size), 1))


def set_lr(optimizer: torch.optim.Optimizer, lr: float) -> None:
    for group in optimizer.param_groups:
        group["lr"] = lr


def get_lr(optimizer: torch.optim.Optimizer) -> float:
    return float(optimizer.param_groups[0]["lr"])


@torch.no_grad()
def scale_gradients(params: Iterable[torch.nn.Parameter], divisor: float) -> None:
    """Divide every available gradient in place; parameters without a gradient are skipped."""
    for p in params:
        if p.grad is not None:
            p.grad.div_(divisor)
