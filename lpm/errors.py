from __future__ import annotations

from typing import Optional

import torch


class FatalNumericalError(RuntimeError):
    """Raised when a sample or a loss carries NaN/Inf values. Training must not continue."""

    def __init__(self, message: str, *, where: Optional[str] = None) -> None:
        super().__init__(message)
        self.where = where


def check_finite(tensor: torch.Tensor, message: str, *, where: Optional[str] = None) -> None:
    if not tensor.is_floating_point():
        return
    if not bool(torch.isfinite(tensor.detach()).all()):
        raise FatalNumericalError(message, where=where)
