"""Prior-matching divergences between the LM prior and the acoustic-model posterior.

Each function receives post-processed LM and acoustic-model log-probabilities (one per
hypothesis) and the group sizes, and returns one loss per group. The LM side is a
fixed target: no gradient flows into it.
"""

from __future__ import annotations

from typing import Callable, Dict, Sequence

import torch

from .probability import adjust_prob, group_sum

PriorMatchingLoss = Callable[[torch.Tensor, torch.Tensor, Sequence[int]], torch.Tensor]

_PM_LOSSES: Dict[str, PriorMatchingLoss] = {}


def register_pm_loss(name: str):
    def _wrap(fn: PriorMatchingLoss) -> PriorMatchingLoss:
        _PM_LOSSES[name] = fn
        return fn

    return _wrap


def get_pm_loss(name: str) -> PriorMatchingLoss:
    try:
        return _PM_LOSSES[name]
    except KeyError:
        raise ValueError(f"Unknown prior-matching loss '{name}'. Available: {sorted(_PM_LOSSES)}") from None


def available_pm_losses():
    return sorted(_PM_LOSSES)


@register_pm_loss("ce")
def cross_entropy_loss(lm_logprob, s2s_logprob, hypo_nums):
    """-sum_h p_LM(h) log p_AM(h)"""
    lm_prob = adjust_prob(lm_logprob.detach(), hypo_nums, renormalize=True, linear=True)
    s2s_norm = adjust_prob(s2s_logprob, hypo_nums, renormalize=True, linear=False)
    return group_sum(-lm_prob * s2s_norm, hypo_nums)


@register_pm_loss("kl")
def kl_loss(lm_logprob, s2s_logprob, hypo_nums):
    """KL(p_LM || p_AM)"""
    lm_norm = adjust_prob(lm_logprob.detach(), hypo_nums, renormalize=True, linear=False)
    s2s_norm = adjust_prob(s2s_logprob, hypo_nums, renormalize=True, linear=False)
    return group_sum(lm_norm.exp() * (lm_norm - s2s_norm), hypo_nums)


@register_pm_loss("reverse_kl")
def reverse_kl_loss(lm_logprob, s2s_logprob, hypo_nums):
    """KL(p_AM || p_LM)"""
    lm_norm = adjust_prob(lm_logprob.detach(), hypo_nums, renormalize=True, linear=False)
    s2s_norm = adjust_prob(s2s_logprob, hypo_nums, renormalize=True, linear=False)
    return group_sum(s2s_norm.exp() * (s2s_norm - lm_norm), hypo_nums)


def compute_prior_matching_loss(
    lm_logprob: torch.Tensor,
    s2s_logprob: torch.Tensor,
    hypo_nums: Sequence[int],
    loss_type: str = "ce",
) -> torch.Tensor:
    if lm_logprob.shape != s2s_logprob.shape:
        raise ValueError(f"LM scores {tuple(lm_logprob.shape)} and S2S scores {tuple(s2s_logprob.shape)} differ")
    return get_pm_loss(loss_type)(lm_logprob, s2s_logprob, hypo_nums)
