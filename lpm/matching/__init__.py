"""Hypothesis filtering, probability post-processing and prior-matching losses."""

from .hypotheses import FilteredBeam, compact_beam, filter_beam_by_length
from .loss_selector import LossResult, LossSelector
from .losses import compute_prior_matching_loss, get_pm_loss, register_pm_loss
from .probability import (
    adjust_prob,
    compute_advantage,
    entropy,
    postproc_lm_logprob,
    postproc_s2s_logprob,
    shuffle_prob,
)

__all__ = [
    "FilteredBeam",
    "compact_beam",
    "filter_beam_by_length",
    "LossResult",
    "LossSelector",
    "compute_prior_matching_loss",
    "get_pm_loss",
    "register_pm_loss",
    "adjust_prob",
    "compute_advantage",
    "entropy",
    "postproc_lm_logprob",
    "postproc_s2s_logprob",
    "shuffle_prob",
]
