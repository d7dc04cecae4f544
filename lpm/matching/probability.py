"""Post-processing of per-hypothesis log-probabilities.

Every function takes a flat tensor with one entry per hypothesis plus `hypo_nums`, the
number of hypotheses of each batch item. Hypotheses of one item form a group and are
stored contiguously, so `sum(hypo_nums) == logprob.numel()`.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import torch


def _check_groups(logprob: torch.Tensor, hypo_nums: Sequence[int]) -> List[int]:
    nums = [int(n) for n in hypo_nums]
    if sum(nums) != logprob.numel():
        raise ValueError(f"hypo_nums {nums} sum to {sum(nums)} but got {logprob.numel()} log-probs")
    return nums


def group_ids(hypo_nums: Sequence[int], device=None) -> torch.Tensor:
    """Group index of every hypothesis, e.g. [2, 0, 1] -> [0, 0, 2]."""
    nums = torch.as_tensor([int(n) for n in hypo_nums], dtype=torch.long, device=device)
    return torch.repeat_interleave(torch.arange(len(nums), device=device), nums)


def group_sum(values: torch.Tensor, hypo_nums: Sequence[int]) -> torch.Tensor:
    """Per-group sum, one entry per group (empty groups sum to 0)."""
    nums = _check_groups(values, hypo_nums)
    out = values.new_zeros(len(nums))
    return out.index_add(0, group_ids(nums, values.device), values)


def group_logsumexp(logprob: torch.Tensor, hypo_nums: Sequence[int]) -> torch.Tensor:
    nums = _check_groups(logprob, hypo_nums)
    parts = [chunk.logsumexp(dim=0) for chunk in torch.split(logprob, nums) if chunk.numel() > 0]
    if not parts:
        return logprob.new_zeros(0)
    return torch.stack(parts)


def adjust_prob(
    logprob: torch.Tensor,
    hypo_nums: Sequence[int],
    renormalize: bool = True,
    linear: bool = False,
) -> torch.Tensor:
    """Renormalise log-probs within each group; return probabilities when `linear`."""
    nums = _check_groups(logprob, hypo_nums)
    out = logprob
    if renormalize and logprob.numel() > 0:
        non_empty = [n for n in nums if n > 0]
        norm = torch.repeat_interleave(group_logsumexp(logprob, nums), torch.as_tensor(non_empty, device=logprob.device))
        out = logprob - norm
    return out.exp() if linear else out


def path_lengths(paths: Sequence[Sequence[int]], device=None, dtype=torch.float32) -> torch.Tensor:
    return torch.as_tensor([max(len(p), 1) for p in paths], dtype=dtype, device=device)


def postproc_lm_logprob(
    logprob: torch.Tensor,
    paths: Sequence[Sequence[int]],
    temperature: float = 1.0,
    length_norm: bool = True,
) -> torch.Tensor:
    """Per-token LM score sharpened or flattened by `temperature`."""
    if temperature <= 0:
        raise ValueError(f"LM temperature must be positive, got {temperature}")
    out = logprob
    if length_norm:
        out = out / path_lengths(paths, logprob.device, logprob.dtype)
    return out / temperature


def postproc_s2s_logprob(
    logprob: torch.Tensor,
    paths: Sequence[Sequence[int]],
    hypo_nums: Sequence[int],
    length_norm: bool = True,
) -> torch.Tensor:
    """Per-token acoustic-model score, renormalised over the hypotheses of each item."""
    out = logprob
    if length_norm:
        out = out / path_lengths(paths, logprob.device, logprob.dtype)
    return adjust_prob(out, hypo_nums, renormalize=True, linear=False)


def shuffle_prob(
    logprob: torch.Tensor,
    hypo_nums: Sequence[int],
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """Permute scores within every group; each group keeps the same multiset of values."""
    nums = _check_groups(logprob, hypo_nums)
    index = []
    offset = 0
    for n in nums:
        perm = torch.randperm(n, generator=generator) + offset
        index.append(perm)
        offset += n
    if not index:
        return logprob
    index = torch.cat(index).to(logprob.device)
    return logprob.index_select(0, index)


def entropy(logprob: torch.Tensor, hypo_nums: Sequence[int]) -> torch.Tensor:
    """Shannon entropy (nats) of the renormalised distribution of each non-empty group."""
    nums = _check_groups(logprob, hypo_nums)
    logp = adjust_prob(logprob.detach(), nums, renormalize=True, linear=False)
    p = logp.exp()
    terms = torch.where(p > 0, -p * logp, torch.zeros_like(p))
    non_empty = [n for n in nums if n > 0]
    return group_sum(terms, non_empty)


def compute_advantage(logprob: torch.Tensor, hypo_nums: Sequence[int], margin: float = 0.0) -> torch.Tensor:
    """Score of each hypothesis relative to its group mean, minus `margin`."""
    nums = _check_groups(logprob, hypo_nums)
    counts = torch.as_tensor([max(n, 1) for n in nums], dtype=logprob.dtype, device=logprob.device)
    means = group_sum(logprob.detach(), nums) / counts
    gid = group_ids(nums, logprob.device)
    return logprob.detach() - means.index_select(0, gid) - margin
