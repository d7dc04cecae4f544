from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import torch

Paths = List[List[int]]


@dataclass
class FilteredBeam:
    """Beam output restricted to the batch items that kept at least one hypothesis."""

    paths: Paths
    hypo_nums: List[int]
    keep_idx: List[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return len(self.keep_idx) == 0

    @property
    def batch_size(self) -> int:
        return len(self.keep_idx)


def batch_beam_search(output: torch.Tensor, criterion, eos: int, beam_size: int, max_len: int) -> Tuple[Paths, List[int]]:
    paths, hypo_nums = criterion.beam_search(output, eos, beam_size, max_len)
    if sum(hypo_nums) != len(paths) or len(hypo_nums) != output.size(0):
        raise RuntimeError(
            f"Beam search returned {len(paths)} paths for hypo_nums={hypo_nums} on a batch of {output.size(0)}"
        )
    return [list(p) for p in paths], [int(n) for n in hypo_nums]


def filter_beam_by_length(
    paths: Sequence[Sequence[int]],
    hypo_nums: Sequence[int],
    ref_lens: Sequence[int],
    lower_ratio: float = 0.0,
    upper_ratio: float = 0.0,
) -> Tuple[Paths, List[int]]:
    """Drop hypotheses outside [lower_ratio, upper_ratio] * reference length.

    Counts keep one entry per batch item, so items can end up with zero hypotheses.
    An upper ratio <= 0 disables the upper bound; items without a reference length are
    never filtered.
    """
    if len(hypo_nums) != len(ref_lens):
        raise ValueError(f"{len(hypo_nums)} hypothesis groups for {len(ref_lens)} references")
    out_paths: Paths = []
    out_nums: List[int] = []
    offset = 0
    for num, ref in zip(hypo_nums, ref_lens):
        kept = 0
        for path in paths[offset : offset + num]:
            n = len(path)
            ok = True
            if ref > 0:
                if n < lower_ratio * ref:
                    ok = False
                if upper_ratio > 0 and n > upper_ratio * ref:
                    ok = False
            if ok:
                out_paths.append(list(path))
                kept += 1
        out_nums.append(kept)
        offset += num
    return out_paths, out_nums


def compact_beam(paths: Paths, hypo_nums: Sequence[int]) -> FilteredBeam:
    keep_idx = [i for i, n in enumerate(hypo_nums) if n > 0]
    return FilteredBeam(paths=list(paths), hypo_nums=[int(hypo_nums[i]) for i in keep_idx], keep_idx=keep_idx)


def compute_lm_logprob(paths: Paths, lm_critic, device=None) -> torch.Tensor:
    scores = lm_critic.score(paths)
    return scores.detach().to(device) if device is not None else scores.detach()


def uniform_lm_logprob(paths: Paths, device=None) -> torch.Tensor:
    return torch.zeros(len(paths), device=device)


def compute_s2s_logprob(paths: Paths, hypo_nums: Sequence[int], output: torch.Tensor, criterion) -> torch.Tensor:
    """Acoustic-model log-prob of each hypothesis given its own item's encoder output."""
    counts = torch.as_tensor([int(n) for n in hypo_nums], dtype=torch.long, device=output.device)
    rows = torch.repeat_interleave(output, counts, dim=0)
    return criterion.sequence_logprob(rows, paths)


def path_length_range(paths: Sequence[Sequence[int]]) -> Tuple[Optional[int], Optional[int]]:
    if not paths:
        return None, None
    lengths = [len(p) for p in paths]
    return min(lengths), max(lengths)
