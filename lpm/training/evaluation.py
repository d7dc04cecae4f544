from __future__ import annotations

import random
from typing import Dict, Mapping, Set

import torch

from ..data.dictionary import Dictionary
from ..models.seq2seq import get_target_length
from .distributed import all_reduce_meters
from .meters import ASR, SSLDatasetMeters, SSLTrainMeters


def get_train_eval_ids(n_batches: int, pct: float, seed: int) -> Set[int]:
    """Deterministic `pct`% subset of batch indices on which training error rates are measured."""
    if n_batches <= 0 or pct <= 0:
        return set()
    count = min(n_batches, int(round(n_batches * pct / 100.0)))
    ids = list(range(n_batches))
    random.Random(seed).shuffle(ids)
    return set(ids[:count])


def eval_output(
    output: torch.Tensor,
    target: torch.Tensor,
    meters: SSLDatasetMeters,
    dictionary: Dictionary,
    criterion,
) -> None:
    """Greedy-decode `output` and score it against `target` at token and word level."""
    hyps = criterion.decode(output.detach())
    target = target.cpu()
    lengths = get_target_length(target, dictionary.eos_index).tolist()
    for hyp, ref_row, ref_len in zip(hyps, target, lengths):
        ref = ref_row[:ref_len].tolist()
        meters.edits.add(hyp, ref)
        meters.word_edits.add(dictionary.to_words(hyp), dictionary.to_words(ref))


@torch.no_grad()
def run_eval(
    model: torch.nn.Module,
    criterion,
    lm_critic,
    valid_sets: Mapping[str, object],
    meters: SSLTrainMeters,
    dictionary: Dictionary,
    device="cpu",
    verbose: bool = True,
) -> Dict[str, float]:
    """Supervised loss and error rates on every validation set; leaves modules in train mode.

    Each worker scores its own validation shard, then all meters (train included) are
    summed across workers so every worker reports the same numbers.
    """
    model.eval()
    criterion.eval()
    if lm_critic is not None:
        lm_critic.eval()
    try:
        for name, dataset in valid_sets.items():
            set_meters = meters.valid.setdefault(name, SSLDatasetMeters())
            set_meters.reset()
            for idx in range(dataset.size()):
                sample = dataset.get(idx)
                output = model(sample.inputs.to(device))
                target = sample.targets.to(output.device)
                set_meters.losses[ASR].add(criterion(output, target))
                eval_output(output, target, set_meters, dictionary, criterion)
    finally:
        model.train()
        criterion.train()

    all_reduce_meters(meters, device=device)
    results: Dict[str, float] = {}
    for name in valid_sets:
        set_meters = meters.valid[name]
        results[name] = set_meters.edits.error_rate()
        if verbose:
            print(
                f"[eval] {name}: loss={set_meters.losses[ASR].mean:.4f} "
                f"TER={set_meters.edits.error_rate():.2f} WER={set_meters.word_edits.error_rate():.2f}",
                flush=True,
            )
    return results
