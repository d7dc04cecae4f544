from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import torch

from .dictionary import TARGET_PAD, Dictionary

PAIRED = "paired"
UNPAIRED = "unpaired"


@dataclass
class Sample:
    """One batch as consumed by a training iteration."""

    inputs: torch.Tensor  # [B, T, F]
    targets: torch.Tensor  # [B, U], padded with TARGET_PAD, no EOS
    data_type: str
    sample_ids: List[str] = field(default_factory=list)
    global_batch_idx: int = 0

    @property
    def batch_size(self) -> int:
        return int(self.inputs.size(0))

    @property
    def is_paired(self) -> bool:
        return self.data_type == PAIRED


def load_manifest(path: str) -> List[Dict[str, Any]]:
    """Read a JSONL manifest with `datasets` (one record per utterance)."""
    from datasets import load_dataset

    if not Path(path).is_file():
        raise FileNotFoundError(f"Manifest not found: {path}")
    ds = load_dataset("json", data_files=path, split="train")
    return [dict(row) for row in ds]


def _load_features(value: Any) -> torch.Tensor:
    if isinstance(value, torch.Tensor):
        feats = value
    elif isinstance(value, str):
        if value.endswith(".npy"):
            feats = torch.from_numpy(np.load(value))
        else:
            feats = torch.load(value, map_location="cpu")
    else:
        feats = torch.as_tensor(np.asarray(value))
    return feats.to(torch.float32)


class SpeechDataset:
    """Random-access batches over a list of utterance records.

    Records are sorted by length so batches are homogeneous, grouped into batches of
    `batch_size`, then sharded round-robin across workers. Batch indices seen by a
    worker are local; `Sample.global_batch_idx` keeps the pre-sharding index.

    With `pad_shards` every worker owns ceil(num_global_batches / world_size) batches,
    the last round wrapping around to the first global batches, so all workers run the
    same number of iterations. Without it (validation) each batch is owned exactly once.
    """

    def __init__(
        self,
        records: Sequence[Dict[str, Any]],
        dictionary: Dictionary,
        batch_size: int,
        data_type: str = PAIRED,
        rank: int = 0,
        world_size: int = 1,
        pad_shards: bool = True,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.dictionary = dictionary
        self.data_type = data_type
        self.batch_size = batch_size
        self._records = sorted(records, key=self._record_length)
        all_batches = [
            list(range(start, min(start + batch_size, len(self._records))))
            for start in range(0, len(self._records), batch_size)
        ]
        n = len(all_batches)
        self.num_global_batches = n
        if pad_shards and n and world_size > 1:
            per_rank = -(-n // world_size)
            owned = [(rank + k * world_size) % n for k in range(per_rank)]
        else:
            owned = [g for g in range(n) if g % world_size == rank]
        # (global batch index, record indices) owned by this worker
        self._batches = [(g, all_batches[g]) for g in owned]
        self._order = list(range(len(self._batches)))

    @staticmethod
    def _record_length(record: Dict[str, Any]) -> int:
        for key in ("num_frames", "duration"):
            if key in record and record[key] is not None:
                return int(float(record[key]) * (100 if key == "duration" else 1))
        return 0

    def size(self) -> int:
        return len(self._batches)

    def __len__(self) -> int:
        return self.size()

    def shuffle(self, seed: int) -> None:
        order = list(range(len(self._batches)))
        random.Random(seed).shuffle(order)
        self._order = order

    def _targets_for(self, record: Dict[str, Any]) -> List[int]:
        tokens = record.get("tokens")
        if tokens:
            if isinstance(tokens, str):
                tokens = tokens.split()
            return self.dictionary.encode(tokens)
        transcript = record.get("transcript") or ""
        return self.dictionary.encode_transcript(transcript)

    def get(self, idx: int) -> Sample:
        global_idx, record_ids = self._batches[self._order[idx % len(self._order)]]
        feats = [_load_features(self._records[i]["features"]) for i in record_ids]
        targets = [self._targets_for(self._records[i]) for i in record_ids]
        max_t = max(f.size(0) for f in feats)
        num_feat = feats[0].size(1)
        inputs = torch.zeros((len(feats), max_t, num_feat), dtype=torch.float32)
        for i, f in enumerate(feats):
            inputs[i, : f.size(0)] = f
        max_u = max(1, max(len(t) for t in targets))
        padded = torch.full((len(targets), max_u), TARGET_PAD, dtype=torch.long)
        for i, t in enumerate(targets):
            if t:
                padded[i, : len(t)] = torch.tensor(t, dtype=torch.long)
        return Sample(
            inputs=inputs,
            targets=padded,
            data_type=self.data_type,
            sample_ids=[str(self._records[i].get("id", i)) for i in record_ids],
            global_batch_idx=global_idx,
        )

    def __getitem__(self, idx: int) -> Sample:
        return self.get(idx)


def create_dataset(
    manifest: Optional[str],
    dictionary: Dictionary,
    batch_size: int,
    data_type: str,
    rank: int = 0,
    world_size: int = 1,
    pad_shards: bool = True,
) -> SpeechDataset:
    records = load_manifest(manifest) if manifest else []
    return SpeechDataset(
        records,
        dictionary,
        batch_size=batch_size,
        data_type=data_type,
        rank=rank,
        world_size=world_size,
        pad_shards=pad_shards,
    )
