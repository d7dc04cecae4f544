from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import torch

from ..data.dataset import PAIRED, UNPAIRED, SpeechDataset, create_dataset
from ..data.dictionary import Dictionary
from .checkpoint import latest_snapshot, load_snapshot

TRAIN_MODE = "train"
CONTINUE_MODE = "continue"
FORK_MODE = "fork"
RUN_MODES = (TRAIN_MODE, CONTINUE_MODE, FORK_MODE)


def resolve_device(local_rank: int = 0) -> torch.device:
    if torch.cuda.is_available():
        return torch.device(f"cuda:{local_rank}")
    return torch.device("cpu")


def parse_valid_sets(valid: str) -> List[Tuple[str, str]]:
    """'dev:/a.jsonl,/b.jsonl' -> [('dev', '/a.jsonl'), ('/b.jsonl', '/b.jsonl')]"""
    sets: List[Tuple[str, str]] = []
    for item in (valid or "").strip().split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, path = item.partition(":")
        sets.append((name, path) if sep else (item, item))
    return sets


def resolve_reload(mode: str, reload_path: Optional[str]) -> Optional[Path]:
    """Validate the run mode and locate the snapshot to reload (None for a fresh run)."""
    if mode not in RUN_MODES:
        raise ValueError(f"Invalid run mode '{mode}', expected one of {RUN_MODES}")
    if mode == TRAIN_MODE:
        return None
    if not reload_path:
        raise ValueError(f"Run mode '{mode}' needs a reload path")
    path = Path(reload_path)
    if mode == CONTINUE_MODE:
        return latest_snapshot(path) if path.is_dir() else path
    if not path.is_file():
        raise FileNotFoundError(f"Model to fork not found: {path}")
    return path


def load_reload_state(mode: str, reload_path: Optional[str]) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
    """Snapshot to restore plus the config values the run mode dictates.

    continue: saved config (epoch/iteration included), same run directory, run index + 1
    fork:     fresh run from epoch 0; only model weights are taken from the snapshot
    """
    path = resolve_reload(mode, reload_path)
    if path is None:
        return None, {}
    snapshot = load_snapshot(path)
    if mode == CONTINUE_MODE:
        saved = dict(snapshot["config"])
        saved["run_idx"] = int(saved.get("run_idx", 0)) + 1
        saved.setdefault("run_path", str(path.parent))
        return snapshot, saved
    return snapshot, {"start_epoch": 0, "start_iter": 0}


def build_train_datasets(
    config,
    dictionary: Dictionary,
    rank: int = 0,
    world_size: int = 1,
) -> Tuple[SpeechDataset, SpeechDataset]:
    if config.audio_iter > 0 and not config.train_audio:
        raise ValueError("audio_iter > 0 needs an unpaired audio manifest (train_audio)")
    paired = create_dataset(config.train, dictionary, config.batch_size, PAIRED, rank, world_size)
    unpaired = create_dataset(
        config.train_audio, dictionary, config.unpaired_batch_size, UNPAIRED, rank, world_size
    )
    return paired, unpaired


def build_valid_datasets(config, dictionary: Dictionary, rank: int = 0, world_size: int = 1) -> Dict[str, SpeechDataset]:
    return {
        name: create_dataset(path, dictionary, config.batch_size, PAIRED, rank, world_size, pad_shards=False)
        for name, path in parse_valid_sets(config.valid)
    }
