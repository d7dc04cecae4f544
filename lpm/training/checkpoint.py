from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import torch

SNAPSHOT_SUFFIX = "_model_last.pt"


def config_to_dict(config) -> Dict[str, Any]:
    if isinstance(config, dict):
        return dict(config)
    try:
        return config.model_dump()
    except AttributeError:
        return dict(vars(config))


def save_snapshot(
    path: str | Path,
    config,
    model: torch.nn.Module,
    criterion: torch.nn.Module,
    optimizer: Optional[torch.optim.Optimizer],
    lm_critic=None,
    scheduler=None,
) -> Path:
    """Write {config, model, criterion, optimizer, lm_critic, scheduler} atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "config": config_to_dict(config),
        "model": model.state_dict(),
        "criterion": criterion.state_dict(),
        "optimizer": optimizer.state_dict() if optimizer is not None else None,
        "lm_critic": lm_critic.state_dict() if lm_critic is not None else None,
        "scheduler": scheduler.state_dict() if scheduler is not None else None,
    }
    tmp = path.with_suffix(f".tmp.{os.getpid()}")
    torch.save(payload, tmp)
    os.replace(tmp, path)
    return path


def load_snapshot(path: str | Path, map_location: Any = "cpu") -> Dict[str, Any]:
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Snapshot not found: {path}")
    snapshot = torch.load(path, map_location=map_location, weights_only=False)
    missing = [k for k in ("config", "model", "criterion") if k not in snapshot]
    if missing:
        raise ValueError(f"Snapshot {path} is missing {missing}")
    return snapshot


def _run_index(path: Path) -> int:
    try:
        return int(path.name.split("_", 1)[0])
    except ValueError:
        return -1


def latest_snapshot(run_dir: str | Path) -> Path:
    """Newest `<run_idx>_model_last.pt` of a run directory (highest run index wins)."""
    run_dir = Path(run_dir)
    candidates = sorted(run_dir.glob(f"*{SNAPSHOT_SUFFIX}"), key=lambda p: (_run_index(p), p.stat().st_mtime))
    if not candidates:
        raise FileNotFoundError(f"No '*{SNAPSHOT_SUFFIX}' snapshot in {run_dir}")
    return candidates[-1]


def restore_modules(
    snapshot: Dict[str, Any],
    model: torch.nn.Module,
    criterion: torch.nn.Module,
    optimizer: Optional[torch.optim.Optimizer] = None,
    lm_critic=None,
) -> None:
    """Load snapshot states into freshly built modules; optimizer/LM critic only when given."""
    model.load_state_dict(snapshot["model"])
    criterion.load_state_dict(snapshot["criterion"])
    if optimizer is not None and snapshot.get("optimizer") is not None:
        optimizer.load_state_dict(snapshot["optimizer"])
    if lm_critic is not None and snapshot.get("lm_critic") is not None:
        lm_critic.load_state_dict(snapshot["lm_critic"])
