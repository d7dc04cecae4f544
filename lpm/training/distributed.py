from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import torch
import torch.distributed as dist

from .meters import SSLTrainMeters


@dataclass
class DistributedContext:
    world_size: int = 1
    rank: int = 0
    local_rank: int = 0

    @property
    def is_main_rank(self) -> bool:
        return self.rank == 0

    @property
    def enabled(self) -> bool:
        return self.world_size > 1


def _dist_ready() -> bool:
    return dist.is_available() and dist.is_initialized()


def setup_distributed_context(config) -> DistributedContext:
    """Initialise the process group from the torchrun environment and mirror it into config."""
    world_size = int(os.environ.get("WORLD_SIZE", getattr(config, "ddp_world_size", 1)))
    rank = int(os.environ.get("RANK", getattr(config, "ddp_rank", 0)))
    local_rank = int(os.environ.get("LOCAL_RANK", getattr(config, "ddp_local_rank", 0)))
    if world_size > 1 and dist.is_available() and not dist.is_initialized():
        backend = "nccl" if torch.cuda.is_available() else "gloo"
        if torch.cuda.is_available():
            torch.cuda.set_device(local_rank)
        dist.init_process_group(backend=backend)
        print(f"[ddp] rank {rank}/{world_size} (local {local_rank}) initialised with {backend}", flush=True)
    config.ddp_world_size = world_size
    config.ddp_rank = rank
    config.ddp_local_rank = local_rank
    return DistributedContext(world_size=world_size, rank=rank, local_rank=local_rank)


def is_rank0() -> bool:
    if _dist_ready():
        return dist.get_rank() == 0
    return os.environ.get("RANK", "0") == "0"


def distributed_barrier() -> None:
    if _dist_ready():
        dist.barrier()


def destroy_distributed() -> None:
    if _dist_ready():
        dist.destroy_process_group()


@torch.no_grad()
def all_reduce_parameters(module: torch.nn.Module) -> None:
    """Average parameters over workers so every worker starts from the same weights."""
    if not _dist_ready() or dist.get_world_size() == 1:
        return
    scale = 1.0 / dist.get_world_size()
    for p in module.parameters():
        dist.all_reduce(p.data)
        p.data.mul_(scale)


class GradientReducer:
    """Synchronous gradient averaging, triggered explicitly once per iteration.

    `finalize()` must be reached by every worker on every iteration, whatever the local
    batch looked like: it is a collective call. With several workers, parameters without
    a gradient get a zero gradient first so all workers reduce identical tensor lists.
    """

    def __init__(
        self,
        scale: Optional[float] = None,
        bucket_cap_mb: float = 25.0,
        world_size: Optional[int] = None,
    ) -> None:
        if world_size is None:
            world_size = dist.get_world_size() if _dist_ready() else 1
        self.world_size = int(world_size)
        self.scale = float(scale) if scale is not None else 1.0 / self.world_size
        self.bucket_cap_bytes = int(bucket_cap_mb * 2**20)
        self._params: List[torch.nn.Parameter] = []
        self.num_finalize = 0

    def register(self, *modules: torch.nn.Module) -> None:
        seen = {id(p) for p in self._params}
        for module in modules:
            for p in module.parameters():
                if p.requires_grad and id(p) not in seen:
                    self._params.append(p)
                    seen.add(id(p))

    @property
    def params(self) -> List[torch.nn.Parameter]:
        return list(self._params)

    def _buckets(self, grads: Iterable[torch.Tensor]) -> Iterable[List[torch.Tensor]]:
        bucket: List[torch.Tensor] = []
        size = 0
        for g in grads:
            nbytes = g.numel() * g.element_size()
            if bucket and (size + nbytes > self.bucket_cap_bytes or g.dtype != bucket[0].dtype or g.device != bucket[0].device):
                yield bucket
                bucket, size = [], 0
            bucket.append(g)
            size += nbytes
        if bucket:
            yield bucket

    @torch.no_grad()
    def finalize(self) -> None:
        self.num_finalize += 1
        if self.world_size <= 1 or not _dist_ready():
            return
        grads = []
        for p in self._params:
            if p.grad is None:
                p.grad = torch.zeros_like(p)
            grads.append(p.grad)
        for bucket in self._buckets(grads):
            flat = torch.cat([g.reshape(-1) for g in bucket])
            dist.all_reduce(flat)
            flat.mul_(self.scale)
            offset = 0
            for g in bucket:
                n = g.numel()
                g.copy_(flat[offset : offset + n].view_as(g))
                offset += n


def _meter_counts(meters: SSLTrainMeters) -> Tuple[List[Tuple[object, str]], List[Tuple[object, str]]]:
    """(meter, attribute) pairs to sum and to max, in the same order on every worker."""
    summed: List[Tuple[object, str]] = []
    dataset_meters = [meters.train] + [meters.valid[name] for name in sorted(meters.valid)]
    for dm in dataset_meters:
        for edits in (dm.edits, dm.word_edits):
            summed += [(edits, attr) for attr in ("n", "insertions", "deletions", "substitutions")]
        for key in sorted(dm.losses):
            summed += [(dm.losses[key], attr) for attr in ("count", "total", "total_sq")]
    stats = meters.stats
    summed += [(stats, attr) for attr in ("input_frames", "target_tokens", "samples", "batches")]
    maxed = [(stats, "max_input_frames"), (stats, "max_target_tokens")]
    return summed, maxed


@torch.no_grad()
def all_reduce_meters(meters: SSLTrainMeters, device=None) -> None:
    """Sum error counts, loss sums and data statistics of every worker into each worker's meters.

    Collective call: every worker must reach it with the same validation set names.
    Timers stay local.
    """
    if not _dist_ready() or dist.get_world_size() == 1:
        return
    summed, maxed = _meter_counts(meters)
    for fields, op in ((summed, dist.ReduceOp.SUM), (maxed, dist.ReduceOp.MAX)):
        values = torch.tensor([float(getattr(m, attr)) for m, attr in fields], dtype=torch.float64, device=device)
        dist.all_reduce(values, op=op)
        for (m, attr), value in zip(fields, values.tolist()):
            current = getattr(m, attr)
            setattr(m, attr, int(round(value)) if isinstance(current, int) else value)
