from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import torch

from ..data.dataset import Sample
from ..errors import check_finite
from ..models.seq2seq import get_target_length
from ..training import meters as M
from .hypotheses import (
    Paths,
    batch_beam_search,
    compact_beam,
    compute_lm_logprob,
    compute_s2s_logprob,
    filter_beam_by_length,
    uniform_lm_logprob,
)
from .losses import compute_prior_matching_loss, get_pm_loss
from .probability import adjust_prob, compute_advantage, entropy, postproc_lm_logprob, postproc_s2s_logprob, shuffle_prob

PAIRED_BRANCH = "paired"
ORACLE_BRANCH = "oracle"
LPM_BRANCH = "lpm"
EMPTY_BRANCH = "empty"


@dataclass
class LossResult:
    """Outcome of one loss selection; `loss` holds one (weighted) value per batch item."""

    loss: torch.Tensor
    branch: str
    output: torch.Tensor
    paths: Paths = field(default_factory=list)
    hypo_nums: List[int] = field(default_factory=list)
    keep_idx: List[int] = field(default_factory=list)
    lm_entropy: Optional[torch.Tensor] = None
    s2s_entropy: Optional[torch.Tensor] = None

    @property
    def is_degenerate(self) -> bool:
        return self.branch == EMPTY_BRANCH


class LossSelector:
    """Pick and compute the loss of one batch.

    paired data          -> supervised sequence loss
    unpaired + 'oracle'  -> supervised sequence loss against the reference transcript
    unpaired + 'lpm'     -> prior matching over beam-search hypotheses, scaled by lm_weight
    """

    def __init__(
        self,
        criterion,
        lm_critic,
        eos_index: int,
        *,
        pm_type: str = "lpm",
        pm_loss: str = "ce",
        beam_size: int = 4,
        max_len: int = 200,
        lm_weight: float = 1.0,
        use_uniform_lm: bool = False,
        shuffle_lm_prob: bool = False,
        lm_length_norm: bool = True,
        s2s_length_norm: bool = True,
        hyp_len_ratio_lb: float = 0.0,
        hyp_len_ratio_ub: float = 0.0,
        adv_margin: float = 0.0,
        dictionary=None,
        debug: bool = False,
        seed: int = 0,
    ) -> None:
        if pm_type not in (ORACLE_BRANCH, LPM_BRANCH):
            raise ValueError(f"Unknown prior-matching type '{pm_type}'")
        get_pm_loss(pm_loss)
        if pm_type == LPM_BRANCH and not use_uniform_lm and lm_critic is None:
            raise ValueError("Prior matching needs an LM critic unless use_uniform_lm is set")
        self.criterion = criterion
        self.lm_critic = lm_critic
        self.eos_index = eos_index
        self.pm_type = pm_type
        self.pm_loss = pm_loss
        self.beam_size = beam_size
        self.max_len = max_len
        self.lm_weight = lm_weight
        self.use_uniform_lm = use_uniform_lm
        self.shuffle_lm_prob = shuffle_lm_prob
        self.lm_length_norm = lm_length_norm
        self.s2s_length_norm = s2s_length_norm
        self.hyp_len_ratio_lb = hyp_len_ratio_lb
        self.hyp_len_ratio_ub = hyp_len_ratio_ub
        self.adv_margin = adv_margin
        self.dictionary = dictionary
        self.debug = debug
        self._shuffle_gen = torch.Generator().manual_seed(int(seed))

    @classmethod
    def from_config(cls, config, criterion, lm_critic, dictionary) -> "LossSelector":
        return cls(
            criterion,
            lm_critic,
            dictionary.eos_index,
            pm_type=config.pm_type,
            pm_loss=config.pm_loss,
            beam_size=config.beam_size,
            max_len=config.max_decoder_output_len,
            lm_weight=config.lm_weight,
            use_uniform_lm=config.use_uniform_lm,
            shuffle_lm_prob=config.shuffle_lm_prob,
            lm_length_norm=config.lm_length_norm,
            s2s_length_norm=config.s2s_length_norm,
            hyp_len_ratio_lb=config.hyp_len_ratio_lb,
            hyp_len_ratio_ub=config.hyp_len_ratio_ub,
            adv_margin=config.adv_margin,
            dictionary=dictionary,
            debug=config.debug,
            seed=config.seed + config.ddp_rank,
        )

    def compute(
        self,
        output: torch.Tensor,
        sample: Sample,
        meters: M.SSLTrainMeters,
        trace: Optional[M.MemoryTrace] = None,
        lm_temperature: float = 1.0,
    ) -> LossResult:
        target = sample.targets.to(output.device)
        if sample.is_paired:
            return self._supervised(output, target, meters, trace, M.CRIT_FWD_TIMER, M.ASR, PAIRED_BRANCH)
        if self.pm_type == ORACLE_BRANCH:
            return self._supervised(output, target, meters, trace, M.BEAM_FWD_TIMER, M.LM, ORACLE_BRANCH)
        return self._prior_matching(output, target, meters, trace, lm_temperature)

    def _supervised(self, output, target, meters, trace, timer_key, loss_key, branch) -> LossResult:
        meters.timer[timer_key].resume()
        loss = self.criterion(output, target)
        if trace is not None:
            trace.update("2a-decfwd")
        check_finite(loss, "ASR loss has NaN values", where=branch)
        meters.train.losses[loss_key].add(loss)
        meters.timer[timer_key].stop_and_inc_unit()
        return LossResult(loss=loss, branch=branch, output=output)

    def _prior_matching(self, output, target, meters, trace, lm_temperature) -> LossResult:
        timer = meters.timer
        timer[M.BEAM_TIMER].resume()
        paths, hypo_nums = batch_beam_search(output, self.criterion, self.eos_index, self.beam_size, self.max_len)
        timer[M.BEAM_TIMER].stop_and_inc_unit()
        if trace is not None:
            trace.update("2b-decbs")
        if self.debug:
            print(f"[debug] (ori) hypo nums={hypo_nums}; bs={output.size(0)}; output={tuple(output.shape)}", flush=True)

        ref_lens = get_target_length(target, self.eos_index).tolist()
        paths, hypo_nums = filter_beam_by_length(
            paths, hypo_nums, ref_lens, self.hyp_len_ratio_lb, self.hyp_len_ratio_ub
        )
        beam = compact_beam(paths, hypo_nums)

        if beam.is_empty:
            print("[warn] Using a made-up zero loss because every hypothesis was filtered out", flush=True)
            # zero-valued but still a function of the trainable parameters
            asr_loss = self.criterion(output, target)
            check_finite(asr_loss, "ASR loss has NaN values", where=EMPTY_BRANCH)
            loss = 0.0 * asr_loss
            return LossResult(loss=loss, branch=EMPTY_BRANCH, output=output)

        keep = torch.as_tensor(beam.keep_idx, dtype=torch.long, device=output.device)
        output = output.index_select(0, keep)
        paths, hypo_nums = beam.paths, beam.hypo_nums
        if self.debug:
            print(
                f"[debug] (new) hypo nums={hypo_nums}; bs={beam.batch_size}; "
                f"output={tuple(output.shape)}; keep={beam.keep_idx}",
                flush=True,
            )

        timer[M.LM_CRIT_FWD_TIMER].resume()
        if self.use_uniform_lm:
            lm_logprob = uniform_lm_logprob(paths, device=output.device)
            proc_lm_logprob = lm_logprob
        else:
            lm_logprob = compute_lm_logprob(paths, self.lm_critic, device=output.device)
            proc_lm_logprob = postproc_lm_logprob(lm_logprob, paths, lm_temperature, self.lm_length_norm)
            if self.shuffle_lm_prob:
                proc_lm_logprob = shuffle_prob(proc_lm_logprob, hypo_nums, generator=self._shuffle_gen)
        timer[M.LM_CRIT_FWD_TIMER].stop_and_inc_unit()
        if trace is not None:
            trace.update("3-lmfwd")

        timer[M.BEAM_FWD_TIMER].resume()
        s2s_logprob = compute_s2s_logprob(paths, hypo_nums, output, self.criterion)
        proc_s2s_logprob = postproc_s2s_logprob(s2s_logprob, paths, hypo_nums, self.s2s_length_norm)
        if trace is not None:
            trace.update("4-bmfwd")

        loss = compute_prior_matching_loss(proc_lm_logprob, proc_s2s_logprob, hypo_nums, self.pm_loss)
        lm_ent = entropy(proc_lm_logprob, hypo_nums)
        s2s_ent = entropy(proc_s2s_logprob, hypo_nums)
        timer[M.BEAM_FWD_TIMER].stop_and_inc_unit()

        if self.debug:
            self._print_debug(paths, hypo_nums, lm_logprob, proc_lm_logprob, s2s_logprob, proc_s2s_logprob, lm_ent, s2s_ent, loss)

        losses = meters.train.losses
        for path in paths:
            losses[M.LEN].add(len(path))
        losses[M.NUM_HYPOS].add(len(paths))
        losses[M.LM_ENT].add(lm_ent)
        losses[M.LM_SCORE].add(lm_logprob)
        losses[M.S2S_ENT].add(s2s_ent)

        check_finite(loss, "LMCritic loss has NaN values", where=LPM_BRANCH)
        losses[M.LM].add(loss)
        return LossResult(
            loss=self.lm_weight * loss,
            branch=LPM_BRANCH,
            output=output,
            paths=paths,
            hypo_nums=hypo_nums,
            keep_idx=beam.keep_idx,
            lm_entropy=lm_ent,
            s2s_entropy=s2s_ent,
        )

    def _print_debug(self, paths, hypo_nums, lm_logprob, proc_lm, s2s_logprob, proc_s2s, lm_ent, s2s_ent, loss) -> None:
        def fmt(t: torch.Tensor) -> str:
            return "[" + ", ".join(f"{v:.4f}" for v in t.detach().float().cpu().tolist()) + "]"

        print(f"[debug] #Hypos={len(paths)} ({hypo_nums})", flush=True)
        print(f"[debug] LM log-prob : {fmt(lm_logprob)}", flush=True)
        print(f"[debug] LM log-prob (processed) : {fmt(proc_lm)}", flush=True)
        print(f"[debug] LM prob (re-normalized) : {fmt(adjust_prob(proc_lm, hypo_nums, True, True))}", flush=True)
        print(f"[debug] LM advantage : {fmt(compute_advantage(lm_logprob, hypo_nums, self.adv_margin))}", flush=True)
        print(f"[debug] LM prob entropy : {fmt(lm_ent)}", flush=True)
        print(f"[debug] S2S log-prob : {fmt(s2s_logprob)}", flush=True)
        print(f"[debug] S2S log-prob (processed) : {fmt(proc_s2s)}", flush=True)
        print(f"[debug] S2S prob entropy : {fmt(s2s_ent)}", flush=True)
        print(f"[debug] PM loss : {fmt(loss)}", flush=True)
        if self.dictionary is not None:
            print("[debug] ===== PATHS ====", flush=True)
            for path in paths:
                print(f"[debug] {self.dictionary.to_words(path)}", flush=True)
