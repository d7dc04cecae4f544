from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import torch
import torch.nn as nn
import torch.nn.functional as F

from ..data.dictionary import TARGET_PAD


@runtime_checkable
class SequenceCriterion(Protocol):
    """Capabilities the training loop needs from a sequence criterion."""

    def forward(self, output: torch.Tensor, target: torch.Tensor) -> torch.Tensor: ...

    def beam_search(
        self, output: torch.Tensor, eos: int, beam_size: int, max_len: int
    ) -> Tuple[List[List[int]], List[int]]: ...

    def sequence_logprob(self, output: torch.Tensor, paths: Sequence[Sequence[int]]) -> torch.Tensor: ...

    def decode(self, output: torch.Tensor) -> List[List[int]]: ...

    def clear_window(self) -> None: ...


def get_target_length(target: torch.Tensor, eos: int) -> torch.Tensor:
    """Number of tokens before the first EOS or pad of every row of `target` [B, U]."""
    stop = (target == TARGET_PAD) | (target == eos)
    # first stop position per row, U when the row never stops
    positions = torch.arange(target.size(1), device=target.device).expand_as(target)
    sentinel = torch.full_like(positions, target.size(1))
    return torch.where(stop, positions, sentinel).min(dim=1).values


class SoftPretrainWindow:
    """Gaussian attention prior centred on the diagonal step * T / U."""

    def __init__(self, std: float) -> None:
        if std <= 0:
            raise ValueError(f"window std must be positive, got {std}")
        self.std = float(std)

    def bias(self, step: int, enc_len: int, target_lengths: torch.Tensor) -> torch.Tensor:
        centre = step * enc_len / target_lengths.clamp_min(1).to(torch.float32)  # [B]
        t = torch.arange(enc_len, device=target_lengths.device, dtype=torch.float32)
        return -((t.unsqueeze(0) - centre.unsqueeze(1)) ** 2) / (2.0 * self.std**2)


class Seq2SeqCriterion(nn.Module):
    """Attention GRU decoder acting as the sequence criterion of the acoustic model."""

    def __init__(
        self,
        num_classes: int,
        eos_index: int,
        encoder_dim: int,
        hidden: int = 256,
        max_decoder_output_len: int = 200,
        label_smoothing: float = 0.0,
        window: Optional[SoftPretrainWindow] = None,
    ) -> None:
        super().__init__()
        self.num_classes = num_classes
        self.eos_index = eos_index
        self.sos_index = num_classes
        self.hidden = hidden
        self.encoder_dim = encoder_dim
        self.max_decoder_output_len = max_decoder_output_len
        self.label_smoothing = label_smoothing
        self.window = window
        self.embedding = nn.Embedding(num_classes + 1, hidden)
        self.cell = nn.GRUCell(hidden + encoder_dim, hidden)
        self.query = nn.Linear(hidden, encoder_dim)
        self.out = nn.Linear(hidden + encoder_dim, num_classes)

    def clear_window(self) -> None:
        self.window = None

    def pretty_string(self) -> str:
        window = f"window_std={self.window.std}" if self.window is not None else "no window"
        return f"Seq2SeqCriterion(classes={self.num_classes}, hidden={self.hidden}, {window})"

    def _init_state(self, batch: int, ref: torch.Tensor):
        state = ref.new_zeros(batch, self.hidden)
        context = ref.new_zeros(batch, self.encoder_dim)
        prev = torch.full((batch,), self.sos_index, dtype=torch.long, device=ref.device)
        return state, context, prev

    def _step(self, enc, prev, state, context, bias: Optional[torch.Tensor] = None):
        emb = self.embedding(prev)
        state = self.cell(torch.cat([emb, context], dim=-1), state)
        energies = torch.bmm(enc, self.query(state).unsqueeze(-1)).squeeze(-1)
        if bias is not None:
            energies = energies + bias
        attn = torch.softmax(energies, dim=-1)
        context = torch.bmm(attn.unsqueeze(1), enc).squeeze(1)
        logits = self.out(torch.cat([state, context], dim=-1))
        return F.log_softmax(logits, dim=-1), state, context

    def _teacher_forced(
        self,
        enc: torch.Tensor,
        tokens: torch.Tensor,
        target_lengths: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        batch, steps = tokens.shape
        state, context, prev = self._init_state(batch, enc)
        use_window = self.window is not None and target_lengths is not None
        outs = []
        for step in range(steps):
            bias = self.window.bias(step, enc.size(1), target_lengths) if use_window else None
            logprobs, state, context = self._step(enc, prev, state, context, bias)
            outs.append(logprobs)
            prev = tokens[:, step].clamp_min(0)
        return torch.stack(outs, dim=1)

    def _append_eos(self, target: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        lengths = get_target_length(target, self.eos_index)
        batch, width = target.shape
        tokens = torch.full((batch, width + 1), TARGET_PAD, dtype=torch.long, device=target.device)
        keep = torch.arange(width, device=target.device).unsqueeze(0) < lengths.unsqueeze(1)
        tokens[:, :width] = torch.where(keep, target, torch.full_like(target, TARGET_PAD))
        tokens[torch.arange(batch, device=target.device), lengths] = self.eos_index
        return tokens, lengths + 1

    def forward(self, output: torch.Tensor, target: torch.Tensor) -> torch.Tensor:
        """Per-utterance negative log-likelihood of `target` (+EOS), shape [B]."""
        tokens, lengths = self._append_eos(target.to(output.device))
        logprobs = self._teacher_forced(output, tokens, lengths)
        mask = tokens.ne(TARGET_PAD)
        gold = logprobs.gather(-1, tokens.clamp_min(0).unsqueeze(-1)).squeeze(-1)
        nll = -gold
        if self.label_smoothing > 0:
            nll = (1.0 - self.label_smoothing) * nll - self.label_smoothing * logprobs.mean(dim=-1)
        return (nll * mask).sum(dim=1)

    def sequence_logprob(self, output: torch.Tensor, paths: Sequence[Sequence[int]]) -> torch.Tensor:
        """Log-probability of each path (+EOS); row i of `output` encodes path i."""
        if output.size(0) != len(paths):
            raise ValueError(f"{output.size(0)} encoder rows for {len(paths)} paths")
        width = max([len(p) for p in paths] + [0])
        target = torch.full((len(paths), max(width, 1)), TARGET_PAD, dtype=torch.long, device=output.device)
        for i, path in enumerate(paths):
            if path:
                target[i, : len(path)] = torch.tensor(list(path), dtype=torch.long, device=output.device)
        tokens, _ = self._append_eos(target)
        logprobs = self._teacher_forced(output, tokens)
        mask = tokens.ne(TARGET_PAD)
        gold = logprobs.gather(-1, tokens.clamp_min(0).unsqueeze(-1)).squeeze(-1)
        return (gold * mask).sum(dim=1)

    @torch.no_grad()
    def beam_search(
        self, output: torch.Tensor, eos: int, beam_size: int, max_len: int
    ) -> Tuple[List[List[int]], List[int]]:
        """Per-utterance beam search; only hypotheses that emit EOS within `max_len` survive."""
        paths: List[List[int]] = []
        hypo_nums: List[int] = []
        for b in range(output.size(0)):
            enc = output[b : b + 1]
            state, context, prev = self._init_state(1, enc)
            scores = enc.new_zeros(1)
            seqs: List[List[int]] = [[]]
            finished: List[Tuple[float, List[int]]] = []
            for _ in range(max_len):
                k = len(seqs)
                logprobs, state, context = self._step(enc.expand(k, -1, -1), prev, state, context)
                cand = (scores.unsqueeze(1) + logprobs).view(-1)
                top = cand.topk(min(beam_size, cand.numel()))
                rows, toks, alive_scores = [], [], []
                for score, flat in zip(top.values.tolist(), top.indices.tolist()):
                    row, tok = divmod(flat, self.num_classes)
                    if tok == eos:
                        finished.append((score, seqs[row]))
                    else:
                        rows.append(row)
                        toks.append(tok)
                        alive_scores.append(score)
                if len(finished) >= beam_size or not rows:
                    break
                seqs = [seqs[r] + [t] for r, t in zip(rows, toks)]
                index = torch.tensor(rows, dtype=torch.long, device=enc.device)
                state = state.index_select(0, index)
                context = context.index_select(0, index)
                prev = torch.tensor(toks, dtype=torch.long, device=enc.device)
                scores = torch.tensor(alive_scores, dtype=enc.dtype, device=enc.device)
            finished.sort(key=lambda item: item[0], reverse=True)
            hyps = [seq for _, seq in finished[:beam_size]]
            paths.extend(hyps)
            hypo_nums.append(len(hyps))
        return paths, hypo_nums

    @torch.no_grad()
    def decode(self, output: torch.Tensor) -> List[List[int]]:
        """Greedy decoding used for error-rate measurement."""
        batch = output.size(0)
        state, context, prev = self._init_state(batch, output)
        paths: List[List[int]] = [[] for _ in range(batch)]
        done = [False] * batch
        for _ in range(self.max_decoder_output_len):
            logprobs, state, context = self._step(output, prev, state, context)
            prev = logprobs.argmax(dim=-1)
            for i, tok in enumerate(prev.tolist()):
                if done[i]:
                    continue
                if tok == self.eos_index:
                    done[i] = True
                else:
                    paths[i].append(tok)
            if all(done):
                break
        return paths


def build_seq2seq(config, num_classes: int, eos_index: int) -> Seq2SeqCriterion:
    std = float(getattr(config, "attention_window_std", 0.0))
    window = SoftPretrainWindow(std) if std > 0 and int(getattr(config, "pretrain_window", 0)) > 0 else None
    return Seq2SeqCriterion(
        num_classes=num_classes,
        eos_index=eos_index,
        encoder_dim=int(config.encoder_hidden),
        hidden=int(config.decoder_hidden),
        max_decoder_output_len=int(config.max_decoder_output_len),
        label_smoothing=float(config.label_smoothing),
        window=window,
    )
