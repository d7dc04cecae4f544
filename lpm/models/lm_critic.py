from __future__ import annotations

from typing import List, Sequence

import torch
import torch.nn.functional as F

from ..data.dictionary import Dictionary


class LMCritic:
    """Frozen causal LM scoring acoustic-model hypotheses.

    A hypothesis (a path of dictionary indices) is rendered to words, tokenised with the
    LM tokenizer and scored as log p(tokens, eos | bos). The LM only ever provides a
    target distribution, so scoring runs without gradients.
    """

    def __init__(self, lm, tokenizer, dictionary: Dictionary, device="cpu", max_length: int = 512):
        self.lm = lm
        self.tokenizer = tokenizer
        self.dictionary = dictionary
        self.device = torch.device(device)
        self.max_length = max_length
        for p in self.lm.parameters():
            p.requires_grad_(False)

    def train(self) -> "LMCritic":
        self.lm.train()
        return self

    def eval(self) -> "LMCritic":
        self.lm.eval()
        return self

    def zero_grad(self) -> None:
        self.lm.zero_grad(set_to_none=True)

    def state_dict(self):
        return self.lm.state_dict()

    def load_state_dict(self, state) -> None:
        self.lm.load_state_dict(state)

    def pretty_string(self) -> str:
        name = getattr(getattr(self.lm, "config", None), "_name_or_path", type(self.lm).__name__)
        return f"LMCritic({name})"

    def _token_ids(self, path: Sequence[int]) -> List[int]:
        bos = self.tokenizer.bos_token_id
        eos = self.tokenizer.eos_token_id
        if bos is None:
            bos = eos
        text = self.dictionary.to_text(path)
        ids = self.tokenizer.encode(text, add_special_tokens=False) if text else []
        ids = list(ids)[: self.max_length - 2]
        return [bos] + ids + [eos]

    @torch.no_grad()
    def score(self, paths: Sequence[Sequence[int]]) -> torch.Tensor:
        """Log-probability of each hypothesis under the LM, shape [N]."""
        if len(paths) == 0:
            return torch.zeros(0, device=self.device)
        seqs = [self._token_ids(p) for p in paths]
        width = max(len(s) for s in seqs)
        pad = self.tokenizer.pad_token_id
        if pad is None:
            pad = self.tokenizer.eos_token_id or 0
        ids = torch.full((len(seqs), width), pad, dtype=torch.long)
        attn = torch.zeros((len(seqs), width), dtype=torch.long)
        for i, s in enumerate(seqs):
            ids[i, : len(s)] = torch.tensor(s, dtype=torch.long)
            attn[i, : len(s)] = 1
        ids = ids.to(self.device)
        attn = attn.to(self.device)
        logits = self.lm(input_ids=ids, attention_mask=attn).logits.float()
        logprobs = F.log_softmax(logits[:, :-1], dim=-1)
        gold = logprobs.gather(-1, ids[:, 1:].unsqueeze(-1)).squeeze(-1)
        return (gold * attn[:, 1:].to(gold.dtype)).sum(dim=1)
