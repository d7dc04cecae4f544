import types

import pytest
import torch
import torch.nn as nn
import torch.nn.functional as F

from lpm.data.dictionary import Dictionary
from lpm.models.lm_critic import LMCritic
from lpm.models.loader import build_lm_critic


class DummyTokenizer:
    pad_token_id = 0
    bos_token_id = 1
    eos_token_id = 2

    def encode(self, text, add_special_tokens=False):
        # one id per character, shifted past the special ids
        return [3 + (ord(ch) % 10) for ch in text]


class DummyLM(nn.Module):
    def __init__(self, vocab_size: int = 16, hidden_size: int = 8):
        super().__init__()
        self.embed = nn.Embedding(vocab_size, hidden_size)
        self.proj = nn.Linear(hidden_size, vocab_size, bias=False)
        self.config = types.SimpleNamespace(use_cache=False, _name_or_path="dummy-lm")

    def forward(self, input_ids, attention_mask=None):
        emb = self.embed(input_ids)
        logits = self.proj(emb)
        return types.SimpleNamespace(logits=logits)


def _critic():
    torch.manual_seed(0)
    dictionary = Dictionary(["|", "a", "b", "c"])
    return LMCritic(DummyLM(), DummyTokenizer(), dictionary), dictionary


def test_parameters_are_frozen():
    critic, _ = _critic()
    assert all(not p.requires_grad for p in critic.lm.parameters())
    assert critic.pretty_string() == "LMCritic(dummy-lm)"


def test_score_shape_and_sign():
    critic, d = _critic()
    paths = [d.encode_transcript("ab"), d.encode_transcript("a c"), []]
    scores = critic.score(paths)
    assert scores.shape == (3,)
    assert (scores < 0).all()
    assert not scores.requires_grad


def test_score_matches_manual_log_likelihood():
    critic, d = _critic()
    path = d.encode_transcript("ab")
    ids = torch.tensor([[1] + DummyTokenizer().encode("ab") + [2]])
    logprobs = F.log_softmax(critic.lm(input_ids=ids).logits[:, :-1], dim=-1)
    expected = logprobs.gather(-1, ids[:, 1:].unsqueeze(-1)).sum()
    assert critic.score([path]).item() == pytest.approx(expected.item(), abs=1e-5)


def test_padding_does_not_change_scores():
    critic, d = _critic()
    short = d.encode_transcript("a")
    long = d.encode_transcript("abc cab")
    alone = critic.score([short])
    batched = critic.score([short, long])
    assert batched[0].item() == pytest.approx(alone.item(), abs=1e-5)


def test_empty_input_returns_empty_scores():
    critic, _ = _critic()
    assert critic.score([]).numel() == 0


def test_state_dict_round_trip():
    critic, d = _critic()
    other, _ = _critic()
    with torch.no_grad():
        for p in other.lm.parameters():
            p.add_(1.0)
    other.load_state_dict(critic.state_dict())
    paths = [d.encode_transcript("ab")]
    assert torch.allclose(other.score(paths), critic.score(paths))


def test_build_lm_critic_skips_when_not_needed():
    d = Dictionary(["a"])
    cfg = types.SimpleNamespace(pm_type="oracle", use_uniform_lm=False, lm_model=None)
    assert build_lm_critic(cfg, d) is None
    cfg = types.SimpleNamespace(pm_type="lpm", use_uniform_lm=True, lm_model=None)
    assert build_lm_critic(cfg, d) is None


def test_build_lm_critic_requires_model_name():
    cfg = types.SimpleNamespace(pm_type="lpm", use_uniform_lm=False, lm_model=None)
    with pytest.raises(ValueError):
        build_lm_critic(cfg, Dictionary(["a"]))
