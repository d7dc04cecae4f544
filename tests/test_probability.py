import math

import pytest
import torch

from lpm.matching.probability import (
    adjust_prob,
    compute_advantage,
    entropy,
    group_ids,
    group_sum,
    postproc_lm_logprob,
    postproc_s2s_logprob,
    shuffle_prob,
)


def test_group_ids_skips_empty_groups():
    assert group_ids([2, 0, 1]).tolist() == [0, 0, 2]


def test_group_sum_keeps_one_entry_per_group():
    values = torch.tensor([1.0, 2.0, 3.0])
    assert group_sum(values, [2, 0, 1]).tolist() == [3.0, 0.0, 3.0]


def test_adjust_prob_renormalises_each_group():
    logprob = torch.tensor([-1.0, -2.0, -0.5, -3.0, -4.0])
    probs = adjust_prob(logprob, [2, 3], linear=True)
    assert torch.allclose(probs[:2].sum(), torch.tensor(1.0))
    assert torch.allclose(probs[2:].sum(), torch.tensor(1.0))


def test_adjust_prob_is_idempotent():
    logprob = torch.tensor([-1.0, -2.0, -0.5, -3.0, -4.0])
    once = adjust_prob(logprob, [2, 3])
    twice = adjust_prob(once, [2, 3])
    assert torch.allclose(once, twice, atol=1e-6)


def test_adjust_prob_rejects_mismatched_counts():
    with pytest.raises(ValueError):
        adjust_prob(torch.zeros(3), [1, 1])


def test_entropy_of_single_hypothesis_is_zero():
    ent = entropy(torch.tensor([-7.3]), [1])
    assert ent.tolist() == [0.0]


def test_entropy_of_uniform_group_is_log_n():
    ent = entropy(torch.zeros(4), [4])
    assert ent.item() == pytest.approx(math.log(4), rel=1e-5)


def test_entropy_skips_empty_groups():
    ent = entropy(torch.zeros(3), [2, 0, 1])
    assert ent.numel() == 2


def test_postproc_lm_length_norm_is_per_token():
    paths = [[1, 2, 3, 4], [5, 6]]
    logprob = torch.tensor([-8.0, -4.0])
    out = postproc_lm_logprob(logprob, paths, temperature=1.0, length_norm=True)
    assert out.tolist() == [-2.0, -2.0]


def test_postproc_lm_temperature_divides_after_length_norm():
    out = postproc_lm_logprob(torch.tensor([-6.0]), [[1, 2, 3]], temperature=2.0)
    assert out.item() == pytest.approx(-1.0)


def test_postproc_lm_rejects_non_positive_temperature():
    with pytest.raises(ValueError):
        postproc_lm_logprob(torch.tensor([-1.0]), [[1]], temperature=0.0)


def test_empty_path_counts_as_length_one():
    out = postproc_lm_logprob(torch.tensor([-3.0]), [[]])
    assert out.item() == pytest.approx(-3.0)


def test_postproc_s2s_invariant_to_per_group_offset():
    paths = [[1, 2], [3], [4, 5, 6]]
    logprob = torch.tensor([-2.0, -1.0, -3.0])
    shifted = logprob.clone()
    # a constant added to the per-token score of every hypothesis in the group
    lengths = torch.tensor([2.0, 1.0, 3.0])
    shifted = shifted + 0.7 * lengths
    base = postproc_s2s_logprob(logprob, paths, [3])
    moved = postproc_s2s_logprob(shifted, paths, [3])
    assert torch.allclose(base, moved, atol=1e-6)


def test_postproc_s2s_keeps_gradient():
    logprob = torch.tensor([-2.0, -1.0], requires_grad=True)
    out = postproc_s2s_logprob(logprob, [[1], [2]], [2])
    out.sum().backward()
    assert logprob.grad is not None


def test_shuffle_preserves_group_multisets():
    logprob = torch.tensor([1.0, 2.0, 3.0, 10.0, 20.0])
    gen = torch.Generator().manual_seed(3)
    out = shuffle_prob(logprob, [3, 2], generator=gen)
    assert sorted(out[:3].tolist()) == [1.0, 2.0, 3.0]
    assert sorted(out[3:].tolist()) == [10.0, 20.0]


def test_shuffle_is_deterministic_for_a_seed():
    logprob = torch.arange(6, dtype=torch.float32)
    a = shuffle_prob(logprob, [6], generator=torch.Generator().manual_seed(11))
    b = shuffle_prob(logprob, [6], generator=torch.Generator().manual_seed(11))
    assert a.tolist() == b.tolist()


def test_compute_advantage_is_centered_per_group():
    logprob = torch.tensor([1.0, 3.0, 5.0])
    adv = compute_advantage(logprob, [2, 1], margin=0.5)
    assert adv.tolist() == [-1.5, 0.5, -0.5]
