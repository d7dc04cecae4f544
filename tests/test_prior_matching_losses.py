import pytest
import torch

from lpm.matching.losses import (
    available_pm_losses,
    compute_prior_matching_loss,
    get_pm_loss,
    register_pm_loss,
)


def test_builtin_losses_are_registered():
    assert {"ce", "kl", "reverse_kl"} <= set(available_pm_losses())


def test_unknown_loss_raises():
    with pytest.raises(ValueError):
        get_pm_loss("does-not-exist")


def test_register_custom_loss():
    @register_pm_loss("zero_for_test")
    def _zero(lm, s2s, hypo_nums):
        return s2s.new_zeros(len(hypo_nums))

    out = compute_prior_matching_loss(torch.zeros(3), torch.zeros(3), [1, 2], loss_type="zero_for_test")
    assert out.tolist() == [0.0, 0.0]


def test_ce_matches_closed_form():
    lm = torch.log(torch.tensor([0.75, 0.25]))
    s2s = torch.log(torch.tensor([0.5, 0.5]))
    loss = compute_prior_matching_loss(lm, s2s, [2], loss_type="ce")
    expected = -(0.75 * torch.log(torch.tensor(0.5)) + 0.25 * torch.log(torch.tensor(0.5)))
    assert torch.allclose(loss, expected.reshape(1), atol=1e-6)


@pytest.mark.parametrize("loss_type", ["kl", "reverse_kl"])
def test_kl_losses_vanish_when_distributions_agree(loss_type):
    lp = torch.log(torch.tensor([0.2, 0.8, 1.0]))
    loss = compute_prior_matching_loss(lp, lp.clone(), [2, 1], loss_type=loss_type)
    assert torch.allclose(loss, torch.zeros(2), atol=1e-6)


@pytest.mark.parametrize("loss_type", ["ce", "kl", "reverse_kl"])
def test_no_gradient_flows_into_lm_scores(loss_type):
    lm = torch.tensor([-1.0, -2.0, -0.3], requires_grad=True)
    s2s = torch.tensor([-0.5, -1.5, -2.0], requires_grad=True)
    loss = compute_prior_matching_loss(lm, s2s, [3], loss_type=loss_type)
    loss.sum().backward()
    assert lm.grad is None
    assert s2s.grad is not None


def test_shape_mismatch_raises():
    with pytest.raises(ValueError):
        compute_prior_matching_loss(torch.zeros(2), torch.zeros(3), [3])
