"""
Test Fisher-vector products against finite differences of the KL
divergence and against a policy with a known Fisher matrix.
"""
import copy

import pytest
import torch
from torch import nn

from action_spaces import Gaussian
from fisher import (
    DualKey,
    DualTensor,
    FisherVectorProduct,
    ParameterCorrespondenceError,
    SuperfluousGradientError,
    SurrogateGrad,
    make_fwd,
)
from gradients import dot_grad
from sequence import GradAccumulator, TapeRereader, bptt, make_reuser


def _fvp(policy, space, rollouts, direction, damping=0.0, apply_policy=None):
    fvp = FisherVectorProduct(policy, space, damping=damping, apply_policy=apply_policy)
    policy_outs = make_reuser(bptt(TapeRereader(rollouts.inputs), policy))
    return fvp(rollouts, direction, policy_outs)


def _random_direction(policy, seed):
    gen = torch.Generator().manual_seed(seed)
    return {
        name: torch.randn(p.shape, generator=gen, dtype=p.dtype)
        for name, p in policy.named_parameters()
    }


def _shifted(policy, direction, eps):
    moved = copy.deepcopy(policy)
    with torch.no_grad():
        for name, p in moved.named_parameters():
            p.add_(direction[name], alpha=eps)
    return moved


def _mean_kl(policy, space, rollouts, reference, outputs_of):
    outputs = outputs_of(policy, rollouts)
    count = sum(out.shape[0] for out in outputs)
    return sum(space.kl(ref, out).sum() for ref, out in zip(reference, outputs)) / count


def test_quadratic_form_matches_kl_curvature(rnn_setup, outputs_of):
    policy, space, rollouts = rnn_setup
    v = _random_direction(policy, seed=1)
    reference = [out.detach() for out in outputs_of(policy, rollouts)]

    vfv = dot_grad(v, _fvp(policy, space, rollouts, v)).item()
    assert vfv > 0

    errors = []
    for eps in (1e-1, 1e-2, 1e-3):
        with torch.no_grad():
            kl_plus = _mean_kl(_shifted(policy, v, eps), space, rollouts, reference, outputs_of)
            kl_minus = _mean_kl(_shifted(policy, v, -eps), space, rollouts, reference, outputs_of)
        estimate = (kl_plus + kl_minus).item() / eps ** 2
        errors.append(abs(estimate - vfv))

    assert errors[-1] < 1e-4 * abs(vfv)
    assert errors[-1] < errors[0], "finite-difference error should shrink with eps"


def test_product_matches_kl_gradient_difference(rnn_setup, outputs_of):
    policy, space, rollouts = rnn_setup
    v = _random_direction(policy, seed=2)
    reference = [out.detach() for out in outputs_of(policy, rollouts)]
    eps = 1e-4

    def kl_grad(moved):
        kl = _mean_kl(moved, space, rollouts, reference, outputs_of)
        names = [name for name, _ in moved.named_parameters()]
        grads = torch.autograd.grad(kl, list(moved.parameters()))
        return dict(zip(names, grads))

    plus = kl_grad(_shifted(policy, v, eps))
    minus = kl_grad(_shifted(policy, v, -eps))
    result = _fvp(policy, space, rollouts, v)

    assert result.keys() == v.keys()
    for name in v:
        estimate = (plus[name] - minus[name]) / (2 * eps)
        assert torch.allclose(result[name], estimate, rtol=1e-4, atol=1e-7), f"mismatch for {name}"


def test_product_is_symmetric(rnn_setup):
    policy, space, rollouts = rnn_setup
    u = _random_direction(policy, seed=3)
    v = _random_direction(policy, seed=4)

    ufv = dot_grad(u, _fvp(policy, space, rollouts, v)).item()
    vfu = dot_grad(v, _fvp(policy, space, rollouts, u)).item()
    assert ufv == pytest.approx(vfu, rel=1e-9)


def test_damping_adds_scaled_direction(rnn_setup):
    policy, space, rollouts = rnn_setup
    v = _random_direction(policy, seed=5)

    plain = _fvp(policy, space, rollouts, v)
    damped = _fvp(policy, space, rollouts, v, damping=0.3)
    for name in v:
        assert torch.allclose(damped[name] - plain[name], 0.3 * v[name], atol=1e-12)


def test_partial_direction_only_returns_its_keys(rnn_setup):
    policy, space, rollouts = rnn_setup
    v = {'head.weight': _random_direction(policy, seed=6)['head.weight']}
    result = _fvp(policy, space, rollouts, v)
    assert list(result) == ['head.weight']
    assert result['head.weight'].shape == policy.head.weight.shape


def test_product_leaves_policy_untouched(rnn_setup):
    policy, space, rollouts = rnn_setup
    before = {k: v.clone() for k, v in policy.state_dict().items()}
    _fvp(policy, space, rollouts, _random_direction(policy, seed=7))
    for k, v in policy.state_dict().items():
        assert torch.equal(before[k], v)
    for _, p in policy.named_parameters():
        assert p.grad is None


def test_known_fisher_matrix(toy_policy, single_step_rollouts):
    rollouts = single_step_rollouts([[0.1, 0.2], [-0.3, 0.4]], [1.0, 0.0])
    v = {'p1': torch.tensor([1.5], dtype=torch.float64), 'p2': torch.tensor([-2.0], dtype=torch.float64)}

    result = _fvp(toy_policy, Gaussian(), rollouts, v)
    assert result['p1'].item() == pytest.approx(3.0)
    assert result['p2'].item() == pytest.approx(-2.0)

    damped = _fvp(toy_policy, Gaussian(), rollouts, v, damping=1.0)
    assert damped['p1'].item() == pytest.approx(4.5)
    assert damped['p2'].item() == pytest.approx(-4.0)


def test_empty_rollouts_raise(toy_policy):
    fvp = FisherVectorProduct(toy_policy, Gaussian())
    with pytest.raises(ValueError):
        fvp.kl_upstream([])


def test_make_fwd_seeds_tangents(rnn_setup):
    policy, _, _ = rnn_setup
    direction = {'head.bias': torch.ones_like(policy.head.bias)}
    fwd, mapping = make_fwd(policy, direction)

    names = [name for name, _ in policy.named_parameters()]
    assert [key.name for key in mapping] == names
    assert [key.index for key in mapping] == list(range(len(names)))
    assert all(key.name == old for key, old in mapping.items())

    for key, tangent in fwd.tangents.items():
        if key.name == 'head.bias':
            assert torch.equal(tangent, direction['head.bias'])
            assert tangent is not direction['head.bias']
        else:
            assert not tangent.any()

    for (_, old), (_, new) in zip(policy.named_parameters(), fwd.module.named_parameters()):
        assert old.data_ptr() != new.data_ptr(), "clone must not share storage"


def test_make_fwd_rejects_mismatched_clone():
    class Shapeshifter(nn.Module):
        def __init__(self):
            super().__init__()
            self.a = nn.Parameter(torch.zeros(1))

        def __deepcopy__(self, memo):
            other = nn.Module()
            other.b = nn.Parameter(torch.zeros(1))
            return other

    with pytest.raises(ParameterCorrespondenceError):
        make_fwd(Shapeshifter(), {})


def test_surrogate_grad_aliases_tangents():
    key = DualKey(0, 'w')
    entry = DualTensor(torch.zeros(2), torch.zeros(2))
    surrogate = SurrogateGrad(GradAccumulator({key: entry}), {key: 'w'})

    def accumulate(g):
        assert set(g) == {'w'}
        g['w'].add_(torch.tensor([1.0, 2.0]))

    surrogate.use(accumulate)
    assert torch.equal(entry.tangent, torch.tensor([1.0, 2.0]))
    assert not entry.value.any()


def test_surrogate_grad_rejects_unknown_keys():
    bogus = DualKey(99, 'bogus')
    surrogate = SurrogateGrad(
        GradAccumulator({bogus: DualTensor(torch.zeros(1), torch.zeros(1))}),
        {DualKey(0, 'w'): 'w'},
    )
    with pytest.raises(SuperfluousGradientError):
        surrogate.use(lambda g: None)
