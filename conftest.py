"""Shared fixtures: toy policies and rollout sets."""
import math

import matplotlib
matplotlib.use("Agg")

import pytest
import torch
from torch import nn

from action_spaces import Softmax
from envs import MemoryEnv
from models import RNNPolicy
from rollouts import RolloutSet, collect_rollouts, make_envs
from sequence import BPTT, Batch, Tape, TapeRereader


class ToyGaussianPolicy(nn.Module):
    """
    Stateless policy whose Gaussian mean is (sqrt(2) p1 x, p2 x) with unit
    std, so its Fisher matrix is exactly diag(2, 1) for inputs x = 1.
    """

    def __init__(self):
        super().__init__()
        self.p1 = nn.Parameter(torch.zeros(1, dtype=torch.float64))
        self.p2 = nn.Parameter(torch.zeros(1, dtype=torch.float64))

    def start_state(self, batch_size):
        return torch.zeros(batch_size, 0, dtype=torch.float64)

    def forward(self, state, x):
        mean = torch.cat([math.sqrt(2) * self.p1 * x[:, :1], self.p2 * x[:, :1]], dim=-1)
        return state, torch.cat([mean, torch.zeros_like(mean)], dim=-1)


def make_single_step_rollouts(actions, rewards, dtype=torch.float64) -> RolloutSet:
    n = len(rewards)
    present = torch.ones(n, dtype=torch.bool)
    inputs = Tape([Batch(present, torch.ones(n, 1, dtype=dtype))])
    acts = Tape([Batch(present, torch.tensor(actions, dtype=dtype))])
    return RolloutSet(inputs, acts, [[float(r)] for r in rewards], dtype=dtype)


def run_outputs(policy, rollouts):
    """Packed policy outputs per timestep, with graph."""
    return [b.packed for b in BPTT(TapeRereader(rollouts.inputs), policy).forward()]


@pytest.fixture
def toy_policy():
    return ToyGaussianPolicy()


@pytest.fixture
def single_step_rollouts():
    return make_single_step_rollouts


@pytest.fixture
def outputs_of():
    return run_outputs


@pytest.fixture
def rnn_setup():
    """Small double-precision RNN policy with rollouts of varying length."""
    torch.manual_seed(0)
    space = Softmax()
    policy = RNNPolicy(input_dim=3, hidden_dim=4, output_dim=3).double()
    envs = make_envs(lambda seed: MemoryEnv(3, min_len=2, max_len=4, seed=seed), 6)
    rollouts = collect_rollouts(policy, space, envs, generator=torch.Generator().manual_seed(0))
    return policy, space, rollouts
