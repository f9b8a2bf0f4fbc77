"""Test rollout collection, subsets, reducers and action judgers."""
import random

import pytest
import torch

from envs import MemoryEnv
from judgers import QJudger, TotalJudger
from rollouts import FracReducer, RolloutSet
from sequence import Batch, Tape


def _manual_rollouts():
    """
    Three rollouts of lengths 3, 1 and 2; input rows hold 10 * rollout + t.
    """
    t0 = Batch(torch.tensor([True, True, True]), torch.tensor([[0.0], [10.0], [20.0]]))
    t1 = Batch(torch.tensor([True, False, True]), torch.tensor([[1.0], [21.0]]))
    t2 = Batch(torch.tensor([True, False, False]), torch.tensor([[2.0]]))
    inputs = Tape([t0, t1, t2])
    actions = Tape([t0, t1, t2])
    rewards = [[1.0, 0.0, 2.0], [5.0], [0.0, 1.0]]
    return RolloutSet(inputs, actions, rewards)


def test_memory_env_rewards_repeats():
    env = MemoryEnv(num_symbols=3, min_len=3, max_len=3, seed=7)
    obs = env.reset()
    assert obs.shape == (3,) and obs.sum() == 1

    prev = int(obs.argmax())
    obs, reward, done = env.step(torch.nn.functional.one_hot(torch.tensor(prev), 3))
    assert reward == 0.0, "no symbol to repeat on the first step"
    assert not done

    obs, reward, done = env.step(torch.nn.functional.one_hot(torch.tensor(prev), 3))
    assert reward == 1.0
    assert not done

    _, reward, done = env.step(torch.nn.functional.one_hot(torch.tensor((prev + 1) % 3), 3))
    assert done

    with pytest.raises(ValueError):
        MemoryEnv(min_len=3, max_len=2)


def test_collect_rollouts_shapes(rnn_setup):
    _, _, rollouts = rnn_setup
    assert rollouts.num_rollouts == 6
    assert rollouts.dtype == torch.float64

    lengths = [len(r) for r in rollouts.rewards]
    assert all(2 <= n <= 4 for n in lengths)
    assert len(rollouts.inputs) == max(lengths)

    counts = [b.num_present for b in rollouts.inputs.batches()]
    assert counts == sorted(counts, reverse=True), "sequences never start late"
    for t, batch in enumerate(rollouts.actions.batches()):
        assert batch.num_present == sum(1 for n in lengths if n > t)
        assert torch.equal(batch.packed.sum(dim=-1), torch.ones(batch.num_present, dtype=torch.float64))


def test_subset_reorders_rows():
    sub = _manual_rollouts().subset([2, 0])
    batches = sub.inputs.batches()

    assert sub.rewards == [[0.0, 1.0], [1.0, 0.0, 2.0]]
    assert [b.packed.flatten().tolist() for b in batches] == [[20.0, 0.0], [21.0, 1.0], [2.0]]
    assert batches[2].present.tolist() == [False, True]


def test_subset_drops_empty_tail():
    sub = _manual_rollouts().subset([1])
    assert len(sub.inputs) == 1
    assert sub.total_rewards() == [5.0]


def test_frac_reducer_counts():
    rollouts = _manual_rollouts()
    assert FracReducer(0.01, random.Random(0))(rollouts).num_rollouts == 1
    assert FracReducer(0.67, random.Random(0))(rollouts).num_rollouts == 2
    assert FracReducer(1.0, random.Random(0))(rollouts).num_rollouts == 3

    with pytest.raises(ValueError):
        FracReducer(0.0)
    with pytest.raises(ValueError):
        FracReducer(1.5)


def test_total_judger_packs_episode_totals():
    rollouts = _manual_rollouts()
    assert rollouts.mean_reward() == pytest.approx(3.0)

    adv = TotalJudger().judge_actions(rollouts)
    assert [a.tolist() for a in adv] == [[3.0, 5.0, 1.0], [3.0, 1.0], [3.0]]

    normalized = TotalJudger(normalize=True).judge_actions(rollouts)
    assert normalized[0].sum().item() == pytest.approx(0.0, abs=1e-6)


def test_q_judger_discounts_reward_to_go():
    adv = QJudger(discount=0.5).judge_actions(_manual_rollouts())
    assert [a.tolist() for a in adv] == [[1.5, 5.0, 0.5], [1.0, 1.0], [2.0]]
