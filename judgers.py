from abc import ABC, abstractmethod
from typing import List

import torch

from rollouts import RolloutSet


class ActionJudger(ABC):
    """Assigns an advantage to every action in a rollout set."""

    @abstractmethod
    def judge_actions(self, rollouts: RolloutSet) -> List[torch.Tensor]:
        """One packed [num_present] tensor per timestep."""
        pass


def _pack(rollouts: RolloutSet, per_rollout: List[List[float]]) -> List[torch.Tensor]:
    packed = []
    for t, batch in enumerate(rollouts.inputs.batches()):
        idx = batch.present.nonzero(as_tuple=True)[0].tolist()
        packed.append(torch.tensor(
            [per_rollout[i][t] for i in idx],
            dtype=rollouts.dtype,
            device=batch.packed.device,
        ))
    return packed


def _normalize(values: List[List[float]]) -> List[List[float]]:
    flat = [v for row in values for v in row]
    if len(flat) < 2:
        return values
    t = torch.tensor(flat, dtype=torch.float64)
    mean, std = t.mean().item(), t.std().item()
    if std == 0:
        return [[v - mean for v in row] for row in values]
    return [[(v - mean) / std for v in row] for row in values]


class TotalJudger(ActionJudger):
    """Judges every action by the total reward of its episode."""

    def __init__(self, normalize: bool = False):
        self.normalize = normalize

    def judge_actions(self, rollouts):
        totals = rollouts.total_rewards()
        if self.normalize and len(totals) > 1:
            t = torch.tensor(totals, dtype=torch.float64)
            std = t.std().item()
            totals = [(x - t.mean().item()) / (std if std > 0 else 1.0) for x in totals]
        per_rollout = [[total] * len(r) for total, r in zip(totals, rollouts.rewards)]
        return _pack(rollouts, per_rollout)


class QJudger(ActionJudger):
    """Judges actions by discounted reward-to-go."""

    def __init__(self, discount: float = 1.0, normalize: bool = False):
        self.discount = discount
        self.normalize = normalize

    def judge_actions(self, rollouts):
        per_rollout = []
        for rewards in rollouts.rewards:
            acc = 0.0
            to_go = [0.0] * len(rewards)
            for t in reversed(range(len(rewards))):
                acc = rewards[t] + self.discount * acc
                to_go[t] = acc
            per_rollout.append(to_go)
        if self.normalize:
            per_rollout = _normalize(per_rollout)
        return _pack(rollouts, per_rollout)
