import random
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import torch

from action_spaces import ActionSpace
from sequence import Batch, Tape, step_block


@dataclass
class RolloutSet:
    """
    A batch of recorded trajectories.

    `inputs` and `actions` hold one batch per timestep; `rewards[i]` lists
    the rewards of rollout i, one per timestep it was present.
    """
    inputs: Tape
    actions: Tape
    rewards: List[List[float]]
    dtype: torch.dtype = torch.float32
    device: str = "cpu"

    @property
    def num_rollouts(self) -> int:
        return len(self.rewards)

    def total_rewards(self) -> List[float]:
        return [float(sum(r)) for r in self.rewards]

    def mean_reward(self) -> float:
        totals = self.total_rewards()
        return sum(totals) / len(totals) if totals else 0.0

    def subset(self, indices: Sequence[int]) -> "RolloutSet":
        """New rollout set holding only the given rollouts, in that order."""
        index = torch.as_tensor(list(indices), dtype=torch.long)
        return RolloutSet(
            inputs=_subset_tape(self.inputs, index),
            actions=_subset_tape(self.actions, index),
            rewards=[list(self.rewards[i]) for i in index.tolist()],
            dtype=self.dtype,
            device=self.device,
        )


def _subset_tape(tape: Tape, index: torch.Tensor) -> Tape:
    batches = []
    for batch in tape.batches():
        rows = batch.present.long().cumsum(0) - 1
        present = batch.present[index.to(batch.present.device)]
        if not present.any():
            break
        selected = rows[index.to(rows.device)][present]
        batches.append(Batch(present, batch.packed[selected]))
    return Tape(batches)


class FracReducer:
    """Keeps a random fraction of the rollouts (at least one)."""

    def __init__(self, frac: float, rng: Optional[random.Random] = None):
        if not 0 < frac <= 1:
            raise ValueError(f"frac must be in (0, 1], got {frac}")
        self.frac = frac
        self.rng = rng or random.Random()

    def __call__(self, rollouts: RolloutSet) -> RolloutSet:
        n = rollouts.num_rollouts
        count = max(1, int(round(self.frac * n)))
        indices = sorted(self.rng.sample(range(n), count))
        return rollouts.subset(indices)


@torch.no_grad()
def collect_rollouts(
    policy,
    action_space: ActionSpace,
    envs: List,
    generator: Optional[torch.Generator] = None
) -> RolloutSet:
    """
    Run `policy` on every environment until all episodes end.

    Environments expose `reset() -> obs` and `step(action) -> (obs, reward, done)`.
    """
    param = next(policy.parameters())
    dtype, device = param.dtype, param.device
    n = len(envs)
    obs = [env.reset().to(dtype=dtype, device=device) for env in envs]
    running = [True] * n
    rewards: List[List[float]] = [[] for _ in range(n)]
    inputs, actions = Tape(), Tape()
    state = policy.start_state(n)

    while any(running):
        present = torch.tensor(running, device=device)
        idx = [i for i in range(n) if running[i]]
        batch = Batch(present, torch.stack([obs[i] for i in idx]))
        state, out = step_block(policy, state, batch)
        sampled = action_space.sample(out, generator=generator)
        inputs.write(batch)
        actions.write(Batch(present, sampled))
        for row, i in enumerate(idx):
            next_obs, reward, done = envs[i].step(sampled[row])
            rewards[i].append(float(reward))
            if done:
                running[i] = False
            else:
                obs[i] = next_obs.to(dtype=dtype, device=device)

    inputs.close()
    actions.close()
    return RolloutSet(inputs, actions, rewards, dtype=dtype, device=str(device))


def make_envs(env_fn: Callable[[int], object], count: int, seed: int = 0) -> List:
    return [env_fn(seed + i) for i in range(count)]
