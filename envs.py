import random
from typing import Tuple

import torch


class MemoryEnv:
    """
    Recall task for recurrent policies.

    Each step shows a random symbol as a one-hot observation. From the
    second step on, the agent earns 1 for repeating the symbol it saw on
    the previous step. Episodes last between `min_len` and `max_len` steps.
    """

    def __init__(self, num_symbols: int = 3, min_len: int = 2, max_len: int = 5, seed: int = 0):
        if min_len < 1 or max_len < min_len:
            raise ValueError(f"invalid episode lengths [{min_len}, {max_len}]")
        self.num_symbols = num_symbols
        self.min_len = min_len
        self.max_len = max_len
        self.rng = random.Random(seed)
        self._length = 0
        self._t = 0
        self._prev = None
        self._current = None

    @property
    def obs_dim(self) -> int:
        return self.num_symbols

    def _observe(self) -> torch.Tensor:
        self._current = self.rng.randrange(self.num_symbols)
        obs = torch.zeros(self.num_symbols)
        obs[self._current] = 1.0
        return obs

    def reset(self) -> torch.Tensor:
        self._length = self.rng.randint(self.min_len, self.max_len)
        self._t = 0
        self._prev = None
        return self._observe()

    def step(self, action: torch.Tensor) -> Tuple[torch.Tensor, float, bool]:
        choice = int(action.argmax().item())
        reward = 1.0 if self._prev is not None and choice == self._prev else 0.0
        self._prev = self._current
        self._t += 1
        done = self._t >= self._length
        obs = self._observe() if not done else torch.zeros(self.num_symbols)
        return obs, reward, done
