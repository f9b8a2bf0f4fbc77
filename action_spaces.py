import math
from abc import ABC, abstractmethod

import torch
import torch.nn.functional as F


class ActionSpace(ABC):
    """
    Distribution over actions, parameterized by a policy output row.

    All methods work on packed batches: `params` is [n, param_dim] and the
    per-row results are [n].
    """

    @abstractmethod
    def param_size(self, action_dim: int) -> int:
        """Policy output size needed for `action_dim` dimensional actions."""
        pass

    @abstractmethod
    def log_prob(self, params: torch.Tensor, actions: torch.Tensor) -> torch.Tensor:
        pass

    @abstractmethod
    def kl(self, params1: torch.Tensor, params2: torch.Tensor) -> torch.Tensor:
        """KL(params1 || params2), differentiable in params2."""
        pass

    @abstractmethod
    def entropy(self, params: torch.Tensor) -> torch.Tensor:
        pass

    @abstractmethod
    def sample(self, params: torch.Tensor, generator: torch.Generator = None) -> torch.Tensor:
        pass


class Softmax(ActionSpace):
    """Categorical actions; params are logits, actions are one-hot rows."""

    def param_size(self, action_dim: int) -> int:
        return action_dim

    def log_prob(self, params, actions):
        return (F.log_softmax(params, dim=-1) * actions).sum(dim=-1)

    def kl(self, params1, params2):
        log_p = F.log_softmax(params1, dim=-1)
        log_q = F.log_softmax(params2, dim=-1)
        return (log_p.exp() * (log_p - log_q)).sum(dim=-1)

    def entropy(self, params):
        log_p = F.log_softmax(params, dim=-1)
        return -(log_p.exp() * log_p).sum(dim=-1)

    def sample(self, params, generator=None):
        probs = torch.softmax(params.detach(), dim=-1)
        idx = torch.multinomial(probs, 1, generator=generator).squeeze(-1)
        return F.one_hot(idx, params.shape[-1]).to(params.dtype)


class Gaussian(ActionSpace):
    """Diagonal Gaussian; params are [mean, log_std] concatenated."""

    def param_size(self, action_dim: int) -> int:
        return 2 * action_dim

    @staticmethod
    def _split(params):
        mean, log_std = params.chunk(2, dim=-1)
        return mean, log_std

    def log_prob(self, params, actions):
        mean, log_std = self._split(params)
        z = (actions - mean) * torch.exp(-log_std)
        return (-0.5 * z.pow(2) - log_std - 0.5 * math.log(2 * math.pi)).sum(dim=-1)

    def kl(self, params1, params2):
        mean1, log_std1 = self._split(params1)
        mean2, log_std2 = self._split(params2)
        var1 = torch.exp(2 * log_std1)
        var2 = torch.exp(2 * log_std2)
        terms = log_std2 - log_std1 + (var1 + (mean1 - mean2).pow(2)) / (2 * var2) - 0.5
        return terms.sum(dim=-1)

    def entropy(self, params):
        _, log_std = self._split(params)
        return (log_std + 0.5 * math.log(2 * math.pi * math.e)).sum(dim=-1)

    def sample(self, params, generator=None):
        mean, log_std = self._split(params.detach())
        noise = torch.randn(mean.shape, generator=generator, dtype=mean.dtype, device=mean.device)
        return mean + noise * torch.exp(log_std)


class EntropyRegularizer:
    """Adds coeff * entropy to the policy-gradient objective."""

    def __init__(self, space: ActionSpace, coeff: float):
        self.space = space
        self.coeff = coeff

    def regularize(self, params: torch.Tensor) -> torch.Tensor:
        return self.coeff * self.space.entropy(params)
