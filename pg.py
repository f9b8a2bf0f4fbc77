from typing import Callable, Dict, Optional

import torch

from action_spaces import ActionSpace
from gradients import Gradient
from judgers import ActionJudger, TotalJudger
from rollouts import RolloutSet
from sequence import Batch, GradAccumulator, Rereader, TapeRereader


class PolicyGradient:
    """
    Vanilla policy gradient estimator.

    Maximizes (1/N) * sum over rollouts and timesteps of
    advantage * log pi(action), plus an optional regularization term.
    The returned gradient is the ascent direction.

    Args:
        policy: maps an input sequence to the policy's output sequence.
            Callers can keep the returned Rereader to reuse the outputs.
        params: parameters to differentiate, keyed by name
        action_space: distribution family of the policy outputs
        action_judger: assigns advantages (default: TotalJudger)
        regularizer: optional object with `regularize(params) -> [n]`
    """

    def __init__(
        self,
        policy: Callable[[Rereader], Rereader],
        params: Dict[str, torch.Tensor],
        action_space: ActionSpace,
        action_judger: Optional[ActionJudger] = None,
        regularizer=None
    ):
        self.policy = policy
        self.params = params
        self.action_space = action_space
        self.action_judger = action_judger or TotalJudger()
        self.regularizer = regularizer

    def run(self, rollouts: RolloutSet) -> Gradient:
        outputs = self.policy(TapeRereader(rollouts.inputs))
        advantages = self.action_judger.judge_actions(rollouts)
        scale = 1.0 / rollouts.num_rollouts

        upstream = []
        batches = zip(outputs.forward(), rollouts.actions.read(), advantages)
        for out, actions, adv in batches:
            params = out.packed.detach().requires_grad_()
            objective = (self.action_space.log_prob(params, actions.packed) * adv).sum()
            if self.regularizer is not None:
                objective = objective + self.regularizer.regularize(params).sum()
            (upstream_grad,) = torch.autograd.grad(objective * scale, params)
            upstream.append(Batch(out.present, upstream_grad))

        grad = {name: torch.zeros_like(p) for name, p in self.params.items()}
        outputs.propagate(upstream, GradAccumulator(grad))
        return grad
