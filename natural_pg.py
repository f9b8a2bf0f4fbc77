from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

import torch
from torch import nn

from action_spaces import ActionSpace
from config import DEFAULT_CONJ_GRAD_ITERS, NaturalPGConfig
from fisher import FisherVectorProduct
from gradients import (
    Gradient,
    add_to_grad,
    all_zeros,
    copy_grad,
    dot_grad,
    scale_grad,
    set_grad,
    sub_from_grad,
    zero_grad,
)
from judgers import ActionJudger
from pg import PolicyGradient
from rollouts import RolloutSet
from sequence import Rereader, Reuser, TapeRereader, bptt, make_reuser


def conjugate_gradients(
    apply_fisher: Callable[[Gradient], Gradient],
    grad: Gradient,
    iterations: int = DEFAULT_CONJ_GRAD_ITERS,
    return_intermediate: bool = False
) -> Union[Gradient, Tuple[Gradient, List[float]]]:
    """
    Solve F x = grad for x, with F only available through `apply_fisher`.

    Runs exactly `iterations` steps of the standard recurrence
    (https://en.wikipedia.org/wiki/Conjugate_gradient_method#The_resulting_algorithm);
    there is no convergence check. If a search direction has zero
    curvature while the residual is non-zero, alpha is not finite and
    neither is the result. Once the residual is exactly zero, further
    steps leave x unchanged.

    If return_intermediate=True, returns (x, residual_history) where
    residual_history[i] is r.r before step i (plus the final value).
    """
    # x = 0, r = b - Ax = b, p = r
    x = zero_grad(grad)
    residual = copy_grad(grad)
    proj = copy_grad(grad)

    residual_mag = dot_grad(residual, residual)
    history = [residual_mag.item()]

    for _ in range(iterations):
        applied_proj = apply_fisher(proj)
        converged = residual_mag.item() == 0

        # (r dot r) / (p dot A*p)
        if converged:
            alpha = torch.zeros_like(residual_mag)
        else:
            alpha = residual_mag / dot_grad(proj, applied_proj)

        # x = x + alpha*p
        alpha_proj = copy_grad(proj)
        scale_grad(alpha_proj, alpha)
        add_to_grad(x, alpha_proj)

        # r = r - alpha*A*p
        scale_grad(applied_proj, alpha)
        sub_from_grad(residual, applied_proj)

        new_residual_mag = dot_grad(residual, residual)
        if converged:
            beta = torch.zeros_like(residual_mag)
        else:
            beta = new_residual_mag / residual_mag
        residual_mag = new_residual_mag
        history.append(residual_mag.item())

        # p = r + beta*p, built fresh so the old direction is not aliased
        old_proj = proj
        proj = copy_grad(residual)
        scale_grad(old_proj, beta)
        add_to_grad(proj, old_proj)

    if return_intermediate:
        return x, history
    return x


@dataclass
class NaturalPGResult:
    grad: Gradient
    policy_out: Optional[Reuser] = None
    zero_grad: bool = False

    # Always set, but may be the unreduced rollouts / outputs.
    reduced_out: Optional[Reuser] = None
    reduced_rollouts: Optional[RolloutSet] = None

    residuals: List[float] = field(default_factory=list)


class NaturalPG:
    """
    Natural policy gradients for sequence policies.

    Computes the vanilla policy gradient, then preconditions it with the
    inverse Fisher matrix of the action distribution via Conjugate
    Gradients on Fisher-vector products. The caller applies the step size.

    Args:
        policy: block with `start_state(batch_size)` and
            `forward(state, inputs) -> (state, outputs)`
        action_space: distribution family of the outputs; needs
            `log_prob` and `kl`
        config: NaturalPGConfig (iterations, damping, apply_policy,
            reduce, regularizer)
        params: parameters to differentiate (default: all trainable ones)
        action_judger: advantage estimator (default: TotalJudger)
    """

    def __init__(
        self,
        policy: nn.Module,
        action_space: ActionSpace,
        config: Optional[NaturalPGConfig] = None,
        params: Optional[Dict[str, torch.Tensor]] = None,
        action_judger: Optional[ActionJudger] = None
    ):
        self.policy = policy
        self.action_space = action_space
        self.config = config or NaturalPGConfig()
        if params is None:
            params = {n: p for n, p in policy.named_parameters() if p.requires_grad}
        self.params = params
        self.action_judger = action_judger
        self.fisher = FisherVectorProduct(
            policy,
            action_space,
            damping=self.config.damping,
            apply_policy=self.apply,
        )

    def run(self, rollouts: RolloutSet) -> Gradient:
        """Compute the natural gradient for the rollouts."""
        return self.run_with_stats(rollouts).grad

    def run_with_stats(self, rollouts: RolloutSet) -> NaturalPGResult:
        res = NaturalPGResult(grad={}, reduced_rollouts=rollouts)

        def policy_fn(inputs: Rereader) -> Rereader:
            res.policy_out = make_reuser(self.apply(inputs, self.policy))
            res.reduced_out = res.policy_out
            return res.policy_out

        pg = PolicyGradient(
            policy_fn,
            self.params,
            self.action_space,
            action_judger=self.action_judger,
            regularizer=self.config.regularizer,
        )
        res.grad = pg.run(rollouts)

        # All rollouts being equally good is common enough that an
        # all-zero gradient deserves a fast path.
        if len(res.grad) == 0 or all_zeros(res.grad):
            res.zero_grad = True
            return res

        if self.config.reduce is not None:
            res.reduced_rollouts = self.config.reduce(rollouts)
            inputs = TapeRereader(res.reduced_rollouts.inputs)
            res.reduced_out = make_reuser(self.apply(inputs, self.policy))

        res.residuals = self.conjugate_gradients(
            res.reduced_rollouts, res.reduced_out, res.grad
        )
        return res

    def conjugate_gradients(
        self,
        rollouts: RolloutSet,
        policy_outs: Reuser,
        grad: Gradient
    ) -> List[float]:
        """Replace `grad` in place with F^-1 grad; returns the residual history."""
        def apply_fisher(direction: Gradient) -> Gradient:
            policy_outs.reuse()
            return self.apply_fisher(rollouts, direction, policy_outs)

        x, residuals = conjugate_gradients(
            apply_fisher, grad, self.config.iterations, return_intermediate=True
        )
        set_grad(grad, x)
        return residuals

    def apply_fisher(
        self,
        rollouts: RolloutSet,
        direction: Gradient,
        policy_outs: Rereader
    ) -> Gradient:
        return self.fisher(rollouts, direction, policy_outs)

    def apply(self, inputs: Rereader, block) -> Rereader:
        if self.config.apply_policy is None:
            return bptt(inputs, block)
        return self.config.apply_policy(inputs, block)
