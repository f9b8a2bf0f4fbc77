import copy
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import torch
from torch import nn
from torch.autograd import forward_ad as fwAD
from torch.func import functional_call, grad as func_grad, jvp

from action_spaces import ActionSpace
from gradients import Gradient
from rollouts import RolloutSet
from sequence import (
    Batch,
    GradAccumulator,
    Rereader,
    Tape,
    bptt,
    handoff,
)


class SuperfluousGradientError(RuntimeError):
    """A backward pass produced a gradient for an untracked dual parameter."""


class ParameterCorrespondenceError(RuntimeError):
    """A policy clone does not line up with the original's parameters."""


@dataclass(frozen=True)
class DualKey:
    """Handle of a cloned parameter: position in the stable order plus name."""
    index: int
    name: str


@dataclass
class DualTensor:
    """A value with one forward-mode tangent slot."""
    value: torch.Tensor
    tangent: torch.Tensor


@dataclass
class DualBatch:
    present: torch.Tensor
    packed: DualTensor


class DualPolicy:
    """
    Structural clone of a policy whose parameters carry tangents.

    The clone shares no storage with the original. `lift()` must be called
    inside an active `forward_ad.dual_level()`; afterwards calling the block
    evaluates the clone with dual parameters, so every output carries the
    directional derivative along the tangents.
    """

    def __init__(self, module: nn.Module, tangents: Dict[DualKey, torch.Tensor]):
        self.module = module
        self.tangents = tangents
        self._duals: Optional[Dict[str, torch.Tensor]] = None

    def lift(self):
        params = dict(self.module.named_parameters())
        self._duals = {
            key.name: fwAD.make_dual(params[key.name].detach(), tangent)
            for key, tangent in self.tangents.items()
        }

    def start_state(self, batch_size: int) -> torch.Tensor:
        return self.module.start_state(batch_size)

    def named_parameters(self) -> Iterator[Tuple[str, torch.Tensor]]:
        # Dual parameters are not leaves of the reverse-mode graph.
        return iter((self._duals or {}).items())

    def __call__(self, state: torch.Tensor, inputs: torch.Tensor):
        if self._duals is None:
            raise RuntimeError("DualPolicy used before lift()")
        return functional_call(self.module, self._duals, (state, inputs))


def make_fwd(policy: nn.Module, direction: Gradient) -> Tuple[DualPolicy, Dict[DualKey, str]]:
    """
    Clone `policy` and seed each cloned parameter's tangent with the
    matching entry of `direction` (zero where it has none).

    Returns the dual policy and the dual -> original parameter mapping.
    """
    clone = copy.deepcopy(policy)
    old_params = list(policy.named_parameters())
    new_params = list(clone.named_parameters())
    if [n for n, _ in old_params] != [n for n, _ in new_params]:
        raise ParameterCorrespondenceError(
            "cloned policy parameters do not match the original"
        )

    new_to_old: Dict[DualKey, str] = {}
    tangents: Dict[DualKey, torch.Tensor] = {}
    for i, ((new_name, new_param), (old_name, _)) in enumerate(zip(new_params, old_params)):
        key = DualKey(i, new_name)
        new_to_old[key] = old_name
        if old_name in direction:
            tangents[key] = direction[old_name].detach().clone()
        else:
            tangents[key] = torch.zeros_like(new_param)
    return DualPolicy(clone, tangents), new_to_old


class DualTapeRereader(Rereader):
    """Reads a recorded input tape into the dual context with zero tangents."""

    def __init__(self, tape: Tape):
        self.tape = tape

    @staticmethod
    def _lift(batches: Iterable[Batch]) -> Iterator[Batch]:
        for batch in batches:
            packed = fwAD.make_dual(batch.packed, torch.zeros_like(batch.packed))
            yield Batch(batch.present, packed)

    def forward(self) -> Iterator[Batch]:
        return self._lift(self.tape.read())

    def reread(self, start: int = 0, end: Optional[int] = None) -> Iterator[Batch]:
        return self._lift(self.tape.read(start, end))

    def propagate(self, upstream, grad):
        for _ in upstream:
            pass


def unpack_batch(batch: Batch) -> DualBatch:
    """Split a dual batch into plain (value, tangent) tensors."""
    primal, tangent = fwAD.unpack_dual(batch.packed)
    if tangent is None:
        tangent = torch.zeros_like(primal)
    return DualBatch(batch.present, DualTensor(primal.detach().clone(), tangent.detach().clone()))


class SurrogateGrad:
    """
    Gradient map handed to the regular backward pass on behalf of the
    dual parameters: each dual entry is exposed under its original
    parameter's name, aliasing the entry's tangent slot.
    """

    def __init__(self, orig: GradAccumulator, fwd_to_regular: Dict[DualKey, str]):
        self.orig = orig
        self.fwd_to_regular = fwd_to_regular

    def use(self, fn: Callable[[Gradient], None]):
        def translated(g: Dict[DualKey, DualTensor]):
            surrogate = {}
            for key, vec in g.items():
                if key not in self.fwd_to_regular:
                    raise SuperfluousGradientError(f"superfluous gradient variable: {key}")
                surrogate[self.fwd_to_regular[key]] = vec.tangent
            fn(surrogate)

        self.orig.use(translated)


class UnfwdRereader(Rereader):
    """
    Dual-valued policy outputs whose backward pass skips the dual graph.

    For a Fisher-vector product the upstream values are zero (the KL is at
    its minimum) and only their tangents are non-zero. Back-propagating
    the dual upstream through the dual network therefore yields a zero
    value and a tangent equal to the regular network's vector-Jacobian
    product with the upstream tangents, which is what `propagate` computes
    through `regular` instead.
    """

    def __init__(self, fwd: Rereader, regular: Rereader, fwd_to_regular: Dict[DualKey, str]):
        self.fwd = fwd
        self.regular = regular
        self.fwd_to_regular = fwd_to_regular
        self._live: Optional[Iterator[Batch]] = None

    def forward(self) -> Iterator[Batch]:
        self._live = self.fwd.forward()
        return self._live

    def reread(self, start: int = 0, end: Optional[int] = None) -> Iterator[Batch]:
        return self.fwd.reread(start, end)

    def vars(self):
        return self.fwd.vars()

    def propagate(self, upstream: Iterable[DualBatch], grad: GradAccumulator):
        if self._live is None:
            self._live = self.fwd.forward()
        for _ in self._live:
            pass
        for _ in self.regular.forward():
            pass

        def tangents():
            for batch in upstream:
                yield Batch(batch.present, batch.packed.tangent)

        self.regular.propagate(
            handoff(tangents()),
            SurrogateGrad(grad, self.fwd_to_regular),
        )


class FisherVectorProduct:
    """
    Computes (F + damping * I) v for the Fisher matrix F of the policy's
    action distribution, without forming F.

    A forward-mode pass through a dual clone of the policy gives the
    output directions J v. The per-timestep KL between the (constant)
    current outputs and the dual outputs is differentiated forward-over-
    reverse, giving the upstream tangents H J v, and a single regular
    backward pass yields J^T H J v.
    """

    def __init__(
        self,
        policy: nn.Module,
        action_space: ActionSpace,
        damping: float = 0.0,
        apply_policy: Optional[Callable[[Rereader, object], Rereader]] = None
    ):
        self.policy = policy
        self.action_space = action_space
        self.damping = damping
        self.apply_policy = apply_policy or bptt

    def __call__(
        self,
        rollouts: RolloutSet,
        direction: Gradient,
        policy_outs: Rereader
    ) -> Gradient:
        fwd_block, param_map = make_fwd(self.policy, direction)

        with fwAD.dual_level():
            fwd_block.lift()
            out_seq = UnfwdRereader(
                self.apply_policy(DualTapeRereader(rollouts.inputs), fwd_block),
                policy_outs,
                param_map,
            )
            outs = [unpack_batch(batch) for batch in out_seq.forward()]

        upstream = self.kl_upstream(outs)

        new_grad = {
            key: DualTensor(torch.zeros_like(direction[old]), torch.zeros_like(direction[old]))
            for key, old in param_map.items() if old in direction
        }
        out_seq.propagate(upstream, GradAccumulator(new_grad))

        result = {}
        for key, vec in new_grad.items():
            old = param_map[key]
            result[old] = vec.tangent
            if self.damping > 0:
                result[old] = result[old] + self.damping * direction[old]
        return result

    def kl_upstream(self, outs: List[DualBatch]) -> List[DualBatch]:
        """
        Dual gradient of mean_t KL(const(out_t) || dual(out_t)) with respect
        to each dual output batch.
        """
        count = sum(batch.packed.value.shape[0] for batch in outs)
        if count == 0:
            raise ValueError("rollouts contain no timesteps")

        upstream = []
        for batch in outs:
            reference = batch.packed.value

            def mean_kl(o, reference=reference):
                return self.action_space.kl(reference, o).sum() / count

            value, tangent = jvp(
                func_grad(mean_kl),
                (batch.packed.value,),
                (batch.packed.tangent,),
            )
            upstream.append(DualBatch(batch.present, DualTensor(value, tangent)))
        return upstream
