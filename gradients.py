import torch
from typing import Dict, Optional

# Parameter name -> tensor shaped like the parameter.
Gradient = Dict[str, torch.Tensor]


class EmptyGradientError(ValueError):
    """Raised when an operation needs at least one gradient entry."""


def copy_grad(g: Gradient) -> Gradient:
    """Deep copy every vector of a gradient."""
    return {name: vec.clone() for name, vec in g.items()}


def zero_grad(g: Gradient) -> Gradient:
    """Same keys as g, all-zero vectors of matching shape."""
    return {name: torch.zeros_like(vec) for name, vec in g.items()}


@torch.no_grad()
def scale_grad(g: Gradient, scale):
    for vec in g.values():
        vec.mul_(scale)


@torch.no_grad()
def add_to_grad(dst: Gradient, src: Gradient):
    """dst += src for every key of dst; src must cover dst's keys."""
    for name, vec in dst.items():
        vec.add_(src[name])


@torch.no_grad()
def sub_from_grad(dst: Gradient, src: Gradient):
    for name, vec in dst.items():
        vec.sub_(src[name])


@torch.no_grad()
def set_grad(dst: Gradient, src: Gradient):
    for name, vec in dst.items():
        vec.copy_(src[name])


@torch.no_grad()
def dot_grad(g1: Gradient, g2: Gradient) -> torch.Tensor:
    """
    Sum of per-parameter dot products over the keys both gradients share.

    A key missing from either side is an absent dimension and contributes
    nothing. Returns a 0-dim tensor on the gradients' device. Dotting two
    empty gradients has no meaningful value and raises EmptyGradientError.
    """
    if not g1 and not g2:
        raise EmptyGradientError("cannot dot empty gradients")
    total: Optional[torch.Tensor] = None
    for name, vec in g1.items():
        if name not in g2:
            continue
        term = torch.dot(vec.reshape(-1), g2[name].reshape(-1))
        total = term if total is None else total + term
    if total is None:
        ref = next(iter(g1.values())) if g1 else next(iter(g2.values()))
        return torch.zeros((), dtype=ref.dtype, device=ref.device)
    return total


@torch.no_grad()
def all_zeros(g: Gradient) -> bool:
    """True iff every vector's absolute sum is exactly zero."""
    for vec in g.values():
        if vec.abs().sum().item() != 0:
            return False
    return True


def grad_norm(g: Gradient) -> float:
    if not g:
        return 0.0
    return dot_grad(g, g).sqrt().item()

