from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, asdict, fields
import torch

DEFAULT_CONJ_GRAD_ITERS = 10


@dataclass
class NaturalPGConfig:
    """Settings of one natural policy gradient computation."""
    # Conjugate Gradients steps; no early exit on convergence.
    iterations: int = DEFAULT_CONJ_GRAD_ITERS

    # Multiple of the identity added to the Fisher matrix.
    damping: float = 0.0

    # Applies a policy to an input sequence. None means full BPTT.
    apply_policy: Optional[Callable] = None

    # Picks the rollouts used for the curvature estimate. None keeps all.
    reduce: Optional[Callable] = None

    # Adds a term to the policy-gradient objective (not to the KL).
    regularizer: Optional[Any] = None

    def __post_init__(self):
        if isinstance(self.iterations, bool) or not isinstance(self.iterations, int) or self.iterations < 1:
            raise ValueError(f"iterations must be a positive integer, got {self.iterations!r}")
        if self.damping < 0:
            raise ValueError(f"damping must be non-negative, got {self.damping}")

    def to_dict(self) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None and not isinstance(value, (int, float)):
                value = getattr(value, '__name__', type(value).__name__)
            out[f.name] = value
        return out


@dataclass
class TrainConfig:
    """Global experiment configuration."""
    seed: int
    batch_size: int
    step_size: float
    steps: int
    device: str

    # Logging
    log_dir: Optional[str]
    save_model: bool
    save_plots: bool
    save_raw_data: bool
    experiment_name: Optional[str] = "noname"

    # Policy / task
    policy: str = "rnn"
    hidden_dim: int = 32
    num_symbols: int = 3
    min_len: int = 2
    max_len: int = 5

    # Natural gradient specific
    cg_iters: int = DEFAULT_CONJ_GRAD_ITERS
    damping: float = 0.0
    reduce_frac: Optional[float] = None
    truncate: Optional[int] = None
    entropy_coeff: float = 0.0
    discount: Optional[float] = None

    def __post_init__(self):
        if self.device == "auto":
            if torch.cuda.is_available():
                self.device = "cuda"
            elif torch.backends.mps.is_available():
                self.device = "mps"
            else:
                self.device = "cpu"
        if self.policy not in ("rnn", "mlp"):
            raise ValueError(f"unknown policy {self.policy!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for serialization."""
        return {k: v for k, v in asdict(self).items() if not k.startswith('_')}
