from typing import Dict, Any, Union
from pathlib import Path
import pickle
import json
import torch
from torch import nn
import numpy as np
import random

from gradients import Gradient


def load_experiment(path: Union[str, Path]) -> Dict[str, Any]:
    """Load experiment data from a log directory."""
    path = Path(path)

    # Try pickle first (preserves all types)
    pickle_path = path / "experiment_data.pkl"
    if pickle_path.exists():
        with open(pickle_path, 'rb') as f:
            return pickle.load(f)

    # Fall back to JSON
    json_path = path / "experiment_data.json"
    if json_path.exists():
        with open(json_path, 'r') as f:
            return json.load(f)

    raise FileNotFoundError(f"No experiment data found in {path}")


def set_seed(seed: int):
    """Set random seeds for reproducibility."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)
    if hasattr(torch.mps, 'manual_seed'):
        torch.mps.manual_seed(seed)
    torch.backends.cudnn.deterministic = True
    torch.backends.cudnn.benchmark = False


def apply_update(model: nn.Module, grad: Gradient, step_size: float):
    """Ascend: param += step_size * grad for every parameter in grad."""
    params = dict(model.named_parameters())
    with torch.no_grad():
        for name, g in grad.items():
            params[name].add_(g, alpha=step_size)


def get_param_count(model: nn.Module) -> int:
    """Get total number of parameters in model."""
    return sum(p.numel() for p in model.parameters())
