import torch
import torch.nn as nn
from typing import Tuple


class RNNPolicy(nn.Module):
    """
    Elman recurrent policy:
    - State: hidden_dim
    - Step: h' = tanh(W_in x + W_h h), out = W_out h'
    - Output: distribution parameters (output_dim)
    """

    def __init__(self, input_dim: int, hidden_dim: int = 32, output_dim: int = 2):
        super().__init__()
        self.hidden_dim = hidden_dim
        self.input_layer = nn.Linear(input_dim, hidden_dim)
        self.hidden_layer = nn.Linear(hidden_dim, hidden_dim, bias=False)
        self.head = nn.Linear(hidden_dim, output_dim)

    def start_state(self, batch_size: int) -> torch.Tensor:
        w = self.head.weight
        return torch.zeros(batch_size, self.hidden_dim, dtype=w.dtype, device=w.device)

    def forward(self, state: torch.Tensor, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        h = torch.tanh(self.input_layer(x) + self.hidden_layer(state))
        return h, self.head(h)


class MLPPolicy(nn.Module):
    """Stateless policy applying the same MLP at every timestep."""

    def __init__(self, input_dim: int, hidden_dim: int = 32, output_dim: int = 2):
        super().__init__()
        self.fc1 = nn.Linear(input_dim, hidden_dim)
        self.fc_out = nn.Linear(hidden_dim, output_dim)

    def start_state(self, batch_size: int) -> torch.Tensor:
        w = self.fc_out.weight
        return torch.zeros(batch_size, 0, dtype=w.dtype, device=w.device)

    def forward(self, state: torch.Tensor, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return state, self.fc_out(torch.tanh(self.fc1(x)))
