from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
import json
import pickle
from typing import Any, Dict, List, Optional
import matplotlib.pyplot as plt
import numpy as np
import torch
from torch import nn

from config import TrainConfig

@dataclass
class StepLog:
    """Log entry for a single natural gradient update."""
    step: int
    mean_reward: float
    num_rollouts: int
    grad_norm: float
    natural_grad_norm: float
    zero_grad: bool
    num_reduced: Optional[int] = None
    cg_initial_residual: Optional[float] = None
    cg_final_residual: Optional[float] = None


class ExperimentLogger:
    """
    Logger for training runs, supporting full reproducibility and analysis.

    Exports:
    - Raw data (JSON, pickle) for plot reconstruction
    - Plots (PNG, PDF)
    - Model checkpoints (optional)
    - Full configuration and metadata
    """

    def __init__(
        self,
        log_dir: Optional[str] = None,
        experiment_name: Optional[str] = None,
        config: Optional[TrainConfig] = None
    ):
        self.config = config
        self.experiment_name = experiment_name or datetime.now().strftime("%Y%m%d_%H%M%S")

        if log_dir:
            self.log_dir = Path(log_dir) / self.experiment_name
        else:
            self.log_dir = None

        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            (self.log_dir / "plots").mkdir(exist_ok=True)
            (self.log_dir / "checkpoints").mkdir(exist_ok=True)

        self.step_logs: List[StepLog] = []
        self.residual_histories: List[List[float]] = []
        self.task_name: str = ""
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None

    def start_experiment(self, task_name: str):
        """Called at experiment start."""
        self.task_name = task_name
        self.start_time = datetime.now()
        self.step_logs = []
        self.residual_histories = []

    def log_step(
        self,
        step: int,
        mean_reward: float,
        num_rollouts: int,
        grad_norm: float,
        natural_grad_norm: float,
        zero_grad: bool,
        num_reduced: Optional[int] = None,
        residuals: Optional[List[float]] = None
    ):
        """Log one update."""
        residuals = residuals or []
        log = StepLog(
            step=step,
            mean_reward=mean_reward,
            num_rollouts=num_rollouts,
            grad_norm=grad_norm,
            natural_grad_norm=natural_grad_norm,
            zero_grad=zero_grad,
            num_reduced=num_reduced,
            cg_initial_residual=residuals[0] if residuals else None,
            cg_final_residual=residuals[-1] if residuals else None,
        )
        self.step_logs.append(log)
        self.residual_histories.append(list(residuals))

    def end_experiment(self):
        """Called at experiment end."""
        self.end_time = datetime.now()

    def save_model_checkpoint(self, model: nn.Module, name: str = "final"):
        """Save model checkpoint."""
        if self.log_dir:
            path = self.log_dir / "checkpoints" / f"{name}.pt"
            torch.save(model.state_dict(), path)

    def get_metadata(self) -> Dict[str, Any]:
        """Get experiment metadata."""
        metadata = {
            'experiment_name': self.experiment_name,
            'task_name': self.task_name,
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': (self.end_time - self.start_time).total_seconds() if self.start_time and self.end_time else None,
        }
        if self.config:
            metadata['config'] = self.config.to_dict()
        return metadata

    def get_summary(self) -> Dict[str, Any]:
        rewards = [log.mean_reward for log in self.step_logs]
        if not rewards:
            return {}
        tail = rewards[-max(1, len(rewards) // 10):]
        return {
            'final_reward_mean': float(np.mean(tail)),
            'final_reward_std': float(np.std(tail)),
            'best_reward': float(np.max(rewards)),
            'zero_grad_steps': sum(1 for log in self.step_logs if log.zero_grad),
        }

    def get_raw_data(self) -> Dict[str, Any]:
        """Get all raw data for export."""
        return {
            'metadata': self.get_metadata(),
            'summary': self.get_summary(),
            'step_logs': [asdict(log) for log in self.step_logs],
            'residual_histories': self.residual_histories,
        }

    def save(self):
        """Save all experiment data to log directory."""
        if not self.log_dir:
            return

        raw_data = self.get_raw_data()

        # Save as JSON (human-readable)
        json_path = self.log_dir / "experiment_data.json"
        with open(json_path, 'w') as f:
            json.dump(raw_data, f, indent=2, default=str)

        # Save as pickle (preserves all Python types)
        pickle_path = self.log_dir / "experiment_data.pkl"
        with open(pickle_path, 'wb') as f:
            pickle.dump(raw_data, f)

        self._save_csv()

        print(f"Experiment data saved to: {self.log_dir}")

    def _save_csv(self):
        """Save step logs in CSV format for easy analysis."""
        if not self.log_dir or not self.step_logs:
            return

        csv_path = self.log_dir / "step_logs.csv"
        headers = list(asdict(self.step_logs[0]).keys())
        with open(csv_path, 'w') as f:
            f.write(','.join(headers) + '\n')
            for log in self.step_logs:
                values = ['' if v is None else str(v) for v in asdict(log).values()]
                f.write(','.join(values) + '\n')

    def save_plot(
        self,
        fig: plt.Figure,
        name: str,
        formats: List[str] = ['png', 'pdf']
    ):
        """Save a matplotlib figure to the plots directory."""
        if not self.log_dir:
            return

        for fmt in formats:
            path = self.log_dir / "plots" / f"{name}.{fmt}"
            fig.savefig(path, dpi=150, bbox_inches='tight')

    def create_reward_plot(self, save: bool = True) -> plt.Figure:
        """Create mean reward progression plot."""
        fig, ax = plt.subplots(figsize=(8, 5))

        steps = [log.step for log in self.step_logs]
        rewards = [log.mean_reward for log in self.step_logs]
        ax.plot(steps, rewards, marker='.')
        ax.set_xlabel("Update")
        ax.set_ylabel("Mean episode reward")
        ax.set_title(f"{self.task_name}: natural policy gradient")
        ax.grid(True)
        fig.tight_layout()

        if save and self.log_dir:
            self.save_plot(fig, "reward")

        return fig

    def create_grad_norm_plot(self, save: bool = True) -> plt.Figure:
        """Plot vanilla vs natural gradient norms per update."""
        fig, ax = plt.subplots(figsize=(8, 5))

        steps = [log.step for log in self.step_logs]
        ax.semilogy(steps, [max(log.grad_norm, 1e-12) for log in self.step_logs], 'o-', label='||g||')
        ax.semilogy(steps, [max(log.natural_grad_norm, 1e-12) for log in self.step_logs], 's-', label='||F⁻¹g||')
        ax.set_xlabel("Update")
        ax.set_ylabel("Norm")
        ax.set_title("Gradient norms")
        ax.legend()
        ax.grid(True)
        fig.tight_layout()

        if save and self.log_dir:
            self.save_plot(fig, "grad_norms")

        return fig

    def create_residual_plot(self, save: bool = True) -> Optional[plt.Figure]:
        """Plot Conjugate Gradients residual r.r per iteration for each update."""
        histories = [h for h in self.residual_histories if h]
        if not histories:
            return None

        fig, ax = plt.subplots(figsize=(8, 5))
        cmap = plt.get_cmap('viridis')
        for i, history in enumerate(histories):
            color = cmap(i / max(1, len(histories) - 1))
            ax.semilogy(range(len(history)), np.maximum(history, 1e-30), color=color, alpha=0.6)
        ax.set_xlabel("CG iteration")
        ax.set_ylabel("r·r")
        ax.set_title("Conjugate Gradients residuals (dark: early updates)")
        ax.grid(True)
        fig.tight_layout()

        if save and self.log_dir:
            self.save_plot(fig, "cg_residuals")

        return fig

    def create_all_plots(self):
        """Create and save all standard plots."""
        self.create_reward_plot(save=True)
        self.create_grad_norm_plot(save=True)
        self.create_residual_plot(save=True)
        plt.close('all')
