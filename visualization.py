from typing import Dict, List, Optional, Union
from pathlib import Path
import matplotlib.pyplot as plt
import numpy as np

from utils import load_experiment

def plot_results(
    results: Dict[str, List[float]],
    title: str = "Natural Policy Gradient Training"
):
    """Plot mean reward per update for each run."""
    plt.figure(figsize=(8, 5))

    for label, rewards in sorted(results.items()):
        plt.plot(range(1, len(rewards) + 1), rewards, marker='.', label=label)

    plt.xlabel("Update")
    plt.ylabel("Mean episode reward")
    plt.title(title)
    plt.legend()
    plt.grid(True)
    plt.tight_layout()
    plt.show()


def compare_experiments(
    experiment_paths: List[Union[str, Path]],
    save_path: Optional[Union[str, Path]] = None,
    smoothing: int = 1
) -> plt.Figure:
    """
    Compare multiple saved runs in a single plot.

    Args:
        experiment_paths: List of paths to experiment log directories
        save_path: Optional path to save the comparison plot
        smoothing: Moving-average window over updates

    Returns:
        Matplotlib figure
    """
    fig, ax = plt.subplots(figsize=(10, 6))

    for exp_path in experiment_paths:
        data = load_experiment(exp_path)
        rewards = np.array([log['mean_reward'] for log in data['step_logs']])
        if smoothing > 1 and len(rewards) >= smoothing:
            kernel = np.ones(smoothing) / smoothing
            rewards = np.convolve(rewards, kernel, mode='valid')

        config = data['metadata'].get('config') or {}
        label = data['metadata']['experiment_name']
        if config:
            label = f"{label} (cg={config.get('cg_iters')}, λ={config.get('damping')})"
        ax.plot(range(1, len(rewards) + 1), rewards, label=label)

    ax.set_xlabel("Update")
    ax.set_ylabel("Mean episode reward")
    ax.set_title("Comparison of natural gradient settings")
    ax.legend()
    ax.grid(True)
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')

    return fig
