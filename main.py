from datetime import datetime
from typing import Dict, List, Optional
import argparse
import math
import random

from tqdm import tqdm

from action_spaces import EntropyRegularizer, Softmax
from config import DEFAULT_CONJ_GRAD_ITERS, NaturalPGConfig, TrainConfig
from envs import MemoryEnv
from gradients import grad_norm
from judgers import QJudger, TotalJudger
from logger import ExperimentLogger
from models import MLPPolicy, RNNPolicy
from natural_pg import NaturalPG
from rollouts import FracReducer, collect_rollouts, make_envs
from sequence import TruncatedBPTT
from utils import apply_update, get_param_count, set_seed
from visualization import plot_results


def build_natural_pg(policy, action_space, config: TrainConfig) -> NaturalPG:
    """Wire a NaturalPG instance from the training configuration."""
    reduce = None
    if config.reduce_frac is not None:
        reduce = FracReducer(config.reduce_frac, random.Random(config.seed))

    apply_policy = TruncatedBPTT(config.truncate) if config.truncate else None

    regularizer = None
    if config.entropy_coeff > 0:
        regularizer = EntropyRegularizer(action_space, config.entropy_coeff)

    if config.discount is not None:
        judger = QJudger(config.discount, normalize=True)
    else:
        judger = TotalJudger(normalize=True)

    npg_config = NaturalPGConfig(
        iterations=config.cg_iters,
        damping=config.damping,
        apply_policy=apply_policy,
        reduce=reduce,
        regularizer=regularizer,
    )
    return NaturalPG(policy, action_space, npg_config, action_judger=judger)


def run_training(
    config: TrainConfig,
    logger: Optional[ExperimentLogger] = None
) -> Dict[str, List[float]]:
    """
    Train a policy on MemoryEnv with natural policy gradients.

    Returns:
        Dictionary with per-update 'reward', 'grad_norm' and
        'natural_grad_norm' series
    """
    set_seed(config.seed)

    action_space = Softmax()
    policy_cls = MLPPolicy if config.policy == "mlp" else RNNPolicy
    policy = policy_cls(
        input_dim=config.num_symbols,
        hidden_dim=config.hidden_dim,
        output_dim=action_space.param_size(config.num_symbols),
    ).to(config.device)
    print(f"{policy_cls.__name__} with {get_param_count(policy)} parameters")
    npg = build_natural_pg(policy, action_space, config)

    envs = make_envs(
        lambda seed: MemoryEnv(config.num_symbols, config.min_len, config.max_len, seed=seed),
        config.batch_size,
        seed=config.seed,
    )

    if logger is None and config.log_dir:
        logger = ExperimentLogger(config.log_dir, config.experiment_name, config)
    if logger:
        logger.start_experiment("MemoryEnv")

    history = {'reward': [], 'grad_norm': [], 'natural_grad_norm': []}
    iterator = tqdm(range(config.steps), desc="Updates")
    for step in iterator:
        rollouts = collect_rollouts(policy, action_space, envs)
        reward = rollouts.mean_reward()

        result = npg.run_with_stats(rollouts)
        natural_norm = grad_norm(result.grad)
        # residuals[0] is g.g of the vanilla gradient before it was replaced.
        base_norm = math.sqrt(result.residuals[0]) if result.residuals else natural_norm

        apply_update(policy, result.grad, config.step_size)

        history['reward'].append(reward)
        history['grad_norm'].append(base_norm)
        history['natural_grad_norm'].append(natural_norm)
        iterator.set_postfix(reward=f"{reward:.3f}", g=f"{base_norm:.2e}")

        if logger:
            logger.log_step(
                step=step + 1,
                mean_reward=reward,
                num_rollouts=rollouts.num_rollouts,
                grad_norm=base_norm,
                natural_grad_norm=natural_norm,
                zero_grad=result.zero_grad,
                num_reduced=result.reduced_rollouts.num_rollouts,
                residuals=result.residuals,
            )

    print(f"\nFinal mean reward: {history['reward'][-1]:.3f}" if history['reward'] else "\nNo updates run")

    if logger:
        logger.end_experiment()
        if config.save_model:
            logger.save_model_checkpoint(policy, "final")
        if config.save_plots:
            logger.create_all_plots()
        if config.save_raw_data:
            logger.save()

    return history


def make_exp_name(args):
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    parts = ["memory", args.policy, f"{args.num_symbols}sym", f"cg{args.cg_iters}", f"damp{args.damping}"]
    if args.reduce_frac is not None:
        parts.append(f"reduce{args.reduce_frac}")
    if args.truncate:
        parts.append(f"trunc{args.truncate}")
    parts.append(f"{args.steps}steps")
    parts.append(timestamp)

    return "_".join(parts)


def main():
    parser = argparse.ArgumentParser(description="Natural Policy Gradient CLI")

    # ------------------------------
    # Core parameters
    # ------------------------------
    parser.add_argument("--steps", type=int, default=50)
    parser.add_argument("--batch_size", type=int, default=64,
                        help="Rollouts per update")
    parser.add_argument("--step_size", type=float, default=0.05)
    parser.add_argument("--seed", type=int, default=1234)
    parser.add_argument("--device", type=str, default="auto")

    # --------------------------------
    # Task / policy
    # --------------------------------
    parser.add_argument("--num_symbols", type=int, default=3)
    parser.add_argument("--min_len", type=int, default=2)
    parser.add_argument("--max_len", type=int, default=5)
    parser.add_argument("--hidden_dim", type=int, default=32)
    parser.add_argument("--policy", type=str, default="rnn", choices=["rnn", "mlp"])

    # --------------------------------
    # Natural gradient
    # --------------------------------
    parser.add_argument("--cg_iters", type=int, default=DEFAULT_CONJ_GRAD_ITERS,
                        help="Conjugate Gradients iterations")
    parser.add_argument("--damping", type=float, default=0.0,
                        help="Multiple of the identity added to the Fisher matrix")
    parser.add_argument("--reduce_frac", type=float, default=None,
                        help="Fraction of rollouts used for the Fisher estimate")
    parser.add_argument("--truncate", type=int, default=None,
                        help="Truncate BPTT every N timesteps")
    parser.add_argument("--entropy_coeff", type=float, default=0.0)
    parser.add_argument("--discount", type=float, default=None,
                        help="Judge actions by discounted reward-to-go instead of total reward")

    # --------------------------------
    # Logging / saving
    # --------------------------------
    parser.add_argument("--log_dir", type=str, default="./experiments")
    parser.add_argument("--save_model", action="store_true", default=True)
    parser.add_argument("--save_plots", action="store_true", default=True)
    parser.add_argument("--save_raw_data", action="store_true", default=True)
    parser.add_argument("--show_plot", action="store_true",
                        help="Show the reward curve when training ends")

    args = parser.parse_args()

    exp_name = make_exp_name(args)

    config = TrainConfig(
        seed=args.seed,
        batch_size=args.batch_size,
        step_size=args.step_size,
        steps=args.steps,
        device=args.device,

        # Logging
        log_dir=args.log_dir,
        experiment_name=exp_name,
        save_model=args.save_model,
        save_plots=args.save_plots,
        save_raw_data=args.save_raw_data,

        hidden_dim=args.hidden_dim,
        policy=args.policy,
        num_symbols=args.num_symbols,
        min_len=args.min_len,
        max_len=args.max_len,

        cg_iters=args.cg_iters,
        damping=args.damping,
        reduce_frac=args.reduce_frac,
        truncate=args.truncate,
        entropy_coeff=args.entropy_coeff,
        discount=args.discount,
    )

    print(f"\n### MemoryEnv ({config.num_symbols} symbols), natural PG, CG={config.cg_iters} ###")
    history = run_training(config)

    if args.show_plot:
        plot_results({exp_name: history['reward']})


if __name__ == "__main__":
    main()
