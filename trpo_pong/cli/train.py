#!/usr/bin/env python3
"""
TRPO Training CLI.

Train a recurrent TRPO agent on Atari Pong. Training runs until Ctrl+C (or
SIGTERM), after which the policy is saved under the checkpoint key.

Usage:
    trpo-train                          # Train with defaults
    trpo-train --num-envs 16            # More parallel environments
    trpo-train --max-iterations 10      # Stop after 10 updates
    trpo-train --help                   # Show all options
"""

import argparse
import sys
import os

# Suppress TensorFlow warnings
os.environ['TF_CPP_MIN_LOG_LEVEL'] = '2'


def parse_args(args=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Train recurrent TRPO on Atari Pong",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Environment settings
    parser.add_argument(
        '--env-name', type=str, default='ALE/Pong-v5',
        help='Gymnasium id of the environment'
    )
    parser.add_argument(
        '--num-envs', type=int, default=8,
        help='Number of environments stepped in parallel'
    )
    parser.add_argument(
        '--max-episode-steps', type=int, default=None,
        help='Cap on trajectory length (default: episodes run until done)'
    )
    parser.add_argument(
        '--render-mode', type=str, default=None,
        help='Gymnasium render mode'
    )

    # Network settings
    parser.add_argument(
        '--hidden-size', type=int, default=128,
        help='Width of the dense and recurrent layers'
    )
    parser.add_argument(
        '--input-scale', type=float, default=0.01,
        help='Scale applied to raw pixel values'
    )
    parser.add_argument(
        '--boost-biases', action='store_true',
        help='Add a unit bias to the vision layers of a new network'
    )

    # TRPO settings
    parser.add_argument(
        '--batch-steps', type=int, default=100000,
        help='Environment steps per update'
    )
    parser.add_argument(
        '--gamma', type=float, default=0.99,
        help='Discount factor'
    )
    parser.add_argument(
        '--max-kl', type=float, default=0.01,
        help='Trust region radius'
    )
    parser.add_argument(
        '--cg-iters', type=int, default=10,
        help='Conjugate gradient iterations'
    )
    parser.add_argument(
        '--cg-damping', type=float, default=0.1,
        help='Damping for Fisher-vector products'
    )
    parser.add_argument(
        '--fisher-fraction', type=float, default=0.1,
        help='Fraction of trajectories used for curvature'
    )
    parser.add_argument(
        '--line-search-steps', type=int, default=10,
        help='Line search attempts'
    )
    parser.add_argument(
        '--backtrack-ratio', type=float, default=0.5,
        help='Step shrink factor per line search attempt'
    )
    parser.add_argument(
        '--chunk-size', type=int, default=4,
        help='Trajectories per forward/backward chunk'
    )
    parser.add_argument(
        '--compression-level', type=int, default=6,
        help='zlib level for observation tapes'
    )
    parser.add_argument(
        '--max-iterations', type=int, default=None,
        help='Stop after this many updates (default: run until interrupted)'
    )

    # Logging and checkpointing
    parser.add_argument(
        '--no-param-norms', dest='log_param_norms', action='store_false',
        help='Do not log per-parameter update magnitudes'
    )
    parser.add_argument(
        '--log-level', type=str, default='INFO',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Console log level'
    )
    parser.add_argument(
        '--checkpoint-dir', type=str, default='.',
        help='Directory holding the policy checkpoint'
    )
    parser.add_argument(
        '--checkpoint-key', type=str, default='trained_policy',
        help='Storage key of the policy checkpoint'
    )
    parser.add_argument(
        '--log-dir', type=str, default='logs',
        help='Directory for metrics and the saved config'
    )

    # Misc
    parser.add_argument(
        '--seed', type=int, default=None,
        help='Random seed'
    )

    return parser.parse_args(args)


def main(args=None):
    """Main entry point for training."""
    args = parse_args(args)

    # Import here to avoid slow imports when just showing help
    from trpo_pong.config import TRPOConfig
    from trpo_pong.environment import EnvironmentStartupError
    from trpo_pong.trainer import TRPOTrainer
    from trpo_pong.utils import configure_logging, save_config

    config = TRPOConfig(
        env_name=args.env_name,
        num_envs=args.num_envs,
        max_episode_steps=args.max_episode_steps,
        render_mode=args.render_mode,
        hidden_size=args.hidden_size,
        input_scale=args.input_scale,
        boost_biases=args.boost_biases,
        batch_steps=args.batch_steps,
        gamma=args.gamma,
        max_kl=args.max_kl,
        cg_iters=args.cg_iters,
        cg_damping=args.cg_damping,
        fisher_fraction=args.fisher_fraction,
        line_search_steps=args.line_search_steps,
        backtrack_ratio=args.backtrack_ratio,
        chunk_size=args.chunk_size,
        compression_level=args.compression_level,
        max_iterations=args.max_iterations,
        log_param_norms=args.log_param_norms,
        log_level=args.log_level,
        checkpoint_dir=args.checkpoint_dir,
        checkpoint_key=args.checkpoint_key,
        log_dir=args.log_dir,
        seed=args.seed,
    )

    # Validate configuration
    try:
        config.validate()
    except AssertionError as e:
        print(f"Configuration error: {e}")
        sys.exit(1)

    configure_logging(config.log_level)

    # Print configuration
    print("=" * 60)
    print("TRPO Training Configuration")
    print("=" * 60)
    print(f"Environment: {config.env_name}")
    print(f"Environments: {config.num_envs}")
    print(f"Batch steps: {config.batch_steps}")
    print(f"Gamma: {config.gamma}")
    print(f"Max KL: {config.max_kl}")
    print(f"CG iterations: {config.cg_iters}")
    print(f"Fisher fraction: {config.fisher_fraction}")
    print(f"Checkpoint: {os.path.join(config.checkpoint_dir, config.checkpoint_key)}")
    print(f"Seed: {config.seed}")
    print("=" * 60)
    print()

    # Save configuration
    os.makedirs(config.log_dir, exist_ok=True)
    save_config(config, os.path.join(config.log_dir, 'config.json'))

    try:
        trainer = TRPOTrainer(config)
    except EnvironmentStartupError as e:
        print(f"Could not start environments: {e}")
        return 1

    try:
        trainer.run()
        print("\nTraining stopped, policy saved")
        return 0
    except Exception as e:
        print(f"\nTraining failed with error: {e}")
        raise
    finally:
        trainer.close()


if __name__ == '__main__':
    sys.exit(main())
