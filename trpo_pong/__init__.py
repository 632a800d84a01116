"""
Recurrent TRPO (Trust Region Policy Optimization) for Atari Pong.

A recurrent convolutional policy learns to play Pong from pixels. Episodes
are collected from a pool of environments in parallel, packed into large
batches and used for natural policy gradient steps constrained to a KL
trust region.

Key components:
- environment: Frame preprocessing and the parallel environment pool
- tape: Compressed observation storage
- model: Recurrent policy network
- rollout: Trajectory collection and batch packing
- trpo: Trust-region update computation
- trainer: Training loop, checkpointing and shutdown handling
- config: Configuration settings
"""

from trpo_pong.config import TRPOConfig
from trpo_pong.environment import (
    EnvironmentPool,
    EnvironmentStartupError,
    FramePreprocessor,
    create_pong_env,
)
from trpo_pong.tape import CompressedTape
from trpo_pong.model import PolicyNetwork, create_policy_network, setup_vision_layers
from trpo_pong.rollout import Roller, RolloutSet, Trajectory, pack_rollout_sets
from trpo_pong.trpo import ParameterUpdate, TRPOOptimizer, compute_action_values
from trpo_pong.trainer import Checkpointer, TRPOTrainer, TrainingPhase

__version__ = "0.1.0"
__all__ = [
    "TRPOConfig",
    "EnvironmentPool",
    "EnvironmentStartupError",
    "FramePreprocessor",
    "create_pong_env",
    "CompressedTape",
    "PolicyNetwork",
    "create_policy_network",
    "setup_vision_layers",
    "Roller",
    "RolloutSet",
    "Trajectory",
    "pack_rollout_sets",
    "ParameterUpdate",
    "TRPOOptimizer",
    "compute_action_values",
    "Checkpointer",
    "TRPOTrainer",
    "TrainingPhase",
]
