"""
Configuration settings for TRPO training on Atari Pong.
"""

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass
class TRPOConfig:
    """
    Configuration for recurrent TRPO (Trust Region Policy Optimization) training.

    Attributes:
        env_name: Gymnasium id of the environment every pool slot connects to.
        num_envs: Number of environment instances stepped in parallel.
        max_episode_steps: Optional cap on trajectory length. None means episodes
                           only end when the environment reports done.
        render_mode: Gymnasium render mode for the pooled environments.

        frame_height: Height of a preprocessed frame.
        frame_width: Width of a preprocessed frame.
        frame_depth: Channels of a preprocessed frame (frame + delta).
        hidden_size: Width of the fully-connected and recurrent layers.
        input_scale: Scale of the affine layer applied to raw pixel values.
        boost_biases: Add a unit bias to the vision layers after construction.

        batch_steps: Environment steps gathered before each update.
        gamma: Discount factor for action values.
        max_kl: Trust region radius (mean KL divergence per step).
        cg_iters: Conjugate gradient iterations for the natural gradient solve.
        cg_damping: Damping added to Fisher-vector products.
        fisher_fraction: Fraction of trajectories used for curvature estimates.
        line_search_steps: Backtracking attempts before giving up on a step.
        backtrack_ratio: Step shrink factor per line search attempt.
        chunk_size: Trajectories per forward/backward chunk.
        compression_level: zlib level for the observation tapes.
        max_iterations: Stop after this many iterations. None runs until interrupted.

        log_param_norms: Log the update magnitude of every parameter.
        log_level: Level for the console log stream.

        seed: Random seed for reproducibility.
        checkpoint_dir: Directory holding checkpoints.
        checkpoint_key: Storage key of the policy checkpoint.
        log_dir: Directory for metrics and the saved config.
    """

    # Environment settings
    env_name: str = "ALE/Pong-v5"
    num_envs: int = 8
    max_episode_steps: Optional[int] = None
    render_mode: Optional[str] = None

    # Network settings
    frame_height: int = 105
    frame_width: int = 80
    frame_depth: int = 2
    hidden_size: int = 128
    input_scale: float = 0.01
    boost_biases: bool = False

    # TRPO hyperparameters
    batch_steps: int = 100000
    gamma: float = 0.99
    max_kl: float = 0.01
    cg_iters: int = 10
    cg_damping: float = 0.1
    fisher_fraction: float = 0.1
    line_search_steps: int = 10
    backtrack_ratio: float = 0.5
    chunk_size: int = 4
    compression_level: int = 6
    max_iterations: Optional[int] = None

    # Logging
    log_param_norms: bool = True
    log_level: str = "INFO"

    # Reproducibility
    seed: Optional[int] = None

    # Paths
    checkpoint_dir: str = "."
    checkpoint_key: str = "trained_policy"
    log_dir: str = "logs"

    @property
    def obs_shape(self) -> Tuple[int, int, int]:
        """Observation shape after preprocessing."""
        return (self.frame_height, self.frame_width, self.frame_depth)

    def validate(self) -> None:
        """Validate configuration parameters."""
        assert self.num_envs >= 1, "num_envs must be at least 1"
        assert self.batch_steps > 0, "batch_steps must be positive"
        assert 0 < self.gamma <= 1, "gamma must be in (0, 1]"
        assert self.max_kl > 0, "max_kl must be positive"
        assert self.cg_iters >= 1, "cg_iters must be at least 1"
        assert self.cg_damping >= 0, "cg_damping must be non-negative"
        assert 0 < self.fisher_fraction <= 1, "fisher_fraction must be in (0, 1]"
        assert self.line_search_steps >= 1, "line_search_steps must be at least 1"
        assert 0 < self.backtrack_ratio < 1, "backtrack_ratio must be in (0, 1)"
        assert self.chunk_size >= 1, "chunk_size must be at least 1"
        assert 0 <= self.compression_level <= 9, "compression_level must be in [0, 9]"
        assert self.frame_depth == 2, "frames are delta-encoded with depth 2"
        assert self.max_episode_steps is None or self.max_episode_steps > 0, \
            "max_episode_steps must be positive"
        assert self.max_iterations is None or self.max_iterations > 0, \
            "max_iterations must be positive"
        assert self.checkpoint_key, "checkpoint_key must not be empty"


def get_default_config() -> TRPOConfig:
    """Get the default TRPO configuration."""
    config = TRPOConfig()
    config.validate()
    return config
