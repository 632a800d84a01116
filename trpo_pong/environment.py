"""
Environment wrappers and the parallel environment pool for Pong.

Raw Atari frames are turned into a two-channel observation: the downsampled
grayscale frame and its difference to the previous frame. The difference
channel lets a recurrent policy see motion without stacking many frames.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, Tuple, Dict, Any

import numpy as np
import gymnasium as gym
from gymnasium import spaces
import ale_py


# Register ALE environments
gym.register_envs(ale_py)

logger = logging.getLogger(__name__)

RAW_HEIGHT = 210
RAW_WIDTH = 160


class EnvironmentStartupError(RuntimeError):
    """Raised when the environment pool cannot be fully created."""


class FramePreprocessor:
    """
    Delta-encodes raw frames for a single environment slot.

    Each call emits an int16 array of shape (height, width, 2): channel 0 is
    the downsampled grayscale frame, channel 1 is that frame minus the previous
    one (all zeros on the first call after a reset). Only the last processed
    frame is retained.
    """

    def __init__(self, height: int = 105, width: int = 80):
        if RAW_HEIGHT % height or RAW_WIDTH % width:
            raise ValueError(
                f"({height}, {width}) does not evenly downsample "
                f"({RAW_HEIGHT}, {RAW_WIDTH})"
            )
        self.height = height
        self.width = width
        self._row_step = RAW_HEIGHT // height
        self._col_step = RAW_WIDTH // width
        self._previous: Optional[np.ndarray] = None

    @property
    def output_shape(self) -> Tuple[int, int, int]:
        return (self.height, self.width, 2)

    def reset(self) -> None:
        """Forget the retained frame (start of a new episode)."""
        self._previous = None

    def downsample(self, raw: np.ndarray) -> np.ndarray:
        """Convert a raw (210, 160[, 3]) frame to a (height, width) int16 frame."""
        raw = np.asarray(raw)
        if raw.shape[:2] != (RAW_HEIGHT, RAW_WIDTH) or raw.ndim not in (2, 3):
            raise ValueError(f"unexpected raw frame shape {raw.shape}")
        if raw.ndim == 3:
            gray = raw.mean(axis=-1)
        else:
            gray = raw
        small = gray[::self._row_step, ::self._col_step]
        return np.rint(small).astype(np.int16)

    def process(self, raw: np.ndarray) -> np.ndarray:
        """
        Produce the delta-encoded observation for a raw frame.

        Args:
            raw: Raw frame from the simulator.

        Returns:
            Observation of shape (height, width, 2), dtype int16.
        """
        frame = self.downsample(raw)
        if self._previous is None:
            delta = np.zeros_like(frame)
        else:
            delta = frame - self._previous
        self._previous = frame
        return np.stack([frame, delta], axis=-1)


class PreprocessEnv(gym.ObservationWrapper):
    """
    Wrapper that owns a private FramePreprocessor.

    The preprocessor is reset together with the environment so delta channels
    never leak across episodes.
    """

    def __init__(self, env: gym.Env, height: int = 105, width: int = 80):
        super().__init__(env)
        self.preprocessor = FramePreprocessor(height, width)
        self.observation_space = spaces.Box(
            low=-255,
            high=255,
            shape=self.preprocessor.output_shape,
            dtype=np.int16,
        )

    def reset(self, **kwargs) -> Tuple[np.ndarray, Dict[str, Any]]:
        self.preprocessor.reset()
        return super().reset(**kwargs)

    def observation(self, obs: np.ndarray) -> np.ndarray:
        return self.preprocessor.process(obs)


def create_pong_env(
    env_name: str = "ALE/Pong-v5",
    render_mode: Optional[str] = None,
    height: int = 105,
    width: int = 80,
) -> gym.Env:
    """
    Create a Pong environment that emits delta-encoded observations.

    Args:
        env_name: Gymnasium id of the environment.
        render_mode: Optional gymnasium render mode.
        height: Preprocessed frame height.
        width: Preprocessed frame width.

    Returns:
        Wrapped Gymnasium environment.
    """
    env = gym.make(env_name, render_mode=render_mode, full_action_space=False)
    return PreprocessEnv(env, height=height, width=width)


class EnvironmentPool:
    """
    Fixed-size set of independently stateful environments.

    All environments are created up front; a failure on any slot closes the
    slots already created and raises EnvironmentStartupError. Stepping several
    slots runs them on a thread pool, one worker per slot.

    Attributes:
        envs: Environment instances, one per slot.
        num_actions: Size of the shared discrete action space.
        observation_shape: Shape of preprocessed observations.
    """

    def __init__(self, env_fn: Callable[[], gym.Env], num_envs: int):
        """
        Initialize the pool.

        Args:
            env_fn: Factory creating one wrapped environment.
            num_envs: Number of slots.
        """
        self.envs: List[gym.Env] = []
        try:
            for _ in range(num_envs):
                self.envs.append(env_fn())
            action_space = self.envs[0].action_space
            observation_space = self.envs[0].observation_space
        except Exception as e:
            self.close()
            raise EnvironmentStartupError(
                f"failed to create environment {len(self.envs)} of {num_envs}: {e}"
            ) from e

        if not isinstance(action_space, spaces.Discrete):
            self.close()
            raise EnvironmentStartupError(
                f"expected a discrete action space, got {action_space}"
            )

        self.num_actions = int(action_space.n)
        self.observation_shape = tuple(observation_space.shape)
        self._executor = ThreadPoolExecutor(
            max_workers=num_envs, thread_name_prefix="env-step"
        )
        logger.info("Created %d environments (%d actions)", num_envs, self.num_actions)

    @property
    def num_envs(self) -> int:
        return len(self.envs)

    def reset(self, slot: int) -> np.ndarray:
        """Start a new episode in one slot and return its first observation."""
        obs, _ = self.envs[slot].reset()
        return obs

    def step(self, slot: int, action: int) -> Tuple[np.ndarray, float, bool]:
        """
        Step one slot.

        Returns:
            observation, reward and done flag (terminated or truncated).
        """
        obs, reward, terminated, truncated, _ = self.envs[slot].step(int(action))
        return obs, float(reward), bool(terminated or truncated)

    def reset_many(self, slots: Sequence[int]) -> List[np.ndarray]:
        """Reset several slots concurrently."""
        return list(self._executor.map(self.reset, slots))

    def step_many(
        self,
        slots: Sequence[int],
        actions: Sequence[int],
    ) -> List[Tuple[np.ndarray, float, bool]]:
        """
        Step several slots concurrently.

        Any exception raised by an environment propagates to the caller.
        """
        return list(self._executor.map(self.step, slots, actions))

    def close(self) -> None:
        """Close all environments."""
        executor = getattr(self, "_executor", None)
        if executor is not None:
            executor.shutdown(wait=True)
        for env in self.envs:
            env.close()

    def __enter__(self) -> "EnvironmentPool":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
