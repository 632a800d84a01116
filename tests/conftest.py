"""
Pytest configuration and shared fixtures for the TRPO Pong tests.

This module provides:
- A deterministic mock Pong environment with fixed-length episodes
- Fixtures for configurations, policies and environment pools
- Logging utilities for verbose test output
"""

import os
import sys
import logging
import tempfile
import shutil
from typing import Any, Callable, Generator, Sequence

import pytest
import numpy as np

# Suppress TensorFlow warnings before importing
os.environ['TF_CPP_MIN_LOG_LEVEL'] = '3'

import tensorflow as tf
tf.get_logger().setLevel('ERROR')

import gymnasium as gym
from gymnasium import spaces

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trpo_pong.config import TRPOConfig
from trpo_pong.environment import EnvironmentPool, PreprocessEnv, RAW_HEIGHT, RAW_WIDTH
from trpo_pong.model import PolicyNetwork, create_policy_network


logger = logging.getLogger(__name__)


def _describe(value: Any) -> str:
    """Short human readable form of a checked value."""
    if isinstance(value, tf.Tensor):
        value = value.numpy()
    if isinstance(value, np.ndarray):
        if value.size == 0:
            return f"empty {value.dtype} array of shape {value.shape}"
        return f"{value.dtype}{list(value.shape)} in [{value.min():.4g}, {value.max():.4g}]"
    if isinstance(value, (float, np.floating)):
        return f"{float(value):.6g}"
    return repr(value)


class TestLogger:
    """
    Verbose checks for the test suite.

    Every assertion helper logs what it compared, so `--log-cli-level=INFO`
    shows the numbers behind each [PASS]/[FAIL] line.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

    def log_value(self, description: str, value: Any, level: int = logging.INFO) -> None:
        self.logger.log(level, "  %s: %s", description, _describe(value))

    def _check(self, description: str, passed: bool, expected: str, actual: str) -> None:
        self.logger.info("  [%s] %s: expected %s, got %s",
                         "PASS" if passed else "FAIL", description, expected, actual)
        assert passed, f"{description}: expected {expected}, got {actual}"

    def log_assert_equal(self, description: str, expected: Any, actual: Any) -> None:
        self._check(description, expected == actual, repr(expected), repr(actual))

    def log_assert_shape(self, description: str, expected_shape: tuple, tensor: Any) -> None:
        actual = tuple(tensor.shape)
        self._check(f"{description} shape", actual == tuple(expected_shape),
                    str(tuple(expected_shape)), str(actual))

    def log_assert_close(self, description: str, expected: float, actual: float,
                         tolerance: float = 1e-5) -> None:
        diff = abs(float(expected) - float(actual))
        self._check(f"{description} (tol {tolerance:g})", diff <= tolerance,
                    f"{float(expected):.6g}", f"{float(actual):.6g}, diff {diff:.2e}")

    def log_assert_range(self, description: str, value: float,
                         min_val: float, max_val: float) -> None:
        self._check(description, min_val <= value <= max_val,
                    f"in [{min_val:g}, {max_val:g}]", f"{float(value):.6g}")

    def log_section(self, title: str) -> None:
        self.logger.info("\n%s\n  %s\n%s", "=" * 60, title, "=" * 60)

    def log_subsection(self, title: str) -> None:
        self.logger.info("\n  --- %s ---", title)


class MockPongEnv(gym.Env):
    """
    Deterministic stand-in for the Atari simulator.

    Every episode lasts len(rewards) steps and pays rewards[t] on step t, then
    reports terminated. Frames are random RGB images that depend only on the
    step index, so observations differ between steps but repeat per episode.
    """

    metadata = {"render_modes": []}

    def __init__(
        self,
        rewards: Sequence[float] = (1.0, 0.0),
        num_actions: int = 6,
        fail_on_step: int = None,
    ):
        self.rewards = list(rewards)
        self.fail_on_step = fail_on_step
        self.observation_space = spaces.Box(
            low=0, high=255, shape=(RAW_HEIGHT, RAW_WIDTH, 3), dtype=np.uint8
        )
        self.action_space = spaces.Discrete(num_actions)
        self._t = 0
        self.total_steps = 0
        self.closed = False

    def _frame(self) -> np.ndarray:
        rng = np.random.default_rng(self._t)
        return rng.integers(0, 256, size=(RAW_HEIGHT, RAW_WIDTH, 3), dtype=np.uint8)

    def reset(self, *, seed=None, options=None):
        super().reset(seed=seed)
        self._t = 0
        return self._frame(), {}

    def step(self, action):
        if self.fail_on_step is not None and self.total_steps >= self.fail_on_step:
            raise RuntimeError("simulator connection lost")
        reward = self.rewards[self._t]
        self._t += 1
        self.total_steps += 1
        terminated = self._t >= len(self.rewards)
        return self._frame(), float(reward), terminated, False, {}

    def close(self):
        self.closed = True


def make_mock_env_fn(rewards: Sequence[float] = (1.0, 0.0), **kwargs) -> Callable[[], gym.Env]:
    """Factory for preprocessed mock environments."""
    def factory():
        return PreprocessEnv(MockPongEnv(rewards=rewards, **kwargs))
    return factory


@pytest.fixture
def test_logger(request) -> TestLogger:
    """Provide a test logger for verbose output."""
    return TestLogger(request.node.name)


@pytest.fixture
def temp_dir() -> Generator[str, None, None]:
    """Provide a temporary directory that's cleaned up after the test."""
    temp_path = tempfile.mkdtemp(prefix="trpo_test_")
    logger.debug(f"Created temp directory: {temp_path}")
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def default_config() -> TRPOConfig:
    """Provide a default TRPO configuration."""
    return TRPOConfig()


@pytest.fixture
def small_config(temp_dir: str) -> TRPOConfig:
    """Provide a small configuration for fast testing."""
    config = TRPOConfig(
        num_envs=2,
        batch_steps=8,
        cg_iters=3,
        fisher_fraction=1.0,
        chunk_size=2,
        max_iterations=2,
        checkpoint_dir=os.path.join(temp_dir, 'checkpoints'),
        log_dir=os.path.join(temp_dir, 'logs'),
        seed=42,
    )
    logger.debug(f"Created small config: batch_steps={config.batch_steps}")
    return config


@pytest.fixture
def frame_shape() -> tuple:
    """Preprocessed observation shape for Pong."""
    return (105, 80, 2)


@pytest.fixture
def num_actions() -> int:
    """Number of actions for Pong."""
    return 6


@pytest.fixture
def policy_network(frame_shape: tuple, num_actions: int) -> PolicyNetwork:
    """Create a policy network for testing."""
    return create_policy_network(num_actions=num_actions, frame_shape=frame_shape)


@pytest.fixture
def env_fn_factory() -> Callable[..., Callable[[], gym.Env]]:
    """Provide make_mock_env_fn for tests needing custom episodes."""
    return make_mock_env_fn


@pytest.fixture
def mock_env_fn() -> Callable[[], gym.Env]:
    """Factory for 2-step mock episodes with rewards [1, 0]."""
    return make_mock_env_fn((1.0, 0.0))


@pytest.fixture
def mock_pool(mock_env_fn: Callable) -> Generator[EnvironmentPool, None, None]:
    """Pool of two mock environments."""
    pool = EnvironmentPool(mock_env_fn, num_envs=2)
    yield pool
    pool.close()


# Hooks for better test output
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on location."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


def make_trajectory(rewards, frame_shape=(105, 80, 2), num_actions=6, seed=0):
    """Build a finished trajectory with random frames and the given rewards."""
    from trpo_pong.rollout import Trajectory
    from trpo_pong.tape import CompressedTape

    rng = np.random.default_rng(seed)
    T = len(rewards)
    tape = CompressedTape(frame_shape)
    for _ in range(T):
        tape.append(rng.integers(-255, 256, size=frame_shape))
    tape.close()
    return Trajectory(
        observations=tape,
        actions=rng.integers(0, num_actions, size=T).astype(np.int32),
        rewards=np.asarray(rewards, dtype=np.float32),
        log_probs=np.full(T, np.log(1.0 / num_actions), dtype=np.float32),
        logits=np.zeros((T, num_actions), dtype=np.float32),
        terminated=True,
    )


@pytest.fixture
def trajectory_factory() -> Callable:
    """Provide make_trajectory for tests building synthetic batches."""
    return make_trajectory
