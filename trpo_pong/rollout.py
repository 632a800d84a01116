"""
Rollout collection for TRPO training.

The Roller drives the recurrent policy over every environment in the pool,
one batched forward pass per step, and records one Trajectory per episode.
Observations go straight into compressed tapes so long Pong episodes stay
cheap to hold in memory until the optimizer reads them back.
"""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import tensorflow as tf

from trpo_pong.environment import EnvironmentPool
from trpo_pong.model import PolicyNetwork
from trpo_pong.tape import CompressedTape

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Trajectory:
    """
    One recorded episode (or the part of it up to the step cap).

    Attributes:
        observations: Compressed observation tape, one frame per step.
        actions: Sampled actions, shape (T,).
        rewards: Rewards received after each action, shape (T,).
        log_probs: Log probabilities of the sampled actions, shape (T,).
        logits: Action logits at selection time, shape (T, num_actions).
        terminated: True if the episode ended with done, False if it was cut
                    by the step cap.
    """
    observations: CompressedTape
    actions: np.ndarray
    rewards: np.ndarray
    log_probs: np.ndarray
    logits: np.ndarray
    terminated: bool

    @property
    def length(self) -> int:
        return len(self.actions)

    @property
    def total_reward(self) -> float:
        return float(np.sum(self.rewards))


@dataclass(frozen=True, eq=False)
class RolloutSet:
    """
    Ordered, immutable collection of trajectories with reward statistics.

    Statistics are computed over every (trajectory, timestep) reward sample.
    The variance is the population variance of those samples.
    """
    trajectories: Tuple[Trajectory, ...]

    @property
    def num_steps(self) -> int:
        return sum(t.length for t in self.trajectories)

    @property
    def num_trajectories(self) -> int:
        return len(self.trajectories)

    def all_rewards(self) -> np.ndarray:
        if not self.trajectories:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate([t.rewards for t in self.trajectories])

    @property
    def reward_mean(self) -> float:
        rewards = self.all_rewards()
        if rewards.size == 0:
            return 0.0
        return float(np.mean(rewards, dtype=np.float64))

    @property
    def reward_variance(self) -> float:
        rewards = self.all_rewards()
        if rewards.size == 0:
            return 0.0
        return float(np.var(rewards, dtype=np.float64))

    @property
    def mean_total_reward(self) -> float:
        """Mean of per-trajectory reward sums (the score of an episode)."""
        if not self.trajectories:
            return 0.0
        return float(np.mean([t.total_reward for t in self.trajectories]))


def pack_rollout_sets(rollout_sets: Sequence[RolloutSet]) -> RolloutSet:
    """
    Join several rollout sets into one batch.

    Trajectories keep the order of the input sets; nothing is truncated or
    reordered. Step count and reward statistics follow from the union.
    """
    trajectories: List[Trajectory] = []
    for rollout_set in rollout_sets:
        trajectories.extend(rollout_set.trajectories)
    return RolloutSet(trajectories=tuple(trajectories))


class _TrajectoryBuilder:
    """Mutable per-slot record used while an episode is in progress."""

    def __init__(self, frame_shape, compression_level: int):
        self.tape = CompressedTape(frame_shape, dtype=np.int16,
                                   compression_level=compression_level)
        self.actions: List[int] = []
        self.rewards: List[float] = []
        self.log_probs: List[float] = []
        self.logits: List[np.ndarray] = []

    def __len__(self) -> int:
        return len(self.actions)

    def append(self, obs, action, reward, log_prob, logits) -> None:
        self.tape.append(obs)
        self.actions.append(int(action))
        self.rewards.append(float(reward))
        self.log_probs.append(float(log_prob))
        self.logits.append(np.asarray(logits, dtype=np.float32))

    def finish(self, terminated: bool) -> Trajectory:
        self.tape.close()
        return Trajectory(
            observations=self.tape,
            actions=np.array(self.actions, dtype=np.int32),
            rewards=np.array(self.rewards, dtype=np.float32),
            log_probs=np.array(self.log_probs, dtype=np.float32),
            logits=np.stack(self.logits).astype(np.float32),
            terminated=terminated,
        )


class Roller:
    """
    Collects trajectories by running the policy over an environment pool.

    All active slots are evaluated in one batched forward pass per step, which
    is serialised behind a lock; the environments themselves are stepped
    concurrently by the pool.
    """

    def __init__(
        self,
        policy: PolicyNetwork,
        pool: EnvironmentPool,
        max_episode_steps: Optional[int] = None,
        compression_level: int = 6,
    ):
        """
        Initialize the roller.

        Args:
            policy: Policy network for action selection.
            pool: Environment pool to collect from.
            max_episode_steps: Optional cap on trajectory length.
            compression_level: zlib level for observation tapes.
        """
        self.policy = policy
        self.pool = pool
        self.max_episode_steps = max_episode_steps
        self.compression_level = compression_level
        self._forward_lock = threading.Lock()

    def _sample(self, observations: np.ndarray, state: np.ndarray):
        with self._forward_lock:
            actions, log_probs, logits, new_state = self.policy.sample_actions(
                tf.convert_to_tensor(observations, dtype=tf.int16),
                tf.convert_to_tensor(state, dtype=tf.float32),
            )
        return actions.numpy(), log_probs.numpy(), logits.numpy(), new_state.numpy()

    def rollout(self, target_steps: int = 0) -> RolloutSet:
        """
        Collect episodes from every slot of the pool.

        Each slot plays at least one episode. When a slot's episode ends it
        starts another one only while the steps gathered by this call are
        below target_steps. Episodes in progress always run to completion
        (or to the step cap).

        Args:
            target_steps: Aggregate step count to reach before slots retire.

        Returns:
            RolloutSet with the finished trajectories in completion order.
        """
        num_envs = self.pool.num_envs
        frame_shape = self.pool.observation_shape

        active = list(range(num_envs))
        current_obs = dict(zip(active, self.pool.reset_many(active)))
        builders = {
            slot: _TrajectoryBuilder(frame_shape, self.compression_level)
            for slot in active
        }
        state = np.zeros((num_envs, self.policy.hidden_size), dtype=np.float32)

        finished: List[Trajectory] = []
        total_steps = 0

        while active:
            obs_batch = np.stack([current_obs[slot] for slot in active])
            actions, log_probs, logits, new_state = self._sample(obs_batch, state[active])
            state[active] = new_state

            results = self.pool.step_many(active, actions)
            total_steps += len(active)

            restart = []
            for i, (slot, (next_obs, reward, done)) in enumerate(zip(active, results)):
                builder = builders[slot]
                builder.append(current_obs[slot], actions[i], reward, log_probs[i], logits[i])
                current_obs[slot] = next_obs

                capped = (self.max_episode_steps is not None
                          and len(builder) >= self.max_episode_steps)
                if done or capped:
                    finished.append(builder.finish(terminated=done))
                    del builders[slot]
                    if total_steps < target_steps:
                        restart.append(slot)

            active = [slot for slot in active if slot in builders]
            if restart:
                for slot, obs in zip(restart, self.pool.reset_many(restart)):
                    current_obs[slot] = obs
                    builders[slot] = _TrajectoryBuilder(frame_shape, self.compression_level)
                    state[slot] = 0.0
                active = sorted(active + restart)

        rollout_set = RolloutSet(trajectories=tuple(finished))
        logger.debug(
            "Rollout finished: %d trajectories, %d steps",
            rollout_set.num_trajectories, rollout_set.num_steps,
        )
        return rollout_set
