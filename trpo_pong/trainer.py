"""
TRPO Trainer for Atari Pong.

This module orchestrates the training process, including:
- Environment pool and policy setup
- Rollout collection and batch packing
- Trust-region updates applied under the training lock
- Metrics logging and checkpointing on shutdown

Training runs on a background thread. The calling thread waits for SIGINT
or SIGTERM, then saves the policy while holding the same lock that guards
parameter updates, so a checkpoint never reflects a half-applied update.
"""

import csv
import enum
import json
import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import numpy as np
import tensorflow as tf

from trpo_pong.config import TRPOConfig
from trpo_pong.environment import EnvironmentPool, create_pong_env
from trpo_pong.model import PolicyNetwork, count_parameters, create_policy_network
from trpo_pong.rollout import Roller, RolloutSet, pack_rollout_sets
from trpo_pong.trpo import TRPOOptimizer
from trpo_pong.utils import atomic_write_bytes, set_global_seeds

logger = logging.getLogger(__name__)


class MetricsLogger:
    """Writes per-iteration metrics to CSV and TensorBoard."""

    def __init__(self, log_dir: str, use_tensorboard: bool = True):
        """
        Initialize logger.

        Args:
            log_dir: Directory for logs.
            use_tensorboard: Whether to use TensorBoard.
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.use_tensorboard = use_tensorboard
        self.summary_writer = None
        if use_tensorboard:
            self.summary_writer = tf.summary.create_file_writer(str(self.log_dir))

        self.csv_path = self.log_dir / "metrics.csv"
        self._csv_fields: Optional[List[str]] = None

        self.history: List[Dict[str, float]] = []

    def log(self, step: int, metrics: Dict[str, float]) -> None:
        """Log metrics for a given iteration."""
        row = {'step': step, 'timestamp': time.time()}
        row.update(metrics)

        if self.summary_writer is not None:
            with self.summary_writer.as_default():
                for key, value in metrics.items():
                    tf.summary.scalar(key, value, step=step)
            self.summary_writer.flush()

        # The header is fixed by the first row
        if self._csv_fields is None:
            self._csv_fields = list(row.keys())
            with open(self.csv_path, 'w', newline='') as f:
                csv.DictWriter(f, fieldnames=self._csv_fields).writeheader()

        with open(self.csv_path, 'a', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=self._csv_fields, extrasaction='ignore')
            writer.writerow(row)

        self.history.append(row)

    def close(self) -> None:
        if self.summary_writer is not None:
            self.summary_writer.close()
            self.summary_writer = None


class Checkpointer:
    """
    Stores a policy under a key in a checkpoint directory.

    A checkpoint is two files: `<key>.weights.h5` with the parameter values and
    `<key>.json` with the architecture needed to rebuild the network. Both are
    written to a temporary name first and then renamed into place, the
    architecture before the weights.
    """

    def __init__(self, checkpoint_dir: str):
        self.checkpoint_dir = Path(checkpoint_dir)

    def weights_path(self, key: str) -> Path:
        return self.checkpoint_dir / f"{key}.weights.h5"

    def architecture_path(self, key: str) -> Path:
        return self.checkpoint_dir / f"{key}.json"

    def save(self, key: str, policy: PolicyNetwork) -> Path:
        """
        Save a policy.

        Args:
            key: Storage key.
            policy: Policy network to save.

        Returns:
            Path of the weights file.
        """
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        weights_path = self.weights_path(key)

        # Architecture first: weights are never newer than the record describing them
        architecture = json.dumps(policy.get_config(), indent=2)
        atomic_write_bytes(self.architecture_path(key), architecture.encode("utf-8"))

        # Keras 3 requires the .weights.h5 suffix
        tmp_path = self.checkpoint_dir / f"{key}.tmp.weights.h5"
        policy.save_weights(str(tmp_path))
        os.replace(tmp_path, weights_path)

        logger.info("Saved policy to %s", weights_path)
        return weights_path

    def load(self, key: str) -> Optional[PolicyNetwork]:
        """
        Load a policy.

        Returns:
            The restored network, or None if no usable checkpoint exists.
        """
        weights_path = self.weights_path(key)
        architecture_path = self.architecture_path(key)
        if not weights_path.exists() or not architecture_path.exists():
            logger.info("No checkpoint found for key %r in %s", key, self.checkpoint_dir)
            return None

        try:
            with open(architecture_path, 'r') as f:
                architecture = json.load(f)
            policy = create_policy_network(
                num_actions=architecture["num_actions"],
                frame_shape=tuple(architecture["frame_shape"]),
                hidden_size=architecture["hidden_size"],
                input_scale=architecture["input_scale"],
            )
            policy.load_weights(str(weights_path))
        except (OSError, ValueError, KeyError) as e:
            logger.info("Could not load checkpoint %s: %s", weights_path, e)
            return None

        return policy


def load_or_create_policy(
    checkpointer: Checkpointer,
    config: TRPOConfig,
    num_actions: int,
) -> PolicyNetwork:
    """
    Load the policy stored under config.checkpoint_key, or build a new one.

    A stored policy whose action count or observation shape does not match
    the environment is ignored.
    """
    policy = checkpointer.load(config.checkpoint_key)
    if policy is not None:
        if policy.num_actions == num_actions and policy.frame_shape == config.obs_shape:
            logger.info("Loaded network from file.")
            return policy
        logger.warning(
            "Checkpoint has %d actions and frame shape %s, expected %d and %s; ignoring it",
            policy.num_actions, policy.frame_shape, num_actions, config.obs_shape,
        )

    logger.info("Created new network.")
    return create_policy_network(
        num_actions=num_actions,
        frame_shape=config.obs_shape,
        hidden_size=config.hidden_size,
        input_scale=config.input_scale,
        boost_biases=config.boost_biases,
    )


class TrainingPhase(enum.Enum):
    COLLECTING = "collecting"
    AGGREGATING = "aggregating"
    OPTIMIZING = "optimizing"
    APPLYING = "applying"


class TRPOTrainer:
    """
    Main trainer class for TRPO on Pong.

    Attributes:
        config: Training configuration.
        pool: Environment pool shared by all rollouts.
        policy: Live policy network.
        train_lock: Guards parameter values for apply and save.
        stop_event: Set when training should stop.
        phase: Phase of the iteration in progress, or None when idle.
        iteration: Number of completed iterations.
    """

    def __init__(
        self,
        config: TRPOConfig,
        env_fn: Optional[Callable] = None,
        policy: Optional[PolicyNetwork] = None,
    ):
        """
        Initialize the trainer.

        Args:
            config: TRPO configuration.
            env_fn: Factory for one environment. Defaults to create_pong_env
                    with the configured settings.
            policy: Policy to train. Loaded or created when omitted.

        Raises:
            EnvironmentStartupError: If the environment pool cannot be created.
        """
        config.validate()
        self.config = config

        if config.seed is not None:
            set_global_seeds(config.seed)

        if env_fn is None:
            env_fn = lambda: create_pong_env(
                env_name=config.env_name,
                render_mode=config.render_mode,
                height=config.frame_height,
                width=config.frame_width,
            )
        self.env_fn = env_fn

        self.pool = EnvironmentPool(env_fn, config.num_envs)

        self.checkpointer = Checkpointer(config.checkpoint_dir)
        try:
            if policy is None:
                policy = load_or_create_policy(self.checkpointer, config, self.pool.num_actions)
        except Exception:
            self.pool.close()
            raise
        self.policy = policy
        logger.info("Policy has %d trainable parameters", count_parameters(policy))

        self.roller = Roller(
            policy=self.policy,
            pool=self.pool,
            max_episode_steps=config.max_episode_steps,
            compression_level=config.compression_level,
        )
        self.optimizer = TRPOOptimizer(
            policy=self.policy,
            gamma=config.gamma,
            max_kl=config.max_kl,
            cg_iters=config.cg_iters,
            cg_damping=config.cg_damping,
            fisher_fraction=config.fisher_fraction,
            line_search_steps=config.line_search_steps,
            backtrack_ratio=config.backtrack_ratio,
            chunk_size=config.chunk_size,
            seed=config.seed,
        )
        self.metrics = MetricsLogger(config.log_dir)

        self.train_lock = threading.Lock()
        self.stop_event = threading.Event()
        self.phase: Optional[TrainingPhase] = None
        self.iteration = 0

        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    def collect_batch(self, batch_idx: int) -> RolloutSet:
        """Gather rollouts until the step target is met and pack them."""
        self.phase = TrainingPhase.COLLECTING
        logger.info("Gathering batch of experience...")
        rollouts: List[RolloutSet] = []
        steps = 0
        while steps < self.config.batch_steps:
            rollout = self.roller.rollout()
            steps += rollout.num_steps
            logger.info("batch %d: steps=%d sub_mean=%f", batch_idx, steps, rollout.reward_mean)
            rollouts.append(rollout)

        self.phase = TrainingPhase.AGGREGATING
        batch = pack_rollout_sets(rollouts)
        logger.info(
            "batch %d: mean=%f stddev=%f",
            batch_idx, batch.reward_mean, np.sqrt(batch.reward_variance),
        )
        return batch

    def train_iteration(self, batch_idx: int) -> Optional[Dict[str, float]]:
        """
        Run one collect, pack, optimize and apply cycle.

        Args:
            batch_idx: Index of the batch, used for logging.

        Returns:
            Metrics of the iteration, or None if the update was discarded
            because a stop was requested while it was being computed.
        """
        start = time.time()
        batch = self.collect_batch(batch_idx)
        collect_time = time.time() - start

        self.phase = TrainingPhase.OPTIMIZING
        logger.info("Training on batch...")
        update_start = time.time()
        update = self.optimizer.compute_update(batch)

        self.phase = TrainingPhase.APPLYING
        with self.train_lock:
            if self.stop_event.is_set():
                logger.info("Stop requested, discarding update for batch %d", batch_idx)
                self.phase = None
                return None

            norms = update.norms()
            if self.config.log_param_norms:
                for i, (name, norm) in enumerate(zip(self.policy.parameter_names(), norms)):
                    logger.info("param %d (%s) mag %f", i, name, norm)
            update.apply()
            self.iteration += 1
        update_time = time.time() - update_start
        self.phase = None

        metrics = {
            'steps': float(batch.num_steps),
            'num_trajectories': float(batch.num_trajectories),
            'reward_mean': batch.reward_mean,
            'reward_std': float(np.sqrt(batch.reward_variance)),
            'episode_reward_mean': batch.mean_total_reward,
            'update_norm': float(np.sqrt(np.sum(np.square(norms)))),
            'collect_time': collect_time,
            'update_time': update_time,
        }
        metrics.update(update.stats)
        self.metrics.log(batch_idx, metrics)
        return metrics

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _train_loop(self) -> None:
        try:
            while not self.stop_event.is_set():
                max_iterations = self.config.max_iterations
                if max_iterations is not None and self.iteration >= max_iterations:
                    logger.info("Reached %d iterations", max_iterations)
                    break
                self.train_iteration(self.iteration)
        except Exception as e:
            logger.exception("Training failed")
            self._error = e
        finally:
            self.stop_event.set()

    def _handle_signal(self, signum, frame) -> None:
        logger.info("Received signal %d, stopping", signum)
        self.stop_event.set()

    def _install_signal_handlers(self) -> Dict[int, object]:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    def run(self) -> None:
        """
        Train until interrupted (or until max_iterations), then save.

        The checkpoint is written as soon as the stop is requested. The
        training thread is then joined; it finishes the iteration in
        progress and discards its update.

        Raises:
            Exception: The error that stopped the training thread, re-raised
                       after the checkpoint is written.
        """
        previous_handlers = self._install_signal_handlers()
        try:
            self._thread = threading.Thread(
                target=self._train_loop, name="trpo-train", daemon=True
            )
            self._thread.start()
            logger.info("Running. Press Ctrl+C to stop.")
            self.stop_event.wait()
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)

        self.save()
        self._join_training_thread()

        if self._error is not None:
            raise self._error

    def _join_training_thread(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            return
        self.stop_event.set()
        logger.info("Waiting for the training thread to finish its iteration...")
        self._thread.join()

    def save(self) -> Path:
        """Write the checkpoint while holding the training lock."""
        with self.train_lock:
            return self.checkpointer.save(self.config.checkpoint_key, self.policy)

    def close(self) -> None:
        """Stop the training thread, then release environments and log writers."""
        self._join_training_thread()
        self.pool.close()
        self.metrics.close()
