"""
Tests for the TRPO trainer.

Tests cover:
- Checkpoint save/load round trips and load failures
- Loading or creating the policy at startup
- Single training iterations and their phases
- The lock shared by updates and saves
- run(): iteration limits, interruption and error propagation
- Metrics logging
"""

import os
import csv
import json
import signal
import threading
import time
import pytest
import logging
import numpy as np

from trpo_pong.environment import EnvironmentStartupError
from trpo_pong.model import count_parameters, create_policy_network
from trpo_pong.trainer import (
    Checkpointer,
    MetricsLogger,
    TRPOTrainer,
    TrainingPhase,
    load_or_create_policy,
)

logger = logging.getLogger(__name__)


def weights_equal(a, b) -> bool:
    return all(
        np.array_equal(np.asarray(x), np.asarray(y))
        for x, y in zip(a.trainable_variables, b.trainable_variables)
    )


@pytest.fixture
def trainer(small_config, mock_env_fn):
    trainer = TRPOTrainer(small_config, env_fn=mock_env_fn)
    yield trainer
    if trainer._thread is not None:
        trainer.stop_event.set()
        trainer._thread.join()
    trainer.close()


class TestCheckpointer:
    """Tests for Checkpointer."""

    def test_save_load_round_trip(self, test_logger, temp_dir, policy_network):
        """A loaded policy has exactly the saved parameter values."""
        test_logger.log_section("Checkpoint Round Trip")

        rng = np.random.default_rng(0)
        for v in policy_network.trainable_variables:
            v.assign(rng.normal(size=v.shape).astype(np.float32))

        checkpointer = Checkpointer(os.path.join(temp_dir, 'ckpt'))
        path = checkpointer.save('trained_policy', policy_network)
        test_logger.log_value("weights path", path)

        loaded = checkpointer.load('trained_policy')
        assert loaded is not None
        test_logger.log_assert_equal("weights equal", True, weights_equal(policy_network, loaded))
        test_logger.log_assert_equal("config equal", policy_network.get_config(), loaded.get_config())

        leftovers = [f for f in os.listdir(checkpointer.checkpoint_dir) if '.tmp' in f]
        test_logger.log_assert_equal("temporary files", [], leftovers)

    def test_save_overwrites(self, test_logger, temp_dir, policy_network):
        test_logger.log_section("Checkpoint Overwrite")

        checkpointer = Checkpointer(temp_dir)
        checkpointer.save('key', policy_network)
        policy_network.head.bias.assign(np.full(6, 0.25, np.float32))
        checkpointer.save('key', policy_network)

        loaded = checkpointer.load('key')
        assert np.allclose(np.asarray(loaded.head.bias), 0.25)

    def test_missing_checkpoint_returns_none(self, test_logger, temp_dir):
        test_logger.log_section("Missing Checkpoint")

        test_logger.log_assert_equal("load", None, Checkpointer(temp_dir).load('nothing'))

    def test_corrupt_weights_return_none(self, test_logger, temp_dir, policy_network):
        test_logger.log_section("Corrupt Weights")

        checkpointer = Checkpointer(temp_dir)
        checkpointer.save('key', policy_network)
        with open(checkpointer.weights_path('key'), 'wb') as f:
            f.write(b'not an hdf5 file')

        test_logger.log_assert_equal("load", None, checkpointer.load('key'))

    def test_corrupt_architecture_returns_none(self, test_logger, temp_dir, policy_network):
        test_logger.log_section("Corrupt Architecture")

        checkpointer = Checkpointer(temp_dir)
        checkpointer.save('key', policy_network)
        with open(checkpointer.architecture_path('key'), 'w') as f:
            f.write('{"num_actions": 6}')

        test_logger.log_assert_equal("load", None, checkpointer.load('key'))

    def test_architecture_written_before_weights(self, test_logger, temp_dir, policy_network, monkeypatch):
        """A save interrupted while writing weights never leaves weights without their architecture."""
        test_logger.log_section("Checkpoint Write Order")

        checkpointer = Checkpointer(temp_dir)
        seen = {}

        def failing_save_weights(path, *args, **kwargs):
            architecture_path = checkpointer.architecture_path('key')
            seen['architecture'] = (
                json.loads(architecture_path.read_text()) if architecture_path.exists() else None
            )
            raise OSError("disk full")

        monkeypatch.setattr(policy_network, 'save_weights', failing_save_weights)
        with pytest.raises(OSError, match="disk full"):
            checkpointer.save('key', policy_network)

        test_logger.log_assert_equal(
            "architecture on disk during weight write", policy_network.get_config(), seen['architecture']
        )
        test_logger.log_assert_equal("weights file", False, checkpointer.weights_path('key').exists())
        test_logger.log_assert_equal("load", None, checkpointer.load('key'))


class TestLoadOrCreate:
    """Tests for load_or_create_policy."""

    def test_creates_when_missing(self, test_logger, small_config):
        test_logger.log_section("Create Fresh Policy")

        policy = load_or_create_policy(Checkpointer(small_config.checkpoint_dir), small_config, 6)
        test_logger.log_assert_equal("num_actions", 6, policy.num_actions)
        assert np.allclose(np.asarray(policy.head.kernel), 0.0)

        # Fresh vision layers have the solid-color response projected out
        for name, axes in (("conv1", (0, 1)), ("conv2", (0, 1)), ("fc", 0)):
            kernel = np.asarray(policy.features.get_layer(name).kernel)
            unit_means = kernel.mean(axis=axes)
            test_logger.log_value(f"{name} max |unit mean|", float(np.abs(unit_means).max()))
            assert np.allclose(unit_means, 0.0, atol=1e-3)

    def test_loads_when_present(self, test_logger, small_config, policy_network):
        test_logger.log_section("Load Existing Policy")

        policy_network.head.bias.assign(np.arange(6, dtype=np.float32))
        checkpointer = Checkpointer(small_config.checkpoint_dir)
        checkpointer.save(small_config.checkpoint_key, policy_network)

        policy = load_or_create_policy(checkpointer, small_config, 6)
        test_logger.log_assert_equal("weights equal", True, weights_equal(policy_network, policy))

    def test_mismatched_checkpoint_ignored(self, test_logger, small_config, frame_shape):
        test_logger.log_section("Mismatched Checkpoint")

        other = create_policy_network(num_actions=4, frame_shape=frame_shape)
        checkpointer = Checkpointer(small_config.checkpoint_dir)
        checkpointer.save(small_config.checkpoint_key, other)

        policy = load_or_create_policy(checkpointer, small_config, 6)
        test_logger.log_assert_equal("num_actions", 6, policy.num_actions)


class TestMetricsLogger:
    """Tests for MetricsLogger."""

    def test_csv_and_tensorboard_output(self, test_logger, temp_dir):
        test_logger.log_section("Metrics Output")

        metrics = MetricsLogger(os.path.join(temp_dir, 'logs'))
        metrics.log(0, {'reward_mean': 0.5, 'measured_kl': 0.001})
        metrics.log(1, {'reward_mean': 0.25, 'measured_kl': 0.002})
        metrics.close()

        with open(metrics.csv_path) as f:
            rows = list(csv.DictReader(f))
        test_logger.log_assert_equal("rows", 2, len(rows))
        test_logger.log_assert_equal("second reward", 0.25, float(rows[1]['reward_mean']))

        event_files = [f for f in os.listdir(metrics.log_dir) if f.startswith('events.')]
        test_logger.log_value("event files", event_files)
        assert event_files


class TestTrainerInitialization:
    """Tests for trainer construction."""

    def test_trainer_creation(self, test_logger, trainer, small_config):
        test_logger.log_section("TRPOTrainer Creation")

        test_logger.log_assert_equal("num envs", 2, trainer.pool.num_envs)
        test_logger.log_assert_equal("num actions", 6, trainer.policy.num_actions)
        test_logger.log_assert_equal("iteration", 0, trainer.iteration)
        test_logger.log_assert_equal("phase", None, trainer.phase)
        assert trainer.config is small_config

    def test_pool_failure_is_fatal(self, test_logger, small_config):
        test_logger.log_section("Startup Failure")

        def broken():
            raise OSError("simulator unreachable")

        with pytest.raises(EnvironmentStartupError):
            TRPOTrainer(small_config, env_fn=broken)

    def test_invalid_config_rejected(self, test_logger, small_config, mock_env_fn):
        test_logger.log_section("Invalid Config")

        small_config.max_kl = -1.0
        with pytest.raises(AssertionError):
            TRPOTrainer(small_config, env_fn=mock_env_fn)

    def test_logs_parameter_count(self, test_logger, small_config, mock_env_fn, caplog):
        test_logger.log_section("Startup Parameter Count")

        with caplog.at_level(logging.INFO, logger="trpo_pong.trainer"):
            trainer = TRPOTrainer(small_config, env_fn=mock_env_fn)
        try:
            expected = count_parameters(trainer.policy)
            test_logger.log_value("trainable parameters", expected)
            assert f"Policy has {expected} trainable parameters" in caplog.text
        finally:
            trainer.close()


class TestTrainIteration:
    """Tests for single iterations."""

    @pytest.mark.timeout(300)
    def test_iteration_updates_policy(self, test_logger, trainer):
        test_logger.log_section("Train Iteration")

        before = [np.asarray(v).copy() for v in trainer.policy.trainable_variables]
        metrics = trainer.train_iteration(0)

        for key in ('steps', 'reward_mean', 'reward_std', 'measured_kl', 'step_fraction'):
            test_logger.log_value(key, metrics[key])

        test_logger.log_assert_equal("steps", 8.0, metrics['steps'])
        test_logger.log_assert_close("reward mean", 0.5, metrics['reward_mean'])
        test_logger.log_assert_close("reward std", 0.5, metrics['reward_std'])
        test_logger.log_assert_equal("iteration", 1, trainer.iteration)
        test_logger.log_assert_equal("phase", None, trainer.phase)
        test_logger.log_assert_range("measured kl", metrics['measured_kl'], 0.0, trainer.config.max_kl)

        after = [np.asarray(v) for v in trainer.policy.trainable_variables]
        assert any(not np.array_equal(a, b) for a, b in zip(before, after))
        assert os.path.exists(trainer.metrics.csv_path)

    @pytest.mark.timeout(300)
    def test_phases_in_order(self, test_logger, trainer, monkeypatch):
        test_logger.log_section("Training Phases")

        seen = []
        original_rollout = trainer.roller.rollout
        original_update = trainer.optimizer.compute_update

        def rollout(*args, **kwargs):
            seen.append(trainer.phase)
            return original_rollout(*args, **kwargs)

        def compute_update(batch):
            seen.append(trainer.phase)
            update = original_update(batch)
            original_apply = update.apply

            def apply():
                seen.append(trainer.phase)
                original_apply()

            update.apply = apply
            return update

        monkeypatch.setattr(trainer.roller, "rollout", rollout)
        monkeypatch.setattr(trainer.optimizer, "compute_update", compute_update)
        trainer.train_iteration(0)

        test_logger.log_value("phases", seen)
        assert seen[0] is TrainingPhase.COLLECTING
        assert seen[-2] is TrainingPhase.OPTIMIZING
        assert seen[-1] is TrainingPhase.APPLYING

    @pytest.mark.timeout(300)
    def test_stop_discards_pending_update(self, test_logger, trainer, monkeypatch):
        """An update finished after a stop request is never applied."""
        test_logger.log_section("Discard After Stop")

        original_update = trainer.optimizer.compute_update

        def compute_update(batch):
            update = original_update(batch)
            trainer.stop_event.set()
            return update

        monkeypatch.setattr(trainer.optimizer, "compute_update", compute_update)
        before = [np.asarray(v).copy() for v in trainer.policy.trainable_variables]

        result = trainer.train_iteration(0)

        test_logger.log_assert_equal("result", None, result)
        test_logger.log_assert_equal("iteration", 0, trainer.iteration)
        after = [np.asarray(v) for v in trainer.policy.trainable_variables]
        assert all(np.array_equal(a, b) for a, b in zip(before, after))


class TestLocking:
    """Tests for the lock shared by apply and save."""

    def test_save_waits_for_lock(self, test_logger, trainer):
        test_logger.log_section("Save Waits For Lock")

        saved = threading.Event()

        def save():
            trainer.save()
            saved.set()

        with trainer.train_lock:
            thread = threading.Thread(target=save)
            thread.start()
            time.sleep(0.2)
            test_logger.log_assert_equal("saved while locked", False, saved.is_set())

        thread.join()
        test_logger.log_assert_equal("saved after release", True, saved.is_set())
        assert trainer.checkpointer.weights_path(trainer.config.checkpoint_key).exists()


class TestRun:
    """Tests for the run() lifecycle."""

    @pytest.mark.timeout(300)
    def test_run_until_max_iterations(self, test_logger, trainer):
        test_logger.log_section("Run To Max Iterations")

        previous = signal.getsignal(signal.SIGINT)
        trainer.run()

        test_logger.log_assert_equal("iterations", 2, trainer.iteration)
        test_logger.log_assert_equal("handler restored", previous, signal.getsignal(signal.SIGINT))

        loaded = trainer.checkpointer.load(trainer.config.checkpoint_key)
        assert loaded is not None
        test_logger.log_assert_equal("saved equals live", True, weights_equal(trainer.policy, loaded))

        with open(trainer.metrics.csv_path) as f:
            rows = list(csv.DictReader(f))
        test_logger.log_assert_equal("metric rows", 2, len(rows))

    @pytest.mark.timeout(300)
    def test_run_joins_training_thread(self, test_logger, small_config, mock_env_fn, caplog):
        """A stop during an iteration lets the thread finish before environments close."""
        test_logger.log_section("Shutdown Joins Training Thread")

        small_config.max_iterations = None
        trainer = TRPOTrainer(small_config, env_fn=mock_env_fn)

        def stop_during_second_iteration():
            while trainer.iteration < 1:
                time.sleep(0.05)
            trainer.stop_event.set()

        watcher = threading.Thread(target=stop_during_second_iteration, daemon=True)
        watcher.start()
        with caplog.at_level(logging.INFO, logger="trpo_pong.trainer"):
            try:
                trainer.run()
                test_logger.log_assert_equal("thread alive after run", False, trainer._thread.is_alive())
            finally:
                trainer.close()
        watcher.join()

        test_logger.log_assert_equal("thread alive after close", False, trainer._thread.is_alive())
        errors = [r.getMessage() for r in caplog.records if r.levelno >= logging.ERROR]
        test_logger.log_assert_equal("error records", [], errors)
        assert "Training failed" not in caplog.text

        loaded = trainer.checkpointer.load(small_config.checkpoint_key)
        assert loaded is not None
        test_logger.log_assert_equal("saved equals live", True, weights_equal(trainer.policy, loaded))

    @pytest.mark.timeout(300)
    def test_sigint_saves_and_stops(self, test_logger, small_config, mock_env_fn):
        """Ctrl+C stops the loop at an iteration boundary and saves the policy."""
        test_logger.log_section("SIGINT Shutdown")

        small_config.max_iterations = None
        trainer = TRPOTrainer(small_config, env_fn=mock_env_fn)

        def interrupt_after_first_update():
            while trainer.iteration < 1:
                time.sleep(0.05)
            os.kill(os.getpid(), signal.SIGINT)

        watcher = threading.Thread(target=interrupt_after_first_update, daemon=True)
        watcher.start()
        try:
            trainer.run()
        finally:
            trainer.close()

        test_logger.log_value("iterations", trainer.iteration)
        assert trainer.iteration >= 1

        loaded = trainer.checkpointer.load(small_config.checkpoint_key)
        assert loaded is not None
        test_logger.log_assert_equal("saved equals live", True, weights_equal(trainer.policy, loaded))

    @pytest.mark.timeout(300)
    def test_runtime_error_saves_then_raises(self, test_logger, small_config, env_fn_factory):
        test_logger.log_section("Runtime Failure")

        trainer = TRPOTrainer(small_config, env_fn=env_fn_factory((1.0, 0.0), fail_on_step=3))
        try:
            with pytest.raises(RuntimeError, match="connection lost"):
                trainer.run()
        finally:
            trainer.close()

        test_logger.log_assert_equal("iterations", 0, trainer.iteration)
        assert trainer.checkpointer.weights_path(small_config.checkpoint_key).exists()
