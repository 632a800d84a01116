"""
Trust Region Policy Optimization for the recurrent policy.

One update consists of:
1. Discounted action values Q(t) = r(t) + gamma * Q(t+1) per trajectory,
   turned into advantages by subtracting the batch mean.
2. The policy gradient of the importance-sampled surrogate objective.
3. A natural gradient direction from conjugate gradient, using Fisher-vector
   products computed on a random subsample of the trajectories.
4. Scaling of that direction to the trust region radius, followed by a
   backtracking line search on the KL divergence measured over the batch.

The optimizer never modifies the live policy. It returns a ParameterUpdate
that the caller applies.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import tensorflow as tf

from trpo_pong.model import PolicyNetwork, clone_policy_network
from trpo_pong.rollout import RolloutSet, Trajectory

logger = logging.getLogger(__name__)


def compute_action_values(rewards: np.ndarray, gamma: float) -> np.ndarray:
    """
    Compute discounted action values for one trajectory.

    The value after the last step is zero, whether the episode terminated or
    was cut by the step cap.

    Args:
        rewards: Array of rewards, shape (T,).
        gamma: Discount factor.

    Returns:
        Array of action values, shape (T,).
    """
    T = len(rewards)
    values = np.zeros(T, dtype=np.float32)

    running = 0.0
    for t in reversed(range(T)):
        running = rewards[t] + gamma * running
        values[t] = running

    return values


def conjugate_gradient(
    fvp: Callable[[np.ndarray], np.ndarray],
    b: np.ndarray,
    iters: int = 10,
    residual_tol: float = 1e-10,
) -> Tuple[np.ndarray, float]:
    """
    Approximately solve F x = b using only products with F.

    Runs at most `iters` iterations. If the budget runs out (or the curvature
    along a search direction stops being positive) the computed iterate with
    the smallest residual is returned. The zero starting point is returned
    only when no iteration could be taken.

    Args:
        fvp: Function computing F @ v.
        b: Right-hand side.
        iters: Iteration budget.
        residual_tol: Squared residual norm at which to stop early.

    Returns:
        x: Best iterate.
        residual: Norm of b - F x for that iterate.
    """
    x = np.zeros_like(b)
    r = b.copy()
    p = b.copy()
    rr = float(r @ r)

    best_x = x.copy()
    best_residual = np.sqrt(rr)
    stepped = False

    for _ in range(iters):
        if rr < residual_tol:
            break
        Ap = fvp(p)
        pAp = float(p @ Ap)
        if pAp <= 0:
            break
        alpha = rr / pAp
        x = x + alpha * p
        r = r - alpha * Ap
        new_rr = float(r @ r)

        residual = np.sqrt(new_rr)
        # CG residuals are not monotone, so keep the best iterate
        if not stepped or residual < best_residual:
            best_x = x.copy()
            best_residual = residual
        stepped = True

        p = r + (new_rr / rr) * p
        rr = new_rr

    return best_x, float(best_residual)


def categorical_kl(old_logits: tf.Tensor, new_logits: tf.Tensor) -> tf.Tensor:
    """KL(old || new) between categorical distributions, over the last axis."""
    old_log_p = tf.nn.log_softmax(old_logits, axis=-1)
    new_log_p = tf.nn.log_softmax(new_logits, axis=-1)
    return tf.reduce_sum(tf.exp(old_log_p) * (old_log_p - new_log_p), axis=-1)


class ParameterUpdate:
    """
    Per-parameter update produced by one optimization step.

    Deltas line up with `variables`. The update can be applied exactly once.

    Attributes:
        variables: Policy variables the update targets.
        deltas: Update tensors, same shapes as the variables.
        stats: Diagnostics from the optimization step.
    """

    def __init__(self, variables, deltas: Sequence[tf.Tensor], stats: Optional[Dict[str, float]] = None):
        if len(variables) != len(deltas):
            raise ValueError("variables and deltas must have the same length")
        for variable, delta in zip(variables, deltas):
            if tuple(variable.shape) != tuple(delta.shape):
                raise ValueError(
                    f"delta shape {tuple(delta.shape)} does not match "
                    f"{getattr(variable, 'path', variable.name)} shape {tuple(variable.shape)}"
                )
        self.variables = list(variables)
        self.deltas = list(deltas)
        self.stats = dict(stats or {})
        self._applied = False

    @property
    def applied(self) -> bool:
        return self._applied

    def norms(self) -> List[float]:
        """Euclidean norm of every delta, in variable order."""
        return [float(tf.norm(d)) for d in self.deltas]

    def apply(self) -> None:
        """Add the deltas to the variables."""
        if self._applied:
            raise RuntimeError("update has already been applied")
        for variable, delta in zip(self.variables, self.deltas):
            variable.assign_add(delta)
        self._applied = True


@dataclass
class _Chunk:
    """Padded tensors for a group of trajectories."""
    observations: tf.Tensor  # (B, T, H, W, D) int16
    actions: tf.Tensor       # (B, T) int32
    mask: tf.Tensor          # (B, T) bool
    advantages: tf.Tensor    # (B, T) float32
    old_log_probs: tf.Tensor  # (B, T) float32
    old_logits: tf.Tensor    # (B, T, A) float32


def _make_chunk(trajectories: Sequence[Trajectory], advantages: Sequence[np.ndarray]) -> _Chunk:
    B = len(trajectories)
    T = max(t.length for t in trajectories)
    frame_shape = trajectories[0].observations.frame_shape
    num_actions = trajectories[0].logits.shape[-1]

    observations = np.zeros((B, T) + frame_shape, dtype=np.int16)
    actions = np.zeros((B, T), dtype=np.int32)
    mask = np.zeros((B, T), dtype=bool)
    adv = np.zeros((B, T), dtype=np.float32)
    old_log_probs = np.zeros((B, T), dtype=np.float32)
    old_logits = np.zeros((B, T, num_actions), dtype=np.float32)

    for i, (traj, traj_adv) in enumerate(zip(trajectories, advantages)):
        L = traj.length
        for t, frame in enumerate(traj.observations):
            observations[i, t] = frame
        actions[i, :L] = traj.actions
        mask[i, :L] = True
        adv[i, :L] = traj_adv
        old_log_probs[i, :L] = traj.log_probs
        old_logits[i, :L] = traj.logits

    return _Chunk(
        observations=tf.convert_to_tensor(observations),
        actions=tf.convert_to_tensor(actions),
        mask=tf.convert_to_tensor(mask),
        advantages=tf.convert_to_tensor(adv),
        old_log_probs=tf.convert_to_tensor(old_log_probs),
        old_logits=tf.convert_to_tensor(old_logits),
    )


class TRPOOptimizer:
    """
    Computes trust-region natural policy gradient updates.

    Fisher-vector products use a random subsample of the batch
    (fisher_fraction of the trajectories). The policy gradient and the KL
    check of the line search use the whole batch. Trajectories are processed
    chunk by chunk so only a few of them are decompressed at any time.
    """

    def __init__(
        self,
        policy: PolicyNetwork,
        gamma: float = 0.99,
        max_kl: float = 0.01,
        cg_iters: int = 10,
        cg_damping: float = 0.1,
        fisher_fraction: float = 0.1,
        line_search_steps: int = 10,
        backtrack_ratio: float = 0.5,
        chunk_size: int = 4,
        seed: Optional[int] = None,
    ):
        """
        Initialize the optimizer.

        Args:
            policy: Policy network to optimize.
            gamma: Discount factor for action values.
            max_kl: Trust region radius.
            cg_iters: Conjugate gradient iteration budget.
            cg_damping: Damping added to Fisher-vector products.
            fisher_fraction: Fraction of trajectories used for curvature.
            line_search_steps: Number of step sizes to try.
            backtrack_ratio: Shrink factor between line search attempts.
            chunk_size: Trajectories per forward pass.
            seed: Seed for subsample selection.
        """
        self.policy = policy
        self.gamma = gamma
        self.max_kl = max_kl
        self.cg_iters = cg_iters
        self.cg_damping = cg_damping
        self.fisher_fraction = fisher_fraction
        self.line_search_steps = line_search_steps
        self.backtrack_ratio = backtrack_ratio
        self.chunk_size = chunk_size

        self._rng = np.random.default_rng(seed)
        self._scratch: Optional[PolicyNetwork] = None

    @property
    def variables(self):
        return self.policy.trainable_variables

    # ------------------------------------------------------------------
    # Vector helpers
    # ------------------------------------------------------------------

    def _flatten(self, tensors: Sequence[tf.Tensor]) -> np.ndarray:
        return np.concatenate([np.asarray(t, dtype=np.float64).ravel() for t in tensors])

    def _unflatten(self, vector: np.ndarray) -> List[tf.Tensor]:
        parts = []
        offset = 0
        for variable in self.variables:
            size = int(np.prod(variable.shape))
            part = vector[offset:offset + size].reshape(tuple(variable.shape))
            parts.append(tf.convert_to_tensor(part, dtype=tf.float32))
            offset += size
        return parts

    def _zeros(self) -> List[tf.Tensor]:
        return [tf.zeros(tuple(v.shape), dtype=tf.float32) for v in self.variables]

    # ------------------------------------------------------------------
    # Batch preparation
    # ------------------------------------------------------------------

    def compute_advantages(self, trajectories: Sequence[Trajectory]) -> Tuple[List[np.ndarray], Dict[str, float]]:
        """
        Compute advantages Q - baseline for every trajectory.

        The baseline is the mean action value over the whole batch.
        """
        values = [compute_action_values(t.rewards, self.gamma) for t in trajectories]
        all_values = np.concatenate(values)
        baseline = float(np.mean(all_values))
        advantages = [v - baseline for v in values]
        all_advantages = all_values - baseline
        stats = {
            'q_mean': baseline,
            'advantage_mean': float(np.mean(all_advantages)),
            'q_std': float(np.std(all_values)),
            'advantage_std': float(np.std(all_advantages)),
        }
        return advantages, stats

    def _iter_chunks(
        self,
        trajectories: Sequence[Trajectory],
        advantages: Sequence[np.ndarray],
    ) -> Iterator[_Chunk]:
        for start in range(0, len(trajectories), self.chunk_size):
            end = start + self.chunk_size
            yield _make_chunk(trajectories[start:end], advantages[start:end])

    def _select_subsample(self, num_trajectories: int) -> np.ndarray:
        count = max(1, int(round(self.fisher_fraction * num_trajectories)))
        count = min(count, num_trajectories)
        return np.sort(self._rng.choice(num_trajectories, size=count, replace=False))

    # ------------------------------------------------------------------
    # Gradient and curvature
    # ------------------------------------------------------------------

    def _policy_gradient(self, chunks: Iterator[_Chunk], num_steps: int) -> Tuple[List[tf.Tensor], float]:
        """Gradient of the surrogate objective, accumulated over chunks."""
        variables = self.variables
        total = self._zeros()
        objective_sum = 0.0
        for chunk in chunks:
            with tf.GradientTape() as tape:
                logits = self.policy(chunk.observations, mask=chunk.mask)
                log_probs = tf.gather(
                    tf.nn.log_softmax(logits, axis=-1), chunk.actions, batch_dims=2
                )
                ratio = tf.exp(log_probs - chunk.old_log_probs)
                objective = tf.reduce_sum(
                    tf.where(chunk.mask, ratio * chunk.advantages, 0.0)
                ) / num_steps
            grads = tape.gradient(
                objective, variables, unconnected_gradients=tf.UnconnectedGradients.ZERO
            )
            total = [t + g for t, g in zip(total, grads)]
            objective_sum += float(objective)
        return total, objective_sum

    def _fisher_vector_product(
        self,
        vector: np.ndarray,
        chunks: Sequence[_Chunk],
        num_steps: int,
    ) -> np.ndarray:
        """Damped product of the Fisher matrix (KL Hessian) with a vector."""
        variables = self.variables
        vector_parts = self._unflatten(vector)
        total = self._zeros()
        for chunk in chunks:
            with tf.GradientTape() as outer:
                with tf.GradientTape() as inner:
                    logits = self.policy(chunk.observations, mask=chunk.mask)
                    kl = categorical_kl(tf.stop_gradient(logits), logits)
                    mean_kl = tf.reduce_sum(tf.where(chunk.mask, kl, 0.0)) / num_steps
                kl_grads = inner.gradient(
                    mean_kl, variables, unconnected_gradients=tf.UnconnectedGradients.ZERO
                )
                grad_dot_vector = tf.add_n([
                    tf.reduce_sum(g * v) for g, v in zip(kl_grads, vector_parts)
                ])
            hvp = outer.gradient(
                grad_dot_vector, variables, unconnected_gradients=tf.UnconnectedGradients.ZERO
            )
            total = [t + h for t, h in zip(total, hvp)]
        return self._flatten(total) + self.cg_damping * vector

    def measure_kl(
        self,
        deltas: Sequence[tf.Tensor],
        chunks: Iterable[_Chunk],
        num_steps: int,
    ) -> float:
        """
        Mean KL between the rollout-time distributions and the policy
        with `deltas` added to its parameters.

        The candidate parameters live in a scratch copy of the network.
        """
        if self._scratch is None:
            self._scratch = clone_policy_network(self.policy)
        for target, source, delta in zip(
            self._scratch.trainable_variables, self.variables, deltas
        ):
            target.assign(tf.convert_to_tensor(source) + delta)

        kl_sum = 0.0
        for chunk in chunks:
            logits = self._scratch(chunk.observations, mask=chunk.mask)
            kl = categorical_kl(chunk.old_logits, logits)
            kl_sum += float(tf.reduce_sum(tf.where(chunk.mask, kl, 0.0)))
        return kl_sum / num_steps

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _zero_update(self, stats: Dict[str, float]) -> ParameterUpdate:
        return ParameterUpdate(self.variables, self._zeros(), stats)

    def compute_update(self, batch: RolloutSet) -> ParameterUpdate:
        """
        Compute one trust-region update for a batch of trajectories.

        Args:
            batch: Packed rollout set.

        Returns:
            ParameterUpdate for the policy's trainable variables.
        """
        stats: Dict[str, float] = {
            'num_steps': float(batch.num_steps),
            'num_trajectories': float(batch.num_trajectories),
        }
        trajectories = [t for t in batch.trajectories if t.length > 0]
        if not trajectories:
            logger.warning("Empty batch, skipping update")
            return self._zero_update(stats)

        num_steps = sum(t.length for t in trajectories)
        advantages, adv_stats = self.compute_advantages(trajectories)
        stats.update(adv_stats)

        gradient, surrogate = self._policy_gradient(
            self._iter_chunks(trajectories, advantages), num_steps
        )
        g = self._flatten(gradient)
        stats['surrogate'] = surrogate
        stats['grad_norm'] = float(np.linalg.norm(g))
        if not np.any(g):
            logger.info("Zero policy gradient, skipping update")
            return self._zero_update(stats)

        subsample = self._select_subsample(len(trajectories))
        sub_trajectories = [trajectories[i] for i in subsample]
        sub_advantages = [advantages[i] for i in subsample]
        sub_steps = sum(t.length for t in sub_trajectories)
        sub_chunks = list(self._iter_chunks(sub_trajectories, sub_advantages))
        stats['fisher_steps'] = float(sub_steps)

        def fvp(v: np.ndarray) -> np.ndarray:
            return self._fisher_vector_product(v, sub_chunks, sub_steps)

        direction, residual = conjugate_gradient(fvp, g, iters=self.cg_iters)
        stats['cg_residual'] = residual

        curvature = float(direction @ fvp(direction))
        if curvature <= 0 or not np.isfinite(curvature):
            logger.warning("Non-positive curvature %.3e, skipping update", curvature)
            return self._zero_update(stats)

        # Scale so that the predicted KL 0.5 * s^T F s equals max_kl
        scale = np.sqrt(2.0 * self.max_kl / curvature)
        full_step = scale * direction
        stats['predicted_kl'] = 0.5 * scale ** 2 * curvature

        # The trust region is checked on the whole batch, the curvature only on the subsample
        fraction = 1.0
        for _ in range(self.line_search_steps):
            step = fraction * full_step
            deltas = self._unflatten(step)
            kl = self.measure_kl(deltas, self._iter_chunks(trajectories, advantages), num_steps)
            if kl <= self.max_kl:
                stats['measured_kl'] = kl
                stats['step_fraction'] = fraction
                stats['expected_improvement'] = float(g @ step)
                return ParameterUpdate(self.variables, deltas, stats)
            logger.debug("Line search: kl=%.6f > %.6f at fraction %.4f", kl, self.max_kl, fraction)
            fraction *= self.backtrack_ratio

        logger.warning("Line search failed to satisfy the trust region, skipping update")
        stats['step_fraction'] = 0.0
        return self._zero_update(stats)
