"""
Recurrent policy network for TRPO on Pong.

The policy is a fixed stack: an input stacker, a convolutional feature
extractor, a single-layer vanilla RNN and a zero-initialized linear head
producing action logits. No value network is used; action values come from
discounted returns.
"""

import logging
from typing import Dict, Any, Optional, Tuple

import numpy as np
import tensorflow as tf
from tensorflow import keras
from tensorflow.keras import layers

logger = logging.getLogger(__name__)


class SolidColorConv2D(layers.Conv2D):
    """Conv2D that can remove its response to solid-color inputs."""

    def project_out_solid_colors(self) -> None:
        """
        Make every filter sum to zero over each input channel.

        The kernel has shape (kh, kw, in, out); the spatial mean is removed
        separately for every (in, out) pair, so a uniform input channel
        produces no activation beyond the bias.
        """
        kernel = tf.convert_to_tensor(self.kernel)
        mean = tf.reduce_mean(kernel, axis=(0, 1), keepdims=True)
        self.kernel.assign(kernel - mean)

    def boost_biases(self) -> None:
        self.bias.assign_add(tf.ones_like(tf.convert_to_tensor(self.bias)))


class SolidColorDense(layers.Dense):
    """Dense layer that can remove its response to solid-color inputs."""

    def project_out_solid_colors(self) -> None:
        """Subtract, for every output unit, the mean weight over its inputs."""
        kernel = tf.convert_to_tensor(self.kernel)
        mean = tf.reduce_mean(kernel, axis=0, keepdims=True)
        self.kernel.assign(kernel - mean)

    def boost_biases(self) -> None:
        self.bias.assign_add(tf.ones_like(tf.convert_to_tensor(self.bias)))


class FrameStacker(layers.Layer):
    """
    Input stage of the stack.

    Converts the integer frame stream to float32. Each timestep carries a
    single channel-last frame, so no temporal stacking happens here.
    """

    def call(self, inputs: tf.Tensor) -> tf.Tensor:
        return tf.cast(inputs, tf.float32)


class PolicyNetwork(keras.Model):
    """
    Recurrent policy for discrete actions.

    Architecture:
    - FrameStacker
    - Rescaling(input_scale)
    - Conv2D: 16 filters, 4x4 kernel, stride 2, tanh
    - Conv2D: 32 filters, 4x4 kernel, stride 2, tanh
    - Flatten, Dense: hidden_size units, tanh
    - SimpleRNN: hidden_size units, tanh
    - Dense: num_actions logits, zero initialized
    """

    def __init__(
        self,
        num_actions: int = 6,
        frame_shape: Tuple[int, int, int] = (105, 80, 2),
        hidden_size: int = 128,
        input_scale: float = 0.01,
        name: str = "policy_network",
    ):
        """
        Initialize the policy network.

        Args:
            num_actions: Number of discrete actions.
            frame_shape: Shape (H, W, D) of one observation.
            hidden_size: Width of the dense and recurrent layers.
            input_scale: Scale applied to raw pixel values.
            name: Model name.
        """
        super().__init__(name=name)
        # The mask is consumed by the recurrent layer and passed through to the logits
        self.supports_masking = True

        self.num_actions = int(num_actions)
        self.frame_shape = tuple(int(d) for d in frame_shape)
        self.hidden_size = int(hidden_size)
        self.input_scale = float(input_scale)

        self.stacker = FrameStacker(name="stacker")
        self.features = keras.Sequential(
            [
                layers.Rescaling(self.input_scale, name="input_scale"),
                SolidColorConv2D(16, kernel_size=4, strides=2, activation="tanh", name="conv1"),
                SolidColorConv2D(32, kernel_size=4, strides=2, activation="tanh", name="conv2"),
                layers.Flatten(name="flatten"),
                SolidColorDense(self.hidden_size, activation="tanh", name="fc"),
            ],
            name="features",
        )
        self.recurrent = layers.RNN(
            layers.SimpleRNNCell(self.hidden_size, activation="tanh", name="rnn_cell"),
            return_sequences=True,
            return_state=True,
            name="recurrent",
        )
        self.head = layers.Dense(
            self.num_actions,
            kernel_initializer="zeros",
            bias_initializer="zeros",
            name="policy_logits",
        )

    def call(
        self,
        observations: tf.Tensor,
        mask: Optional[tf.Tensor] = None,
        initial_state: Optional[tf.Tensor] = None,
        training: bool = False,
    ) -> tf.Tensor:
        """
        Run the policy over observation sequences.

        Args:
            observations: Shape (batch, T, H, W, D).
            mask: Optional bool mask of shape (batch, T); False marks padding.
            initial_state: Optional recurrent state of shape (batch, hidden_size).
                           Zeros when omitted.
            training: Unused, for API compatibility.

        Returns:
            Action logits of shape (batch, T, num_actions).
        """
        x = self.stacker(observations)
        batch = tf.shape(x)[0]
        steps = tf.shape(x)[1]

        flat = tf.reshape(x, (-1,) + self.frame_shape)
        features = self.features(flat)
        features = tf.reshape(features, [batch, steps, self.hidden_size])

        if initial_state is None:
            initial_state = self.initial_state(batch)
        outputs, *_ = self.recurrent(features, initial_state=[initial_state], mask=mask)
        return self.head(outputs)

    def initial_state(self, batch_size) -> tf.Tensor:
        """Zero recurrent state for a new episode."""
        return tf.zeros([batch_size, self.hidden_size], dtype=tf.float32)

    @tf.function(reduce_retracing=True)
    def sample_actions(
        self,
        observations: tf.Tensor,
        state: tf.Tensor,
    ) -> Tuple[tf.Tensor, tf.Tensor, tf.Tensor, tf.Tensor]:
        """
        Advance the recurrent state by one step and sample actions.

        Args:
            observations: Batch of single observations, shape (batch, H, W, D).
            state: Recurrent state, shape (batch, hidden_size).

        Returns:
            actions: Sampled actions, shape (batch,).
            log_probs: Log probabilities of sampled actions, shape (batch,).
            logits: Action logits, shape (batch, num_actions).
            new_state: Updated recurrent state.
        """
        x = self.stacker(observations)
        features = self.features(x)
        output, new_states = self.recurrent.cell(features, [state])
        logits = self.head(output)

        actions = tf.random.categorical(logits, num_samples=1, dtype=tf.int32)
        actions = tf.squeeze(actions, axis=-1)
        log_probs = tf.gather(tf.nn.log_softmax(logits, axis=-1), actions, batch_dims=1)

        return actions, log_probs, logits, new_states[0]

    def parameter_names(self) -> list:
        """Names of the trainable variables, in the same stable order."""
        return [v.path for v in self.trainable_variables]

    def get_config(self) -> Dict[str, Any]:
        return {
            "num_actions": self.num_actions,
            "frame_shape": list(self.frame_shape),
            "hidden_size": self.hidden_size,
            "input_scale": self.input_scale,
        }


def setup_vision_layers(network: PolicyNetwork, boost_biases: bool = False) -> None:
    """
    Prepare the feature extractor after construction.

    Every layer offering project_out_solid_colors() gets it applied, so the
    freshly initialized network cannot respond to solid-color frames. Bias
    boosting is a diagnostic option.
    """
    for layer in network.features.layers:
        if hasattr(layer, "project_out_solid_colors"):
            layer.project_out_solid_colors()
            if boost_biases:
                layer.boost_biases()


def create_policy_network(
    num_actions: int = 6,
    frame_shape: Tuple[int, int, int] = (105, 80, 2),
    hidden_size: int = 128,
    input_scale: float = 0.01,
    boost_biases: bool = False,
) -> PolicyNetwork:
    """
    Factory function to create, build and initialize a policy network.

    Args:
        num_actions: Number of discrete actions.
        frame_shape: Observation shape (H, W, D).
        hidden_size: Width of the dense and recurrent layers.
        input_scale: Scale applied to raw pixel values.
        boost_biases: Add a unit bias to the vision layers.

    Returns:
        Built PolicyNetwork instance.
    """
    network = PolicyNetwork(
        num_actions=num_actions,
        frame_shape=frame_shape,
        hidden_size=hidden_size,
        input_scale=input_scale,
    )

    # Build the network with a dummy sequence
    dummy_input = tf.zeros((1, 1) + tuple(frame_shape), dtype=tf.int16)
    _ = network(dummy_input)

    setup_vision_layers(network, boost_biases=boost_biases)
    return network


def clone_policy_network(policy: PolicyNetwork) -> PolicyNetwork:
    """Build a network with the same architecture and parameter values."""
    config = policy.get_config()
    clone = create_policy_network(
        num_actions=config["num_actions"],
        frame_shape=tuple(config["frame_shape"]),
        hidden_size=config["hidden_size"],
        input_scale=config["input_scale"],
    )
    for target, source in zip(clone.trainable_variables, policy.trainable_variables):
        target.assign(source)
    return clone


def count_parameters(model: keras.Model) -> int:
    """Count trainable parameters in a model."""
    return int(sum(np.prod(v.shape) for v in model.trainable_variables))
