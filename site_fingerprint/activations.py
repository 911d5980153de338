import numpy as np
from typing import Union
import logging

# Upper bound on the argument passed to np.exp inside softmax
SOFTMAX_EXP_CLAMP = 80.0
# Lower bound on the softmax normalizer
SOFTMAX_SUM_FLOOR = 1e-7


def relu(x: np.ndarray) -> np.ndarray:
    """Elementwise max(0, x)."""
    return np.maximum(0.0, x)


def relu_derivative(x: np.ndarray) -> np.ndarray:
    """1.0 where x > 0, else 0.0.

    Used as a gate on upstream gradients (grad *= relu_derivative(activation_output)),
    so passing either the pre-activation or the ReLU output gives the same mask.
    """
    return np.where(x > 0, 1.0, 0.0)


def softmax(x: np.ndarray) -> np.ndarray:
    """Numerically stable softmax over a 1D vector of logits.

    The maximum is subtracted before exponentiating, the exponent argument is
    clamped to at most SOFTMAX_EXP_CLAMP and the normalizing sum is floored at
    SOFTMAX_SUM_FLOOR, so the result is always a finite probability vector.

    Args:
        x: Logits, shape (num_classes,).

    Returns:
        Probabilities of the same shape; entries >= 0 that sum to 1.
    """
    x = np.asarray(x, dtype=float)

    if np.any(np.isnan(x)) or np.any(np.isinf(x)):
        logging.warning(f"Softmax received NaN or inf inputs: min={np.nanmin(x)}, max={np.nanmax(x)}")
        x = np.nan_to_num(x, nan=0.0, posinf=1e3, neginf=-1e3)

    shifted = np.minimum(x - np.max(x), SOFTMAX_EXP_CLAMP)
    exp_x = np.exp(shifted)
    total = max(float(np.sum(exp_x)), SOFTMAX_SUM_FLOOR)
    return exp_x / total


class Activation:
    """Base class for the activation functions used between layers."""

    def forward(self, x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        """Compute the activation function value.

        Args:
            x: Input data (numpy array).

        Returns:
            Activated output.
        """
        raise NotImplementedError

    def backward(self, x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        """Compute the gradient gate for this activation, evaluated at x.

        Args:
            x: Values at which the derivative is evaluated.

        Returns:
            Derivative of the activation function evaluated at x.
        """
        raise NotImplementedError


class ReLU(Activation):
    """Rectified Linear Unit activation function.

    Mathematical form:
        forward: f(x) = max(0, x)
        backward: f'(x) = 1 if x > 0 else 0
    """

    def forward(self, x: np.ndarray) -> np.ndarray:
        """Compute ReLU activation: max(0, x)"""
        logging.debug(f"ReLU forward - input shape: {x.shape}")
        return relu(x)

    def backward(self, x: np.ndarray) -> np.ndarray:
        """Compute ReLU derivative: 1 if x > 0 else 0"""
        logging.debug(f"ReLU backward - input shape: {x.shape}")
        return relu_derivative(x)


class Softmax(Activation):
    """Softmax activation function for the output layer.

    Backward pass:
        Combined with cross-entropy loss, the gradient w.r.t. the logits
        simplifies to (probabilities - one_hot(label)). The network computes
        that directly, so `backward` returns ones and leaves the gradient
        unchanged.
    """

    def forward(self, x: np.ndarray) -> np.ndarray:
        return softmax(x)

    def backward(self, x: np.ndarray) -> np.ndarray:
        return np.ones_like(x)
