"""
Tests for the activation functions.
"""

import numpy as np
import pytest

from site_fingerprint.activations import ReLU, Softmax, relu, relu_derivative, softmax


class TestSoftmax:
    """Tests for the numerically stable softmax."""

    @pytest.mark.parametrize("logits", [
        [0.0, 0.0, 0.0],
        [1.0, 2.0, 3.0],
        [1000.0, -1000.0, 0.0],
        [-1e6, -1e6 + 1.0],
        [5.0],
    ])
    def test_is_a_probability_distribution(self, logits):
        """Entries are non-negative and sum to one, even for extreme logits."""
        probabilities = softmax(np.array(logits))

        assert np.all(probabilities >= 0.0)
        assert abs(probabilities.sum() - 1.0) < 1e-5

    def test_equal_logits_give_uniform_distribution(self):
        probabilities = softmax(np.full(4, 3.7))

        assert np.allclose(probabilities, 0.25)

    def test_shift_invariance(self):
        """Adding a constant to every logit does not change the result."""
        logits = np.array([0.5, -1.0, 2.0])

        assert np.allclose(softmax(logits), softmax(logits + 500.0))

    def test_non_finite_logits_still_produce_finite_output(self):
        probabilities = softmax(np.array([np.nan, np.inf, 1.0]))

        assert np.all(np.isfinite(probabilities))
        assert abs(probabilities.sum() - 1.0) < 1e-5

    def test_softmax_class_backward_passes_gradient_through(self):
        assert np.array_equal(Softmax().backward(np.array([0.2, -3.0])), np.ones(2))


class TestRelu:
    """Tests for ReLU and its derivative."""

    def test_relu_clamps_negatives(self):
        assert np.array_equal(relu(np.array([-2.0, 0.0, 3.0])), np.array([0.0, 0.0, 3.0]))

    def test_derivative_is_zero_at_and_below_zero(self):
        assert np.array_equal(relu_derivative(np.array([-1.0, 0.0, 0.5])), np.array([0.0, 0.0, 1.0]))

    def test_class_matches_functions(self):
        x = np.array([-0.3, 0.7, 0.0, 2.0])

        assert np.array_equal(ReLU().forward(x), relu(x))
        assert np.array_equal(ReLU().backward(x), relu_derivative(x))
