import numpy as np
from typing import Optional, Tuple
import logging


class Layer:
    """
    Base class for the trainable layers of the network.

    Every layer exclusively owns a weight array and a bias vector. Layers work on
    one sample at a time: `forward` takes a flat 1D vector and returns a flat 1D
    vector, and `backward` receives the gradient w.r.t. that output, updates the
    layer's own parameters in place and returns the gradient w.r.t. the input.

    The set of layer types is closed: FullyConnected and Conv1D.
    """

    def __init__(self, id: int = 0):
        self.id = id
        self.weights: Optional[np.ndarray] = None
        self.biases: Optional[np.ndarray] = None
        # Gradients from the most recent backward pass (inspection only)
        self.gradients: Optional[np.ndarray] = None
        self.bias_gradients: Optional[np.ndarray] = None

    def forward(self, inputs: np.ndarray) -> np.ndarray:
        """Performs the forward pass for one sample."""
        raise NotImplementedError("Each layer must implement its own forward pass.")

    def backward(self, gradients: np.ndarray, learning_rate: float) -> np.ndarray:
        """
        Performs the backward pass for one sample and updates the parameters.

        Args:
            gradients: Gradient of the loss w.r.t. this layer's output.
            learning_rate: Step size for the in-place parameter update.

        Returns:
            Gradient of the loss w.r.t. this layer's input.
        """
        raise NotImplementedError("Each layer must implement its own backward pass.")

    @property
    def param_shape(self) -> Tuple[int, int]:
        """(rows, cols) of the weights as written to a model file."""
        raise NotImplementedError

    def set_parameters(self, weights: np.ndarray, biases: np.ndarray):
        """Replaces the parameters with copies of `weights` (param_shape) and `biases`."""
        raise NotImplementedError

    def num_parameters(self) -> int:
        return int(self.weights.size + self.biases.size)


class FullyConnected(Layer):
    """
    Fully connected layer: z = W @ x + b.

    Key Attributes:
        weights (np.ndarray): Weight matrix of shape (output_size, input_size). Each row
                              holds the weights of one output unit.
        biases (np.ndarray): Bias vector of shape (output_size,).
        inputs (np.ndarray): The input seen by the last forward pass, shape (input_size,).
    """

    def __init__(
        self,
        input_size: int,
        output_size: int,
        weight_init: str = 'xavier',
        rng: Optional[np.random.Generator] = None,
        id: int = 0,
    ):
        """
        Initializes the layer.

        Args:
            input_size: Number of input features.
            output_size: Number of output units.
            weight_init: 'xavier' (uniform, limit sqrt(6 / (fan_in + fan_out))) or
                         'he' (Gaussian, std sqrt(2 / fan_in)).
            rng: Random generator used for initialization.
            id: Position of the layer in the network (for logging).
        """
        super().__init__(id=id)
        if input_size <= 0 or output_size <= 0:
            raise ValueError(f"Layer {id}: sizes must be positive, got ({output_size}, {input_size})")
        self.input_size = input_size
        self.output_size = output_size
        self.weight_init = weight_init
        rng = rng if rng is not None else np.random.default_rng()

        if weight_init == 'xavier':
            limit = np.sqrt(6.0 / (input_size + output_size))
            self.weights = rng.uniform(-limit, limit, (output_size, input_size))
            logging.debug(f"Layer #{self.id}: Initializing weights with Xavier uniform ({limit:.4f}).")
        elif weight_init == 'he':
            scale = np.sqrt(2.0 / input_size)
            self.weights = rng.standard_normal((output_size, input_size)) * scale
            logging.debug(f"Layer #{self.id}: Initializing weights with He normal ({scale:.4f}).")
        else:
            raise ValueError(f"Layer {id}: Unknown weight_init '{weight_init}'. Use 'xavier' or 'he'.")

        self.biases = np.zeros(output_size, dtype=float)
        self.inputs = None

        logging.debug(
            f"Layer #{self.id} created: FullyConnected input_size={input_size}, "
            f"output_size={output_size}, weight_shape={self.weights.shape}"
        )

    def forward(self, inputs: np.ndarray) -> np.ndarray:
        inputs = np.asarray(inputs, dtype=float).reshape(-1)
        if inputs.shape[0] != self.input_size:
            raise ValueError(f"Layer {self.id}: Expected {self.input_size} inputs, got {inputs.shape[0]}")

        self.inputs = inputs
        return self.weights @ inputs + self.biases

    def backward(self, gradients: np.ndarray, learning_rate: float) -> np.ndarray:
        """
        Computes dW = outer(grad, x), db = grad and dX = W.T @ grad, then applies
        W -= lr * dW and b -= lr * db.

        The input gradient uses the weights from before the update.

        Raises:
            RuntimeError: If forward() has not been called.
            ValueError: If the incoming gradient has the wrong size.
        """
        if self.inputs is None:
            raise RuntimeError(f"Layer {self.id}: Must call forward() before backward().")

        gradients = np.asarray(gradients, dtype=float).reshape(-1)
        if gradients.shape[0] != self.output_size:
            raise ValueError(f"Layer {self.id}: Expected {self.output_size} incoming gradients, got {gradients.shape[0]}")

        dW = np.outer(gradients, self.inputs)     # (output_size, input_size)
        db = gradients.copy()                     # (output_size,)
        prev_layer_grad = self.weights.T @ gradients  # (input_size,)

        self.gradients = dW
        self.bias_gradients = db

        self.weights -= learning_rate * dW
        self.biases -= learning_rate * db

        return prev_layer_grad

    @property
    def param_shape(self) -> Tuple[int, int]:
        return self.output_size, self.input_size

    def set_parameters(self, weights: np.ndarray, biases: np.ndarray):
        weights = np.asarray(weights, dtype=float)
        biases = np.asarray(biases, dtype=float).reshape(-1)
        if weights.shape != self.param_shape or biases.shape != (self.output_size,):
            raise ValueError(
                f"Layer {self.id}: parameter shapes {weights.shape}/{biases.shape} "
                f"do not match expected {self.param_shape}/({self.output_size},)"
            )
        self.weights = weights.copy()
        self.biases = biases.copy()

    def summary(self) -> str:
        return (
            f"Layer {self.id}: FullyConnected\n"
            f"  Input size: {self.input_size}\n"
            f"  Output size: {self.output_size}\n"
            f"  Weights shape: {self.weights.shape}\n"
            f"  Parameters: {self.num_parameters():,}\n"
        )

    def __repr__(self):
        return (f"FullyConnected(id={self.id}, input_size={self.input_size}, "
                f"output_size={self.output_size})")


class Conv1D(Layer):
    """
    1D convolution over a flat, channel-major input vector.

    The input of length in_channels * L_in is viewed as (in_channels, L_in); the
    output (out_channels, L_out) is flattened the same way, with
    L_out = (L_in + 2 * padding - kernel_size) // stride + 1.

    Kernel shape: (out_channels, in_channels, kernel_size)
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_size: int,
        stride: int = 1,
        padding: int = 0,
        rng: Optional[np.random.Generator] = None,
        id: int = 0,
    ):
        super().__init__(id=id)
        if min(in_channels, out_channels, kernel_size, stride) <= 0 or padding < 0:
            raise ValueError(f"Layer {id}: invalid Conv1D configuration "
                             f"({in_channels}, {out_channels}, k={kernel_size}, s={stride}, p={padding})")
        self.C_in = in_channels
        self.C_out = out_channels
        self.K_len = kernel_size
        self.S_len = stride
        self.padding = padding
        rng = rng if rng is not None else np.random.default_rng()

        # He initialization
        scale = np.sqrt(2.0 / (self.C_in * self.K_len))
        self.weights = rng.standard_normal((self.C_out, self.C_in, self.K_len)) * scale
        self.biases = np.zeros(self.C_out)  # One bias per output channel
        self.cache = {}

        logging.debug(
            f"Layer #{self.id} created: Conv1D in_channels={in_channels}, out_channels={out_channels}, "
            f"kernel_size={kernel_size}, stride={stride}, padding={padding}"
        )

    def output_length(self, input_length: int) -> int:
        return (input_length + 2 * self.padding - self.K_len) // self.S_len + 1

    def output_size_for(self, input_size: int) -> int:
        """Flat output length for a flat input of `input_size` values."""
        return self.C_out * self.output_length(input_size // self.C_in)

    def _window(self, k: int, L_out: int) -> slice:
        # Padded input positions touched by kernel offset k, one per output position
        return slice(k, k + self.S_len * (L_out - 1) + 1, self.S_len)

    def forward(self, inputs: np.ndarray) -> np.ndarray:
        inputs = np.asarray(inputs, dtype=float).reshape(-1)
        if inputs.shape[0] % self.C_in != 0:
            raise ValueError(f"Layer {self.id}: input length {inputs.shape[0]} is not a multiple of {self.C_in} channels")
        L_in = inputs.shape[0] // self.C_in
        L_out = self.output_length(L_in)
        if L_out <= 0:
            raise ValueError(f"Layer {self.id}: input length {L_in} is too short for kernel {self.K_len}")

        A_prev = inputs.reshape(self.C_in, L_in)
        A_prev_padded = np.pad(A_prev, ((0, 0), (self.padding, self.padding)),
                               mode='constant', constant_values=0.0)

        # Z[f, l] = b[f] + sum_c sum_k W[f, c, k] * A_padded[c, l * stride + k]
        Z = np.repeat(self.biases[:, None], L_out, axis=1)
        for k in range(self.K_len):
            Z += self.weights[:, :, k] @ A_prev_padded[:, self._window(k, L_out)]

        self.cache['A_prev_padded'] = A_prev_padded
        self.cache['L_in'] = L_in
        self.cache['L_out'] = L_out
        return Z.reshape(-1)

    def backward(self, gradients: np.ndarray, learning_rate: float) -> np.ndarray:
        """
        Correlates the incoming gradient with the cached input at each kernel
        offset for dW, sums it per channel for db, and scatters W * gradient back
        through the same offsets for the input gradient before unpadding.
        """
        if 'A_prev_padded' not in self.cache:
            raise RuntimeError(f"Layer {self.id}: Must call forward() before backward().")

        A_prev_padded = self.cache['A_prev_padded']
        L_in, L_out = self.cache['L_in'], self.cache['L_out']
        gradients = np.asarray(gradients, dtype=float).reshape(-1)
        if gradients.shape[0] != self.C_out * L_out:
            raise ValueError(f"Layer {self.id}: Expected {self.C_out * L_out} incoming gradients, got {gradients.shape[0]}")
        dZ = gradients.reshape(self.C_out, L_out)

        dW = np.zeros_like(self.weights)
        dA_prev_padded = np.zeros_like(A_prev_padded)
        for k in range(self.K_len):
            window = self._window(k, L_out)
            # (C_out, L_out) @ (L_out, C_in) -> (C_out, C_in)
            dW[:, :, k] = dZ @ A_prev_padded[:, window].T
            # (C_in, C_out) @ (C_out, L_out) -> (C_in, L_out)
            dA_prev_padded[:, window] += self.weights[:, :, k].T @ dZ
        db = np.sum(dZ, axis=1)

        self.gradients = dW
        self.bias_gradients = db

        self.weights -= learning_rate * dW
        self.biases -= learning_rate * db

        dA_prev = dA_prev_padded[:, self.padding:self.padding + L_in]
        return dA_prev.reshape(-1)

    @property
    def param_shape(self) -> Tuple[int, int]:
        return self.C_out, self.C_in * self.K_len

    def set_parameters(self, weights: np.ndarray, biases: np.ndarray):
        weights = np.asarray(weights, dtype=float)
        biases = np.asarray(biases, dtype=float).reshape(-1)
        if weights.size != self.weights.size or biases.shape != (self.C_out,):
            raise ValueError(
                f"Layer {self.id}: parameter shapes {weights.shape}/{biases.shape} "
                f"do not match expected {self.param_shape}/({self.C_out},)"
            )
        self.weights = weights.reshape(self.C_out, self.C_in, self.K_len).copy()
        self.biases = biases.copy()

    def summary(self) -> str:
        return (
            f"Layer {self.id}: Conv1D\n"
            f"  Channels: {self.C_in} -> {self.C_out}\n"
            f"  Kernel: {self.K_len}, stride {self.S_len}, padding {self.padding}\n"
            f"  Weights shape: {self.weights.shape}\n"
            f"  Parameters: {self.num_parameters():,}\n"
        )

    def __repr__(self):
        return (f"Conv1D(id={self.id}, in_channels={self.C_in}, out_channels={self.C_out}, "
                f"kernel_size={self.K_len}, stride={self.S_len}, padding={self.padding})")
