import numpy as np
from typing import List, Optional, Sequence, Tuple
import logging
import os

from .activations import ReLU, Softmax
from .errors import InvalidInputError, InvalidLabelError, ModelSaveError
from .features import Sample
from .layer import Conv1D, FullyConnected, Layer

# --- Loss ---

PROBABILITY_FLOOR = 1e-7    # Smallest probability passed to log()
MAX_LOSS = 10.0             # Per-sample loss cap
DEFAULT_LOSS_CEILING = 5.0  # Samples above this loss are not trained on
DEFAULT_CLIP_NORM = 1.0

# --- Model file fields (little-endian) ---
# [input_dim][num_labels], then per layer [rows][cols][rows*cols weights][rows biases]
HEADER_DTYPE = np.dtype('<i4')
PARAM_DTYPE = np.dtype('<f8')


def cross_entropy_loss(probabilities: np.ndarray, label: int) -> float:
    """
    Cross-entropy of one prediction: -log(max(p[label], 1e-7)), capped at MAX_LOSS.

    Paired with a softmax output, the gradient w.r.t. the logits is simply
    probabilities - one_hot(label), which the network computes in train_batch.
    """
    probability = max(float(probabilities[label]), PROBABILITY_FLOOR)
    return min(-float(np.log(probability)), MAX_LOSS)


def clip_by_norm(gradient: np.ndarray, max_norm: float) -> np.ndarray:
    """Rescales `gradient` so that its L2 norm does not exceed max_norm."""
    norm = float(np.linalg.norm(gradient))
    if norm > max_norm:
        return gradient * (max_norm / norm)
    return gradient


def _read_array(data: bytes, offset: int, dtype: np.dtype, count: int) -> Tuple[np.ndarray, int]:
    end = offset + dtype.itemsize * count
    if count < 0 or end > len(data):
        raise ValueError(f"model file is truncated at byte {offset}")
    return np.frombuffer(data, dtype=dtype, count=count, offset=offset), end


class Network:
    """
    Feedforward classifier for encoded sessions.

    Stack: [Conv1D -> ReLU] -> (FullyConnected -> ReLU) * len(hidden_sizes)
           -> FullyConnected -> Softmax

    Training is per-sample stochastic gradient descent: every sample of a batch
    runs its own forward and backward pass, and each layer updates its own
    parameters during the backward pass. Every gradient handed to a layer is
    clipped to an L2 norm of at most `clip_norm`.

    The network holds no lock; callers must not run train_batch, evaluate, save
    or load concurrently on the same instance.
    """

    def __init__(
        self,
        input_dim: int,
        num_labels: int,
        hidden_sizes: Sequence[int] = (64,),
        conv_channels: int = 0,
        conv_kernel_size: int = 5,
        conv_stride: int = 2,
        conv_padding: int = 2,
        weight_init: str = 'xavier',
        loss_ceiling: float = DEFAULT_LOSS_CEILING,
        clip_norm: float = DEFAULT_CLIP_NORM,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Initializes the network.

        Args:
            input_dim: Length of the encoded feature vector.
            num_labels: Number of site labels (output units).
            hidden_sizes: Sizes of the fully connected hidden layers.
            conv_channels: Output channels of an optional Conv1D front end (0 disables it).
            conv_kernel_size, conv_stride, conv_padding: Conv1D geometry.
            weight_init: 'xavier' or 'he' for the fully connected layers.
            loss_ceiling: Samples whose loss exceeds this are skipped during training.
            clip_norm: Maximum L2 norm of any back-propagated gradient.
            rng: Random generator for weight initialization.
        """
        if input_dim <= 0:
            raise ValueError(f"input_dim must be positive, got {input_dim}")
        if num_labels <= 0:
            raise ValueError(f"num_labels must be positive, got {num_labels}")
        if clip_norm <= 0:
            raise ValueError(f"clip_norm must be positive, got {clip_norm}")

        self.input_dim = input_dim
        self.num_labels = num_labels
        self.loss_ceiling = loss_ceiling
        self.clip_norm = clip_norm
        self.rng = rng if rng is not None else np.random.default_rng()
        # Everything needed to rebuild an identically shaped network
        self.architecture = {
            'hidden_sizes': tuple(hidden_sizes),
            'conv_channels': conv_channels,
            'conv_kernel_size': conv_kernel_size,
            'conv_stride': conv_stride,
            'conv_padding': conv_padding,
            'weight_init': weight_init,
            'loss_ceiling': loss_ceiling,
            'clip_norm': clip_norm,
        }

        self.layers: List[Layer] = []
        current_size = input_dim
        if conv_channels > 0:
            conv = Conv1D(1, conv_channels, conv_kernel_size, stride=conv_stride,
                          padding=conv_padding, rng=self.rng, id=0)
            current_size = conv.output_size_for(input_dim)
            if current_size <= 0:
                raise ValueError(f"input_dim {input_dim} is too short for a kernel of {conv_kernel_size}")
            self.layers.append(conv)
        for size in list(hidden_sizes) + [num_labels]:
            self.layers.append(FullyConnected(current_size, size, weight_init=weight_init,
                                              rng=self.rng, id=len(self.layers)))
            current_size = size

        self.hidden_activation = ReLU()
        self.output_activation = Softmax()
        self._hidden_outputs: List[np.ndarray] = []  # ReLU outputs of the last forward pass
        self.skipped_samples = 0

        logging.info(f"Created network: input_dim={input_dim}, num_labels={num_labels}, "
                     f"layers={[repr(layer) for layer in self.layers]}")

    # --- Inference ---

    def forward(self, features: np.ndarray) -> np.ndarray:
        """
        Runs one feature vector through the stack.

        Args:
            features: Encoded session, shape (input_dim,).

        Returns:
            Probability distribution over labels, shape (num_labels,).

        Raises:
            InvalidInputError: If the vector has the wrong length or contains NaN/Inf.
        """
        try:
            x = np.asarray(features, dtype=float).reshape(-1)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Features are not numeric: {e}") from e
        if x.shape[0] != self.input_dim:
            raise InvalidInputError(f"Expected {self.input_dim} features, got {x.shape[0]}")
        if not np.all(np.isfinite(x)):
            raise InvalidInputError("Features contain NaN or Inf")

        self._hidden_outputs = []
        output = x
        last_index = len(self.layers) - 1
        for i, layer in enumerate(self.layers):
            z = layer.forward(output)
            if i < last_index:
                output = self.hidden_activation.forward(z)
                self._hidden_outputs.append(output)
            else:
                output = self.output_activation.forward(z)
        return output

    def predict(self, features: np.ndarray) -> Tuple[int, np.ndarray]:
        """Returns (most likely label, probabilities) for one feature vector."""
        probabilities = self.forward(features)
        return int(np.argmax(probabilities)), probabilities

    # --- Training ---

    def compute_loss(self, probabilities: np.ndarray, label: int) -> float:
        """
        Cross-entropy loss of one prediction.

        Raises:
            InvalidLabelError: If label is outside [0, num_labels).
        """
        if not isinstance(label, (int, np.integer)) or not 0 <= label < self.num_labels:
            raise InvalidLabelError(f"Label {label!r} is outside [0, {self.num_labels})", labels=[label])
        return cross_entropy_loss(probabilities, int(label))

    def _clip(self, gradient: np.ndarray) -> np.ndarray:
        if not np.all(np.isfinite(gradient)):
            logging.warning("NaN or Inf detected in gradient; replacing with finite values")
            gradient = np.nan_to_num(gradient, nan=0.0, posinf=self.clip_norm, neginf=-self.clip_norm)
        return clip_by_norm(gradient, self.clip_norm)

    def backward(self, gradient: np.ndarray, learning_rate: float) -> np.ndarray:
        """
        Back-propagates the output gradient (dL/dlogits) through all layers.

        The gradient is clipped before the output layer and after every layer's
        backward pass, and gated by the ReLU derivative at each hidden boundary.
        Must follow a forward() call on the same sample.

        Returns:
            Gradient w.r.t. the network input.
        """
        gradient = self._clip(gradient)
        for i in reversed(range(len(self.layers))):
            gradient = self._clip(self.layers[i].backward(gradient, learning_rate))
            if i > 0:
                gradient = gradient * self.hidden_activation.backward(self._hidden_outputs[i - 1])
        return gradient

    def train_batch(self, batch: Sequence[Sample], learning_rate: float) -> float:
        """
        Trains on each sample of the batch in turn.

        Samples whose features are invalid, or whose loss is NaN/Inf or above
        loss_ceiling, are skipped: they are logged, not back-propagated and not
        counted in the returned average.

        Samples with an out-of-range label are isolated: they are skipped, every
        other sample of the batch is still trained, and once the batch is done an
        InvalidLabelError listing their batch positions is raised.

        Args:
            batch: Samples to train on.
            learning_rate: Step size for the parameter updates.

        Returns:
            Mean loss of the trained samples, or 0.0 if none were trained.

        Raises:
            InvalidLabelError: After the batch, if any sample had an invalid label.
        """
        total_loss = 0.0
        trained = 0
        invalid_positions: List[int] = []
        invalid_labels: List[int] = []

        for position, sample in enumerate(batch):
            try:
                probabilities = self.forward(sample.features)
            except InvalidInputError as e:
                logging.warning(f"Skipping sample {position}: {e}")
                self.skipped_samples += 1
                continue

            try:
                loss = self.compute_loss(probabilities, sample.label)
            except InvalidLabelError as e:
                logging.error(f"Skipping sample {position}: {e}")
                invalid_positions.append(position)
                invalid_labels.append(sample.label)
                continue

            if not np.isfinite(loss) or loss > self.loss_ceiling:
                logging.warning(f"Skipping sample {position}: loss {loss:.4f} exceeds ceiling {self.loss_ceiling}")
                self.skipped_samples += 1
                continue

            gradient = probabilities.copy()
            gradient[sample.label] -= 1.0
            self.backward(gradient, learning_rate)

            total_loss += loss
            trained += 1

        average_loss = total_loss / trained if trained > 0 else 0.0

        if invalid_positions:
            raise InvalidLabelError(
                f"{len(invalid_positions)} sample(s) with labels outside [0, {self.num_labels}) "
                f"at batch positions {invalid_positions}",
                labels=invalid_labels, positions=invalid_positions, average_loss=average_loss,
            )
        return average_loss

    # --- Evaluation ---

    def evaluate(self, samples: Sequence[Sample]) -> float:
        """
        Fraction of samples whose argmax prediction equals their label.

        Samples that make forward() fail are skipped and left out of the
        denominator. Returns 0.0 if no sample could be evaluated.
        """
        correct = 0
        evaluated = 0
        for sample in samples:
            try:
                probabilities = self.forward(sample.features)
            except InvalidInputError as e:
                logging.warning(f"Skipping sample during evaluation: {e}")
                continue
            evaluated += 1
            if int(np.argmax(probabilities)) == sample.label:
                correct += 1
        return correct / evaluated if evaluated > 0 else 0.0

    def confusion_matrix(self, samples: Sequence[Sample]) -> np.ndarray:
        """(num_labels, num_labels) counts; rows are true labels, columns predictions."""
        matrix = np.zeros((self.num_labels, self.num_labels), dtype=int)
        for sample in samples:
            if not 0 <= sample.label < self.num_labels:
                logging.warning(f"Label {sample.label} is outside [0, {self.num_labels}); not counted")
                continue
            try:
                predicted, _ = self.predict(sample.features)
            except InvalidInputError as e:
                logging.warning(f"Skipping sample in confusion matrix: {e}")
                continue
            matrix[sample.label, predicted] += 1
        return matrix

    # --- Persistence ---

    def save(self, path: str):
        """
        Writes the model in the binary layout
        [input_dim][num_labels] then, per layer, [rows][cols][weights][biases].

        Raises:
            ModelSaveError: If the file cannot be written.
        """
        chunks = [np.array([self.input_dim, self.num_labels], dtype=HEADER_DTYPE).tobytes()]
        for layer in self.layers:
            rows, cols = layer.param_shape
            chunks.append(np.array([rows, cols], dtype=HEADER_DTYPE).tobytes())
            chunks.append(np.ascontiguousarray(layer.weights.reshape(rows, cols), dtype=PARAM_DTYPE).tobytes())
            chunks.append(np.ascontiguousarray(layer.biases, dtype=PARAM_DTYPE).tobytes())

        try:
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(path, 'wb') as f:
                f.write(b''.join(chunks))
        except OSError as e:
            logging.error(f"Error saving model to {path}: {e}")
            raise ModelSaveError(f"Could not save model to {path}: {e}") from e

        logging.info(f"Model saved to {path}")

    @staticmethod
    def read_header(path: str) -> Optional[Tuple[int, int]]:
        """Returns (input_dim, num_labels) from a model file, or None if unreadable."""
        try:
            with open(path, 'rb') as f:
                data = f.read(2 * HEADER_DTYPE.itemsize)
            header, _ = _read_array(data, 0, HEADER_DTYPE, 2)
        except (OSError, ValueError):
            return None
        return int(header[0]), int(header[1])

    @classmethod
    def load(cls, path: str, expected_input_dim: int, expected_num_labels: int, **architecture) -> 'Network':
        """
        Loads a model saved by save().

        A missing or unreadable file, a header whose dimensions differ from the
        expected ones, a layer whose shape differs from the network built from
        `architecture`, or a truncated/oversized file are all recoverable: a
        warning is logged and a freshly initialized network is returned.

        Args:
            path: Model file.
            expected_input_dim: Feature vector length the caller will feed.
            expected_num_labels: Number of labels the caller expects.
            **architecture: Network constructor arguments (hidden_sizes, conv_channels, rng, ...).

        Returns:
            A Network with expected_input_dim inputs and expected_num_labels outputs.
        """
        network = cls(expected_input_dim, expected_num_labels, **architecture)

        try:
            with open(path, 'rb') as f:
                data = f.read()
        except FileNotFoundError:
            logging.warning(f"Model file not found: {path}. Using a freshly initialized model.")
            return network
        except OSError as e:
            logging.warning(f"Could not read model file {path}: {e}. Using a freshly initialized model.")
            return network

        try:
            network._restore(data)
        except ValueError as e:
            logging.warning(f"Cannot restore model from {path}: {e}. Using a freshly initialized model.")
            return network

        logging.info(f"Model loaded from {path}")
        return network

    def _restore(self, data: bytes):
        """Validates the whole file against this network, then copies the parameters in."""
        header, offset = _read_array(data, 0, HEADER_DTYPE, 2)
        input_dim, num_labels = int(header[0]), int(header[1])
        if (input_dim, num_labels) != (self.input_dim, self.num_labels):
            raise ValueError(f"file dimensions ({input_dim}, {num_labels}) do not match "
                             f"expected ({self.input_dim}, {self.num_labels})")

        parameters = []
        for layer in self.layers:
            shape, offset = _read_array(data, offset, HEADER_DTYPE, 2)
            rows, cols = int(shape[0]), int(shape[1])
            if (rows, cols) != layer.param_shape:
                raise ValueError(f"layer {layer.id} has shape ({rows}, {cols}) in the file, "
                                 f"expected {layer.param_shape}")
            weights, offset = _read_array(data, offset, PARAM_DTYPE, rows * cols)
            biases, offset = _read_array(data, offset, PARAM_DTYPE, rows)
            parameters.append((weights.reshape(rows, cols), biases))

        if offset != len(data):
            raise ValueError(f"{len(data) - offset} unexpected trailing bytes (extra layers?)")

        for layer, (weights, biases) in zip(self.layers, parameters):
            layer.set_parameters(weights, biases)

    def summary(self) -> str:
        """
        Generates a text summary of the network architecture and parameters.

        Returns:
            A string containing the network summary.
        """
        summary_str = "\n" + "=" * 50 + "\n"
        summary_str += "Session Classifier Summary\n"
        summary_str += "=" * 50 + "\n"
        summary_str += f"Input dim: {self.input_dim}, labels: {self.num_labels}\n"
        summary_str += "-" * 50 + "\n"
        total_params = 0
        for layer in self.layers:
            total_params += layer.num_parameters()
            summary_str += layer.summary()
            summary_str += "-" * 50 + "\n"
        summary_str += f"Total Parameters: {total_params:,}\n"
        summary_str += "=" * 50 + "\n"
        return summary_str
