"""Exception types raised by the fingerprinting pipeline and network engine."""

from typing import List, Optional


class FingerprintError(Exception):
    """Base class for all errors raised by this package."""


class MalformedInputError(FingerprintError, ValueError):
    """A packet feature string or session could not be turned into features."""


class EmptySessionError(MalformedInputError):
    """A session contained no valid (size, direction) observations."""


class EmptyDatasetError(FingerprintError):
    """The feature table produced zero usable samples."""


class InvalidInputError(FingerprintError, ValueError):
    """A feature vector handed to the network is non-finite or has the wrong length."""


class InvalidLabelError(FingerprintError, ValueError):
    """
    One or more labels fall outside [0, num_labels).

    Attributes:
        labels: The offending label values.
        positions: Batch positions of the offending samples (empty when raised
                   by a single loss computation).
        average_loss: Mean loss of the samples that were trained in the same
                      batch, if the error was raised by train_batch.
    """

    def __init__(self, message: str, labels: Optional[List[int]] = None,
                 positions: Optional[List[int]] = None,
                 average_loss: Optional[float] = None):
        super().__init__(message)
        self.labels = labels or []
        self.positions = positions or []
        self.average_loss = average_loss


class ModelSaveError(FingerprintError, OSError):
    """The model file could not be written."""
