"""
Session feature encoding for encrypted-traffic website fingerprinting.

A captured session is an ordered list of (packet size, direction) observations.
This module turns each session into a fixed-length vector the network can
consume:

1. Every valid packet becomes a pair [normalized_size, direction], where
   normalized_size = clamp(log(size + 1) / log(1501), 0, 1).
2. Six session statistics are appended: mean, max, min and population std of
   the normalized sizes, the fraction of outbound packets and
   log(count + 1) / log(101).
3. Minority labels are oversampled with noisy copies until every label has as
   many samples as the largest one.
4. The packet-pair part of every vector is zero-padded to the longest session
   of the corpus. The statistics always stay in the last six slots.
5. The samples are shuffled and split into train and test sets by count.

The feature table read by `load_feature_table` is a CSV with the header
`site_label,packet_features`, e.g. `0,387_0;1492_1;1000_1;198_0`.
"""

import logging
import math
import os
from collections import defaultdict
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import EmptyDatasetError, EmptySessionError

MAX_PACKET_SIZE = 1500      # Largest expected frame size, maps to 1.0
COUNT_NORMALIZER = 100      # Packet count that maps to 1.0 in the log_count statistic
NUM_STATISTICS = 6
PAIR_WIDTH = 2              # [normalized_size, direction]
BALANCE_NOISE_STD = 0.02
DEFAULT_TEST_RATIO = 0.2
FEATURE_TABLE_COLUMNS = ["site_label", "packet_features"]


class Direction(IntEnum):
    """Packet direction relative to the fingerprinted client."""
    OUTBOUND = 0  # client -> server
    INBOUND = 1   # server -> client


class PacketObservation(NamedTuple):
    size: int
    direction: Optional[Direction]


@dataclass(frozen=True, eq=False)
class Sample:
    label: int
    features: np.ndarray


@dataclass(frozen=True)
class Dataset:
    train: List[Sample]
    test: List[Sample]
    feature_dim: int
    max_sequence_length: int
    num_labels: int


SessionInput = Union[str, Iterable[Tuple[int, Optional[int]]]]


# --- Parsing ---

def parse_feature_string(text: str) -> List[PacketObservation]:
    """
    Parses a 'size_direction;size_direction;...' string.

    Tokens that are not two integers joined by '_' are dropped. A direction other
    than 0 or 1 is kept as None so the encoder can discard the observation.
    """
    observations: List[PacketObservation] = []
    if not isinstance(text, str):
        return observations

    for token in text.strip().split(';'):
        token = token.strip()
        if not token:
            continue
        size_str, sep, direction_str = token.partition('_')
        try:
            size = int(size_str)
            direction_value = int(direction_str) if sep else None
        except ValueError:
            logging.debug(f"Dropping malformed packet token '{token}'")
            continue
        if direction_value is None or size < 0:
            logging.debug(f"Dropping malformed packet token '{token}'")
            continue
        try:
            direction = Direction(direction_value)
        except ValueError:
            direction = None
        observations.append(PacketObservation(size, direction))

    return observations


def format_feature_string(observations: Iterable[Tuple[int, Optional[int]]]) -> str:
    """Inverse of parse_feature_string; only valid observations are written."""
    tokens = []
    for size, direction in observations:
        if size is None or direction is None or size <= 0 or direction not in (0, 1):
            continue
        tokens.append(f"{int(size)}_{int(direction)}")
    return ";".join(tokens)


# --- Per-session encoding ---

def encode_session(observations: Iterable[Tuple[int, Optional[int]]]
                   ) -> Tuple[List[float], List[float], List[Direction]]:
    """
    Encodes one session into its packet-pair sequence.

    Args:
        observations: Ordered (size, direction) tuples. Entries with size <= 0 or
                      an unknown direction are discarded.

    Returns:
        Tuple containing:
            - sequence_features: [size_0, dir_0, size_1, dir_1, ...] (normalized sizes)
            - packet_sizes: the normalized sizes of the kept packets
            - directions: the directions of the kept packets
        All three are empty if no observation was valid; callers must reject
        such sessions.
    """
    sequence_features: List[float] = []
    packet_sizes: List[float] = []
    directions: List[Direction] = []
    log_max = math.log(MAX_PACKET_SIZE + 1)

    for size, direction in observations:
        if size is None or direction is None or not size > 0:
            continue
        try:
            direction = Direction(direction)
        except ValueError:
            continue

        normalized_size = min(max(math.log(size + 1) / log_max, 0.0), 1.0)
        sequence_features.extend([normalized_size, float(direction)])
        packet_sizes.append(normalized_size)
        directions.append(direction)

    return sequence_features, packet_sizes, directions


def append_statistics(sequence_features: Sequence[float], packet_sizes: Sequence[float],
                      directions: Sequence[Direction]) -> List[float]:
    """
    Returns sequence_features followed by the six session statistics:
    mean, max, min, population std of packet_sizes, outgoing ratio and log count.

    An empty session gets no statistics block.
    """
    features = list(sequence_features)
    if len(packet_sizes) == 0:
        return features

    sizes = np.asarray(packet_sizes, dtype=float)
    count = len(sizes)
    outgoing = sum(1 for d in directions if d == Direction.OUTBOUND)

    features.extend([
        float(np.mean(sizes)),
        float(np.max(sizes)),
        float(np.min(sizes)),
        float(np.std(sizes)),
        outgoing / count,
        math.log(count + 1) / math.log(COUNT_NORMALIZER + 1),
    ])
    return features


def find_max_sequence_length(all_sessions: Iterable[Sequence[float]]) -> int:
    """Longest session of the corpus, in packet pairs."""
    return max((len(sequence) // PAIR_WIDTH for sequence in all_sessions), default=0)


def pad(features: Sequence[float], max_len: int) -> np.ndarray:
    """
    Zero-fills the packet-pair part of `features` up to max_len pairs.

    The padding goes between the packet pairs and the trailing statistics block,
    which is returned unchanged. Longer sequences are cut to max_len pairs.
    """
    features = np.asarray(features, dtype=float)
    if features.size < NUM_STATISTICS:
        raise ValueError(f"Feature vector of length {features.size} has no statistics block")

    sequence = features[:-NUM_STATISTICS]
    statistics = features[-NUM_STATISTICS:]
    target = max_len * PAIR_WIDTH
    if sequence.size > target:
        sequence = sequence[:target]
    else:
        sequence = np.concatenate([sequence, np.zeros(target - sequence.size)])
    return np.concatenate([sequence, statistics])


# --- Dataset construction ---

def _perturbed_copy(sample: Sample, noise_std: float, rng: np.random.Generator) -> Sample:
    features = np.array(sample.features, dtype=float)
    size_positions = np.arange(0, features.size - NUM_STATISTICS, PAIR_WIDTH)
    noise = rng.normal(0.0, noise_std, size_positions.size)
    features[size_positions] = np.clip(features[size_positions] + noise, 0.0, 1.0)
    return Sample(sample.label, features)


def balance_classes(samples: List[Sample], noise_std: float = BALANCE_NOISE_STD,
                    rng: Optional[np.random.Generator] = None) -> List[Sample]:
    """
    Oversamples every label up to the size of the largest label.

    Missing samples are drawn uniformly with replacement from the label's own
    samples and copied with Gaussian noise on the packet-size entries only,
    clamped to [0, 1]. Expects unpadded vectors (packet pairs + statistics) so
    that only real packets are perturbed.
    """
    if not samples:
        return []
    rng = rng if rng is not None else np.random.default_rng()

    groups: Dict[int, List[Sample]] = defaultdict(list)
    for sample in samples:
        groups[sample.label].append(sample)
    max_count = max(len(group) for group in groups.values())

    balanced = list(samples)
    for label in sorted(groups):
        group = groups[label]
        deficit = max_count - len(group)
        if deficit == 0:
            continue
        for index in rng.integers(0, len(group), size=deficit):
            balanced.append(_perturbed_copy(group[index], noise_std, rng))
        logging.info(f"Label {label}: oversampled {len(group)} -> {max_count} samples")

    return balanced


def shuffle_and_split(samples: List[Sample], test_ratio: float = DEFAULT_TEST_RATIO,
                      rng: Optional[np.random.Generator] = None) -> Tuple[List[Sample], List[Sample]]:
    """
    Shuffles the samples and splits them by count (not stratified by label).

    The last int(n * test_ratio) shuffled samples form the test set.
    """
    if not 0.0 <= test_ratio < 1.0:
        raise ValueError(f"test_ratio must be in [0, 1), got {test_ratio}")
    rng = rng if rng is not None else np.random.default_rng()

    shuffled = [samples[i] for i in rng.permutation(len(samples))]
    test_size = int(len(shuffled) * test_ratio)
    train_size = len(shuffled) - test_size
    return shuffled[:train_size], shuffled[train_size:]


def _freeze(sample: Sample) -> Sample:
    sample.features.flags.writeable = False
    return sample


def build_dataset(records: Iterable[Tuple[int, SessionInput]],
                  test_ratio: float = DEFAULT_TEST_RATIO,
                  noise_std: float = BALANCE_NOISE_STD,
                  rng: Optional[np.random.Generator] = None) -> Dataset:
    """
    Builds the balanced, padded train/test dataset.

    Args:
        records: (label, session) pairs, where a session is either a feature
                 string or a sequence of (size, direction) tuples.
        test_ratio: Fraction of samples placed in the test set.
        noise_std: Standard deviation of the balancing noise.
        rng: Random generator for balancing and shuffling.

    Returns:
        The Dataset. feature_dim is fixed from the longest session of the whole
        corpus.

    Raises:
        EmptyDatasetError: If no record yields a usable session.
    """
    rng = rng if rng is not None else np.random.default_rng()

    encoded: List[Sample] = []
    for label, session in records:
        if label is None or label < 0:
            logging.warning(f"Skipping session with invalid label {label!r}")
            continue
        observations = parse_feature_string(session) if isinstance(session, str) else session
        sequence_features, packet_sizes, directions = encode_session(observations)
        if not packet_sizes:
            logging.warning(f"Skipping session with no valid packets (label {label})")
            continue
        features = append_statistics(sequence_features, packet_sizes, directions)
        encoded.append(Sample(int(label), np.asarray(features, dtype=float)))

    if not encoded:
        raise EmptyDatasetError("No usable sessions: cannot build a dataset with zero samples")

    num_labels = max(sample.label for sample in encoded) + 1
    max_len = find_max_sequence_length(sample.features[:-NUM_STATISTICS] for sample in encoded)
    feature_dim = max_len * PAIR_WIDTH + NUM_STATISTICS
    logging.info(f"Loaded {len(encoded)} samples with {num_labels} labels")
    logging.info(f"Max sequence length: {max_len} pairs (feature_dim = {feature_dim})")

    balanced = balance_classes(encoded, noise_std=noise_std, rng=rng)
    padded = [_freeze(Sample(s.label, pad(s.features, max_len))) for s in balanced]
    train, test = shuffle_and_split(padded, test_ratio=test_ratio, rng=rng)
    logging.info(f"Split data into {len(train)} training samples and {len(test)} test samples")

    return Dataset(train=train, test=test, feature_dim=feature_dim,
                   max_sequence_length=max_len, num_labels=num_labels)


def encode_for_inference(session: SessionInput, feature_dim: int) -> np.ndarray:
    """
    Encodes a single session exactly as build_dataset does, for a model whose
    input dimension is `feature_dim`.

    Raises:
        ValueError: If feature_dim cannot hold the statistics plus whole pairs.
        EmptySessionError: If the session has no valid packets.
    """
    max_len, remainder = divmod(feature_dim - NUM_STATISTICS, PAIR_WIDTH)
    if max_len < 0 or remainder:
        raise ValueError(f"feature_dim {feature_dim} is not 2 * max_len + {NUM_STATISTICS}")

    observations = parse_feature_string(session) if isinstance(session, str) else session
    sequence_features, packet_sizes, directions = encode_session(observations)
    if not packet_sizes:
        raise EmptySessionError("Session has no valid packets")
    if len(packet_sizes) > max_len:
        logging.warning(f"Session has {len(packet_sizes)} packets; keeping the first {max_len}")

    return pad(append_statistics(sequence_features, packet_sizes, directions), max_len)


# --- Feature table I/O ---

def load_feature_table(csv_path: str) -> List[Tuple[int, str]]:
    """
    Reads a `site_label,packet_features` CSV into (label, feature_string) records.

    Lines that cannot be tokenized, rows with a non-integer or negative label and
    rows without a feature string are skipped with a warning. Row numbers in
    the warnings count data rows from 1, after any untokenizable lines were dropped.

    Raises:
        FileNotFoundError: If csv_path does not exist.
        EmptyDatasetError: If the file is empty or holds only a header.
    """
    try:
        df = pd.read_csv(csv_path, dtype=str, keep_default_na=False, on_bad_lines='warn')
    except pd.errors.EmptyDataError as e:
        raise EmptyDatasetError(f"Feature table {csv_path} is empty") from e

    if len(df.columns) < 2:
        raise EmptyDatasetError(f"Feature table {csv_path} needs a label and a feature column, "
                                f"got {list(df.columns)}")
    if df.empty:
        raise EmptyDatasetError(f"Feature table {csv_path} has no rows")
    label_column, feature_column = df.columns[0], df.columns[1]

    records: List[Tuple[int, str]] = []
    for index, row in df.iterrows():
        label_str = str(row[label_column]).strip()
        feature_str = str(row[feature_column]).strip()
        try:
            label = int(label_str)
        except ValueError:
            logging.warning(f"Row {index + 1}: invalid label '{label_str}', skipping")
            continue
        if label < 0:
            logging.warning(f"Row {index + 1}: negative label {label}, skipping")
            continue
        if not feature_str:
            logging.warning(f"Row {index + 1}: empty packet feature string, skipping")
            continue
        records.append((label, feature_str))

    logging.info(f"Read {len(records)} of {len(df)} rows from {csv_path}")
    return records


def write_feature_table(records: Iterable[Tuple[int, SessionInput]], csv_path: str):
    """Writes (label, session) records as a `site_label,packet_features` CSV."""
    rows = []
    for label, session in records:
        feature_str = session if isinstance(session, str) else format_feature_string(session)
        if feature_str:
            rows.append((int(label), feature_str))

    directory = os.path.dirname(csv_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    pd.DataFrame(rows, columns=FEATURE_TABLE_COLUMNS).to_csv(csv_path, index=False)
    logging.info(f"Wrote {len(rows)} sessions to {csv_path}")


class SessionDataProcessor:
    """Loads a feature table and builds the dataset in one step."""

    def __init__(self, csv_path: str, test_ratio: float = DEFAULT_TEST_RATIO,
                 noise_std: float = BALANCE_NOISE_STD, rng: Optional[np.random.Generator] = None):
        self.csv_path = csv_path
        self.dataset = build_dataset(load_feature_table(csv_path), test_ratio=test_ratio,
                                     noise_std=noise_std, rng=rng)

    @property
    def feature_dim(self) -> int:
        return self.dataset.feature_dim

    @property
    def num_labels(self) -> int:
        return self.dataset.num_labels

    @property
    def train_samples(self) -> List[Sample]:
        return self.dataset.train

    @property
    def test_samples(self) -> List[Sample]:
        return self.dataset.test
