import matplotlib
import numpy as np
import pytest

from site_fingerprint.features import Dataset, Sample

matplotlib.use("Agg")


def make_separable_samples(num_labels=3, per_label=10, feature_dim=20, noise=0.1, seed=0):
    """Samples whose label is encoded by which block of the vector is 'hot'."""
    rng = np.random.default_rng(seed)
    block = feature_dim // num_labels
    samples = []
    for label in range(num_labels):
        for _ in range(per_label):
            features = rng.uniform(0.0, noise, feature_dim)
            features[label * block:(label + 1) * block] += 1.0
            samples.append(Sample(label, features))
    return samples


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def separable_samples():
    return make_separable_samples()


@pytest.fixture
def separable_dataset():
    train = make_separable_samples(seed=0)
    test = make_separable_samples(per_label=4, seed=1)
    return Dataset(train=train, test=test, feature_dim=20, max_sequence_length=7, num_labels=3)


@pytest.fixture
def feature_csv(tmp_path):
    """A small three-site feature table with distinct traffic shapes per site."""
    rng = np.random.default_rng(7)
    lines = ["site_label,packet_features"]
    for label, (size_range, outbound_share, length) in enumerate([
        ((80, 200), 0.8, 6),
        ((900, 1500), 0.2, 10),
        ((300, 600), 0.5, 4),
    ]):
        for _ in range(12):
            tokens = []
            for _ in range(length):
                size = int(rng.integers(*size_range))
                direction = 0 if rng.random() < outbound_share else 1
                tokens.append(f"{size}_{direction}")
            lines.append(f"{label},{';'.join(tokens)}")
    path = tmp_path / "tls_features.csv"
    path.write_text("\n".join(lines) + "\n")
    return path
