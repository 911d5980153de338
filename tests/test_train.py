"""
Tests for the training driver.
"""

import os

import numpy as np
import pytest

from site_fingerprint.errors import EmptyDatasetError
from site_fingerprint.features import Dataset, Sample
from site_fingerprint.network import Network
from site_fingerprint.registry import SiteRegistry
from site_fingerprint.train import (
    iterate_minibatches,
    learning_rate_at,
    load_best_model,
    main,
    parse_hidden_sizes,
    plot_history,
    report_per_site,
    train_model,
)


class TestMinibatches:
    """Tests for batching and the learning-rate schedule."""

    def test_batches_cover_every_sample_once(self, rng):
        samples = [Sample(0, np.array([float(i)])) for i in range(10)]

        batches = list(iterate_minibatches(samples, 4, rng))

        assert [len(batch) for batch in batches] == [4, 4, 2]
        seen = sorted(float(s.features[0]) for batch in batches for s in batch)
        assert seen == [float(i) for i in range(10)]

    def test_non_positive_batch_size_raises(self, rng):
        with pytest.raises(ValueError):
            list(iterate_minibatches([], 0, rng))

    def test_step_schedule(self):
        assert learning_rate_at(0, 0.1, 0.5, 10) == 0.1
        assert learning_rate_at(9, 0.1, 0.5, 10) == 0.1
        assert learning_rate_at(10, 0.1, 0.5, 10) == pytest.approx(0.05)
        assert learning_rate_at(25, 0.1, 0.5, 10) == pytest.approx(0.025)
        assert learning_rate_at(100, 0.1, 0.5, 0) == 0.1

    @pytest.mark.parametrize("text, expected", [
        ("128,64", (128, 64)),
        ("32", (32,)),
        ("", ()),
    ])
    def test_parse_hidden_sizes(self, text, expected):
        assert parse_hidden_sizes(text) == expected


class TestTrainModel:
    """Tests for the epoch loop, early stopping and checkpointing."""

    def test_stops_once_accuracy_targets_are_met(self, separable_dataset, tmp_path):
        network = Network(20, 3, hidden_sizes=(16,), rng=np.random.default_rng(42))
        model_path = str(tmp_path / "model.bin")

        history = train_model(network, separable_dataset, epochs=200, batch_size=5, learning_rate=0.05,
                              lr_decay_every=0, patience=0, target_train_accuracy=0.9,
                              target_test_accuracy=0.9, model_path=model_path,
                              rng=np.random.default_rng(0))

        assert len(history['epoch']) < 200
        assert history['train_accuracy'][-1] > 0.9
        assert history['test_accuracy'][-1] > 0.9
        assert os.path.exists(model_path)
        assert Network.read_header(model_path) == (20, 3)

    def test_patience_stops_a_stalled_run(self, separable_dataset, tmp_path):
        network = Network(20, 3, hidden_sizes=(8,), rng=np.random.default_rng(1))

        history = train_model(network, separable_dataset, epochs=50, batch_size=10, learning_rate=0.0,
                              patience=3, target_train_accuracy=1.1, target_test_accuracy=1.1,
                              model_path=str(tmp_path / "model.bin"), rng=np.random.default_rng(0))

        assert history['epoch'] == [1, 2, 3, 4]
        assert len(set(history['test_accuracy'])) == 1

    def test_history_records_every_epoch(self, separable_dataset):
        network = Network(20, 3, hidden_sizes=(8,), rng=np.random.default_rng(1))

        history = train_model(network, separable_dataset, epochs=3, batch_size=8, learning_rate=0.01,
                              lr_decay=0.5, lr_decay_every=2, patience=0,
                              target_train_accuracy=1.1, rng=np.random.default_rng(0))

        assert history['epoch'] == [1, 2, 3]
        assert history['learning_rate'] == pytest.approx([0.01, 0.01, 0.005])
        for key in ('loss', 'train_accuracy', 'test_accuracy', 'skipped', 'time_per_epoch'):
            assert len(history[key]) == 3

    def test_without_test_set_train_accuracy_is_monitored(self, separable_samples, tmp_path):
        dataset = Dataset(train=separable_samples, test=[], feature_dim=20, max_sequence_length=7, num_labels=3)
        network = Network(20, 3, hidden_sizes=(8,), rng=np.random.default_rng(1))
        model_path = str(tmp_path / "model.bin")

        history = train_model(network, dataset, epochs=2, batch_size=10, learning_rate=0.01,
                              target_train_accuracy=1.1, model_path=model_path,
                              rng=np.random.default_rng(0))

        assert history['test_accuracy'] == [0.0, 0.0]
        assert os.path.exists(model_path)

    def test_empty_training_set_raises(self):
        dataset = Dataset(train=[], test=[], feature_dim=20, max_sequence_length=7, num_labels=3)

        with pytest.raises(EmptyDatasetError):
            train_model(Network(20, 3), dataset, epochs=1)


class TestReporting:
    """Tests for per-site reports and the training curves."""

    def test_report_has_one_line_per_label(self, separable_samples):
        network = Network(20, 3, hidden_sizes=(8,), rng=np.random.default_rng(1))
        registry = SiteRegistry(["baidu", "bing"])

        lines = report_per_site(network, separable_samples, registry)

        assert len(lines) == 3
        assert lines[0].strip().startswith("baidu:")
        assert lines[2].strip().startswith("label_2:")
        assert all("/10 (" in line for line in lines)

    def test_plot_history_writes_image(self, tmp_path):
        history = {'epoch': [1, 2], 'loss': [1.0, 0.5], 'train_accuracy': [0.4, 0.8], 'test_accuracy': [0.3, 0.7]}
        path = tmp_path / "plots" / "curves.png"

        plot_history(history, str(path))

        assert path.exists() and path.stat().st_size > 0


class TestMain:
    """Tests for the command-line entry point."""

    def test_trains_and_saves_model(self, feature_csv, tmp_path):
        model_path = tmp_path / "model.bin"
        plot_path = tmp_path / "curves.png"

        status = main([
            '--data', str(feature_csv),
            '--labels', str(tmp_path / "no_labels.csv"),
            '--model', str(model_path),
            '--epochs', '3',
            '--batch-size', '8',
            '--hidden', '8',
            '--seed', '1',
            '--plot', str(plot_path),
        ])

        assert status == 0
        assert Network.read_header(str(model_path)) == (26, 3)
        assert plot_path.exists()

    def test_trains_with_conv_front_end(self, feature_csv, tmp_path):
        model_path = tmp_path / "conv.bin"

        status = main(['--data', str(feature_csv), '--model', str(model_path), '--labels', '',
                       '--epochs', '2', '--conv-channels', '2', '--hidden', '8', '--seed', '2'])

        assert status == 0
        assert model_path.exists()

    def test_empty_feature_table_fails(self, tmp_path):
        data = tmp_path / "empty.csv"
        data.write_text("site_label,packet_features\n")

        assert main(['--data', str(data), '--model', str(tmp_path / "m.bin"), '--labels', '']) == 1

    def test_missing_feature_table_fails(self, tmp_path):
        assert main(['--data', str(tmp_path / "missing.csv"), '--labels', '']) == 1

    @pytest.mark.parametrize("label_map", [
        "",
        "id,name\n0,baidu\n",
        "label,site_name\nfirst,baidu\n",
    ])
    def test_unusable_label_map_fails(self, feature_csv, tmp_path, label_map):
        labels = tmp_path / "site_labels.csv"
        labels.write_text(label_map)

        status = main(['--data', str(feature_csv), '--labels', str(labels),
                       '--model', str(tmp_path / "m.bin"), '--epochs', '1'])

        assert status == 1


class TestBestModel:
    """Tests for reporting on the saved checkpoint rather than the last epoch."""

    def test_reload_returns_checkpointed_weights(self, separable_samples, tmp_path):
        network = Network(20, 3, hidden_sizes=(8,), rng=np.random.default_rng(1))
        model_path = str(tmp_path / "model.bin")
        network.save(model_path)
        saved = [layer.weights.copy() for layer in network.layers]

        network.train_batch(separable_samples, 0.1)
        best = load_best_model(network, model_path)

        for layer, weights in zip(best.layers, saved):
            assert np.array_equal(layer.weights, weights)
        assert not np.array_equal(network.layers[0].weights, saved[0])
