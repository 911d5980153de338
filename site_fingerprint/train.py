"""
Website fingerprinting from encrypted-session metadata - training driver

Main steps:
1. Load the feature table and build the balanced, padded train/test dataset
2. Build the classifier (optional Conv1D front end, fully connected layers, softmax)
3. Train over epochs with shuffled minibatches and a step learning-rate schedule
4. Evaluate on the train and test sets after every epoch and save the model
   whenever test accuracy improves
5. Stop early once both accuracy targets are met, or when test accuracy has
   not improved for `patience` epochs
6. Report per-site accuracy and optionally plot loss / accuracy curves
"""

import argparse
import logging
import os
import sys
import time
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import matplotlib.pyplot as plt

from . import config
from .errors import EmptyDatasetError, FingerprintError
from .features import Dataset, Sample, SessionDataProcessor
from .network import Network
from .registry import SiteRegistry


def iterate_minibatches(samples: Sequence[Sample], batch_size: int,
                        rng: Optional[np.random.Generator] = None) -> Iterator[List[Sample]]:
    """Yields shuffled batches of `batch_size` samples; the last one may be shorter."""
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    rng = rng if rng is not None else np.random.default_rng()
    order = rng.permutation(len(samples))
    for start in range(0, len(order), batch_size):
        yield [samples[i] for i in order[start:start + batch_size]]


def learning_rate_at(epoch: int, base_rate: float, decay: float = config.LR_DECAY,
                     decay_every: int = config.LR_DECAY_EVERY) -> float:
    """Step schedule: base_rate * decay ** (epoch // decay_every)."""
    if decay_every <= 0:
        return base_rate
    return base_rate * decay ** (epoch // decay_every)


def train_model(
    network: Network,
    dataset: Dataset,
    epochs: int = config.EPOCHS,
    batch_size: int = config.BATCH_SIZE,
    learning_rate: float = config.LEARNING_RATE,
    lr_decay: float = config.LR_DECAY,
    lr_decay_every: int = config.LR_DECAY_EVERY,
    patience: int = config.PATIENCE,
    target_train_accuracy: float = config.TARGET_TRAIN_ACCURACY,
    target_test_accuracy: float = config.TARGET_TEST_ACCURACY,
    model_path: Optional[str] = None,
    rng: Optional[np.random.Generator] = None,
) -> Dict[str, List]:
    """
    Trains `network` on `dataset.train`.

    The model is saved to model_path each time the monitored accuracy (test
    accuracy, or train accuracy when the test set is empty) improves.
    A patience of 0 disables patience-based stopping.

    Returns:
        Training history: per-epoch lists of loss, train/test accuracy,
        learning rate, skipped samples and epoch duration.
    """
    if not dataset.train:
        raise EmptyDatasetError("No training samples")
    rng = rng if rng is not None else np.random.default_rng()

    history: Dict[str, List] = {
        'epoch': [],
        'loss': [],
        'train_accuracy': [],
        'test_accuracy': [],
        'learning_rate': [],
        'skipped': [],
        'time_per_epoch': [],
    }
    best_accuracy = -1.0
    epochs_without_improvement = 0

    logging.info(f"Starting training: {len(dataset.train)} train / {len(dataset.test)} test samples")
    for epoch in range(epochs):
        epoch_start_time = time.time()
        rate = learning_rate_at(epoch, learning_rate, lr_decay, lr_decay_every)
        skipped_before = network.skipped_samples

        epoch_loss = 0.0
        num_batches = 0
        for batch in iterate_minibatches(dataset.train, batch_size, rng):
            epoch_loss += network.train_batch(batch, rate)
            num_batches += 1
        epoch_loss /= max(num_batches, 1)

        train_accuracy = network.evaluate(dataset.train)
        test_accuracy = network.evaluate(dataset.test) if dataset.test else 0.0
        epoch_time = time.time() - epoch_start_time

        history['epoch'].append(epoch + 1)
        history['loss'].append(epoch_loss)
        history['train_accuracy'].append(train_accuracy)
        history['test_accuracy'].append(test_accuracy)
        history['learning_rate'].append(rate)
        history['skipped'].append(network.skipped_samples - skipped_before)
        history['time_per_epoch'].append(epoch_time)

        logging.info(f"Epoch {epoch + 1:3d}, Loss: {epoch_loss:.4f}, "
                     f"Train Acc: {train_accuracy * 100:.2f}%, Test Acc: {test_accuracy * 100:.2f}%, "
                     f"LR: {rate:.5f}, Time: {epoch_time:.2f}s")

        monitored = test_accuracy if dataset.test else train_accuracy
        if monitored > best_accuracy:
            best_accuracy = monitored
            epochs_without_improvement = 0
            if model_path:
                network.save(model_path)
        else:
            epochs_without_improvement += 1

        if train_accuracy > target_train_accuracy and (not dataset.test or test_accuracy > target_test_accuracy):
            logging.info(f"Early stopping at epoch {epoch + 1}: accuracy targets reached")
            break
        if patience > 0 and epochs_without_improvement >= patience:
            logging.info(f"Early stopping at epoch {epoch + 1}: no improvement for {patience} epochs")
            break

    logging.info("Training finished.")
    return history


def load_best_model(network: Network, model_path: str) -> Network:
    """Reloads the checkpoint train_model saved for a network shaped like `network`."""
    logging.info(f"Reloading best checkpoint from {model_path}")
    return Network.load(model_path, network.input_dim, network.num_labels, **network.architecture)


def report_per_site(network: Network, samples: Sequence[Sample], registry: SiteRegistry) -> List[str]:
    """One 'site: correct/total (accuracy)' line per label, from the confusion matrix."""
    matrix = network.confusion_matrix(samples)
    lines = []
    for label in range(network.num_labels):
        total = int(matrix[label].sum())
        correct = int(matrix[label, label])
        accuracy = correct / total * 100 if total else 0.0
        lines.append(f"{registry.name_for(label):>12}: {correct}/{total} ({accuracy:.2f}%)")
    return lines


def plot_history(history: Dict[str, List], path: str):
    """Saves training loss and train/test accuracy curves to `path`."""
    plt.figure(figsize=(12, 5))

    plt.subplot(1, 2, 1)
    plt.plot(history['epoch'], history['loss'], label='Training Loss', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.legend()
    plt.title('Training Loss over Epochs')
    plt.grid(True)

    plt.subplot(1, 2, 2)
    plt.plot(history['epoch'], history['train_accuracy'], label='Train Accuracy', marker='o')
    plt.plot(history['epoch'], history['test_accuracy'], label='Test Accuracy', color='orange', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Accuracy')
    plt.ylim(0.0, 1.05)
    plt.legend()
    plt.title('Accuracy over Epochs')
    plt.grid(True)

    plt.tight_layout()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    plt.savefig(path)
    plt.close()
    logging.info(f"Training curves saved to {path}")


def parse_hidden_sizes(text: str) -> Tuple[int, ...]:
    """'128,64' -> (128, 64); an empty string means no hidden layer."""
    return tuple(int(part) for part in text.split(',') if part.strip())


def load_registry(label_map: Optional[str], domain_list: Optional[str]) -> SiteRegistry:
    if label_map and os.path.exists(label_map):
        return SiteRegistry.from_label_map(label_map)
    if domain_list:
        return SiteRegistry.from_domain_list(domain_list)
    logging.warning("No label map found; sites will be reported by label number")
    return SiteRegistry([])


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Train the encrypted-session website classifier.")
    parser.add_argument('--data', default=config.FEATURES_CSV_PATH, help="Feature table CSV (site_label,packet_features)")
    parser.add_argument('--labels', default=config.LABEL_MAP_PATH, help="Label map CSV (label,site_name)")
    parser.add_argument('--domains', default=None, help="Domain list used when no label map exists")
    parser.add_argument('--model', default=config.MODEL_PATH, help="Where to save the best model")
    parser.add_argument('--epochs', type=int, default=config.EPOCHS)
    parser.add_argument('--batch-size', type=int, default=config.BATCH_SIZE)
    parser.add_argument('--learning-rate', type=float, default=config.LEARNING_RATE)
    parser.add_argument('--lr-decay', type=float, default=config.LR_DECAY)
    parser.add_argument('--lr-decay-every', type=int, default=config.LR_DECAY_EVERY)
    parser.add_argument('--patience', type=int, default=config.PATIENCE)
    parser.add_argument('--hidden', type=parse_hidden_sizes,
                        default=config.HIDDEN_SIZES, help="Comma-separated hidden layer sizes, e.g. 128,64")
    parser.add_argument('--conv-channels', type=int, default=config.CONV_CHANNELS,
                        help="Conv1D output channels (0 disables the convolutional front end)")
    parser.add_argument('--test-ratio', type=float, default=config.TEST_RATIO)
    parser.add_argument('--seed', type=int, default=None, help="Random seed for reproducible runs")
    parser.add_argument('--plot', default=None, help="Save training curves to this image file")
    parser.add_argument('--log-level', default='INFO')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format="[%(levelname)s] %(message)s")
    rng = np.random.default_rng(args.seed)

    try:
        logging.info("Loading and preprocessing data...")
        processor = SessionDataProcessor(args.data, test_ratio=args.test_ratio,
                                         noise_std=config.BALANCE_NOISE_STD, rng=rng)
        dataset = processor.dataset
        registry = load_registry(args.labels, args.domains)
        logging.info(f"Feature dimension: {dataset.feature_dim}")
        logging.info(f"Number of classes: {dataset.num_labels}")

        network = Network(
            dataset.feature_dim,
            dataset.num_labels,
            hidden_sizes=args.hidden,
            conv_channels=args.conv_channels,
            conv_kernel_size=config.CONV_KERNEL_SIZE,
            conv_stride=config.CONV_STRIDE,
            conv_padding=config.CONV_PADDING,
            weight_init=config.WEIGHT_INIT,
            loss_ceiling=config.LOSS_CEILING,
            clip_norm=config.CLIP_NORM,
            rng=rng,
        )
        logging.info(network.summary())

        history = train_model(
            network, dataset,
            epochs=args.epochs,
            batch_size=args.batch_size,
            learning_rate=args.learning_rate,
            lr_decay=args.lr_decay,
            lr_decay_every=args.lr_decay_every,
            patience=args.patience,
            model_path=args.model,
            rng=rng,
        )
    except (FingerprintError, FileNotFoundError) as e:
        logging.error(str(e))
        return 1

    if history['epoch']:
        network = load_best_model(network, args.model)
    logging.info(f"Best model Train Accuracy: {network.evaluate(dataset.train) * 100:.2f}%")
    logging.info(f"Best model Test Accuracy: {network.evaluate(dataset.test) * 100:.2f}%")
    for line in report_per_site(network, dataset.test or dataset.train, registry):
        logging.info(line)

    if args.plot and history['epoch']:
        plot_history(history, args.plot)
    return 0


if __name__ == "__main__":
    sys.exit(main())
