"""Classifies a single captured session with a trained model."""

import argparse
import logging
import sys
from typing import Optional, Sequence

import numpy as np

from . import config
from .errors import FingerprintError
from .features import encode_for_inference
from .network import Network
from .registry import SiteRegistry
from .train import load_registry, parse_hidden_sizes


def read_feature_file(path: str) -> str:
    """Returns the first non-empty line of a feature file ('size_direction;...')."""
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            if line.strip():
                return line.strip()
    return ""


def predict_session(network: Network, feature_string: str) -> np.ndarray:
    """Encodes the session exactly as during training and returns label probabilities."""
    features = encode_for_inference(feature_string, network.input_dim)
    return network.forward(features)


def format_prediction(probabilities: np.ndarray, registry: SiteRegistry) -> str:
    predicted = int(np.argmax(probabilities))
    lines = [
        "===== Prediction Result =====",
        f"Predicted website: {registry.name_for(predicted)}",
        "Probabilities:",
    ]
    for label, probability in enumerate(probabilities):
        lines.append(f"  {registry.name_for(label):<10}: {probability * 100:.2f}%")
    return "\n".join(lines)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Predict which website produced a captured session.")
    parser.add_argument('feature_file', help="File whose first line is the session's packet feature string")
    parser.add_argument('--model', default=config.MODEL_PATH)
    parser.add_argument('--labels', default=config.LABEL_MAP_PATH)
    parser.add_argument('--domains', default=None)
    parser.add_argument('--input-dim', type=int, default=None,
                        help="Feature dimension used in training (read from the model file if omitted)")
    parser.add_argument('--num-labels', type=int, default=None,
                        help="Number of labels (read from the model file if omitted)")
    parser.add_argument('--hidden', type=parse_hidden_sizes, default=config.HIDDEN_SIZES)
    parser.add_argument('--conv-channels', type=int, default=config.CONV_CHANNELS)
    parser.add_argument('--log-level', default='INFO')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO),
                        format="[%(levelname)s] %(message)s")

    header = Network.read_header(args.model)
    input_dim = args.input_dim if args.input_dim is not None else (header[0] if header else None)
    num_labels = args.num_labels if args.num_labels is not None else (header[1] if header else None)
    if input_dim is None or num_labels is None:
        logging.error(f"Cannot read model dimensions from {args.model}; pass --input-dim and --num-labels")
        return 1

    try:
        logging.info(f"Loading model from {args.model}")
        network = Network.load(
            args.model, input_dim, num_labels,
            hidden_sizes=args.hidden,
            conv_channels=args.conv_channels,
            conv_kernel_size=config.CONV_KERNEL_SIZE,
            conv_stride=config.CONV_STRIDE,
            conv_padding=config.CONV_PADDING,
            weight_init=config.WEIGHT_INIT,
        )
        registry = load_registry(args.labels, args.domains)

        logging.info(f"Loading features from {args.feature_file}")
        probabilities = predict_session(network, read_feature_file(args.feature_file))
    except (FingerprintError, OSError, ValueError) as e:
        logging.error(str(e))
        return 1

    print(format_prediction(probabilities, registry))
    return 0


if __name__ == "__main__":
    sys.exit(main())
