#!/usr/bin/env python3
"""
Train a digit recognizer on MNIST from the command line.

Usage:
    python scripts/train_mnist.py [--data-dir data] [--iterations 300]
                                  [--learning-rate 0.06] [--max-items 5000]
                                  [--hidden 10] [--seed 42] [--save NAME]

The script will:
1. Load the four MNIST IDX files from the data directory
2. Train a fresh network, printing progress every few iterations
3. Report the accuracy on the test split
4. Optionally save the trained network to the SQLite model store
"""

import argparse
import logging
import os
import sys

import numpy as np

from digit_recognition import mnist_loader
from digit_recognition.mnist_parser import MNISTFormatError
from digit_recognition.model_persistence import save_network
from digit_recognition.recognizer import DigitRecognizer, TrainingConfiguration


def parse_args(argv=None) -> argparse.Namespace:
    defaults = TrainingConfiguration()
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument('--data-dir', default=mnist_loader.default_data_dir())
    parser.add_argument('--max-count', type=int, default=None,
                        help='only parse this many samples per split')
    parser.add_argument('--max-items', type=int, default=defaults.max_training_items)
    parser.add_argument('--iterations', type=int, default=defaults.iterations)
    parser.add_argument('--learning-rate', type=float, default=defaults.learning_rate)
    parser.add_argument('--hidden', type=int, nargs='*',
                        default=list(defaults.hidden_layers),
                        help='hidden layer sizes')
    parser.add_argument('--report-every', type=int, default=25)
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--save', metavar='NETWORK_ID', default=None,
                        help='save the trained network under this id')
    return parser.parse_args(argv)


def main(argv=None):
    """Main training function."""
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, os.getenv('LOG_LEVEL', 'WARNING').upper(), logging.WARNING),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    print("=" * 60)
    print("MNIST Digit Recognizer Training")
    print("=" * 60)

    try:
        configuration = TrainingConfiguration(
            max_training_items=args.max_items,
            iterations=args.iterations,
            learning_rate=args.learning_rate,
            hidden_layers=args.hidden
        )
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(2)

    print(f"📂 Loading MNIST data from: {args.data_dir}")
    try:
        data = mnist_loader.load_data(args.data_dir, max_count=args.max_count)
    except (FileNotFoundError, MNISTFormatError) as e:
        print(f"❌ Error: {e}")
        sys.exit(1)

    print(f"✅ Loaded {data.training.count} training and {data.testing.count} test images")

    rng = np.random.default_rng(args.seed)
    recognizer = DigitRecognizer(data.training, configuration=configuration, rng=rng)

    def report(progress):
        if progress.iteration % args.report_every == 0 or progress.progress == 100:
            print(
                f"   iteration {progress.iteration:4d}/{progress.total_iterations}"
                f"  accuracy {progress.accuracy * 100:5.1f}%"
                f"  loss {progress.loss:.4f}"
            )

    print(f"\n🧠 Training {configuration}")
    recognizer.train(observer=report)

    accuracy = recognizer.evaluate(data.testing)
    print(f"\n✅ Test accuracy: {accuracy * 100:.2f}%")

    if args.save:
        if save_network(recognizer.network, args.save, trained=True,
                        accuracy=accuracy, configuration=configuration.to_dict()):
            print(f"💾 Saved network as '{args.save}'")
        else:
            print(f"❌ Could not save network '{args.save}'")
            sys.exit(1)


if __name__ == '__main__':
    main()
