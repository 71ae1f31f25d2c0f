"""
Main entry point for the spectral normalization experiments.

This script provides a command-line interface to run experiments.

Usage:
    python main.py                  # Run all experiments
    python main.py --verify         # Estimator check only (no dataset, no training)
    python main.py --verify --steps 100
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent))

from experiments.run import run_all, run_verification


def main():
    """
    Parse command-line arguments and execute requested mode.
    """
    parser = argparse.ArgumentParser(
        description="Spectral Normalization - Experiment Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py                    # Run all experiments
    python main.py --verify           # Compare power-iteration sigma with SVD

After running, check:
    - results/metrics/*.json         # Numerical results
    - plots/*.png                    # Visualization plots
        """,
    )

    parser.add_argument(
        "--verify",
        action="store_true",
        help="Only verify the sigma estimator on freshly built layers",
    )
    parser.add_argument(
        "--steps",
        type=int,
        default=None,
        help="Training-mode calls per layer before verification (default: from config)",
    )

    args = parser.parse_args()

    if args.steps is not None and args.steps < 1:
        parser.error("--steps must be >= 1")

    if args.verify:
        run_verification(steps=args.steps)
    else:
        run_all()


if __name__ == "__main__":
    main()
