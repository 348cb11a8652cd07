#!/usr/bin/env python3
"""
Deconvolution Weight Training Pipeline

This script learns a per-feature weighting vector for weighted linear
deconvolution of mixed expression profiles.

The pipeline consists of three main stages:
1. Data Loading: Read the expression matrix, sample labels and categories
2. Training: Sample a reference matrix, synthesize mixtures, select lambda
   by cross-validation and train the weighting vector
3. Reporting: Write the weights, the cross-validation grid and the
   evaluation on held-out mixtures

Usage:
    python main.py --expression EXPR --labels LABELS --categories CATEGORIES [options]

Arguments:
    --expression     TSV expression matrix (features x samples)
    --labels         TSV table mapping sample id to category label
    --categories     Comma-separated category list or a file with one per line
    --output-dir     Directory for output files (default: Results)
"""

import argparse
import sys
from pathlib import Path

from tissue_deconv.errors import ConfigurationError, NumericalError
from tissue_deconv.io_utils import (
    load_expression_matrix,
    load_sample_labels,
    parse_categories,
    save_cv_grid,
    save_evaluation,
    save_weights,
)
from tissue_deconv.logging_utils import setup_logging
from tissue_deconv.training import TrainingConfig, run_training


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deconvolution Weight Training Pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Train with cross-validated lambda
    python main.py --expression expr.tsv --labels labels.tsv --categories "T,B,NK"

    # Fixed lambda, non-negative weights, four worker processes
    python main.py --expression expr.tsv --labels labels.tsv \\
        --categories categories.txt --lambda 0.01 --positive --n-jobs 4
        """
    )

    parser.add_argument("--expression", required=True,
                        help="TSV expression matrix, features as rows and samples as columns")
    parser.add_argument("--labels", required=True,
                        help="TSV table with sample id and category label columns")
    parser.add_argument("--categories", required=True,
                        help="Comma-separated allowed categories or a file with one per line")
    parser.add_argument("--output-dir", default="Results",
                        help="Directory for output files (default: Results)")

    parser.add_argument("--percentage", type=float, default=0.1,
                        help="Fraction of each category used for the reference (default: 0.1)")
    parser.add_argument("--train-fraction", type=float, default=0.5,
                        help="Share of the remaining samples used for training mixtures "
                             "(default: 0.5)")
    parser.add_argument("--n-train", type=int, default=200,
                        help="Number of training mixtures (default: 200)")
    parser.add_argument("--n-test", type=int, default=100,
                        help="Number of test mixtures (default: 100)")
    parser.add_argument("--n-per-mixture", type=int, default=10,
                        help="Samples combined into each mixture (default: 10)")

    parser.add_argument("--lambda", dest="lam", type=float, default=None,
                        help="Fixed L1 strength; skips cross-validation")
    parser.add_argument("--folds", type=int, default=5,
                        help="Cross-validation folds (default: 5)")
    parser.add_argument("--n-lambda", type=int, default=10,
                        help="Size of the generated lambda grid (default: 10)")
    parser.add_argument("--no-warm-start", action="store_true",
                        help="Start every lambda from the initial weights")
    parser.add_argument("--maxit", type=int, default=200,
                        help="Maximum optimizer iterations (default: 200)")
    parser.add_argument("--positive", action="store_true",
                        help="Constrain the weights to be non-negative")

    parser.add_argument("--seed", type=int, default=None,
                        help="Random seed")
    parser.add_argument("--n-jobs", type=int, default=1,
                        help="Parallel workers for cross-validation (default: 1)")
    return parser


def main():
    """Run the complete weight training pipeline."""
    args = build_parser().parse_args()
    setup_logging()
    output_dir = Path(args.output_dir).resolve()

    print("=" * 60)
    print("  Deconvolution Weight Training Pipeline")
    print("=" * 60)
    print(f"\nExpression matrix: {args.expression}")
    print(f"Sample labels: {args.labels}")
    print(f"Output directory: {output_dir}")
    print()

    missing_files = [f for f in (args.expression, args.labels) if not Path(f).exists()]
    if missing_files:
        print("ERROR: Missing required input files:")
        for f in missing_files:
            print(f"  - {f}")
        sys.exit(1)

    # Step 1: Data Loading
    print("\n" + "=" * 60)
    print("  STEP 1: Data Loading")
    print("=" * 60 + "\n")

    try:
        expression = load_expression_matrix(args.expression)
        labels = load_sample_labels(args.labels)
        categories = parse_categories(args.categories)
        print(f"Loaded {expression.shape[0]} features x {expression.shape[1]} samples, "
              f"{len(labels)} labels, {len(categories)} categories")
    except (OSError, ValueError) as e:
        print(f"ERROR in data loading: {e}")
        sys.exit(1)

    # Step 2: Training
    print("\n" + "=" * 60)
    print("  STEP 2: Training")
    print("=" * 60 + "\n")

    config = TrainingConfig(
        percentage=args.percentage,
        train_fraction=args.train_fraction,
        n_train_mixtures=args.n_train,
        n_test_mixtures=args.n_test,
        n_per_mixture=args.n_per_mixture,
        lam=args.lam,
        n_lambda=args.n_lambda,
        n_folds=args.folds,
        warm_start=not args.no_warm_start,
        maxit=args.maxit,
        positive=args.positive,
        seed=args.seed,
        n_jobs=args.n_jobs,
    )
    try:
        run = run_training(expression, labels, categories, config)
    except ConfigurationError as e:
        print(f"ERROR in training configuration: {e}")
        sys.exit(1)
    except NumericalError as e:
        print(f"ERROR in training: {e}")
        sys.exit(1)

    # Step 3: Reporting
    print("\n" + "=" * 60)
    print("  STEP 3: Reporting")
    print("=" * 60 + "\n")

    output_dir.mkdir(parents=True, exist_ok=True)
    save_weights(run, str(output_dir / "feature_weights.tsv"))
    save_cv_grid(run, str(output_dir / "cv_grid.tsv"))
    run.model.reference.to_csv(output_dir / "reference_matrix.tsv", sep='\t')
    save_evaluation(run.evaluation, run.baseline, str(output_dir / "evaluation.tsv"))

    print("Output files generated:")
    for f in ["feature_weights.tsv", "cv_grid.tsv", "reference_matrix.tsv", "evaluation.tsv"]:
        path = output_dir / f
        if path.exists():
            size = path.stat().st_size / 1024
            print(f"  ✓ {f} ({size:.1f} KB)")
        else:
            print(f"  ✗ {f} (not created)")

    print("\n" + "=" * 60)
    print("  Results Summary")
    print("=" * 60)
    print(f"\n  lambda = {run.model.lambda_:.4g}")
    print(f"  non-zero weights = {run.model.n_nonzero} of {len(run.model.weights)}")
    print(f"  untrained mean correlation = {run.baseline.mean_correlation:.4f}")
    print(f"  trained mean correlation = {run.evaluation.mean_correlation:.4f}")

    print("\nPipeline execution completed successfully!")

    return 0


if __name__ == "__main__":
    sys.exit(main())
