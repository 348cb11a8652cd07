"""
I/O Utilities Module

This module provides the thin file I/O used by the command-line pipeline:
loading a labeled expression matrix and writing tab-separated reports of a
trained model. The training engine itself never touches files.
"""

import csv
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .errors import ConfigurationError
from .training import Evaluation, TrainingRun


def load_expression_matrix(file_path: str) -> pd.DataFrame:
    """
    Load an expression matrix from a TSV file.

    Args:
        file_path: Path to a table with features as rows, samples as columns
            and feature identifiers in the first column

    Returns:
        DataFrame of floats (features x samples)
    """
    df = pd.read_csv(file_path, sep='\t', index_col=0)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    return df.astype(float)


def load_sample_labels(
    file_path: str,
    sample_column: Optional[str] = None,
    label_column: Optional[str] = None
) -> pd.Series:
    """
    Load the sample -> category table.

    Args:
        file_path: Path to a TSV file with a header row
        sample_column: Column with sample ids (default: first column)
        label_column: Column with category labels (default: second column)

    Returns:
        Series mapping sample id to category label
    """
    df = pd.read_csv(file_path, sep='\t', dtype=str)
    if df.shape[1] < 2:
        raise ConfigurationError(f"Label table {file_path} needs at least two columns")
    sample_column = sample_column or df.columns[0]
    label_column = label_column or df.columns[1]
    return pd.Series(
        df[label_column].to_numpy(), index=df[sample_column].to_numpy(), name=label_column
    )


def load_categories(file_path: str) -> List[str]:
    """
    Load the ordered category allow-list, one category per line.

    Args:
        file_path: Path to the category list

    Returns:
        List of category names
    """
    with open(file_path, newline='') as file:
        reader = csv.reader(file, delimiter='\t')
        return [row[0].strip() for row in reader if row and row[0].strip()]


def parse_categories(value: str) -> List[str]:
    """Accept either a comma-separated list or a path to a category file."""
    if Path(value).is_file():
        return load_categories(value)
    return [name.strip() for name in value.split(",") if name.strip()]


def save_weights(run: TrainingRun, output_path: str):
    """
    Save the trained weighting vector, sorted by absolute weight.

    Args:
        run: Result of run_training
        output_path: Output file path
    """
    weights = run.model.weights
    order = weights.abs().sort_values(ascending=False).index
    df = pd.DataFrame({"feature": order, "weight": weights[order].to_numpy()})
    df.to_csv(output_path, sep='\t', index=False)


def save_cv_grid(run: TrainingRun, output_path: str):
    """Save the (lambda, fold, held-out loss) grid, if cross-validation ran."""
    if run.model.cv is None:
        return
    run.model.cv.grid.to_csv(output_path, sep='\t', index=False)


def save_evaluation(evaluation: Evaluation, baseline: Evaluation, output_path: str):
    """
    Save per-category correlations of the trained and the untrained model.

    Args:
        evaluation: Evaluation of the trained model
        baseline: Evaluation of the g = 1 baseline
        output_path: Output file path
    """
    df = pd.concat(
        {"trained": evaluation.per_category, "untrained": baseline.per_category},
        axis=1,
    )
    df.columns = [f"{model}_{metric}" for model, metric in df.columns]
    df.index.name = "category"
    df.to_csv(output_path, sep='\t')
