"""
Utility functions for the observational study analysis.
"""

import pandas as pd
import numpy as np
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
import json
import pickle


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file to write logs to
    """
    log_level = getattr(logging, level.upper())

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def _to_serializable(value: Any) -> Any:
    """Convert numpy and pandas objects to plain Python for JSON output."""
    if isinstance(value, dict):
        return {str(k): _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, pd.DataFrame):
        return {str(k): _to_serializable(v) for k, v in value.to_dict(orient='index').items()}
    if isinstance(value, pd.Series):
        return {str(k): _to_serializable(v) for k, v in value.to_dict().items()}
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return value


def save_results(results: Dict[str, Any], filepath: str) -> None:
    """
    Save analysis results to file.

    Args:
        results: Dictionary containing analysis results
        filepath: Path to save results (.json or .pkl)
    """
    filepath = Path(filepath)

    if filepath.suffix == '.json':
        # Convert non-serializable objects to strings
        serializable_results = {}
        for key, value in results.items():
            value = _to_serializable(value)
            try:
                json.dumps(value)
                serializable_results[key] = value
            except (TypeError, ValueError):
                serializable_results[key] = str(value)

        with open(filepath, 'w') as f:
            json.dump(serializable_results, f, indent=2)

    elif filepath.suffix == '.pkl':
        with open(filepath, 'wb') as f:
            pickle.dump(results, f)

    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    logger.info(f"Results saved to {filepath}")


def load_results(filepath: str) -> Dict[str, Any]:
    """
    Load analysis results from file.

    Args:
        filepath: Path to results file

    Returns:
        Dictionary containing analysis results
    """
    filepath = Path(filepath)

    if filepath.suffix == '.json':
        with open(filepath, 'r') as f:
            results = json.load(f)

    elif filepath.suffix == '.pkl':
        with open(filepath, 'rb') as f:
            results = pickle.load(f)

    else:
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    logger.info(f"Results loaded from {filepath}")
    return results


def calculate_summary_statistics(df: pd.DataFrame, group_col: str = None) -> pd.DataFrame:
    """
    Calculate summary statistics for key variables.

    Args:
        df: Dataset
        group_col: Optional column to group by

    Returns:
        DataFrame with summary statistics
    """
    numeric_cols = df.select_dtypes(include=[np.number]).columns.tolist()

    if group_col and group_col in df.columns:
        numeric_cols = [col for col in numeric_cols if col != group_col]
        summary = df.groupby(group_col)[numeric_cols].agg(['count', 'mean', 'std', 'min', 'max'])
    else:
        summary = df[numeric_cols].agg(['count', 'mean', 'std', 'min', 'max']).T

    return summary


def check_balance(df: pd.DataFrame, treatment_col: str, covariates: List[str]) -> pd.DataFrame:
    """
    Check covariate balance between treatment and control groups.

    Args:
        df: Dataset
        treatment_col: Name of treatment variable
        covariates: List of covariate columns

    Returns:
        DataFrame with balance statistics
    """
    balance_stats = []

    for covariate in covariates:
        if covariate not in df.columns:
            continue

        treated = df[df[treatment_col] == 1][covariate]
        control = df[df[treatment_col] == 0][covariate]

        # Calculate standardized mean difference
        if treated.std() + control.std() > 0:
            smd = (treated.mean() - control.mean()) / np.sqrt((treated.var() + control.var()) / 2)
        else:
            smd = 0

        balance_stats.append({
            'covariate': covariate,
            'treated_mean': treated.mean(),
            'control_mean': control.mean(),
            'treated_std': treated.std(),
            'control_std': control.std(),
            'standardized_mean_diff': smd
        })

    return pd.DataFrame(balance_stats)


def build_results_frame(estimates: Dict[str, Any], labels: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    """
    Collect estimates into an 'Estimate / Standard error' table.

    Args:
        estimates: Mapping of method name to CausalEstimate
        labels: Optional display names for the methods

    Returns:
        DataFrame indexed by display name
    """
    labels = labels or {}
    rows = []
    for method, est in estimates.items():
        rows.append({
            'method': labels.get(method, method),
            'Estimate': est.coefficient,
            'Standard error': est.std_error
        })
    return pd.DataFrame(rows).set_index('method')


def format_results_table(estimates: Dict[str, Any], title: str = "Treatment Effect Estimates",
                         labels: Optional[Dict[str, str]] = None) -> str:
    """
    Format results as a nice table for reporting.

    Args:
        estimates: Dictionary of causal estimates
        title: Title for the table
        labels: Optional display names for the methods

    Returns:
        Formatted table string
    """
    labels = labels or {}
    table_lines = [f"\n{title}", "=" * len(title)]

    name_width = max([len(labels.get(m, m)) for m in estimates] + [len("Method")])
    headers = ["Estimate", "Std Error", "95% CI", "P-value"]
    table_lines.append(f"{'Method':<{name_width}} | " + " | ".join(f"{h:>22}" for h in headers))
    table_lines.append("-" * (name_width + 25 * len(headers) + 1))

    for method, est in estimates.items():
        if hasattr(est, 'coefficient'):
            ci_str = f"[{est.ci_lower:.1f}, {est.ci_upper:.1f}]"
            row = [
                f"{est.coefficient:.3f}",
                f"{est.std_error:.3f}",
                ci_str,
                f"{est.p_value:.4f}"
            ]
            table_lines.append(f"{labels.get(method, method):<{name_width}} | "
                               + " | ".join(f"{cell:>22}" for cell in row))

    return "\n".join(table_lines)


def ensure_directory(path: str) -> Path:
    """
    Ensure directory exists, create if it doesn't.

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj
