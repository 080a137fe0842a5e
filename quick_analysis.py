"""
Quick analysis script to generate point estimates without the bootstrap.
"""

import sys
from pathlib import Path
import logging

# Add src to path for imports
sys.path.append(str(Path(__file__).parent / "src"))

from obs_causal.data.loader import LalondeDataLoader
from obs_causal.data.preprocessor import LalondePreprocessor
from obs_causal.models.causal_models import ObservationalCausalEstimator, ESTIMATOR_LABELS
from obs_causal.models.glm import ModelFitError
from obs_causal.utils.helpers import setup_logging, save_results, ensure_directory


def main():
    """Run a quick point-estimate analysis."""

    if len(sys.argv) < 2:
        print("Usage: python quick_analysis.py DATA_FILE [N_STRATA]")
        sys.exit(2)

    # Setup
    setup_logging(level="INFO")
    logger = logging.getLogger(__name__)

    results_dir = ensure_directory("results")
    n_strata = int(sys.argv[2]) if len(sys.argv) > 2 else 5

    logger.info("Starting quick observational study analysis")

    preprocessor = LalondePreprocessor()
    processed_data = preprocessor.preprocess(LalondeDataLoader(sys.argv[1]).load_data())
    z, y, x = preprocessor.split(processed_data)

    logger.info(f"Dataset shape: {processed_data.shape}")

    estimator = ObservationalCausalEstimator(n_strata=n_strata)
    try:
        point = estimator.estimate(z, y, x)
    except ModelFitError as e:
        logger.error(f"Estimation failed at stage '{e.stage}': {e}")
        sys.exit(1)

    # Print results
    logger.info("\n" + "=" * 50)
    logger.info("POINT ESTIMATES")
    logger.info("=" * 50)

    for name, value in point.estimates.items():
        logger.info(f"  {ESTIMATOR_LABELS[name]}: {value:.3f}")

    logger.info("\nSTRATA:")
    logger.info("\n" + point.strata.to_string())

    results = {
        'estimates': point.estimates,
        'strata': point.strata,
        'balance': point.balance,
        'dataset_info': {
            'n_observations': len(z),
            'treatment_rate': float(z.mean())
        }
    }

    save_results(results, results_dir / "point_estimates.json")
    logger.info("Quick analysis completed!")


if __name__ == "__main__":
    main()
