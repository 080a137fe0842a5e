"""
Main analysis script comparing observational estimates of the job training effect
with the randomized experiment.

This script estimates the effect of job training on 1978 earnings from an
observational comparison sample (e.g. LaLonde treated units plus CPS controls)
with regression imputation, IPW, doubly robust, propensity score stratification
and matching estimators, and reports them next to the experimental benchmark.
"""

import sys
import argparse
from pathlib import Path
import numpy as np
import logging

# Add src to path for imports
sys.path.append(str(Path(__file__).parent / "src"))

from obs_causal.data.loader import LalondeDataLoader
from obs_causal.data.preprocessor import LalondePreprocessor
from obs_causal.models.causal_models import ObservationalCausalEstimator, ESTIMATOR_LABELS
from obs_causal.models.matching import MatchingEstimator, match_balance
from obs_causal.models.randomization import fisher_randomization_test, neyman_inference
from obs_causal.models.double_ml import DoubleMLComparison
from obs_causal.visualization.plots import CausalVisualization
from obs_causal.utils.helpers import (
    setup_logging, save_results, calculate_summary_statistics, check_balance,
    build_results_frame, format_results_table, ensure_directory
)


LABELS = dict(ESTIMATOR_LABELS)
LABELS.update({
    'matching': 'Uncorrected matching',
    'matching_bias_adjusted': 'Bias-corrected matching',
    'double_ml': 'Double ML (cross-fitted AIPW)',
    'neyman': 'Experimental difference in means',
})


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument('data', help="Observational data file (e.g. cps1re74.csv)")
    parser.add_argument('--experimental', help="Randomized experiment data file for the benchmark")
    parser.add_argument('--n-boot', type=int, default=100, help="Bootstrap replicates")
    parser.add_argument('--strata', type=int, default=5, help="Propensity score strata")
    parser.add_argument('--n-matches', type=int, default=1, help="Matches per treated unit")
    parser.add_argument('--var-calc', type=int, default=0,
                        help="Within-arm matches for the matching variance (0: homoskedastic)")
    parser.add_argument('--n-jobs', type=int, default=1, help="Worker threads for the bootstrap")
    parser.add_argument('--seed', type=int, default=42, help="Random seed")
    parser.add_argument('--output-dir', default='.', help="Directory for figures/ and results/")
    parser.add_argument('--log-level', default='INFO')
    return parser.parse_args(argv)


def main(argv=None):
    """Run the complete observational study analysis pipeline."""

    args = parse_args(argv)

    # Setup
    setup_logging(level=args.log_level)
    logger = logging.getLogger(__name__)

    output_dir = Path(args.output_dir)
    figures_dir = ensure_directory(output_dir / "figures")
    results_dir = ensure_directory(output_dir / "results")

    rng = np.random.default_rng(args.seed)

    logger.info("Starting observational study analysis of job training on earnings")

    # Step 1: Load and preprocess data
    logger.info("Step 1: Loading and preprocessing data")

    loader = LalondeDataLoader(args.data)
    raw_data = loader.load_data()
    loader.describe_dataset()

    preprocessor = LalondePreprocessor()
    processed_data = preprocessor.preprocess(raw_data)
    z, y, x = preprocessor.split(processed_data)

    # Step 2: Covariate balance before adjustment
    logger.info("Step 2: Checking covariate balance")

    summary_stats = calculate_summary_statistics(
        processed_data[[preprocessor.treatment_col, preprocessor.outcome_col] + preprocessor.covariates],
        group_col=preprocessor.treatment_col
    )
    balance_stats = check_balance(processed_data, preprocessor.treatment_col, preprocessor.covariates)
    imbalanced = balance_stats[balance_stats['standardized_mean_diff'].abs() > 0.1]
    logger.info(f"Found {len(imbalanced)} imbalanced covariates (|SMD| > 0.1)")

    visualizer = CausalVisualization()
    visualizer.plot_causal_dag(save_path=figures_dir / "causal_dag.png")

    # Step 3: Point estimates and bootstrap variances
    logger.info("Step 3: Propensity score and outcome regression estimators")

    estimator = ObservationalCausalEstimator(n_strata=args.strata)
    table, replicates = estimator.estimate_with_variance(
        z, y, x, n_boot=args.n_boot, rng=rng, n_jobs=args.n_jobs, return_replicates=True
    )
    point = estimator.point_estimates
    treatment_effects = estimator.to_estimates(table)

    visualizer.plot_propensity_overlap(point.propensity, z,
                                       save_path=figures_dir / "propensity_overlap.png")
    visualizer.plot_stratum_balance(point.balance, save_path=figures_dir / "stratum_balance.png")
    visualizer.plot_bootstrap_distributions(replicates, table['estimate'], labels=LABELS,
                                            save_path=figures_dir / "bootstrap_distributions.png")

    # Step 4: Matching
    logger.info("Step 4: Matching estimators")

    matching_balance = None
    try:
        matcher = MatchingEstimator(n_matches=args.n_matches, var_calc=args.var_calc)
        matching = matcher.estimate(z, y, x)
        treatment_effects['matching'] = matching.unadjusted
        treatment_effects['matching_bias_adjusted'] = matching.bias_adjusted
        matching_balance = match_balance(z, x, matching.matches, n_boots=100, rng=rng)
    except Exception as e:
        logger.error(f"Error in matching analysis: {e}")

    # Step 5: Cross-fitted comparison
    logger.info("Step 5: Double ML comparison")

    try:
        treatment_effects['double_ml'] = DoubleMLComparison(random_state=args.seed).estimate(z, y, x)
    except Exception as e:
        logger.error(f"Error in Double ML estimation: {e}")

    # Step 6: Experimental benchmark
    benchmark = None
    randomization = None
    if args.experimental:
        logger.info("Step 6: Experimental benchmark")
        try:
            experiment = LalondePreprocessor().preprocess(
                LalondeDataLoader(args.experimental).load_data()
            )
            z_exp = experiment['treat'].to_numpy(dtype=float)
            y_exp = experiment['re78'].to_numpy(dtype=float)

            benchmark = neyman_inference(z_exp, y_exp)
            randomization = fisher_randomization_test(z_exp, y_exp, n_permutations=1000, rng=rng)
            visualizer.plot_randomization_distribution(
                randomization, save_path=figures_dir / "randomization_distribution.png"
            )
        except Exception as e:
            logger.error(f"Error in experimental benchmark: {e}")

    visualizer.plot_treatment_effects(
        treatment_effects, labels=LABELS,
        reference=benchmark.coefficient if benchmark else None,
        save_path=figures_dir / "treatment_effects.png"
    )

    # Step 7: Results summary and reporting
    logger.info("Step 7: Generating results summary")

    results = {
        'data_summary': {
            'n_observations': len(z),
            'n_treated': int(z.sum()),
            'n_control': int(len(z) - z.sum()),
            'mean_outcome_treated': float(y[z == 1].mean()),
            'mean_outcome_control': float(y[z == 0].mean())
        },
        'settings': vars(args),
        'treatment_effects': {
            method: {
                'coefficient': est.coefficient,
                'std_error': est.std_error,
                'ci_lower': est.ci_lower,
                'ci_upper': est.ci_upper,
                'p_value': est.p_value
            } for method, est in treatment_effects.items()
        },
        'bootstrap': {
            'n_boot': table.attrs['n_boot'],
            'variance': table['bootstrap_var']
        },
        'summary_statistics': summary_stats.round(2),
        'stratum_balance': point.balance,
        'strata': point.strata,
        'matching_balance': matching_balance,
        'balance_analysis': {
            'n_imbalanced_covariates': len(imbalanced),
            'max_imbalance': balance_stats['standardized_mean_diff'].abs().max()
        }
    }
    if benchmark is not None:
        results['experimental_benchmark'] = {
            'coefficient': benchmark.coefficient,
            'std_error': benchmark.std_error,
            'randomization_p_value': randomization.p_value
        }

    save_results(results, results_dir / "observational_study_results.json")

    # Print summary
    print("\n" + "=" * 80)
    print("OBSERVATIONAL STUDY RESULTS")
    print("=" * 80)

    print(build_results_frame(treatment_effects, labels=LABELS).round(1).to_string())
    print(format_results_table(treatment_effects, "Treatment Effect Estimates", labels=LABELS))

    print("\nCovariate balance within propensity strata (p-values):")
    print(point.balance.to_string())

    if benchmark is not None:
        print(f"\nExperimental benchmark: {benchmark.coefficient:.1f} "
              f"(SE {benchmark.std_error:.1f}), randomization p-value {randomization.p_value:.4f}")

    logger.info("Analysis complete! Check the figures/ and results/ directories for outputs.")
    print(f"\nAnalysis complete! Outputs saved to:")
    print(f"- Figures: {figures_dir}")
    print(f"- Results: {results_dir}")


if __name__ == "__main__":
    main()
