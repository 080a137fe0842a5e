"""
Unit tests for the matching estimator.
"""

import unittest
import pandas as pd
import numpy as np
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from obs_causal.models.matching import (
    MatchingEstimator, MatchingResult, MatchSet, match_balance, ks_boot_pvalue, scale_covariates
)
from obs_causal.models.causal_models import CausalEstimate


class TestMatchingEstimator(unittest.TestCase):
    """Test cases for MatchingEstimator."""

    def setUp(self):
        """Treated units each have one close control; the outcome is linear in x."""
        x_t = np.array([1.0, 2.0, 3.0])
        x_c = np.array([1.1, 2.1, 3.1, 10.0])
        self.x = pd.DataFrame({'age': np.concatenate([x_t, x_c])})
        self.z = np.array([1.0, 1.0, 1.0, 0.0, 0.0, 0.0, 0.0])
        self.y = np.concatenate([2 * x_t + 5, 2 * x_c])

    def test_initialization(self):
        matcher = MatchingEstimator()
        self.assertEqual(matcher.n_matches, 1)
        self.assertEqual(matcher.estimand, 'ATT')
        self.assertEqual(matcher.var_calc, 0)
        self.assertEqual(matcher.tie_tol, 1e-5)

        with self.assertRaises(ValueError):
            MatchingEstimator(n_matches=0)
        with self.assertRaises(ValueError):
            MatchingEstimator(estimand='ATC')
        with self.assertRaises(ValueError):
            MatchingEstimator(var_calc=-1)

    def test_nearest_matches(self):
        matches = MatchingEstimator().match(self.z, self.x.to_numpy())

        self.assertIsInstance(matches, MatchSet)
        np.testing.assert_array_equal(matches.focal, [0, 1, 2])
        np.testing.assert_array_equal(matches.pair_focal, [0, 1, 2])
        np.testing.assert_array_equal(matches.pair_match, [3, 4, 5])
        np.testing.assert_array_equal(matches.pair_weight, [1.0, 1.0, 1.0])
        np.testing.assert_array_equal(matches.match_counts(7), [0, 0, 0, 1, 1, 1, 0])

    def test_unadjusted_and_bias_adjusted(self):
        result = MatchingEstimator().estimate(self.z, self.y, self.x)

        self.assertIsInstance(result, MatchingResult)
        self.assertIsInstance(result.unadjusted, CausalEstimate)
        self.assertEqual(result.n_focal, 3)

        # Matched controls sit 0.1 above their treated unit: 2 * 0.1 of bias
        self.assertAlmostEqual(result.unadjusted.coefficient, 4.8, places=8)
        self.assertAlmostEqual(result.bias_adjusted.coefficient, 5.0, places=8)
        self.assertEqual(result.unadjusted.method, 'matching')
        self.assertEqual(result.bias_adjusted.method, 'matching_bias_adjusted')

        for est in (result.unadjusted, result.bias_adjusted):
            self.assertTrue(np.isfinite(est.std_error))
            self.assertGreaterEqual(est.std_error, 0)

    def _reused_control_data(self):
        """Two treated units share the control at 1.1."""
        x = np.array([[1.0], [2.0], [3.0], [1.05], [1.1], [2.1], [3.1], [10.0]])
        z = np.array([1.0, 1.0, 1.0, 1.0, 0.0, 0.0, 0.0, 0.0])
        y = np.array([7.0, 10.0, 10.0, 8.0, 2.2, 4.2, 6.2, 20.0])
        return z, y, x

    def test_homoskedastic_standard_error(self):
        z, y, x = self._reused_control_data()
        result = MatchingEstimator().estimate(z, y, x)

        # Unit effects 4.8, 5.8, 3.8, 5.8; one pooled variance 0.5 * 2.75 / 4
        tau_i = np.array([4.8, 5.8, 3.8, 5.8])
        sigma2 = 0.5 * np.mean((tau_i - tau_i.mean()) ** 2)
        expected_var = (np.sum((tau_i - tau_i.mean()) ** 2) + (2 ** 2 - 2) * sigma2) / 4 ** 2

        self.assertAlmostEqual(result.unadjusted.coefficient, 5.05)
        self.assertAlmostEqual(result.unadjusted.std_error ** 2, expected_var)
        self.assertAlmostEqual(expected_var, 3.4375 / 16)

    def test_within_arm_variance(self):
        z, y, x = self._reused_control_data()
        result = MatchingEstimator(var_calc=1).estimate(z, y, x)

        # Control at 1.1 is matched within its arm to 2.1: 0.5 * (2.2 - 4.2)^2
        expected_var = (2.75 + (2 ** 2 - 2) * 2.0) / 4 ** 2

        self.assertAlmostEqual(result.unadjusted.coefficient, 5.05)
        self.assertAlmostEqual(result.unadjusted.std_error ** 2, expected_var)

    def test_ties_share_weight(self):
        x = np.array([[0.0], [-1.0], [1.0], [5.0]])
        z = np.array([1.0, 0.0, 0.0, 0.0])
        y = np.array([3.0, 0.0, 10.0, 100.0])

        result = MatchingEstimator().estimate(z, y, x)

        np.testing.assert_array_equal(np.sort(result.matches.pair_match), [1, 2])
        np.testing.assert_array_equal(result.matches.pair_weight, [0.5, 0.5])
        self.assertAlmostEqual(result.unadjusted.coefficient, 3.0 - 5.0)

    def test_multiple_matches(self):
        result = MatchingEstimator(n_matches=2).estimate(self.z, self.y, self.x)
        counts = result.matches.match_counts(7)
        self.assertAlmostEqual(counts.sum(), 3.0)
        self.assertTrue(np.isfinite(result.unadjusted.coefficient))

    def test_ate_matches_every_unit(self):
        rng = np.random.default_rng(0)
        x = rng.normal(size=(60, 2))
        z = (rng.uniform(size=60) < 0.5).astype(float)
        y = 1.0 + z + x[:, 0] + rng.normal(scale=0.1, size=60)

        result = MatchingEstimator(estimand='ATE').estimate(z, y, x)

        self.assertEqual(result.estimand, 'ATE')
        self.assertEqual(result.n_focal, 60)
        self.assertAlmostEqual(result.bias_adjusted.coefficient, 1.0, delta=0.3)

    def test_arm_too_small(self):
        with self.assertRaises(ValueError):
            MatchingEstimator(n_matches=2).estimate(
                np.array([1.0, 0.0, 0.0]), np.zeros(3), np.array([[1.0], [2.0], [3.0]])
            )


class TestMatchBalance(unittest.TestCase):
    """Test cases for balance before and after matching."""

    def setUp(self):
        rng = np.random.default_rng(1)
        n = 200
        age = rng.normal(30, 5, n)
        z = (rng.uniform(size=n) < 1 / (1 + np.exp(-(age - 30) / 3))).astype(float)
        self.x = pd.DataFrame({'age': age, 'married': rng.binomial(1, 0.4, n).astype(float)})
        self.z = z
        self.matches = MatchingEstimator().match(z, self.x.to_numpy())

    def test_balance_table(self):
        balance = match_balance(self.z, self.x, self.matches, n_boots=20, rng=0)

        self.assertEqual(list(balance.index), ['age', 'married'])
        for col in ['mean_treated', 'mean_control', 'mean_treated_matched', 'mean_control_matched',
                    'sdiff_before', 'sdiff_after', 't_pvalue_before', 't_pvalue_after',
                    'ks_pvalue_before', 'ks_pvalue_after']:
            self.assertIn(col, balance.columns)

        for col in ['ks_pvalue_before', 'ks_pvalue_after']:
            self.assertTrue(balance[col].between(0, 1).all())

        treated = self.z == 1
        self.assertAlmostEqual(balance.loc['age', 'mean_treated'], self.x['age'][treated].mean())
        self.assertAlmostEqual(balance.loc['age', 'mean_treated_matched'],
                               self.x['age'][treated].mean())

    def test_matching_improves_balance(self):
        balance = match_balance(self.z, self.x, self.matches, n_boots=20, rng=0)
        self.assertLess(abs(balance.loc['age', 'sdiff_after']),
                        abs(balance.loc['age', 'sdiff_before']))


class TestHelpers(unittest.TestCase):

    def test_scale_covariates(self):
        x = np.array([[1.0, 5.0], [3.0, 5.0], [5.0, 5.0]])
        scaled = scale_covariates(x)
        self.assertAlmostEqual(np.std(scaled[:, 0], ddof=1), 1.0)
        # Constant columns are left unscaled
        np.testing.assert_array_equal(scaled[:, 1], x[:, 1])

    def test_ks_boot_pvalue(self):
        rng = np.random.default_rng(0)
        same = ks_boot_pvalue(rng.normal(size=50), rng.normal(size=50), n_boots=50, rng=1)
        shifted = ks_boot_pvalue(rng.normal(size=50), rng.normal(3, 1, size=50), n_boots=50, rng=1)

        self.assertTrue(0 <= same <= 1)
        self.assertEqual(shifted, 0.0)


if __name__ == '__main__':
    unittest.main()
