"""
Causal effect estimation for observational studies.

This package estimates the effect of job training on earnings from observational
data with regression imputation, inverse propensity weighting, doubly robust
estimation, propensity score stratification and matching, and compares them
against randomization-based inference for the experimental benchmark.
"""

__version__ = "1.0.0"
__author__ = "Data Science Research"
