"""
Data preprocessing module for the observational job training analysis.
"""

import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Tuple
import logging


logger = logging.getLogger(__name__)

DEFAULT_COVARIATES = [
    'age', 'educ', 'black', 'hispan', 'married', 'nodegree', 're74', 're75', 'u74', 'u75'
]


class LalondePreprocessor:
    """Derives unemployment indicators and splits the data into (z, y, x)."""

    def __init__(
        self,
        treatment_col: str = 'treat',
        outcome_col: str = 're78',
        covariates: Optional[List[str]] = None
    ):
        """
        Initialize the preprocessor.

        Args:
            treatment_col: Name of treatment variable
            outcome_col: Name of outcome variable
            covariates: Covariate columns (default: DEFAULT_COVARIATES)
        """
        self.treatment_col = treatment_col
        self.outcome_col = outcome_col
        self.covariates = DEFAULT_COVARIATES if covariates is None else covariates

    def preprocess(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Add zero-earnings indicators and drop incomplete rows.

        Args:
            df: Raw dataset

        Returns:
            Dataset with u74/u75 and complete treatment, outcome and covariates
        """
        logger.info("Starting data preprocessing")
        df_processed = df.copy()

        # Unemployed in the pre-treatment years
        for year in ('74', '75'):
            if f're{year}' in df_processed.columns:
                df_processed[f'u{year}'] = (df_processed[f're{year}'] == 0).astype(int)

        used = [self.treatment_col, self.outcome_col] + self.covariates
        missing = [col for col in used if col not in df_processed.columns]
        if missing:
            raise ValueError(f"Missing columns after preprocessing: {missing}")

        initial_size = len(df_processed)
        df_processed = df_processed.dropna(subset=used).reset_index(drop=True)
        if len(df_processed) < initial_size:
            logger.warning(f"Dropped {initial_size - len(df_processed)} rows with missing values")

        treatment_values = set(np.unique(df_processed[self.treatment_col]))
        if not treatment_values <= {0, 1}:
            raise ValueError(f"Treatment column '{self.treatment_col}' must be 0/1, "
                             f"found {sorted(treatment_values)}")

        logger.info(f"Preprocessing complete. Final dataset shape: {df_processed.shape}")
        return df_processed

    def split(self, df: pd.DataFrame) -> Tuple[np.ndarray, np.ndarray, pd.DataFrame]:
        """
        Split a preprocessed dataset into treatment, outcome and covariates.

        Args:
            df: Preprocessed dataset

        Returns:
            Tuple of treatment array, outcome array and covariate DataFrame
        """
        z = df[self.treatment_col].to_numpy(dtype=float)
        y = df[self.outcome_col].to_numpy(dtype=float)
        x = df[self.covariates].astype(float)
        return z, y, x

    def get_feature_groups(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        """
        Categorize covariates into groups for reporting.

        Args:
            df: Preprocessed dataset

        Returns:
            Dictionary mapping feature group names to column lists
        """
        demographics = ['age', 'black', 'hispan', 'married']
        education = ['educ', 'nodegree']
        earnings_history = ['re74', 're75', 'u74', 'u75']

        return {
            'demographics': [col for col in demographics if col in df.columns],
            'education': [col for col in education if col in df.columns],
            'earnings_history': [col for col in earnings_history if col in df.columns]
        }
