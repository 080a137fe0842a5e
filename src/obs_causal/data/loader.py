"""
Data loading module for LaLonde-style job training data.
"""

import pandas as pd
from pathlib import Path
from typing import List, Optional, Union
import logging


logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = [
    'treat', 'age', 'educ', 'black', 'hispan', 'married', 'nodegree', 're74', 're75', 're78'
]


class LalondeDataLoader:
    """Loads a delimited LaLonde-style file (e.g. the CPS observational comparison sample)."""

    def __init__(self, path: Union[str, Path], required_columns: Optional[List[str]] = None):
        """
        Initialize the data loader.

        Args:
            path: Path to a delimited file with a header row
            required_columns: Columns that must be present (default: REQUIRED_COLUMNS)
        """
        self.path = Path(path)
        self.required_columns = REQUIRED_COLUMNS if required_columns is None else required_columns
        self._raw_data = None

    def load_data(self) -> pd.DataFrame:
        """
        Read the file, sniffing whitespace- or comma-separated layouts.

        Returns:
            Raw dataset, one row per unit

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If required columns are missing
        """
        if not self.path.exists():
            raise FileNotFoundError(f"Data file not found: {self.path}")

        logger.info(f"Loading data from {self.path}")

        with open(self.path, 'r') as f:
            header = f.readline()
        sep = ',' if ',' in header else r'\s+'
        df = pd.read_csv(self.path, sep=sep)

        # Quoted headers ("treat") survive whitespace parsing
        df.columns = [str(col).strip().strip('"') for col in df.columns]

        missing = [col for col in self.required_columns if col not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        self._raw_data = df
        logger.info(f"Loaded dataset with {len(df)} observations and {len(df.columns)} columns")

        return df

    def describe_dataset(self) -> None:
        """Print dataset description and basic statistics."""
        if self._raw_data is None:
            logger.error("No data loaded. Call load_data() first.")
            return

        df = self._raw_data
        print("Dataset Overview:")
        print("=" * 50)
        print(f"Shape: {df.shape}")
        print(f"Treated units: {int(df['treat'].sum())}")
        print(f"Control units: {int((df['treat'] == 0).sum())}")

        print("\nMean outcome by arm:")
        for arm, value in df.groupby('treat')['re78'].mean().items():
            print(f"  treat={arm}: {value:.1f}")

        print("\nMissing data summary:")
        missing_pct = df.isnull().mean() * 100
        for col in df.columns:
            if missing_pct[col] > 0:
                print(f"  {col}: {missing_pct[col]:.1f}%")
