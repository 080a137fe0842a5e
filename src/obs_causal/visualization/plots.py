"""
Visualization module for the observational study analysis.
"""

import matplotlib.pyplot as plt
import seaborn as sns
import pandas as pd
import numpy as np
from typing import Dict, Tuple, Optional
import logging

from ..models.causal_models import CausalEstimate
from ..models.randomization import RandomizationTestResult


logger = logging.getLogger(__name__)


class CausalVisualization:
    """Creates visualizations for causal inference analysis."""

    def __init__(self, figsize: Tuple[int, int] = (10, 6)):
        """
        Initialize visualization settings.

        Args:
            figsize: Default figure size
        """
        plt.style.use('default')
        sns.set_palette("husl")
        self.figsize = figsize
        self.colors = {
            'primary': '#2E86AB',
            'secondary': '#A23B72',
            'accent': '#F18F01',
            'neutral': '#C73E1D',
            'light_gray': '#F5F5F5',
            'dark_gray': '#333333'
        }

    def _finish(self, save_path: Optional[str], description: str) -> None:
        plt.tight_layout()

        if save_path:
            plt.savefig(save_path, dpi=300, bbox_inches='tight')
            logger.info(f"{description} saved to {save_path}")

        plt.show()

    def plot_treatment_effects(
        self,
        estimates: Dict[str, CausalEstimate],
        labels: Optional[Dict[str, str]] = None,
        reference: Optional[float] = None,
        save_path: Optional[str] = None
    ) -> None:
        """
        Plot treatment effect estimates with confidence intervals.

        Args:
            estimates: Dictionary of causal estimates
            labels: Optional display names for the methods
            reference: Optional benchmark effect drawn as a vertical line
                (e.g. the experimental estimate)
            save_path: Path to save the figure
        """
        labels = labels or {}
        fig, ax = plt.subplots(figsize=self.figsize)

        methods = [labels.get(m, m) for m in estimates]
        coefficients = [est.coefficient for est in estimates.values()]
        errors_lower = [est.coefficient - est.ci_lower for est in estimates.values()]
        errors_upper = [est.ci_upper - est.coefficient for est in estimates.values()]

        y_pos = np.arange(len(methods))

        ax.errorbar(coefficients, y_pos, xerr=[errors_lower, errors_upper],
                    fmt='o', markersize=8, capsize=5, capthick=2,
                    color=self.colors['primary'], ecolor=self.colors['dark_gray'])

        ax.axvline(x=0, color=self.colors['neutral'], linestyle='--', alpha=0.7)
        if reference is not None:
            ax.axvline(x=reference, color=self.colors['accent'], linestyle='-',
                       alpha=0.9, label='Experimental benchmark')
            ax.legend()

        ax.set_yticks(y_pos)
        ax.set_yticklabels(methods)
        ax.set_xlabel('Average Treatment Effect on 1978 Earnings')
        ax.set_title('Causal Treatment Effect Estimates', fontweight='bold')
        ax.grid(True, alpha=0.3)

        self._finish(save_path, "Treatment effects plot")

    def plot_propensity_overlap(
        self,
        pscore: np.ndarray,
        z: np.ndarray,
        bins: int = 50,
        save_path: Optional[str] = None
    ) -> None:
        """
        Histogram of propensity scores by treatment arm.

        Args:
            pscore: Propensity scores
            z: Binary treatment indicator
            bins: Number of histogram bins
            save_path: Path to save the figure
        """
        z = np.asarray(z)
        fig, ax = plt.subplots(figsize=self.figsize)

        edges = np.linspace(0, 1, bins + 1)
        ax.hist(pscore[z == 0], bins=edges, density=True, alpha=0.5,
                color=self.colors['primary'], label='Control')
        ax.hist(pscore[z == 1], bins=edges, density=True, alpha=0.5,
                color=self.colors['accent'], label='Treatment')

        ax.set_xlabel('Estimated Propensity Score')
        ax.set_ylabel('Density')
        ax.set_title('Propensity Score Overlap', fontweight='bold')
        ax.legend()

        self._finish(save_path, "Propensity overlap plot")

    def plot_stratum_balance(self, balance: pd.DataFrame, save_path: Optional[str] = None) -> None:
        """
        Heatmap of covariate balance p-values by propensity stratum.

        Args:
            balance: Balance table (covariates by strata)
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=(8, max(4, 0.5 * len(balance))))

        sns.heatmap(balance, annot=True, cmap='RdYlGn', vmin=0, vmax=1,
                    fmt='.3f', cbar_kws={'label': 'p-value'}, ax=ax)

        ax.set_title('Covariate Balance Within Propensity Strata', fontweight='bold')

        self._finish(save_path, "Stratum balance heatmap")

    def plot_randomization_distribution(
        self,
        result: RandomizationTestResult,
        binwidth: float = 200,
        save_path: Optional[str] = None
    ) -> None:
        """
        Plot the randomization distribution of the difference in means.

        Args:
            result: Fisher randomization test result
            binwidth: Histogram bin width
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)

        null = result.null_distribution
        edges = np.arange(null.min(), max(null.max(), result.observed) + binwidth, binwidth)
        ax.hist(null, bins=edges, color=self.colors['primary'], edgecolor='gray', linewidth=0.1)
        ax.axvline(x=result.observed, color=self.colors['neutral'])

        ax.set_xlabel('Difference in means')
        ax.set_ylabel('Count')
        ax.set_title(f'Randomization Distribution (p = {result.p_value:.3f})', fontweight='bold')

        self._finish(save_path, "Randomization distribution plot")

    def plot_bootstrap_distributions(
        self,
        replicates: pd.DataFrame,
        point: pd.Series,
        labels: Optional[Dict[str, str]] = None,
        save_path: Optional[str] = None
    ) -> None:
        """
        Histograms of bootstrap replicates for each estimator.

        Args:
            replicates: Bootstrap estimates, one column per estimator
            point: Point estimates indexed like the replicate columns
            labels: Optional display names for the estimators
            save_path: Path to save the figure
        """
        labels = labels or {}
        n_cols = 3
        n_rows = int(np.ceil(len(replicates.columns) / n_cols))
        fig, axes = plt.subplots(n_rows, n_cols, figsize=(6 * n_cols, 4 * n_rows))
        axes = np.atleast_1d(axes).ravel()

        for ax, name in zip(axes, replicates.columns):
            ax.hist(replicates[name], bins=20, color=self.colors['secondary'], alpha=0.7)
            ax.axvline(x=point[name], color=self.colors['dark_gray'], linestyle='--')
            ax.set_title(labels.get(name, name), fontsize=10)

        for ax in axes[len(replicates.columns):]:
            ax.axis('off')

        fig.suptitle('Bootstrap Distributions', fontsize=14, fontweight='bold')

        self._finish(save_path, "Bootstrap distributions plot")

    def plot_causal_dag(self, save_path: Optional[str] = None) -> None:
        """
        Create a directed acyclic graph showing causal assumptions.

        Args:
            save_path: Path to save the figure
        """
        import networkx as nx

        G = nx.DiGraph()

        nodes = {
            'Demographics': (0, 2),
            'Education': (0, 1),
            'Prior Earnings': (0, 0),
            'Job Training': (2, 1),
            'Earnings 1978': (4, 1)
        }

        for node, pos in nodes.items():
            G.add_node(node, pos=pos)

        edges = [
            ('Demographics', 'Job Training'),
            ('Education', 'Job Training'),
            ('Prior Earnings', 'Job Training'),
            ('Demographics', 'Earnings 1978'),
            ('Education', 'Earnings 1978'),
            ('Prior Earnings', 'Earnings 1978'),
            ('Job Training', 'Earnings 1978')
        ]

        G.add_edges_from(edges)

        fig, ax = plt.subplots(figsize=(12, 8))

        pos = nx.get_node_attributes(G, 'pos')

        nx.draw_networkx_nodes(G, pos, node_color=self.colors['primary'],
                               node_size=3000, alpha=0.9, ax=ax)
        nx.draw_networkx_edges(G, pos, edge_color=self.colors['dark_gray'],
                               arrows=True, arrowsize=20, alpha=0.7, ax=ax)
        nx.draw_networkx_labels(G, pos, font_size=10, font_weight='bold', ax=ax)

        # Highlight treatment and outcome
        nx.draw_networkx_nodes(G, pos, nodelist=['Job Training'],
                               node_color=self.colors['accent'],
                               node_size=3000, alpha=0.9, ax=ax)
        nx.draw_networkx_nodes(G, pos, nodelist=['Earnings 1978'],
                               node_color=self.colors['neutral'],
                               node_size=3000, alpha=0.9, ax=ax)

        ax.set_title('Causal Directed Acyclic Graph (DAG)', fontweight='bold', fontsize=14)
        ax.axis('off')

        legend_elements = [
            plt.Line2D([0], [0], marker='o', color='w', markerfacecolor=self.colors['primary'],
                       markersize=15, label='Confounders'),
            plt.Line2D([0], [0], marker='o', color='w', markerfacecolor=self.colors['accent'],
                       markersize=15, label='Treatment'),
            plt.Line2D([0], [0], marker='o', color='w', markerfacecolor=self.colors['neutral'],
                       markersize=15, label='Outcome')
        ]
        ax.legend(handles=legend_elements, loc='upper right')

        self._finish(save_path, "Causal DAG")
