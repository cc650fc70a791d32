"""
Model Diagnostics and Figures
=============================

Residual checks for the chosen egg-size model and the figures written by the
analysis:

- predicted-value, residual and random-intercept distributions
- normal QQ data and Shapiro-Wilk tests for residuals and random intercepts
- fitted-vs-residual pattern check
- equal-variance test between the lower and upper half of fitted values
"""

import warnings
from dataclasses import dataclass
from typing import Optional, Dict, Tuple

import numpy as np
import pandas as pd
from scipy import stats
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from egg_models import ModelFitResult


# =====================================================================
#  1. DIAGNOSTIC CHECKS
# =====================================================================

@dataclass
class DiagnosticsResult:
    """
    Residual diagnostics of a single mixed-model fit.

    Attributes
    ----------
    model : str
        Model name.
    fitted, residuals : np.ndarray
    random_intercepts : pd.Series
        Predicted intercept per group of the first random effect (plot).
    residual_normality, random_effect_normality : dict
        Shapiro-Wilk 'statistic' and 'p_value' (NaN below three values).
    qq_residuals, qq_random : tuple of np.ndarray
        (theoretical quantiles, ordered values) for QQ plots.
    fitted_residual : dict
        Pearson 'r' and 'p_value' between fitted values and residuals.
    equal_variance : dict
        Output of :func:`equal_variance_test`.
    """
    model: str
    fitted: np.ndarray
    residuals: np.ndarray
    random_intercepts: pd.Series
    residual_normality: Dict[str, float]
    random_effect_normality: Dict[str, float]
    qq_residuals: Tuple[np.ndarray, np.ndarray]
    qq_random: Tuple[np.ndarray, np.ndarray]
    fitted_residual: Dict[str, float]
    equal_variance: Dict[str, float]

    def to_frame(self) -> pd.DataFrame:
        """Scalar checks as a table (check, statistic, p_value)."""
        ev = self.equal_variance
        return pd.DataFrame([
            {'check': 'residual normality (Shapiro-Wilk)',
             'statistic': self.residual_normality['statistic'],
             'p_value': self.residual_normality['p_value']},
            {'check': 'random intercept normality (Shapiro-Wilk)',
             'statistic': self.random_effect_normality['statistic'],
             'p_value': self.random_effect_normality['p_value']},
            {'check': 'fitted vs residual correlation',
             'statistic': self.fitted_residual['r'],
             'p_value': self.fitted_residual['p_value']},
            {'check': 'equal variance, lower vs upper fitted half (F)',
             'statistic': ev['f_stat'], 'p_value': ev['p_value']},
            {'check': 'equal variance, lower vs upper fitted half (Levene)',
             'statistic': ev['levene_stat'], 'p_value': ev['levene_p_value']},
        ])


def _shapiro(values: np.ndarray) -> Dict[str, float]:
    values = np.asarray(values, dtype=float)
    values = values[np.isfinite(values)]
    if len(values) < 3 or np.ptp(values) == 0:
        return {'statistic': np.nan, 'p_value': np.nan}
    w, p = stats.shapiro(values)
    return {'statistic': float(w), 'p_value': float(p)}


def _qq(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    values = np.asarray(values, dtype=float)
    if len(values) == 0:
        return np.array([]), np.array([])
    (theoretical, ordered), _ = stats.probplot(values, dist='norm')
    return theoretical, ordered


def equal_variance_test(fitted: np.ndarray, residuals: np.ndarray) -> Dict[str, float]:
    """
    Compare residual variance below and above the median fitted value.

    Residuals with fitted value <= median form the lower half. The two-sided
    F test is the formal check; Levene's (median-centred) test is reported
    alongside as it is robust to non-normal residuals.

    Returns
    -------
    dict
        'median_fitted', 'n_lower', 'n_upper', 'var_lower', 'var_upper',
        'f_stat' (var_lower / var_upper), 'df1', 'df2', 'p_value',
        'levene_stat', 'levene_p_value'.
    """
    fitted = np.asarray(fitted, dtype=float)
    residuals = np.asarray(residuals, dtype=float)
    if fitted.shape != residuals.shape:
        raise ValueError("fitted and residuals must have the same length")

    split = float(np.median(fitted))
    lower = residuals[fitted <= split]
    upper = residuals[fitted > split]
    if len(lower) < 2 or len(upper) < 2:
        raise ValueError("Each fitted half needs at least two residuals")

    var_lower = float(np.var(lower, ddof=1))
    var_upper = float(np.var(upper, ddof=1))
    df1, df2 = len(lower) - 1, len(upper) - 1
    f_stat = var_lower / var_upper
    p_value = float(2 * min(stats.f.cdf(f_stat, df1, df2), stats.f.sf(f_stat, df1, df2)))
    lev_stat, lev_p = stats.levene(lower, upper, center='median')

    return {
        'median_fitted': split,
        'n_lower': len(lower),
        'n_upper': len(upper),
        'var_lower': var_lower,
        'var_upper': var_upper,
        'f_stat': float(f_stat),
        'df1': df1,
        'df2': df2,
        'p_value': min(p_value, 1.0),
        'levene_stat': float(lev_stat),
        'levene_p_value': float(lev_p),
    }


def run_diagnostics(fit: ModelFitResult) -> DiagnosticsResult:
    """Residual and random-effect diagnostics for one fitted model."""
    # Plot intercepts; for crossed fits the first grouping column
    effect = fit.random_effects[0]
    intercepts = fit.random_intercepts[effect].sort_index()
    if not intercepts.any():
        warnings.warn(f"Variance of '{effect}' is at zero; its predicted "
                      f"intercepts are all zero", UserWarning, stacklevel=2)

    fitted, resid = fit.fitted, fit.residuals
    if np.ptp(fitted) > 0:
        r, p = stats.pearsonr(fitted, resid)
        fitted_residual = {'r': float(r), 'p_value': float(p)}
    else:
        fitted_residual = {'r': np.nan, 'p_value': np.nan}

    return DiagnosticsResult(
        model=fit.name,
        fitted=fitted,
        residuals=resid,
        random_intercepts=intercepts,
        residual_normality=_shapiro(resid),
        random_effect_normality=_shapiro(intercepts.values),
        qq_residuals=_qq(resid),
        qq_random=_qq(intercepts.values),
        fitted_residual=fitted_residual,
        equal_variance=equal_variance_test(fitted, resid),
    )


# =====================================================================
#  2. FIGURES
# =====================================================================

def _save(fig, fig_path):
    if fig_path:
        fig.savefig(fig_path, dpi=150, bbox_inches="tight")
        print(f"Saved: {fig_path}")
    plt.close(fig)
    return fig


def plot_model_diagnostics(diag: DiagnosticsResult, fig_path=None):
    """Six-panel diagnostic figure for the chosen model.

    Panels: predicted values, residuals, random intercepts (histograms),
    residual and random-intercept QQ plots, fitted vs residual scatter.
    """
    fig, axes = plt.subplots(2, 3, figsize=(13, 8))

    ax = axes[0, 0]
    ax.hist(diag.fitted, bins=20, color="steelblue", edgecolor="white")
    ax.set_title("Predicted egg size")
    ax.set_xlabel("mm")

    ax = axes[0, 1]
    ax.hist(diag.residuals, bins=20, color="indianred", edgecolor="white")
    ax.set_title("Residuals")
    ax.set_xlabel("mm")

    ax = axes[0, 2]
    if len(diag.random_intercepts):
        ax.bar(diag.random_intercepts.index.astype(str), diag.random_intercepts.values,
               color="seagreen")
        ax.axhline(0, color="k", lw=0.8)
        ax.tick_params(axis="x", rotation=45)
    ax.set_title("Plot random intercepts")

    for ax, (theo, ordered), title in (
        (axes[1, 0], diag.qq_residuals, "Residual QQ"),
        (axes[1, 1], diag.qq_random, "Random intercept QQ"),
    ):
        if len(theo):
            ax.scatter(theo, ordered, s=12, color="k")
            slope, intercept = np.polyfit(theo, ordered, 1) if len(theo) > 1 else (0.0, 0.0)
            ax.plot(theo, intercept + slope * theo, color="red", lw=1)
        ax.set_title(title)
        ax.set_xlabel("Theoretical quantiles")
        ax.set_ylabel("Ordered values")

    ax = axes[1, 2]
    ax.scatter(diag.fitted, diag.residuals, s=12, alpha=0.7)
    ax.axhline(0, color="k", lw=0.8)
    ax.axvline(diag.equal_variance['median_fitted'], color="gray", ls="--", lw=0.8)
    ax.set_title(f"Fitted vs residual (F-test p = {diag.equal_variance['p_value']:.3f})")
    ax.set_xlabel("Fitted")
    ax.set_ylabel("Residual")

    plt.suptitle(f"Diagnostics: {diag.model}", fontsize=12, y=1.01)
    plt.tight_layout()
    return _save(fig, fig_path)


def plot_covariate_series(covariates: pd.DataFrame, fig_path=None):
    """Standardized selected covariates by year, one line per covariate."""
    windows = covariates.attrs.get('windows', {})
    fig, ax = plt.subplots(figsize=(9, 5))
    for col in covariates.columns:
        label = f"{col} ({windows[col]})" if col in windows else col
        ax.plot(covariates.index, covariates[col], marker="o", label=label)
    ax.axhline(0, color="k", lw=0.8)
    ax.set_xlabel("Year")
    ax.set_ylabel("Standardized value")
    ax.set_xticks(list(covariates.index))
    ax.legend(fontsize=8, ncol=2)
    ax.set_title("Selected ocean covariates")
    plt.tight_layout()
    return _save(fig, fig_path)


def plot_correlation_heatmap(correlations: dict, fig_path=None):
    """Annotated heatmap of covariate correlations; flagged pairs in bold."""
    matrix = correlations['matrix']
    flagged = set(correlations['flagged'])
    data = matrix.values

    fig, ax = plt.subplots(figsize=(6.5, 5.5))
    im = ax.imshow(data, cmap="RdBu_r", vmin=-1, vmax=1)
    for i in range(data.shape[0]):
        for j in range(data.shape[1]):
            if np.isnan(data[i, j]):
                ax.text(j, i, "-", ha="center", va="center", fontsize=8, color="gray")
                continue
            pair = (matrix.index[i], matrix.columns[j])
            bold = pair in flagged or pair[::-1] in flagged
            ax.text(j, i, f"{data[i, j]:.2f}", ha="center", va="center", fontsize=8,
                    fontweight="bold" if bold else "normal",
                    color="white" if abs(data[i, j]) > 0.6 else "black")

    ax.set_xticks(range(len(matrix.columns)))
    ax.set_xticklabels(matrix.columns, rotation=45, ha="right")
    ax.set_yticks(range(len(matrix.index)))
    ax.set_yticklabels(matrix.index)
    ax.set_title(f"Covariate correlation (|r| > {correlations['threshold']} in bold)")
    plt.colorbar(im, ax=ax, shrink=0.8, label="Pearson r")
    plt.tight_layout()
    return _save(fig, fig_path)


def plot_coefficient_forest(estimates: pd.DataFrame, fig_path=None):
    """Forest plot of fixed effects (95% CI) for the top-ranked models.

    Parameters
    ----------
    estimates : pd.DataFrame
        Long table from ``ModelSelectionResult.estimates_table()``.
    """
    est = estimates[estimates['term'] != 'Intercept']
    terms = list(dict.fromkeys(est['term']))
    ranks = sorted(est['rank'].unique())
    if not terms:
        fig, ax = plt.subplots(figsize=(6, 2))
        ax.text(0.5, 0.5, "Top models contain no predictors", ha="center", va="center")
        ax.axis("off")
        return _save(fig, fig_path)

    colors = plt.cm.viridis(np.linspace(0, 0.9, len(ranks)))
    fig, ax = plt.subplots(figsize=(8, 0.6 * len(terms) * max(1, len(ranks) / 3) + 2))
    offset = np.linspace(-0.3, 0.3, len(ranks)) if len(ranks) > 1 else np.zeros(1)
    for k, rank in enumerate(ranks):
        sub = est[est['rank'] == rank]
        y = np.array([terms.index(t) for t in sub['term']]) + offset[k]
        ax.errorbar(sub['estimate'], y,
                    xerr=[sub['estimate'] - sub['lower'], sub['upper'] - sub['estimate']],
                    fmt="o", color=colors[k], ms=5, capsize=2,
                    label=f"#{rank}: {sub['model'].iloc[0]}")
    ax.axvline(0, color="k", lw=0.8)
    ax.set_yticks(range(len(terms)))
    ax.set_yticklabels(terms)
    ax.invert_yaxis()
    ax.set_xlabel("Effect on egg size (mm per SD; per egg-order step)")
    ax.legend(fontsize=7, loc="best")
    ax.set_title("Top models: fixed effects (REML, 95% CI)")
    plt.tight_layout()
    return _save(fig, fig_path)


def plot_site_map(plots: pd.DataFrame, eggs: Optional[pd.DataFrame] = None,
                  coastline: Optional[pd.DataFrame] = None, fig_path=None):
    """Monitoring plot locations on Santa Barbara Island.

    Marker size scales with the number of eggs measured per plot when
    ``eggs`` is given. ``coastline`` (from ``read_coastline``) is filled
    under the points, one polygon per ``part``.
    """
    fig, ax = plt.subplots(figsize=(6, 6))
    if coastline is not None and len(coastline):
        for _, ring in coastline.groupby('part', sort=False):
            ax.fill(ring['lon'], ring['lat'], facecolor="burlywood",
                    edgecolor="dimgray", lw=0.8, zorder=1)
    sizes = np.full(len(plots), 60.0)
    if eggs is not None and len(eggs):
        counts = eggs.groupby('plot').size()
        n = plots['plot'].map(counts).fillna(0).values
        sizes = 30 + 170 * n / max(n.max(), 1)

    ax.scatter(plots['lon'], plots['lat'], s=sizes, c="gold", edgecolor="k", zorder=3)
    for _, row in plots.iterrows():
        ax.annotate(row['plot'], (row['lon'], row['lat']), xytext=(4, 4),
                    textcoords="offset points", fontsize=8, fontweight="bold")
    ax.set_xlabel("Longitude")
    ax.set_ylabel("Latitude")
    ax.set_aspect(1 / np.cos(np.deg2rad(plots['lat'].mean())))
    ax.grid(alpha=0.3)
    ax.set_title("SCMU monitoring plots")
    plt.tight_layout()
    return _save(fig, fig_path)


__all__ = [
    'DiagnosticsResult',
    'equal_variance_test',
    'run_diagnostics',
    'plot_model_diagnostics',
    'plot_covariate_series',
    'plot_correlation_heatmap',
    'plot_coefficient_forest',
    'plot_site_map',
]
