"""
SCMU Ocean Covariate Builder
============================

This module turns raw oceanographic time series into yearly, standardized
covariates for the egg-size models:

1. **Windowing**: four temporal aggregation windows per series
2. **Standardization**: zero mean / unit sample variance over the study years
3. **Window selection**: one window per covariate, chosen by AIC of a
   single-predictor mixed model of egg size
4. **Correlation screen**: pairwise Pearson correlation between the selected
   covariates; pairs above the threshold are never fitted together

Window definitions (year t = breeding season)
---------------------------------------------
    half      mean of January-June of year t
    full      mean of July(t-1)-June(t)
    half_lag  half(t-1)
    full_lag  full(t-1)

Annual-only series (larval anchovy) have just ``full`` = value in year t and
``full_lag`` = value in year t-1.

Dependencies
------------
- numpy
- pandas
- scipy

Example Workflow
----------------
>>> from egg_data_readers import read_pdo
>>> from egg_covariates import window_series, build_window_variants
>>> pdo = read_pdo('data/raw/covariates/pdo.txt')
>>> pdo_full = window_series(pdo['PDO'], 'full')
>>> variants = build_window_variants(pdo)
"""

import warnings
from typing import Optional, Tuple, Dict, List, Union

import numpy as np
import pandas as pd
from scipy import stats

from egg_models import fit_mixed_model, RANDOM_EFFECT


STUDY_YEARS = (2009, 2017)
WINDOW_KINDS = ('half', 'full', 'half_lag', 'full_lag')
ANNUAL_WINDOW_KINDS = ('full', 'full_lag')
CORRELATION_THRESHOLD = 0.65
COVARIATES = ('ANCHL', 'BEUTI', 'NPGO', 'ONI', 'PDO', 'SST')


class CovariateWarning(UserWarning):
    """A windowed covariate is empty, constant or incomplete."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def _as_series(data: Union[pd.Series, pd.DataFrame]) -> pd.Series:
    """Accept a Series or a single-column reader DataFrame."""
    if isinstance(data, pd.DataFrame):
        if data.shape[1] != 1:
            raise ValueError(
                f"Expected a single-column DataFrame, got columns {list(data.columns)}"
            )
        s = data.iloc[:, 0]
        s.attrs = dict(data.attrs)
        return s
    return data


def _estimate_resolution_months(index: pd.DatetimeIndex) -> float:
    """
    Estimate the temporal resolution of a datetime index in months.

    Returns approximate months between observations:
    - 1.0 for monthly
    - 12.0 for annual
    """
    if len(index) < 2:
        return 12.0

    diffs = np.diff(index.sort_values().values).astype('timedelta64[D]').astype(float)
    months = np.median(diffs) / 30.44  # Average days per month
    return 1.0 if months < 6 else 12.0


def _resolution(series: pd.Series, resolution: Optional[str]) -> str:
    if resolution is None:
        resolution = series.attrs.get('native_time_resolution')
    if resolution is None:
        resolution = 'monthly' if _estimate_resolution_months(series.index) < 6 else 'annual'
    if resolution not in ('monthly', 'annual'):
        raise ValueError(f"resolution must be 'monthly' or 'annual', got '{resolution}'")
    return resolution


def _year_index(years: Tuple[int, int]) -> pd.Index:
    start, end = years
    if end < start:
        raise ValueError(f"Empty year range {years}")
    return pd.Index(range(start, end + 1), name='year')


def standardize(values: pd.Series) -> pd.Series:
    """Subtract the mean and divide by the sample standard deviation (ddof=1)."""
    return (values - values.mean()) / values.std(ddof=1)


# =============================================================================
# SECTION 1: WINDOWED AGGREGATES
# =============================================================================

def aggregate_window(
    series: Union[pd.Series, pd.DataFrame],
    kind: str,
    resolution: Optional[str] = None,
) -> pd.Series:
    """
    Aggregate a raw series into one value per breeding year.

    Parameters
    ----------
    series : pd.Series or single-column pd.DataFrame
        Raw values with a DatetimeIndex. Missing values are dropped before
        averaging.
    kind : str
        One of 'half', 'full', 'half_lag', 'full_lag'.
    resolution : str, optional
        'monthly' or 'annual'. Defaults to ``attrs['native_time_resolution']``
        or is inferred from the index spacing.

    Returns
    -------
    pd.Series
        Unstandardized yearly values indexed by integer year, covering every
        year the data support.

    Examples
    --------
    >>> full = aggregate_window(sst, 'full')
    >>> lag = aggregate_window(sst, 'full_lag')
    >>> lag.loc[2012] == full.loc[2011]
    True
    """
    if kind not in WINDOW_KINDS:
        raise ValueError(f"Unknown window kind '{kind}'. Options: {list(WINDOW_KINDS)}")

    s = _as_series(series)
    resolution = _resolution(s, resolution)
    if not isinstance(s.index, pd.DatetimeIndex):
        raise ValueError("series must have a DatetimeIndex")
    name = s.name
    s = s.dropna()

    years = np.asarray(s.index.year)
    months = np.asarray(s.index.month)

    if resolution == 'annual':
        if kind not in ANNUAL_WINDOW_KINDS:
            raise ValueError(
                f"Window '{kind}' needs monthly data; annual series support "
                f"{list(ANNUAL_WINDOW_KINDS)}"
            )
        yearly = s.groupby(years).mean()
    elif kind in ('half', 'half_lag'):
        spring = months <= 6
        yearly = s[spring].groupby(years[spring]).mean()
    else:
        # July-December counts toward the following breeding year
        label = np.where(months >= 7, years + 1, years)
        yearly = s.groupby(label).mean()

    yearly.index = yearly.index.astype(int)
    if kind.endswith('_lag'):
        yearly.index = yearly.index + 1
    yearly.index.name = 'year'
    yearly.name = f"{name}_{kind}" if name is not None else kind
    return yearly


def window_series(
    series: Union[pd.Series, pd.DataFrame],
    kind: str,
    years: Tuple[int, int] = STUDY_YEARS,
    standardize_values: bool = True,
    resolution: Optional[str] = None,
) -> pd.Series:
    """
    Windowed covariate restricted to the study years and standardized.

    The mean and sample standard deviation are computed over exactly the
    restricted years, so the scaling is specific to the study period.

    Parameters
    ----------
    series : pd.Series or single-column pd.DataFrame
    kind : str
        One of 'half', 'full', 'half_lag', 'full_lag'.
    years : (int, int), default (2009, 2017)
        Inclusive study-year range.
    standardize_values : bool, default True
    resolution : str, optional

    Returns
    -------
    pd.Series
        One value per study year (NaN where the window holds no data).
    """
    yearly = aggregate_window(series, kind, resolution=resolution)
    out = yearly.reindex(_year_index(years))

    n_valid = int(out.notna().sum())
    if n_valid < len(out):
        missing = list(out.index[out.isna()])
        warnings.warn(f"{out.name}: no data for years {missing}",
                      CovariateWarning, stacklevel=2)
    if not standardize_values:
        return out
    if n_valid < 2 or np.isclose(out.std(ddof=1), 0.0):
        warnings.warn(f"{out.name}: fewer than two distinct values, cannot standardize",
                      CovariateWarning, stacklevel=2)
        return out * np.nan
    return standardize(out)


def build_window_variants(
    series: Union[pd.Series, pd.DataFrame],
    name: Optional[str] = None,
    years: Tuple[int, int] = STUDY_YEARS,
    resolution: Optional[str] = None,
) -> pd.DataFrame:
    """
    Every valid standardized window of one covariate.

    Returns
    -------
    pd.DataFrame
        Index = study year; columns ``<name>_<kind>`` (four for monthly
        series, two for annual series).
    """
    s = _as_series(series)
    name = name or s.name
    if name is None:
        raise ValueError("Covariate name required for an unnamed series")
    s = s.rename(name)
    resolution = _resolution(s, resolution)

    kinds = WINDOW_KINDS if resolution == 'monthly' else ANNUAL_WINDOW_KINDS
    columns = {
        f"{name}_{kind}": window_series(s, kind, years=years, resolution=resolution)
        for kind in kinds
    }
    return pd.DataFrame(columns, index=_year_index(years))


def join_eggs(eggs: pd.DataFrame, yearly: pd.DataFrame) -> pd.DataFrame:
    """Attach year-indexed covariates to egg rows; years without data get NaN."""
    if 'year' not in eggs.columns:
        raise ValueError("eggs must have a 'year' column")
    joined = eggs.merge(yearly, left_on='year', right_index=True, how='left')
    return joined.reset_index(drop=True)


# =============================================================================
# SECTION 2: WINDOW SELECTION
# =============================================================================

def select_windows(
    eggs: pd.DataFrame,
    variants: pd.DataFrame,
    random_effect: str = RANDOM_EFFECT,
    verbose: bool = False,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Pick one window per covariate by AIC.

    For every variant column a single-predictor mixed model
    ``size ~ variant + (1 | plot)`` is fitted by ML to the eggs joined by year.
    The lowest AIC wins; on an exact tie the first variant in
    ``WINDOW_KINDS`` order is kept. Fits that fail or do not converge get a
    NaN AIC and cannot be selected.

    Parameters
    ----------
    eggs : pd.DataFrame
        Egg table (year, plot, size, ...).
    variants : pd.DataFrame
        Columns ``<COVARIATE>_<kind>`` indexed by year, e.g. from
        :func:`build_window_variants`.
    random_effect : str, default 'plot'
    verbose : bool

    Returns
    -------
    covariates : pd.DataFrame
        Index = year; one column per covariate holding its selected window.
        ``attrs['windows']`` maps covariate -> selected kind.
    selection : pd.DataFrame
        One row per variant: covariate, window, n_obs, AIC, delta_AIC,
        selected.
    """
    joined = join_eggs(eggs, variants)

    groups: Dict[str, List[Tuple[str, str]]] = {}
    for col in variants.columns:
        covariate, kind = col.split('_', 1)
        if kind not in WINDOW_KINDS:
            raise ValueError(f"Column '{col}' is not <COVARIATE>_<window>")
        groups.setdefault(covariate, []).append((kind, col))

    rows = []
    selected = {}
    for covariate, entries in groups.items():
        entries.sort(key=lambda e: WINDOW_KINDS.index(e[0]))
        best_col, best_aic = None, np.inf
        cov_rows = []
        for kind, col in entries:
            try:
                fit = fit_mixed_model(joined, [col], reml=False,
                                      random_effects=(random_effect,))
                aic, n_obs = fit.aic, fit.n_obs
            except (np.linalg.LinAlgError, ValueError) as e:
                warnings.warn(f"{col}: window fit failed ({e})",
                              CovariateWarning, stacklevel=2)
                aic, n_obs = np.nan, 0
            else:
                if not fit.converged:
                    warnings.warn(f"{col}: window fit did not converge",
                                  CovariateWarning, stacklevel=2)
                    aic = np.nan
            if aic < best_aic:
                best_col, best_aic = col, aic
            cov_rows.append({'covariate': covariate, 'window': kind, 'column': col,
                             'n_obs': n_obs, 'AIC': aic})

        if best_col is None:
            raise RuntimeError(f"No window of {covariate} could be fitted")
        if len({r['n_obs'] for r in cov_rows if r['n_obs']}) > 1:
            warnings.warn(
                f"{covariate}: windows were fitted on different numbers of eggs; "
                f"AIC values are not strictly comparable",
                CovariateWarning, stacklevel=2,
            )
        for r in cov_rows:
            r['delta_AIC'] = r['AIC'] - best_aic
            r['selected'] = r['column'] == best_col
        rows.extend(cov_rows)
        selected[covariate] = best_col

        if verbose:
            print(f"  {covariate:<6s} -> {best_col.split('_', 1)[1]:<9s} "
                  f"(AIC={best_aic:.2f})")

    covariates = pd.DataFrame({cov: variants[col] for cov, col in selected.items()},
                              index=variants.index)
    covariates.attrs['windows'] = {cov: col.split('_', 1)[1] for cov, col in selected.items()}
    return covariates, pd.DataFrame(rows)


# =============================================================================
# SECTION 3: CORRELATION SCREEN
# =============================================================================

def screen_correlations(
    covariates: pd.DataFrame,
    threshold: float = CORRELATION_THRESHOLD,
) -> dict:
    """
    Pairwise Pearson correlation between the selected covariates.

    Pairs with ``|r| > threshold`` are flagged and must not share a model.

    Parameters
    ----------
    covariates : pd.DataFrame
        Year-indexed covariate table (one column per covariate).
    threshold : float, default 0.65

    Returns
    -------
    dict
        Keys: 'matrix' (r, DataFrame), 'pairs' (long DataFrame with var1, var2,
        n, r, p_value, flagged), 'flagged' (list of (var1, var2) tuples in
        column order), 'threshold'.
    """
    cols = list(covariates.columns)
    matrix = pd.DataFrame(np.eye(len(cols)), index=cols, columns=cols)
    rows = []
    flagged = []
    for i, a in enumerate(cols):
        for b in cols[i + 1:]:
            sub = covariates[[a, b]].dropna()
            if len(sub) >= 3 and sub[a].nunique() > 1 and sub[b].nunique() > 1:
                r, p = stats.pearsonr(sub[a], sub[b])
                r, p = float(r), float(p)
            else:
                r, p = np.nan, np.nan
            is_flagged = bool(np.abs(r) > threshold) if np.isfinite(r) else False
            matrix.loc[a, b] = matrix.loc[b, a] = r
            rows.append({'var1': a, 'var2': b, 'n': len(sub), 'r': r,
                         'p_value': p, 'flagged': is_flagged})
            if is_flagged:
                flagged.append((a, b))

    return {
        'matrix': matrix,
        'pairs': pd.DataFrame(rows, columns=['var1', 'var2', 'n', 'r', 'p_value', 'flagged']),
        'flagged': flagged,
        'threshold': threshold,
    }


# =============================================================================
# SECTION 4: FULL COVARIATE BUILD
# =============================================================================

def build_covariates(
    raw: Dict[str, Union[pd.Series, pd.DataFrame]],
    eggs: pd.DataFrame,
    years: Tuple[int, int] = STUDY_YEARS,
    verbose: bool = False,
) -> dict:
    """
    Run the covariate builder end to end.

    Parameters
    ----------
    raw : dict of {name: pd.Series or pd.DataFrame}
        Raw covariate series as returned by the readers.
    eggs : pd.DataFrame
        Egg table used for window selection.
    years : (int, int), default (2009, 2017)
    verbose : bool

    Returns
    -------
    dict
        'variants' (all standardized windows), 'selection' (AIC per window),
        'covariates' (merged table, one column per covariate),
        'correlations' (output of :func:`screen_correlations`).
    """
    if not raw:
        raise ValueError("At least one covariate series required")

    if verbose:
        print(f"  Building windows for {', '.join(raw)} over {years[0]}-{years[1]}")

    frames = []
    for name, series in raw.items():
        s = _as_series(series)
        frames.append(build_window_variants(s, name=name, years=years,
                                            resolution=s.attrs.get('native_time_resolution')))
    variants = pd.concat(frames, axis=1)

    if verbose:
        print("  Selecting windows by AIC:")
    covariates, selection = select_windows(eggs, variants, verbose=verbose)
    correlations = screen_correlations(covariates)

    if verbose:
        for a, b in correlations['flagged']:
            r = correlations['matrix'].loc[a, b]
            print(f"  Correlated pair: {a} / {b} (r = {r:+.2f}) -> mutually exclusive")

    return {
        'variants': variants,
        'selection': selection,
        'covariates': covariates,
        'correlations': correlations,
    }


# =============================================================================
# MODULE INFO
# =============================================================================

__all__ = [
    'STUDY_YEARS',
    'WINDOW_KINDS',
    'CORRELATION_THRESHOLD',
    'COVARIATES',
    'CovariateWarning',
    # Windows
    'aggregate_window',
    'window_series',
    'standardize',
    'build_window_variants',
    'join_eggs',
    # Selection
    'select_windows',
    'screen_correlations',
    'build_covariates',
]
