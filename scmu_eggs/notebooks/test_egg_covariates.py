#!/usr/bin/env python3
"""
Tests for the covariate windows, window selection and correlation screen.

Run:  pytest test_egg_covariates.py -v
"""

import sys, os, warnings, dataclasses

import numpy as np
import pandas as pd
import pytest

warnings.filterwarnings('ignore', category=DeprecationWarning)
warnings.filterwarnings('ignore', category=FutureWarning)

sys.path.insert(0, os.path.dirname(__file__))
import egg_covariates as ec
from egg_covariates import (
    aggregate_window, window_series, build_window_variants, select_windows,
    screen_correlations, build_covariates, join_eggs, CovariateWarning,
    WINDOW_KINDS,
)


# =====================================================================
#  HELPERS
# =====================================================================

def monthly_ramp(start=2005, end=2018, name='SST'):
    """Monthly series whose value encodes its date: year + month / 100."""
    idx = pd.date_range(f'{start}-01-01', f'{end}-12-01', freq='MS', name='time')
    s = pd.Series(idx.year + idx.month / 100.0, index=idx, name=name)
    s.attrs['native_time_resolution'] = 'monthly'
    return s


def monthly_noise(start=2005, end=2018, name='SST', seed=0):
    rng = np.random.default_rng(seed)
    idx = pd.date_range(f'{start}-01-01', f'{end}-12-01', freq='MS', name='time')
    s = pd.Series(rng.normal(size=len(idx)), index=idx, name=name)
    s.attrs['native_time_resolution'] = 'monthly'
    return s


def annual_series(start=2005, end=2018, name='ANCHL', seed=1):
    rng = np.random.default_rng(seed)
    idx = pd.DatetimeIndex([pd.Timestamp(f'{y}-07-01') for y in range(start, end + 1)],
                           name='time')
    s = pd.Series(rng.lognormal(size=len(idx)), index=idx, name=name)
    s.attrs['native_time_resolution'] = 'annual'
    return s


def eggs_driven_by(yearly, slope=1.0, noise_sd=0.4, eggs_per_year=20, seed=5):
    """Eggs whose size follows a year-indexed driver plus plot and noise terms."""
    rng = np.random.default_rng(seed)
    plots = ['P1', 'P2', 'P3', 'P4']
    u_plot = dict(zip(plots, rng.normal(0, 0.5, len(plots))))
    rows = []
    for year, x in yearly.items():
        for i in range(eggs_per_year):
            plot = plots[i % len(plots)]
            rows.append({'year': int(year), 'plot': plot, 'observer': 'JH',
                         'LayingSequence': 1 + i % 2,
                         'size': 47.0 + slope * x + u_plot[plot] + rng.normal(0, noise_sd)})
    return pd.DataFrame(rows)


# =====================================================================
#  TEST 1 - Window definitions
# =====================================================================

def test_half_window_is_january_to_june():
    s = monthly_ramp()
    half = aggregate_window(s, 'half')
    assert half.name == 'SST_half'
    np.testing.assert_allclose(half.loc[2010], 2010 + np.mean(np.arange(1, 7)) / 100)


def test_full_window_spans_july_to_june():
    s = monthly_ramp()
    full = aggregate_window(s, 'full')
    expected = np.mean([2009 + m / 100 for m in range(7, 13)]
                       + [2010 + m / 100 for m in range(1, 7)])
    np.testing.assert_allclose(full.loc[2010], expected)


def test_lag_windows_shift_one_year():
    s = monthly_ramp()
    for kind in ('half', 'full'):
        cur = aggregate_window(s, kind)
        lag = aggregate_window(s, f'{kind}_lag')
        common = cur.index.intersection(lag.index - 1)
        np.testing.assert_allclose(lag.loc[common + 1].values, cur.loc[common].values)


def test_standardized_over_study_years():
    s = monthly_noise()
    for kind in WINDOW_KINDS:
        w = window_series(s, kind, years=(2009, 2017))
        assert list(w.index) == list(range(2009, 2018))
        np.testing.assert_allclose(w.mean(), 0.0, atol=1e-12)
        np.testing.assert_allclose(w.std(ddof=1), 1.0)


def test_unstandardized_option():
    s = monthly_ramp()
    w = window_series(s, 'half', years=(2009, 2017), standardize_values=False)
    np.testing.assert_allclose(w.values, aggregate_window(s, 'half').loc[2009:2017].values)


def test_annual_series_has_two_windows():
    a = annual_series()
    variants = build_window_variants(a)
    assert list(variants.columns) == ['ANCHL_full', 'ANCHL_full_lag']
    raw = aggregate_window(a, 'full')
    np.testing.assert_allclose(raw.loc[2012], a.loc[pd.Timestamp('2012-07-01')])
    lag = aggregate_window(a, 'full_lag')
    np.testing.assert_allclose(lag.loc[2012], a.loc[pd.Timestamp('2011-07-01')])


def test_annual_series_rejects_half_windows():
    with pytest.raises(ValueError):
        aggregate_window(annual_series(), 'half')


def test_unknown_window_kind():
    with pytest.raises(ValueError):
        aggregate_window(monthly_ramp(), 'quarter')


def test_monthly_series_has_four_windows():
    variants = build_window_variants(monthly_noise(), years=(2009, 2017))
    assert list(variants.columns) == [f'SST_{k}' for k in WINDOW_KINDS]
    assert variants.shape == (9, 4)


def test_missing_years_warn():
    s = monthly_noise(end=2014)
    with pytest.warns(CovariateWarning):
        w = window_series(s, 'half', years=(2009, 2017))
    assert w.loc[2015:2017].isna().all()
    assert w.loc[2009:2014].notna().all()


def test_constant_series_cannot_be_standardized():
    s = monthly_noise() * 0 + 3.0
    s.attrs['native_time_resolution'] = 'monthly'
    with pytest.warns(CovariateWarning):
        w = window_series(s, 'full')
    assert w.isna().all()


def test_join_eggs_by_year():
    eggs = pd.DataFrame({'year': [2009, 2010, 2020], 'size': [47.0, 48.0, 46.0]})
    yearly = pd.DataFrame({'SST': [0.5, -0.5]}, index=pd.Index([2009, 2010], name='year'))
    joined = join_eggs(eggs, yearly)
    assert list(joined['SST'].iloc[:2]) == [0.5, -0.5]
    assert np.isnan(joined['SST'].iloc[2])


# =====================================================================
#  TEST 2 - Correlation screen
# =====================================================================

def test_correlation_screen_flags_strong_pairs():
    x = np.arange(1.0, 10.0)
    cov = pd.DataFrame({
        'BEUTI': x,
        'ONI': -2.0 * x + 3.0,
        'PDO': np.array([1, -1, 1, -1, 1, -1, 1, -1, 1], dtype=float),
    }, index=range(2009, 2018))

    res = screen_correlations(cov)
    assert res['flagged'] == [('BEUTI', 'ONI')]
    np.testing.assert_allclose(res['matrix'].loc['BEUTI', 'ONI'], -1.0)
    np.testing.assert_allclose(res['matrix'].loc['BEUTI', 'PDO'], 0.0, atol=1e-12)
    assert len(res['pairs']) == 3
    assert res['pairs']['flagged'].sum() == 1
    assert res['threshold'] == 0.65


def test_correlation_screen_threshold():
    rng = np.random.default_rng(4)
    a = rng.normal(size=9)
    b = a + rng.normal(scale=0.5, size=9)
    cov = pd.DataFrame({'NPGO': a, 'SST': b})
    r = cov.corr().loc['NPGO', 'SST']
    assert screen_correlations(cov, threshold=abs(r) - 0.01)['flagged'] == [('NPGO', 'SST')]
    assert screen_correlations(cov, threshold=abs(r) + 0.01)['flagged'] == []


# =====================================================================
#  TEST 3 - Window selection
# =====================================================================

def test_select_window_picks_driver():
    """Egg size driven by the full window: that window gets the lowest AIC."""
    s = monthly_noise(seed=11)
    variants = build_window_variants(s, years=(2009, 2017))
    eggs = eggs_driven_by(variants['SST_full'], slope=1.0)

    covariates, selection = select_windows(eggs, variants)
    assert covariates.attrs['windows'] == {'SST': 'full'}
    pd.testing.assert_series_equal(covariates['SST'], variants['SST_full'],
                                   check_names=False)

    assert len(selection) == 4
    assert selection['selected'].sum() == 1
    chosen = selection[selection['selected']].iloc[0]
    assert chosen['window'] == 'full'
    assert chosen['delta_AIC'] == 0.0
    assert (selection['delta_AIC'] >= 0).all()


def test_build_covariates_end_to_end():
    sst = monthly_noise(seed=11)
    anch = annual_series()
    variants = build_window_variants(sst, years=(2009, 2017))
    eggs = eggs_driven_by(variants['SST_half_lag'], slope=1.0)

    out = build_covariates({'SST': sst, 'ANCHL': anch}, eggs)
    assert set(out) == {'variants', 'selection', 'covariates', 'correlations'}
    assert list(out['variants'].columns) == (
        [f'SST_{k}' for k in WINDOW_KINDS] + ['ANCHL_full', 'ANCHL_full_lag'])
    assert list(out['covariates'].columns) == ['SST', 'ANCHL']
    assert out['covariates'].attrs['windows']['SST'] == 'half_lag'
    assert out['correlations']['matrix'].shape == (2, 2)


def test_select_window_exact_tie_keeps_first_kind():
    """Identical half and full windows tie on AIC: 'half' comes first."""
    s = monthly_noise(seed=11)
    half = build_window_variants(s, years=(2009, 2017))['SST_half']
    variants = pd.DataFrame({'SST_full': half.values, 'SST_half': half.values},
                            index=half.index)
    eggs = eggs_driven_by(half, slope=1.0)

    covariates, selection = select_windows(eggs, variants)
    assert covariates.attrs['windows'] == {'SST': 'half'}
    aic = selection.set_index('window')['AIC']
    assert aic['half'] == aic['full']
    assert list(selection['window']) == ['half', 'full']
    assert list(selection['selected']) == [True, False]


def test_non_converged_window_not_selected(monkeypatch):
    """A window whose fit did not converge gets no AIC and cannot win."""
    s = monthly_noise(seed=11)
    variants = build_window_variants(s, years=(2009, 2017))
    eggs = eggs_driven_by(variants['SST_full'], slope=1.0)

    real_fit = ec.fit_mixed_model

    def fake(data, predictors=(), **kwargs):
        fit = real_fit(data, predictors, **kwargs)
        if list(predictors) == ['SST_full']:
            fit = dataclasses.replace(fit, converged=False)
        return fit

    monkeypatch.setattr(ec, 'fit_mixed_model', fake)
    with pytest.warns(CovariateWarning, match='did not converge'):
        covariates, selection = select_windows(eggs, variants)

    assert covariates.attrs['windows']['SST'] != 'full'
    row = selection[selection['window'] == 'full'].iloc[0]
    assert np.isnan(row['AIC'])
    assert not row['selected']
    assert selection['selected'].sum() == 1


def test_six_covariate_screen_flags_only_strong_pair():
    """Orthogonal contrasts over nine years: only BEUTI/ONI exceed 0.65."""
    linear = np.arange(-4.0, 5.0)
    cov = pd.DataFrame({
        'ANCHL': np.array([1, -1, 1, -1, 1, -1, 1, -1, 1], dtype=float),
        'BEUTI': linear,
        'NPGO': np.array([28, 7, -8, -17, -20, -17, -8, 7, 28], dtype=float),
        'ONI': -2.0 * linear + 3.0,
        'PDO': np.array([-14, 7, 13, 9, 0, -9, -13, -7, 14], dtype=float),
        'SST': np.array([14, -21, -11, 9, 18, 9, -11, -21, 14], dtype=float),
    }, index=range(2009, 2018))

    res = screen_correlations(cov)
    assert res['flagged'] == [('BEUTI', 'ONI')]
    assert len(res['pairs']) == 15
    weak = res['pairs'].set_index(['var1', 'var2']).loc[('ANCHL', 'BEUTI')]
    np.testing.assert_allclose(weak['r'], 0.0, atol=1e-12)
    assert not weak['flagged']
    assert (res['matrix'].abs().values[~np.eye(6, dtype=bool)] < 0.65).sum() == 28
