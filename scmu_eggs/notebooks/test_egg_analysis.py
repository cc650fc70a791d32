#!/usr/bin/env python3
"""
End-to-end test of the analysis driver on a synthetic input directory.

Run:  pytest test_egg_analysis.py -v
"""

import sys, os, re, warnings, tempfile

import numpy as np
import pandas as pd

warnings.filterwarnings('ignore', category=DeprecationWarning)
warnings.filterwarnings('ignore', category=FutureWarning)

sys.path.insert(0, os.path.dirname(__file__))
from egg_analysis import run_analysis, main, summarize_eggs
from egg_models import global_model_spec

MONTHS = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
          'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']
ONI_SEASONS = ['DJF', 'JFM', 'FMA', 'MAM', 'AMJ', 'MJJ',
               'JJA', 'JAS', 'ASO', 'SON', 'OND', 'NDJ']


# =====================================================================
#  HELPER: Write a complete synthetic input directory
# =====================================================================

def write_inputs(data_dir, seed=21):
    """
    Write eggs, plots, coastline and all six covariate files in the expected
    layout.

    Egg size follows laying sequence and the July-June SST mean, plus plot
    and observation noise. One implausibly small egg is included.
    """
    rng = np.random.default_rng(seed)
    os.makedirs(os.path.join(data_dir, 'eggs'))
    os.makedirs(os.path.join(data_dir, 'covariates'))
    cov_dir = os.path.join(data_dir, 'covariates')

    years = np.arange(2006, 2019)
    idx = pd.date_range('2006-01-01', '2018-12-01', freq='MS')
    sst = 16 + 2 * np.sin(2 * np.pi * (idx.month - 3) / 12) + rng.normal(0, 0.7, len(idx))
    pd.DataFrame({'time': idx.strftime('%Y-%m-%dT00:00:00Z'), 'sst': sst}).to_csv(
        os.path.join(cov_dir, 'sst.csv'), index=False)

    pd.DataFrame({'year': idx.year, 'month': idx.month,
                  '32N': rng.normal(5, 3, len(idx)),
                  '33N': rng.normal(8, 3, len(idx))}).to_csv(
        os.path.join(cov_dir, 'beuti.csv'), index=False)

    with open(os.path.join(cov_dir, 'npgo.txt'), 'w') as f:
        f.write("# NPGO index monthly averages\n# YEAR MONTH NPGO\n")
        for t, v in zip(idx, rng.normal(0, 1, len(idx))):
            f.write(f"{t.year} {t.month} {v:.3f}\n")

    with open(os.path.join(cov_dir, 'oni.txt'), 'w') as f:
        f.write("SEAS YR TOTAL ANOM\n")
        for t, v in zip(idx, rng.normal(0, 0.8, len(idx))):
            f.write(f"{ONI_SEASONS[t.month - 1]} {t.year} {27 + v:.2f} {v:.2f}\n")

    with open(os.path.join(cov_dir, 'pdo.txt'), 'w') as f:
        f.write("ERSST PDO Index:\n")
        f.write("Year " + " ".join(MONTHS) + "\n")
        for y in years:
            vals = rng.normal(0, 1, 12)
            f.write(f"{y} " + " ".join(f"{v:.2f}" for v in vals) + "\n")

    pd.DataFrame({'Year': years, 'larvae': rng.lognormal(3, 1, len(years))}).to_csv(
        os.path.join(cov_dir, 'anchovy.csv'), index=False)

    plots = ['Cat Canyon', 'Arch Point', 'Landing Cove', 'Webster Point']
    pd.DataFrame({'Plot_Name': plots,
                  'Lat': [33.471, 33.482, 33.477, 33.466],
                  'Long': [-119.035, -119.029, -119.037, -119.045]}).to_csv(
        os.path.join(data_dir, 'plots.csv'), index=False)
    pd.DataFrame({'part': 'SBI',
                  'lon': [-119.05, -119.02, -119.02, -119.05],
                  'lat': [33.46, 33.46, 33.49, 33.49]}).to_csv(
        os.path.join(data_dir, 'coastline.csv'), index=False)

    # July-June SST mean drives size
    s = pd.Series(sst, index=idx)
    label = np.where(idx.month >= 7, idx.year + 1, idx.year)
    sst_full = s.groupby(label).mean()
    sst_full = (sst_full - sst_full.loc[2009:2017].mean()) / sst_full.loc[2009:2017].std()

    u_plot = dict(zip(plots, rng.normal(0, 0.6, len(plots))))
    observers = ['JH', 'KW', 'ML']
    rows = []
    for y in range(2009, 2018):
        for i in range(16):
            plot = plots[i % 4]
            seq = 1 + (i // 4) % 2
            size = (46 + 0.8 * seq - 0.5 * sst_full.loc[y] + u_plot[plot]
                    + rng.normal(0, 0.5))
            rows.append({'Year': y, 'Observer': observers[i % 3], 'Plot_Name': plot,
                         'EggOrder': seq, 'Size': round(size, 2)})
    rows.append({'Year': 2012, 'Observer': 'JH', 'Plot_Name': 'Cat Canyon',
                 'EggOrder': 1, 'Size': 4.7})
    pd.DataFrame(rows).to_csv(os.path.join(data_dir, 'eggs', 'SCMU_egg_data.csv'),
                              index=False)
    return len(rows) - 1


# =====================================================================
#  TESTS
# =====================================================================

def test_full_run():
    with tempfile.TemporaryDirectory() as tmp:
        data_dir = os.path.join(tmp, 'raw')
        out_dir = os.path.join(tmp, 'results')
        n_eggs = write_inputs(data_dir)

        res = run_analysis(data_dir=data_dir, output_dir=out_dir, nsim=200,
                           seed=5, verbose=False)

        assert res['n_eggs'] == n_eggs
        assert res['n_model_rows'] == n_eggs

        cov = res['covariates']
        assert list(cov['covariates'].columns) == ['ANCHL', 'BEUTI', 'NPGO', 'ONI', 'PDO', 'SST']
        assert set(cov['covariates'].attrs['windows']) == set(cov['covariates'].columns)

        sel = res['selection']
        assert sel.n_candidates <= 128
        np.testing.assert_allclose(sel.ranking['weight'].sum(), 1.0)
        assert len(sel.top_fits) == min(6, len(sel.ranking))
        assert 'LayingSequence' in sel.best.predictors
        for a, b in sel.forbidden_pairs:
            assert not any(a in f.predictors and b in f.predictors for f in sel.fits)

        # Diagnostics describe the global model, not the top-ranked one
        spec = global_model_spec(cov['correlations']['flagged'])
        assert res['diagnostics'].model == spec.name
        assert res['global_fit'].reml
        assert res['global_fit'].predictors == spec.predictors
        np.testing.assert_allclose(res['diagnostics'].residuals,
                                   res['global_fit'].residuals)

        tests = res['random_effect_tests']
        assert [t.effect for t in tests] == ['plot', 'observer']
        assert all(0.0 <= t.p_value <= 1.0 for t in tests)

        tables = os.path.join(out_dir, 'tables')
        for name in ['covariate_windows', 'window_selection', 'covariates',
                     'covariate_correlations', 'model_ranking', 'top_model_estimates',
                     'random_effect_tests', 'egg_summary', 'diagnostics']:
            assert os.path.exists(os.path.join(tables, f'{name}.csv')), name

        ranking = pd.read_csv(os.path.join(tables, 'model_ranking.csv'))
        assert ranking['delta_AIC'].iloc[0] == 0.0

        for key in ['covariates', 'correlations', 'forest', 'diagnostics', 'site_map']:
            assert key in res['figures']
        assert os.path.exists(os.path.join(out_dir, 'figures', 'site_map.png'))
        assert len(res['inputs']['coastline']) == 4
        assert len(res['figures']['site_map'].axes[0].patches) == 1

        with open(os.path.join(out_dir, 'analysis_summary.txt')) as f:
            summary = f.read()
        assert 'Best model (REML)' in summary
        assert 'Random-effect tests' in summary
        assert f'Diagnostics (global model, REML): {spec.name}' in summary


def test_cli_tables_only():
    with tempfile.TemporaryDirectory() as tmp:
        data_dir = os.path.join(tmp, 'raw')
        out_dir = os.path.join(tmp, 'results')
        write_inputs(data_dir, seed=3)

        status = main(['--data-dir', data_dir, '--output-dir', out_dir,
                       '--top-k', '2', '--skip-lrt', '--no-figures', '--quiet'])
        assert status == 0

        tables = os.listdir(os.path.join(out_dir, 'tables'))
        assert 'model_ranking.csv' in tables
        assert 'random_effect_tests.csv' not in tables
        assert not os.path.exists(os.path.join(out_dir, 'figures'))

        est = pd.read_csv(os.path.join(out_dir, 'tables', 'top_model_estimates.csv'))
        assert set(est['rank']) == {1, 2}


def test_summarize_eggs():
    eggs = pd.DataFrame({'year': [2009, 2009, 2009, 2010],
                         'LayingSequence': [1, 1, 2, 1],
                         'size': [46.0, 48.0, 47.0, 45.0]})
    s = summarize_eggs(eggs)
    assert list(s.columns) == ['year', 'LayingSequence', 'n', 'mean', 'sd']
    row = s[(s['year'] == 2009) & (s['LayingSequence'] == 1)].iloc[0]
    assert row['n'] == 2
    assert row['mean'] == 47.0


def test_readiness_report():
    sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'scripts'))
    from check_readiness import check_readiness

    with tempfile.TemporaryDirectory() as tmp:
        assert len(check_readiness(tmp)) == 8

        write_inputs(tmp)
        assert check_readiness(tmp) == []

        # Gridded SST stands in for the CSV export
        os.rename(os.path.join(tmp, 'covariates', 'sst.csv'),
                  os.path.join(tmp, 'covariates', 'sst.nc'))
        assert check_readiness(tmp) == []

        os.remove(os.path.join(tmp, 'plots.csv'))
        assert check_readiness(tmp) == ['plots.csv']


def test_packaging_metadata():
    """pyproject installs every analysis module and points at no stray files."""
    here = os.path.dirname(os.path.abspath(__file__))
    with open(os.path.join(here, '..', '..', 'pyproject.toml')) as f:
        text = f.read()
    assert 'readme' not in text

    modules = re.search(r'py-modules\s*=\s*\[([^\]]*)\]', text).group(1)
    names = re.findall(r'"(\w+)"', modules)
    assert 'egg_analysis' in names
    for name in names:
        assert os.path.exists(os.path.join(here, f'{name}.py')), name
