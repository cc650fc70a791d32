#!/usr/bin/env python3
"""
SCMU Egg Size vs Ocean Conditions: Full Analysis
================================================

Runs the complete analysis for Scripps's murrelet eggs on Santa Barbara
Island, 2009-2017:

  1. Load eggs and raw ocean covariates (SST, BEUTI, NPGO, ONI, PDO, ANCHL)
  2. Build four windows per covariate, standardize over the study years,
     keep the window with the lowest AIC, screen pairwise correlations
  3. Exact RLRT for plot and observer random intercepts
  4. Fit and rank every admissible fixed-effect subset by AIC
  5. REML refit of the top models, diagnostics of the global model
  6. Write tables, figures and a text summary

Usage:
    python egg_analysis.py [--data-dir DIR] [--output-dir DIR] [--top-k 6]
                           [--seed 42] [--nsim 10000] [--skip-lrt]
                           [--no-figures] [--quiet]

Input and output locations default to $SCMU_DATA_DIR / $SCMU_OUTPUT_DIR.
"""

import sys
import os
import argparse
import warnings
from dataclasses import asdict
from datetime import datetime

import numpy as np
import pandas as pd

warnings.filterwarnings("ignore", category=DeprecationWarning)
warnings.filterwarnings("ignore", category=FutureWarning)

# Local imports
sys.path.insert(0, os.path.dirname(__file__))
from egg_data_readers import (
    read_egg_data, read_plots, read_sst, read_beuti, read_npgo,
    read_oni, read_pdo, read_anchovy, read_coastline, MIN_EGG_SIZE,
)
from egg_covariates import build_covariates, join_eggs, STUDY_YEARS
from egg_models import (
    fit_mixed_model, run_model_selection, compare_random_effects, complete_cases,
    global_model_spec, PREDICTORS, RANDOM_EFFECTS_TESTED,
    TOP_K, RLRT_NSIM, RANDOM_SEED,
)
from egg_diagnostics import (
    run_diagnostics, plot_model_diagnostics, plot_covariate_series,
    plot_correlation_heatmap, plot_coefficient_forest, plot_site_map,
)

# Paths
PROJECT_DIR = os.path.join(os.path.dirname(__file__), "..")
DATA_DIR = os.environ.get("SCMU_DATA_DIR", os.path.join(PROJECT_DIR, "data", "raw"))
OUTPUT_DIR = os.environ.get("SCMU_OUTPUT_DIR", os.path.join(PROJECT_DIR, "results"))

EGG_FILE = os.path.join("eggs", "SCMU_egg_data.csv")
PLOTS_FILE = "plots.csv"
COASTLINE_FILE = "coastline.csv"
SST_NETCDF = os.path.join("covariates", "sst.nc")
COVARIATE_FILES = {
    "ANCHL": (os.path.join("covariates", "anchovy.csv"), read_anchovy),
    "BEUTI": (os.path.join("covariates", "beuti.csv"), read_beuti),
    "NPGO": (os.path.join("covariates", "npgo.txt"), read_npgo),
    "ONI": (os.path.join("covariates", "oni.txt"), read_oni),
    "PDO": (os.path.join("covariates", "pdo.txt"), read_pdo),
    "SST": (os.path.join("covariates", "sst.csv"), read_sst),
}


# =====================================================================
#  1. LOAD INPUTS
# =====================================================================

def load_inputs(data_dir=None, min_size=MIN_EGG_SIZE, verbose=True):
    """Read the egg table, every raw covariate series and the plot locations.

    SST is read from ``covariates/sst.nc`` when the CSV is absent. The plot
    location and coastline files are optional.

    Returns
    -------
    dict
        'eggs' (DataFrame), 'raw' ({name: DataFrame}), 'plots' and
        'coastline' (DataFrame or None).
    """
    data_dir = data_dir or DATA_DIR

    eggs = read_egg_data(os.path.join(data_dir, EGG_FILE), min_size=min_size)
    if verbose:
        print(f"  Eggs: {len(eggs)} rows, {eggs['year'].min()}-{eggs['year'].max()}, "
              f"{eggs['plot'].nunique()} plots, {eggs['observer'].nunique()} observers "
              f"({eggs.attrs['n_outliers_removed']} below {min_size} mm removed)")

    raw = {}
    for name, (rel_path, reader) in COVARIATE_FILES.items():
        path = os.path.join(data_dir, rel_path)
        if name == "SST" and not os.path.exists(path):
            path = os.path.join(data_dir, SST_NETCDF)
        raw[name] = reader(path)
        if verbose:
            s = raw[name][name]
            print(f"  {name}: {s.notna().sum()} {raw[name].attrs['native_time_resolution']} "
                  f"values, {s.index.min():%Y-%m}-{s.index.max():%Y-%m}")

    plots_path = os.path.join(data_dir, PLOTS_FILE)
    plots = read_plots(plots_path) if os.path.exists(plots_path) else None
    coast_path = os.path.join(data_dir, COASTLINE_FILE)
    coastline = read_coastline(coast_path) if os.path.exists(coast_path) else None

    return {"eggs": eggs, "raw": raw, "plots": plots, "coastline": coastline}


def summarize_eggs(eggs):
    """Egg count, mean and SD of size by year and laying sequence."""
    summary = (eggs.groupby(["year", "LayingSequence"])["size"]
               .agg(n="count", mean="mean", sd="std")
               .reset_index())
    return summary


# =====================================================================
#  2. OUTPUT
# =====================================================================

def _write_table(df, path, index=False):
    df.to_csv(path, index=index, float_format="%.6g")
    return path


def write_summary(results, path):
    """Plain-text report of the main results."""
    cov = results["covariates"]
    selection = results["selection"]
    ranking = selection.ranking
    best = selection.best
    diag = results["diagnostics"]
    windows = cov["covariates"].attrs.get("windows", {})

    lines = [
        "SCMU egg size and ocean conditions",
        "=" * 60,
        f"Run: {results['run_time']}",
        f"Study years: {results['years'][0]}-{results['years'][1]}",
        f"Eggs analysed: {results['n_eggs']} "
        f"(complete cases: {results['n_model_rows']})",
        "",
        "Selected covariate windows",
        "-" * 60,
    ]
    for name, kind in windows.items():
        lines.append(f"  {name:<6s} {kind}")

    lines += ["", "Correlated pairs (|r| > "
              f"{cov['correlations']['threshold']}, never in the same model)", "-" * 60]
    pairs = cov["correlations"]["pairs"]
    flagged = pairs[pairs["flagged"]]
    if flagged.empty:
        lines.append("  none")
    for _, row in flagged.iterrows():
        lines.append(f"  {row['var1']} / {row['var2']}: r = {row['r']:+.2f}")

    if results["random_effect_tests"]:
        lines += ["", "Random-effect tests (exact RLRT)", "-" * 60]
        for t in results["random_effect_tests"]:
            verdict = "can be dropped" if t.droppable else "retained"
            lines.append(f"  {t.effect:<9s} RLRT = {t.statistic:.3f}, "
                         f"p = {t.p_value:.4f} ({verdict})")

    lines += ["", f"Model ranking ({len(ranking)} of {selection.n_candidates} "
              f"candidates fitted)", "-" * 60]
    for _, row in ranking.head(len(selection.top_fits)).iterrows():
        note = "" if row["substantial_support"] else "  (less support)"
        lines.append(f"  {row['rank']:2d}. {row['model']:<40s} AIC = {row['AIC']:8.2f}  "
                     f"dAIC = {row['delta_AIC']:5.2f}  w = {row['weight']:.3f}{note}")
    if selection.excluded:
        lines.append(f"  Excluded (fit failed): {', '.join(selection.excluded)}")
    if selection.refit_failed:
        lines.append(f"  REML refit failed (ranked, not reported): "
                     f"{', '.join(selection.refit_failed)}")

    lines += ["", f"Best model (REML): {best.name}", "-" * 60]
    for term, row in best.fixed_effects.iterrows():
        lines.append(f"  {term:<16s} {row['estimate']:9.4f}  "
                     f"[{row['lower']:.4f}, {row['upper']:.4f}]")
    for name, var in best.re_variances.items():
        lines.append(f"  var({name}) = {var:.5f}"
                     + ("  (at boundary)" if best.boundary else ""))
    lines.append(f"  var(residual) = {best.residual_variance:.5f}")

    lines += ["", f"Diagnostics (global model, REML): {diag.model}", "-" * 60]
    for _, row in diag.to_frame().iterrows():
        lines.append(f"  {row['check']:<50s} stat = {row['statistic']:.4f}, "
                     f"p = {row['p_value']:.4f}")

    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")
    return path


# =====================================================================
#  3. MAIN ANALYSIS
# =====================================================================

def run_analysis(data_dir=None, output_dir=None, years=STUDY_YEARS,
                 top_k=TOP_K, seed=RANDOM_SEED, nsim=RLRT_NSIM,
                 skip_lrt=False, make_figures=True, verbose=True):
    """Run the complete SCMU egg-size analysis.

    Parameters
    ----------
    data_dir : str, optional
        Input directory (default DATA_DIR).
    output_dir : str, optional
        Output directory (default OUTPUT_DIR); ``tables/`` and ``figures/``
        are created inside it.
    years : (int, int)
        Inclusive study years.
    top_k : int
        Number of top models refitted by REML and reported.
    seed : int
        Seed for the RLRT null-distribution simulation.
    nsim : int
        Simulated RLRT draws.
    skip_lrt : bool
        Skip the random-effect tests.
    make_figures : bool
    verbose : bool

    Returns
    -------
    dict with inputs, covariate build, model selection, tests, diagnostics
    and the paths written.
    """
    output_dir = output_dir or OUTPUT_DIR
    table_dir = os.path.join(output_dir, "tables")
    fig_dir = os.path.join(output_dir, "figures")
    os.makedirs(table_dir, exist_ok=True)
    if make_figures:
        os.makedirs(fig_dir, exist_ok=True)

    if verbose:
        print("=" * 70)
        print("SCMU EGG SIZE ANALYSIS")
        print(f"  Date: {datetime.now().strftime('%Y-%m-%d %H:%M')}")
        print(f"  Years: {years[0]}-{years[1]}, top_k={top_k}, seed={seed}")
        print("=" * 70)

    # Step 1: Inputs
    if verbose:
        print("\n1. Loading data...")
    inputs = load_inputs(data_dir, verbose=verbose)
    eggs = inputs["eggs"]
    eggs = eggs[(eggs["year"] >= years[0]) & (eggs["year"] <= years[1])].reset_index(drop=True)

    # Step 2: Covariates
    if verbose:
        print("\n2. Building covariates...")
    cov = build_covariates(inputs["raw"], eggs, years=years, verbose=verbose)
    model_data = complete_cases(join_eggs(eggs, cov["covariates"]),
                                PREDICTORS, RANDOM_EFFECTS_TESTED)

    # Global model: every predictor the correlation screen allows together
    spec = global_model_spec(cov["correlations"]["flagged"])

    # Step 3: Random effects
    tests = []
    if not skip_lrt:
        if verbose:
            print("\n3. Testing random intercepts (exact RLRT)...")
            print(f"  Fixed effects: {spec.name}")
        tests = compare_random_effects(model_data, spec, seed=seed, nsim=nsim,
                                       verbose=verbose)
    elif verbose:
        print("\n3. Random-effect tests skipped")

    # Step 4: Model selection
    if verbose:
        print("\n4. Model selection...")
    selection = run_model_selection(model_data, cov["correlations"]["flagged"],
                                    top_k=top_k, verbose=verbose)

    # Step 5: Diagnostics
    if verbose:
        print(f"\n5. Diagnostics for the global model '{spec.name}' (REML)...")
    global_fit = fit_mixed_model(model_data, spec, reml=True)
    diag = run_diagnostics(global_fit)

    # Step 6: Output
    if verbose:
        print("\n6. Writing output...")
    corr = cov["correlations"]
    written = [
        _write_table(cov["variants"], os.path.join(table_dir, "covariate_windows.csv"), index=True),
        _write_table(cov["selection"], os.path.join(table_dir, "window_selection.csv")),
        _write_table(cov["covariates"], os.path.join(table_dir, "covariates.csv"), index=True),
        _write_table(corr["pairs"], os.path.join(table_dir, "covariate_correlations.csv")),
        _write_table(selection.ranking, os.path.join(table_dir, "model_ranking.csv")),
        _write_table(selection.estimates_table(),
                     os.path.join(table_dir, "top_model_estimates.csv")),
        _write_table(summarize_eggs(eggs), os.path.join(table_dir, "egg_summary.csv")),
        _write_table(diag.to_frame(), os.path.join(table_dir, "diagnostics.csv")),
    ]
    if tests:
        test_table = pd.DataFrame([dict(asdict(t), droppable=t.droppable) for t in tests])
        written.append(_write_table(test_table,
                                    os.path.join(table_dir, "random_effect_tests.csv")))

    figures = {}
    if make_figures:
        figures["covariates"] = plot_covariate_series(
            cov["covariates"], fig_path=os.path.join(fig_dir, "covariate_series.png"))
        figures["correlations"] = plot_correlation_heatmap(
            corr, fig_path=os.path.join(fig_dir, "covariate_correlations.png"))
        figures["forest"] = plot_coefficient_forest(
            selection.estimates_table(), fig_path=os.path.join(fig_dir, "top_model_forest.png"))
        figures["diagnostics"] = plot_model_diagnostics(
            diag, fig_path=os.path.join(fig_dir, "model_diagnostics.png"))
        if inputs["plots"] is not None:
            figures["site_map"] = plot_site_map(
                inputs["plots"], eggs, coastline=inputs["coastline"],
                fig_path=os.path.join(fig_dir, "site_map.png"))

    results = {
        "run_time": datetime.now().strftime("%Y-%m-%d %H:%M"),
        "years": tuple(years),
        "n_eggs": len(eggs),
        "n_model_rows": len(model_data),
        "inputs": inputs,
        "covariates": cov,
        "model_data": model_data,
        "random_effect_tests": tests,
        "selection": selection,
        "global_fit": global_fit,
        "diagnostics": diag,
        "figures": figures,
    }
    written.append(write_summary(results, os.path.join(output_dir, "analysis_summary.txt")))
    results["written"] = written

    # Step 7: Summary
    if verbose:
        best = selection.best
        print()
        print("=" * 70)
        print("SUMMARY")
        print("=" * 70)
        print(f"  Best model: {best.name} "
              f"(weight {selection.ranking['weight'].iloc[0]:.3f})")
        if "LayingSequence" in best.predictors:
            ci = best.fixed_effects.loc["LayingSequence"]
            print(f"  Laying sequence: {ci['estimate']:+.3f} mm "
                  f"[{ci['lower']:.3f}, {ci['upper']:.3f}]")
        print(f"  Equal variance (F): p = {diag.equal_variance['p_value']:.4f}")
        print(f"  {len(written)} files written to {os.path.abspath(output_dir)}")

    return results


# =====================================================================
#  MAIN
# =====================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="SCMU egg size vs ocean covariates: window selection, "
                    "mixed-model AIC ranking and diagnostics")
    parser.add_argument("--data-dir", default=DATA_DIR,
                        help="Input directory (default: $SCMU_DATA_DIR or data/raw)")
    parser.add_argument("--output-dir", default=OUTPUT_DIR,
                        help="Output directory (default: $SCMU_OUTPUT_DIR or results)")
    parser.add_argument("--top-k", type=int, default=TOP_K,
                        help="Number of top models to refit and report")
    parser.add_argument("--seed", type=int, default=RANDOM_SEED,
                        help="Seed for the RLRT simulation")
    parser.add_argument("--nsim", type=int, default=RLRT_NSIM,
                        help="Simulated draws for the RLRT null distribution")
    parser.add_argument("--skip-lrt", action="store_true",
                        help="Skip random-effect tests")
    parser.add_argument("--no-figures", action="store_true",
                        help="Write tables only")
    parser.add_argument("--quiet", action="store_true",
                        help="Suppress progress output")
    args = parser.parse_args(argv)

    run_analysis(
        data_dir=args.data_dir,
        output_dir=args.output_dir,
        top_k=args.top_k,
        seed=args.seed,
        nsim=args.nsim,
        skip_lrt=args.skip_lrt,
        make_figures=not args.no_figures,
        verbose=not args.quiet,
    )
    return 0


# =====================================================================
if __name__ == "__main__":
    sys.exit(main())
