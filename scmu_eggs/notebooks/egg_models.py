"""
SCMU Egg-Size Mixed-Model Selection
===================================

This module fits linear mixed-effects models of egg size and compares them:

1. **Candidate set**: every additive subset of the fixed predictors
   (laying sequence plus six ocean covariates), excluding subsets that contain
   both members of a correlated pair
2. **Ranking**: maximum-likelihood fits ranked by AIC, with delta-AIC and
   Akaike weights; the top models are refit by REML for reporting
3. **Random effects**: exact restricted likelihood-ratio tests for whether the
   plot and observer intercepts are needed

All models share a random intercept for monitoring plot:

    size = b0 + sum_j b_j x_j + u_plot + e,   u_plot ~ N(0, s2_plot), e ~ N(0, s2)

Dependencies
------------
- numpy
- pandas
- scipy
- statsmodels

Example Workflow
----------------
>>> from egg_models import run_model_selection, compare_random_effects
>>> selection = run_model_selection(data, forbidden_pairs=[('BEUTI', 'ONI')])
>>> selection.ranking.head()
>>> tests = compare_random_effects(data, selection.best.spec)

References
----------
Burnham, K. P., & Anderson, D. R. (2002). Model Selection and Multimodel
    Inference (2nd ed.). Springer.

Crainiceanu, C. M., & Ruppert, D. (2004). Likelihood ratio tests in linear
    mixed models with one variance component. JRSS B, 66(1), 165-185.

Scheipl, F., Greven, S., & Kuechenhoff, H. (2008). Size and power of tests for
    a zero random effect variance or polynomial regression in additive and
    linear mixed models. CSDA, 52(7), 3283-3299.
"""

import warnings
from dataclasses import dataclass, field
from typing import Optional, Tuple, Dict, List, Sequence, Union

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy import stats
from statsmodels.tools.sm_exceptions import ConvergenceWarning


# Fixed predictors, in bit order for the candidate masks
PREDICTORS = ('LayingSequence', 'ANCHL', 'BEUTI', 'NPGO', 'ONI', 'PDO', 'SST')
RESPONSE = 'size'
RANDOM_EFFECT = 'plot'
RANDOM_EFFECTS_TESTED = ('plot', 'observer')

TOP_K = 6
SUPPORT_DELTA_AIC = 2.0
RLRT_NSIM = 10000
RANDOM_SEED = 42

# Variance ratio (random / residual) treated as sitting on the zero boundary
_BOUNDARY_RATIO = 1e-6
_FIT_METHODS = ['lbfgs', 'bfgs', 'cg']


class BoundaryFitWarning(UserWarning):
    """A random-effect variance was estimated at (or numerically near) zero."""


class ModelFitWarning(UserWarning):
    """A model could not be fitted or rows were dropped before fitting."""


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class CandidateModelSpec:
    """
    One candidate fixed-effect structure.

    Bit ``i`` of ``mask`` switches on ``predictor_set[i]``. Every candidate
    also carries a plot random intercept, which is not part of the mask.
    """
    mask: int
    predictor_set: Tuple[str, ...] = PREDICTORS

    @classmethod
    def from_predictors(cls, names: Sequence[str],
                        predictor_set: Tuple[str, ...] = PREDICTORS) -> 'CandidateModelSpec':
        mask = 0
        for name in names:
            if name not in predictor_set:
                raise ValueError(f"Unknown predictor '{name}'. Options: {list(predictor_set)}")
            mask |= 1 << predictor_set.index(name)
        return cls(mask, predictor_set)

    @property
    def predictors(self) -> Tuple[str, ...]:
        return tuple(p for i, p in enumerate(self.predictor_set) if self.mask >> i & 1)

    @property
    def name(self) -> str:
        return ' + '.join(self.predictors) if self.mask else 'Intercept only'

    def formula(self, response: str = RESPONSE) -> str:
        return f"{response} ~ {' + '.join(self.predictors) or '1'}"

    def __contains__(self, predictor: str) -> bool:
        return predictor in self.predictors


@dataclass
class ModelFitResult:
    """
    Container for a single mixed-model fit.

    Attributes
    ----------
    spec : CandidateModelSpec or None
        Candidate the fit belongs to (None for ad hoc predictor lists, e.g.
        window-selection fits).
    predictors : tuple of str
        Fixed-effect columns (intercept implied).
    formula : str
        Patsy formula passed to statsmodels.
    random_effects : tuple of str
        Grouping columns with a random intercept.
    reml : bool
        True for restricted maximum likelihood, False for ML.
    llf : float
        Log-likelihood (restricted log-likelihood when ``reml``).
    aic, bic : float
        Information criteria; NaN for REML fits, which are not comparable
        across fixed-effect structures.
    n_params : int
        Fixed effects + variance components + residual variance.
    n_obs : int
        Number of eggs used.
    fixed_effects : pd.DataFrame
        Index = term; columns estimate, se, lower, upper (95% Wald), z, p.
    re_variances : dict
        Random-intercept variance per grouping column.
    residual_variance : float
    fitted, residuals : np.ndarray
        Conditional fitted values (including predicted random effects) and
        residuals.
    random_intercepts : dict of pd.Series
        Predicted intercept (BLUP) per level of each grouping column; all
        zero for a component whose variance sits at the boundary.
    converged : bool
    boundary : bool
        True when any random-effect variance sits at zero.
    data : pd.DataFrame
        Complete-case rows actually fitted.
    model : object
        Full statsmodels MixedLMResults object.
    """
    spec: Optional[CandidateModelSpec]
    predictors: Tuple[str, ...]
    formula: str
    random_effects: Tuple[str, ...]
    reml: bool
    llf: float
    aic: float
    bic: float
    n_params: int
    n_obs: int
    fixed_effects: pd.DataFrame
    re_variances: Dict[str, float]
    residual_variance: float
    fitted: np.ndarray
    residuals: np.ndarray
    random_intercepts: Dict[str, pd.Series]
    converged: bool
    boundary: bool
    data: pd.DataFrame = field(repr=False)
    model: object = field(repr=False)

    @property
    def name(self) -> str:
        if self.spec is not None:
            return self.spec.name
        return ' + '.join(self.predictors) or 'Intercept only'

    def coefficient(self, term: str) -> float:
        return float(self.fixed_effects.loc[term, 'estimate'])

    def __repr__(self) -> str:
        lines = [f"ModelFitResult({self.name}, {'REML' if self.reml else 'ML'})"]
        for term, row in self.fixed_effects.iterrows():
            lines.append(
                f"  {term:<16s} = {row['estimate']:9.4f} "
                f"[{row['lower']:.4f}, {row['upper']:.4f}]"
            )
        for name, var in self.re_variances.items():
            lines.append(f"  var({name}) = {var:.5f}")
        lines.append(f"  var(resid) = {self.residual_variance:.5f}")
        lines.append(f"  logLik = {self.llf:.2f}, AIC = {self.aic:.2f}, n = {self.n_obs}")
        if self.boundary:
            lines.append("  (random-effect variance at boundary)")
        return "\n".join(lines)


@dataclass
class ModelSelectionResult:
    """
    Output of :func:`run_model_selection`.

    Attributes
    ----------
    ranking : pd.DataFrame
        One row per fitted candidate, sorted by AIC.
    fits : list of ModelFitResult
        ML fits in ranking order.
    top_fits : list of ModelFitResult
        REML refits of the ``top_k`` best candidates, in ranking order.
        Candidates whose refit failed are missing.
    excluded : list of str
        Candidates dropped because the fit failed or did not converge.
    forbidden_pairs : list of tuple
        Correlated predictor pairs never placed in the same model.
    n_candidates : int
        Size of the constrained candidate set before fitting.
    refit_failed : list of str
        Top candidates kept in the ranking whose REML refit failed.
    """
    ranking: pd.DataFrame
    fits: List[ModelFitResult]
    top_fits: List[ModelFitResult]
    excluded: List[str]
    forbidden_pairs: List[Tuple[str, str]]
    n_candidates: int
    refit_failed: List[str] = field(default_factory=list)

    @property
    def best(self) -> ModelFitResult:
        """REML refit of the top-ranked model (with a successful refit)."""
        return self.top_fits[0]

    def estimates_table(self) -> pd.DataFrame:
        """Fixed-effect estimates of the top models in long format."""
        rank_of = dict(zip(self.ranking['model'], self.ranking['rank']))
        frames = []
        for fit in self.top_fits:
            fe = fit.fixed_effects.reset_index().rename(columns={'index': 'term'})
            fe.insert(0, 'model', fit.name)
            fe.insert(0, 'rank', int(rank_of[fit.name]))
            frames.append(fe)
        return pd.concat(frames, ignore_index=True)


@dataclass
class RandomEffectTestResult:
    """Exact restricted likelihood-ratio test of one variance component."""
    effect: str
    statistic: float
    p_value: float
    nsim: int
    seed: Optional[int]
    alpha: float = 0.05

    @property
    def droppable(self) -> bool:
        """True when the variance component can be dropped without loss of fit."""
        return self.p_value > self.alpha


# =============================================================================
# MODEL FITTING
# =============================================================================

def _predict_random_effects(
    df: pd.DataFrame,
    re_var: Dict[str, float],
    scale: float,
    marginal_resid: np.ndarray,
) -> Tuple[Dict[str, pd.Series], np.ndarray]:
    """
    Best linear unbiased predictions of the random intercepts.

    Solves Henderson's mixed-model equations for the random part given the
    fixed-effect residuals ``r = y - X b``:

        (Z'Z / s2 + G^-1) u = Z' r / s2

    with ``G`` diagonal (one variance per grouping column). Components whose
    variance is at the boundary are left out of ``Z`` and predicted as zero.

    Returns
    -------
    intercepts : dict of pd.Series
        Prediction per level, keyed by grouping column.
    random_part : np.ndarray
        ``Z u`` for every row of ``df``.
    """
    designs = {re: pd.get_dummies(df[re]) for re in re_var}
    intercepts = {re: pd.Series(0.0, index=designs[re].columns, name=re)
                  for re in re_var}
    active = [re for re, v in re_var.items() if v > _BOUNDARY_RATIO * scale]
    if not active:
        return intercepts, np.zeros(len(df))

    Z = np.hstack([designs[re].to_numpy(dtype=float) for re in active])
    g_inv = np.concatenate([np.full(designs[re].shape[1], 1.0 / re_var[re])
                            for re in active])
    lhs = Z.T @ Z / scale + np.diag(g_inv)
    u = np.linalg.solve(lhs, Z.T @ marginal_resid / scale)

    start = 0
    for re in active:
        k = designs[re].shape[1]
        intercepts[re] = pd.Series(u[start:start + k], index=designs[re].columns, name=re)
        start += k
    return intercepts, Z @ u


def fit_mixed_model(
    data: pd.DataFrame,
    predictors: Union[CandidateModelSpec, Sequence[str]] = (),
    reml: bool = False,
    random_effects: Sequence[str] = (RANDOM_EFFECT,),
    response: str = RESPONSE,
) -> ModelFitResult:
    """
    Fit a linear mixed model with random intercepts.

    Parameters
    ----------
    data : pd.DataFrame
        Egg rows joined with covariates.
    predictors : CandidateModelSpec or sequence of str
        Fixed effects. An empty sequence fits the intercept-only model.
    reml : bool, default False
        REML for variance components and reporting; ML (default) for AIC
        comparison across fixed-effect structures.
    random_effects : sequence of str, default ('plot',)
        Grouping columns. One column gives a grouped random intercept; two or
        more are fitted as crossed variance components.
    response : str, default 'size'

    Returns
    -------
    ModelFitResult

    Raises
    ------
    ValueError
        If columns are missing or no complete rows remain.
    numpy.linalg.LinAlgError
        If statsmodels hits a singular system.
    """
    spec = None
    if isinstance(predictors, CandidateModelSpec):
        spec = predictors
        predictors = spec.predictors
    predictors = tuple(predictors)
    random_effects = tuple(random_effects)
    if not random_effects:
        raise ValueError("At least one random effect required")

    columns = [response, *predictors, *random_effects]
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise ValueError(f"Columns {missing} not in data")

    df = data.dropna(subset=columns).reset_index(drop=True)
    if df.empty:
        raise ValueError(f"No complete rows for {columns}")

    formula = f"{response} ~ {' + '.join(predictors) or '1'}"
    if len(random_effects) == 1:
        model = smf.mixedlm(formula, df, groups=df[random_effects[0]])
    else:
        # Crossed intercepts: variance components within one all-ones group
        df = df.assign(_all=1)
        vc = {re: f"0 + C({re})" for re in random_effects}
        model = smf.mixedlm(formula, df, groups='_all', re_formula='0',
                            vc_formula=vc)

    with warnings.catch_warnings():
        # Boundary and convergence are checked explicitly below
        warnings.simplefilter('ignore', ConvergenceWarning)
        result = model.fit(reml=reml, method=_FIT_METHODS)

    scale = float(result.scale)
    if len(random_effects) == 1:
        re_var = {random_effects[0]: float(np.asarray(result.cov_re)[0, 0])}
    else:
        names = list(result.model.exog_vc.names)
        re_var = {name: float(v) for name, v in zip(names, np.asarray(result.vcomp))}

    boundary = any(v <= _BOUNDARY_RATIO * scale for v in re_var.values())
    if boundary:
        at_zero = [k for k, v in re_var.items() if v <= _BOUNDARY_RATIO * scale]
        warnings.warn(
            f"{formula}: variance of {at_zero} estimated at zero; "
            f"fixed effects are still valid",
            BoundaryFitWarning,
            stacklevel=2,
        )

    # Fixed effects lead the packed parameter vector
    terms = list(result.model.exog_names)
    k_fe = len(terms)
    fe = np.asarray(result.fe_params, dtype=float)
    se = np.asarray(result.bse_fe, dtype=float)
    ci = np.asarray(result.conf_int(alpha=0.05), dtype=float)[:k_fe]
    z = fe / se
    fixed = pd.DataFrame({
        'estimate': fe,
        'se': se,
        'lower': ci[:, 0],
        'upper': ci[:, 1],
        'z': z,
        'p': 2 * stats.norm.sf(np.abs(z)),
    }, index=pd.Index(terms, name='term'))

    # statsmodels' own random_effects (and so fittedvalues/resid) refuse a
    # singular covariance, which every crossed fit and every boundary fit has
    endog = np.asarray(result.model.endog, dtype=float)
    fe_fit = np.asarray(result.model.exog, dtype=float) @ fe
    intercepts, random_part = _predict_random_effects(df, re_var, scale, endog - fe_fit)
    fitted = fe_fit + random_part

    n_params = int(np.size(result.params) + 1)
    n_obs = len(df)
    llf = float(result.llf)
    if reml:
        aic = bic = np.nan
    else:
        aic = -2 * llf + 2 * n_params
        bic = -2 * llf + np.log(n_obs) * n_params

    return ModelFitResult(
        spec=spec,
        predictors=predictors,
        formula=formula,
        random_effects=random_effects,
        reml=reml,
        llf=llf,
        aic=aic,
        bic=bic,
        n_params=n_params,
        n_obs=n_obs,
        fixed_effects=fixed,
        re_variances=re_var,
        residual_variance=scale,
        fitted=fitted,
        residuals=endog - fitted,
        random_intercepts=intercepts,
        converged=bool(result.converged),
        boundary=boundary,
        data=df,
        model=result,
    )


def _fit_candidate(data, spec, reml, random_effects) -> Optional[ModelFitResult]:
    """Fit one candidate; failed or non-converged fits are reported and skipped."""
    kind = 'REML' if reml else 'ML'
    try:
        fit = fit_mixed_model(data, spec, reml=reml, random_effects=random_effects)
    except (np.linalg.LinAlgError, ValueError) as e:
        warnings.warn(f"Excluding '{spec.name}' ({kind}): fit failed ({e})",
                      ModelFitWarning, stacklevel=3)
        return None
    if not fit.converged:
        warnings.warn(f"Excluding '{spec.name}' ({kind}): fit did not converge",
                      ModelFitWarning, stacklevel=3)
        return None
    return fit


# =============================================================================
# CANDIDATE SET AND RANKING
# =============================================================================

def enumerate_candidate_models(
    forbidden_pairs: Sequence[Tuple[str, str]] = (),
    predictor_set: Tuple[str, ...] = PREDICTORS,
) -> List[CandidateModelSpec]:
    """
    Enumerate all additive predictor subsets, skipping correlated pairs.

    Each subset is a bit mask over ``predictor_set`` (2**7 = 128 masks for the
    default set, the empty mask being the intercept-only model). A mask is
    skipped when it contains both bits of any forbidden pair.

    Parameters
    ----------
    forbidden_pairs : sequence of (str, str)
        Predictor pairs that may not appear together.
    predictor_set : tuple of str

    Returns
    -------
    list of CandidateModelSpec
        In ascending mask order.
    """
    pair_masks = []
    for a, b in forbidden_pairs:
        for name in (a, b):
            if name not in predictor_set:
                raise ValueError(
                    f"Forbidden pair ({a}, {b}) names unknown predictor '{name}'"
                )
        pair_masks.append((1 << predictor_set.index(a)) | (1 << predictor_set.index(b)))

    return [
        CandidateModelSpec(mask, predictor_set)
        for mask in range(1 << len(predictor_set))
        if not any(mask & pm == pm for pm in pair_masks)
    ]


def global_model_spec(
    forbidden_pairs: Sequence[Tuple[str, str]] = (),
    predictor_set: Tuple[str, ...] = PREDICTORS,
) -> CandidateModelSpec:
    """
    Largest admissible model: every predictor, minus the second member of
    each forbidden pair whose first member is still in the model.
    """
    keep = list(predictor_set)
    for a, b in forbidden_pairs:
        if a in keep and b in keep:
            keep.remove(b)
    return CandidateModelSpec.from_predictors(keep, predictor_set)


def akaike_weights(aic: Sequence[float]) -> np.ndarray:
    """
    Normalised Akaike weights ``exp(-delta/2) / sum(exp(-delta/2))``.

    Parameters
    ----------
    aic : sequence of float

    Returns
    -------
    np.ndarray
        Weights in the input order; they sum to 1.
    """
    aic = np.asarray(aic, dtype=float)
    if aic.size == 0:
        raise ValueError("At least one AIC value required")
    rel = np.exp(-0.5 * (aic - aic.min()))
    return rel / rel.sum()


def rank_models(fits: Sequence[ModelFitResult]) -> pd.DataFrame:
    """
    Rank ML fits by AIC.

    Ties keep their input order. Models with delta-AIC above
    ``SUPPORT_DELTA_AIC`` have substantially less support but stay in the
    table.

    Returns
    -------
    pd.DataFrame
        Columns: rank, model, n_predictors, df, logLik, AIC, delta_AIC,
        weight, substantial_support.
    """
    if not fits:
        raise ValueError("No fitted models to rank")
    if any(f.reml for f in fits):
        raise ValueError("AIC ranking needs ML fits; REML likelihoods are not comparable")

    order = sorted(range(len(fits)), key=lambda i: fits[i].aic)
    aic = np.array([fits[i].aic for i in order])
    delta = aic - aic.min()

    return pd.DataFrame({
        'rank': np.arange(1, len(order) + 1),
        'model': [fits[i].name for i in order],
        'n_predictors': [len(fits[i].predictors) for i in order],
        'df': [fits[i].n_params for i in order],
        'logLik': [fits[i].llf for i in order],
        'AIC': aic,
        'delta_AIC': delta,
        'weight': akaike_weights(aic),
        'substantial_support': delta <= SUPPORT_DELTA_AIC,
    })


def complete_cases(data: pd.DataFrame,
                   predictor_set: Tuple[str, ...] = PREDICTORS,
                   random_effects: Sequence[str] = (RANDOM_EFFECT,)) -> pd.DataFrame:
    """Rows with every predictor present, so all candidates share one sample."""
    columns = [RESPONSE, *predictor_set, *random_effects]
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise ValueError(f"Columns {missing} not in data")
    df = data.dropna(subset=columns).reset_index(drop=True)
    dropped = len(data) - len(df)
    if dropped:
        years = sorted(set(data['year']) - set(df['year'])) if 'year' in data.columns else []
        warnings.warn(
            f"Dropped {dropped} egg rows with missing predictors"
            + (f" (years without covariates: {years})" if years else ""),
            ModelFitWarning,
            stacklevel=2,
        )
    return df


def run_model_selection(
    data: pd.DataFrame,
    forbidden_pairs: Sequence[Tuple[str, str]] = (),
    top_k: int = TOP_K,
    predictor_set: Tuple[str, ...] = PREDICTORS,
    random_effects: Sequence[str] = (RANDOM_EFFECT,),
    verbose: bool = False,
) -> ModelSelectionResult:
    """
    Fit and rank the constrained candidate set.

    Every candidate is fitted by ML on the same complete-case rows and ranked
    by AIC; the ``top_k`` best are refitted by REML for coefficient and
    confidence-interval reporting.

    Parameters
    ----------
    data : pd.DataFrame
        Egg rows joined with the covariate table.
    forbidden_pairs : sequence of (str, str)
        Correlated pairs from the covariate screen.
    top_k : int, default 6
    predictor_set : tuple of str
    random_effects : sequence of str, default ('plot',)
    verbose : bool

    Returns
    -------
    ModelSelectionResult

    Raises
    ------
    RuntimeError
        If no candidate could be fitted.
    """
    if top_k < 1:
        raise ValueError(f"top_k must be positive, got {top_k}")

    df = complete_cases(data, predictor_set, random_effects)
    specs = enumerate_candidate_models(forbidden_pairs, predictor_set)

    if verbose:
        print(f"  Candidate models: {len(specs)} of {1 << len(predictor_set)} "
              f"({len(forbidden_pairs)} forbidden pair(s)), n = {len(df)} eggs")

    fits, excluded = [], []
    for spec in specs:
        fit = _fit_candidate(df, spec, reml=False, random_effects=random_effects)
        if fit is None:
            excluded.append(spec.name)
        else:
            fits.append(fit)

    if not fits:
        raise RuntimeError("Every candidate model failed to fit")

    ranking = rank_models(fits)
    by_name = {f.name: f for f in fits}
    ordered = [by_name[name] for name in ranking['model']]

    # A failed refit leaves the ML ranking untouched
    top_fits, refit_failed = [], []
    for fit in ordered[:top_k]:
        refit = _fit_candidate(df, fit.spec, reml=True, random_effects=random_effects)
        if refit is None:
            refit_failed.append(fit.name)
        else:
            top_fits.append(refit)
    if not top_fits:
        raise RuntimeError(f"REML refit failed for all top {top_k} models")

    if verbose:
        print(f"  Fitted {len(fits)} models ({len(excluded)} excluded)")
        if refit_failed:
            print(f"  REML refit failed: {', '.join(refit_failed)}")
        for _, row in ranking.head(top_k).iterrows():
            print(f"    {row['rank']:2d}. {row['model']:<40s} "
                  f"AIC={row['AIC']:8.2f}  dAIC={row['delta_AIC']:5.2f}  "
                  f"w={row['weight']:.3f}")

    return ModelSelectionResult(
        ranking=ranking,
        fits=ordered,
        top_fits=top_fits,
        excluded=excluded,
        forbidden_pairs=[tuple(p) for p in forbidden_pairs],
        n_candidates=len(specs),
        refit_failed=refit_failed,
    )


# =============================================================================
# RANDOM-EFFECT TESTS
# =============================================================================

def _simulate_rlrt(X: np.ndarray, Z: np.ndarray, nsim: int,
                   rng: np.random.Generator,
                   log_grid: Tuple[float, float] = (-10.0, 8.0),
                   grid_length: int = 200) -> np.ndarray:
    """
    Simulate the null distribution of the RLRT for one variance component.

    Spectral representation of Crainiceanu & Ruppert (2004) with the null
    variance ratio at zero: with ``mu`` the eigenvalues of ``Z' P Z``
    (``P`` projecting off the fixed design),

        RLRT = sup_l (n - p) log(1 + N(l) / D(l)) - sum_s log(1 + l mu_s)
        N(l) = sum_s l mu_s / (1 + l mu_s) w_s
        D(l) = sum_s w_s / (1 + l mu_s) + chi2(n - p - K)

    with ``w_s`` iid chi-square(1), maximised over a log-spaced grid of
    variance ratios ``l`` (plus ``l = 0``).
    """
    n, p = X.shape
    k = Z.shape[1]
    z_resid = Z - X @ np.linalg.lstsq(X, Z, rcond=None)[0]
    mu = np.linalg.svd(z_resid, compute_uv=False) ** 2

    K = min(k, n - p)
    mu = np.sort(mu)[::-1][:K]
    if len(mu) < K:
        mu = np.concatenate([mu, np.zeros(K - len(mu))])

    w = rng.standard_normal((nsim, K)) ** 2
    rest = rng.chisquare(n - p - K, nsim) if n - p - K > 0 else np.zeros(nsim)

    lambdas = np.exp(np.linspace(log_grid[0], log_grid[1], grid_length - 1))
    best = np.zeros(nsim)
    for lam in lambdas:
        denom = 1.0 + lam * mu
        num = w @ (lam * mu / denom)
        den = w @ (1.0 / denom) + rest
        lr = (n - p) * np.log1p(num / den) - np.sum(np.log1p(lam * mu))
        np.maximum(best, lr, out=best)
    return best


def test_random_effect(
    full_fit: ModelFitResult,
    null_fit: ModelFitResult,
    reduced_fit: ModelFitResult,
    seed: Optional[int] = RANDOM_SEED,
    nsim: int = RLRT_NSIM,
    alpha: float = 0.05,
) -> RandomEffectTestResult:
    """
    Exact restricted likelihood-ratio test for a zero random-effect variance.

    A variance of zero lies on the boundary of its parameter space, so the
    usual chi-square reference distribution does not apply. The finite-sample
    null distribution is simulated instead.

    Parameters
    ----------
    full_fit : ModelFitResult
        REML fit containing both random effects (the alternative).
    null_fit : ModelFitResult
        REML fit without the effect under test (its variance set to zero).
    reduced_fit : ModelFitResult
        REML fit containing only the effect under test; supplies the fixed
        design X and the random-intercept design Z for the simulation.
    seed : int or None, default RANDOM_SEED
    nsim : int, default 10000
    alpha : float, default 0.05

    Returns
    -------
    RandomEffectTestResult
        ``p_value > alpha`` means the effect can be dropped.
    """
    for label, fit in (('full_fit', full_fit), ('null_fit', null_fit),
                       ('reduced_fit', reduced_fit)):
        if not fit.reml:
            raise ValueError(f"{label} must be a REML fit")
    if len(reduced_fit.random_effects) != 1:
        raise ValueError("reduced_fit must have exactly one random effect")

    effect = reduced_fit.random_effects[0]
    if effect not in full_fit.random_effects or effect in null_fit.random_effects:
        raise ValueError(
            f"'{effect}' must be in full_fit {full_fit.random_effects} and "
            f"absent from null_fit {null_fit.random_effects}"
        )
    if full_fit.predictors != null_fit.predictors:
        raise ValueError("full_fit and null_fit must share fixed effects")

    statistic = max(0.0, 2.0 * (full_fit.llf - null_fit.llf))

    X = np.asarray(reduced_fit.model.model.exog, dtype=float)
    Z = pd.get_dummies(reduced_fit.data[effect]).to_numpy(dtype=float)
    rng = np.random.default_rng(seed)
    null_dist = _simulate_rlrt(X, Z, nsim, rng)
    p_value = float(np.mean(null_dist >= statistic))

    return RandomEffectTestResult(effect=effect, statistic=statistic,
                                  p_value=p_value, nsim=nsim, seed=seed,
                                  alpha=alpha)


def compare_random_effects(
    data: pd.DataFrame,
    spec: Union[CandidateModelSpec, Sequence[str]] = (),
    effects: Tuple[str, str] = RANDOM_EFFECTS_TESTED,
    seed: Optional[int] = RANDOM_SEED,
    nsim: int = RLRT_NSIM,
    verbose: bool = False,
) -> List[RandomEffectTestResult]:
    """
    Test each of two random intercepts against the two-intercept model.

    For each effect the alternative has both intercepts, the null keeps only
    the other one, and the comparison baseline keeps only the effect tested.

    Returns
    -------
    list of RandomEffectTestResult
        One per effect, in ``effects`` order.
    """
    if len(effects) != 2:
        raise ValueError(f"Exactly two random effects required, got {effects}")

    with warnings.catch_warnings():
        warnings.simplefilter('ignore', BoundaryFitWarning)
        both = fit_mixed_model(data, spec, reml=True, random_effects=effects)
        single = {e: fit_mixed_model(data, spec, reml=True, random_effects=(e,))
                  for e in effects}

    results = []
    for tested, other in (effects, effects[::-1]):
        res = test_random_effect(both, single[other], single[tested],
                                 seed=seed, nsim=nsim)
        results.append(res)
        if verbose:
            verdict = 'can be dropped' if res.droppable else 'needed'
            print(f"  RLRT {tested}: stat={res.statistic:.3f}, "
                  f"p={res.p_value:.4f} ({verdict})")
    return results


# =============================================================================
# MODULE INFO
# =============================================================================

__all__ = [
    # Constants
    'PREDICTORS',
    'TOP_K',
    # Data structures
    'CandidateModelSpec',
    'ModelFitResult',
    'ModelSelectionResult',
    'RandomEffectTestResult',
    'BoundaryFitWarning',
    'ModelFitWarning',
    # Fitting
    'fit_mixed_model',
    # Selection
    'enumerate_candidate_models',
    'global_model_spec',
    'akaike_weights',
    'rank_models',
    'complete_cases',
    'run_model_selection',
    # Random effects
    'test_random_effect',
    'compare_random_effects',
]
