"""Posterior summaries of fitted BART models.

A BART fit is hard to read directly. This module projects each posterior draw
of the fitted function onto a simpler, interpretable model (an additive model
written as a patsy formula) and reports, for every draw, the projected term
contributions and how much of the draw the projection explains (summary R²).
It also computes population-averaged contrasts between the levels of a factor
from predictions on counterfactual designs, and fits a parametric negative
binomial regression for comparison.
"""

from dataclasses import dataclass, field
from typing import Sequence
import numpy as np
import numpy.typing as npt
import pandas as pd
import patsy
from patsy.eval import ast_names
import statsmodels.api as sm
import matplotlib.pyplot as plt
from .mytyping import NDArrayFloat


@dataclass
class AdditiveSummary():
    """
    Result of additive_summary.

    Attributes
    ----------
    formula : str
        The right hand side of the summary formula.
    summary : pd.DataFrame
        One row per (term, observation): the column 'term', the float value
        'x' of the variable a numerical term depends on (NaN for categorical
        terms), the string 'level' of a categorical term (None for numerical
        terms), the observation 'row', and the posterior 'mean', 'lower' and
        'upper' of the centred term contribution.
    rsq : NDArrayFloat
        Summary R² of each draw.
    term_types : dict[str, str]
        'categorical' or 'numerical' for each term.
    coefs : NDArrayFloat
        Projection coefficients of each draw (draws x design columns).
    """
    formula: str
    summary: pd.DataFrame
    rsq: NDArrayFloat
    term_types: dict[str, str] = field(default_factory=dict)
    coefs: NDArrayFloat | None = None

    @property
    def terms(self) -> list[str]:
        return list(self.term_types.keys())


def _rhs(formula: str) -> str:
    # the left hand side only names the summarized quantity, draws are passed separately
    return formula.split('~', 1)[1] if '~' in formula else formula


def _check_samples(fhat_samples, n: int) -> NDArrayFloat:
    fhat = np.asarray(fhat_samples, dtype=float)
    if fhat.ndim == 1:
        fhat = fhat[None, :]
    if fhat.ndim != 2 or fhat.shape[1] != n:
        raise ValueError(f'fhat_samples must have shape (draws, {n})')
    return fhat


def _project(formula: str, fhat_samples, df: pd.DataFrame):
    design = patsy.dmatrix(_rhs(formula), df, return_type='dataframe')
    if design.shape[0] != df.shape[0]:
        raise ValueError('The summary formula dropped rows of df, remove the missing values first')
    fhat = _check_samples(fhat_samples, design.shape[0])
    D = design.to_numpy()
    coefs = fhat @ np.linalg.pinv(D).T
    proj = coefs @ D.T
    return design, D, fhat, coefs, proj


def _rsq(fhat: NDArrayFloat, proj: NDArrayFloat) -> NDArrayFloat:
    ss_res = np.sum((fhat - proj)**2, axis=1)
    ss_tot = np.sum((fhat - fhat.mean(axis=1, keepdims=True))**2, axis=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        rsq = 1 - ss_res/ss_tot
    # a constant draw is explained perfectly by the intercept
    return np.where(ss_tot > 0, rsq, 1.)


def _term_variable(term, df: pd.DataFrame) -> str | None:
    """First column of df read by the factors of a patsy term."""
    for factor in term.factors:
        # keyword arguments such as df=4 are not names
        for name in ast_names(getattr(factor, 'code', '')):
            if name in df.columns:
                return name
    return None


def additive_summary(formula: str, fhat_samples: npt.ArrayLike, df: pd.DataFrame, alpha: float = 0.05) -> AdditiveSummary:
    """
    Project posterior draws of a function onto an additive model.

    Each draw is regressed by least squares on the design matrix of the
    formula. For every term, its contribution to the projection is centred
    over the observations and summarized across draws.

    Parameters
    ----------
    formula : str
        patsy formula, e.g. ``'r ~ C(color) + C(spine) + bs(width, df=4)'``.
        Only the right hand side is used.
    fhat_samples : array-like
        Posterior draws of the function, shape (draws, rows of df).
    df : pd.DataFrame
        Data where the formula is evaluated.
    alpha : float, optional
        The credible bands have level 1 - alpha (default 0.05).

    Returns
    -------
    AdditiveSummary
    """
    if not 0 < alpha < 1:
        raise ValueError('alpha must be in (0, 1)')
    design, D, fhat, coefs, proj = _project(formula, fhat_samples, df)
    info = design.design_info

    parts = []
    term_types = {}
    for term, sl in info.term_slices.items():
        if len(term.factors) == 0:
            continue
        contrib = coefs[:, sl] @ D[:, sl].T
        contrib = contrib - contrib.mean(axis=1, keepdims=True)
        name = term.name()
        is_cat = any(info.factor_infos[f].type == 'categorical' for f in term.factors)
        term_types[name] = 'categorical' if is_cat else 'numerical'
        var = _term_variable(term, df)
        values = df[var].to_numpy() if var is not None else np.arange(df.shape[0])
        parts.append(pd.DataFrame({
            'term': name,
            'x': np.full(df.shape[0], np.nan) if is_cat else values.astype(float),
            'level': pd.Series(values).astype(str).to_numpy() if is_cat else np.full(df.shape[0], None),
            'row': np.arange(df.shape[0]),
            'mean': contrib.mean(axis=0),
            'lower': np.quantile(contrib, alpha/2, axis=0),
            'upper': np.quantile(contrib, 1 - alpha/2, axis=0),
        }))
    if len(parts) == 0:
        raise ValueError('The summary formula has no terms besides the intercept')
    summary = pd.concat(parts, ignore_index=True)
    return AdditiveSummary(formula=_rhs(formula).strip(), summary=summary, rsq=_rsq(fhat, proj),
                           term_types=term_types, coefs=coefs)


def summary_rsq(formula: str, fhat_samples, df: pd.DataFrame) -> NDArrayFloat:
    """
    Summary R² of each draw for the projection on a formula.

    Parameters
    ----------
    formula : str
        patsy formula; only the right hand side is used.
    fhat_samples : array-like
        Posterior draws, shape (draws, rows of df).
    df : pd.DataFrame

    Returns
    -------
    NDArrayFloat
        One value per draw.
    """
    _, _, fhat, _, proj = _project(formula, fhat_samples, df)
    return _rsq(fhat, proj)


def additive_summary_plot(summary: AdditiveSummary, title: str = ''):
    """
    Plot the term contributions of an additive summary and the summary R².

    Numerical terms are drawn as a line with a credible band, categorical
    terms as points with error bars.

    Parameters
    ----------
    summary : AdditiveSummary
    title : str, optional

    Returns
    -------
    matplotlib.figure.Figure
    """
    terms = summary.terms
    n_panels = len(terms) + 1
    fig, axes = plt.subplots(1, n_panels, figsize=(3.2*n_panels, 3.2), squeeze=False)
    axes = axes[0]
    for ax, term in zip(axes, terms):
        d = summary.summary[summary.summary['term'] == term]
        if summary.term_types[term] == 'categorical':
            d = d.drop_duplicates('level').sort_values('level')
            xs = np.arange(d.shape[0])
            yerr = np.clip(np.array([d['mean'] - d['lower'], d['upper'] - d['mean']], dtype=float), 0, None)
            ax.errorbar(xs, d['mean'].to_numpy(dtype=float), yerr=yerr, fmt='o', capsize=3)
            ax.set_xticks(xs, labels=list(d['level']))
        else:
            d = d.sort_values('x')
            x = d['x'].to_numpy(dtype=float)
            ax.plot(x, d['mean'].to_numpy(dtype=float), color='C0')
            ax.fill_between(x, d['lower'].to_numpy(dtype=float), d['upper'].to_numpy(dtype=float), color='C0', alpha=0.3)
        ax.set_title(term, fontsize=9)
    axes[-1].hist(summary.rsq, bins=20, color='C1', edgecolor='white')
    axes[-1].set_title('Summary R²', fontsize=9)
    if title:
        fig.suptitle(title)
    fig.tight_layout()
    return fig


def level_contrasts(pred_test, levels: Sequence[str]) -> pd.DataFrame:
    """
    Population-averaged contrasts between the levels of a factor.

    pred_test holds draws of predictions on a design stacked by
    prepcovars.counterfactual_design: one block of rows per level, in order.
    For each draw, the mean of each block minus the mean over all blocks is
    returned.

    Parameters
    ----------
    pred_test : array-like
        Draws x (number of levels * rows per block).
    levels : Sequence[str]
        Level labels, one per block.

    Returns
    -------
    pd.DataFrame
        Columns 'iter' and one per level.
    """
    x = np.asarray(pred_test, dtype=float)
    L = len(levels)
    if x.ndim != 2 or L == 0 or x.shape[1] % L != 0:
        raise ValueError(f'pred_test must have a multiple of {L} columns')
    block_means = x.reshape(x.shape[0], L, -1).mean(axis=2)
    avg = block_means.mean(axis=1, keepdims=True)
    out = pd.DataFrame(block_means - avg, columns=list(levels))
    out.insert(0, 'iter', np.arange(x.shape[0]))
    return out


def long_contrasts(contrasts: pd.DataFrame, name: str = 'level', value_name: str = 'average') -> pd.DataFrame:
    """Reshape the output of level_contrasts to one row per (iter, level)."""
    return contrasts.melt(id_vars='iter', var_name=name, value_name=value_name)


def fit_glm_nb(formula: str, data: pd.DataFrame):
    """
    Fit a negative binomial regression with log link, estimating the overdispersion.

    Parameters
    ----------
    formula : str
        patsy formula, e.g. ``'satell ~ C(color) + C(spine) + width + weight'``.
    data : pd.DataFrame

    Returns
    -------
    statsmodels results
        The fitted model; ``summary()`` prints the coefficient table and
        ``params['alpha']`` is the overdispersion (1/k).
    """
    model = sm.NegativeBinomial.from_formula(formula, data=data, loglike_method='nb2')
    return model.fit(disp=False, maxiter=200)
