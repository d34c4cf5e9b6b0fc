"""
Functions to evaluate BART runs.

This module contains helpers to gauge the mixing of the sampler: acceptance
rates of the tree moves, effective sample sizes and posterior intervals of
scalar parameters, and a summary table of the draws stored in a run result.
"""

from typing import Sequence
import numpy as np
import pandas as pd
from .bart import MOVES


def acceptance_rates(res) -> pd.Series:
    """
    Acceptance rate of the tree moves, overall and per move type.

    Parameters
    ----------
    res : dict
        A run result dictionary containing 'move_counters'.

    Returns
    -------
    pd.Series
        Indexed by 'all', the move names and, for count models, 'k'.
    """
    c = res['move_counters']
    rates = {'all': c['accepted'] / c['proposed'] if c['proposed'] > 0 else np.nan}
    for move in MOVES:
        prop = c.get(f'{move}_proposed', 0)
        rates[move] = c[f'{move}_accepted'] / prop if prop > 0 else np.nan
    if c.get('k_proposed', 0) > 0:
        rates['k'] = c['k_accepted'] / c['k_proposed']
    return pd.Series(rates, name='acceptance_rate')


def _autocorr(x: np.ndarray) -> np.ndarray:
    n = x.shape[0]
    x = x - x.mean()
    # zero padding to avoid the circular correlation of the FFT
    size = 2**int(np.ceil(np.log2(2*n)))
    f = np.fft.rfft(x, n=size)
    acov = np.fft.irfft(f * np.conjugate(f), n=size)[:n] / n
    return acov / acov[0]


def effective_sample_size(draws) -> float:
    """
    Effective sample size of a chain of scalar draws.

    Uses Geyer's initial positive sequence: autocorrelations are summed in
    consecutive pairs until a pair sum becomes negative.

    Parameters
    ----------
    draws : array-like
        One-dimensional chain.

    Returns
    -------
    float
        The effective sample size, at most the chain length.
    """
    x = np.asarray(draws, dtype=float)
    if x.ndim != 1:
        raise ValueError('draws must be one-dimensional')
    n = x.shape[0]
    if n < 4 or np.allclose(x, x[0]):
        return float(n)
    rho = _autocorr(x)
    tau = -1.
    for t in range(0, n - 1, 2):
        pair = rho[t] + rho[t+1]
        if pair < 0:
            break
        tau += 2*pair
    tau = max(tau, 1/n)
    return float(min(n / tau, n))


def posterior_interval(draws, alpha: float = 0.05) -> np.ndarray:
    """
    Equal-tailed credible interval.

    Parameters
    ----------
    draws : array-like
        Draws along the first axis.
    alpha : float, optional
        The interval has level 1 - alpha (default 0.05).

    Returns
    -------
    np.ndarray
        Array with the lower and upper bound along the first axis.
    """
    if not 0 < alpha < 1:
        raise ValueError('alpha must be in (0, 1)')
    return np.quantile(np.asarray(draws, dtype=float), [alpha/2, 1 - alpha/2], axis=0)


def summarize_draws(res, keys: Sequence[str] | None = None, alpha: float = 0.05) -> pd.DataFrame:
    """
    Summary table of the scalar parameters of a run.

    Parameters
    ----------
    res : dict
        A run result dictionary.
    keys : Sequence[str] or None, optional
        The parameters to summarize. Defaults to those present among 'sigma',
        'k', 'lam0' and 'tree_term_reg'.
    alpha : float, optional
        Level of the credible intervals (default 0.05).

    Returns
    -------
    pd.DataFrame
        One row per parameter with mean, sd, interval bounds and effective sample size.
    """
    if keys is None:
        keys = [k for k in ['sigma', 'k', 'lam0', 'tree_term_reg'] if k in res]
    rows = []
    for key in keys:
        draws = np.asarray(res[key], dtype=float)
        lower, upper = posterior_interval(draws, alpha)
        rows.append({'param': key, 'mean': draws.mean(), 'sd': draws.std(ddof=1) if len(draws) > 1 else np.nan,
                     'lower': lower, 'upper': upper, 'ess': effective_sample_size(draws)})
    return pd.DataFrame(rows).set_index('param')
