"""Utility functions for bayesbart.

This module provides helper functions for sampling from distributions,
computing log-probability densities, a generic choice function, plotting
of sampler output and data simulators.
"""

from typing import Sequence, TypeVar
import numpy as np
from scipy.special import gammainccinv, polygamma
from scipy.optimize import brentq
import matplotlib.pyplot as plt
import pandas as pd

elem = TypeVar('elem')

CRABS_URL = 'https://raw.githubusercontent.com/theodds/SDS-348/master/crabs.csv'


def my_choice(rng: np.random.Generator, a: Sequence[elem], replace: bool = False, p: Sequence[float] | None = None) -> elem:
    """
    Sample a random element from a generic sequence using the provided random generator.

    Parameters
    ----------
    rng : np.random.Generator
        The random number generator.
    a : Sequence[elem]
        The sequence to sample from.
    replace : bool, optional
        Whether the sampling is done with replacement (default is False).
    p : Sequence[float] or None, optional
        The probability weights associated with each element (default is None).

    Returns
    -------
    elem
        A randomly selected element from the sequence.
    """
    sampled_idx = rng.choice(len(a), replace=replace, p=p)
    return a[sampled_idx]

def invgamma_rvs(a, scale, rng):
    """
    Sample a random variate from an inverse gamma distribution.

    Parameters
    ----------
    a : float
        The shape parameter.
    scale : float
        The scale parameter.
    rng : np.random.Generator
        The random number generator.

    Returns
    -------
    float
        A random variate from the inverse gamma distribution.
    """
    U = rng.uniform()
    Y = 1.0 / gammainccinv(a, U)
    return Y * scale

def trigamma_inv(x: float) -> float:
    """
    Invert the trigamma function.

    Used to find the shape of a gamma prior whose logarithm has a given variance,
    since Var[log G] = trigamma(shape) for G ~ Gamma(shape, rate).

    Parameters
    ----------
    x : float
        Target value, must be positive.

    Returns
    -------
    float
        The shape a such that trigamma(a) = x.
    """
    if not x > 0:
        raise ValueError('trigamma is only invertible on positive values')
    # trigamma is decreasing, goes to infinity at 0 and behaves like 1/a for large a
    lower, upper = 1e-10, 2. / x + 1.
    return brentq(lambda a: polygamma(1, a) - x, lower, upper, xtol=1e-12)


##### Plotting utils #####


def plot_param_hist(res, key='k', title='', xlbl=None, transform=None):
    """
    Plot the posterior histogram of a scalar parameter stored in a run result.

    Parameters
    ----------
    res : dict
        A run result dictionary.
    key : str, optional
        Key of the parameter draws in res (default 'k').
    title : str, optional
        The title of the plot.
    xlbl : str or None, optional
        Label of the x axis (default is the key).
    transform : callable or None, optional
        Function applied to the draws before plotting, e.g. ``lambda k: 1/np.sqrt(k)``.

    Returns
    -------
    matplotlib.figure.Figure
    """
    draws = np.asarray(res[key])
    if transform is not None:
        draws = transform(draws)
    fig, ax = plt.subplots()
    ax.hist(draws, bins=30, color='C0', edgecolor='white')
    ax.set_xlabel(key if xlbl is None else xlbl)
    ax.set_ylabel('Frequency')
    ax.set_title(title)
    fig.tight_layout()
    return fig

def plot_trace(res, key='sigma', title=''):
    """
    Plot the trace of a scalar parameter over the saved iterations.

    Parameters
    ----------
    res : dict
        A run result dictionary.
    key : str, optional
        Key of the parameter draws in res (default 'sigma').
    title : str, optional
        The title of the plot.

    Returns
    -------
    matplotlib.figure.Figure
    """
    draws = np.asarray(res[key])
    fig, ax = plt.subplots()
    ax.plot(np.arange(draws.shape[0]), draws)
    ax.set_xlabel('Saved iteration')
    ax.set_ylabel(key)
    ax.set_title(title)
    fig.tight_layout()
    return fig

def plot_variable_counts(res, title='Average number of splits per variable'):
    """
    Bar plot of the posterior mean number of splits on each variable group.

    Parameters
    ----------
    res : dict
        A run result dictionary containing 'counts' and, in its setup, 'group_names'.
    title : str, optional
        The title of the plot.

    Returns
    -------
    matplotlib.figure.Figure
    """
    counts = np.asarray(res['counts'])
    names = res['setup']['group_names']
    fig, ax = plt.subplots()
    ax.bar(np.arange(counts.shape[1]), counts.mean(axis=0), tick_label=names)
    ax.set_ylabel('Splits per sweep')
    ax.set_title(title)
    fig.tight_layout()
    return fig

def plot_contrasts(contrasts: pd.DataFrame, title='', ylbl='average'):
    """
    Box plot of the posterior draws of level contrasts.

    Parameters
    ----------
    contrasts : pd.DataFrame
        Output of summary.level_contrasts: an 'iter' column and one column per level.
    title : str, optional
        The title of the plot.
    ylbl : str, optional
        Label of the y axis.

    Returns
    -------
    matplotlib.figure.Figure
    """
    levels = [c for c in contrasts.columns if c != 'iter']
    fig, ax = plt.subplots()
    ax.boxplot([contrasts[c].to_numpy() for c in levels])
    ax.set_xticks(np.arange(1, len(levels)+1), labels=levels)
    ax.axhline(0, color='grey', linewidth=0.8)
    ax.set_ylabel(ylbl)
    ax.set_title(title)
    fig.tight_layout()
    return fig


##### Data #####


def sim_friedman(n, rng, sigma=1.0, p=5):
    """
    Simulate data from the Friedman (1991) test function.

    Parameters
    ----------
    n : int
        Number of observations.
    rng : np.random.Generator
        Random generator.
    sigma : float, optional
        Noise standard deviation (default 1).
    p : int, optional
        Number of features, at least 5; the extra ones are noise (default 5).

    Returns
    -------
    tuple
        (X, y) where X is a DataFrame with features 'v1', ..., 'vp' and y is a Series.
    """
    if p < 5:
        raise ValueError('The Friedman function needs at least 5 features')
    x = rng.uniform(size=(n, p))
    f = 10*np.sin(np.pi*x[:, 0]*x[:, 1]) + 20*(x[:, 2]-0.5)**2 + 10*x[:, 3] + 5*x[:, 4]
    y = f + sigma * rng.standard_normal(n)
    X = pd.DataFrame(x, columns=[f'v{i+1}' for i in range(p)])
    return X, pd.Series(y, name='y')

def sim_negbin(n, rng, k=2.0):
    """
    Simulate overdispersed counts resembling the horseshoe crab satellite data.

    The columns are a 4 level colour factor, a 3 level spine factor, the
    carapace width and the weight (correlated with the width). Counts are
    negative binomial with log mean depending on colour and width, with
    size parameter k.

    Parameters
    ----------
    n : int
        Number of observations.
    rng : np.random.Generator
        Random generator.
    k : float, optional
        Size (inverse overdispersion) parameter (default 2).

    Returns
    -------
    pd.DataFrame
        Columns 'satell', 'color', 'spine', 'width', 'weight'.
    """
    colors = np.array(['dark', 'darker', 'light', 'medium'])
    color_eff = {'dark': -0.3, 'darker': -0.6, 'light': 0.3, 'medium': 0.0}
    color = rng.choice(colors, size=n, replace=True)
    spine = rng.choice([1, 2, 3], size=n, replace=True)
    width = rng.normal(26.3, 2.1, size=n)
    weight = np.maximum(1.2, 0.35*width - 6.6 + rng.normal(0, 0.3, size=n))
    log_mu = 0.8 + 0.15*(width - 26.3) + np.array([color_eff[c] for c in color])
    mu = np.exp(log_mu)
    satell = rng.negative_binomial(k, k/(k+mu))
    return pd.DataFrame({'satell': satell, 'color': color, 'spine': spine, 'width': width, 'weight': weight})

def load_crabs(path=CRABS_URL):
    """
    Read the horseshoe crab satellite data.

    Parameters
    ----------
    path : str, optional
        Local path or URL of the csv (default is the course repository copy).

    Returns
    -------
    pd.DataFrame
    """
    crabs = pd.read_csv(path)
    expected = {'satell', 'color', 'spine', 'width', 'weight'}
    if not expected.issubset(crabs.columns):
        raise ValueError(f'Crabs data must contain the columns {sorted(expected)}')
    return crabs
