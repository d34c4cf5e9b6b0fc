"""Functions to preprocess data before fitting a BART model.

Design matrices keep one dummy column per factor level, so that every level
can be split on directly, and remember which columns come from which original
variable. Split probabilities can then be spread evenly within each variable,
so that a factor with many levels is not favoured over a numeric column.
"""

import os
from typing import Sequence
import numpy as np
import pandas as pd


def _is_factor(x: pd.Series) -> bool:
    return hasattr(x, 'cat') or x.dtype == object or pd.api.types.is_bool_dtype(x) or pd.api.types.is_string_dtype(x)


def build_design_matrix(data: pd.DataFrame, variables: Sequence[str], response: str | None = None,
                        factors: Sequence[str] | None = None) -> tuple[pd.DataFrame, pd.Series | None, dict[str, list[str]]]:
    """
    Build a design matrix with one indicator column per level of each factor.

    No level is dropped (no contrasts) and there is no intercept column.

    Parameters
    ----------
    data : pd.DataFrame
        The data.
    variables : Sequence[str]
        The predictors, in the order their columns should appear.
    response : str or None, optional
        Name of the response column (default None).
    factors : Sequence[str] or None, optional
        Predictors to one-hot encode. If None, the non-numeric ones are. Numeric
        columns (e.g. integer codes) can be forced to be factors this way.

    Returns
    -------
    tuple
        (X, y, groups) where y is None if no response is given and groups maps
        each predictor to the list of its columns in X.
    """
    missing = [v for v in list(variables) + ([response] if response is not None else []) if v not in data.columns]
    if len(missing) > 0:
        raise KeyError(f'Columns not found in data: {missing}')
    if factors is None:
        factors = [v for v in variables if _is_factor(data[v])]
    else:
        factors = list(factors)
        if not set(factors).issubset(variables):
            raise ValueError('factors must be a subset of variables')

    parts = []
    groups: dict[str, list[str]] = {}
    for var in variables:
        if var in factors:
            dummies = pd.get_dummies(data[var].astype('category'), prefix=var, prefix_sep='_', dtype=float)
            parts.append(dummies)
            groups[var] = list(dummies.columns)
        else:
            col = pd.to_numeric(data[var]).astype(float)
            parts.append(col.rename(var))
            groups[var] = [var]
    X = pd.concat(parts, axis=1)
    y = data[response] if response is not None else None
    return X, y, groups


def group_split_probs(columns: Sequence[str], groups: dict[str, list[str]]) -> pd.DataFrame:
    """
    Matrix of within-group split probabilities.

    Entry (j, g) is the probability of picking column j once group g has been
    chosen for a split: 1 / (number of columns in g) for the columns of g and 0
    elsewhere.

    Parameters
    ----------
    columns : Sequence[str]
        Columns of the design matrix.
    groups : dict[str, list[str]]
        Mapping from group name to its columns, as returned by build_design_matrix.

    Returns
    -------
    pd.DataFrame
        p x G matrix indexed by column, with one column per group.
    """
    columns = list(columns)
    probs = pd.DataFrame(0., index=columns, columns=list(groups.keys()))
    for g, cols in groups.items():
        unknown = set(cols).difference(columns)
        if len(unknown) > 0:
            raise ValueError(f'Group {g} refers to unknown columns {sorted(unknown)}')
        probs.loc[cols, g] = 1. / len(cols)
    orphans = probs.index[probs.sum(axis=1) == 0]
    if len(orphans) > 0:
        raise ValueError(f'Columns {list(orphans)} do not belong to any group')
    return probs


class QuantileNormalizer():
    """
    Map each numeric predictor through its empirical CDF and rescale it to [0, 1].

    BART only depends on predictors through their ordering, but the grid of
    available splits does not: after this transform the splits are spread
    evenly over the quantiles of each predictor. New rows are mapped through
    the training CDF, so train and test rows stay comparable.

    Attributes
    ----------
    sorted_vals : dict[str, np.ndarray]
        Sorted training values of each transformed column.
    ranges : dict[str, tuple[float, float]]
        Smallest and largest training ECDF value of each transformed column.
    """
    def __init__(self):
        self.sorted_vals: dict[str, np.ndarray] | None = None
        self.ranges: dict[str, tuple[float, float]] = {}

    def fit(self, X: pd.DataFrame) -> 'QuantileNormalizer':
        if not isinstance(X, pd.DataFrame):
            raise TypeError('X must be a pandas DataFrame')
        self.columns = list(X.columns)
        self.sorted_vals = {}
        self.ranges = {}
        for col_name in X.columns:
            col = X[col_name]
            if hasattr(col, 'cat') or not pd.api.types.is_numeric_dtype(col):
                continue
            vals = np.sort(col.to_numpy(dtype=float))
            # constant columns are left as they are
            if vals[0] == vals[-1]:
                continue
            ecdf = np.searchsorted(vals, vals, side='right') / len(vals)
            self.sorted_vals[col_name] = vals
            self.ranges[col_name] = (ecdf.min(), ecdf.max())
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        if self.sorted_vals is None:
            raise ValueError('QuantileNormalizer must be fitted before transform')
        missing = set(self.sorted_vals).difference(X.columns)
        if len(missing) > 0:
            raise KeyError(f'Columns not found in X: {sorted(missing)}')
        out = X.copy()
        for col_name, vals in self.sorted_vals.items():
            u = np.searchsorted(vals, X[col_name].to_numpy(dtype=float), side='right') / len(vals)
            lo, hi = self.ranges[col_name]
            out[col_name] = np.clip((u - lo) / (hi - lo), 0., 1.)
        return out

    def fit_transform(self, X: pd.DataFrame) -> pd.DataFrame:
        return self.fit(X).transform(X)


def quantile_normalize(X: pd.DataFrame) -> pd.DataFrame:
    """Quantile-normalize the numeric columns of X using X itself as reference."""
    return QuantileNormalizer().fit_transform(X)


def counterfactual_design(X: pd.DataFrame, columns: Sequence[str], labels: Sequence[str] | None = None) -> tuple[pd.DataFrame, list[str]]:
    """
    Stack copies of X where a one-hot group is set to each of its levels in turn.

    For each column in `columns`, all the group columns are set to 0 and that
    column to 1. Predicting on the result and averaging each block gives the
    population-averaged effect of each level.

    Parameters
    ----------
    X : pd.DataFrame
        Design matrix.
    columns : Sequence[str]
        Indicator columns of one factor.
    labels : Sequence[str] or None, optional
        Name of each level. Defaults to the column names without their common prefix.

    Returns
    -------
    tuple
        (stacked design matrix with len(columns) * len(X) rows, level labels)
    """
    columns = list(columns)
    if len(columns) == 0:
        raise ValueError('At least one column is needed')
    if labels is None:
        prefix = os.path.commonprefix(columns)
        prefix = prefix[:prefix.rfind('_')+1] if len(columns) > 1 else ''
        labels = [c[len(prefix):] for c in columns]
    elif len(labels) != len(columns):
        raise ValueError('labels and columns must have the same length')

    blocks = []
    for col_name in columns:
        Xc = X.copy()
        Xc[columns] = 0.
        Xc[col_name] = 1.
        blocks.append(Xc)
    return pd.concat(blocks, ignore_index=True), list(labels)
